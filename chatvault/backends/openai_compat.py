"""
Generic OpenAI-compatible backend.

Works with anything serving /v1/chat/completions and /v1/models:
llama.cpp server, vLLM, LocalAI, Ollama, OpenRouter, OpenAI itself.
"""

from __future__ import annotations

import logging
import time

import httpx

from chatvault.backends.base import BaseBackend, BackendResponse

logger = logging.getLogger(__name__)


class OpenAICompatibleBackend(BaseBackend):
    """Backend for OpenAI-compatible endpoints."""

    def __init__(
        self,
        name: str,
        url: str,
        timeout: int = 120,
        default_model: str = "",
        api_key: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(name, url, timeout, default_model)
        self.api_key = api_key
        self._transport = transport

    def _headers(self) -> dict:
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _client(self, timeout: float | None = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=timeout or self.timeout,
            transport=self._transport,
        )

    async def forward(self, body: dict) -> BackendResponse:
        """Forward a non-streaming request."""
        t0 = time.monotonic()
        try:
            async with self._client() as client:
                resp = await client.post(
                    f"{self.url}/v1/chat/completions",
                    json=body,
                    headers=self._headers(),
                )
                latency = (time.monotonic() - t0) * 1000

                if resp.status_code >= 400:
                    return BackendResponse(
                        ok=False,
                        status_code=resp.status_code,
                        backend_name=self.name,
                        latency_ms=latency,
                        error=f"HTTP {resp.status_code}: {resp.text[:200]}",
                    )

                return BackendResponse(
                    ok=True,
                    status_code=resp.status_code,
                    data=resp.json(),
                    backend_name=self.name,
                    latency_ms=latency,
                )
        except httpx.TimeoutException:
            latency = (time.monotonic() - t0) * 1000
            logger.warning(
                "Backend '%s' timed out after %.0fms", self.name, latency,
            )
            return BackendResponse(
                ok=False,
                backend_name=self.name,
                latency_ms=latency,
                error=f"Timeout after {self.timeout}s",
            )
        except httpx.HTTPError as e:
            latency = (time.monotonic() - t0) * 1000
            logger.warning("Backend '%s' failed: %s", self.name, e)
            return BackendResponse(
                ok=False,
                backend_name=self.name,
                latency_ms=latency,
                error=str(e),
            )

    async def forward_stream(self, body: dict):
        """Forward a streaming request, yielding SSE lines."""
        try:
            async with self._client() as client:
                async with client.stream(
                    "POST",
                    f"{self.url}/v1/chat/completions",
                    json=body,
                    headers=self._headers(),
                ) as resp:
                    resp.raise_for_status()
                    async for line in resp.aiter_lines():
                        if line:
                            yield line
        except httpx.TimeoutException:
            logger.warning("Backend '%s' stream timed out", self.name)
            raise
        except httpx.HTTPError as e:
            logger.warning("Backend '%s' stream failed: %s", self.name, e)
            raise
