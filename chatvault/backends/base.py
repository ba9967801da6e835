"""
Base backend abstraction.
The generation driver and summarizer talk to any AI-completion service
through this interface, so the tree never sees provider wire formats.
"""

from __future__ import annotations

import abc
import json
import logging
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable

logger = logging.getLogger(__name__)

ContentCallback = Callable[[str], None]


@dataclass
class BackendResponse:
    """Standardized response from any backend."""
    ok: bool
    status_code: int = 200
    data: dict = field(default_factory=dict)
    backend_name: str = ""
    latency_ms: float = 0.0
    error: str = ""

    @property
    def content(self) -> str:
        """Extract assistant content from response data."""
        choices = self.data.get("choices", [])
        if choices:
            return choices[0].get("message", {}).get("content", "") or ""
        return ""


class BackendError(RuntimeError):
    """The completion service failed or returned an unusable reply."""


def parse_sse_line(line: str) -> tuple[str, str] | None:
    """
    Pull (content, reasoning) deltas out of one SSE line.
    Returns None for keep-alives, [DONE] and unparseable lines.
    """
    if not line.startswith("data: "):
        return None
    data_str = line[6:]
    if data_str.strip() == "[DONE]":
        return None
    try:
        chunk = json.loads(data_str)
        delta = chunk.get("choices", [{}])[0].get("delta", {})
    except (json.JSONDecodeError, IndexError, AttributeError):
        return None
    content = delta.get("content") or ""
    reasoning = delta.get("reasoning_content") or delta.get("reasoning") or ""
    return content, reasoning


class BaseBackend(abc.ABC):
    """
    Abstract base for AI-completion backends.
    Subclasses implement the raw transport; streaming callbacks live here.
    """

    def __init__(self, name: str, url: str, timeout: int = 120, default_model: str = ""):
        self.name = name
        self.url = url.rstrip("/")
        self.timeout = timeout
        self.default_model = default_model

    @abc.abstractmethod
    async def forward(self, body: dict) -> BackendResponse:
        """
        Forward a chat completion request.
        Body is OpenAI-compatible format.
        """
        ...

    @abc.abstractmethod
    def forward_stream(self, body: dict) -> AsyncIterator[str]:
        """
        Forward a streaming chat completion request.
        Yields raw SSE lines (str).
        """
        ...

    def _body(self, messages: list[dict], model: str | None, stream: bool, **extra) -> dict:
        body = {
            "model": model or self.default_model,
            "messages": [{"role": m["role"], "content": m["content"]} for m in messages],
            "stream": stream,
        }
        body.update(extra)
        return body

    async def complete(self, messages: list[dict], model: str | None = None, **extra) -> str:
        """Non-streaming completion. Raises BackendError on failure."""
        response = await self.forward(self._body(messages, model, stream=False, **extra))
        if not response.ok:
            raise BackendError(f"{self.name}: {response.error}")
        return response.content

    async def stream_chat(
        self,
        messages: list[dict],
        on_content: ContentCallback,
        on_reasoning: ContentCallback | None = None,
        model: str | None = None,
    ) -> str:
        """
        Stream a completion.

        on_content fires zero or more times; the returned text is exactly
        the concatenation of its payloads.
        """
        parts: list[str] = []
        async for line in self.forward_stream(self._body(messages, model, stream=True)):
            parsed = parse_sse_line(line)
            if parsed is None:
                continue
            content, reasoning = parsed
            if reasoning and on_reasoning is not None:
                on_reasoning(reasoning)
            if content:
                parts.append(content)
                on_content(content)
        return "".join(parts)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r} url={self.url!r}>"
