"""
HTTP client for the sync wire protocol.

Endpoints (JSON):
    POST   /sync/upload     {userId, dataType, encryptedData, version, checksum} → {version}
    GET    /sync/download   ?userId&dataType&sinceVersion → {data: [...]} ascending by version
    DELETE /sync/delete     {userId, dataType?}
    GET    /sync/{syncId}   → {data, timestamp}
    POST   /sync            {id, data, timestamp}
    GET    /health

Network-level failures (refused, reset) are retried with a linearly growing
delay. HTTP status errors and timeouts are never retried.
"""

from __future__ import annotations

import asyncio
import logging

import httpx

from chatvault.sync.errors import ServerUnavailableError, SyncHTTPError

logger = logging.getLogger(__name__)


class SyncClient:
    """Thin async wrapper around the sync server's REST API."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        retry_count: int = 3,
        retry_delay: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.retry_count = max(1, retry_count)
        self.retry_delay = retry_delay
        self._transport = transport

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        url = f"{self.base_url}{path}"
        for attempt in range(1, self.retry_count + 1):
            try:
                async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                    return await client.request(method, url, **kwargs)
            except httpx.TimeoutException as e:
                logger.warning("Sync request %s %s timed out", method, path)
                raise ServerUnavailableError(f"timeout after {self.timeout}s") from e
            except httpx.NetworkError as e:
                if attempt >= self.retry_count:
                    logger.warning(
                        "Sync request %s %s failed after %d attempt(s): %s",
                        method, path, attempt, e,
                    )
                    raise ServerUnavailableError(str(e)) from e
                delay = self.retry_delay * attempt
                logger.warning(
                    "Sync request %s %s failed, retrying in %.1fs (%d/%d): %s",
                    method, path, delay, attempt, self.retry_count, e,
                )
                await asyncio.sleep(delay)
        raise ServerUnavailableError("no attempts made")

    async def _json(self, method: str, path: str, **kwargs) -> dict:
        return _decode(await self._request(method, path, **kwargs))

    # ─ Liveness ───────────────────────────────────────────────────────────

    async def health(self) -> dict:
        return await self._json("GET", "/health")

    # ─ Versioned per-type rows ────────────────────────────────────────────

    async def upload(
        self,
        user_id: str,
        data_type: str,
        encrypted_data: str,
        version: int,
        checksum: str,
    ) -> int:
        """Replace the (user_id, data_type) row. Returns the accepted version."""
        data = await self._json("POST", "/sync/upload", json={
            "userId": user_id,
            "dataType": data_type,
            "encryptedData": encrypted_data,
            "version": version,
            "checksum": checksum,
        })
        return int(data.get("version", version))

    async def download(
        self,
        user_id: str,
        data_type: str | None = None,
        since_version: int | None = None,
    ) -> list[dict]:
        params: dict = {"userId": user_id}
        if data_type:
            params["dataType"] = data_type
        if since_version is not None:
            params["sinceVersion"] = since_version
        resp = await self._request("GET", "/sync/download", params=params)
        if resp.status_code == 404:
            # Unknown user: nothing uploaded yet
            return []
        return list(_decode(resp).get("data") or [])

    async def delete(self, user_id: str, data_type: str | None = None) -> dict:
        body: dict = {"userId": user_id}
        if data_type:
            body["dataType"] = data_type
        return await self._json("DELETE", "/sync/delete", json=body)

    # ─ Full snapshot ──────────────────────────────────────────────────────

    async def get_snapshot(self, sync_id: str) -> dict | None:
        """Stored {data, timestamp} for sync_id, or None if nothing is stored."""
        resp = await self._request("GET", f"/sync/{sync_id}")
        if resp.status_code == 404:
            return None
        return _decode(resp)

    async def put_snapshot(self, sync_id: str, data: str, timestamp: int) -> dict:
        return await self._json("POST", "/sync", json={
            "id": sync_id,
            "data": data,
            "timestamp": timestamp,
        })

    async def delete_snapshot(self, sync_id: str) -> bool:
        resp = await self._request("DELETE", f"/sync/{sync_id}")
        if resp.status_code == 404:
            return False
        if resp.status_code >= 400:
            raise SyncHTTPError(resp.status_code, _error_text(resp))
        return True


def _error_text(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(body, dict):
        return str(body.get("error") or body.get("message") or body.get("detail") or "")
    return ""


def _decode(resp: httpx.Response) -> dict:
    """JSON object body of a successful response; anything else is a SyncHTTPError."""
    if resp.status_code >= 400:
        raise SyncHTTPError(resp.status_code, _error_text(resp))
    try:
        body = resp.json()
    except ValueError as e:
        raise SyncHTTPError(resp.status_code, "response is not JSON") from e
    if not isinstance(body, dict):
        raise SyncHTTPError(resp.status_code, "unexpected response shape")
    return body
