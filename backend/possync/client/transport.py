"""
HTTP transport for the sync API.

Every call returns a tagged result instead of raising, so the engine can
match on the outcome of each upload:

    Accepted(row)            2xx
    VersionConflict(current) 409 carrying the current server row
    Rejected(kind, status)   401 / 403 / 400 / 404 / 422 / other 409
    TransientFailure(msg)    5xx, 408, 429, timeouts, connection errors
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Union

import httpx

from ..schema import get_schema
from .errors import ErrorKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Accepted:
    row: dict[str, Any]
    status: int = 200


@dataclass(frozen=True)
class VersionConflict:
    current: dict[str, Any]
    code: str = "VERSION_CONFLICT"


@dataclass(frozen=True)
class Rejected:
    kind: ErrorKind
    status: int
    message: str


@dataclass(frozen=True)
class TransientFailure:
    message: str
    status: int | None = None


@dataclass(frozen=True)
class PullPage:
    items: list[dict[str, Any]] = field(default_factory=list)
    synced_at: str | None = None


UploadResult = Union[Accepted, VersionConflict, Rejected, TransientFailure]

_TRANSIENT_4XX = {408, 425, 429}


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or f"HTTP {response.status_code}"
    if isinstance(body, dict) and body.get("error"):
        return str(body["error"])
    return f"HTTP {response.status_code}"


def _error_code(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    return body.get("code") if isinstance(body, dict) else None


def classify(response: httpx.Response) -> UploadResult:
    status = response.status_code
    if 200 <= status < 300:
        return Accepted(response.json(), status)

    message = _error_message(response)
    if status >= 500 or status in _TRANSIENT_4XX:
        return TransientFailure(message, status)

    if status == 409:
        try:
            body = response.json()
        except ValueError:
            body = {}
        current = body.get("current") if isinstance(body, dict) else None
        if current:
            return VersionConflict(current, body.get("code", "VERSION_CONFLICT"))
        return Rejected(ErrorKind.VALIDATION, status, message)

    if status == 401:
        return Rejected(ErrorKind.UNAUTHENTICATED, status, message)
    if status == 403:
        return Rejected(ErrorKind.TENANT_VIOLATION, status, message)
    if status == 422 and _error_code(response) == "RESOLVER_REFUSAL":
        return Rejected(ErrorKind.RESOLVER_REFUSAL, status, message)
    return Rejected(ErrorKind.VALIDATION, status, message)


class SyncApi:
    """Thin async client over /api/<collection> and /api/health."""

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        *,
        timeout: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
        )
        self.token = token

    @property
    def token(self) -> str | None:
        return self._token

    @token.setter
    def token(self, value: str | None) -> None:
        self._token = value
        if value:
            self._client.headers["Authorization"] = f"Bearer {value}"
        else:
            self._client.headers.pop("Authorization", None)

    async def close(self) -> None:
        await self._client.aclose()

    async def _send(self, method: str, url: str, **kwargs: Any) -> UploadResult:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            logger.info("%s %s timed out: %s", method, url, e)
            return TransientFailure(f"timeout: {e}")
        except httpx.TransportError as e:
            logger.info("%s %s failed: %s", method, url, e)
            return TransientFailure(f"network error: {e}")
        result = classify(response)
        if not isinstance(result, Accepted):
            logger.debug("%s %s -> %s", method, url, result)
        return result

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    async def create(self, entity: str, data: dict[str, Any]) -> UploadResult:
        collection = get_schema(entity).collection
        return await self._send("POST", f"/api/{collection}", json={**data, "baseVersion": 0})

    async def update(self, entity: str, server_id: str, data: dict[str, Any], base_version: int) -> UploadResult:
        collection = get_schema(entity).collection
        return await self._send(
            "PUT", f"/api/{collection}/{server_id}", json={**data, "baseVersion": base_version},
        )

    async def delete(self, entity: str, server_id: str, base_version: int) -> UploadResult:
        collection = get_schema(entity).collection
        return await self._send(
            "DELETE", f"/api/{collection}/{server_id}", params={"baseVersion": base_version},
        )

    async def pull(
        self,
        entity: str,
        modified_since: str | None = None,
        after_id: str | None = None,
        limit: int = 500,
    ) -> PullPage | Rejected | TransientFailure:
        collection = get_schema(entity).collection
        params: dict[str, Any] = {"limit": limit}
        if modified_since:
            params["modifiedSince"] = modified_since
        if after_id:
            params["afterId"] = after_id
        result = await self._send("GET", f"/api/{collection}", params=params)
        if isinstance(result, Accepted):
            return PullPage(result.row.get("items") or [], result.row.get("syncedAt"))
        if isinstance(result, VersionConflict):
            return Rejected(ErrorKind.VALIDATION, 409, "unexpected conflict on pull")
        return result

    async def health(self, timeout: float | None = None) -> bool:
        """Heartbeat probe; any failure means offline."""
        try:
            response = await self._client.get("/api/health", timeout=timeout)
        except httpx.HTTPError as e:
            logger.debug("Heartbeat failed: %s", e)
            return False
        return response.status_code == 200
