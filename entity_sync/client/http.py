"""HTTP Sync Client — the persistence contract over a REST resource, using httpx."""

import logging
from typing import Any, Dict, Optional

import httpx

from entity_sync.client.base import SyncClient
from entity_sync.errors import PersistenceError
from entity_sync.models.mutation import SyncResult

logger = logging.getLogger(__name__)


class HttpSyncClient(SyncClient):
    """
    POST /<resource>/create, PATCH /<resource>/<id>, DELETE /<resource>/<id>.

    Responses are expected as {status, message?, data?}; a bare JSON object is
    taken as the data of a successful call. Non-2xx responses become failure
    envelopes, transport errors raise PersistenceError.
    """

    def __init__(
        self,
        resource: str,
        base_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: Optional[float] = None,
    ):
        if base_url is None or timeout_seconds is None:
            from entity_sync.config import get_settings
            settings = get_settings()
            base_url = base_url if base_url is not None else settings.api_base_url
            if timeout_seconds is None:
                timeout_seconds = settings.http_timeout_seconds
        self.resource = resource.strip("/")
        self._base_url = base_url.rstrip("/")
        self._owns_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout_seconds)

    def _url(self, path: str) -> str:
        return f"{self._base_url}/{self.resource}/{path}"

    async def _send(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> SyncResult:
        url = self._url(path)
        try:
            response = await self._http_client.request(method, url, json=payload)
        except httpx.HTTPError as e:
            logger.warning(f"{method} {url} failed: {e!r}")
            raise PersistenceError(f"{method} {url} failed: {e}") from e
        return self._envelope(response)

    @staticmethod
    def _envelope(response: httpx.Response) -> SyncResult:
        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict):
            body = {"data": body} if body is not None else {}

        if not response.is_success:
            message = body.get("message") or body.get("detail") or f"HTTP {response.status_code}"
            return SyncResult(status=False, message=str(message))

        if "status" in body and isinstance(body["status"], bool):
            status, data = body["status"], body.get("data")
        else:
            status, data = True, body.get("data", body)
        if data is not None and not isinstance(data, dict):
            data = {"value": data}
        return SyncResult(status=status, message=body.get("message"), data=data)

    async def create(self, payload: Dict[str, Any]) -> SyncResult:
        return await self._send("POST", "create", payload)

    async def update(self, object_id: str, payload: Dict[str, Any]) -> SyncResult:
        return await self._send("PATCH", object_id, payload)

    async def delete(self, object_id: str) -> SyncResult:
        return await self._send("DELETE", object_id)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http_client.aclose()
