"""HTTP implementation of the adapter contract."""

from __future__ import annotations

from typing import Any
from urllib.parse import quote

import httpx
import orjson
import structlog
from pydantic import ValidationError

from Sheetbridge.errors import AdapterResponseError, AdapterTransportError
from Sheetbridge.schemas import AdapterMetadata, BMRTCharacter, CharacterImport, DetectProbeResponse

log = structlog.get_logger()

_BODY_EXCERPT = 500


def _upload_headers(filename: str) -> dict[str, str]:
    # Header values must be ASCII; adapters unquote X-Filename
    return {"Content-Type": "application/octet-stream", "X-Filename": quote(filename)}


class HTTPAdapterClient:
    """Calls adapter services over HTTP with a shared connection pool.

    Redirects are never followed: an adapter that answers 3xx is treated as
    failing, so a compromised adapter cannot bounce requests to internal hosts.
    """

    def __init__(self, client: httpx.AsyncClient | None = None):
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            follow_redirects=False,
            limits=httpx.Limits(max_connections=10, max_keepalive_connections=2),
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(
        self,
        adapter: AdapterMetadata,
        method: str,
        path: str,
        *,
        timeout: float,
        content: bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        url = adapter.base_url.rstrip("/") + path
        try:
            resp = await self._client.request(
                method,
                url,
                content=content,
                headers=headers,
                timeout=timeout,
                follow_redirects=False,
            )
        except httpx.TimeoutException as exc:
            raise AdapterTransportError(adapter.id, f"{method} {path} timed out") from exc
        except httpx.HTTPError as exc:
            raise AdapterTransportError(adapter.id, f"{method} {path} failed: {exc}") from exc
        if not resp.is_success:
            body = resp.text[:_BODY_EXCERPT]
            log.warning(
                "adapters.http.non_2xx",
                adapter_id=adapter.id,
                path=path,
                status=resp.status_code,
            )
            raise AdapterTransportError(
                adapter.id,
                f"{method} {path} returned {resp.status_code}",
                status_code=resp.status_code,
                body=body,
            )
        return resp

    @staticmethod
    def _decode(adapter: AdapterMetadata, resp: httpx.Response) -> Any:
        try:
            return orjson.loads(resp.content)
        except orjson.JSONDecodeError as exc:
            raise AdapterResponseError(
                adapter.id,
                f"invalid JSON from adapter: {exc}",
                status_code=resp.status_code,
                body=resp.text[:_BODY_EXCERPT],
            ) from exc

    async def fetch_metadata(self, metadata: AdapterMetadata, *, timeout: float) -> AdapterMetadata:
        resp = await self._request(metadata, "GET", "/metadata", timeout=timeout)
        payload = self._decode(metadata, resp)
        try:
            return AdapterMetadata.model_validate(payload)
        except ValidationError as exc:
            raise AdapterResponseError(metadata.id, f"invalid metadata: {exc}") from exc

    async def detect(
        self, metadata: AdapterMetadata, data: bytes, filename: str, *, timeout: float
    ) -> DetectProbeResponse:
        resp = await self._request(
            metadata,
            "POST",
            "/detect",
            timeout=timeout,
            content=data,
            headers=_upload_headers(filename),
        )
        try:
            return DetectProbeResponse.model_validate(self._decode(metadata, resp))
        except ValidationError as exc:
            raise AdapterResponseError(metadata.id, f"invalid detect response: {exc}") from exc

    async def import_character(
        self, metadata: AdapterMetadata, data: bytes, filename: str, *, timeout: float
    ) -> BMRTCharacter:
        resp = await self._request(
            metadata,
            "POST",
            "/import",
            timeout=timeout,
            content=data,
            headers=_upload_headers(filename),
        )
        try:
            return BMRTCharacter.model_validate(self._decode(metadata, resp))
        except ValidationError as exc:
            raise AdapterResponseError(
                metadata.id,
                f"invalid canonical payload: {exc}",
                status_code=resp.status_code,
                body=resp.text[:_BODY_EXCERPT],
            ) from exc

    async def export_character(
        self, metadata: AdapterMetadata, character: CharacterImport, *, timeout: float
    ) -> bytes:
        resp = await self._request(
            metadata,
            "POST",
            "/export",
            timeout=timeout,
            content=orjson.dumps(character.to_wire()),
            headers={"Content-Type": "application/json"},
        )
        return resp.content
