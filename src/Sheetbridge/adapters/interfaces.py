"""Transport-neutral contract for talking to one adapter service."""

from __future__ import annotations

from typing import Protocol

from Sheetbridge.schemas import AdapterMetadata, BMRTCharacter, CharacterImport, DetectProbeResponse


class AdapterClient(Protocol):
    """One adapter reachable over some transport (HTTP today).

    Implementations raise ``AdapterTransportError`` for network failures and
    non-2xx answers, and ``AdapterResponseError`` for undecodable payloads.
    """

    async def fetch_metadata(self, metadata: AdapterMetadata, *, timeout: float) -> AdapterMetadata: ...

    async def detect(
        self, metadata: AdapterMetadata, data: bytes, filename: str, *, timeout: float
    ) -> DetectProbeResponse: ...

    async def import_character(
        self, metadata: AdapterMetadata, data: bytes, filename: str, *, timeout: float
    ) -> BMRTCharacter: ...

    async def export_character(
        self, metadata: AdapterMetadata, character: CharacterImport, *, timeout: float
    ) -> bytes: ...

    async def aclose(self) -> None: ...
