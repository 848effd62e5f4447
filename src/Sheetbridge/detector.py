"""Layered format detection with a content-signature cache.

Cheaper signals short-circuit the registry fan-out: an explicitly chosen
adapter, then an unambiguous file extension, then a recent cached verdict
for the same leading bytes.
"""

from __future__ import annotations

import hashlib
import time
from collections.abc import Callable
from dataclasses import dataclass

import structlog

from Sheetbridge.adapters.registry import AdapterRegistry
from Sheetbridge.errors import AdapterNotFoundError, AdapterUnavailableError
from Sheetbridge.metrics import inc_counter
from Sheetbridge.schemas import Capability
from Sheetbridge.services.lock_service import AsyncRWLock

log = structlog.get_logger()

SIGNATURE_PREFIX_BYTES = 1024


def content_signature(data: bytes) -> str:
    """SHA-256 hex digest of the first 1 KiB (or all of a shorter payload)."""
    return hashlib.sha256(data[:SIGNATURE_PREFIX_BYTES]).hexdigest()


def file_extension(filename: str) -> str:
    """Lower-cased extension including the dot, or "" when there is none."""
    base = filename.replace("\\", "/").rsplit("/", 1)[-1]
    idx = base.rfind(".")
    if idx <= 0:
        return ""
    return base[idx:].lower()


@dataclass(frozen=True)
class DetectionResult:
    adapter_id: str
    confidence: float
    method: str  # specified | extension | cache | fanout


@dataclass(frozen=True)
class _CacheEntry:
    adapter_id: str
    confidence: float
    cached_at: float


class _DetectionCache:
    """TTL cache keyed by content signature, bounded to ``max_entries``."""

    def __init__(
        self,
        *,
        ttl_s: float = 300.0,
        max_entries: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._entries: dict[str, _CacheEntry] = {}
        self._ttl_s = ttl_s
        self._max_entries = max_entries
        self._clock = clock
        self._lock = AsyncRWLock("detection_cache")

    async def get(self, signature: str) -> _CacheEntry | None:
        async with self._lock.read():
            entry = self._entries.get(signature)
        if entry is None:
            inc_counter("detector.cache.miss")
            return None
        if self._clock() - entry.cached_at > self._ttl_s:
            # Expired entries are ignored here and swept on the next insert
            inc_counter("detector.cache.expired")
            return None
        inc_counter("detector.cache.hit")
        return entry

    async def set(self, signature: str, adapter_id: str, confidence: float) -> None:
        now = self._clock()
        async with self._lock.write():
            expired = [k for k, e in self._entries.items() if now - e.cached_at > self._ttl_s]
            for k in expired:
                del self._entries[k]
                inc_counter("detector.cache.evicted")
            if signature not in self._entries and len(self._entries) >= self._max_entries:
                oldest = min(self._entries.items(), key=lambda kv: kv[1].cached_at)[0]
                del self._entries[oldest]
                inc_counter("detector.cache.evicted")
            self._entries[signature] = _CacheEntry(adapter_id, confidence, now)

    async def clear(self) -> None:
        async with self._lock.write():
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


class Detector:
    def __init__(
        self,
        registry: AdapterRegistry,
        *,
        cache_ttl_s: float = 300.0,
        cache_max_entries: int = 1024,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._registry = registry
        self._cache = _DetectionCache(ttl_s=cache_ttl_s, max_entries=cache_max_entries, clock=clock)

    @property
    def cache(self) -> _DetectionCache:
        return self._cache

    async def detect_format(
        self,
        data: bytes,
        filename: str = "",
        adapter_id: str | None = None,
    ) -> DetectionResult:
        if adapter_id:
            adapter = await self._registry.get(adapter_id)
            if adapter is None:
                raise AdapterNotFoundError(adapter_id)
            if not adapter.healthy:
                raise AdapterUnavailableError(adapter_id, adapter.last_error)
            inc_counter("detector.specified")
            return DetectionResult(adapter_id, 1.0, "specified")

        ext = file_extension(filename)
        if ext:
            matches = [
                a
                for a in await self._registry.get_healthy()
                if a.supports(Capability.detect) and a.handles_extension(ext)
            ]
            if len(matches) == 1:
                inc_counter("detector.extension")
                log.info("detector.extension_match", adapter_id=matches[0].id, extension=ext)
                return DetectionResult(matches[0].id, 1.0, "extension")
            if len(matches) > 1:
                log.info(
                    "detector.extension_ambiguous",
                    extension=ext,
                    adapters=[a.id for a in matches],
                )

        signature = content_signature(data)
        cached = await self._cache.get(signature)
        if cached is not None:
            return DetectionResult(cached.adapter_id, cached.confidence, "cache")

        inc_counter("detector.fanout")
        best_id, confidence = await self._registry.detect(data, filename)
        await self._cache.set(signature, best_id, confidence)
        log.info("detector.fanout_match", adapter_id=best_id, confidence=confidence)
        return DetectionResult(best_id, confidence, "fanout")
