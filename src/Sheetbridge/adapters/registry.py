"""Directory of adapter services with health monitoring and detection fan-out."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime, timezone

import structlog

from Sheetbridge.config import Settings
from Sheetbridge.errors import (
    AdapterConfigurationError,
    AdapterNotFoundError,
    AdapterTransportError,
    AdapterUnavailableError,
    CapabilityNotSupportedError,
    DetectionFailedError,
    SheetbridgeError,
)
from Sheetbridge.metrics import inc_counter, record_adapter_call, timed
from Sheetbridge.schemas import (
    AdapterMetadata,
    BMRTCharacter,
    Capability,
    CharacterImport,
)
from Sheetbridge.security import SSRFGuard
from Sheetbridge.services.lock_service import AsyncRWLock

from .http_client import HTTPAdapterClient
from .interfaces import AdapterClient

log = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AdapterRegistry:
    """Single source of truth for which adapters exist and whether they are alive.

    Reads return copies, so callers never observe a health update half-applied.
    Network probes run outside the lock; only the resulting state changes
    take the exclusive side.
    """

    def __init__(
        self,
        *,
        client: AdapterClient | None = None,
        ssrf_guard: SSRFGuard | None = None,
        confidence_threshold: float = 0.7,
        detect_timeout: float = 2.0,
        transfer_timeout: float = 30.0,
        health_check_timeout: float = 5.0,
        health_check_interval: float = 30.0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._adapters: dict[str, AdapterMetadata] = {}
        self._lock = AsyncRWLock("adapter_registry")
        self._owns_client = client is None
        self._client: AdapterClient = client or HTTPAdapterClient()
        self._ssrf_guard = ssrf_guard
        self.confidence_threshold = confidence_threshold
        self.detect_timeout = detect_timeout
        self.transfer_timeout = transfer_timeout
        self.health_check_timeout = health_check_timeout
        self.health_check_interval = health_check_interval
        self._clock = clock
        self._health_task: asyncio.Task[None] | None = None
        self._health_stop: asyncio.Event | None = None

    @classmethod
    def from_settings(cls, settings: Settings, *, client: AdapterClient | None = None) -> AdapterRegistry:
        guard = None
        if settings.ssrf_protection:
            guard = SSRFGuard(settings.adapter_allowed_hosts, resolve_dns=settings.ssrf_resolve_dns)
        return cls(
            client=client,
            ssrf_guard=guard,
            confidence_threshold=settings.detect_confidence_threshold,
            detect_timeout=settings.detect_timeout_seconds,
            transfer_timeout=settings.transfer_timeout_seconds,
            health_check_timeout=settings.health_check_timeout_seconds,
            health_check_interval=settings.health_check_interval_seconds,
        )

    # ------------------------------------------------------------------
    # Bookkeeping
    # ------------------------------------------------------------------

    async def register(self, metadata: AdapterMetadata) -> None:
        """Insert or fully replace the adapter with ``metadata.id``."""
        if not metadata.id:
            raise AdapterConfigurationError("adapter ID is required")
        if not metadata.base_url:
            raise AdapterConfigurationError(f"adapter {metadata.id}: base URL is required")
        async with self._lock.write():
            replaced = metadata.id in self._adapters
            self._adapters[metadata.id] = metadata.model_copy(deep=True)
        log.info(
            "adapters.registered",
            adapter_id=metadata.id,
            base_url=metadata.base_url,
            capabilities=[c.value for c in metadata.capabilities],
            replaced=replaced,
        )

    async def get(self, adapter_id: str) -> AdapterMetadata | None:
        async with self._lock.read():
            adapter = self._adapters.get(adapter_id)
            return adapter.model_copy(deep=True) if adapter is not None else None

    async def get_all(self) -> list[AdapterMetadata]:
        async with self._lock.read():
            return [a.model_copy(deep=True) for a in self._adapters.values()]

    async def get_healthy(self) -> list[AdapterMetadata]:
        async with self._lock.read():
            return [a.model_copy(deep=True) for a in self._adapters.values() if a.healthy]

    async def _require(self, adapter_id: str, capability: Capability) -> AdapterMetadata:
        adapter = await self.get(adapter_id)
        if adapter is None:
            raise AdapterNotFoundError(adapter_id)
        if not adapter.healthy:
            raise AdapterUnavailableError(adapter_id, adapter.last_error)
        if not adapter.supports(capability):
            raise CapabilityNotSupportedError(adapter_id, capability.value)
        return adapter

    async def _check_host(self, adapter: AdapterMetadata) -> None:
        if self._ssrf_guard is not None:
            await self._ssrf_guard.avalidate_url(adapter.base_url)

    async def _mark(self, adapter_id: str, *, healthy: bool, error: str = "") -> None:
        async with self._lock.write():
            adapter = self._adapters.get(adapter_id)
            if adapter is None:
                return
            adapter.healthy = healthy
            adapter.last_error = error
            adapter.last_checked_at = self._clock()

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def _probe(self, adapter: AdapterMetadata) -> tuple[bool, str]:
        try:
            await self._check_host(adapter)
            await self._client.fetch_metadata(adapter, timeout=self.health_check_timeout)
        except (SheetbridgeError, asyncio.TimeoutError) as exc:
            return False, str(exc) or type(exc).__name__
        return True, ""

    async def health_check(self) -> dict[str, bool]:
        """Probe every adapter's metadata endpoint and record the outcome.

        Never raises for adapter failures; they only flip the health flag.
        Returns the new health state per adapter id.
        """
        adapters = await self.get_all()
        results = await asyncio.gather(*(self._probe(a) for a in adapters))
        now = self._clock()
        outcome: dict[str, bool] = {}
        async with self._lock.write():
            for adapter, (ok, error) in zip(adapters, results):
                current = self._adapters.get(adapter.id)
                if current is None:
                    continue
                if current.healthy != ok:
                    log.info(
                        "adapters.health.changed",
                        adapter_id=adapter.id,
                        healthy=ok,
                        error=error or None,
                    )
                current.healthy = ok
                current.last_error = error
                current.last_checked_at = now
                outcome[adapter.id] = ok
        for adapter_id, ok in outcome.items():
            inc_counter("adapters.health.ok" if ok else "adapters.health.failed")
            if not ok:
                log.warning("adapters.health.failed", adapter_id=adapter_id)
        return outcome

    async def _health_loop(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.health_check_interval)
            except asyncio.TimeoutError:
                pass
            if stop.is_set():
                return
            try:
                await self.health_check()
            except Exception:
                log.error("adapters.health.loop_error", exc_info=True)

    def start_health_checker(self) -> None:
        """Start the periodic health check; a no-op if it is already running."""
        if self._health_task is not None and not self._health_task.done():
            return
        self._health_stop = asyncio.Event()
        self._health_task = asyncio.create_task(
            self._health_loop(self._health_stop), name="adapter-health-checker"
        )
        log.info("adapters.health.started", interval_seconds=self.health_check_interval)

    async def stop_health_checker(self) -> None:
        """Stop the periodic health check. Safe to call repeatedly."""
        task, stop = self._health_task, self._health_stop
        self._health_task = None
        self._health_stop = None
        if task is None or stop is None:
            return
        stop.set()
        try:
            await asyncio.wait_for(task, timeout=self.health_check_timeout + 1.0)
        except asyncio.TimeoutError:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        log.info("adapters.health.stopped")

    @property
    def health_checker_running(self) -> bool:
        return self._health_task is not None and not self._health_task.done()

    # ------------------------------------------------------------------
    # Transfers
    # ------------------------------------------------------------------

    async def import_character(self, adapter_id: str, data: bytes, filename: str = "") -> BMRTCharacter:
        adapter = await self._require(adapter_id, Capability.import_)
        await self._check_host(adapter)
        try:
            with timed("adapters.import.ms"):
                character = await self._client.import_character(
                    adapter, data, filename, timeout=self.transfer_timeout
                )
        except AdapterTransportError as exc:
            record_adapter_call(adapter_id, "import", ok=False)
            await self._note_transport_failure(adapter_id, exc)
            raise
        record_adapter_call(adapter_id, "import", ok=True)
        return character

    async def export_character(self, adapter_id: str, character: CharacterImport) -> bytes:
        adapter = await self._require(adapter_id, Capability.export)
        await self._check_host(adapter)
        try:
            with timed("adapters.export.ms"):
                payload = await self._client.export_character(
                    adapter, character, timeout=self.transfer_timeout
                )
        except AdapterTransportError as exc:
            record_adapter_call(adapter_id, "export", ok=False)
            await self._note_transport_failure(adapter_id, exc)
            raise
        record_adapter_call(adapter_id, "export", ok=True)
        return payload

    async def _note_transport_failure(self, adapter_id: str, exc: AdapterTransportError) -> None:
        # Only connection-level failures say anything about liveness; a 4xx
        # means the adapter is up and rejected this particular payload.
        log.warning(
            "adapters.call.failed",
            adapter_id=adapter_id,
            status=exc.status_code,
            error=str(exc),
        )
        if exc.status_code is None and type(exc) is AdapterTransportError:
            await self._mark(adapter_id, healthy=False, error=str(exc))

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    async def _detect_one(self, adapter: AdapterMetadata, data: bytes, filename: str) -> float | None:
        inc_counter("adapters.detect.probe")
        try:
            await self._check_host(adapter)
            resp = await asyncio.wait_for(
                self._client.detect(adapter, data, filename, timeout=self.detect_timeout),
                timeout=self.detect_timeout,
            )
        except (SheetbridgeError, asyncio.TimeoutError) as exc:
            inc_counter("adapters.detect.probe_failed")
            log.warning(
                "adapters.detect.probe_failed",
                adapter_id=adapter.id,
                error=str(exc) or type(exc).__name__,
            )
            return None
        return resp.confidence

    async def detect(self, data: bytes, filename: str = "") -> tuple[str, float]:
        """Ask every healthy detect-capable adapter and keep the best answer.

        Probes run concurrently, each bounded by ``detect_timeout``. Ties go
        to the adapter registered first.
        """
        candidates = [a for a in await self.get_healthy() if a.supports(Capability.detect)]
        if not candidates:
            raise DetectionFailedError("no healthy adapters available", best_confidence=0.0)

        scores = await asyncio.gather(*(self._detect_one(a, data, filename) for a in candidates))
        best_id: str | None = None
        best_confidence = 0.0
        for adapter, confidence in zip(candidates, scores):
            if confidence is not None and confidence > best_confidence:
                best_id = adapter.id
                best_confidence = confidence

        if best_id is None or best_confidence < self.confidence_threshold:
            inc_counter("adapters.detect.below_threshold")
            raise DetectionFailedError(
                f"no adapter reached confidence threshold (best: {best_confidence:.2f})",
                best_confidence=best_confidence,
                adapter_id=best_id,
            )
        return best_id, best_confidence

    async def aclose(self) -> None:
        await self.stop_health_checker()
        if self._owns_client:
            await self._client.aclose()

