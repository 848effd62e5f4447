"""Request guards applied before any import/export business logic runs."""

from __future__ import annotations

import asyncio
import ipaddress
import socket
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Protocol
from urllib.parse import urlsplit

import structlog

from Sheetbridge.errors import DisallowedHostError, JSONTooDeep, PayloadTooLarge, RateLimitExceeded
from Sheetbridge.metrics import inc_counter

log = structlog.get_logger()

_READ_CHUNK = 64 * 1024


class SlidingWindowRateLimiter:
    """Per-user sliding window: at most ``limit`` requests per ``window_seconds``."""

    def __init__(
        self,
        limit: int,
        window_seconds: float = 60.0,
        *,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ):
        if limit < 1:
            raise ValueError("limit must be >= 1")
        self.limit = limit
        self.window_seconds = window_seconds
        self.name = name
        self._clock = clock
        self._hits: dict[str, list[float]] = {}
        self._last_sweep = clock()

    def _sweep(self, now: float, cutoff: float) -> None:
        # Forget users with no hits inside the window, at most once per window
        if now - self._last_sweep < self.window_seconds:
            return
        self._last_sweep = now
        for user_id in [u for u, hits in self._hits.items() if not hits or hits[-1] <= cutoff]:
            del self._hits[user_id]

    def check(self, user_id: str) -> None:
        """Record a request for ``user_id`` or raise RateLimitExceeded."""
        now = self._clock()
        cutoff = now - self.window_seconds
        self._sweep(now, cutoff)
        recent = [t for t in self._hits.get(user_id, []) if t > cutoff]
        if len(recent) >= self.limit:
            self._hits[user_id] = recent
            inc_counter(f"ratelimit.{self.name}.rejected")
            log.warning(
                "ratelimit.rejected",
                limiter=self.name,
                user_id=user_id,
                limit=self.limit,
                window_seconds=self.window_seconds,
            )
            raise RateLimitExceeded(user_id, retry_after=self.window_seconds)
        recent.append(now)
        self._hits[user_id] = recent

    def remaining(self, user_id: str) -> int:
        cutoff = self._clock() - self.window_seconds
        used = sum(1 for t in self._hits.get(user_id, []) if t > cutoff)
        return max(0, self.limit - used)

    @property
    def tracked_users(self) -> int:
        return len(self._hits)

    def reset(self) -> None:
        self._hits.clear()


@dataclass
class RateLimiters:
    detect: SlidingWindowRateLimiter
    import_: SlidingWindowRateLimiter
    export: SlidingWindowRateLimiter

    @classmethod
    def from_settings(cls, settings) -> RateLimiters:
        window = settings.rate_limit_window_seconds
        return cls(
            detect=SlidingWindowRateLimiter(settings.rate_limit_detect, window, name="detect"),
            import_=SlidingWindowRateLimiter(settings.rate_limit_import, window, name="import"),
            export=SlidingWindowRateLimiter(settings.rate_limit_export, window, name="export"),
        )


class _AsyncReadable(Protocol):
    async def read(self, size: int = -1) -> bytes: ...


async def read_limited(
    upload: _AsyncReadable,
    max_bytes: int,
    *,
    declared_size: int | None = None,
) -> bytes:
    """Read an upload in chunks, failing as soon as ``max_bytes`` is exceeded.

    ``declared_size`` (e.g. a Content-Length or UploadFile.size) lets an
    obviously oversized body be rejected before reading anything.
    """
    if declared_size is not None and declared_size > max_bytes:
        inc_counter("security.payload_too_large")
        raise PayloadTooLarge(max_bytes)
    buf = bytearray()
    while True:
        chunk = await upload.read(_READ_CHUNK)
        if not chunk:
            break
        buf.extend(chunk)
        if len(buf) > max_bytes:
            inc_counter("security.payload_too_large")
            raise PayloadTooLarge(max_bytes)
    return bytes(buf)


def _looks_like_json(data: bytes) -> bool:
    stripped = data.lstrip()
    return stripped[:1] in (b"{", b"[")


def validate_json_depth(data: bytes, max_depth: int = 100) -> None:
    """Fail if object/array nesting in ``data`` exceeds ``max_depth``.

    Scans the bytes once, tracking depth outside string literals, so the
    payload is never materialized. Non-JSON payloads (anything not starting
    with ``{`` or ``[``) are left to the adapters.
    """
    if not _looks_like_json(data):
        return
    depth = 0
    in_string = False
    escaped = False
    for byte in data:
        if in_string:
            if escaped:
                escaped = False
            elif byte == 0x5C:  # backslash
                escaped = True
            elif byte == 0x22:  # quote
                in_string = False
            continue
        if byte == 0x22:
            in_string = True
        elif byte in (0x7B, 0x5B):  # { [
            depth += 1
            if depth > max_depth:
                inc_counter("security.json_too_deep")
                raise JSONTooDeep(max_depth)
        elif byte in (0x7D, 0x5D):  # } ]
            depth -= 1


def _is_internal_ip(ip: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    return (
        ip.is_loopback
        or ip.is_private
        or ip.is_link_local
        or ip.is_reserved
        or ip.is_multicast
        or ip.is_unspecified
    )


class SSRFGuard:
    """Validates adapter base URLs before any request is sent to them.

    A host must appear on the allow-list (exact match or a subdomain of an
    entry) and must not be localhost or a loopback, private, link-local or
    otherwise reserved address. Local development setups disable the guard
    through ``ssrf_protection = false`` instead of allow-listing 127.0.0.1.
    """

    def __init__(self, allowed_hosts: Iterable[str], *, resolve_dns: bool = False):
        self.allowed_hosts = {h.lower().strip() for h in allowed_hosts if h and h.strip()}
        self.resolve_dns = resolve_dns

    def _allow_listed(self, host: str) -> bool:
        return any(host == a or host.endswith("." + a) for a in self.allowed_hosts)

    def validate_url(self, url: str) -> None:
        try:
            parts = urlsplit(url)
        except ValueError as exc:
            raise DisallowedHostError(url, f"unparsable URL: {exc}") from exc
        if parts.scheme not in ("http", "https"):
            raise DisallowedHostError(url, f"scheme {parts.scheme or '<none>'} not allowed")
        host = (parts.hostname or "").lower()
        if not host:
            raise DisallowedHostError(url, "missing host")
        if host == "localhost" or host.endswith(".localhost"):
            inc_counter("security.ssrf_rejected")
            raise DisallowedHostError(url, "internal network access forbidden")
        try:
            ip = ipaddress.ip_address(host)
        except ValueError:
            ip = None
        if ip is not None and _is_internal_ip(ip):
            inc_counter("security.ssrf_rejected")
            raise DisallowedHostError(url, "internal network access forbidden")
        if not self._allow_listed(host):
            inc_counter("security.ssrf_rejected")
            raise DisallowedHostError(url, f"host {host} is not on the allow-list")

        if self.resolve_dns and ip is None:
            for addr in self._resolve(host):
                if _is_internal_ip(addr):
                    inc_counter("security.ssrf_rejected")
                    raise DisallowedHostError(url, f"{host} resolves to internal address {addr}")

    def _resolve(self, host: str) -> list[ipaddress.IPv4Address | ipaddress.IPv6Address]:
        try:
            infos = socket.getaddrinfo(host, None)
        except socket.gaierror as exc:
            raise DisallowedHostError(host, f"cannot resolve host: {exc}") from exc
        return [ipaddress.ip_address(info[4][0]) for info in infos]

    async def avalidate_url(self, url: str) -> None:
        """Async variant; runs DNS resolution in a worker thread when enabled."""
        if self.resolve_dns:
            await asyncio.to_thread(self.validate_url, url)
        else:
            self.validate_url(url)
