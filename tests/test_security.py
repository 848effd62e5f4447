import io

import pytest
from hypothesis import given
from hypothesis import strategies as st

from Sheetbridge.errors import DisallowedHostError, JSONTooDeep, PayloadTooLarge, RateLimitExceeded
from Sheetbridge.metrics import get_counter
from Sheetbridge.security import SlidingWindowRateLimiter, SSRFGuard, read_limited, validate_json_depth


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class AsyncBytes:
    """Minimal stand-in for an UploadFile."""

    def __init__(self, data: bytes):
        self._buf = io.BytesIO(data)
        self.reads = 0

    async def read(self, size: int = -1) -> bytes:
        self.reads += 1
        return self._buf.read(size)


# --- rate limiting ---


def test_limiter_allows_n_then_rejects():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(5, 60, name="import", clock=clock)
    for _ in range(5):
        limiter.check("alice")
    with pytest.raises(RateLimitExceeded) as ei:
        limiter.check("alice")
    assert ei.value.retry_after == 60
    assert get_counter("ratelimit.import.rejected") == 1


def test_limiter_is_per_user():
    limiter = SlidingWindowRateLimiter(1, 60, clock=FakeClock())
    limiter.check("alice")
    limiter.check("bob")
    with pytest.raises(RateLimitExceeded):
        limiter.check("alice")


def test_limiter_window_slides():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(2, 60, clock=clock)
    limiter.check("alice")
    clock.now = 30
    limiter.check("alice")
    assert limiter.remaining("alice") == 0
    clock.now = 61
    # The first hit left the window
    assert limiter.remaining("alice") == 1
    limiter.check("alice")
    with pytest.raises(RateLimitExceeded):
        limiter.check("alice")


def test_rejected_requests_do_not_consume_quota():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(1, 10, clock=clock)
    limiter.check("u")
    for _ in range(3):
        with pytest.raises(RateLimitExceeded):
            limiter.check("u")
    clock.now = 11
    limiter.check("u")


def test_idle_users_are_forgotten():
    clock = FakeClock()
    limiter = SlidingWindowRateLimiter(3, 60, clock=clock)
    for i in range(50):
        limiter.check(f"user{i}")
    assert limiter.tracked_users == 50

    clock.now = 61
    limiter.check("alice")
    assert limiter.tracked_users == 1
    assert limiter.remaining("alice") == 2


def test_limiter_rejects_zero_limit():
    with pytest.raises(ValueError):
        SlidingWindowRateLimiter(0)


# --- payload size ---


async def test_read_limited_returns_body_within_limit():
    assert await read_limited(AsyncBytes(b"x" * 100), 100) == b"x" * 100


async def test_read_limited_stops_once_limit_is_exceeded():
    upload = AsyncBytes(b"x" * (64 * 1024 * 4))
    with pytest.raises(PayloadTooLarge):
        await read_limited(upload, 64 * 1024 + 1)
    assert upload.reads == 2


async def test_declared_size_rejects_without_reading():
    upload = AsyncBytes(b"small")
    with pytest.raises(PayloadTooLarge) as ei:
        await read_limited(upload, 10, declared_size=11)
    assert upload.reads == 0
    assert ei.value.status_code == 413


# --- JSON depth ---


def test_depth_at_limit_passes_and_beyond_fails():
    validate_json_depth(b"[" * 100 + b"]" * 100, 100)
    with pytest.raises(JSONTooDeep):
        validate_json_depth(b"[" * 101 + b"]" * 101, 100)


def test_brackets_inside_strings_are_ignored():
    payload = b'{"a": "' + b"{[" * 200 + b'\\" still string ]"}'
    validate_json_depth(payload, 5)


def test_mixed_nesting_counts_both_kinds():
    with pytest.raises(JSONTooDeep):
        validate_json_depth(b'{"a": [{"b": [1]}]}', 3)
    validate_json_depth(b'{"a": [{"b": [1]}]}', 4)


def test_non_json_payloads_are_not_checked():
    validate_json_depth(b"<xml>" + b"[" * 500, 1)
    validate_json_depth(b"", 1)


@given(st.integers(min_value=1, max_value=150))
def test_depth_matches_nesting(depth):
    payload = b'{"k":' * depth + b"1" + b"}" * depth
    if depth > 100:
        with pytest.raises(JSONTooDeep):
            validate_json_depth(payload, 100)
    else:
        validate_json_depth(payload, 100)


# --- SSRF ---


@pytest.mark.parametrize(
    "url",
    [
        "http://localhost:8181",
        "http://api.localhost",
        "http://127.0.0.1:9000",
        "http://10.0.0.5",
        "http://192.168.1.20",
        "http://172.16.3.4",
        "http://169.254.169.254/latest/meta-data",
        "http://[::1]:8080",
        "http://0.0.0.0",
    ],
)
def test_internal_targets_are_rejected_even_if_allow_listed(url):
    guard = SSRFGuard(["localhost", "127.0.0.1", "10.0.0.5", "adapters.example.org"])
    with pytest.raises(DisallowedHostError) as ei:
        guard.validate_url(url)
    assert ei.value.status_code == 403


@pytest.mark.parametrize("url", ["ftp://adapters.example.org", "file:///etc/passwd", "http://"])
def test_bad_scheme_or_missing_host(url):
    with pytest.raises(DisallowedHostError):
        SSRFGuard(["adapters.example.org"]).validate_url(url)


def test_allow_list_accepts_exact_and_subdomains_only():
    guard = SSRFGuard(["adapters.example.org"])
    guard.validate_url("https://adapters.example.org/v1")
    guard.validate_url("http://foundry.adapters.example.org:8181")
    for bad in ("http://evil-adapters.example.org", "http://example.org", "http://adapters.example.org.evil.com"):
        with pytest.raises(DisallowedHostError):
            guard.validate_url(bad)


def test_empty_allow_list_rejects_everything():
    with pytest.raises(DisallowedHostError):
        SSRFGuard([]).validate_url("https://adapters.example.org")


def test_dns_resolution_to_internal_address_is_rejected(monkeypatch):
    guard = SSRFGuard(["adapters.example.org"], resolve_dns=True)
    monkeypatch.setattr(
        "Sheetbridge.security.socket.getaddrinfo",
        lambda host, port: [(2, 1, 6, "", ("10.1.2.3", 0))],
    )
    with pytest.raises(DisallowedHostError, match="resolves to internal"):
        guard.validate_url("http://adapters.example.org")


async def test_async_validation_matches_sync():
    guard = SSRFGuard(["adapters.example.org"])
    await guard.avalidate_url("http://adapters.example.org")
    with pytest.raises(DisallowedHostError):
        await guard.avalidate_url("http://127.0.0.1")
