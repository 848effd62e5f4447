"""Error taxonomy for the import/export pipeline.

Five families, each with its own base class so callers (mostly the HTTP
layer) can map a whole family to one response:

- configuration: the caller referenced something that does not exist or
  cannot do what was asked
- availability: the right adapter exists but cannot serve now
- transport: the adapter service failed or answered garbage
- data: reconciliation or persistence failed during an import
- security: the request was rejected before any business logic ran
"""

from __future__ import annotations


class SheetbridgeError(Exception):
    """Root of every error raised deliberately by this package."""


# --- configuration ---


class AdapterConfigurationError(SheetbridgeError, ValueError):
    pass


class AdapterNotFoundError(AdapterConfigurationError, LookupError):
    def __init__(self, adapter_id: str):
        super().__init__(f"adapter not found: {adapter_id}")
        self.adapter_id = adapter_id


class CapabilityNotSupportedError(AdapterConfigurationError):
    def __init__(self, adapter_id: str, capability: str):
        super().__init__(f"adapter {adapter_id} does not support {capability}")
        self.adapter_id = adapter_id
        self.capability = capability


# --- availability ---


class AdapterUnavailableError(SheetbridgeError, RuntimeError):
    def __init__(self, adapter_id: str, reason: str = ""):
        msg = f"adapter {adapter_id} is unhealthy"
        if reason:
            msg = f"{msg}: {reason}"
        super().__init__(msg)
        self.adapter_id = adapter_id
        self.reason = reason


class DetectionFailedError(SheetbridgeError, RuntimeError):
    """No adapter reached the acceptance threshold.

    ``best_confidence`` is the highest score any adapter returned (0.0 when
    none answered) and is shown to the user as a hint.
    """

    def __init__(self, message: str, *, best_confidence: float = 0.0, adapter_id: str | None = None):
        super().__init__(message)
        self.best_confidence = best_confidence
        self.adapter_id = adapter_id


# --- transport ---


class AdapterTransportError(SheetbridgeError, RuntimeError):
    def __init__(
        self,
        adapter_id: str,
        message: str,
        *,
        status_code: int | None = None,
        body: str = "",
    ):
        super().__init__(f"adapter {adapter_id}: {message}")
        self.adapter_id = adapter_id
        self.status_code = status_code
        self.body = body


class AdapterResponseError(AdapterTransportError):
    """The adapter answered 2xx but the payload could not be decoded."""


# --- data ---


class ReconciliationError(SheetbridgeError, RuntimeError):
    def __init__(self, item_type: str, name: str, cause: BaseException | None = None):
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"failed to reconcile {item_type} '{name}'{detail}")
        self.item_type = item_type
        self.name = name


class ImportFailedError(SheetbridgeError, RuntimeError):
    def __init__(self, message: str, *, import_id: int | None = None):
        super().__init__(message)
        self.import_id = import_id


# --- security ---


class SecurityRejection(SheetbridgeError):
    status_code = 400


class RateLimitExceeded(SecurityRejection):
    status_code = 429

    def __init__(self, user_id: str, retry_after: float):
        super().__init__(f"rate limit exceeded for user {user_id}")
        self.user_id = user_id
        self.retry_after = retry_after


class PayloadTooLarge(SecurityRejection):
    status_code = 413

    def __init__(self, max_bytes: int):
        super().__init__(f"payload exceeds {max_bytes} bytes")
        self.max_bytes = max_bytes


class JSONTooDeep(SecurityRejection):
    status_code = 400

    def __init__(self, max_depth: int):
        super().__init__(f"JSON nesting exceeds maximum depth of {max_depth}")
        self.max_depth = max_depth


class DisallowedHostError(SecurityRejection):
    status_code = 403

    def __init__(self, url: str, reason: str):
        super().__init__(f"adapter URL {url!r} rejected: {reason}")
        self.url = url
        self.reason = reason
