"""
PaySentry error types.

Policy denials are results, not exceptions. The types below cover the
failure modes callers need to tell apart (retry later, abort, alert).
"""

from __future__ import annotations

import httpx


class PaySentryError(Exception):
    """Base error for all PaySentry operations."""
    pass


class ConfigError(PaySentryError):
    """Policy, alert rule, or environment configuration is malformed."""
    pass


class InvalidTransitionError(PaySentryError):
    """Transaction status change not allowed from its current status."""
    def __init__(self, tx_id: str, current: str, requested: str):
        self.tx_id = tx_id
        self.current = current
        self.requested = requested
        super().__init__(f"Transaction {tx_id} cannot move from {current} to {requested}")


# Facilitator errors
class FacilitatorError(PaySentryError):
    """Facilitator returned an error during verification/settlement."""
    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        super().__init__(f"Facilitator error ({status_code}): {message}")


class CircuitOpenError(PaySentryError):
    """Call rejected because the endpoint's circuit breaker is open.

    Retryable later: the endpoint is known-bad, the call itself never ran.
    """
    def __init__(self, key: str, remaining_ms: int):
        self.breaker_key = key
        self.remaining_ms = remaining_ms
        super().__init__(f'Circuit breaker open for "{key}" ({remaining_ms}ms until recovery)')


# Audit errors
class ProvenanceOrderError(PaySentryError):
    """A provenance stage was recorded before an earlier stage of the same transaction."""
    pass


class AuditIntegrityError(PaySentryError):
    """Durable audit log failed hash-chain verification."""
    pass


_RETRYABLE_STATUS = {429, 502, 503, 504}
_RETRYABLE_MARKERS = (
    "timeout",
    "timed out",
    "econnreset",
    "econnrefused",
    "network",
    "socket",
    "dns",
    "temporarily",
    "503",
    "502",
    "429",
)


def classify_retryability(error: BaseException) -> bool:
    """Return True when a collaborator failure may succeed if retried later.

    Network-class failures (timeouts, resets, 429/502/503) are retryable.
    Auth, validation and insufficient-funds failures are not. Unknown
    failures are treated as permanent.
    """
    if isinstance(error, CircuitOpenError):
        return True
    if isinstance(error, (httpx.TimeoutException, httpx.TransportError)):
        return True
    if isinstance(error, FacilitatorError):
        if error.status_code in _RETRYABLE_STATUS:
            return True
        if 400 <= error.status_code < 500:
            return False

    msg = str(error).lower()
    return any(marker in msg for marker in _RETRYABLE_MARKERS)
