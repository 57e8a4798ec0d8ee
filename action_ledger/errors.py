"""Stable error taxonomy for the action ledger.

Every failure that crosses a component boundary is a ``LedgerError`` carrying a
machine-readable ``code``. The subclasses below are the taxonomy the store,
gate, broker, checkpoint service and packager raise; callers can either catch
the subclass or switch on ``code``.

Design goals:
- Stable `code` string suitable for programmatic handling.
- `retryable` tells ingestion/anchoring loops whether backoff makes sense.
- Structured `details` (stream, sequence, event_id, ...) for operators.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


# Canonicalization
LEDGER_E_CANON_NON_JSON = "LEDGER_E_CANON_NON_JSON"
LEDGER_E_CANON_DEPTH = "LEDGER_E_CANON_DEPTH"
LEDGER_E_CANON_NONFINITE = "LEDGER_E_CANON_NONFINITE"
LEDGER_E_CANON_KEY_TYPE = "LEDGER_E_CANON_KEY_TYPE"
LEDGER_E_CANON_KEY_COLLISION = "LEDGER_E_CANON_KEY_COLLISION"
LEDGER_E_CANON_INT_TOO_LARGE = "LEDGER_E_CANON_INT_TOO_LARGE"

# Hash-chain store
LEDGER_E_VALIDATION = "LEDGER_E_VALIDATION"
LEDGER_E_NOT_FOUND = "LEDGER_E_NOT_FOUND"
LEDGER_E_CONCURRENCY_CONFLICT = "LEDGER_E_CONCURRENCY_CONFLICT"
LEDGER_E_INTEGRITY_VIOLATION = "LEDGER_E_INTEGRITY_VIOLATION"
LEDGER_E_STORAGE_LOCKDOWN = "LEDGER_E_STORAGE_LOCKDOWN"

# Policy gate / approvals
LEDGER_E_POLICY_EVALUATOR_UNAVAILABLE = "LEDGER_E_POLICY_EVALUATOR_UNAVAILABLE"
LEDGER_E_APPROVAL_TIMEOUT = "LEDGER_E_APPROVAL_TIMEOUT"
LEDGER_E_APPROVAL_ALREADY_RESOLVED = "LEDGER_E_APPROVAL_ALREADY_RESOLVED"

# Anchoring
LEDGER_E_ANCHORING_UNAVAILABLE = "LEDGER_E_ANCHORING_UNAVAILABLE"


@dataclass
class LedgerError(Exception):
    """Base ledger exception with stable error code."""

    code: str
    message: str
    retryable: bool = False
    http_status: int = 400
    details: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "retryable": bool(self.retryable),
            "http_status": int(self.http_status),
        }
        if self.details:
            d["details"] = self.details
        return d

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class ValidationError(LedgerError):
    """Malformed event or request, rejected before it reaches the chain."""

    def __init__(self, message: str, *, code: str = LEDGER_E_VALIDATION, **details: Any):
        super().__init__(code=code, message=message, http_status=422, details=details)


class NotFound(LedgerError):
    def __init__(self, message: str, **details: Any):
        super().__init__(code=LEDGER_E_NOT_FOUND, message=message, http_status=404, details=details)


class ConcurrencyConflict(LedgerError):
    """Another writer advanced the stream; retry against the new tail."""

    def __init__(self, message: str, **details: Any):
        super().__init__(
            code=LEDGER_E_CONCURRENCY_CONFLICT,
            message=message,
            retryable=True,
            http_status=409,
            details=details,
        )


class IntegrityViolation(LedgerError):
    """A recomputed hash disagrees with what was stored or exported."""

    def __init__(self, message: str, **details: Any):
        super().__init__(
            code=LEDGER_E_INTEGRITY_VIOLATION,
            message=message,
            http_status=409,
            details=details,
        )

    @property
    def event_id(self) -> str:
        return str(self.details.get("event_id") or "")


class StorageLockdown(LedgerError):
    def __init__(self, message: str = "storage circuit breaker open", **details: Any):
        super().__init__(
            code=LEDGER_E_STORAGE_LOCKDOWN,
            message=message,
            retryable=True,
            http_status=503,
            details=details,
        )


class PolicyEvaluatorUnavailable(LedgerError):
    def __init__(self, message: str, **details: Any):
        super().__init__(
            code=LEDGER_E_POLICY_EVALUATOR_UNAVAILABLE,
            message=message,
            retryable=True,
            http_status=503,
            details=details,
        )


class ApprovalTimeout(LedgerError):
    def __init__(self, message: str, **details: Any):
        super().__init__(code=LEDGER_E_APPROVAL_TIMEOUT, message=message, http_status=408, details=details)


class ApprovalAlreadyResolved(LedgerError):
    def __init__(self, message: str, **details: Any):
        super().__init__(
            code=LEDGER_E_APPROVAL_ALREADY_RESOLVED,
            message=message,
            http_status=409,
            details=details,
        )


class AnchoringUnavailable(LedgerError):
    def __init__(self, message: str, **details: Any):
        super().__init__(
            code=LEDGER_E_ANCHORING_UNAVAILABLE,
            message=message,
            retryable=True,
            http_status=503,
            details=details,
        )

