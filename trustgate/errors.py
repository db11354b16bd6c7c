"""
Error taxonomy.

Raised errors:
- NotFoundError: missing user / employee / device / alert (no retry)
- ValidationError: malformed input (no retry)
- DependencyUnavailableError: a store the engine reads from is unreachable
  (caller retries with backoff)
- ConflictError: a concurrent write won the race / duplicate decision

Policy denials are NOT exceptions: kill-switch and device checks return a
PolicyDecision carrying a machine reason code and a human message.
"""

from dataclasses import dataclass, field
from typing import Any, Optional


class TrustGateError(Exception):
    """Base class for all engine errors."""

    code: str = "internal_error"

    def __init__(self, message: str, *, code: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.details: dict[str, Any] = details or {}

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message, "details": self.details}


class NotFoundError(TrustGateError):
    code = "not_found"


class ValidationError(TrustGateError):
    code = "validation_error"


class DependencyUnavailableError(TrustGateError):
    code = "dependency_unavailable"


class ConflictError(TrustGateError):
    code = "conflict"


@dataclass(frozen=True)
class PolicyDecision:
    """Outcome of a policy gate. `allowed=False` is a structured denial."""

    allowed: bool
    reason_code: Optional[str] = None
    message: Optional[str] = None
    details: dict = field(default_factory=dict)

    @classmethod
    def allow(cls) -> "PolicyDecision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason_code: str, message: str, **details: Any) -> "PolicyDecision":
        return cls(allowed=False, reason_code=reason_code, message=message, details=details)
