"""Verdicts returned by factor strategies and the dispatcher.

Each verdict carries the audit action and a secret-free audit diff, so the
dispatcher can record exactly one audit event per call without knowing the
factor's internals.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Union

from .audit.events import AuditAction
from .models import Channel, FactorKind, StateDelta


class ErrorKind(str, Enum):
    """Failure taxonomy; drives the HTTP status the session layer returns."""

    INPUT = "input"
    RATE_LIMIT = "rate_limit"
    VERIFICATION = "verification"
    INFRASTRUCTURE = "infrastructure"


class ErrorCode(str, Enum):
    """Stable machine-readable failure codes."""

    # Input
    UNSUPPORTED_FACTOR = "UNSUPPORTED_FACTOR"
    NOT_ENROLLED = "NOT_ENROLLED"
    CONTACT_REQUIRED = "CONTACT_REQUIRED"
    TOKEN_REQUIRED = "TOKEN_REQUIRED"  # noqa: S105
    INVALID_TOKEN_FORMAT = "INVALID_TOKEN_FORMAT"  # noqa: S105
    NOT_ENABLED = "NOT_ENABLED"
    INITIATE_NOT_SUPPORTED = "INITIATE_NOT_SUPPORTED"

    # Rate limiting
    RATE_LIMITED = "RATE_LIMITED"
    ATTEMPTS_EXCEEDED = "ATTEMPTS_EXCEEDED"

    # Verification
    INVALID_CODE = "INVALID_CODE"
    CODE_EXPIRED = "CODE_EXPIRED"
    REPLAY_BLOCKED = "REPLAY_BLOCKED"
    INVALID_BACKUP = "INVALID_BACKUP"
    CHALLENGE_INVALID = "CHALLENGE_INVALID"
    CHALLENGE_EXPIRED = "CHALLENGE_EXPIRED"
    CHALLENGE_CONSUMED = "CHALLENGE_CONSUMED"
    ORIGIN_MISMATCH = "ORIGIN_MISMATCH"
    AUDIENCE_MISMATCH = "AUDIENCE_MISMATCH"
    UNKNOWN_DEVICE = "UNKNOWN_DEVICE"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"

    # Infrastructure
    SECRET_UNAVAILABLE = "SECRET_UNAVAILABLE"  # noqa: S105
    ISSUE_FAILED = "ISSUE_FAILED"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"


_KIND_STATUS: dict[ErrorKind, int] = {
    ErrorKind.INPUT: 400,
    ErrorKind.RATE_LIMIT: 429,
    ErrorKind.VERIFICATION: 401,
    ErrorKind.INFRASTRUCTURE: 500,
}

# Codes whose status differs from their kind's default.
_CODE_STATUS: dict[ErrorCode, int] = {
    ErrorCode.NOT_ENABLED: 503,
    ErrorCode.INITIATE_NOT_SUPPORTED: 501,
}


@dataclass(frozen=True)
class InitiateSuccess:
    """A challenge was issued (or nothing needed issuing)."""

    factor: FactorKind
    channel: Channel | None = None
    expires_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    audit_diff: dict[str, Any] = field(default_factory=dict)

    ok = True
    status = 200
    audit_action = AuditAction.ISSUED

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": True,
            "factor": self.factor.value,
            "channel": self.channel.value if self.channel else self.factor.value,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            **self.metadata,
        }


@dataclass(frozen=True)
class VerifySuccess:
    """The second factor was proven.

    Attributes:
        factor: Verified factor.
        delta: State changes the caller must persist.
        metadata: Extra facts for the UI (e.g. remaining backup codes).
        trusted_device_token: Plaintext remember-device token, shown once.
    """

    factor: FactorKind
    delta: StateDelta = field(default_factory=StateDelta)
    metadata: dict[str, Any] = field(default_factory=dict)
    audit_diff: dict[str, Any] = field(default_factory=dict)
    trusted_device_token: str | None = None

    ok = True
    status = 200
    audit_action = AuditAction.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": True,
            "factor": self.factor.value,
            "audit_action": self.audit_action.value,
            "state_deltas": self.delta.to_dict(),
            **self.metadata,
        }


@dataclass(frozen=True)
class Failure:
    """A rejected initiate or verify call.

    Attributes:
        factor: Requested factor (None when it could not be parsed).
        code: Stable error code.
        kind: Error taxonomy.
        error: Short snake_case error for API payloads.
        reason: Actionable human explanation.
        retry_at: When a rate-limited call may be retried.
        audit_diff: Secret-free context for the audit trail.
    """

    factor: FactorKind | None
    code: ErrorCode
    kind: ErrorKind
    error: str = ""
    reason: str | None = None
    retry_at: datetime | None = None
    audit_diff: dict[str, Any] = field(default_factory=dict)

    ok = False

    def __post_init__(self) -> None:
        if not self.error:
            object.__setattr__(self, "error", self.code.value.lower())

    @property
    def status(self) -> int:
        return _CODE_STATUS.get(self.code, _KIND_STATUS[self.kind])

    @property
    def audit_action(self) -> AuditAction:
        if self.kind is ErrorKind.RATE_LIMIT:
            return AuditAction.RATE_LIMITED
        return AuditAction.FAILED

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "ok": False,
            "error": self.error,
            "code": self.code.value,
        }
        if self.reason:
            payload["reason"] = self.reason
        if self.retry_at is not None:
            payload["retry_at"] = self.retry_at.isoformat()
        return payload


def failure(
    factor: FactorKind | None,
    code: ErrorCode,
    kind: ErrorKind,
    reason: str | None = None,
    *,
    retry_at: datetime | None = None,
    **diff: Any,
) -> Failure:
    """Build a failure whose audit diff names the code and any extra context."""
    audit_diff: dict[str, Any] = {"code": code.value}
    if retry_at is not None:
        audit_diff["retry_at"] = retry_at.isoformat()
    audit_diff.update(diff)
    return Failure(
        factor=factor,
        code=code,
        kind=kind,
        reason=reason,
        retry_at=retry_at,
        audit_diff=audit_diff,
    )


InitiateResult = Union[InitiateSuccess, Failure]
VerifyResult = Union[VerifySuccess, Failure]


__all__: list[str] = [
    "ErrorKind",
    "ErrorCode",
    "InitiateSuccess",
    "VerifySuccess",
    "Failure",
    "failure",
    "InitiateResult",
    "VerifyResult",
]
