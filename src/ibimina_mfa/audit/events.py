"""Audit events for MFA decisions.

One event is written for every initiate and verify call that reaches a
factor, whatever the outcome.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class AuditAction(Enum):
    """Outcome recorded for an MFA call."""

    SUCCESS = "MFA_SUCCESS"
    FAILED = "MFA_FAILED"
    RATE_LIMITED = "MFA_RATE_LIMITED"
    ISSUED = "MFA_ISSUED"


@dataclass(frozen=True)
class AuditEvent:
    """MFA audit event.

    Attributes:
        user_id: Member the decision was about.
        factor: Factor kind value (``"totp"``, ``"email"``, ...).
        action: Outcome of the call.
        diff: Opaque context (consumed step, remaining backup codes,
            failure code). Never contains secrets or codes.
        timestamp: When the decision was made (UTC).
    """

    user_id: str
    factor: str | None
    action: AuditAction
    diff: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def success(self) -> bool:
        return self.action in (AuditAction.SUCCESS, AuditAction.ISSUED)

    def to_dict(self) -> dict[str, Any]:
        """Convert event to dictionary for serialization."""
        return {
            "user_id": self.user_id,
            "factor": self.factor,
            "action": self.action.value,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuditEvent:
        """Create event from dictionary.

        Raises:
            ValueError: If required fields are missing or invalid.
        """
        action_str = data.get("action")
        if action_str is None:
            raise ValueError("Missing required 'action'")
        try:
            action = AuditAction(action_str)
        except ValueError as e:
            raise ValueError(f"Invalid action: {action_str}") from e

        user_id = data.get("user_id")
        if not user_id:
            raise ValueError("Missing required 'user_id'")

        timestamp = data.get("timestamp")
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp)
            if timestamp.tzinfo is None:
                timestamp = timestamp.replace(tzinfo=timezone.utc)
        elif timestamp is None:
            timestamp = datetime.now(timezone.utc)

        return cls(
            user_id=user_id,
            factor=data.get("factor"),
            action=action,
            diff=data.get("diff", {}),
            timestamp=timestamp,
        )


__all__: list[str] = ["AuditAction", "AuditEvent"]
