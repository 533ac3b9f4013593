"""Best-effort audit recorder.

Auditability is subordinate to availability: a member must not be locked out
because the audit sink is down. Sink failures are logged locally and
swallowed; they never change an MFA decision.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any

from .events import AuditAction, AuditEvent

if TYPE_CHECKING:
    from datetime import datetime

    from ..ports import IAuditSink

logger = logging.getLogger("ibimina_mfa.audit")


class AuditRecorder:
    """Writes MFA audit events to a sink with a bounded timeout.

    Example:
        ```python
        recorder = AuditRecorder(InMemoryAuditSink(), timeout=2.0)
        await recorder.record(AuditAction.SUCCESS, "user-1", "totp", {"step": 101})
        ```
    """

    def __init__(self, sink: IAuditSink, *, timeout: float = 5.0) -> None:
        self.sink = sink
        self.timeout = timeout

    async def record(
        self,
        action: AuditAction,
        user_id: str,
        factor: str | None,
        diff: dict[str, Any] | None = None,
        *,
        timestamp: datetime | None = None,
    ) -> bool:
        """Record one event.

        Returns:
            True if the sink accepted the event, False if it was dropped.
        """
        event = AuditEvent(
            user_id=user_id,
            factor=factor,
            action=action,
            diff=dict(diff or {}),
            **({"timestamp": timestamp} if timestamp is not None else {}),
        )
        try:
            await asyncio.wait_for(self.sink.record(event), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Audit sink timed out after %.1fs; dropped %s for user %s (factor=%s)",
                self.timeout,
                action.value,
                user_id,
                factor,
            )
            return False
        except Exception:  # noqa: BLE001
            logger.exception(
                "Audit sink failed; dropped %s for user %s (factor=%s)",
                action.value,
                user_id,
                factor,
            )
            return False
        return True


__all__: list[str] = ["AuditRecorder"]
