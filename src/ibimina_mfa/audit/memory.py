"""In-memory audit sink for testing and development."""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from ..ports import IAuditSink
from .events import AuditAction

if TYPE_CHECKING:
    from .events import AuditEvent


class InMemoryAuditSink(IAuditSink):
    """In-memory implementation of IAuditSink.

    Append-only: events are indexed by member and by action and are never
    mutated or removed (``clear`` exists for test cleanup only).

    Note:
        Events are stored in memory and will be lost on restart.
        Not suitable for production use.
    """

    def __init__(self) -> None:
        self._events: list[AuditEvent] = []
        self._by_user: dict[str, list[int]] = defaultdict(list)
        self._by_action: dict[str, list[int]] = defaultdict(list)

    async def record(self, event: AuditEvent) -> None:
        index = len(self._events)
        self._events.append(event)
        self._by_user[event.user_id].append(index)
        self._by_action[event.action.value].append(index)

    async def get_events(
        self,
        user_id: str,
        *,
        actions: list[AuditAction] | None = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        results: list[AuditEvent] = []
        for idx in reversed(self._by_user.get(user_id, [])):  # Most recent first
            event = self._events[idx]
            if actions and event.action not in actions:
                continue
            results.append(event)
            if len(results) >= limit:
                break
        return results

    async def get_recent_failures(
        self,
        user_id: str,
        *,
        minutes: int = 15,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Get failed and rate-limited events for a member within a window."""
        cutoff = datetime.now(timezone.utc) - timedelta(minutes=minutes)
        failures = {AuditAction.FAILED, AuditAction.RATE_LIMITED}

        results: list[AuditEvent] = []
        for idx in reversed(self._by_user.get(user_id, [])):
            event = self._events[idx]
            if event.timestamp < cutoff or event.action not in failures:
                continue
            results.append(event)
            if len(results) >= limit:
                break
        return results

    @property
    def events(self) -> list[AuditEvent]:
        """All events in insertion order (copy)."""
        return list(self._events)

    def clear(self) -> None:
        """Clear all stored events. Useful for test cleanup."""
        self._events.clear()
        self._by_user.clear()
        self._by_action.clear()

    def count(self) -> int:
        return len(self._events)

    def count_by_action(self, action: AuditAction) -> int:
        return len(self._by_action.get(action.value, []))

    def count_by_user(self, user_id: str) -> int:
        return len(self._by_user.get(user_id, []))


__all__: list[str] = ["InMemoryAuditSink"]
