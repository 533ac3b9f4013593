"""Tests for audit events, the in-memory sink and the best-effort recorder."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone

import pytest

from ibimina_mfa.audit import (
    AuditAction,
    AuditEvent,
    AuditRecorder,
    InMemoryAuditSink,
)


class TestAuditEvent:
    def test_to_dict_from_dict(self) -> None:
        event = AuditEvent(
            user_id="member-1",
            factor="totp",
            action=AuditAction.SUCCESS,
            diff={"step": 101},
        )

        restored = AuditEvent.from_dict(event.to_dict())

        assert restored == event
        assert event.to_dict()["action"] == "MFA_SUCCESS"

    def test_from_dict_naive_timestamp_is_utc(self) -> None:
        event = AuditEvent.from_dict(
            {
                "user_id": "member-1",
                "action": "MFA_FAILED",
                "timestamp": "2026-01-01T10:00:00",
            }
        )
        assert event.timestamp.tzinfo is timezone.utc

    def test_from_dict_missing_action(self) -> None:
        with pytest.raises(ValueError, match="action"):
            AuditEvent.from_dict({"user_id": "member-1"})

    def test_from_dict_invalid_action(self) -> None:
        with pytest.raises(ValueError, match="Invalid action"):
            AuditEvent.from_dict({"user_id": "member-1", "action": "LOGIN"})

    def test_from_dict_missing_user(self) -> None:
        with pytest.raises(ValueError, match="user_id"):
            AuditEvent.from_dict({"action": "MFA_ISSUED"})

    def test_success_property(self) -> None:
        assert AuditEvent("u", "email", AuditAction.ISSUED).success
        assert not AuditEvent("u", "email", AuditAction.RATE_LIMITED).success


class TestInMemoryAuditSink:
    @pytest.mark.asyncio
    async def test_events_are_most_recent_first(
        self, audit_sink: InMemoryAuditSink
    ) -> None:
        for action in (AuditAction.ISSUED, AuditAction.FAILED, AuditAction.SUCCESS):
            await audit_sink.record(AuditEvent("member-1", "email", action))
        await audit_sink.record(AuditEvent("member-2", "email", AuditAction.ISSUED))

        events = await audit_sink.get_events("member-1")

        assert [e.action for e in events] == [
            AuditAction.SUCCESS,
            AuditAction.FAILED,
            AuditAction.ISSUED,
        ]

    @pytest.mark.asyncio
    async def test_filter_and_limit(self, audit_sink: InMemoryAuditSink) -> None:
        for _ in range(3):
            await audit_sink.record(AuditEvent("member-1", "totp", AuditAction.FAILED))
        await audit_sink.record(AuditEvent("member-1", "totp", AuditAction.SUCCESS))

        failed = await audit_sink.get_events(
            "member-1", actions=[AuditAction.FAILED], limit=2
        )

        assert len(failed) == 2
        assert all(e.action is AuditAction.FAILED for e in failed)

    @pytest.mark.asyncio
    async def test_recent_failures(self, audit_sink: InMemoryAuditSink) -> None:
        old = datetime.now(timezone.utc) - timedelta(hours=1)
        await audit_sink.record(
            AuditEvent("member-1", "totp", AuditAction.FAILED, timestamp=old)
        )
        await audit_sink.record(
            AuditEvent("member-1", "email", AuditAction.RATE_LIMITED)
        )
        await audit_sink.record(AuditEvent("member-1", "totp", AuditAction.SUCCESS))

        recent = await audit_sink.get_recent_failures("member-1", minutes=15)

        assert [e.action for e in recent] == [AuditAction.RATE_LIMITED]

    @pytest.mark.asyncio
    async def test_counts_and_clear(self, audit_sink: InMemoryAuditSink) -> None:
        await audit_sink.record(AuditEvent("member-1", "totp", AuditAction.FAILED))
        await audit_sink.record(AuditEvent("member-2", "totp", AuditAction.FAILED))

        assert audit_sink.count() == 2
        assert audit_sink.count_by_action(AuditAction.FAILED) == 2
        assert audit_sink.count_by_user("member-1") == 1

        audit_sink.clear()
        assert audit_sink.count() == 0


class BrokenSink:
    async def record(self, event: AuditEvent) -> None:
        raise ConnectionError("audit database is down")

    async def get_events(self, user_id, *, actions=None, limit=100):  # noqa: ANN001
        return []


class SlowSink(BrokenSink):
    async def record(self, event: AuditEvent) -> None:
        await asyncio.sleep(1)


class TestAuditRecorder:
    @pytest.mark.asyncio
    async def test_records_event(self, audit_sink: InMemoryAuditSink) -> None:
        recorder = AuditRecorder(audit_sink)

        ok = await recorder.record(
            AuditAction.SUCCESS, "member-1", "backup", {"remaining_backup_codes": 9}
        )

        assert ok is True
        [event] = audit_sink.events
        assert event.diff == {"remaining_backup_codes": 9}

    @pytest.mark.asyncio
    async def test_sink_failure_is_swallowed(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        """A broken sink never fails the decision but is logged locally."""
        recorder = AuditRecorder(BrokenSink())

        with caplog.at_level(logging.ERROR, logger="ibimina_mfa.audit"):
            ok = await recorder.record(AuditAction.FAILED, "member-1", "totp")

        assert ok is False
        assert "Audit sink failed" in caplog.text

    @pytest.mark.asyncio
    async def test_sink_timeout_is_swallowed(
        self, caplog: pytest.LogCaptureFixture
    ) -> None:
        recorder = AuditRecorder(SlowSink(), timeout=0.01)

        with caplog.at_level(logging.WARNING, logger="ibimina_mfa.audit"):
            ok = await recorder.record(AuditAction.SUCCESS, "member-1", "totp")

        assert ok is False
        assert "timed out" in caplog.text
