"""Tests for the replay guard, issuance ledger and attempt limiter."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from ibimina_mfa.limits import (
    AttemptLimiter,
    InMemoryIssuanceLedger,
    InMemoryReplayGuard,
)
from ibimina_mfa.models import Channel
from ibimina_mfa.ports import IIssuanceLedger, IReplayGuard
from support import STEP_101


class TestInMemoryReplayGuard:
    @pytest.mark.asyncio
    async def test_step_claimed_once(self, replay_guard: InMemoryReplayGuard) -> None:
        assert isinstance(replay_guard, IReplayGuard)
        assert await replay_guard.claim_step("member-1", 101) is True
        assert await replay_guard.claim_step("member-1", 101) is False
        assert await replay_guard.claim_step("member-2", 101) is True

    @pytest.mark.asyncio
    async def test_concurrent_claims_have_one_winner(
        self, replay_guard: InMemoryReplayGuard
    ) -> None:
        results = await asyncio.gather(
            *(replay_guard.claim_backup("member-1", "hash-a") for _ in range(10))
        )
        assert results.count(True) == 1

    @pytest.mark.asyncio
    async def test_old_steps_are_pruned(self) -> None:
        guard = InMemoryReplayGuard(retain_steps=3)
        for step in range(100, 120):
            assert await guard.claim_step("member-1", step) is True

        assert guard.claimed_steps("member-1") == frozenset({116, 117, 118, 119})

    @pytest.mark.asyncio
    async def test_pruned_steps_stay_refused(self) -> None:
        guard = InMemoryReplayGuard(retain_steps=3)
        await guard.claim_step("member-1", 100)
        await guard.claim_step("member-1", 110)

        assert await guard.claim_step("member-1", 100) is False
        assert await guard.claim_step("member-1", 105) is False
        assert await guard.claim_step("member-1", 108) is True

    @pytest.mark.asyncio
    async def test_clear(self, replay_guard: InMemoryReplayGuard) -> None:
        await replay_guard.claim_step("member-1", 101)
        replay_guard.clear()
        assert await replay_guard.claim_step("member-1", 101) is True


class TestInMemoryIssuanceLedger:
    @pytest.mark.asyncio
    async def test_cooldown(self, issuance_ledger: InMemoryIssuanceLedger) -> None:
        assert isinstance(issuance_ledger, IIssuanceLedger)
        now = STEP_101

        assert await issuance_ledger.reserve("member-1", Channel.EMAIL, now, 60) is None
        retry_at = await issuance_ledger.reserve(
            "member-1", Channel.EMAIL, now + timedelta(seconds=10), 60
        )
        assert retry_at == now + timedelta(seconds=60)

    @pytest.mark.asyncio
    async def test_channels_are_independent(
        self, issuance_ledger: InMemoryIssuanceLedger
    ) -> None:
        await issuance_ledger.reserve("member-1", Channel.EMAIL, STEP_101, 60)
        assert (
            await issuance_ledger.reserve("member-1", Channel.WHATSAPP, STEP_101, 60)
            is None
        )

    @pytest.mark.asyncio
    async def test_allowed_after_cooldown(
        self, issuance_ledger: InMemoryIssuanceLedger
    ) -> None:
        await issuance_ledger.reserve("member-1", Channel.EMAIL, STEP_101, 60)
        later = STEP_101 + timedelta(seconds=60)
        retry_at = await issuance_ledger.reserve("member-1", Channel.EMAIL, later, 60)
        assert retry_at is None

    @pytest.mark.asyncio
    async def test_release(self, issuance_ledger: InMemoryIssuanceLedger) -> None:
        await issuance_ledger.reserve("member-1", Channel.EMAIL, STEP_101, 60)
        await issuance_ledger.release("member-1", Channel.EMAIL)
        assert (
            await issuance_ledger.reserve("member-1", Channel.EMAIL, STEP_101, 60)
            is None
        )


class TestAttemptLimiter:
    def test_blocks_after_max_attempts(self) -> None:
        limiter = AttemptLimiter(max_attempts=3, window_seconds=60)

        for i in range(3):
            assert limiter.hit("member-1", STEP_101 + timedelta(seconds=i)) is None

        retry_at = limiter.hit("member-1", STEP_101 + timedelta(seconds=5))
        assert retry_at == STEP_101 + timedelta(seconds=60)
        assert limiter.remaining("member-1", STEP_101 + timedelta(seconds=5)) == 0

    def test_window_slides(self) -> None:
        limiter = AttemptLimiter(max_attempts=2, window_seconds=60)
        limiter.hit("member-1", STEP_101)
        limiter.hit("member-1", STEP_101 + timedelta(seconds=30))

        assert limiter.hit("member-1", STEP_101 + timedelta(seconds=60)) is None
        assert limiter.remaining("member-1", STEP_101 + timedelta(seconds=60)) == 0

    def test_members_are_independent(self) -> None:
        limiter = AttemptLimiter(max_attempts=1, window_seconds=60)
        limiter.hit("member-1", STEP_101)
        assert limiter.hit("member-2", STEP_101) is None

    def test_reset(self) -> None:
        limiter = AttemptLimiter(max_attempts=1, window_seconds=60)
        limiter.hit("member-1", STEP_101)
        limiter.reset("member-1")
        assert limiter.remaining("member-1", STEP_101) == 1

    def test_expired_windows_are_dropped(self) -> None:
        limiter = AttemptLimiter(max_attempts=3, window_seconds=60)
        for i in range(50):
            limiter.hit(f"member-{i}", STEP_101)
        assert limiter.tracked_members == 50

        later = STEP_101 + timedelta(seconds=61)
        for i in range(50):
            assert limiter.remaining(f"member-{i}", later) == 3

        assert limiter.tracked_members == 0

    def test_remaining_does_not_track_unknown_members(self) -> None:
        limiter = AttemptLimiter()

        assert limiter.remaining("member-1", STEP_101) == 5
        assert limiter.tracked_members == 0
