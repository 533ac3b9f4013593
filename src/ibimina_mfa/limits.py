"""Replay guard, issuance cool-down and verify-attempt throttling.

In-memory adapters for a single process. Each check-and-set runs without an
intervening ``await`` so it is atomic on the event loop; the Redis adapters in
:mod:`ibimina_mfa.redis` push the same atomicity into ``SET NX``.
"""

from __future__ import annotations

import logging
from collections import defaultdict, deque
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from .ports import IIssuanceLedger, IReplayGuard

if TYPE_CHECKING:
    from .models import Channel

logger = logging.getLogger("ibimina_mfa.limits")


class InMemoryReplayGuard(IReplayGuard):
    """In-memory single-use claims for TOTP steps and backup-code hashes.

    Only the ``retain_steps`` steps behind a member's newest claim are kept.
    Older steps are refused outright; they are outside any verify window.

    Note:
        Backup-code claims are kept for the lifetime of the process. Not
        suitable for production use across multiple workers.
    """

    def __init__(self, *, retain_steps: int = 10) -> None:
        self.retain_steps = retain_steps
        self._steps: dict[str, set[int]] = {}
        self._backup: dict[str, set[str]] = defaultdict(set)

    async def claim_step(self, user_id: str, step: int) -> bool:
        claimed = self._steps.setdefault(user_id, set())
        floor = max(claimed, default=step) - self.retain_steps
        if step in claimed or step < floor:
            logger.info("TOTP step %d claimed or stale for user %s", step, user_id)
            return False
        claimed.add(step)
        floor = max(claimed) - self.retain_steps
        claimed.difference_update([s for s in claimed if s < floor])
        return True

    async def claim_backup(self, user_id: str, code_hash: str) -> bool:
        claimed = self._backup[user_id]
        if code_hash in claimed:
            logger.info("Backup code already claimed for user %s", user_id)
            return False
        claimed.add(code_hash)
        return True

    def claimed_steps(self, user_id: str) -> frozenset[int]:
        return frozenset(self._steps.get(user_id, ()))

    def clear(self) -> None:
        self._steps.clear()
        self._backup.clear()


class InMemoryIssuanceLedger(IIssuanceLedger):
    """In-memory cool-down ledger keyed by member and channel."""

    def __init__(self) -> None:
        self._last_issued: dict[tuple[str, str], datetime] = {}

    async def reserve(
        self,
        user_id: str,
        channel: Channel,
        now: datetime,
        cooldown_seconds: float,
    ) -> datetime | None:
        key = (user_id, channel.value)
        last = self._last_issued.get(key)
        if last is not None:
            retry_at = last + timedelta(seconds=cooldown_seconds)
            if now < retry_at:
                return retry_at
        self._last_issued[key] = now
        return None

    async def release(self, user_id: str, channel: Channel) -> None:
        self._last_issued.pop((user_id, channel.value), None)


class AttemptLimiter:
    """Sliding-window limit on verification attempts per member.

    Example:
        ```python
        limiter = AttemptLimiter(max_attempts=5, window_seconds=300)
        retry_at = limiter.hit("user-1", now)
        if retry_at is not None:
            ...  # reject with RATE_LIMITED
        ```
    """

    def __init__(self, *, max_attempts: int = 5, window_seconds: float = 300) -> None:
        self.max_attempts = max_attempts
        self.window = timedelta(seconds=window_seconds)
        self._attempts: dict[str, deque[datetime]] = {}

    def _prune(self, user_id: str, now: datetime) -> deque[datetime]:
        attempts = self._attempts.get(user_id)
        if attempts is None:
            return deque()
        cutoff = now - self.window
        while attempts and attempts[0] <= cutoff:
            attempts.popleft()
        if not attempts:
            del self._attempts[user_id]
        return attempts

    def hit(self, user_id: str, now: datetime) -> datetime | None:
        """Count an attempt.

        Returns:
            None if the attempt is allowed, otherwise when the oldest attempt
            in the window falls out of it.
        """
        attempts = self._prune(user_id, now)
        if len(attempts) >= self.max_attempts:
            return attempts[0] + self.window
        attempts.append(now)
        self._attempts[user_id] = attempts
        return None

    def remaining(self, user_id: str, now: datetime) -> int:
        return max(0, self.max_attempts - len(self._prune(user_id, now)))

    @property
    def tracked_members(self) -> int:
        """Members with attempts still inside the window."""
        return len(self._attempts)

    def reset(self, user_id: str) -> None:
        """Forget a member's attempts (e.g. after a successful verification)."""
        self._attempts.pop(user_id, None)


__all__: list[str] = [
    "InMemoryReplayGuard",
    "InMemoryIssuanceLedger",
    "AttemptLimiter",
]
