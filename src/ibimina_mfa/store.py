"""In-memory challenge and profile stores."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import TYPE_CHECKING

from .models import MfaProfile
from .ports import IChallengeStore, IProfileStore

if TYPE_CHECKING:
    from datetime import datetime

    from .models import Challenge, Channel, StateDelta

logger = logging.getLogger("ibimina_mfa.store")


class InMemoryChallengeStore(IChallengeStore):
    """In-memory challenge store for testing and single-process use.

    Only code hashes are kept, never plaintext codes.
    """

    def __init__(self) -> None:
        self._challenges: dict[str, Challenge] = {}

    async def create(self, challenge: Challenge) -> None:
        self._challenges[challenge.id] = challenge

    async def get(self, challenge_id: str) -> Challenge | None:
        return self._challenges.get(challenge_id)

    async def get_latest(self, user_id: str, channel: Channel) -> Challenge | None:
        latest: Challenge | None = None
        for challenge in self._challenges.values():
            if (
                challenge.user_id != user_id
                or challenge.channel != channel
                or challenge.consumed_at is not None
            ):
                continue
            if latest is None or challenge.created_at >= latest.created_at:
                latest = challenge
        return latest

    async def mark_consumed(self, challenge_id: str, at: datetime) -> bool:
        challenge = self._challenges.get(challenge_id)
        if challenge is None or challenge.consumed_at is not None:
            return False
        self._challenges[challenge_id] = replace(challenge, consumed_at=at)
        return True

    async def record_failure(self, challenge_id: str) -> int:
        challenge = self._challenges.get(challenge_id)
        if challenge is None:
            return 0
        updated = replace(challenge, failed_attempts=challenge.failed_attempts + 1)
        self._challenges[challenge_id] = updated
        return updated.failed_attempts

    async def delete(self, challenge_id: str) -> None:
        self._challenges.pop(challenge_id, None)

    async def purge_expired(self, now: datetime) -> int:
        stale = [
            cid
            for cid, challenge in self._challenges.items()
            if not challenge.is_active(now)
        ]
        for cid in stale:
            del self._challenges[cid]
        if stale:
            logger.debug("Purged %d stale challenges", len(stale))
        return len(stale)

    def count(self) -> int:
        return len(self._challenges)


class InMemoryProfileStore(IProfileStore):
    """In-memory MFA profile store.

    ``persist_profile`` merges the delta into whatever is stored at commit
    time, so two concurrent successful verifications both land.
    """

    def __init__(self, profiles: list[MfaProfile] | None = None) -> None:
        self._profiles: dict[str, MfaProfile] = {
            p.user_id: p for p in (profiles or [])
        }

    async def get_profile(self, user_id: str) -> MfaProfile:
        return self._profiles.get(user_id) or MfaProfile(user_id=user_id)

    async def persist_profile(self, user_id: str, delta: StateDelta) -> MfaProfile:
        current = self._profiles.get(user_id) or MfaProfile(user_id=user_id)
        updated = current.apply(delta)
        self._profiles[user_id] = updated
        return updated

    def put(self, profile: MfaProfile) -> None:
        """Store a profile as-is (enrollment and test setup)."""
        self._profiles[profile.user_id] = profile


__all__: list[str] = ["InMemoryChallengeStore", "InMemoryProfileStore"]
