"""Redis implementations of the replay guard and issuance ledger.

Claims and reservations are single ``SET ... NX`` commands, so exactly one
worker wins per key no matter how many processes race. Requires the ``redis``
extra (``pip install ibimina-mfa[redis]``).
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from .exceptions import StoreUnavailableError
from .ports import IIssuanceLedger, IReplayGuard

if TYPE_CHECKING:
    from redis.asyncio import Redis

    from .models import Channel

logger = logging.getLogger("ibimina_mfa.redis")


class RedisReplayGuard(IReplayGuard):
    """Redis implementation of IReplayGuard.

    Step claims expire after ``step_ttl`` seconds (the persisted watermark
    still rejects old steps after that). Backup claims expire after
    ``backup_ttl`` seconds, by which time the consumed hash is long gone
    from the profile.

    Raises:
        StoreUnavailableError: If Redis cannot be reached. A guard that cannot
            answer must fail closed.
    """

    def __init__(
        self,
        redis_client: Redis[bytes],
        *,
        prefix: str = "mfa",
        step_ttl: int = 300,
        backup_ttl: int = 60 * 60 * 24 * 30,
    ) -> None:
        self._redis = redis_client
        self.prefix = prefix
        self.step_ttl = step_ttl
        self.backup_ttl = backup_ttl

    async def _claim(self, key: str, ttl: int) -> bool:
        try:
            acquired = await self._redis.set(key, "1", nx=True, ex=ttl)
        except Exception as e:  # noqa: BLE001
            logger.warning("Redis claim failed for key %s: %s", key, e)
            raise StoreUnavailableError(f"Replay guard unavailable: {e}") from e
        return bool(acquired)

    async def claim_step(self, user_id: str, step: int) -> bool:
        key = f"{self.prefix}:totp_step:{user_id}:{step}"
        claimed = await self._claim(key, self.step_ttl)
        if not claimed:
            logger.info("TOTP step %d already claimed for user %s", step, user_id)
        return claimed

    async def claim_backup(self, user_id: str, code_hash: str) -> bool:
        key = f"{self.prefix}:backup:{user_id}:{code_hash}"
        claimed = await self._claim(key, self.backup_ttl)
        if not claimed:
            logger.info("Backup code already claimed for user %s", user_id)
        return claimed


class RedisIssuanceLedger(IIssuanceLedger):
    """Redis implementation of IIssuanceLedger.

    The reservation key holds the issuance time and lives exactly as long as
    the cool-down, so an existing key means the member must wait.
    """

    def __init__(self, redis_client: Redis[bytes], *, prefix: str = "mfa") -> None:
        self._redis = redis_client
        self.prefix = prefix

    def _key(self, user_id: str, channel: Channel) -> str:
        return f"{self.prefix}:issued:{user_id}:{channel.value}"

    async def reserve(
        self,
        user_id: str,
        channel: Channel,
        now: datetime,
        cooldown_seconds: float,
    ) -> datetime | None:
        key = self._key(user_id, channel)
        ttl = max(1, math.ceil(cooldown_seconds))
        try:
            if await self._redis.set(key, now.isoformat(), nx=True, ex=ttl):
                return None
            last_raw = await self._redis.get(key)
        except Exception as e:  # noqa: BLE001
            logger.warning("Redis reserve failed for key %s: %s", key, e)
            raise StoreUnavailableError(f"Issuance ledger unavailable: {e}") from e

        if not last_raw:
            # Key expired between SET and GET; the cool-down is over.
            return await self.reserve(user_id, channel, now, cooldown_seconds)
        if isinstance(last_raw, bytes):
            last_raw = last_raw.decode()
        try:
            last = datetime.fromisoformat(last_raw)
        except ValueError:
            logger.warning("Unparseable issuance timestamp in %s", key)
            return now + timedelta(seconds=cooldown_seconds)
        return last + timedelta(seconds=cooldown_seconds)

    async def release(self, user_id: str, channel: Channel) -> None:
        key = self._key(user_id, channel)
        try:
            await self._redis.delete(key)
        except Exception as e:  # noqa: BLE001
            logger.warning("Redis delete failed for key %s: %s", key, e)


__all__: list[str] = ["RedisReplayGuard", "RedisIssuanceLedger"]
