"""Email / WhatsApp OTP factor.

This factor generates and verifies one-time codes, but the actual sending by
email or WhatsApp is delegated to the application via IDeliveryHook.

Issuance is constrained by two independent limits:

- at most one active (unexpired, unconsumed) challenge per member and channel;
- a cool-down between successive issuances, even after expiry.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Awaitable, TypeVar

from ..config import OtpConfig
from ..crypto import generate_numeric_code, mask_destination
from ..exceptions import MfaInfrastructureError
from ..models import Challenge, Channel, FactorKind, StateDelta
from ..results import ErrorCode, ErrorKind, InitiateSuccess, VerifySuccess, failure

if TYPE_CHECKING:
    from datetime import datetime

    from ..crypto import CodeHasher
    from ..ports import (
        IChallengeStore,
        IDeliveryHook,
        IIssuanceLedger,
        InitiateRequest,
        VerifyRequest,
    )
    from ..results import Failure, InitiateResult, VerifyResult

logger = logging.getLogger("ibimina_mfa.factors.otp")

T = TypeVar("T")


class OtpFactor:
    """Channel OTP strategy shared by email and WhatsApp.

    Subclasses set ``kind``, ``channel`` and ``_deliver``.
    """

    kind: FactorKind
    channel: Channel

    def __init__(
        self,
        *,
        challenge_store: IChallengeStore,
        issuance_ledger: IIssuanceLedger,
        hasher: CodeHasher,
        delivery_hook: IDeliveryHook | None = None,
        config: OtpConfig | None = None,
        io_timeout: float = 5.0,
    ) -> None:
        """Initialize the OTP factor.

        Args:
            challenge_store: Storage for OTP challenges (hashes only).
            issuance_ledger: Cool-down ledger shared across workers.
            hasher: Salted hasher for codes.
            delivery_hook: Hook that sends the code. Without one the channel
                is reported as not enabled.
            config: OTP configuration.
            io_timeout: Bound on delivery and store calls.
        """
        self.challenge_store = challenge_store
        self.issuance_ledger = issuance_ledger
        self.hasher = hasher
        self.delivery_hook = delivery_hook
        self.config = config or OtpConfig()
        self.io_timeout = io_timeout

    @property
    def enabled(self) -> bool:
        return self.config.enabled and self.delivery_hook is not None

    async def _deliver(self, contact: str, code: str, expires_at: datetime) -> None:
        raise NotImplementedError

    def _not_enabled(self) -> Failure:
        return failure(
            self.kind,
            ErrorCode.NOT_ENABLED,
            ErrorKind.INPUT,
            f"{self.kind.value.capitalize()} codes are not enabled. "
            "Use another factor or a backup code.",
        )

    def _store_unavailable(self, e: BaseException) -> Failure:
        logger.error("%s challenge store unavailable: %r", self.channel.value, e)
        return failure(
            self.kind,
            ErrorCode.STORE_UNAVAILABLE,
            ErrorKind.INFRASTRUCTURE,
            "Verification is temporarily unavailable.",
        )

    async def _bounded(self, awaitable: Awaitable[T]) -> T:
        return await asyncio.wait_for(awaitable, timeout=self.io_timeout)

    # ═══════════════════════════════════════════════════════════════
    # INITIATE
    # ═══════════════════════════════════════════════════════════════

    async def initiate(self, request: InitiateRequest) -> InitiateResult:
        if not self.enabled:
            return self._not_enabled()

        contact = (request.contact or "").strip()
        if not contact:
            return failure(
                self.kind,
                ErrorCode.CONTACT_REQUIRED,
                ErrorKind.INPUT,
                f"A {self.channel.value} destination is required.",
            )

        now = request.now
        try:
            active = await self._bounded(
                self.challenge_store.get_latest(request.user_id, self.channel)
            )
            if (
                active is not None
                and active.is_active(now)
                and active.failed_attempts < self.config.max_attempts
            ):
                logger.info(
                    "OTP issuance rate limited for user %s on %s: active challenge",
                    request.user_id,
                    self.channel.value,
                )
                return failure(
                    self.kind,
                    ErrorCode.RATE_LIMITED,
                    ErrorKind.RATE_LIMIT,
                    "A code was already sent. Use it or wait for it to expire.",
                    retry_at=active.expires_at,
                    limit="active",
                    channel=self.channel.value,
                )

            retry_at = await self._bounded(
                self.issuance_ledger.reserve(
                    request.user_id, self.channel, now, self.config.cooldown_seconds
                )
            )
        except (asyncio.TimeoutError, MfaInfrastructureError) as e:
            return self._store_unavailable(e)

        if retry_at is not None:
            logger.info(
                "OTP issuance rate limited for user %s on %s: cool-down until %s",
                request.user_id,
                self.channel.value,
                retry_at.isoformat(),
            )
            return failure(
                self.kind,
                ErrorCode.RATE_LIMITED,
                ErrorKind.RATE_LIMIT,
                "Please wait before requesting another code.",
                retry_at=retry_at,
                limit="cooldown",
                channel=self.channel.value,
            )

        code = generate_numeric_code(self.config.code_length)
        expires_at = now + timedelta(seconds=self.config.ttl_seconds)
        destination = mask_destination(contact)
        code_hash = await asyncio.to_thread(self.hasher.hash, code)
        challenge = Challenge(
            user_id=request.user_id,
            factor=self.kind,
            channel=self.channel,
            created_at=now,
            expires_at=expires_at,
            code_hash=code_hash,
            metadata={"destination": destination},
        )

        try:
            await self._bounded(self.challenge_store.create(challenge))
            await self._bounded(self._deliver(contact, code, expires_at))
        except Exception as e:  # noqa: BLE001
            logger.exception(
                "OTP issuance failed for user %s on %s",
                request.user_id,
                self.channel.value,
            )
            await self._rollback(request.user_id, challenge.id)
            return failure(
                self.kind,
                ErrorCode.ISSUE_FAILED,
                ErrorKind.INFRASTRUCTURE,
                "We could not send your code. Try again shortly.",
                channel=self.channel.value,
                cause=type(e).__name__,
            )

        return InitiateSuccess(
            factor=self.kind,
            channel=self.channel,
            expires_at=expires_at,
            metadata={"destination": destination},
            audit_diff={
                "channel": self.channel.value,
                "challenge_id": challenge.id,
                "destination": destination,
                "expires_at": expires_at.isoformat(),
            },
        )

    async def _rollback(self, user_id: str, challenge_id: str) -> None:
        """Undo a failed issuance so the member can retry right away."""
        try:
            await self._bounded(self.challenge_store.delete(challenge_id))
            await self._bounded(self.issuance_ledger.release(user_id, self.channel))
        except Exception:  # noqa: BLE001
            logger.exception("Could not roll back failed OTP issuance %s", challenge_id)

    # ═══════════════════════════════════════════════════════════════
    # VERIFY
    # ═══════════════════════════════════════════════════════════════

    async def verify(self, request: VerifyRequest) -> VerifyResult:
        if not self.config.enabled:
            return self._not_enabled()

        token = "" if request.token is None else str(request.token)
        code = "".join(token.split())
        if not code:
            return failure(
                self.kind,
                ErrorCode.TOKEN_REQUIRED,
                ErrorKind.INPUT,
                "Enter the code we sent you.",
            )

        now = request.now
        try:
            challenge = await self._bounded(
                self.challenge_store.get_latest(request.user_id, self.channel)
            )
        except (asyncio.TimeoutError, MfaInfrastructureError) as e:
            return self._store_unavailable(e)

        if challenge is None or challenge.code_hash is None:
            return failure(
                self.kind,
                ErrorCode.INVALID_CODE,
                ErrorKind.VERIFICATION,
                "No code is pending. Request a new one.",
            )
        if challenge.is_expired(now):
            return failure(
                self.kind,
                ErrorCode.CODE_EXPIRED,
                ErrorKind.VERIFICATION,
                "This code has expired. Request a new one.",
                challenge_id=challenge.id,
            )
        if challenge.failed_attempts >= self.config.max_attempts:
            logger.warning(
                "OTP attempts exhausted for user %s on %s (challenge %s)",
                request.user_id,
                self.channel.value,
                challenge.id,
            )
            return failure(
                self.kind,
                ErrorCode.ATTEMPTS_EXCEEDED,
                ErrorKind.RATE_LIMIT,
                "Too many wrong codes. Request a new one.",
                retry_at=challenge.expires_at,
                challenge_id=challenge.id,
            )

        matches = await asyncio.to_thread(
            self.hasher.verify, code, challenge.code_hash
        )
        try:
            if not matches:
                attempts = await self._bounded(
                    self.challenge_store.record_failure(challenge.id)
                )
                return failure(
                    self.kind,
                    ErrorCode.INVALID_CODE,
                    ErrorKind.VERIFICATION,
                    "The code is incorrect.",
                    challenge_id=challenge.id,
                    attempts=attempts,
                )

            consumed = await self._bounded(
                self.challenge_store.mark_consumed(challenge.id, now)
            )
        except (asyncio.TimeoutError, MfaInfrastructureError) as e:
            return self._store_unavailable(e)

        if not consumed:
            logger.warning(
                "OTP challenge %s for user %s consumed concurrently",
                challenge.id,
                request.user_id,
            )
            return failure(
                self.kind,
                ErrorCode.INVALID_CODE,
                ErrorKind.VERIFICATION,
                "This code was already used. Request a new one.",
                challenge_id=challenge.id,
            )

        return VerifySuccess(
            factor=self.kind,
            delta=StateDelta(consumed_challenge_id=challenge.id),
            audit_diff={"channel": self.channel.value, "challenge_id": challenge.id},
        )


class EmailOtpFactor(OtpFactor):
    """Email OTP.

    Works with any email service (SendGrid, Mailgun, AWS SES, ...) that the
    application wires in via ``IDeliveryHook.send_email_code``.
    """

    kind = FactorKind.EMAIL
    channel = Channel.EMAIL

    async def _deliver(self, contact: str, code: str, expires_at: datetime) -> None:
        assert self.delivery_hook is not None
        await self.delivery_hook.send_email_code(contact, code, expires_at)


class WhatsAppOtpFactor(OtpFactor):
    """WhatsApp OTP.

    Codes live 10 minutes by default. ``contact`` is an E.164 phone number.
    """

    kind = FactorKind.WHATSAPP
    channel = Channel.WHATSAPP

    def __init__(self, *, config: OtpConfig | None = None, **kwargs: Any) -> None:
        super().__init__(config=config or OtpConfig(ttl_seconds=600), **kwargs)

    async def _deliver(self, contact: str, code: str, expires_at: datetime) -> None:
        assert self.delivery_hook is not None
        await self.delivery_hook.send_whatsapp_code(contact, code, expires_at)


__all__: list[str] = ["OtpFactor", "EmailOtpFactor", "WhatsAppOtpFactor"]
