"""Factor dispatcher: the only MFA entry point of the session layer.

Routes ``initiate`` / ``verify`` calls to the strategy registered for the
factor kind, records exactly one audit event per routed call and, when a
profile store is injected, persists the state delta of a successful
verification.

Strategies are an injected mapping. Tests substitute a strategy by passing
``overrides`` to :meth:`FactorDispatcher.build` (or a full mapping to the
constructor); there is no global handler registry.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
from dataclasses import replace
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Callable, Mapping

from .audit.recorder import AuditRecorder
from .config import MfaConfig
from .crypto import constant_time_equals, hash_ip_address
from .exceptions import MfaConfigurationError, MfaInfrastructureError
from .factors import (
    BackupCodeFactor,
    DeviceChallengeFactor,
    EmailOtpFactor,
    TotpFactor,
    WhatsAppOtpFactor,
)
from .limits import AttemptLimiter, InMemoryIssuanceLedger, InMemoryReplayGuard
from .models import DeviceToken, FactorKind, MfaProfile, utcnow
from .observability import MfaMetrics
from .ports import InitiateRequest, VerifyRequest
from .results import (
    ErrorCode,
    ErrorKind,
    Failure,
    InitiateSuccess,
    VerifySuccess,
    failure,
)
from .store import InMemoryChallengeStore

if TYPE_CHECKING:
    from datetime import datetime

    from .crypto import CodeHasher
    from .ports import (
        IAuditSink,
        IChallengeStore,
        IDeliveryHook,
        IFactorStrategy,
        IIssuanceLedger,
        IKeyManager,
        IProfileStore,
        IReplayGuard,
    )
    from .results import InitiateResult, VerifyResult

logger = logging.getLogger("ibimina_mfa.dispatcher")

Clock = Callable[[], "datetime"]


def _outcome(result: InitiateResult | VerifyResult) -> str:
    if isinstance(result, (InitiateSuccess, VerifySuccess)):
        return "ok"
    return result.code.value


class FactorDispatcher:
    """Routes MFA calls to factor strategies.

    Example:
        ```python
        dispatcher = FactorDispatcher.build(
            key_manager=SecretCipher.from_env(),
            hasher=CodeHasher.from_env(),
            audit_sink=my_audit_sink,
            delivery_hook=my_delivery_hook,
            profile_store=my_profile_store,
            config=MfaConfig.from_env(),
        )

        issued = await dispatcher.initiate("email", user_id, contact=email)
        verdict = await dispatcher.verify("email", user_id, token="482913")
        return JSONResponse(verdict.to_dict(), status_code=verdict.status)
        ```
    """

    def __init__(
        self,
        strategies: Mapping[FactorKind, IFactorStrategy],
        *,
        audit_sink: IAuditSink,
        profile_store: IProfileStore | None = None,
        hasher: CodeHasher | None = None,
        config: MfaConfig | None = None,
        attempt_limiter: AttemptLimiter | None = None,
        ip_limiter: AttemptLimiter | None = None,
        clock: Clock = utcnow,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            strategies: Routing table keyed by factor kind.
            audit_sink: Where audit events go (best effort).
            profile_store: Loads profiles when the caller passes none, and
                persists deltas of successful verifications.
            hasher: Digests remember-device tokens.
            config: MFA configuration.
            attempt_limiter: Per-member verify throttle.
            ip_limiter: Per-client verify throttle, keyed on the SHA-256 of
                ``context["ip"]``.
            clock: Source of decision time.
        """
        self._strategies: Mapping[FactorKind, IFactorStrategy] = MappingProxyType(
            dict(strategies)
        )
        self.config = config or MfaConfig()
        self.audit = AuditRecorder(audit_sink, timeout=self.config.io_timeout_seconds)
        self.profile_store = profile_store
        self.hasher = hasher
        self.attempt_limiter = attempt_limiter
        self.ip_limiter = ip_limiter
        self.clock = clock
        self._inflight: set[asyncio.Task[Any]] = set()

    @classmethod
    def build(
        cls,
        *,
        hasher: CodeHasher,
        audit_sink: IAuditSink,
        key_manager: IKeyManager | None = None,
        delivery_hook: IDeliveryHook | None = None,
        challenge_store: IChallengeStore | None = None,
        replay_guard: IReplayGuard | None = None,
        issuance_ledger: IIssuanceLedger | None = None,
        profile_store: IProfileStore | None = None,
        config: MfaConfig | None = None,
        overrides: Mapping[FactorKind | str, IFactorStrategy] | None = None,
        clock: Clock = utcnow,
    ) -> FactorDispatcher:
        """Wire the default strategies.

        TOTP is registered only when a key manager is given. Email and
        WhatsApp are always registered and report ``NOT_ENABLED`` without a
        delivery hook. Missing stores default to in-memory adapters.

        Args:
            overrides: Strategies replacing (or adding to) the defaults.

        Raises:
            MfaConfigurationError: If an override key is not a factor kind.
        """
        config = config or MfaConfig()
        timeout = config.io_timeout_seconds
        challenge_store = challenge_store or InMemoryChallengeStore()
        replay_guard = replay_guard or InMemoryReplayGuard()
        issuance_ledger = issuance_ledger or InMemoryIssuanceLedger()

        strategies: dict[FactorKind, IFactorStrategy] = {}
        if key_manager is not None:
            strategies[FactorKind.TOTP] = TotpFactor(
                key_manager=key_manager,
                replay_guard=replay_guard,
                config=config.totp,
                io_timeout=timeout,
            )
        strategies[FactorKind.EMAIL] = EmailOtpFactor(
            challenge_store=challenge_store,
            issuance_ledger=issuance_ledger,
            hasher=hasher,
            delivery_hook=delivery_hook,
            config=config.email,
            io_timeout=timeout,
        )
        strategies[FactorKind.WHATSAPP] = WhatsAppOtpFactor(
            challenge_store=challenge_store,
            issuance_ledger=issuance_ledger,
            hasher=hasher,
            delivery_hook=delivery_hook,
            config=config.whatsapp,
            io_timeout=timeout,
        )
        strategies[FactorKind.BACKUP] = BackupCodeFactor(
            hasher=hasher,
            replay_guard=replay_guard,
            config=config.backup,
            io_timeout=timeout,
        )
        strategies[FactorKind.DEVICE] = DeviceChallengeFactor(
            challenge_store=challenge_store,
            config=config.device,
            io_timeout=timeout,
        )

        for key, strategy in (overrides or {}).items():
            kind = FactorKind.parse(key)
            if kind is None:
                raise MfaConfigurationError(
                    f"Unknown factor kind in overrides: {key!r}"
                )
            strategies[kind] = strategy

        return cls(
            strategies,
            audit_sink=audit_sink,
            profile_store=profile_store,
            hasher=hasher,
            config=config,
            attempt_limiter=AttemptLimiter(
                max_attempts=config.verify_max_attempts,
                window_seconds=config.verify_window_seconds,
            ),
            ip_limiter=AttemptLimiter(
                max_attempts=config.verify_ip_max_attempts,
                window_seconds=config.verify_ip_window_seconds,
            ),
            clock=clock,
        )

    @property
    def strategies(self) -> Mapping[FactorKind, IFactorStrategy]:
        return self._strategies

    def supports(self, factor: FactorKind | str) -> bool:
        kind = FactorKind.parse(factor)
        return kind is not None and kind in self._strategies

    # ═══════════════════════════════════════════════════════════════
    # HELPERS
    # ═══════════════════════════════════════════════════════════════

    def _route(
        self, factor: FactorKind | str
    ) -> tuple[FactorKind, IFactorStrategy] | Failure:
        kind = FactorKind.parse(factor)
        strategy = self._strategies.get(kind) if kind is not None else None
        if kind is None or strategy is None:
            logger.info("Rejected unsupported MFA factor %r", factor)
            return Failure(
                factor=kind,
                code=ErrorCode.UNSUPPORTED_FACTOR,
                kind=ErrorKind.INPUT,
                reason=f"Factor {factor!r} is not supported.",
            )
        return kind, strategy

    async def _load_profile(
        self, kind: FactorKind, user_id: str, profile: MfaProfile | None
    ) -> MfaProfile | Failure:
        if profile is not None:
            return profile
        if self.profile_store is None:
            raise MfaConfigurationError(
                "Pass a profile snapshot or configure a profile store"
            )
        try:
            return await asyncio.wait_for(
                self.profile_store.get_profile(user_id),
                timeout=self.config.io_timeout_seconds,
            )
        except (asyncio.TimeoutError, MfaInfrastructureError) as e:
            logger.error("Profile store unavailable for user %s: %r", user_id, e)
            return failure(
                kind,
                ErrorCode.STORE_UNAVAILABLE,
                ErrorKind.INFRASTRUCTURE,
                "Verification is temporarily unavailable.",
            )

    @staticmethod
    def _not_enrolled(kind: FactorKind) -> Failure:
        return failure(
            kind,
            ErrorCode.NOT_ENROLLED,
            ErrorKind.INPUT,
            f"{kind.value} is not set up for this account.",
        )

    @staticmethod
    def _throttled(
        kind: FactorKind, retry_at: datetime, *, scope: str, **diff: Any
    ) -> Failure:
        return failure(
            kind,
            ErrorCode.RATE_LIMITED,
            ErrorKind.RATE_LIMIT,
            "Too many attempts. Try again later.",
            retry_at=retry_at,
            limit="verify_attempts",
            scope=scope,
            **diff,
        )

    async def _finish(
        self,
        operation: str,
        kind: FactorKind,
        user_id: str,
        result: InitiateResult | VerifyResult,
        now: datetime,
    ) -> None:
        """Record the single audit event of a routed call."""
        await self.audit.record(
            result.audit_action,
            user_id,
            kind.value,
            result.audit_diff,
            timestamp=now,
        )
        logger.info(
            "MFA %s %s for user %s: %s",
            operation,
            kind.value,
            user_id,
            _outcome(result),
        )

    # ═══════════════════════════════════════════════════════════════
    # INITIATE
    # ═══════════════════════════════════════════════════════════════

    async def initiate(
        self,
        factor: FactorKind | str,
        user_id: str,
        contact: str | None = None,
        profile: MfaProfile | None = None,
    ) -> InitiateResult:
        """Issue a challenge for ``factor``.

        Args:
            factor: Factor kind (enum or its string value).
            user_id: Member identifier.
            contact: Email address or phone number for channel factors.
            profile: Profile snapshot; loaded from the store when omitted.

        Returns:
            ``InitiateSuccess`` or ``Failure``. Never raises for input,
            rate-limit or delivery problems.
        """
        routed = self._route(factor)
        if isinstance(routed, Failure):
            return routed
        kind, strategy = routed
        now = self.clock()

        with MfaMetrics.operation("initiate", factor=kind.value) as outcome:
            loaded = await self._load_profile(kind, user_id, profile)
            if isinstance(loaded, Failure):
                result: InitiateResult = loaded
            elif not loaded.is_enrolled(kind):
                result = self._not_enrolled(kind)
            else:
                result = await strategy.initiate(
                    InitiateRequest(
                        user_id=user_id, profile=loaded, now=now, contact=contact
                    )
                )
            outcome(_outcome(result))

        await self._finish("initiate", kind, user_id, result, now)
        return result

    # ═══════════════════════════════════════════════════════════════
    # VERIFY
    # ═══════════════════════════════════════════════════════════════

    async def verify(
        self,
        factor: FactorKind | str,
        user_id: str,
        token: Any = None,
        profile: MfaProfile | None = None,
        *,
        remember_device: bool = False,
        context: Mapping[str, Any] | None = None,
    ) -> VerifyResult:
        """Verify a second factor.

        The pipeline (claim, persist, audit) runs in a task shielded from the
        caller's cancellation: once started it commits fully even if the
        client disconnects.

        Args:
            factor: Factor kind (enum or its string value).
            user_id: Member identifier.
            token: Code, or device assertion for the device factor.
            profile: Profile snapshot; loaded from the store when omitted.
            remember_device: Issue a trusted-device token on success.
            context: Request facts (IP, user agent, ``device_label``).

        Returns:
            ``VerifySuccess`` with the state delta to persist, or ``Failure``.
        """
        routed = self._route(factor)
        if isinstance(routed, Failure):
            return routed
        kind, strategy = routed
        if remember_device and self.hasher is None:
            raise MfaConfigurationError("remember_device requires a hasher")

        task = asyncio.ensure_future(
            self._verify_pipeline(
                kind,
                strategy,
                user_id,
                token,
                profile,
                remember_device,
                dict(context or {}),
            )
        )
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return await asyncio.shield(task)

    async def _verify_pipeline(
        self,
        kind: FactorKind,
        strategy: IFactorStrategy,
        user_id: str,
        token: Any,
        profile: MfaProfile | None,
        remember_device: bool,
        context: dict[str, Any],
    ) -> VerifyResult:
        now = self.clock()
        with MfaMetrics.operation("verify", factor=kind.value) as outcome:
            result = await self._decide(
                kind, strategy, user_id, token, profile, remember_device, context, now
            )
            outcome(_outcome(result))
        await self._finish("verify", kind, user_id, result, now)
        return result

    async def _decide(
        self,
        kind: FactorKind,
        strategy: IFactorStrategy,
        user_id: str,
        token: Any,
        profile: MfaProfile | None,
        remember_device: bool,
        context: dict[str, Any],
        now: datetime,
    ) -> VerifyResult:
        blank = token is None or str(token).strip() == ""
        if blank and kind is not FactorKind.DEVICE:
            return failure(
                kind, ErrorCode.TOKEN_REQUIRED, ErrorKind.INPUT, "A code is required."
            )

        if self.attempt_limiter is not None:
            retry_at = self.attempt_limiter.hit(user_id, now)
            if retry_at is not None:
                logger.warning(
                    "MFA verify throttled for user %s until %s",
                    user_id,
                    retry_at.isoformat(),
                )
                return self._throttled(kind, retry_at, scope="user")

        ip = context.get("ip")
        if self.ip_limiter is not None and ip:
            hashed_ip = hash_ip_address(str(ip))
            retry_at = self.ip_limiter.hit(hashed_ip, now)
            if retry_at is not None:
                logger.warning(
                    "MFA verify throttled for client %s (user %s) until %s",
                    hashed_ip[:12],
                    user_id,
                    retry_at.isoformat(),
                )
                return self._throttled(kind, retry_at, scope="ip", hashed_ip=hashed_ip)

        loaded = await self._load_profile(kind, user_id, profile)
        if isinstance(loaded, Failure):
            return loaded
        if not loaded.is_enrolled(kind):
            return self._not_enrolled(kind)

        verdict = await strategy.verify(
            VerifyRequest(
                user_id=user_id, profile=loaded, now=now, token=token, context=context
            )
        )
        if not isinstance(verdict, VerifySuccess):
            return verdict

        if remember_device:
            verdict = self._remember_device(verdict, now, context)

        if self.profile_store is not None and verdict.delta.changes_profile:
            try:
                await asyncio.wait_for(
                    self.profile_store.persist_profile(user_id, verdict.delta),
                    timeout=self.config.io_timeout_seconds,
                )
            except (asyncio.TimeoutError, MfaInfrastructureError) as e:
                # The credential is already claimed; it stays spent.
                logger.error(
                    "Could not persist MFA state for user %s: %r", user_id, e
                )
                return failure(
                    kind,
                    ErrorCode.STORE_UNAVAILABLE,
                    ErrorKind.INFRASTRUCTURE,
                    "Verification could not be saved. Try again.",
                )

        if self.attempt_limiter is not None:
            self.attempt_limiter.reset(user_id)
        return verdict

    # ═══════════════════════════════════════════════════════════════
    # TRUSTED DEVICES
    # ═══════════════════════════════════════════════════════════════

    def _remember_device(
        self, verdict: VerifySuccess, now: datetime, context: Mapping[str, Any]
    ) -> VerifySuccess:
        assert self.hasher is not None
        plaintext = secrets.token_urlsafe(32)
        device = DeviceToken(
            token_hash=self.hasher.digest_token(plaintext),
            created_at=now,
            expires_at=now + self.config.trusted_device_ttl,
            label=context.get("device_label"),
        )
        return replace(
            verdict,
            delta=replace(verdict.delta, trusted_device=device),
            trusted_device_token=plaintext,
            audit_diff={
                **verdict.audit_diff,
                "trusted_device_expires_at": device.expires_at.isoformat(),
            },
        )

    def is_trusted_device(
        self, profile: MfaProfile, token: str | None, now: datetime | None = None
    ) -> bool:
        """Whether ``token`` is an unexpired remembered device of ``profile``."""
        if not token or self.hasher is None:
            return False
        digest = self.hasher.digest_token(token)
        now = now or self.clock()
        trusted = False
        for device in profile.trusted_device_tokens:
            if constant_time_equals(device.token_hash, digest) and device.is_valid(now):
                trusted = True
        return trusted


__all__: list[str] = ["FactorDispatcher"]
