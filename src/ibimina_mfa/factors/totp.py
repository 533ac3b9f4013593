"""TOTP (Time-based One-Time Password) factor.

Works with any RFC 6238 authenticator app (Google Authenticator, Authy,
Microsoft Authenticator, ...). Uses pyotp for code generation; matching,
replay protection and the step watermark are handled here so the accepted
time-step is known.
"""

from __future__ import annotations

import asyncio
import binascii
import hashlib
import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

import pyotp

from ..config import TotpConfig
from ..crypto import constant_time_equals
from ..exceptions import MfaInfrastructureError
from ..models import FactorKind, StateDelta
from ..qr import render_qr_png_base64
from ..results import ErrorCode, ErrorKind, InitiateSuccess, VerifySuccess, failure

if TYPE_CHECKING:
    from datetime import datetime

    from ..ports import IKeyManager, InitiateRequest, IReplayGuard, VerifyRequest
    from ..results import InitiateResult, VerifyResult

logger = logging.getLogger("ibimina_mfa.factors.totp")

_NON_DIGITS = re.compile(r"\D")


@dataclass(frozen=True)
class TotpSetup:
    """Enrollment material for an authenticator app.

    Attributes:
        secret: Base32 secret (show once, never store in plaintext).
        provisioning_uri: ``otpauth://`` URI for the QR code.
        manual_key: Secret formatted in groups of 4 for manual entry.
        encrypted_secret: Ciphertext to store on the profile.
        qr_code_base64: PNG of the provisioning URI, when requested.
    """

    secret: str
    provisioning_uri: str
    manual_key: str
    encrypted_secret: bytes
    qr_code_base64: str | None = None


class TotpFactor:
    """TOTP strategy.

    Decision procedure:

    1. Decrypt the stored secret (failure is an infrastructure verdict).
    2. Sanitize the token to digits and check its length.
    3. Match against the steps within ``valid_window`` of the current one.
    4. Reject steps at or behind ``last_verified_step`` as replay.
    5. Claim ``(user_id, step)`` in the replay guard; losing is replay too.

    Example:
        ```python
        totp = TotpFactor(key_manager=SecretCipher.from_env(),
                          replay_guard=InMemoryReplayGuard())
        setup = await totp.provision("member@example.com")
        verdict = await totp.verify(VerifyRequest(user_id, profile, now, "123456"))
        ```
    """

    kind = FactorKind.TOTP

    def __init__(
        self,
        *,
        key_manager: IKeyManager,
        replay_guard: IReplayGuard,
        config: TotpConfig | None = None,
        io_timeout: float = 5.0,
    ) -> None:
        self.key_manager = key_manager
        self.replay_guard = replay_guard
        self.config = config or TotpConfig()
        self.io_timeout = io_timeout

    def _totp(self, secret: str) -> pyotp.TOTP:
        return pyotp.TOTP(
            secret,
            digits=self.config.digits,
            digest=getattr(hashlib, self.config.algorithm),
            interval=self.config.interval,
            issuer=self.config.issuer,
        )

    def current_step(self, now: datetime) -> int:
        return int(now.timestamp()) // self.config.interval

    def code_for_step(self, secret: str, step: int) -> str:
        return self._totp(secret).generate_otp(step)

    def match_step(self, secret: str, code: str, now: datetime) -> int | None:
        """Return the step ``code`` is valid for, or None.

        Every candidate in the window is compared so timing does not reveal
        which step matched. On a collision the newest step wins.
        """
        totp = self._totp(secret)
        current = self.current_step(now)
        matched: int | None = None
        window = self.config.valid_window
        for step in range(current - window, current + window + 1):
            if constant_time_equals(totp.generate_otp(step), code):
                matched = step
        return matched

    # ═══════════════════════════════════════════════════════════════
    # ENROLLMENT
    # ═══════════════════════════════════════════════════════════════

    async def provision(self, account_name: str, *, with_qr: bool = False) -> TotpSetup:
        """Generate a new secret and the material to enroll it.

        Args:
            account_name: Label shown in the authenticator (email or phone).
            with_qr: Also render the provisioning URI as a PNG.
        """
        secret = pyotp.random_base32()
        uri = self._totp(secret).provisioning_uri(
            name=account_name, issuer_name=self.config.issuer
        )
        encrypted = await asyncio.wait_for(
            self.key_manager.encrypt(secret), timeout=self.io_timeout
        )
        return TotpSetup(
            secret=secret,
            provisioning_uri=uri,
            manual_key=" ".join(secret[i : i + 4] for i in range(0, len(secret), 4)),
            encrypted_secret=encrypted,
            qr_code_base64=render_qr_png_base64(uri) if with_qr else None,
        )

    # ═══════════════════════════════════════════════════════════════
    # STRATEGY
    # ═══════════════════════════════════════════════════════════════

    async def initiate(self, request: InitiateRequest) -> InitiateResult:
        # Codes come from the member's authenticator; nothing to deliver.
        return InitiateSuccess(factor=self.kind, audit_diff={"delivery": "none"})

    async def verify(self, request: VerifyRequest) -> VerifyResult:
        if request.token is None or str(request.token).strip() == "":
            return failure(
                self.kind,
                ErrorCode.TOKEN_REQUIRED,
                ErrorKind.INPUT,
                "Enter the code shown in your authenticator app.",
            )

        encrypted = request.profile.totp_secret_encrypted
        if encrypted is None:
            logger.error(
                "TOTP enrolled without a stored secret for user %s", request.user_id
            )
            return failure(
                self.kind,
                ErrorCode.SECRET_UNAVAILABLE,
                ErrorKind.INFRASTRUCTURE,
                "Authenticator secret is missing. Contact support.",
            )
        try:
            secret = await asyncio.wait_for(
                self.key_manager.decrypt(encrypted), timeout=self.io_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Key manager timed out decrypting TOTP secret for %s", request.user_id
            )
            return failure(
                self.kind,
                ErrorCode.SECRET_UNAVAILABLE,
                ErrorKind.INFRASTRUCTURE,
                "Authenticator verification is temporarily unavailable.",
                cause="timeout",
            )
        except MfaInfrastructureError as e:
            logger.error(
                "TOTP secret decryption failed for user %s: %s", request.user_id, e
            )
            return failure(
                self.kind,
                ErrorCode.SECRET_UNAVAILABLE,
                ErrorKind.INFRASTRUCTURE,
                "Authenticator verification is temporarily unavailable.",
                cause="decrypt",
            )

        code = _NON_DIGITS.sub("", str(request.token))
        if len(code) != self.config.digits:
            return failure(
                self.kind,
                ErrorCode.INVALID_TOKEN_FORMAT,
                ErrorKind.INPUT,
                f"Authenticator codes are {self.config.digits} digits.",
            )

        try:
            step = self.match_step(secret, code, request.now)
        except (binascii.Error, ValueError) as e:
            logger.error(
                "Stored TOTP secret for user %s is not valid base32: %s",
                request.user_id,
                e,
            )
            return failure(
                self.kind,
                ErrorCode.SECRET_UNAVAILABLE,
                ErrorKind.INFRASTRUCTURE,
                "Authenticator secret is unusable. Contact support.",
                cause="secret_format",
            )

        if step is None:
            return failure(
                self.kind,
                ErrorCode.INVALID_CODE,
                ErrorKind.VERIFICATION,
                "The code is incorrect. Check your device clock and try again.",
            )

        last_step = request.profile.last_verified_step
        if last_step is not None and step <= last_step:
            logger.warning(
                "TOTP replay blocked for user %s: step %d, watermark %d",
                request.user_id,
                step,
                last_step,
            )
            return failure(
                self.kind,
                ErrorCode.REPLAY_BLOCKED,
                ErrorKind.VERIFICATION,
                "This code was already used. Wait for the next code.",
                step=step,
                last_verified_step=last_step,
            )

        try:
            claimed = await asyncio.wait_for(
                self.replay_guard.claim_step(request.user_id, step),
                timeout=self.io_timeout,
            )
        except (asyncio.TimeoutError, MfaInfrastructureError) as e:
            logger.error("Replay guard unavailable for user %s: %r", request.user_id, e)
            return failure(
                self.kind,
                ErrorCode.STORE_UNAVAILABLE,
                ErrorKind.INFRASTRUCTURE,
                "Verification is temporarily unavailable.",
            )
        if not claimed:
            logger.warning(
                "TOTP replay blocked for user %s: step %d claimed concurrently",
                request.user_id,
                step,
            )
            return failure(
                self.kind,
                ErrorCode.REPLAY_BLOCKED,
                ErrorKind.VERIFICATION,
                "This code was already used. Wait for the next code.",
                step=step,
            )

        next_step = step if last_step is None else max(last_step, step)
        return VerifySuccess(
            factor=self.kind,
            delta=StateDelta(next_last_step=next_step),
            audit_diff={
                "step": step,
                "drift": step - self.current_step(request.now),
                "previous_step": last_step,
            },
        )


__all__: list[str] = ["TotpFactor", "TotpSetup"]
