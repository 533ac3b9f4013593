"""Device challenge-response factor (QR + biometric).

Used for cross-device login. The signed-in surface renders a short-lived
challenge ``{session_id, origin, nonce, expires_at, audience}`` as a QR code.
A second device holding an enrolled key (gated by biometrics or secure
hardware) signs the challenge and submits ``{signature, signed_message,
device_id}``.

Verification checks, in order:

1. structural validity of the assertion and challenge;
2. ``now < expires_at``;
3. origin and audience match the expected relying party (relay protection);
4. the signature verifies against the device's enrolled public key;
5. the challenge was issued by us, is still live on our side, matches what
   was signed and has not been consumed.

Every failure carries a specific ``reason`` the initiating surface can show.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
import secrets
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Mapping
from uuid import uuid4

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from ..config import DeviceChallengeConfig
from ..exceptions import ChallengeFormatError, MfaInfrastructureError
from ..models import Challenge, Channel, FactorKind, StateDelta
from ..qr import render_qr_png_base64
from ..results import ErrorCode, ErrorKind, InitiateSuccess, VerifySuccess, failure

if TYPE_CHECKING:
    from ..ports import IChallengeStore, InitiateRequest, VerifyRequest
    from ..results import Failure, InitiateResult, VerifyResult

logger = logging.getLogger("ibimina_mfa.factors.device")


# ═══════════════════════════════════════════════════════════════
# WIRE MODELS
# ═══════════════════════════════════════════════════════════════


class DeviceChallenge(BaseModel):
    """Challenge rendered as a QR code and signed by the second device."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    session_id: str
    origin: str
    nonce: str
    expires_at: datetime
    audience: str

    @field_validator("expires_at")
    @classmethod
    def _require_timezone(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("expires_at must carry a timezone")
        return value

    def canonical_json(self) -> str:
        """Deterministic serialization; this exact string is what gets signed."""
        return json.dumps(
            self.model_dump(mode="json"), sort_keys=True, separators=(",", ":")
        )


class DeviceAssertion(BaseModel):
    """What the second device submits."""

    model_config = ConfigDict(frozen=True)

    signature: str
    signed_message: str
    device_id: str


def _b64decode(value: str) -> bytes:
    """Decode standard or URL-safe base64, with or without padding."""
    value = value.strip().replace("+", "-").replace("/", "_")
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def parse_assertion(token: Any) -> DeviceAssertion:
    """Parse a device assertion from a mapping, JSON or base64 JSON.

    Raises:
        ChallengeFormatError: If the token is not a well-formed assertion.
    """
    if isinstance(token, DeviceAssertion):
        return token
    data: Any = token
    if isinstance(token, (str, bytes)):
        raw = token.decode() if isinstance(token, bytes) else token
        raw = raw.strip()
        if not raw:
            raise ChallengeFormatError("assertion is empty")
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            try:
                data = json.loads(_b64decode(raw))
            except (binascii.Error, ValueError) as e:
                raise ChallengeFormatError("assertion is not JSON") from e
    if not isinstance(data, Mapping):
        raise ChallengeFormatError("assertion must be an object")
    try:
        return DeviceAssertion.model_validate(dict(data))
    except ValidationError as e:
        fields = ", ".join(str(err["loc"][0]) for err in e.errors() if err["loc"])
        raise ChallengeFormatError(
            f"assertion is missing or has invalid {fields}"
        ) from e


def verify_signature(public_key_pem: str, signature: bytes, message: bytes) -> None:
    """Verify a device signature.

    Supports ECDSA (P-256, SHA-256), Ed25519 and RSA PKCS#1 v1.5 (SHA-256).

    Raises:
        InvalidSignature: If the signature does not verify.
        ValueError: If the key cannot be loaded or has an unsupported type.
    """
    key = serialization.load_pem_public_key(public_key_pem.encode())
    if isinstance(key, ec.EllipticCurvePublicKey):
        key.verify(signature, message, ec.ECDSA(hashes.SHA256()))
    elif isinstance(key, ed25519.Ed25519PublicKey):
        key.verify(signature, message)
    elif isinstance(key, rsa.RSAPublicKey):
        key.verify(signature, message, padding.PKCS1v15(), hashes.SHA256())
    else:
        raise ValueError(f"Unsupported device key type: {type(key).__name__}")


# ═══════════════════════════════════════════════════════════════
# STRATEGY
# ═══════════════════════════════════════════════════════════════


class DeviceChallengeFactor:
    """Device challenge strategy.

    Example:
        ```python
        device = DeviceChallengeFactor(
            challenge_store=store,
            config=DeviceChallengeConfig(origin="https://app.sacco.rw",
                                         audience="app.sacco.rw"),
        )
        issued = await device.initiate(InitiateRequest(user_id, profile, now))
        qr_payload = issued.metadata["qr_payload"]
        ```
    """

    kind = FactorKind.DEVICE

    def __init__(
        self,
        *,
        challenge_store: IChallengeStore,
        config: DeviceChallengeConfig | None = None,
        io_timeout: float = 5.0,
    ) -> None:
        self.challenge_store = challenge_store
        self.config = config or DeviceChallengeConfig()
        self.io_timeout = io_timeout

    def _reject(self, code: ErrorCode, reason: str, **diff: Any) -> Failure:
        return failure(self.kind, code, ErrorKind.VERIFICATION, reason, **diff)

    def _store_unavailable(self, e: BaseException) -> Failure:
        logger.error("Device challenge store unavailable: %r", e)
        return failure(
            self.kind,
            ErrorCode.STORE_UNAVAILABLE,
            ErrorKind.INFRASTRUCTURE,
            "Verification is temporarily unavailable.",
        )

    async def initiate(self, request: InitiateRequest) -> InitiateResult:
        now = request.now
        challenge = DeviceChallenge(
            session_id=str(uuid4()),
            origin=self.config.origin,
            nonce=secrets.token_urlsafe(32),
            expires_at=now + timedelta(seconds=self.config.ttl_seconds),
            audience=self.config.audience,
        )
        try:
            await asyncio.wait_for(
                self.challenge_store.create(
                    Challenge(
                        id=challenge.session_id,
                        user_id=request.user_id,
                        factor=self.kind,
                        channel=Channel.DEVICE,
                        created_at=now,
                        expires_at=challenge.expires_at,
                        nonce=challenge.nonce,
                        metadata={
                            "origin": challenge.origin,
                            "audience": challenge.audience,
                        },
                    )
                ),
                timeout=self.io_timeout,
            )
        except (asyncio.TimeoutError, MfaInfrastructureError) as e:
            logger.error("Could not store device challenge: %r", e)
            return failure(
                self.kind,
                ErrorCode.ISSUE_FAILED,
                ErrorKind.INFRASTRUCTURE,
                "Could not start device sign-in. Try again shortly.",
            )

        payload = challenge.canonical_json()
        metadata: dict[str, Any] = {
            "session_id": challenge.session_id,
            "qr_payload": payload,
        }
        if self.config.render_qr_image:
            metadata["qr_code_base64"] = render_qr_png_base64(payload)
        return InitiateSuccess(
            factor=self.kind,
            channel=Channel.DEVICE,
            expires_at=challenge.expires_at,
            metadata=metadata,
            audit_diff={
                "session_id": challenge.session_id,
                "origin": challenge.origin,
                "expires_at": challenge.expires_at.isoformat(),
            },
        )

    async def verify(self, request: VerifyRequest) -> VerifyResult:
        # (1) structure
        try:
            assertion = parse_assertion(request.token)
        except ChallengeFormatError as e:
            return self._reject(
                ErrorCode.CHALLENGE_INVALID,
                f"The device response is malformed: {e.reason}.",
            )
        try:
            challenge = DeviceChallenge.model_validate_json(assertion.signed_message)
            signature = _b64decode(assertion.signature)
        except (ValidationError, binascii.Error, ValueError):
            return self._reject(
                ErrorCode.CHALLENGE_INVALID,
                "The signed challenge is malformed. Scan a fresh QR code.",
                device_id=assertion.device_id,
            )

        # (2) freshness
        if request.now >= challenge.expires_at:
            return self._reject(
                ErrorCode.CHALLENGE_EXPIRED,
                "The QR code has expired. Refresh the page and scan the new code.",
                session_id=challenge.session_id,
            )

        # (3) relying-party binding
        if challenge.origin != self.config.origin:
            logger.warning(
                "Device challenge origin mismatch for user %s: got %s, expected %s",
                request.user_id,
                challenge.origin,
                self.config.origin,
            )
            return self._reject(
                ErrorCode.ORIGIN_MISMATCH,
                f"This code was issued for {challenge.origin}, not "
                f"{self.config.origin}. Only scan codes shown on the official site.",
                session_id=challenge.session_id,
                origin=challenge.origin,
            )
        if challenge.audience != self.config.audience:
            logger.warning(
                "Device challenge audience mismatch for user %s: got %s, expected %s",
                request.user_id,
                challenge.audience,
                self.config.audience,
            )
            return self._reject(
                ErrorCode.AUDIENCE_MISMATCH,
                f"This code was issued for {challenge.audience}, not "
                f"{self.config.audience}. Only scan codes shown on the official site.",
                session_id=challenge.session_id,
                audience=challenge.audience,
            )

        # (4) possession
        public_key = request.profile.device_keys.get(assertion.device_id)
        if public_key is None:
            return self._reject(
                ErrorCode.UNKNOWN_DEVICE,
                "This device is not enrolled. Enroll it from your security settings.",
                device_id=assertion.device_id,
            )
        try:
            verify_signature(
                public_key, signature, assertion.signed_message.encode("utf-8")
            )
        except InvalidSignature:
            return self._reject(
                ErrorCode.INVALID_SIGNATURE,
                "The device signature did not verify. Retry the biometric prompt.",
                device_id=assertion.device_id,
            )
        except ValueError as e:
            logger.error(
                "Unusable enrolled key for device %s of user %s: %s",
                assertion.device_id,
                request.user_id,
                e,
            )
            return self._reject(
                ErrorCode.INVALID_SIGNATURE,
                "The enrolled key for this device is unusable. Re-enroll the device.",
                device_id=assertion.device_id,
            )

        # (5) single use
        try:
            stored = await asyncio.wait_for(
                self.challenge_store.get(challenge.session_id), timeout=self.io_timeout
            )
            if (
                stored is None
                or stored.user_id != request.user_id
                or stored.channel is not Channel.DEVICE
                or stored.nonce is None
                or not secrets.compare_digest(stored.nonce, challenge.nonce)
            ):
                return self._reject(
                    ErrorCode.CHALLENGE_INVALID,
                    "This QR code was not issued for your session. Scan a fresh code.",
                    session_id=challenge.session_id,
                )
            if stored.is_expired(request.now):
                return self._reject(
                    ErrorCode.CHALLENGE_EXPIRED,
                    "The QR code has expired. Refresh the page and scan the new code.",
                    session_id=challenge.session_id,
                )
            if (
                stored.expires_at != challenge.expires_at
                or stored.metadata.get("origin") != challenge.origin
                or stored.metadata.get("audience") != challenge.audience
            ):
                logger.warning(
                    "Signed device challenge %s differs from the issued one (user %s)",
                    challenge.session_id,
                    request.user_id,
                )
                return self._reject(
                    ErrorCode.CHALLENGE_INVALID,
                    "The signed challenge does not match the one we issued. "
                    "Scan a fresh code.",
                    session_id=challenge.session_id,
                )
            if stored.consumed_at is not None:
                consumed = False
            else:
                consumed = await asyncio.wait_for(
                    self.challenge_store.mark_consumed(stored.id, request.now),
                    timeout=self.io_timeout,
                )
        except (asyncio.TimeoutError, MfaInfrastructureError) as e:
            return self._store_unavailable(e)

        if not consumed:
            logger.warning(
                "Device challenge %s replayed for user %s",
                challenge.session_id,
                request.user_id,
            )
            return self._reject(
                ErrorCode.CHALLENGE_CONSUMED,
                "This QR code was already used. Refresh the page for a new one.",
                session_id=challenge.session_id,
            )

        return VerifySuccess(
            factor=self.kind,
            delta=StateDelta(consumed_challenge_id=stored.id),
            audit_diff={
                "session_id": challenge.session_id,
                "device_id": assertion.device_id,
            },
        )


__all__: list[str] = [
    "DeviceChallenge",
    "DeviceAssertion",
    "DeviceChallengeFactor",
    "parse_assertion",
    "verify_signature",
]
