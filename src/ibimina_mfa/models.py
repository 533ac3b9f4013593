"""MFA domain model: factor kinds, profile, challenges and state deltas.

All records are immutable. Operations that change MFA material return a new
value (or a :class:`StateDelta`) instead of mutating shared state; stores
apply deltas atomically.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping
from uuid import uuid4


def utcnow() -> datetime:
    """Default clock used across the package."""
    return datetime.now(timezone.utc)


class FactorKind(str, Enum):
    """Supported second factors."""

    TOTP = "totp"
    EMAIL = "email"
    WHATSAPP = "whatsapp"
    BACKUP = "backup"
    DEVICE = "device"

    @classmethod
    def parse(cls, value: str | FactorKind) -> FactorKind | None:
        """Return the matching kind, or None for unknown values."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


class Channel(str, Enum):
    """Delivery channel of a challenge."""

    EMAIL = "email"
    WHATSAPP = "whatsapp"
    DEVICE = "device"


@dataclass(frozen=True)
class DeviceToken:
    """A remembered device granting reduced step-up until ``expires_at``.

    Only the digest of the token is kept; the plaintext goes to the caller
    once (typically into a signed cookie).
    """

    token_hash: str
    created_at: datetime
    expires_at: datetime
    label: str | None = None

    def is_valid(self, now: datetime) -> bool:
        return now < self.expires_at


@dataclass(frozen=True)
class StateDelta:
    """Changes a successful verification makes to the member's MFA profile.

    Attributes:
        next_last_step: New TOTP step watermark.
        next_backup_code_hashes: Remaining backup-code hashes.
        consumed_backup_hash: The single hash removed by this verification.
        trusted_device: Device token to remember.
        consumed_challenge_id: OTP / device challenge marked consumed.
    """

    next_last_step: int | None = None
    next_backup_code_hashes: tuple[str, ...] | None = None
    consumed_backup_hash: str | None = None
    trusted_device: DeviceToken | None = None
    consumed_challenge_id: str | None = None

    @property
    def changes_profile(self) -> bool:
        return (
            self.next_last_step is not None
            or self.consumed_backup_hash is not None
            or self.trusted_device is not None
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "next_last_step": self.next_last_step,
            "next_backup_code_hashes": (
                list(self.next_backup_code_hashes)
                if self.next_backup_code_hashes is not None
                else None
            ),
            "trusted_device": (
                {
                    "token_hash": self.trusted_device.token_hash,
                    "expires_at": self.trusted_device.expires_at.isoformat(),
                }
                if self.trusted_device
                else None
            ),
            "consumed_challenge_id": self.consumed_challenge_id,
        }


@dataclass(frozen=True)
class MfaProfile:
    """Durable MFA state of one member.

    Attributes:
        user_id: Member identifier.
        enrolled_factors: Factor kinds the member may use.
        totp_secret_encrypted: AES-GCM encrypted TOTP secret.
        last_verified_step: Highest TOTP step ever accepted (monotonic).
        backup_code_hashes: Hashes of unused backup codes.
        trusted_device_tokens: Remembered devices.
        device_keys: Enrolled device public keys (PEM) keyed by device id.
    """

    user_id: str
    enrolled_factors: frozenset[FactorKind] = frozenset()
    totp_secret_encrypted: bytes | None = None
    last_verified_step: int | None = None
    backup_code_hashes: tuple[str, ...] = ()
    trusted_device_tokens: frozenset[DeviceToken] = frozenset()
    device_keys: Mapping[str, str] = field(
        default_factory=lambda: MappingProxyType({})
    )

    def __post_init__(self) -> None:
        object.__setattr__(self, "enrolled_factors", frozenset(self.enrolled_factors))
        object.__setattr__(self, "backup_code_hashes", tuple(self.backup_code_hashes))
        object.__setattr__(
            self, "trusted_device_tokens", frozenset(self.trusted_device_tokens)
        )
        object.__setattr__(
            self, "device_keys", MappingProxyType(dict(self.device_keys))
        )

    def is_enrolled(self, factor: FactorKind) -> bool:
        return factor in self.enrolled_factors

    def apply(self, delta: StateDelta) -> MfaProfile:
        """Merge a delta into a new profile.

        The merge is commutative: the step watermark only moves forward,
        a consumed backup hash is removed from whatever is currently stored,
        and trusted devices accumulate. Two concurrent commits therefore
        never resurrect consumed material.
        """
        last_step = self.last_verified_step
        if delta.next_last_step is not None:
            last_step = (
                delta.next_last_step
                if last_step is None
                else max(last_step, delta.next_last_step)
            )

        hashes = self.backup_code_hashes
        if delta.consumed_backup_hash is not None:
            hashes = tuple(h for h in hashes if h != delta.consumed_backup_hash)

        devices = self.trusted_device_tokens
        if delta.trusted_device is not None:
            devices = devices | {delta.trusted_device}

        return replace(
            self,
            last_verified_step=last_step,
            backup_code_hashes=hashes,
            trusted_device_tokens=devices,
        )


@dataclass(frozen=True)
class Challenge:
    """A short-lived, single-use prompt issued by an initiate call.

    Exactly one of ``code_hash`` (email/WhatsApp) or ``nonce`` (device) is
    set.
    """

    user_id: str
    factor: FactorKind
    channel: Channel
    created_at: datetime
    expires_at: datetime
    code_hash: str | None = None
    nonce: str | None = None
    consumed_at: datetime | None = None
    failed_attempts: int = 0
    metadata: Mapping[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid4()))

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def is_active(self, now: datetime) -> bool:
        return self.consumed_at is None and not self.is_expired(now)


__all__: list[str] = [
    "utcnow",
    "FactorKind",
    "Channel",
    "DeviceToken",
    "StateDelta",
    "MfaProfile",
    "Challenge",
]
