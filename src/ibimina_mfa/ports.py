"""MFA ports (protocols).

The core never talks to a database, KMS or messaging provider directly.
Applications provide these collaborators. In-memory adapters live in
:mod:`ibimina_mfa.limits` and :mod:`ibimina_mfa.store`; Redis adapters live
in :mod:`ibimina_mfa.redis`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .audit.events import AuditAction, AuditEvent
    from .models import Challenge, Channel, FactorKind, MfaProfile, StateDelta
    from .results import InitiateResult, VerifyResult


# ═══════════════════════════════════════════════════════════════
# STRATEGY REQUESTS
# ═══════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class InitiateRequest:
    """Input handed to a factor strategy's ``initiate``.

    Attributes:
        user_id: Member identifier.
        profile: Current MFA profile (enrollment already checked).
        now: Decision time.
        contact: Email address or E.164 phone number for channel factors.
    """

    user_id: str
    profile: MfaProfile
    now: datetime
    contact: str | None = None


@dataclass(frozen=True)
class VerifyRequest:
    """Input handed to a factor strategy's ``verify``.

    Attributes:
        user_id: Member identifier.
        profile: Snapshot of the MFA profile the caller loaded.
        now: Decision time.
        token: Submitted code, or the device assertion (str or mapping).
        context: Request facts from the session layer (IP, user agent).
    """

    user_id: str
    profile: MfaProfile
    now: datetime
    token: Any = None
    context: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class IFactorStrategy(Protocol):
    """One second factor behind a uniform initiate/verify interface."""

    kind: FactorKind

    async def initiate(self, request: InitiateRequest) -> InitiateResult:
        """Issue whatever the member needs to present this factor."""
        ...

    async def verify(self, request: VerifyRequest) -> VerifyResult:
        """Check the presented credential and return a verdict.

        Must not raise for verification failures. Infrastructure failures are
        reported as ``ErrorKind.INFRASTRUCTURE`` verdicts.
        """
        ...


# ═══════════════════════════════════════════════════════════════
# COLLABORATORS
# ═══════════════════════════════════════════════════════════════


@runtime_checkable
class IKeyManager(Protocol):
    """Protocol for encrypting secrets at rest (KMS, envelope key, ...)."""

    async def encrypt(self, secret: str) -> bytes:
        """Encrypt a secret for storage."""
        ...

    async def decrypt(self, payload: bytes) -> str:
        """Decrypt a stored secret.

        Raises:
            SecretDecryptionError: If the payload cannot be decrypted.
        """
        ...


@runtime_checkable
class IDeliveryHook(Protocol):
    """Protocol for OTP delivery.

    Applications implement this to send codes by email or WhatsApp. The MFA
    core does NOT include any sender.
    """

    async def send_email_code(
        self, email: str, code: str, expires_at: datetime
    ) -> None:
        """Send a one-time code by email."""
        ...

    async def send_whatsapp_code(
        self, phone: str, code: str, expires_at: datetime
    ) -> None:
        """Send a one-time code by WhatsApp."""
        ...


@runtime_checkable
class IAuditSink(Protocol):
    """Protocol for append-only MFA audit storage."""

    async def record(self, event: AuditEvent) -> None:
        """Append an audit event."""
        ...

    async def get_events(
        self,
        user_id: str,
        *,
        actions: list[AuditAction] | None = None,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """Get audit events for a member, most recent first."""
        ...


@runtime_checkable
class IProfileStore(Protocol):
    """Protocol for the durable MFA profile store."""

    async def get_profile(self, user_id: str) -> MfaProfile:
        """Load a member's MFA profile (empty profile if none exists)."""
        ...

    async def persist_profile(self, user_id: str, delta: StateDelta) -> MfaProfile:
        """Atomically merge a delta into the stored profile.

        Implementations must merge against the *current* stored value (see
        :meth:`MfaProfile.apply`), never overwrite with a stale snapshot.
        """
        ...


@runtime_checkable
class IChallengeStore(Protocol):
    """Protocol for in-flight OTP and device challenges."""

    async def create(self, challenge: Challenge) -> None:
        """Persist a new challenge."""
        ...

    async def get(self, challenge_id: str) -> Challenge | None:
        """Look up a challenge by id, consumed or not."""
        ...

    async def get_latest(self, user_id: str, channel: Channel) -> Challenge | None:
        """Return the most recent unconsumed challenge, expired or not."""
        ...

    async def mark_consumed(self, challenge_id: str, at: datetime) -> bool:
        """Compare-and-swap ``consumed_at`` from None to ``at``.

        Returns:
            True for exactly one caller per challenge.
        """
        ...

    async def record_failure(self, challenge_id: str) -> int:
        """Increment and return the failed attempt count of a challenge."""
        ...

    async def delete(self, challenge_id: str) -> None:
        """Remove a challenge (e.g. when delivery failed)."""
        ...

    async def purge_expired(self, now: datetime) -> int:
        """Drop expired or consumed challenges. Returns how many were dropped."""
        ...


@runtime_checkable
class IReplayGuard(Protocol):
    """Protocol for single-use claims on TOTP steps and backup codes."""

    async def claim_step(self, user_id: str, step: int) -> bool:
        """Claim a TOTP time-step. True for exactly one caller per step."""
        ...

    async def claim_backup(self, user_id: str, code_hash: str) -> bool:
        """Claim a backup code hash. True for exactly one caller per hash."""
        ...


@runtime_checkable
class IIssuanceLedger(Protocol):
    """Protocol for the recent-request (cool-down) limit on OTP issuance."""

    async def reserve(
        self,
        user_id: str,
        channel: Channel,
        now: datetime,
        cooldown_seconds: float,
    ) -> datetime | None:
        """Atomically reserve an issuance slot.

        Returns:
            None when reserved, otherwise the time a retry may succeed.
        """
        ...

    async def release(self, user_id: str, channel: Channel) -> None:
        """Give back a reservation whose issuance failed."""
        ...


__all__: list[str] = [
    "InitiateRequest",
    "VerifyRequest",
    "IFactorStrategy",
    "IKeyManager",
    "IDeliveryHook",
    "IAuditSink",
    "IProfileStore",
    "IChallengeStore",
    "IReplayGuard",
    "IIssuanceLedger",
]
