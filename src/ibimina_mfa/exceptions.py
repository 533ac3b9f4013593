"""MFA exceptions.

Verification outcomes (wrong code, expired challenge, replay) are *not*
exceptions: factors report them as verdicts. Exceptions are reserved for
infrastructure failures and programming errors, so that a broken key store is
never reported to a member as "wrong code".
"""

from __future__ import annotations

# ═══════════════════════════════════════════════════════════════
# BASE ERROR
# ═══════════════════════════════════════════════════════════════


class MfaError(Exception):
    """Root exception for the MFA core."""


class MfaConfigurationError(MfaError):
    """Raised when the MFA core is wired incorrectly.

    Examples:
        - Missing data key or pepper
        - Dispatcher asked to initiate without a profile or profile store
    """


# ═══════════════════════════════════════════════════════════════
# INFRASTRUCTURE ERRORS
# ═══════════════════════════════════════════════════════════════


class MfaInfrastructureError(MfaError):
    """Base class for failures of a collaborator (KMS, store, delivery).

    These map to server-side errors, never to verification failures.
    """


class SecretDecryptionError(MfaInfrastructureError):
    """Raised when a stored secret cannot be decrypted.

    The ciphertext was tampered with, or the data key is wrong.
    """


class DeliveryError(MfaInfrastructureError):
    """Raised when an email/WhatsApp code could not be handed to the sender."""


class StoreUnavailableError(MfaInfrastructureError):
    """Raised when a challenge, profile or guard store cannot be reached."""


# ═══════════════════════════════════════════════════════════════
# PAYLOAD ERRORS
# ═══════════════════════════════════════════════════════════════


class ChallengeFormatError(MfaError):
    """Raised when a device challenge or assertion payload is malformed.

    Attributes:
        reason: Human-readable explanation suitable for the initiating surface.
    """

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


__all__: list[str] = [
    "MfaError",
    "MfaConfigurationError",
    "MfaInfrastructureError",
    "SecretDecryptionError",
    "DeliveryError",
    "StoreUnavailableError",
    "ChallengeFormatError",
]
