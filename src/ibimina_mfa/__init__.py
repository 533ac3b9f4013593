"""Step-up MFA core for the SACCO+ savings-group platform.

Verifies a second credential after a primary session exists: authenticator
(TOTP) codes, emailed or WhatsApp one-time codes, single-use backup codes and
device-signed QR challenges. Delivery, key management and storage are ports
the application provides.

Usage:
    ```python
    from ibimina_mfa import CodeHasher, FactorDispatcher, MfaConfig, SecretCipher

    dispatcher = FactorDispatcher.build(
        key_manager=SecretCipher.from_env(),
        hasher=CodeHasher.from_env(),
        audit_sink=audit_sink,
        delivery_hook=delivery_hook,
        profile_store=profile_store,
        config=MfaConfig.from_env(),
    )
    verdict = await dispatcher.verify("totp", user_id, token="123456")
    ```

Redis adapters live in :mod:`ibimina_mfa.redis` (``redis`` extra).
"""

from __future__ import annotations

from .audit import AuditAction, AuditEvent, AuditRecorder, InMemoryAuditSink
from .config import (
    BackupCodeConfig,
    DeviceChallengeConfig,
    MfaConfig,
    OtpConfig,
    TotpConfig,
)
from .crypto import CodeHasher, SecretCipher, mask_destination
from .dispatcher import FactorDispatcher
from .exceptions import (
    ChallengeFormatError,
    DeliveryError,
    MfaConfigurationError,
    MfaError,
    MfaInfrastructureError,
    SecretDecryptionError,
    StoreUnavailableError,
)
from .factors import (
    BackupCodeBatch,
    BackupCodeFactor,
    DeviceChallenge,
    DeviceChallengeFactor,
    EmailOtpFactor,
    TotpFactor,
    TotpSetup,
    WhatsAppOtpFactor,
)
from .limits import AttemptLimiter, InMemoryIssuanceLedger, InMemoryReplayGuard
from .models import Challenge, Channel, DeviceToken, FactorKind, MfaProfile, StateDelta
from .ports import (
    IAuditSink,
    IChallengeStore,
    IDeliveryHook,
    IFactorStrategy,
    IIssuanceLedger,
    IKeyManager,
    InitiateRequest,
    IProfileStore,
    IReplayGuard,
    VerifyRequest,
)
from .results import (
    ErrorCode,
    ErrorKind,
    Failure,
    InitiateResult,
    InitiateSuccess,
    VerifyResult,
    VerifySuccess,
)
from .store import InMemoryChallengeStore, InMemoryProfileStore

__version__ = "0.1.0"

__all__: list[str] = [
    # Dispatcher
    "FactorDispatcher",
    # Factors
    "TotpFactor",
    "TotpSetup",
    "EmailOtpFactor",
    "WhatsAppOtpFactor",
    "BackupCodeFactor",
    "BackupCodeBatch",
    "DeviceChallengeFactor",
    "DeviceChallenge",
    # Models
    "FactorKind",
    "Channel",
    "MfaProfile",
    "Challenge",
    "StateDelta",
    "DeviceToken",
    # Results
    "ErrorKind",
    "ErrorCode",
    "InitiateSuccess",
    "VerifySuccess",
    "Failure",
    "InitiateResult",
    "VerifyResult",
    # Ports
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
    # Adapters
    "InMemoryAuditSink",
    "InMemoryChallengeStore",
    "InMemoryProfileStore",
    "InMemoryReplayGuard",
    "InMemoryIssuanceLedger",
    "AttemptLimiter",
    # Audit
    "AuditAction",
    "AuditEvent",
    "AuditRecorder",
    # Crypto
    "SecretCipher",
    "CodeHasher",
    "mask_destination",
    # Config
    "MfaConfig",
    "TotpConfig",
    "OtpConfig",
    "BackupCodeConfig",
    "DeviceChallengeConfig",
    # Exceptions
    "MfaError",
    "MfaConfigurationError",
    "MfaInfrastructureError",
    "SecretDecryptionError",
    "DeliveryError",
    "StoreUnavailableError",
    "ChallengeFormatError",
]
