"""Factor strategies.

One strategy per factor kind, each behind the same ``initiate`` / ``verify``
interface (:class:`~ibimina_mfa.ports.IFactorStrategy`).
"""

from __future__ import annotations

from .backup_codes import BackupCodeBatch, BackupCodeFactor, normalize_backup_code
from .device import (
    DeviceAssertion,
    DeviceChallenge,
    DeviceChallengeFactor,
    parse_assertion,
    verify_signature,
)
from .otp import EmailOtpFactor, OtpFactor, WhatsAppOtpFactor
from .totp import TotpFactor, TotpSetup

__all__: list[str] = [
    "BackupCodeBatch",
    "BackupCodeFactor",
    "normalize_backup_code",
    "DeviceAssertion",
    "DeviceChallenge",
    "DeviceChallengeFactor",
    "parse_assertion",
    "verify_signature",
    "OtpFactor",
    "EmailOtpFactor",
    "WhatsAppOtpFactor",
    "TotpFactor",
    "TotpSetup",
]
