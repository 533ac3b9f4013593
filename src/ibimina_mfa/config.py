"""MFA configuration.

Plain frozen dataclasses passed to constructors. ``MfaConfig.from_env`` maps
``MFA_*`` environment variables onto them for deployments that configure
through the environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import Mapping

from .exceptions import MfaConfigurationError


@dataclass(frozen=True)
class TotpConfig:
    """TOTP configuration.

    Attributes:
        issuer: Application name shown in authenticator apps.
        digits: Number of digits in a code.
        interval: Time-step size in seconds.
        valid_window: Steps accepted either side of the current one.
        algorithm: HMAC digest (sha1 for authenticator compatibility).
    """

    issuer: str = "SACCO+"
    digits: int = 6
    interval: int = 30
    valid_window: int = 1
    algorithm: str = "sha1"


@dataclass(frozen=True)
class OtpConfig:
    """Email/WhatsApp OTP configuration.

    Attributes:
        enabled: Whether the channel is provisioned at all.
        code_length: Number of digits in OTP code.
        ttl_seconds: Time-to-live in seconds.
        max_attempts: Failed verifications before a challenge is burned.
        cooldown_seconds: Minimum seconds between issuances.
    """

    enabled: bool = True
    code_length: int = 6
    ttl_seconds: int = 300  # 5 minutes
    max_attempts: int = 5
    cooldown_seconds: int = 60  # 1 minute between resends


@dataclass(frozen=True)
class BackupCodeConfig:
    """Backup code configuration.

    Attributes:
        code_length: Characters per code, excluding the separator.
        count: Codes generated per batch.
        low_watermark: Remaining count at which re-provisioning is suggested.
    """

    code_length: int = 10
    count: int = 10
    low_watermark: int = 2


@dataclass(frozen=True)
class DeviceChallengeConfig:
    """Cross-device (QR + biometric) challenge configuration.

    Attributes:
        origin: Relying-party origin the challenge is rendered on.
        audience: Relying-party identity the device must sign for.
        ttl_seconds: Challenge lifetime.
        render_qr_image: Also return a base64 PNG of the QR payload.
    """

    origin: str = "https://localhost"
    audience: str = "localhost"
    ttl_seconds: int = 120
    render_qr_image: bool = False


@dataclass(frozen=True)
class MfaConfig:
    """Aggregate MFA configuration.

    Attributes:
        totp: TOTP settings.
        email: Email OTP settings.
        whatsapp: WhatsApp OTP settings (10 minute codes).
        backup: Backup code settings.
        device: Device challenge settings.
        trusted_device_ttl: Lifetime of a remembered device.
        verify_max_attempts: Verify calls allowed per member per window.
        verify_window_seconds: Length of that window.
        verify_ip_max_attempts: Verify calls allowed per client IP per window.
        verify_ip_window_seconds: Length of the per-IP window.
        io_timeout_seconds: Bound on every call to a collaborator.
    """

    totp: TotpConfig = field(default_factory=TotpConfig)
    email: OtpConfig = field(default_factory=OtpConfig)
    whatsapp: OtpConfig = field(default_factory=lambda: OtpConfig(ttl_seconds=600))
    backup: BackupCodeConfig = field(default_factory=BackupCodeConfig)
    device: DeviceChallengeConfig = field(default_factory=DeviceChallengeConfig)
    trusted_device_ttl: timedelta = timedelta(days=30)
    verify_max_attempts: int = 5
    verify_window_seconds: int = 300
    verify_ip_max_attempts: int = 10
    verify_ip_window_seconds: int = 300
    io_timeout_seconds: float = 5.0

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> MfaConfig:
        """Build a configuration from ``MFA_*`` environment variables.

        Unset variables keep their defaults.

        Raises:
            MfaConfigurationError: If a variable cannot be parsed.
        """
        env = os.environ if environ is None else environ
        config = cls()

        def _int(name: str, default: int) -> int:
            raw = env.get(name)
            if raw is None or raw == "":
                return default
            try:
                return int(raw)
            except ValueError as e:
                raise MfaConfigurationError(f"{name} must be an integer") from e

        def _bool(name: str, default: bool) -> bool:
            raw = env.get(name)
            if raw is None or raw == "":
                return default
            return raw.strip().lower() in {"1", "true", "yes", "on"}

        totp = replace(
            config.totp,
            issuer=env.get("MFA_TOTP_ISSUER", config.totp.issuer),
            valid_window=_int("MFA_TOTP_WINDOW", config.totp.valid_window),
        )
        email = replace(
            config.email,
            enabled=_bool("MFA_EMAIL_ENABLED", config.email.enabled),
            ttl_seconds=_int("MFA_EMAIL_TTL_SECONDS", config.email.ttl_seconds),
            cooldown_seconds=_int(
                "MFA_OTP_COOLDOWN_SECONDS", config.email.cooldown_seconds
            ),
        )
        whatsapp = replace(
            config.whatsapp,
            enabled=_bool("MFA_WHATSAPP_ENABLED", config.whatsapp.enabled),
            ttl_seconds=_int("MFA_WHATSAPP_TTL_SECONDS", config.whatsapp.ttl_seconds),
            cooldown_seconds=_int(
                "MFA_OTP_COOLDOWN_SECONDS", config.whatsapp.cooldown_seconds
            ),
        )
        device = replace(
            config.device,
            origin=env.get("MFA_RP_ORIGIN", config.device.origin),
            audience=env.get("MFA_RP_AUDIENCE", config.device.audience),
            ttl_seconds=_int("MFA_DEVICE_TTL_SECONDS", config.device.ttl_seconds),
        )
        timeout_raw = env.get("MFA_IO_TIMEOUT_SECONDS")
        try:
            io_timeout = (
                float(timeout_raw) if timeout_raw else config.io_timeout_seconds
            )
        except ValueError as e:
            raise MfaConfigurationError(
                "MFA_IO_TIMEOUT_SECONDS must be a number"
            ) from e

        return replace(
            config,
            totp=totp,
            email=email,
            whatsapp=whatsapp,
            device=device,
            trusted_device_ttl=timedelta(
                days=_int("MFA_TRUSTED_DEVICE_DAYS", config.trusted_device_ttl.days)
            ),
            verify_max_attempts=_int(
                "MFA_VERIFY_MAX_ATTEMPTS", config.verify_max_attempts
            ),
            verify_window_seconds=_int(
                "MFA_VERIFY_WINDOW_SECONDS", config.verify_window_seconds
            ),
            verify_ip_max_attempts=_int(
                "MFA_VERIFY_IP_MAX_ATTEMPTS", config.verify_ip_max_attempts
            ),
            verify_ip_window_seconds=_int(
                "MFA_VERIFY_IP_WINDOW_SECONDS", config.verify_ip_window_seconds
            ),
            io_timeout_seconds=io_timeout,
        )


__all__: list[str] = [
    "TotpConfig",
    "OtpConfig",
    "BackupCodeConfig",
    "DeviceChallengeConfig",
    "MfaConfig",
]
