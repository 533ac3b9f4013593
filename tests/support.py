"""Shared test helpers."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pyotp

TOTP_SECRET = "JBSWY3DPEHPK3PXP"

# 5 s into TOTP step 101.
STEP_101 = datetime.fromtimestamp(101 * 30, tz=timezone.utc) + timedelta(seconds=5)


def totp_code(step: int, secret: str = TOTP_SECRET) -> str:
    return pyotp.TOTP(secret).generate_otp(step)


class FrozenClock:
    """Deterministic clock; call it to read, ``advance`` to move it."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class RecordingDeliveryHook:
    """Delivery hook that remembers what it sent."""

    def __init__(self) -> None:
        self.emails_sent: list[tuple[str, str, datetime]] = []
        self.whatsapp_sent: list[tuple[str, str, datetime]] = []

    async def send_email_code(
        self, email: str, code: str, expires_at: datetime
    ) -> None:
        self.emails_sent.append((email, code, expires_at))

    async def send_whatsapp_code(
        self, phone: str, code: str, expires_at: datetime
    ) -> None:
        self.whatsapp_sent.append((phone, code, expires_at))


class FailingDeliveryHook:
    """Delivery hook whose provider is down."""

    def __init__(self, error: Exception) -> None:
        self.error = error
        self.calls = 0

    async def send_email_code(
        self, email: str, code: str, expires_at: datetime
    ) -> None:
        self.calls += 1
        raise self.error

    async def send_whatsapp_code(
        self, phone: str, code: str, expires_at: datetime
    ) -> None:
        self.calls += 1
        raise self.error
