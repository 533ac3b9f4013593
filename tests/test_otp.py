"""Tests for the email and WhatsApp OTP factors."""

from __future__ import annotations

import asyncio
import threading
from datetime import timedelta

import pytest

from ibimina_mfa.config import OtpConfig
from ibimina_mfa.crypto import CodeHasher
from ibimina_mfa.exceptions import DeliveryError
from ibimina_mfa.factors.otp import EmailOtpFactor, WhatsAppOtpFactor
from ibimina_mfa.limits import InMemoryIssuanceLedger
from ibimina_mfa.models import Channel, FactorKind, MfaProfile
from ibimina_mfa.ports import InitiateRequest, VerifyRequest
from ibimina_mfa.results import (
    ErrorCode,
    ErrorKind,
    Failure,
    InitiateSuccess,
    VerifySuccess,
)
from ibimina_mfa.store import InMemoryChallengeStore
from support import STEP_101, FailingDeliveryHook, RecordingDeliveryHook

PROFILE = MfaProfile(user_id="member-1", enrolled_factors={FactorKind.EMAIL})
EMAIL = "member@example.com"


@pytest.fixture
def email_otp(
    challenge_store: InMemoryChallengeStore,
    issuance_ledger: InMemoryIssuanceLedger,
    hasher: CodeHasher,
    delivery_hook: RecordingDeliveryHook,
) -> EmailOtpFactor:
    return EmailOtpFactor(
        challenge_store=challenge_store,
        issuance_ledger=issuance_ledger,
        hasher=hasher,
        delivery_hook=delivery_hook,
    )


def initiate_request(
    seconds: float = 0, contact: str | None = EMAIL
) -> InitiateRequest:
    return InitiateRequest(
        user_id="member-1",
        profile=PROFILE,
        now=STEP_101 + timedelta(seconds=seconds),
        contact=contact,
    )


def verify_request(token: str | None, seconds: float = 0) -> VerifyRequest:
    return VerifyRequest(
        user_id="member-1",
        profile=PROFILE,
        now=STEP_101 + timedelta(seconds=seconds),
        token=token,
    )


class TestOtpInitiate:
    @pytest.mark.asyncio
    async def test_issues_and_delivers(
        self,
        email_otp: EmailOtpFactor,
        delivery_hook: RecordingDeliveryHook,
        challenge_store: InMemoryChallengeStore,
    ) -> None:
        result = await email_otp.initiate(initiate_request())

        assert isinstance(result, InitiateSuccess)
        assert result.channel is Channel.EMAIL
        assert result.expires_at == STEP_101 + timedelta(seconds=300)
        assert result.metadata == {"destination": "m*****@example.com"}

        [(contact, code, expires_at)] = delivery_hook.emails_sent
        assert contact == EMAIL
        assert len(code) == 6 and code.isdigit()
        assert expires_at == result.expires_at

        challenge = await challenge_store.get_latest("member-1", Channel.EMAIL)
        assert challenge is not None
        assert challenge.code_hash != code
        assert code not in str(result.audit_diff)

    @pytest.mark.asyncio
    async def test_rapid_double_initiate(
        self,
        email_otp: EmailOtpFactor,
        delivery_hook: RecordingDeliveryHook,
        challenge_store: InMemoryChallengeStore,
    ) -> None:
        """Two initiates within a second issue exactly one challenge."""
        first = await email_otp.initiate(initiate_request())
        second = await email_otp.initiate(initiate_request(0.5))

        assert isinstance(first, InitiateSuccess)
        assert isinstance(second, Failure)
        assert second.code is ErrorCode.RATE_LIMITED
        assert second.status == 429
        assert second.retry_at == first.expires_at
        assert second.audit_diff["limit"] == "active"
        assert challenge_store.count() == 1
        assert len(delivery_hook.emails_sent) == 1

    @pytest.mark.asyncio
    async def test_concurrent_initiates(
        self,
        email_otp: EmailOtpFactor,
        delivery_hook: RecordingDeliveryHook,
    ) -> None:
        results = await asyncio.gather(
            email_otp.initiate(initiate_request()),
            email_otp.initiate(initiate_request()),
        )

        assert sum(r.ok for r in results) == 1
        assert len(delivery_hook.emails_sent) == 1

    @pytest.mark.asyncio
    async def test_cooldown_applies_after_expiry(
        self,
        challenge_store: InMemoryChallengeStore,
        issuance_ledger: InMemoryIssuanceLedger,
        hasher: CodeHasher,
        delivery_hook: RecordingDeliveryHook,
    ) -> None:
        otp = EmailOtpFactor(
            challenge_store=challenge_store,
            issuance_ledger=issuance_ledger,
            hasher=hasher,
            delivery_hook=delivery_hook,
            config=OtpConfig(ttl_seconds=30, cooldown_seconds=60),
        )
        await otp.initiate(initiate_request())

        blocked = await otp.initiate(initiate_request(40))
        allowed = await otp.initiate(initiate_request(60))

        assert isinstance(blocked, Failure)
        assert blocked.code is ErrorCode.RATE_LIMITED
        assert blocked.audit_diff["limit"] == "cooldown"
        assert blocked.retry_at == STEP_101 + timedelta(seconds=60)
        assert isinstance(allowed, InitiateSuccess)

    @pytest.mark.asyncio
    async def test_delivery_failure_rolls_back(
        self,
        challenge_store: InMemoryChallengeStore,
        issuance_ledger: InMemoryIssuanceLedger,
        hasher: CodeHasher,
    ) -> None:
        """A failed send leaves nothing behind, so the member can retry."""
        hook = FailingDeliveryHook(DeliveryError("SMTP relay refused"))
        otp = EmailOtpFactor(
            challenge_store=challenge_store,
            issuance_ledger=issuance_ledger,
            hasher=hasher,
            delivery_hook=hook,
        )

        first = await otp.initiate(initiate_request())
        second = await otp.initiate(initiate_request(1))

        assert isinstance(first, Failure)
        assert first.code is ErrorCode.ISSUE_FAILED
        assert first.kind is ErrorKind.INFRASTRUCTURE
        assert first.audit_diff["cause"] == "DeliveryError"
        assert isinstance(second, Failure)
        assert second.code is ErrorCode.ISSUE_FAILED
        assert hook.calls == 2
        assert challenge_store.count() == 0

    @pytest.mark.asyncio
    @pytest.mark.parametrize("contact", [None, "", "   "])
    async def test_contact_required(
        self, email_otp: EmailOtpFactor, contact: str | None
    ) -> None:
        result = await email_otp.initiate(initiate_request(contact=contact))

        assert isinstance(result, Failure)
        assert result.code is ErrorCode.CONTACT_REQUIRED
        assert result.status == 400

    @pytest.mark.asyncio
    async def test_not_enabled_without_hook(
        self,
        challenge_store: InMemoryChallengeStore,
        issuance_ledger: InMemoryIssuanceLedger,
        hasher: CodeHasher,
    ) -> None:
        otp = EmailOtpFactor(
            challenge_store=challenge_store,
            issuance_ledger=issuance_ledger,
            hasher=hasher,
        )

        result = await otp.initiate(initiate_request())

        assert isinstance(result, Failure)
        assert result.code is ErrorCode.NOT_ENABLED
        assert result.status == 503

    @pytest.mark.asyncio
    async def test_not_enabled_by_config(
        self,
        challenge_store: InMemoryChallengeStore,
        issuance_ledger: InMemoryIssuanceLedger,
        hasher: CodeHasher,
        delivery_hook: RecordingDeliveryHook,
    ) -> None:
        otp = EmailOtpFactor(
            challenge_store=challenge_store,
            issuance_ledger=issuance_ledger,
            hasher=hasher,
            delivery_hook=delivery_hook,
            config=OtpConfig(enabled=False),
        )

        initiated = await otp.initiate(initiate_request())
        verified = await otp.verify(verify_request("123456"))

        assert initiated.code is ErrorCode.NOT_ENABLED
        assert verified.code is ErrorCode.NOT_ENABLED
        assert delivery_hook.emails_sent == []


class TestOtpVerify:
    @pytest.mark.asyncio
    async def test_correct_code(
        self, email_otp: EmailOtpFactor, delivery_hook: RecordingDeliveryHook
    ) -> None:
        await email_otp.initiate(initiate_request())
        code = delivery_hook.emails_sent[0][1]

        result = await email_otp.verify(verify_request(code, 60))

        assert isinstance(result, VerifySuccess)
        assert result.delta.consumed_challenge_id is not None
        assert not result.delta.changes_profile

    @pytest.mark.asyncio
    async def test_code_is_single_use(
        self, email_otp: EmailOtpFactor, delivery_hook: RecordingDeliveryHook
    ) -> None:
        await email_otp.initiate(initiate_request())
        code = delivery_hook.emails_sent[0][1]

        await email_otp.verify(verify_request(code))
        again = await email_otp.verify(verify_request(code))

        assert isinstance(again, Failure)
        assert again.code is ErrorCode.INVALID_CODE

    @pytest.mark.asyncio
    async def test_expired_code(
        self, email_otp: EmailOtpFactor, delivery_hook: RecordingDeliveryHook
    ) -> None:
        """A code used at T+301 s is expired, not wrong."""
        await email_otp.initiate(initiate_request())
        code = delivery_hook.emails_sent[0][1]

        result = await email_otp.verify(verify_request(code, 301))

        assert isinstance(result, Failure)
        assert result.code is ErrorCode.CODE_EXPIRED
        assert result.status == 401

    @pytest.mark.asyncio
    async def test_wrong_code_counts_attempts(
        self, email_otp: EmailOtpFactor, delivery_hook: RecordingDeliveryHook
    ) -> None:
        await email_otp.initiate(initiate_request())
        code = delivery_hook.emails_sent[0][1]
        wrong = "000000" if code != "000000" else "111111"

        results = [await email_otp.verify(verify_request(wrong)) for _ in range(5)]
        exhausted = await email_otp.verify(verify_request(code))

        assert [r.audit_diff["attempts"] for r in results] == [1, 2, 3, 4, 5]
        assert isinstance(exhausted, Failure)
        assert exhausted.code is ErrorCode.ATTEMPTS_EXCEEDED
        assert exhausted.kind is ErrorKind.RATE_LIMIT

    @pytest.mark.asyncio
    async def test_new_code_after_attempts_exhausted(
        self, email_otp: EmailOtpFactor, delivery_hook: RecordingDeliveryHook
    ) -> None:
        """An exhausted code no longer blocks issuance once the cool-down ends."""
        await email_otp.initiate(initiate_request())
        code = delivery_hook.emails_sent[0][1]
        wrong = "000000" if code != "000000" else "111111"
        for _ in range(5):
            await email_otp.verify(verify_request(wrong))
        exhausted = await email_otp.verify(verify_request(code, seconds=70))
        assert isinstance(exhausted, Failure)
        assert exhausted.code is ErrorCode.ATTEMPTS_EXCEEDED

        reissued = await email_otp.initiate(initiate_request(70))
        assert isinstance(reissued, InitiateSuccess)

        fresh = delivery_hook.emails_sent[1][1]
        result = await email_otp.verify(verify_request(fresh, seconds=80))
        assert isinstance(result, VerifySuccess)

    @pytest.mark.asyncio
    async def test_exhausted_code_still_respects_cooldown(
        self, email_otp: EmailOtpFactor, delivery_hook: RecordingDeliveryHook
    ) -> None:
        await email_otp.initiate(initiate_request())
        code = delivery_hook.emails_sent[0][1]
        wrong = "000000" if code != "000000" else "111111"
        for _ in range(5):
            await email_otp.verify(verify_request(wrong))

        result = await email_otp.initiate(initiate_request(30))

        assert isinstance(result, Failure)
        assert result.code is ErrorCode.RATE_LIMITED
        assert result.audit_diff["limit"] == "cooldown"

    @pytest.mark.asyncio
    async def test_whitespace_is_ignored(
        self, email_otp: EmailOtpFactor, delivery_hook: RecordingDeliveryHook
    ) -> None:
        await email_otp.initiate(initiate_request())
        code = delivery_hook.emails_sent[0][1]

        result = await email_otp.verify(verify_request(f" {code[:3]} {code[3:]} "))

        assert isinstance(result, VerifySuccess)

    @pytest.mark.asyncio
    async def test_nothing_pending(self, email_otp: EmailOtpFactor) -> None:
        result = await email_otp.verify(verify_request("123456"))

        assert isinstance(result, Failure)
        assert result.code is ErrorCode.INVALID_CODE

    @pytest.mark.asyncio
    async def test_token_required(self, email_otp: EmailOtpFactor) -> None:
        result = await email_otp.verify(verify_request(None))

        assert isinstance(result, Failure)
        assert result.code is ErrorCode.TOKEN_REQUIRED


class TestWhatsAppOtp:
    @pytest.mark.asyncio
    async def test_ten_minute_codes(
        self,
        challenge_store: InMemoryChallengeStore,
        issuance_ledger: InMemoryIssuanceLedger,
        hasher: CodeHasher,
        delivery_hook: RecordingDeliveryHook,
    ) -> None:
        otp = WhatsAppOtpFactor(
            challenge_store=challenge_store,
            issuance_ledger=issuance_ledger,
            hasher=hasher,
            delivery_hook=delivery_hook,
        )

        issued = await otp.initiate(initiate_request(contact="+250788000000"))
        code = delivery_hook.whatsapp_sent[0][1]
        result = await otp.verify(verify_request(code, 540))

        assert isinstance(issued, InitiateSuccess)
        assert issued.expires_at == STEP_101 + timedelta(seconds=600)
        assert issued.metadata["destination"] == "+2507******00"
        assert delivery_hook.emails_sent == []
        assert isinstance(result, VerifySuccess)
        assert result.factor is FactorKind.WHATSAPP

    @pytest.mark.asyncio
    async def test_channels_do_not_share_challenges(
        self,
        email_otp: EmailOtpFactor,
        challenge_store: InMemoryChallengeStore,
        issuance_ledger: InMemoryIssuanceLedger,
        hasher: CodeHasher,
        delivery_hook: RecordingDeliveryHook,
    ) -> None:
        whatsapp = WhatsAppOtpFactor(
            challenge_store=challenge_store,
            issuance_ledger=issuance_ledger,
            hasher=hasher,
            delivery_hook=delivery_hook,
        )
        await email_otp.initiate(initiate_request())
        email_code = delivery_hook.emails_sent[0][1]

        result = await whatsapp.verify(verify_request(email_code))

        assert isinstance(result, Failure)
        assert result.code is ErrorCode.INVALID_CODE


class ThreadRecordingHasher(CodeHasher):
    """Remembers which threads hashed and checked codes."""

    def __init__(self) -> None:
        super().__init__(pepper="test-pepper", rounds=4)
        self.threads: list[int] = []

    def hash(self, code: str) -> str:
        self.threads.append(threading.get_ident())
        return super().hash(code)

    def verify(self, code: str, stored_hash: str) -> bool:
        self.threads.append(threading.get_ident())
        return super().verify(code, stored_hash)


class TestHashingOffLoop:
    @pytest.mark.asyncio
    async def test_bcrypt_runs_in_worker_thread(
        self,
        challenge_store: InMemoryChallengeStore,
        issuance_ledger: InMemoryIssuanceLedger,
        delivery_hook: RecordingDeliveryHook,
    ) -> None:
        hasher = ThreadRecordingHasher()
        otp = EmailOtpFactor(
            challenge_store=challenge_store,
            issuance_ledger=issuance_ledger,
            hasher=hasher,
            delivery_hook=delivery_hook,
        )

        await otp.initiate(initiate_request())
        code = delivery_hook.emails_sent[0][1]
        result = await otp.verify(verify_request(code))

        assert isinstance(result, VerifySuccess)
        assert len(hasher.threads) == 2
        assert threading.get_ident() not in hasher.threads
