"""Test configuration and fixtures."""

from __future__ import annotations

import pytest

from ibimina_mfa import (
    CodeHasher,
    FactorKind,
    InMemoryAuditSink,
    InMemoryChallengeStore,
    InMemoryIssuanceLedger,
    InMemoryProfileStore,
    InMemoryReplayGuard,
    MfaProfile,
    SecretCipher,
)
from support import (
    STEP_101,
    TOTP_SECRET,
    FrozenClock,
    RecordingDeliveryHook,
)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(STEP_101)


@pytest.fixture
def hasher() -> CodeHasher:
    """Cheap bcrypt cost for tests."""
    return CodeHasher(pepper="test-pepper", rounds=4)


@pytest.fixture
def cipher() -> SecretCipher:
    return SecretCipher(SecretCipher.generate_key())


@pytest.fixture
def audit_sink() -> InMemoryAuditSink:
    return InMemoryAuditSink()


@pytest.fixture
def challenge_store() -> InMemoryChallengeStore:
    return InMemoryChallengeStore()


@pytest.fixture
def replay_guard() -> InMemoryReplayGuard:
    return InMemoryReplayGuard()


@pytest.fixture
def issuance_ledger() -> InMemoryIssuanceLedger:
    return InMemoryIssuanceLedger()


@pytest.fixture
def delivery_hook() -> RecordingDeliveryHook:
    return RecordingDeliveryHook()


@pytest.fixture
def profile_store() -> InMemoryProfileStore:
    return InMemoryProfileStore()


@pytest.fixture
def totp_profile(cipher: SecretCipher) -> MfaProfile:
    """Member enrolled in TOTP who last verified at step 100."""
    return MfaProfile(
        user_id="member-1",
        enrolled_factors={FactorKind.TOTP},
        totp_secret_encrypted=cipher.encrypt_sync(TOTP_SECRET),
        last_verified_step=100,
    )
