"""Backup code factor.

Single-use recovery codes for members who lose their phone. Codes are
generated in batches at enrollment and only salted hashes are retained.
This is the only factor whose success reduces the member's factor material,
so the remaining count is surfaced to prompt re-provisioning.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import string
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ..config import BackupCodeConfig
from ..exceptions import MfaInfrastructureError
from ..models import FactorKind, StateDelta
from ..results import ErrorCode, ErrorKind, InitiateSuccess, VerifySuccess, failure

if TYPE_CHECKING:
    from ..crypto import CodeHasher
    from ..ports import InitiateRequest, IReplayGuard, VerifyRequest
    from ..results import InitiateResult, VerifyResult

logger = logging.getLogger("ibimina_mfa.factors.backup")

GROUP_SIZE = 5


@dataclass(frozen=True)
class BackupCodeBatch:
    """Freshly generated codes.

    Attributes:
        codes: Plaintext codes, shown to the member ONCE.
        hashes: Hashes to store on the profile.
    """

    codes: tuple[str, ...]
    hashes: tuple[str, ...]


def normalize_backup_code(code: str) -> str:
    """Trim, uppercase and drop separators (``abcde-fghij`` -> ``ABCDEFGHIJ``)."""
    return "".join(ch for ch in code.strip().upper() if ch not in "- _")


class BackupCodeFactor:
    """Backup code strategy.

    Example:
        ```python
        vault = BackupCodeFactor(hasher=hasher, replay_guard=guard)
        batch = vault.generate()
        print(f"Save these codes: {batch.codes}")  # store batch.hashes

        request = VerifyRequest(user_id, profile, now, "K7XQM-R9TDW")
        verdict = await vault.verify(request)
        if verdict.ok:
            await profile_store.persist_profile(user_id, verdict.delta)
        ```
    """

    kind = FactorKind.BACKUP

    # Exclude ambiguous characters: 0, O, 1, I
    ALPHABET = string.ascii_uppercase.replace("O", "").replace(
        "I", ""
    ) + string.digits.replace("0", "").replace("1", "")

    def __init__(
        self,
        *,
        hasher: CodeHasher,
        replay_guard: IReplayGuard,
        config: BackupCodeConfig | None = None,
        io_timeout: float = 5.0,
    ) -> None:
        self.hasher = hasher
        self.replay_guard = replay_guard
        self.config = config or BackupCodeConfig()
        self.io_timeout = io_timeout

    # ═══════════════════════════════════════════════════════════════
    # ENROLLMENT
    # ═══════════════════════════════════════════════════════════════

    def _generate_code(self) -> str:
        return "".join(
            secrets.choice(self.ALPHABET) for _ in range(self.config.code_length)
        )

    def _format_code(self, code: str) -> str:
        """Format code with dashes for readability (e.g. ``ABCDE-FGHJK``)."""
        return "-".join(
            code[i : i + GROUP_SIZE] for i in range(0, len(code), GROUP_SIZE)
        )

    def generate(self, count: int | None = None) -> BackupCodeBatch:
        """Generate a batch of backup codes.

        Args:
            count: Number of codes (defaults to ``config.count``).
        """
        raw = [self._generate_code() for _ in range(count or self.config.count)]
        return BackupCodeBatch(
            codes=tuple(self._format_code(code) for code in raw),
            hashes=tuple(self.hasher.hash(code) for code in raw),
        )

    async def generate_async(self, count: int | None = None) -> BackupCodeBatch:
        """Generate a batch off the event loop (bcrypt is CPU bound)."""
        return await asyncio.to_thread(self.generate, count)

    # ═══════════════════════════════════════════════════════════════
    # STRATEGY
    # ═══════════════════════════════════════════════════════════════

    async def initiate(self, request: InitiateRequest) -> InitiateResult:
        return InitiateSuccess(
            factor=self.kind,
            metadata={
                "remaining_backup_codes": len(request.profile.backup_code_hashes)
            },
            audit_diff={"delivery": "none"},
        )

    def _find_match(self, code: str, hashes: tuple[str, ...]) -> str | None:
        # Scan every hash so timing does not reveal the position of a match.
        matched: str | None = None
        for stored in hashes:
            if self.hasher.verify(code, stored) and matched is None:
                matched = stored
        return matched

    async def verify(self, request: VerifyRequest) -> VerifyResult:
        token = "" if request.token is None else str(request.token)
        code = normalize_backup_code(token)
        if not code:
            return failure(
                self.kind,
                ErrorCode.TOKEN_REQUIRED,
                ErrorKind.INPUT,
                "Enter one of your backup codes.",
            )

        hashes = request.profile.backup_code_hashes
        matched = await asyncio.to_thread(self._find_match, code, hashes)
        if matched is None:
            return failure(
                self.kind,
                ErrorCode.INVALID_BACKUP,
                ErrorKind.VERIFICATION,
                "That backup code is not valid or was already used.",
                remaining_backup_codes=len(hashes),
            )

        try:
            claimed = await asyncio.wait_for(
                self.replay_guard.claim_backup(request.user_id, matched),
                timeout=self.io_timeout,
            )
        except (asyncio.TimeoutError, MfaInfrastructureError) as e:
            logger.error("Replay guard unavailable for user %s: %r", request.user_id, e)
            return failure(
                self.kind,
                ErrorCode.STORE_UNAVAILABLE,
                ErrorKind.INFRASTRUCTURE,
                "Verification is temporarily unavailable.",
            )
        if not claimed:
            logger.warning(
                "Backup code replay blocked for user %s (consumed concurrently)",
                request.user_id,
            )
            return failure(
                self.kind,
                ErrorCode.INVALID_BACKUP,
                ErrorKind.VERIFICATION,
                "That backup code is not valid or was already used.",
                remaining_backup_codes=len(hashes) - 1,
            )

        remaining = tuple(h for h in hashes if h != matched)
        reprovision = len(remaining) <= self.config.low_watermark
        if reprovision:
            logger.info(
                "User %s has %d backup codes left; re-provisioning recommended",
                request.user_id,
                len(remaining),
            )
        return VerifySuccess(
            factor=self.kind,
            delta=StateDelta(
                next_backup_code_hashes=remaining,
                consumed_backup_hash=matched,
            ),
            metadata={
                "remaining_backup_codes": len(remaining),
                "reprovision_recommended": reprovision,
            },
            audit_diff={
                "remaining_backup_codes": len(remaining),
                "reprovision_recommended": reprovision,
            },
        )


__all__: list[str] = [
    "BackupCodeBatch",
    "BackupCodeFactor",
    "normalize_backup_code",
]
