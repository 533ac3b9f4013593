"""Crypto and hashing utilities for MFA material.

- :class:`SecretCipher` encrypts TOTP secrets at rest (AES-256-GCM).
- :class:`CodeHasher` hashes one-time codes and backup codes (bcrypt, salted
  and peppered) and digests high-entropy device tokens (HMAC-SHA256).
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import secrets
from typing import Any, Mapping

import bcrypt
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .exceptions import MfaConfigurationError, SecretDecryptionError
from .ports import IKeyManager

NONCE_SIZE = 12
KEY_SIZE = 32


def constant_time_equals(left: str | bytes, right: str | bytes) -> bool:
    """Compare two values without leaking the position of the first mismatch."""
    if isinstance(left, str):
        left = left.encode()
    if isinstance(right, str):
        right = right.encode()
    return hmac.compare_digest(left, right)


def generate_numeric_code(length: int = 6) -> str:
    """Generate a uniformly random, zero-padded numeric code."""
    return str(secrets.randbelow(10**length)).zfill(length)


def hash_ip_address(ip: str) -> str:
    """SHA-256 hex digest of a client IP address."""
    return hashlib.sha256(ip.strip().encode()).hexdigest()


def mask_destination(contact: str) -> str:
    """Mask an email address or phone number for display.

    Examples:
        >>> mask_destination("member@example.com")
        'm*****@example.com'
        >>> mask_destination("+250788000000")
        '+2507******00'
    """
    contact = contact.strip()
    if "@" in contact:
        local, _, domain = contact.partition("@")
        if len(local) <= 1:
            return f"*@{domain}"
        return f"{local[0]}{'*' * (len(local) - 1)}@{domain}"

    keep_head = 5 if contact.startswith("+") else 4
    if len(contact) <= keep_head + 2:
        return "*" * len(contact)
    hidden = len(contact) - keep_head - 2
    return f"{contact[:keep_head]}{'*' * hidden}{contact[-2:]}"


class SecretCipher(IKeyManager):
    """AES-256-GCM cipher implementing the key-management port.

    Payload layout: ``nonce (12 bytes) || ciphertext || tag (16 bytes)``.

    Example:
        ```python
        cipher = SecretCipher.from_env()
        blob = await cipher.encrypt("JBSWY3DPEHPK3PXP")
        secret = await cipher.decrypt(blob)
        ```
    """

    def __init__(self, data_key: bytes) -> None:
        if len(data_key) != KEY_SIZE:
            raise MfaConfigurationError(
                f"Data key must be {KEY_SIZE} bytes, got {len(data_key)}"
            )
        self._aead = AESGCM(data_key)

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        *,
        variable: str = "MFA_KMS_DATA_KEY",
    ) -> SecretCipher:
        """Build a cipher from a base64-encoded 32-byte key in the environment."""
        env = os.environ if environ is None else environ
        encoded = env.get(variable)
        if not encoded:
            raise MfaConfigurationError(f"{variable} is not configured")
        try:
            key = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError) as e:
            raise MfaConfigurationError(f"{variable} is not valid base64") from e
        return cls(key)

    @staticmethod
    def generate_key() -> bytes:
        return AESGCM.generate_key(bit_length=KEY_SIZE * 8)

    def encrypt_sync(self, secret: str) -> bytes:
        nonce = os.urandom(NONCE_SIZE)
        return nonce + self._aead.encrypt(nonce, secret.encode("utf-8"), None)

    def decrypt_sync(self, payload: bytes | str) -> str:
        blob = self._normalize_payload(payload)
        if len(blob) <= NONCE_SIZE:
            raise SecretDecryptionError("Encrypted payload is truncated")
        nonce, ciphertext = blob[:NONCE_SIZE], blob[NONCE_SIZE:]
        try:
            plaintext = self._aead.decrypt(nonce, ciphertext, None)
        except InvalidTag as e:
            raise SecretDecryptionError(
                "Secret could not be authenticated (tampered payload or wrong key)"
            ) from e
        return plaintext.decode("utf-8")

    async def encrypt(self, secret: str) -> bytes:
        return self.encrypt_sync(secret)

    async def decrypt(self, payload: bytes) -> str:
        return self.decrypt_sync(payload)

    @staticmethod
    def _normalize_payload(payload: Any) -> bytes:
        """Accept raw bytes, Postgres ``\\x`` hex strings, or base64 strings."""
        if isinstance(payload, (bytes, bytearray, memoryview)):
            return bytes(payload)
        if isinstance(payload, str):
            try:
                if payload.startswith("\\x"):
                    return bytes.fromhex(payload[2:])
                return base64.b64decode(payload, validate=True)
            except (binascii.Error, ValueError) as e:
                raise SecretDecryptionError("Encrypted payload is not decodable") from e
        raise SecretDecryptionError(
            f"Unsupported encrypted payload type: {type(payload).__name__}"
        )


class CodeHasher:
    """Salted, peppered hashing for one-time codes and backup codes.

    Uses bcrypt (random salt per hash) over ``pepper || code``. The pepper
    lives outside the database so a leaked hash table alone cannot be
    brute-forced over the small numeric code space.

    Example:
        ```python
        hasher = CodeHasher(pepper="server-side-pepper")
        stored = hasher.hash("482913")
        assert hasher.verify("482913", stored)
        ```
    """

    def __init__(self, *, pepper: str = "", rounds: int = 10) -> None:
        """Initialize the hasher.

        Args:
            pepper: Server-side secret mixed into every hash.
            rounds: bcrypt cost factor (default 10; tests may use 4).
        """
        self.pepper = pepper
        self.rounds = rounds

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        *,
        variable: str = "MFA_BACKUP_PEPPER",
        rounds: int = 10,
    ) -> CodeHasher:
        env = os.environ if environ is None else environ
        pepper = env.get(variable)
        if not pepper:
            raise MfaConfigurationError(f"{variable} is not configured")
        return cls(pepper=pepper, rounds=rounds)

    def _material(self, code: str) -> bytes:
        # bcrypt only reads the first 72 bytes; pre-hash so long peppers keep
        # the whole code significant.
        digest = hashlib.sha256(f"{self.pepper}{code}".encode()).digest()
        return base64.b64encode(digest)

    def hash(self, code: str) -> str:
        """Hash a code for storage."""
        salt = bcrypt.gensalt(rounds=self.rounds)
        return bcrypt.hashpw(self._material(code), salt).decode()

    def verify(self, code: str, stored_hash: str) -> bool:
        """Check a code against a stored hash.

        Returns False (never raises) for malformed hashes.
        """
        try:
            return bcrypt.checkpw(self._material(code), stored_hash.encode())
        except ValueError:
            # Invalid hash format or malformed hash
            return False

    def digest_token(self, token: str) -> str:
        """Digest a high-entropy token (remember-device tokens)."""
        return hmac.new(
            self.pepper.encode(), token.encode(), hashlib.sha256
        ).hexdigest()


__all__: list[str] = [
    "constant_time_equals",
    "generate_numeric_code",
    "hash_ip_address",
    "mask_destination",
    "SecretCipher",
    "CodeHasher",
]
