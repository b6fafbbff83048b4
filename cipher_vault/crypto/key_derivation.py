"""
Identity-bound key-encrypting key (KEK) derivation.

PBKDF2-HMAC-SHA256 over the lower-cased identity, salted with
SHA-256(salt_prefix + identity). The salt is reproducible from the identity
alone, so nothing needs to be persisted to re-derive the KEK on another
device. The salt is therefore public; changing this scheme changes the KEK
and orphans every wrapped key already stored.
"""

from __future__ import annotations

import hashlib
import logging

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..exceptions import KeyDerivationFailed
from ..models import normalize_identity

logger = logging.getLogger(__name__)

MIN_PBKDF2_ITERATIONS = 100_000
DEFAULT_SALT_PREFIX = "ciphervault-"
KEY_SIZE = 32


class KeyDerivation:
    def __init__(
        self,
        iterations: int = MIN_PBKDF2_ITERATIONS,
        salt_prefix: str = DEFAULT_SALT_PREFIX,
        key_size: int = KEY_SIZE,
    ) -> None:
        if iterations < MIN_PBKDF2_ITERATIONS:
            raise KeyDerivationFailed(
                f"PBKDF2 iterations must be at least {MIN_PBKDF2_ITERATIONS}, got {iterations}"
            )
        if key_size != KEY_SIZE:
            raise KeyDerivationFailed("Only 256-bit key-encrypting keys are supported")
        self._iterations = iterations
        self._salt_prefix = salt_prefix
        self._key_size = key_size

    @property
    def iterations(self) -> int:
        return self._iterations

    def salt_for(self, identity: str) -> bytes:
        normalized = self._require_identity(identity)
        return hashlib.sha256(f"{self._salt_prefix}{normalized}".encode("utf-8")).digest()

    def derive_kek(self, identity: str) -> bytes:
        normalized = self._require_identity(identity)
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=self._key_size,
            salt=self.salt_for(normalized),
            iterations=self._iterations,
        )
        try:
            kek = kdf.derive(normalized.encode("utf-8"))
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            raise KeyDerivationFailed("Failed to derive key-encrypting key") from exc
        if len(kek) != self._key_size:
            raise KeyDerivationFailed("Derived key has unexpected length")
        logger.debug("Derived KEK for identity %s...", normalized[:6])
        return kek

    @staticmethod
    def _require_identity(identity: str) -> str:
        normalized = normalize_identity(identity)
        if not normalized:
            raise KeyDerivationFailed("Identity must be a non-empty string")
        return normalized
