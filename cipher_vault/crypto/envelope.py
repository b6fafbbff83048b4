"""AES-256-GCM envelope cipher: per-file DEKs wrapped under an identity KEK."""

from __future__ import annotations

import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..exceptions import DecryptionFailed, EncryptionFailed, KeyUnwrapFailed
from ..models import EncryptedPayload, WrappedKey

KEY_SIZE = 32     # 256-bit keys
NONCE_SIZE = 12   # 96-bit GCM nonce
TAG_SIZE = 16     # 128-bit GCM tag


class EnvelopeCipher:
    """
    Every call to encrypt or wrap_key draws a fresh random nonce, so the file
    IV and the key IV of one upload are always independent.
    """

    @staticmethod
    def generate_dek() -> bytes:
        return AESGCM.generate_key(bit_length=KEY_SIZE * 8)

    def encrypt(self, plaintext: bytes, key: bytes) -> EncryptedPayload:
        iv = secrets.token_bytes(NONCE_SIZE)
        try:
            ciphertext = self._aead(key, EncryptionFailed).encrypt(iv, bytes(plaintext), None)
        except (ValueError, OverflowError, TypeError) as exc:
            raise EncryptionFailed("Failed to encrypt payload") from exc
        return EncryptedPayload(ciphertext=ciphertext, iv=iv)

    def decrypt(self, ciphertext: bytes, iv: bytes, key: bytes) -> bytes:
        aead = self._aead(key, DecryptionFailed)
        if len(iv) != NONCE_SIZE or len(ciphertext) < TAG_SIZE:
            raise DecryptionFailed("The file may be corrupted or the key is incorrect")
        try:
            return aead.decrypt(iv, bytes(ciphertext), None)
        except InvalidTag as exc:
            raise DecryptionFailed("The file may be corrupted or the key is incorrect") from exc

    def wrap_key(self, dek: bytes, kek: bytes) -> WrappedKey:
        if len(dek) != KEY_SIZE:
            raise EncryptionFailed("Data key must be 256 bits")
        iv = secrets.token_bytes(NONCE_SIZE)
        try:
            ciphertext = self._aead(kek, EncryptionFailed).encrypt(iv, dek, None)
        except (ValueError, TypeError) as exc:
            raise EncryptionFailed("Failed to wrap data key") from exc
        return WrappedKey(ciphertext=ciphertext, iv=iv)

    def unwrap_key(self, wrapped: bytes, iv: bytes, kek: bytes) -> bytes:
        aead = self._aead(kek, KeyUnwrapFailed)
        if len(iv) != NONCE_SIZE:
            raise KeyUnwrapFailed("You may not have permission to access this file")
        try:
            dek = aead.decrypt(iv, bytes(wrapped), None)
        except InvalidTag as exc:
            raise KeyUnwrapFailed("You may not have permission to access this file") from exc
        if len(dek) != KEY_SIZE:
            raise KeyUnwrapFailed("Unwrapped data key has unexpected length")
        return dek

    def encrypt_text(self, text: str, key: bytes) -> EncryptedPayload:
        return self.encrypt(text.encode("utf-8"), key)

    def decrypt_text(self, ciphertext: bytes, iv: bytes, key: bytes) -> str:
        return self.decrypt(ciphertext, iv, key).decode("utf-8")

    @staticmethod
    def _aead(key: bytes, error: type[Exception]) -> AESGCM:
        if len(key) != KEY_SIZE:
            raise error("Key must be 256 bits")
        return AESGCM(key)
