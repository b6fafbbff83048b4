"""Fetch and open stored records for their owner."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from ..crypto import EnvelopeCipher, KeyDerivation, b64decode
from ..exceptions import DecryptionFailed, InvalidRecordState, KeyUnwrapFailed, RecordNotFound
from ..models import FileRecord, ShareGrant
from ..session import VaultSession
from .base import BaseService
from .record_store import RecordStore
from .upload_service import StorageClient

logger = logging.getLogger(__name__)


@dataclass
class DownloadService(BaseService):
    record_store: RecordStore
    storage_client: StorageClient
    cipher: EnvelopeCipher = field(default_factory=EnvelopeCipher)
    key_derivation: Optional[KeyDerivation] = None

    def __post_init__(self) -> None:
        if self.key_derivation is None:
            self.key_derivation = KeyDerivation(
                iterations=self.config.crypto.kdf_iterations,
                salt_prefix=self.config.crypto.salt_prefix,
            )

    def fetch(self, session: VaultSession, record_id: str) -> bytes:
        identity = session.require_identity()
        record = self.record_store.require(record_id)
        if record.owner_id != identity:
            raise RecordNotFound(f"Record {record_id} not found")
        if record.is_folder:
            raise InvalidRecordState("Folders have no content to download")
        plaintext = self.open_envelope(record, identity)
        self.record_store.touch_access(record_id)
        self.emit_metric("download.completed", 1)
        return plaintext

    def open_envelope(self, record: FileRecord | ShareGrant, identity: str) -> bytes:
        """Unwrap the record's key under ``identity`` and decrypt its content."""
        try:
            wrapped = b64decode(record.wrapped_key)
            key_iv = b64decode(record.key_iv)
        except ValueError as exc:
            raise KeyUnwrapFailed("You may not have permission to access this file") from exc
        kek = self.key_derivation.derive_kek(identity)
        dek = self.cipher.unwrap_key(wrapped, key_iv, kek)
        ciphertext = self.storage_client.download(record.content_id)
        try:
            file_iv = b64decode(record.file_iv)
        except ValueError as exc:
            raise DecryptionFailed("The file may be corrupted or the key is incorrect") from exc
        return self.cipher.decrypt(ciphertext, file_iv, dek)
