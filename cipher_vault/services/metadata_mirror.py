"""Zero-knowledge mirroring of record metadata.

The mirror only ever receives ciphertext for names and content types; the
envelope fields it stores are already opaque.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import requests

from ..clients.mirror_client import MetadataMirrorClient
from ..crypto import EnvelopeCipher, KeyDerivation, b64decode, b64encode
from ..crypto.envelope import NONCE_SIZE
from ..exceptions import CipherVaultError, DecryptionFailed
from ..models import Classification, FileRecord
from ..session import VaultSession
from .base import BaseService
from .record_store import RecordStore

logger = logging.getLogger(__name__)


@dataclass
class MetadataSealer:
    key_derivation: KeyDerivation
    cipher: EnvelopeCipher = field(default_factory=EnvelopeCipher)

    def seal(self, identity: str, record: FileRecord) -> Dict[str, Any]:
        kek = self.key_derivation.derive_kek(identity)
        return {
            "id": record.id,
            "nameEncrypted": self._seal_text(record.display_name, kek),
            "mimeTypeEncrypted": self._seal_text(record.content_type, kek),
            "size": record.size_bytes,
            "cid": record.content_id,
            "encryptedKey": record.wrapped_key,
            "keyIV": record.key_iv,
            "fileIV": record.file_iv,
            "folderId": record.parent_id,
            "classification": record.classification.value,
        }

    def open(self, identity: str, payload: Dict[str, Any]) -> Tuple[str, str]:
        kek = self.key_derivation.derive_kek(identity)
        return (
            self._open_text(payload["nameEncrypted"], kek),
            self._open_text(payload["mimeTypeEncrypted"], kek),
        )

    def _seal_text(self, text: str, kek: bytes) -> str:
        sealed = self.cipher.encrypt_text(text, kek)
        return b64encode(sealed.iv + sealed.ciphertext)

    def _open_text(self, blob: str, kek: bytes) -> str:
        try:
            raw = b64decode(blob)
        except ValueError as exc:
            raise DecryptionFailed("The file may be corrupted or the key is incorrect") from exc
        return self.cipher.decrypt_text(raw[NONCE_SIZE:], raw[:NONCE_SIZE], kek)


@dataclass
class MirrorSync(BaseService):
    record_store: RecordStore
    sealer: MetadataSealer
    client: Optional[MetadataMirrorClient] = None

    def __post_init__(self) -> None:
        if self.client is None and self.config.mirror.enabled:
            self.client = MetadataMirrorClient(self.config.mirror.base_url, timeout=self.config.mirror.timeout)

    @property
    def enabled(self) -> bool:
        return self.client is not None

    def push(self, session: VaultSession, record: FileRecord) -> bool:
        """Best effort: a mirror failure never fails the local operation."""
        if not self.enabled or record.is_folder:
            return False
        identity = session.require_identity()
        payload = self.sealer.seal(identity, record)
        try:
            self.client.create_file(identity, payload)
        except requests.RequestException as exc:
            logger.warning("Mirror push for %s failed: %s", record.id, exc)
            self.emit_metric("mirror.push_failed", 1)
            return False
        self.emit_metric("mirror.pushed", 1)
        return True

    def pull(self, session: VaultSession) -> int:
        """Import mirrored records missing from the local index."""
        if not self.enabled:
            return 0
        identity = session.require_identity()
        try:
            remote = self.client.list_files(identity)
        except requests.RequestException as exc:
            logger.warning("Mirror pull failed: %s", exc)
            return 0
        records = []
        for item in remote:
            record_id = str(item.get("id", ""))
            if not record_id or self.record_store.get(record_id) is not None:
                continue
            try:
                name, content_type = self.sealer.open(identity, item)
                record = FileRecord(
                    id=record_id,
                    owner_id=identity,
                    display_name=name,
                    size_bytes=int(item.get("size", 0)),
                    content_type=content_type,
                    content_id=str(item.get("cid", "")),
                    wrapped_key=str(item.get("encryptedKey", "")),
                    key_iv=str(item.get("keyIV", "")),
                    file_iv=str(item.get("fileIV", "")),
                    parent_id=item.get("folderId") or None,
                    classification=Classification(item.get("classification") or "private"),
                    target_replicas=self.config.replicas.target_replicas,
                )
            except (CipherVaultError, KeyError, ValueError, TypeError) as exc:
                logger.warning("Skipping mirrored record %s: %s", record_id, exc)
                continue
            records.append(record)
        imported = len(self.record_store.import_records(records, identity, change="mirrored"))
        if imported:
            logger.info("Pulled %d record(s) from the mirror", imported)
        return imported
