"""Sealed snapshots of an owner's record index."""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from ..crypto import EnvelopeCipher, KeyDerivation, b64decode, b64encode
from ..exceptions import InvalidSnapshot
from ..models import from_millis, to_millis, utcnow
from ..session import VaultSession
from .base import BaseService
from .record_store import RecordStore

logger = logging.getLogger(__name__)

SEALED_VERSION = 1


@dataclass
class BackupSnapshot:
    path: Path
    owner_id: str
    taken_at: datetime
    item_count: Optional[int] = None


@dataclass
class BackupManager(BaseService):
    """Snapshots are encrypted under the owner's key-encrypting key before
    they touch disk, so a backup file is as opaque as the stored content."""

    record_store: RecordStore
    cipher: EnvelopeCipher = field(default_factory=EnvelopeCipher)
    key_derivation: Optional[KeyDerivation] = None

    def __post_init__(self) -> None:
        if self.key_derivation is None:
            self.key_derivation = KeyDerivation(
                iterations=self.config.crypto.kdf_iterations,
                salt_prefix=self.config.crypto.salt_prefix,
            )

    @property
    def directory(self) -> Path:
        return Path(self.config.backup.directory).expanduser()

    def seal(self, session: VaultSession) -> BackupSnapshot:
        owner = session.require_identity()
        snapshot = self.record_store.export_all(owner)
        item_count = len(json.loads(snapshot)["items"])
        payload = self.cipher.encrypt_text(snapshot, self.key_derivation.derive_kek(owner))
        taken_at = utcnow()
        sealed = {
            "version": SEALED_VERSION,
            "ownerId": owner,
            "createdAt": to_millis(taken_at),
            "iv": b64encode(payload.iv),
            "ciphertext": b64encode(payload.ciphertext),
        }
        self.directory.mkdir(parents=True, exist_ok=True)
        target = self.directory / f"{_owner_tag(owner)}-{to_millis(taken_at)}-{uuid.uuid4().hex[:8]}.vault.json"
        temp_path = target.with_suffix(".tmp")
        temp_path.write_text(json.dumps(sealed), encoding="utf-8")
        temp_path.replace(target)
        logger.info("Sealed backup of %d record(s) to %s", item_count, target.name)
        self.emit_event("backup_completed", owner_id=owner, items=item_count)
        self._prune(owner)
        return BackupSnapshot(path=target, owner_id=owner, taken_at=taken_at, item_count=item_count)

    def restore(self, session: VaultSession, source: Path | str) -> int:
        """Decrypt a sealed backup and import the records owned by the session identity.

        ``source`` is either a path to a backup file or the sealed JSON text.
        """
        owner = session.require_identity()
        text = source.read_text(encoding="utf-8") if isinstance(source, Path) else source
        try:
            sealed = json.loads(text)
            iv = b64decode(sealed["iv"])
            ciphertext = b64decode(sealed["ciphertext"])
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            raise InvalidSnapshot("Backup file is malformed") from exc
        if sealed.get("version") != SEALED_VERSION:
            raise InvalidSnapshot(f"Unsupported backup version {sealed.get('version')}")
        snapshot = self.cipher.decrypt_text(ciphertext, iv, self.key_derivation.derive_kek(owner))
        imported = self.record_store.import_all(snapshot, owner)
        self.emit_event("backup_restored", owner_id=owner, items=imported)
        return imported

    def list_backups(self, owner_id: str) -> List[BackupSnapshot]:
        if not self.directory.exists():
            return []
        snapshots = []
        for path in self.directory.glob(f"{_owner_tag(owner_id)}-*.vault.json"):
            try:
                sealed = json.loads(path.read_text(encoding="utf-8"))
            except (json.JSONDecodeError, OSError) as exc:
                logger.warning("Ignoring unreadable backup %s: %s", path.name, exc)
                continue
            snapshots.append(BackupSnapshot(
                path=path,
                owner_id=sealed.get("ownerId", ""),
                taken_at=from_millis(sealed.get("createdAt", 0)),
            ))
        snapshots.sort(key=lambda snap: snap.taken_at, reverse=True)
        return snapshots

    def latest(self, owner_id: str) -> Optional[BackupSnapshot]:
        snapshots = self.list_backups(owner_id)
        return snapshots[0] if snapshots else None

    def _prune(self, owner_id: str) -> None:
        keep = max(self.config.backup.retention, 1)
        for stale in self.list_backups(owner_id)[keep:]:
            stale.path.unlink(missing_ok=True)


def _owner_tag(owner_id: str) -> str:
    digest = hashlib.sha256(owner_id.strip().lower().encode("utf-8")).hexdigest()
    return digest[:16]
