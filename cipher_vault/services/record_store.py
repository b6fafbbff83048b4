"""Durable local index of file and folder records."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..config import DatabaseConfig
from ..exceptions import CycleRejected, InvalidRecordState, InvalidSnapshot, RecordNotFound
from ..messaging import RECORDS_CHANGED, TRASH_PURGED, InMemoryBus
from ..models import (
    FOLDER_CONTENT_TYPE,
    Classification,
    FileRecord,
    HealthStatus,
    from_millis,
    normalize_identity,
    to_millis,
    utcnow,
)
from .base import BaseService

logger = logging.getLogger(__name__)

SNAPSHOT_VERSION = 1

_COLUMNS = (
    "id",
    "owner_id",
    "display_name",
    "size_bytes",
    "content_type",
    "content_id",
    "wrapped_key",
    "key_iv",
    "file_iv",
    "parent_id",
    "classification",
    "created_at",
    "is_trashed",
    "trashed_at",
    "is_starred",
    "accessed_at",
    "target_replicas",
    "current_replicas",
    "health_status",
    "last_healed_at",
)


class SnapshotEnvelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    version: int
    timestamp: int
    owner_id: str = Field(alias="ownerId")
    items: List[Dict[str, Any]]


@dataclass
class RecordStore(BaseService):
    """Single keyed table with lookups by owner and by creation time.

    Envelope fields are stored as opaque base64 strings; the store never
    decrypts anything. Updates are last-write-wins on the whole record.
    """

    bus: Optional[InMemoryBus] = None
    dsn: Optional[str] = None
    _conn: sqlite3.Connection = field(default=None, init=False, repr=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False)

    def __post_init__(self) -> None:
        database = DatabaseConfig(dsn=self.dsn) if self.dsn else self.config.database
        path = database.path
        if path != ":memory:":
            Path(path).expanduser().parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock, self._conn:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS records (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    display_name TEXT NOT NULL,
                    size_bytes INTEGER NOT NULL,
                    content_type TEXT NOT NULL,
                    content_id TEXT NOT NULL DEFAULT '',
                    wrapped_key TEXT NOT NULL DEFAULT '',
                    key_iv TEXT NOT NULL DEFAULT '',
                    file_iv TEXT NOT NULL DEFAULT '',
                    parent_id TEXT,
                    classification TEXT NOT NULL,
                    created_at INTEGER NOT NULL,
                    is_trashed INTEGER NOT NULL DEFAULT 0,
                    trashed_at INTEGER,
                    is_starred INTEGER NOT NULL DEFAULT 0,
                    accessed_at INTEGER,
                    target_replicas INTEGER NOT NULL DEFAULT 3,
                    current_replicas INTEGER NOT NULL DEFAULT 0,
                    health_status TEXT,
                    last_healed_at INTEGER
                )
            """)
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_records_owner ON records(owner_id)")
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_records_created ON records(created_at)")

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # Core index operations ---------------------------------------------------

    def put(self, record: FileRecord, *, change: str = "put") -> FileRecord:
        record = replace(record, owner_id=normalize_identity(record.owner_id))
        if not record.owner_id:
            raise ValueError("Record owner identity must not be empty")
        placeholders = ", ".join("?" for _ in _COLUMNS)
        with self._lock, self._conn:
            row = self._conn.execute("SELECT owner_id FROM records WHERE id = ?", (record.id,)).fetchone()
            if row is not None and row["owner_id"] != record.owner_id:
                raise InvalidRecordState(f"Record {record.id} belongs to another identity")
            self._conn.execute(
                f"INSERT OR REPLACE INTO records ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
                self._to_row(record),
            )
        self._publish(record, change)
        return record

    def get(self, record_id: str) -> Optional[FileRecord]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM records WHERE id = ?", (record_id,)).fetchone()
        return self._from_row(row) if row else None

    def require(self, record_id: str) -> FileRecord:
        record = self.get(record_id)
        if record is None:
            raise RecordNotFound(f"Record {record_id} not found")
        return record

    def list_by_owner(self, owner_id: str, *, include_trashed: bool = False) -> List[FileRecord]:
        query = "SELECT * FROM records WHERE owner_id = ?"
        if not include_trashed:
            query += " AND is_trashed = 0"
        query += " ORDER BY created_at DESC, id"
        with self._lock:
            rows = self._conn.execute(query, (normalize_identity(owner_id),)).fetchall()
        return [self._from_row(row) for row in rows]

    def list_children(
        self,
        owner_id: str,
        parent_id: Optional[str],
        *,
        include_trashed: bool = False,
    ) -> List[FileRecord]:
        return [
            record
            for record in self.list_by_owner(owner_id, include_trashed=include_trashed)
            if record.parent_id == parent_id
        ]

    # Folder operations -------------------------------------------------------

    def create_folder(self, owner_id: str, name: str, parent_id: Optional[str] = None) -> FileRecord:
        name = (name or "").strip()
        if not name:
            raise ValueError("Folder name must not be empty")
        if parent_id is not None:
            self._require_folder(parent_id, owner_id)
        folder = FileRecord(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            display_name=name,
            size_bytes=0,
            content_type=FOLDER_CONTENT_TYPE,
            parent_id=parent_id,
            target_replicas=0,
        )
        self.emit_event("folder_created", record_id=folder.id)
        return self.put(folder, change="folder_created")

    def move_to_folder(self, record_id: str, new_parent_id: Optional[str]) -> FileRecord:
        with self._lock:
            record = self.require(record_id)
            if new_parent_id is not None:
                if new_parent_id == record_id:
                    raise CycleRejected("A record cannot be moved into itself")
                parent = self._require_folder(new_parent_id, record.owner_id)
                self._reject_if_descendant(record_id, parent)
            return self.put(replace(record, parent_id=new_parent_id), change="moved")

    def folder_path(self, record_id: Optional[str]) -> List[FileRecord]:
        """Root-to-leaf chain ending at ``record_id``.

        Bounded by the configured depth ceiling so a corrupted parent chain
        still terminates.
        """
        ceiling = self.config.lifecycle.folder_depth_ceiling
        path: List[FileRecord] = []
        current = record_id
        depth = 0
        while current and depth < ceiling:
            record = self.get(current)
            if record is None:
                break
            path.insert(0, record)
            current = record.parent_id
            depth += 1
        return path

    def rename(self, record_id: str, new_name: str) -> FileRecord:
        new_name = (new_name or "").strip()
        if not new_name:
            raise ValueError("Name must not be empty")
        return self._mutate(record_id, "renamed", display_name=new_name)

    # Lifecycle flags ---------------------------------------------------------

    def toggle_star(self, record_id: str) -> FileRecord:
        with self._lock:
            record = self.require(record_id)
            return self.put(replace(record, is_starred=not record.is_starred), change="starred")

    def touch_access(self, record_id: str, *, now: Optional[datetime] = None) -> FileRecord:
        return self._mutate(record_id, "accessed", accessed_at=now or utcnow())

    def move_to_trash(self, record_id: str, *, now: Optional[datetime] = None) -> FileRecord:
        with self._lock:
            record = self.require(record_id)
            if record.is_trashed:
                return record
            self.emit_event("record_trashed", record_id=record_id)
            return self.put(replace(record, is_trashed=True, trashed_at=now or utcnow()), change="trashed")

    def restore(self, record_id: str) -> FileRecord:
        with self._lock:
            record = self.require(record_id)
            if not record.is_trashed:
                return record
            self.emit_event("record_restored", record_id=record_id)
            return self.put(replace(record, is_trashed=False, trashed_at=None), change="restored")

    def trash_many(self, record_ids: Iterable[str], *, now: Optional[datetime] = None) -> List[str]:
        affected: List[str] = []
        for record_id in record_ids:
            if self.get(record_id) is None:
                continue
            self.move_to_trash(record_id, now=now)
            affected.append(record_id)
        return affected

    def restore_many(self, record_ids: Iterable[str]) -> List[str]:
        affected: List[str] = []
        for record_id in record_ids:
            if self.get(record_id) is None:
                continue
            self.restore(record_id)
            affected.append(record_id)
        return affected

    def update_health(
        self,
        record_id: str,
        *,
        status: HealthStatus,
        current_replicas: Optional[int] = None,
        healed_at: Optional[datetime] = None,
    ) -> FileRecord:
        changes: Dict[str, Any] = {"health_status": status}
        if current_replicas is not None:
            changes["current_replicas"] = current_replicas
        if healed_at is not None:
            changes["last_healed_at"] = healed_at
        return self._mutate(record_id, "health", **changes)

    # Permanent removal -------------------------------------------------------

    def delete_permanently(self, record_id: str) -> None:
        with self._lock:
            record = self.require(record_id)
            if not record.is_trashed:
                raise InvalidRecordState("Only trashed records can be deleted permanently")
            self._delete([record])
        self.emit_event("record_deleted", record_id=record_id)

    def purge_expired_trash(
        self,
        owner_id: str,
        retention_days: Optional[int] = None,
        *,
        now: Optional[datetime] = None,
    ) -> List[str]:
        days = self.config.lifecycle.trash_retention_days if retention_days is None else retention_days
        if days < 0:
            return []
        cutoff = (now or utcnow()) - timedelta(days=days)
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM records WHERE owner_id = ? AND is_trashed = 1 AND trashed_at <= ?",
                (normalize_identity(owner_id), to_millis(cutoff)),
            ).fetchall()
            expired = [self._from_row(row) for row in rows]
            if expired:
                self._delete(expired)
        removed = [record.id for record in expired]
        if removed:
            logger.info("Purged %d expired trash records for %s", len(removed), owner_id)
            self.emit_metric("trash.purged", len(removed))
            if self.bus:
                self.bus.emit(TRASH_PURGED, owner_id=normalize_identity(owner_id), record_ids=removed)
        return removed

    # Snapshot round-trip -----------------------------------------------------

    def export_all(self, owner_id: str) -> str:
        owner = normalize_identity(owner_id)
        items = [record.to_dict() for record in self.list_by_owner(owner, include_trashed=True)]
        payload = {
            "version": SNAPSHOT_VERSION,
            "timestamp": to_millis(utcnow()),
            "ownerId": owner,
            "items": items,
        }
        return json.dumps(payload, sort_keys=True)

    def import_all(self, blob: str, owner_id: str) -> int:
        owner = normalize_identity(owner_id)
        try:
            envelope = SnapshotEnvelope.model_validate(json.loads(blob))
        except (json.JSONDecodeError, TypeError) as exc:
            raise InvalidSnapshot("Snapshot is not valid JSON") from exc
        except ValidationError as exc:
            raise InvalidSnapshot(f"Snapshot envelope is malformed: {exc.error_count()} error(s)") from exc
        if envelope.version != SNAPSHOT_VERSION:
            raise InvalidSnapshot(f"Unsupported snapshot version {envelope.version}")
        records: List[FileRecord] = []
        for item in envelope.items:
            if normalize_identity(str(item.get("ownerId", ""))) != owner:
                continue
            try:
                records.append(FileRecord.from_dict(item))
            except (KeyError, ValueError, TypeError) as exc:
                logger.warning("Skipping malformed snapshot item %s: %s", item.get("id"), exc)
        imported = self.import_records(records, owner, change="imported")
        self.emit_event("snapshot_imported", owner_id=owner, items=len(imported))
        return len(imported)

    def import_records(
        self,
        records: Iterable[FileRecord],
        owner_id: str,
        *,
        change: str = "imported",
        now: Optional[datetime] = None,
    ) -> List[FileRecord]:
        """Write records that arrived from outside the store for ``owner_id``.

        Records of other owners, and ids already held by another owner, are
        skipped. A parent link is dropped when it points at the record
        itself, at something that is not a folder of the same owner, or
        would close a loop. Trashed records without a trash time are stamped
        with ``now`` so the retention purge can reach them.
        """
        owner = normalize_identity(owner_id)
        stamp = now or utcnow()
        incoming: Dict[str, FileRecord] = {}
        for record in records:
            if normalize_identity(record.owner_id) != owner:
                continue
            existing = self.get(record.id)
            if existing is not None and existing.owner_id != owner:
                logger.warning("Skipping imported record %s: id is held by another identity", record.id)
                continue
            if record.is_trashed and record.trashed_at is None:
                record = replace(record, trashed_at=stamp)
            elif not record.is_trashed and record.trashed_at is not None:
                record = replace(record, trashed_at=None)
            incoming[record.id] = replace(record, owner_id=owner)

        with self._lock:
            for record_id in list(incoming):
                record = incoming[record_id]
                if record.parent_id is not None and not self._parent_acceptable(record, incoming, owner):
                    logger.info("Detaching imported record %s from parent %s", record_id, record.parent_id)
                    incoming[record_id] = replace(record, parent_id=None)
            return [self.put(record, change=change) for record in incoming.values()]

    # Internal helpers --------------------------------------------------------

    def _mutate(self, record_id: str, change: str, **changes: Any) -> FileRecord:
        with self._lock:
            record = self.require(record_id)
            return self.put(replace(record, **changes), change=change)

    def _require_folder(self, folder_id: str, owner_id: str) -> FileRecord:
        folder = self.require(folder_id)
        if not folder.is_folder:
            raise InvalidRecordState(f"Record {folder_id} is not a folder")
        if folder.owner_id != normalize_identity(owner_id):
            raise RecordNotFound(f"Folder {folder_id} not found")
        return folder

    def _parent_acceptable(self, record: FileRecord, incoming: Dict[str, FileRecord], owner: str) -> bool:
        if record.parent_id == record.id:
            return False
        parent = incoming.get(record.parent_id) or self.get(record.parent_id)
        if parent is None or parent.owner_id != owner or not parent.is_folder:
            return False
        seen = {record.id}
        ancestor: Optional[FileRecord] = parent
        for _ in range(self.config.lifecycle.folder_depth_ceiling):
            if ancestor is None or ancestor.parent_id is None:
                return True
            if ancestor.id in seen or ancestor.parent_id in seen:
                return False
            seen.add(ancestor.id)
            ancestor = incoming.get(ancestor.parent_id) or self.get(ancestor.parent_id)
        return False

    def _reject_if_descendant(self, record_id: str, candidate_parent: FileRecord) -> None:
        seen = {candidate_parent.id}
        ancestor_id = candidate_parent.parent_id
        while ancestor_id is not None:
            if ancestor_id == record_id:
                raise CycleRejected("Cannot move a folder into one of its descendants")
            if ancestor_id in seen:
                break
            seen.add(ancestor_id)
            ancestor = self.get(ancestor_id)
            if ancestor is None:
                break
            ancestor_id = ancestor.parent_id

    def _delete(self, records: List[FileRecord]) -> None:
        ids = [record.id for record in records]
        marks = ", ".join("?" for _ in ids)
        with self._conn:
            self._conn.execute(f"DELETE FROM records WHERE id IN ({marks})", ids)
            # children of a removed folder fall back to the root
            self._conn.execute(f"UPDATE records SET parent_id = NULL WHERE parent_id IN ({marks})", ids)
        for record in records:
            self._publish(record, "deleted")

    def _publish(self, record: FileRecord, change: str) -> None:
        if self.bus:
            self.bus.emit(RECORDS_CHANGED, record_id=record.id, owner_id=record.owner_id, change=change)

    @staticmethod
    def _to_row(record: FileRecord) -> tuple:
        return (
            record.id,
            record.owner_id,
            record.display_name,
            int(record.size_bytes),
            record.content_type,
            record.content_id,
            record.wrapped_key,
            record.key_iv,
            record.file_iv,
            record.parent_id,
            record.classification.value,
            to_millis(record.created_at),
            int(record.is_trashed),
            to_millis(record.trashed_at),
            int(record.is_starred),
            to_millis(record.accessed_at),
            int(record.target_replicas),
            int(record.current_replicas),
            record.health_status.value if record.health_status else None,
            to_millis(record.last_healed_at),
        )

    @staticmethod
    def _from_row(row: sqlite3.Row) -> FileRecord:
        health = row["health_status"]
        return FileRecord(
            id=row["id"],
            owner_id=row["owner_id"],
            display_name=row["display_name"],
            size_bytes=row["size_bytes"],
            content_type=row["content_type"],
            content_id=row["content_id"],
            wrapped_key=row["wrapped_key"],
            key_iv=row["key_iv"],
            file_iv=row["file_iv"],
            parent_id=row["parent_id"],
            classification=Classification(row["classification"]),
            created_at=from_millis(row["created_at"]),
            is_trashed=bool(row["is_trashed"]),
            trashed_at=from_millis(row["trashed_at"]),
            is_starred=bool(row["is_starred"]),
            accessed_at=from_millis(row["accessed_at"]),
            target_replicas=row["target_replicas"],
            current_replicas=row["current_replicas"],
            health_status=HealthStatus(health) if health else None,
            last_healed_at=from_millis(row["last_healed_at"]),
        )
