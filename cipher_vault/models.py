"""Data models shared across the vault services."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

FOLDER_CONTENT_TYPE = "application/folder"
DEFAULT_CONTENT_TYPE = "application/octet-stream"


class Classification(str, Enum):
    PUBLIC = "public"
    PRIVATE = "private"
    CONFIDENTIAL = "confidential"


class HealthStatus(str, Enum):
    HEALTHY = "Healthy"
    DEGRADED = "Degraded"
    RECOVERING = "Recovering"


class TaskStatus(str, Enum):
    QUEUED = "queued"
    ENCRYPTING = "encrypting"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_TASK_STATES = frozenset({TaskStatus.QUEUED, TaskStatus.ENCRYPTING, TaskStatus.UPLOADING})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_millis(value: Optional[datetime]) -> Optional[int]:
    if value is None:
        return None
    return int(value.timestamp() * 1000)


def from_millis(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def normalize_identity(identity: str) -> str:
    return (identity or "").strip().lower()


@dataclass
class EncryptedPayload:
    ciphertext: bytes
    iv: bytes


@dataclass
class WrappedKey:
    """A data key sealed under a key-encrypting key, with its own IV."""

    ciphertext: bytes
    iv: bytes


@dataclass
class SourceFile:
    name: str
    data: bytes
    content_type: str = DEFAULT_CONTENT_TYPE


@dataclass
class FileRecord:
    id: str
    owner_id: str
    display_name: str
    size_bytes: int
    content_type: str
    content_id: str = ""
    wrapped_key: str = ""
    key_iv: str = ""
    file_iv: str = ""
    parent_id: Optional[str] = None
    classification: Classification = Classification.PRIVATE
    created_at: datetime = field(default_factory=utcnow)
    is_trashed: bool = False
    trashed_at: Optional[datetime] = None
    is_starred: bool = False
    accessed_at: Optional[datetime] = None
    target_replicas: int = 3
    current_replicas: int = 0
    health_status: Optional[HealthStatus] = None
    last_healed_at: Optional[datetime] = None

    @property
    def is_folder(self) -> bool:
        return self.content_type == FOLDER_CONTENT_TYPE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "ownerId": self.owner_id,
            "displayName": self.display_name,
            "sizeBytes": self.size_bytes,
            "contentType": self.content_type,
            "contentId": self.content_id,
            "wrappedKey": self.wrapped_key,
            "keyIv": self.key_iv,
            "fileIv": self.file_iv,
            "parentId": self.parent_id,
            "classification": self.classification.value,
            "createdAt": to_millis(self.created_at),
            "isTrashed": self.is_trashed,
            "trashedAt": to_millis(self.trashed_at),
            "isStarred": self.is_starred,
            "accessedAt": to_millis(self.accessed_at),
            "targetReplicas": self.target_replicas,
            "currentReplicas": self.current_replicas,
            "healthStatus": self.health_status.value if self.health_status else None,
            "lastHealedAt": to_millis(self.last_healed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FileRecord":
        health = data.get("healthStatus")
        created = from_millis(data.get("createdAt"))
        return cls(
            id=str(data["id"]),
            owner_id=normalize_identity(str(data["ownerId"])),
            display_name=str(data.get("displayName", "")),
            size_bytes=int(data.get("sizeBytes", 0)),
            content_type=str(data.get("contentType") or DEFAULT_CONTENT_TYPE),
            content_id=str(data.get("contentId") or ""),
            wrapped_key=str(data.get("wrappedKey") or ""),
            key_iv=str(data.get("keyIv") or ""),
            file_iv=str(data.get("fileIv") or ""),
            parent_id=data.get("parentId"),
            classification=Classification(data.get("classification") or Classification.PRIVATE.value),
            created_at=created or utcnow(),
            is_trashed=bool(data.get("isTrashed", False)),
            trashed_at=from_millis(data.get("trashedAt")),
            is_starred=bool(data.get("isStarred", False)),
            accessed_at=from_millis(data.get("accessedAt")),
            target_replicas=int(data.get("targetReplicas", 3)),
            current_replicas=int(data.get("currentReplicas", 0)),
            health_status=HealthStatus(health) if health else None,
            last_healed_at=from_millis(data.get("lastHealedAt")),
        )


@dataclass
class UploadTask:
    id: str
    source: SourceFile
    size_bytes: int = 0
    status: TaskStatus = TaskStatus.QUEUED
    progress: float = 0.0
    error: Optional[str] = None
    parent_id: Optional[str] = None
    classification: Classification = Classification.PRIVATE
    created_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    def describe(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.source.name,
            "size_bytes": self.size_bytes,
            "status": self.status.value,
            "progress": self.progress,
            "error": self.error,
            "parent_id": self.parent_id,
            "classification": self.classification.value,
        }


@dataclass
class ShareGrant:
    share_id: str
    record_id: str
    owner_id: str
    recipient_id: str
    display_name: str
    content_type: str
    content_id: str
    file_iv: str
    wrapped_key: str
    key_iv: str
    permission: str = "read"
    created_at: datetime = field(default_factory=utcnow)
    revoked_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.revoked_at is None
