"""Encrypt, upload and index queued files one at a time."""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Dict, Iterable, List, Optional, Protocol

from ..crypto import EnvelopeCipher, KeyDerivation, b64encode
from ..exceptions import InvalidRecordState, StorageUploadFailed, TaskStateError
from ..messaging import UPLOAD_PROGRESS, InMemoryBus
from ..models import (
    ACTIVE_TASK_STATES,
    Classification,
    FileRecord,
    SourceFile,
    TaskStatus,
    UploadTask,
    utcnow,
)
from ..session import VaultSession
from .base import BaseService
from .record_store import RecordStore

if TYPE_CHECKING:  # pragma: no cover
    from .metadata_mirror import MirrorSync

logger = logging.getLogger(__name__)


class StorageClient(Protocol):
    def upload(self, ciphertext: bytes, name_hint: str, on_progress=None) -> str: ...

    def download(self, content_id: str) -> bytes: ...

    def pin(self, content_id: str, name_hint: str = "") -> bool: ...


@dataclass
class UploadPipeline(BaseService):
    """Drives each task through ``queued -> encrypting -> uploading -> completed|failed``.

    A record is written only as the final step of a successful task and
    carries the task id, so a settled task either has exactly one complete
    record or none. Failed tasks go back to the queue only through
    :meth:`retry`.
    """

    record_store: RecordStore
    storage_client: StorageClient
    bus: Optional[InMemoryBus] = None
    cipher: EnvelopeCipher = field(default_factory=EnvelopeCipher)
    key_derivation: Optional[KeyDerivation] = None
    mirror: Optional["MirrorSync"] = None
    tasks: Dict[str, UploadTask] = field(default_factory=dict)
    _lock: threading.RLock = field(default_factory=threading.RLock, init=False, repr=False)
    _processing: bool = field(default=False, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.key_derivation is None:
            self.key_derivation = KeyDerivation(
                iterations=self.config.crypto.kdf_iterations,
                salt_prefix=self.config.crypto.salt_prefix,
                key_size=self.config.crypto.key_bytes,
            )

    # Queue management --------------------------------------------------------

    def enqueue(
        self,
        files: Iterable[SourceFile],
        *,
        parent_id: Optional[str] = None,
        classification: Classification = Classification.PRIVATE,
    ) -> List[UploadTask]:
        created: List[UploadTask] = []
        with self._lock:
            for source in files:
                task = UploadTask(
                    id=str(uuid.uuid4()),
                    source=source,
                    size_bytes=len(source.data),
                    parent_id=parent_id,
                    classification=classification,
                )
                self.tasks[task.id] = task
                created.append(task)
        for task in created:
            self._publish(task)
        self.emit_metric("upload.enqueued", len(created))
        return created

    def process_queue(self, session: VaultSession) -> List[UploadTask]:
        """Run every queued task sequentially for the session's identity.

        Returns the tasks settled by this call. A call made while another is
        already draining the queue returns immediately with an empty list.
        """
        identity = session.require_identity()
        with self._lock:
            if self._processing:
                return []
            self._processing = True
        settled: List[UploadTask] = []
        try:
            while True:
                task = self._next_queued()
                if task is None:
                    break
                settled.append(self._run(task, session, identity))
        finally:
            with self._lock:
                self._processing = False
        return settled

    def retry(self, task_id: str) -> UploadTask:
        with self._lock:
            task = self._require_task(task_id)
            if task.status != TaskStatus.FAILED:
                raise TaskStateError(f"Only failed tasks can be retried, task {task_id} is {task.status.value}")
            task.status = TaskStatus.QUEUED
            task.progress = 0.0
            task.error = None
        self._publish(task)
        return task

    def remove(self, task_id: str) -> None:
        with self._lock:
            task = self._require_task(task_id)
            if task.status in (TaskStatus.ENCRYPTING, TaskStatus.UPLOADING):
                raise TaskStateError(f"Task {task_id} is in flight and cannot be removed")
            del self.tasks[task_id]

    def clear_completed(self) -> int:
        with self._lock:
            done = [task_id for task_id, task in self.tasks.items() if task.status == TaskStatus.COMPLETED]
            for task_id in done:
                del self.tasks[task_id]
        return len(done)

    def snapshot(self) -> List[UploadTask]:
        with self._lock:
            return [replace(task) for task in self.tasks.values()]

    @property
    def has_active_tasks(self) -> bool:
        with self._lock:
            return any(task.status in ACTIVE_TASK_STATES for task in self.tasks.values())

    # Task execution ----------------------------------------------------------

    def _run(self, task: UploadTask, session: VaultSession, identity: str) -> UploadTask:
        started = time.perf_counter()
        try:
            if task.parent_id is not None:
                self._check_parent(task.parent_id, identity)

            self._advance(task, TaskStatus.ENCRYPTING, 10)
            dek = self.cipher.generate_dek()
            payload = self.cipher.encrypt(task.source.data, dek)
            self._advance(task, TaskStatus.ENCRYPTING, 20)

            kek = self.key_derivation.derive_kek(identity)
            wrapped = self.cipher.wrap_key(dek, kek)
            del dek, kek
            self._advance(task, TaskStatus.ENCRYPTING, 30)

            self._advance(task, TaskStatus.UPLOADING, 40)
            content_id = self.storage_client.upload(
                payload.ciphertext,
                task.source.name,
                on_progress=lambda value: self._advance(task, TaskStatus.UPLOADING, 40 + value / 2),
            )
            if not content_id:
                raise StorageUploadFailed("Storage client returned an empty content id")
            self._advance(task, TaskStatus.UPLOADING, 90)

            record = FileRecord(
                id=task.id,
                owner_id=identity,
                display_name=task.source.name,
                size_bytes=task.size_bytes,
                content_type=task.source.content_type,
                content_id=content_id,
                wrapped_key=b64encode(wrapped.ciphertext),
                key_iv=b64encode(wrapped.iv),
                file_iv=b64encode(payload.iv),
                parent_id=task.parent_id,
                classification=task.classification,
                target_replicas=self.config.replicas.target_replicas,
            )
            record = self.record_store.put(record, change="uploaded")
        except Exception as exc:
            with self._lock:
                task.status = TaskStatus.FAILED
                task.error = str(exc) or exc.__class__.__name__
            logger.warning("Upload task %s (%s) failed: %s", task.id, task.source.name, task.error)
            self.emit_metric("upload.failed", 1, error=exc.__class__.__name__)
            self._publish(task)
            return task

        with self._lock:
            task.status = TaskStatus.COMPLETED
            task.progress = 100.0
            task.completed_at = utcnow()
            # plaintext is not kept once the record exists
            task.source = SourceFile(name=task.source.name, data=b"", content_type=task.source.content_type)
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info("Upload task %s completed as %s", task.id, record.content_id)
        self.emit_metric("upload.completed", 1)
        self.emit_metric("upload.latency_ms", elapsed_ms)
        self._publish(task)
        if self.mirror is not None:
            self.mirror.push(session, record)
        return task

    def _advance(self, task: UploadTask, status: TaskStatus, progress: float) -> None:
        with self._lock:
            task.status = status
            task.progress = max(0.0, min(float(progress), 100.0))
        self._publish(task)

    def _check_parent(self, parent_id: str, identity: str) -> None:
        parent = self.record_store.require(parent_id)
        if not parent.is_folder or parent.owner_id != identity:
            raise InvalidRecordState(f"Upload target {parent_id} is not a folder of the current identity")
        if parent.is_trashed:
            raise InvalidRecordState(f"Upload target {parent_id} is in the trash")

    def _next_queued(self) -> Optional[UploadTask]:
        with self._lock:
            for task in self.tasks.values():
                if task.status == TaskStatus.QUEUED:
                    return task
        return None

    def _require_task(self, task_id: str) -> UploadTask:
        task = self.tasks.get(task_id)
        if task is None:
            raise TaskStateError(f"Unknown upload task {task_id}")
        return task

    def _publish(self, task: UploadTask) -> None:
        if self.bus:
            self.bus.emit(UPLOAD_PROGRESS, **task.describe())
