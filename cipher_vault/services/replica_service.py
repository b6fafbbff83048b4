"""Replica verification and healing against public retrieval endpoints."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import List, Optional

import requests

from ..exceptions import CipherVaultError
from ..messaging import REPLICA_HEALTH, InMemoryBus
from ..models import FileRecord, HealthStatus, normalize_identity, utcnow
from .base import BaseService
from .record_store import RecordStore
from .upload_service import StorageClient

logger = logging.getLogger(__name__)


@dataclass
class ReplicaHealthMonitor(BaseService):
    record_store: RecordStore
    storage_client: Optional[StorageClient] = None
    bus: Optional[InMemoryBus] = None
    http_client: object = requests

    def verify(self, content_id: str) -> int:
        """Probe every configured endpoint concurrently and count the hits.

        Each probe races the configured timeout; probes that have not
        answered by then count as misses and are abandoned.
        """
        policy = self.config.replicas
        if not content_id or not policy.probe_endpoints:
            return 0
        urls = [template.format(cid=content_id) for template in policy.probe_endpoints]
        executor = ThreadPoolExecutor(max_workers=len(urls), thread_name_prefix="replica-probe")
        try:
            futures = [executor.submit(self._probe, url) for url in urls]
            done, pending = wait(futures, timeout=policy.probe_timeout_seconds)
            count = sum(1 for future in done if future.exception() is None and future.result())
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
        if pending:
            logger.debug("%d probe(s) for %s timed out", len(pending), content_id)
        self.emit_metric("replica.verify", count, content_id=content_id)
        return count

    def classify(self, replica_count: int) -> HealthStatus:
        if replica_count >= self.config.replicas.healthy_threshold:
            return HealthStatus.HEALTHY
        # zero hits is reported the same as one
        return HealthStatus.DEGRADED

    def refresh(self, record_id: str) -> FileRecord:
        record = self.record_store.require(record_id)
        if record.is_folder:
            return record
        count = self.verify(record.content_id)
        updated = self.record_store.update_health(
            record_id,
            status=self.classify(count),
            current_replicas=count,
        )
        self._publish(updated)
        return updated

    def heal(self, record_id: str) -> FileRecord:
        record = self.record_store.require(record_id)
        if record.is_folder:
            return record
        self.record_store.update_health(record_id, status=HealthStatus.RECOVERING)
        self.emit_event("replica_heal_started", record_id=record_id)
        if self.storage_client is not None:
            try:
                pinned = self.storage_client.pin(record.content_id, record.display_name)
            except CipherVaultError as exc:
                logger.warning("Re-pin of %s failed, continuing with verification: %s", record.content_id, exc)
                pinned = False
            if not pinned:
                logger.info("Re-pin of %s was not accepted", record.content_id)
        count = self.verify(record.content_id)
        updated = self.record_store.update_health(
            record_id,
            status=self.classify(count),
            current_replicas=count,
            healed_at=utcnow(),
        )
        logger.info("Healed %s: %d replica(s), %s", record_id, count, updated.health_status.value)
        self._publish(updated)
        return updated

    def sweep(self, owner_id: str) -> List[FileRecord]:
        refreshed = []
        for record in self.record_store.list_by_owner(normalize_identity(owner_id)):
            if record.is_folder or not record.content_id:
                continue
            refreshed.append(self.refresh(record.id))
        return refreshed

    def _probe(self, url: str) -> bool:
        try:
            response = self.http_client.head(
                url,
                timeout=self.config.replicas.probe_timeout_seconds,
                allow_redirects=True,
            )
        except requests.RequestException as exc:
            logger.debug("Probe %s failed: %s", url, exc)
            return False
        return 200 <= response.status_code < 400

    def _publish(self, record: FileRecord) -> None:
        if self.bus:
            self.bus.emit(
                REPLICA_HEALTH,
                record_id=record.id,
                replicas=record.current_replicas,
                status=record.health_status.value if record.health_status else None,
            )
