"""Runtime wiring for the vault client core."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

import requests

from .clients.mirror_client import MetadataMirrorClient
from .clients.storage_client import PinningStorageClient
from .config import CipherVaultConfig
from .crypto import EnvelopeCipher, KeyDerivation
from .messaging import InMemoryBus, build_bus
from .services.backup_service import BackupManager
from .services.download_service import DownloadService
from .services.metadata_mirror import MetadataSealer, MirrorSync
from .services.record_store import RecordStore
from .services.replica_service import ReplicaHealthMonitor
from .services.sharing_service import SharingService
from .services.upload_service import StorageClient, UploadPipeline
from .session import VaultSession
from .telemetry import TelemetryCollector, configure_logging

logger = logging.getLogger(__name__)


@dataclass
class CipherVaultRuntime:
    config: CipherVaultConfig
    bus: InMemoryBus
    telemetry: TelemetryCollector
    session: VaultSession
    record_store: RecordStore
    storage_client: StorageClient
    upload_pipeline: UploadPipeline
    download_service: DownloadService
    replica_monitor: ReplicaHealthMonitor
    sharing_service: SharingService
    backup_manager: BackupManager
    mirror_sync: MirrorSync

    @classmethod
    def bootstrap(
        cls,
        config: Optional[CipherVaultConfig] = None,
        *,
        storage_client: Optional[StorageClient] = None,
        http_client: object = requests,
    ) -> "CipherVaultRuntime":
        cfg = config or CipherVaultConfig.default()
        configure_logging(cfg.observability.log_level)
        bus = build_bus(cfg.message_bus.backend)
        telemetry = TelemetryCollector(cfg.observability)
        session = VaultSession(bus=bus)

        cipher = EnvelopeCipher()
        key_derivation = KeyDerivation(
            iterations=cfg.crypto.kdf_iterations,
            salt_prefix=cfg.crypto.salt_prefix,
            key_size=cfg.crypto.key_bytes,
        )
        storage = storage_client or PinningStorageClient(cfg.storage, http_client=http_client)

        record_store = RecordStore(config=cfg, telemetry=telemetry, bus=bus)
        mirror_client = None
        if cfg.mirror.enabled:
            mirror_client = MetadataMirrorClient(
                cfg.mirror.base_url,
                timeout=cfg.mirror.timeout,
                http_client=http_client,
            )
        mirror_sync = MirrorSync(
            config=cfg,
            telemetry=telemetry,
            record_store=record_store,
            sealer=MetadataSealer(key_derivation=key_derivation, cipher=cipher),
            client=mirror_client,
        )
        upload_pipeline = UploadPipeline(
            config=cfg,
            telemetry=telemetry,
            record_store=record_store,
            storage_client=storage,
            bus=bus,
            cipher=cipher,
            key_derivation=key_derivation,
            mirror=mirror_sync,
        )
        download_service = DownloadService(
            config=cfg,
            telemetry=telemetry,
            record_store=record_store,
            storage_client=storage,
            cipher=cipher,
            key_derivation=key_derivation,
        )
        replica_monitor = ReplicaHealthMonitor(
            config=cfg,
            telemetry=telemetry,
            record_store=record_store,
            storage_client=storage,
            bus=bus,
            http_client=http_client,
        )
        sharing_service = SharingService(
            config=cfg,
            telemetry=telemetry,
            record_store=record_store,
            downloads=download_service,
        )
        backup_manager = BackupManager(
            config=cfg,
            telemetry=telemetry,
            record_store=record_store,
            cipher=cipher,
            key_derivation=key_derivation,
        )
        return cls(
            config=cfg,
            bus=bus,
            telemetry=telemetry,
            session=session,
            record_store=record_store,
            storage_client=storage,
            upload_pipeline=upload_pipeline,
            download_service=download_service,
            replica_monitor=replica_monitor,
            sharing_service=sharing_service,
            backup_manager=backup_manager,
            mirror_sync=mirror_sync,
        )

    def connect(self, identity: str) -> List[str]:
        """Connect ``identity`` and purge its expired trash.

        Purging happens here rather than on a timer so it cannot race a
        restore that is already in progress. Returns the purged record ids.
        """
        owner = self.session.connect(identity)
        purged = self.record_store.purge_expired_trash(owner)
        if purged:
            logger.info("Removed %d expired trash record(s) on connect", len(purged))
        return purged

    def disconnect(self) -> None:
        self.session.disconnect()

    def shutdown(self) -> None:
        self.record_store.close()
