"""Configuration primitives for the CipherVault client core."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Mapping, Optional


@dataclass
class DatabaseConfig:
    dsn: str = "sqlite:///cipher_vault.db"

    @property
    def path(self) -> str:
        prefix = "sqlite:///"
        if not self.dsn.startswith(prefix):
            raise ValueError(f"Unsupported record store DSN: {self.dsn}")
        return self.dsn[len(prefix):] or ":memory:"


@dataclass
class MessageBusConfig:
    backend: str = "in-memory"
    topics: List[str] = field(default_factory=lambda: [
        "session.changed",
        "uploads.progress",
        "records.changed",
        "replica.health",
        "trash.purged",
    ])


@dataclass
class CryptoConfig:
    kdf_iterations: int = 100_000
    salt_prefix: str = "ciphervault-"
    key_bytes: int = 32
    iv_bytes: int = 12


@dataclass
class StorageProviderConfig:
    api_url: str = "https://api.pinata.cloud"
    gateway_url: str = "https://gateway.pinata.cloud"
    jwt: Optional[str] = None
    upload_timeout: float = 120.0
    max_file_bytes: int = 100 * 1024 * 1024


@dataclass
class ReplicaPolicyConfig:
    probe_endpoints: List[str] = field(default_factory=lambda: [
        "https://ipfs.io/ipfs/{cid}",
        "https://dweb.link/ipfs/{cid}",
        "https://gateway.pinata.cloud/ipfs/{cid}",
    ])
    probe_timeout_seconds: float = 2.0
    healthy_threshold: int = 2
    target_replicas: int = 3


@dataclass
class LifecycleConfig:
    trash_retention_days: int = 30
    recent_limit: int = 25
    folder_depth_ceiling: int = 20


@dataclass
class MirrorConfig:
    base_url: Optional[str] = None
    timeout: float = 5.0

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)


@dataclass
class BackupConfig:
    directory: str = field(default_factory=lambda: str(Path.home() / ".ciphervault" / "backups"))
    retention: int = 5


@dataclass
class ObservabilityConfig:
    log_level: str = "INFO"


@dataclass
class CipherVaultConfig:
    database: DatabaseConfig
    message_bus: MessageBusConfig
    crypto: CryptoConfig
    storage: StorageProviderConfig
    replicas: ReplicaPolicyConfig
    lifecycle: LifecycleConfig
    mirror: MirrorConfig
    backup: BackupConfig
    observability: ObservabilityConfig

    @staticmethod
    def default() -> "CipherVaultConfig":
        return CipherVaultConfig(
            database=DatabaseConfig(),
            message_bus=MessageBusConfig(),
            crypto=CryptoConfig(),
            storage=StorageProviderConfig(),
            replicas=ReplicaPolicyConfig(),
            lifecycle=LifecycleConfig(),
            mirror=MirrorConfig(),
            backup=BackupConfig(),
            observability=ObservabilityConfig(),
        )

    @staticmethod
    def from_env(environ: Optional[Mapping[str, str]] = None) -> "CipherVaultConfig":
        env = os.environ if environ is None else environ
        cfg = CipherVaultConfig.default()
        cfg.database.dsn = env.get("CIPHER_VAULT_DATABASE_DSN", cfg.database.dsn)
        cfg.storage.api_url = env.get("CIPHER_VAULT_STORAGE_API_URL", cfg.storage.api_url)
        cfg.storage.gateway_url = env.get("CIPHER_VAULT_STORAGE_GATEWAY_URL", cfg.storage.gateway_url)
        cfg.storage.jwt = env.get("CIPHER_VAULT_PINATA_JWT", cfg.storage.jwt)
        endpoints = env.get("CIPHER_VAULT_PROBE_ENDPOINTS")
        if endpoints:
            cfg.replicas.probe_endpoints = [item.strip() for item in endpoints.split(",") if item.strip()]
        if "CIPHER_VAULT_PROBE_TIMEOUT" in env:
            cfg.replicas.probe_timeout_seconds = float(env["CIPHER_VAULT_PROBE_TIMEOUT"])
        if "CIPHER_VAULT_TRASH_RETENTION_DAYS" in env:
            cfg.lifecycle.trash_retention_days = int(env["CIPHER_VAULT_TRASH_RETENTION_DAYS"])
        cfg.mirror.base_url = env.get("CIPHER_VAULT_MIRROR_URL", cfg.mirror.base_url)
        cfg.backup.directory = env.get("CIPHER_VAULT_BACKUP_DIR", cfg.backup.directory)
        cfg.observability.log_level = env.get("CIPHER_VAULT_LOG_LEVEL", cfg.observability.log_level)
        return cfg
