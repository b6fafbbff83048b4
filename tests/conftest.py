from __future__ import annotations

import hashlib

import pytest

from cipher_vault.config import CipherVaultConfig
from cipher_vault.crypto import EnvelopeCipher, KeyDerivation
from cipher_vault.exceptions import StorageDownloadFailed, StorageUploadFailed
from cipher_vault.messaging import InMemoryBus
from cipher_vault.services.record_store import RecordStore
from cipher_vault.session import VaultSession
from cipher_vault.telemetry import TelemetryCollector

OWNER = "0xABCdef0000000000000000000000000000000123"
RECIPIENT = "0x9999000000000000000000000000000000000777"


class FakeStorage:
    """In-memory stand-in for the pinning provider."""

    def __init__(self):
        self.blobs = {}
        self.pins = []
        self.fail_uploads = False
        self.return_empty_id = False

    def upload(self, ciphertext, name_hint, on_progress=None):
        if self.fail_uploads:
            raise StorageUploadFailed("provider unavailable")
        if on_progress:
            on_progress(50)
            on_progress(100)
        if self.return_empty_id:
            return ""
        content_id = "bafy" + hashlib.sha256(ciphertext).hexdigest()[:32]
        self.blobs[content_id] = bytes(ciphertext)
        return content_id

    def download(self, content_id):
        if content_id not in self.blobs:
            raise StorageDownloadFailed(f"{content_id} missing")
        return self.blobs[content_id]

    def pin(self, content_id, name_hint=""):
        self.pins.append(content_id)
        return True


@pytest.fixture()
def config(tmp_path):
    cfg = CipherVaultConfig.default()
    cfg.database.dsn = "sqlite:///:memory:"
    cfg.backup.directory = str(tmp_path / "backups")
    cfg.replicas.probe_timeout_seconds = 0.5
    return cfg


@pytest.fixture()
def telemetry(config):
    return TelemetryCollector(config.observability)


@pytest.fixture()
def bus():
    return InMemoryBus()


@pytest.fixture()
def store(config, telemetry, bus):
    record_store = RecordStore(config=config, telemetry=telemetry, bus=bus)
    yield record_store
    record_store.close()


@pytest.fixture()
def storage():
    return FakeStorage()


@pytest.fixture()
def session(bus):
    return VaultSession.for_identity(OWNER, bus=bus)


@pytest.fixture(scope="session")
def kdf():
    return KeyDerivation()


@pytest.fixture()
def cipher():
    return EnvelopeCipher()


@pytest.fixture()
def owner():
    return OWNER.lower()


@pytest.fixture()
def recipient():
    return RECIPIENT
