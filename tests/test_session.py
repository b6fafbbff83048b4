from __future__ import annotations

import pytest

from cipher_vault.config import CipherVaultConfig
from cipher_vault.exceptions import SessionRequired
from cipher_vault.messaging import SESSION_CHANGED, InMemoryBus
from cipher_vault.session import VaultSession


def test_connect_normalizes_and_publishes():
    bus = InMemoryBus()
    changes = []
    bus.subscribe(SESSION_CHANGED, lambda envelope: changes.append(envelope.payload))
    session = VaultSession(bus=bus)

    assert session.connect("  0xABCdef ") == "0xabcdef"
    session.switch("0x123")
    session.disconnect()
    session.disconnect()

    assert [change["change"] for change in changes] == ["connected", "switched", "disconnected"]
    assert changes[1]["previous"] == "0xabcdef"
    assert not session.is_connected


def test_require_identity():
    session = VaultSession()
    with pytest.raises(SessionRequired):
        session.require_identity()
    with pytest.raises(SessionRequired):
        session.connect("   ")
    session.connect("0xABC")
    assert session.require_identity() == "0xabc"


def test_unsubscribe_stops_delivery():
    bus = InMemoryBus()
    seen = []
    unsubscribe = bus.subscribe(SESSION_CHANGED, seen.append)
    VaultSession.for_identity("0x1", bus=bus)
    unsubscribe()
    VaultSession.for_identity("0x2", bus=bus)
    assert len(seen) == 1


def test_failing_subscriber_does_not_block_others():
    bus = InMemoryBus()
    seen = []

    def broken(envelope):
        raise ValueError("boom")

    bus.subscribe(SESSION_CHANGED, broken)
    bus.subscribe(SESSION_CHANGED, seen.append)

    assert bus.emit(SESSION_CHANGED, change="connected") == 1
    assert len(seen) == 1


def test_config_reads_environment():
    cfg = CipherVaultConfig.from_env({
        "CIPHER_VAULT_DATABASE_DSN": "sqlite:///:memory:",
        "CIPHER_VAULT_PROBE_ENDPOINTS": "https://a.test/{cid}, https://b.test/{cid}",
        "CIPHER_VAULT_PROBE_TIMEOUT": "1.5",
        "CIPHER_VAULT_TRASH_RETENTION_DAYS": "7",
        "CIPHER_VAULT_MIRROR_URL": "http://mirror.test",
    })
    assert cfg.database.path == ":memory:"
    assert cfg.replicas.probe_endpoints == ["https://a.test/{cid}", "https://b.test/{cid}"]
    assert cfg.replicas.probe_timeout_seconds == 1.5
    assert cfg.lifecycle.trash_retention_days == 7
    assert cfg.mirror.enabled


def test_unsupported_dsn_is_rejected():
    cfg = CipherVaultConfig.default()
    cfg.database.dsn = "postgres://db"
    with pytest.raises(ValueError):
        cfg.database.path
