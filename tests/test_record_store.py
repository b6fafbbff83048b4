from __future__ import annotations

import json
from datetime import timedelta

import pytest

from cipher_vault.exceptions import CycleRejected, InvalidRecordState, InvalidSnapshot, RecordNotFound
from cipher_vault.messaging import RECORDS_CHANGED, TRASH_PURGED
from cipher_vault.models import FOLDER_CONTENT_TYPE, FileRecord, HealthStatus, utcnow
from cipher_vault.services.record_store import RecordStore


def _file(record_id: str, owner: str, **overrides) -> FileRecord:
    values = dict(
        id=record_id,
        owner_id=owner,
        display_name=f"{record_id}.txt",
        size_bytes=10,
        content_type="text/plain",
        content_id=f"bafy-{record_id}",
        wrapped_key="d3JhcHBlZA==",
        key_iv="a2V5aXY=",
        file_iv="ZmlsZWl2",
    )
    values.update(overrides)
    return FileRecord(**values)


def test_put_normalizes_owner_and_is_idempotent(store):
    store.put(_file("f1", "0xABC"))
    store.put(_file("f1", "0xAbc"))
    records = store.list_by_owner("0xabc")
    assert [record.id for record in records] == ["f1"]
    assert records[0].owner_id == "0xabc"


def test_get_round_trips_all_fields(store):
    original = _file("f1", "0xabc", is_starred=True, parent_id=None, health_status=HealthStatus.HEALTHY)
    store.put(original)
    loaded = store.get("f1")
    assert loaded.to_dict() == original.to_dict()
    assert store.get("missing") is None
    with pytest.raises(RecordNotFound):
        store.require("missing")


def test_list_by_owner_partitions_and_orders_newest_first(store):
    now = utcnow()
    store.put(_file("old", "0xabc", created_at=now - timedelta(hours=2)))
    store.put(_file("new", "0xabc", created_at=now))
    store.put(_file("other", "0xdef", created_at=now))
    assert [record.id for record in store.list_by_owner("0xABC")] == ["new", "old"]


def test_trash_and_restore_keep_content_id(store):
    store.put(_file("f1", "0xabc"))
    trashed = store.move_to_trash("f1")
    assert trashed.is_trashed and trashed.trashed_at is not None
    assert trashed.content_id == "bafy-f1"
    assert store.list_by_owner("0xabc") == []
    assert [record.id for record in store.list_by_owner("0xabc", include_trashed=True)] == ["f1"]

    restored = store.restore("f1")
    assert not restored.is_trashed and restored.trashed_at is None
    assert restored.content_id == "bafy-f1"


def test_trash_ttl_purges_only_expired_records(store, bus):
    purged_events = []
    bus.subscribe(TRASH_PURGED, purged_events.append)
    trashed_at = utcnow() - timedelta(days=31)
    store.put(_file("stale", "0xabc"))
    store.put(_file("fresh", "0xabc"))
    store.move_to_trash("stale", now=trashed_at)
    store.move_to_trash("fresh")

    assert store.purge_expired_trash("0xabc", now=trashed_at + timedelta(days=29)) == []
    assert store.get("stale").is_trashed

    removed = store.purge_expired_trash("0xabc")
    assert removed == ["stale"]
    assert store.get("stale") is None
    assert store.get("fresh") is not None
    assert purged_events[0].payload["record_ids"] == ["stale"]


def test_purge_boundary_is_inclusive(store):
    trashed_at = utcnow() - timedelta(days=40)
    store.put(_file("f1", "0xabc"))
    store.move_to_trash("f1", now=trashed_at)
    assert store.purge_expired_trash("0xabc", now=trashed_at + timedelta(days=30)) == ["f1"]


def test_purge_ignores_other_owners(store):
    store.put(_file("mine", "0xabc"))
    store.move_to_trash("mine", now=utcnow() - timedelta(days=90))
    assert store.purge_expired_trash("0xdef") == []
    assert store.get("mine") is not None


def test_delete_permanently_requires_trash(store):
    store.put(_file("f1", "0xabc"))
    with pytest.raises(InvalidRecordState):
        store.delete_permanently("f1")
    store.move_to_trash("f1")
    store.delete_permanently("f1")
    assert store.get("f1") is None


def test_batch_trash_and_restore_skip_unknown_ids(store):
    store.put(_file("a", "0xabc"))
    store.put(_file("b", "0xabc"))
    assert store.trash_many(["a", "b", "ghost"]) == ["a", "b"]
    assert store.restore_many(["b", "ghost"]) == ["b"]
    assert store.get("a").is_trashed
    assert not store.get("b").is_trashed


def test_toggle_star_and_touch_access(store):
    store.put(_file("f1", "0xabc"))
    assert store.toggle_star("f1").is_starred
    assert not store.toggle_star("f1").is_starred
    assert store.touch_access("f1").accessed_at is not None


def test_rename_rejects_blank_names(store):
    store.put(_file("f1", "0xabc"))
    assert store.rename("f1", "  report.pdf ").display_name == "report.pdf"
    with pytest.raises(ValueError):
        store.rename("f1", "   ")


def test_create_folder_and_list_children(store):
    root = store.create_folder("0xABC", "Projects")
    child = store.create_folder("0xabc", "2024", parent_id=root.id)
    store.put(_file("f1", "0xabc", parent_id=child.id))

    assert root.is_folder and root.content_id == "" and root.wrapped_key == ""
    assert [record.id for record in store.list_children("0xabc", None)] == [root.id]
    assert [record.id for record in store.list_children("0xabc", root.id)] == [child.id]
    assert [record.id for record in store.list_children("0xabc", child.id)] == ["f1"]


def test_create_folder_rejects_foreign_or_non_folder_parent(store):
    store.put(_file("f1", "0xabc"))
    with pytest.raises(InvalidRecordState):
        store.create_folder("0xabc", "nested", parent_id="f1")
    foreign = store.create_folder("0xdef", "theirs")
    with pytest.raises(RecordNotFound):
        store.create_folder("0xabc", "nested", parent_id=foreign.id)


def test_move_rejects_self_and_descendants(store):
    a = store.create_folder("0xabc", "A")
    b = store.create_folder("0xabc", "B", parent_id=a.id)
    c = store.create_folder("0xabc", "C", parent_id=b.id)

    with pytest.raises(CycleRejected):
        store.move_to_folder(a.id, a.id)
    with pytest.raises(CycleRejected):
        store.move_to_folder(a.id, b.id)
    with pytest.raises(CycleRejected):
        store.move_to_folder(a.id, c.id)
    assert store.get(a.id).parent_id is None


def test_move_between_folders_and_back_to_root(store):
    a = store.create_folder("0xabc", "A")
    b = store.create_folder("0xabc", "B")
    store.put(_file("f1", "0xabc", parent_id=a.id))
    assert store.move_to_folder("f1", b.id).parent_id == b.id
    assert store.move_to_folder(b.id, a.id).parent_id == a.id
    assert store.move_to_folder(b.id, None).parent_id is None


def test_move_into_file_is_rejected(store):
    store.put(_file("f1", "0xabc"))
    store.put(_file("f2", "0xabc"))
    with pytest.raises(InvalidRecordState):
        store.move_to_folder("f1", "f2")


def test_folder_path_walks_root_to_leaf(store):
    a = store.create_folder("0xabc", "A")
    b = store.create_folder("0xabc", "B", parent_id=a.id)
    c = store.create_folder("0xabc", "C", parent_id=b.id)
    assert [record.display_name for record in store.folder_path(c.id)] == ["A", "B", "C"]


def test_folder_path_terminates_on_corrupted_cycle(store):
    # written directly to bypass the move guard
    store.put(_file("x", "0xabc", content_type="application/folder", parent_id="y"))
    store.put(_file("y", "0xabc", content_type="application/folder", parent_id="x"))
    path = store.folder_path("x")
    assert len(path) == store.config.lifecycle.folder_depth_ceiling


def test_purging_folder_moves_children_to_root(store):
    folder = store.create_folder("0xabc", "Old")
    store.put(_file("f1", "0xabc", parent_id=folder.id))
    store.move_to_trash(folder.id)
    store.delete_permanently(folder.id)
    assert store.get("f1").parent_id is None


def test_update_health(store):
    store.put(_file("f1", "0xabc"))
    updated = store.update_health("f1", status=HealthStatus.DEGRADED, current_replicas=1)
    assert updated.health_status == HealthStatus.DEGRADED
    assert updated.current_replicas == 1


def test_export_import_round_trip(config, telemetry, store):
    store.put(_file("f1", "0xabc", is_starred=True))
    store.put(_file("f2", "0xabc"))
    store.move_to_trash("f2")
    blob = store.export_all("0xABC")
    payload = json.loads(blob)
    assert payload["version"] == 1
    assert payload["ownerId"] == "0xabc"
    assert {item["id"] for item in payload["items"]} == {"f1", "f2"}

    fresh = RecordStore(config=config, telemetry=telemetry, dsn="sqlite:///:memory:")
    try:
        assert fresh.import_all(blob, "0xabc") == 2
        assert fresh.get("f1").is_starred
        assert fresh.get("f2").is_trashed
    finally:
        fresh.close()


def test_import_skips_records_of_other_owners(store):
    snapshot = {
        "version": 1,
        "timestamp": 0,
        "ownerId": "0xabc",
        "items": [
            _file("mine", "0xabc").to_dict(),
            _file("theirs", "0xdef").to_dict(),
        ],
    }
    assert store.import_all(json.dumps(snapshot), "0xABC") == 1
    assert store.get("mine") is not None
    assert store.get("theirs") is None


def _snapshot(owner: str, *records: FileRecord) -> str:
    return json.dumps({
        "version": 1,
        "timestamp": 0,
        "ownerId": owner,
        "items": [record.to_dict() for record in records],
    })


def test_put_refuses_to_change_owner_of_existing_id(store):
    store.put(_file("shared-id", "0xabc"))
    with pytest.raises(InvalidRecordState):
        store.put(_file("shared-id", "0xdef", display_name="takeover.txt"))
    assert store.get("shared-id").owner_id == "0xabc"
    assert store.get("shared-id").display_name == "shared-id.txt"


def test_import_does_not_take_over_ids_of_other_owners(store):
    store.put(_file("shared-id", "0xabc"))
    blob = _snapshot("0xdef", _file("shared-id", "0xdef", wrapped_key="b3RoZXI="), _file("fresh", "0xdef"))

    assert store.import_all(blob, "0xdef") == 1
    [kept] = store.list_by_owner("0xabc")
    assert kept.id == "shared-id"
    assert kept.wrapped_key == "d3JhcHBlZA=="
    assert [record.id for record in store.list_by_owner("0xdef")] == ["fresh"]


def test_import_detaches_unusable_parents(store):
    theirs = store.create_folder("0xdef", "Theirs")
    blob = _snapshot(
        "0xabc",
        _file("child", "0xabc", parent_id="docs"),
        _file("docs", "0xabc", content_type=FOLDER_CONTENT_TYPE),
        _file("loop", "0xabc", parent_id="loop"),
        _file("orphan", "0xabc", parent_id="missing"),
        _file("foreign", "0xabc", parent_id=theirs.id),
        _file("under-file", "0xabc", parent_id="child"),
        _file("ping", "0xabc", content_type=FOLDER_CONTENT_TYPE, parent_id="pong"),
        _file("pong", "0xabc", content_type=FOLDER_CONTENT_TYPE, parent_id="ping"),
    )

    assert store.import_all(blob, "0xabc") == 8
    assert store.get("child").parent_id == "docs"
    for record_id in ("loop", "orphan", "foreign", "under-file"):
        assert store.get(record_id).parent_id is None
    parents = {store.get("ping").parent_id, store.get("pong").parent_id}
    assert None in parents
    assert [folder.id for folder in store.folder_path("pong")][-1] == "pong"


def test_imported_trash_without_timestamp_is_purgeable(store):
    trashed = _file("old", "0xabc", is_trashed=True)
    assert trashed.trashed_at is None
    store.import_all(_snapshot("0xabc", trashed), "0xabc")

    assert store.get("old").trashed_at is not None
    assert store.purge_expired_trash("0xabc", now=utcnow() + timedelta(days=31)) == ["old"]


@pytest.mark.parametrize(
    "blob",
    [
        "not json",
        json.dumps({"version": 1, "timestamp": 0, "ownerId": "0xabc"}),
        json.dumps({"version": 2, "timestamp": 0, "ownerId": "0xabc", "items": []}),
        json.dumps([1, 2, 3]),
    ],
)
def test_import_rejects_malformed_snapshots(store, blob):
    with pytest.raises(InvalidSnapshot):
        store.import_all(blob, "0xabc")


def test_changes_are_published(store, bus):
    events = []
    bus.subscribe(RECORDS_CHANGED, events.append)
    store.put(_file("f1", "0xabc"))
    store.toggle_star("f1")
    assert [event.payload["change"] for event in events] == ["put", "starred"]


def test_file_backed_store_persists(tmp_path, config, telemetry):
    dsn = f"sqlite:///{tmp_path / 'nested' / 'vault.db'}"
    first = RecordStore(config=config, telemetry=telemetry, dsn=dsn)
    first.put(_file("f1", "0xabc"))
    first.close()
    second = RecordStore(config=config, telemetry=telemetry, dsn=dsn)
    try:
        assert second.get("f1") is not None
    finally:
        second.close()
