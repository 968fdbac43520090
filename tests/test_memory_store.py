import json

import pytest

from sessionvault.storage.errors import ConstraintViolation, StorageError
from sessionvault.storage.memory import MemoryStore
from sessionvault.storage.models import Session


def _session(session_id, scope="scope-a", **kwargs):
    return Session.new(session_id, scope, "123456", **kwargs)


def test_memory_store_persists_sessions(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    parent = store.insert_session(
        _session("p" * 32, validated=True, identity_token="tok", identity_key="key")
    )
    store.insert_session(_session("c" * 32, scope="scope-b", parent_id=parent.id))

    reloaded = MemoryStore(fs_root=str(tmp_path))

    loaded_parent = reloaded.get_session(parent.id)
    assert loaded_parent == parent
    assert loaded_parent.expires_at.tzinfo is not None
    assert [c.id for c in reloaded.list_child_sessions(parent.id)] == ["c" * 32]


def test_duplicate_id_violates_constraint(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.insert_session(_session("a" * 32))

    with pytest.raises(ConstraintViolation) as excinfo:
        store.insert_session(_session("a" * 32))
    assert excinfo.value.detail["field"] == "id"


def test_missing_parent_violates_constraint(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))

    with pytest.raises(ConstraintViolation) as excinfo:
        store.insert_session(_session("a" * 32, parent_id="nope"))
    assert excinfo.value.detail["field"] == "parent_id"
    assert store.get_session("a" * 32) is None


def test_superseding_insert_moves_children(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.insert_session(_session("old" + "0" * 29))
    store.insert_session(_session("kid" + "0" * 29, parent_id="old" + "0" * 29))

    store.insert_session(_session("new" + "0" * 29), supersedes="old" + "0" * 29)

    assert store.get_session("old" + "0" * 29) is None
    assert store.get_session("kid" + "0" * 29).parent_id == "new" + "0" * 29


def test_update_rejects_unknown_fields(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.insert_session(_session("a" * 32))

    with pytest.raises(ValueError):
        store.update_session("a" * 32, scope="scope-b")
    assert store.update_session("missing", validated=True) is False


def test_find_sessions_by_identity_filters_scope(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.insert_session(_session("a" * 32, identity_key="k"))
    store.insert_session(_session("b" * 32, scope="scope-b", identity_key="k"))

    assert [s.id for s in store.find_sessions_by_identity("k", "scope-a")] == ["a" * 32]


def test_delete_sessions_reports_deleted_ids(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.insert_session(_session("a" * 32))

    assert store.delete_sessions(["a" * 32, "missing"]) == ["a" * 32]
    assert store.delete_sessions([]) == []


def test_corrupt_state_file_raises_storage_error(tmp_path):
    state = tmp_path / "state"
    state.mkdir()
    (state / "sessions.json").write_text("{not json")

    with pytest.raises(StorageError):
        MemoryStore(fs_root=str(tmp_path))


def test_state_file_holds_no_plaintext_identity(tmp_path, codec):
    store = MemoryStore(fs_root=str(tmp_path))
    store.insert_session(_session("a" * 32, identity_token=codec.seal("alice@example.com")))

    raw = (tmp_path / "state" / "sessions.json").read_text()
    assert "alice@example.com" not in raw
    assert json.loads(raw)["sessions"][0]["id"] == "a" * 32


def test_second_child_in_same_scope_violates_constraint(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.insert_session(_session("p" * 32, validated=True))
    store.insert_session(_session("c" * 32, scope="scope-b", parent_id="p" * 32))

    with pytest.raises(ConstraintViolation) as excinfo:
        store.insert_session(_session("d" * 32, scope="scope-b", parent_id="p" * 32))
    assert excinfo.value.detail["field"] == "parent_scope"

    # Rotating the existing child takes over its slot.
    store.insert_session(
        _session("e" * 32, scope="scope-b", parent_id="p" * 32), supersedes="c" * 32
    )
    assert [c.id for c in store.list_child_sessions("p" * 32)] == ["e" * 32]


def test_second_pending_session_for_identity_violates_constraint(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.insert_session(_session("a" * 32, identity_key="k"))
    store.insert_session(_session("v" * 32, identity_key="k", validated=True))

    with pytest.raises(ConstraintViolation) as excinfo:
        store.insert_session(_session("b" * 32, identity_key="k"))
    assert excinfo.value.detail["field"] == "identity_key"

    store.insert_session(_session("b" * 32))
    with pytest.raises(ConstraintViolation):
        store.update_session("b" * 32, identity_key="k")
    assert store.get_session("b" * 32).identity_key is None


def test_assign_identity_supersedes_pending_sessions(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.insert_session(_session("a" * 32, identity_key="k"))
    store.insert_session(_session("v" * 32, identity_key="k", validated=True))
    store.insert_session(_session("o" * 32, scope="scope-b", identity_key="k"))
    store.insert_session(_session("b" * 32))

    superseded = store.assign_identity("b" * 32, identity_token="tok", identity_key="k")

    assert superseded == ["a" * 32]
    assert store.get_session("a" * 32) is None
    assert store.get_session("v" * 32) is not None
    assert store.get_session("o" * 32) is not None
    assert store.get_session("b" * 32).identity_key == "k"
    assert store.assign_identity("missing", identity_token="tok", identity_key="k") is None


def test_delete_sessions_cascades_to_descendants(tmp_path):
    store = MemoryStore(fs_root=str(tmp_path))
    store.insert_session(_session("p" * 32, validated=True))
    store.insert_session(_session("c" * 32, scope="scope-b", parent_id="p" * 32))
    store.insert_session(_session("g" * 32, parent_id="c" * 32))

    deleted = store.delete_sessions(["p" * 32])

    assert set(deleted) == {"p" * 32, "c" * 32, "g" * 32}
    assert store.sessions == {}


def test_failed_persist_rolls_back_superseding_insert(tmp_path, monkeypatch):
    store = MemoryStore(fs_root=str(tmp_path))
    store.insert_session(_session("o" * 32, validated=True))
    store.insert_session(_session("c" * 32, scope="scope-b", parent_id="o" * 32))

    def broken():
        raise StorageError("disk full")

    monkeypatch.setattr(store, "_persist_state", broken)

    with pytest.raises(StorageError):
        store.insert_session(_session("n" * 32, validated=True), supersedes="o" * 32)

    assert store.get_session("n" * 32) is None
    assert store.get_session("o" * 32) is not None
    assert store.get_session("c" * 32).parent_id == "o" * 32


def test_failed_persist_rolls_back_update_and_delete(tmp_path, monkeypatch):
    store = MemoryStore(fs_root=str(tmp_path))
    store.insert_session(_session("a" * 32))

    def broken():
        raise StorageError("disk full")

    monkeypatch.setattr(store, "_persist_state", broken)

    with pytest.raises(StorageError):
        store.update_session("a" * 32, validated=True)
    assert store.get_session("a" * 32).validated is False

    with pytest.raises(StorageError):
        store.delete_sessions(["a" * 32])
    assert store.get_session("a" * 32) is not None
