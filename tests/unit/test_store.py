"""Unit tests for the connection store."""

import os
import re
import stat
import threading
from unittest.mock import patch

import pytest
from conftest import sso_input, token_input, username_input
from ruamel.yaml import YAML

from connection_manager.exceptions import NotFoundError, StorageError, ValidationError
from connection_manager.store import ConnectionStore


def _read_file(path):
    with open(path) as f:
        return YAML(typ="safe").load(f)


def test_missing_file_is_empty_registry(store, registry_path):
    """Test that a store over an absent file starts empty without creating it."""
    assert store.get_all() == []
    assert store.get_active() is None
    assert not store.has_connections()
    assert not registry_path.exists()


def test_empty_file_is_empty_registry(registry_path):
    """Test that an empty file loads as an empty registry."""
    registry_path.parent.mkdir(parents=True)
    registry_path.write_text("")

    assert ConnectionStore(registry_path).get_all() == []


def test_first_add_becomes_active(store):
    """Test that the first connection added to an empty registry becomes active."""
    profile = store.add(username_input())

    assert store.active_connection_id == profile.id
    assert store.get_active().name == "Production"


def test_second_add_keeps_active(store):
    """Test that later additions do not change the active connection."""
    first = store.add(username_input())
    store.add(token_input())

    assert store.active_connection_id == first.id
    assert len(store.get_all()) == 2


def test_generated_id_format(store):
    """Test that ids look like conn_<millis>_<7 base36 chars> and are unique."""
    ids = {store.add(username_input(name=f"c{i}")).id for i in range(5)}

    assert len(ids) == 5
    for connection_id in ids:
        assert re.fullmatch(r"conn_\d+_[0-9a-z]{7}", connection_id)


def test_add_strips_protocol_and_sets_created_at(store):
    """Test that stored server addresses have no protocol prefix."""
    profile = store.add(username_input(server="https://argocd.example.com/"))

    assert profile.server_address == "argocd.example.com"
    assert profile.created_at is not None
    assert profile.last_used_at is None


def test_file_format_and_reload(store, registry_path):
    """Test that the file uses the camelCase layout and reloads identically."""
    profile = store.add(token_input())
    store.add(sso_input())

    data = _read_file(registry_path)
    assert data["activeConnectionId"] == profile.id
    assert data["connections"][0]["serverAddress"] == "argocd.ci.example.com"
    assert data["connections"][0]["authMethod"] == "token"
    assert data["connections"][0]["apiToken"] == "tok-123"
    assert "username" not in data["connections"][1]

    reloaded = ConnectionStore(registry_path)
    assert reloaded.get_all() == store.get_all()
    assert reloaded.active_connection_id == profile.id


def test_loads_existing_file(registry_path, sample_registry_data):
    """Test that a file written with older field names loads."""
    registry_path.parent.mkdir(parents=True)
    YAML().dump(sample_registry_data, registry_path)

    store = ConnectionStore(registry_path)

    active = store.get_active()
    assert active.name == "CI"
    assert active.api_token == "tok-123"
    assert active.last_used_at is not None
    assert store.get("conn_1700000000000_a1b2c3d").skip_tls_verify is True


def test_dangling_active_id_is_cleared(registry_path, sample_registry_data):
    """Test that an active id pointing nowhere loads as no active connection."""
    sample_registry_data["activeConnectionId"] = "conn_0_missing"
    registry_path.parent.mkdir(parents=True)
    YAML().dump(sample_registry_data, registry_path)

    store = ConnectionStore(registry_path)

    assert store.active_connection_id is None
    assert store.has_connections()
    assert not store.has_active_connection()


def test_corrupt_file_raises_storage_error(registry_path):
    """Test that an unreadable file is reported instead of silently reset."""
    registry_path.parent.mkdir(parents=True)
    registry_path.write_text("connections:\n  - name: [broken\n")

    with pytest.raises(StorageError):
        ConnectionStore(registry_path)


def test_invalid_content_raises_storage_error(registry_path):
    """Test that a profile violating the credential rules is rejected."""
    registry_path.parent.mkdir(parents=True)
    YAML().dump(
        {
            "connections": [
                {
                    "id": "conn_1_aaaaaaa",
                    "name": "Broken",
                    "serverAddress": "host",
                    "authMethod": "token",
                    "createdAt": "2024-01-01T00:00:00Z",
                }
            ]
        },
        registry_path,
    )

    with pytest.raises(StorageError) as exc_info:
        ConnectionStore(registry_path)

    assert "invalid content" in exc_info.value.message


def test_update_renames(store):
    """Test that update merges fields and keeps id and creation time."""
    profile = store.add(username_input())

    updated = store.update(profile.id, name="Prod EU")

    assert updated.name == "Prod EU"
    assert updated.id == profile.id
    assert updated.created_at == profile.created_at
    assert store.get(profile.id).name == "Prod EU"


def test_update_rejects_immutable_fields(store):
    """Test that id and created_at cannot be changed."""
    profile = store.add(username_input())

    with pytest.raises(ValidationError):
        store.update(profile.id, id="conn_other")


def test_update_rejects_invalid_merge(store):
    """Test that an update breaking the credential rules is rejected."""
    profile = store.add(username_input())

    with pytest.raises(ValidationError):
        store.update(profile.id, auth_method="token")

    assert store.get(profile.id).auth_method.value == "username"


def test_update_unknown_id(store):
    """Test that updating an unknown id raises NotFoundError."""
    with pytest.raises(NotFoundError):
        store.update("conn_0_missing", name="x")


def test_delete_active_promotes_first_remaining(store):
    """Test that deleting the active profile activates the first remaining one."""
    a = store.add(username_input(name="a"))
    b = store.add(token_input(name="b"))

    store.delete(a.id)

    assert store.active_connection_id == b.id
    assert [c.name for c in store.get_all()] == ["b"]


def test_delete_last_clears_active(store):
    """Test that deleting the only profile leaves no active connection."""
    profile = store.add(username_input())

    store.delete(profile.id)

    assert store.active_connection_id is None
    assert not store.has_connections()


def test_delete_inactive_keeps_active(store):
    """Test that deleting another profile does not move the active pointer."""
    a = store.add(username_input(name="a"))
    b = store.add(token_input(name="b"))

    store.delete(b.id)

    assert store.active_connection_id == a.id


def test_delete_unknown_id(store):
    """Test that deleting an unknown id raises NotFoundError."""
    with pytest.raises(NotFoundError):
        store.delete("conn_0_missing")


def test_set_active_records_last_used(store):
    """Test that activating a profile stamps last_used_at."""
    store.add(username_input(name="a"))
    b = store.add(token_input(name="b"))

    activated = store.set_active(b.id)

    assert store.active_connection_id == b.id
    assert activated.last_used_at is not None


def test_set_active_unknown_id(store):
    """Test that activating an unknown id raises NotFoundError."""
    with pytest.raises(NotFoundError):
        store.set_active("conn_0_missing")


def test_clear_active_is_idempotent(store):
    """Test that clearing twice is safe."""
    store.add(username_input())

    store.clear_active()
    store.clear_active()

    assert store.get_active() is None
    assert store.has_connections()


def test_get_all_returns_copies(store):
    """Test that callers cannot mutate the registry through returned profiles."""
    store.add(username_input())

    store.get_all()[0].name = "mutated"

    assert store.get_all()[0].name == "Production"


def test_file_permissions_and_backup(store, registry_path):
    """Test that the file is private and the previous version is kept."""
    store.add(username_input(name="a"))
    store.add(username_input(name="b"))

    mode = stat.S_IMODE(os.stat(registry_path).st_mode)
    assert mode == 0o600

    backup = registry_path.with_suffix(".yml.backup")
    assert backup.exists()
    assert [c["name"] for c in _read_file(backup)["connections"]] == ["a"]


def test_failed_write_leaves_memory_unchanged(store, registry_path):
    """Test that a failed write raises StorageError and keeps the last good state."""
    profile = store.add(username_input())

    with patch("connection_manager.store.os.replace", side_effect=OSError("disk full")):
        with pytest.raises(StorageError):
            store.add(token_input())

    assert [c.id for c in store.get_all()] == [profile.id]
    assert len(ConnectionStore(registry_path).get_all()) == 1
    leftovers = [p for p in registry_path.parent.iterdir() if p.name.endswith(".tmp")]
    assert leftovers == []


def test_permission_error_is_storage_error(store):
    """Test that permission problems are reported with a hint."""
    with patch("connection_manager.store.tempfile.mkstemp", side_effect=PermissionError("denied")):
        with pytest.raises(StorageError) as exc_info:
            store.add(username_input())

    assert "Permission denied" in exc_info.value.message
    assert not store.has_connections()


@pytest.mark.parametrize("fields", [{"serverAddress": "other.example.com"}, {"colour": "blue"}])
def test_update_rejects_unknown_fields(store, fields):
    """Test that aliases and unknown keys are rejected instead of ignored."""
    profile = store.add(username_input())

    with pytest.raises(ValidationError) as exc_info:
        store.update(profile.id, **fields)

    assert "Unknown connection field" in exc_info.value.message
    assert store.get(profile.id).server_address == "argocd.example.com"


def test_concurrent_mutations_keep_file_consistent(store, registry_path):
    """Test that mutations from several threads leave a parseable, complete file."""
    threads_count = 4
    adds_per_thread = 10
    errors = []

    def worker(index):
        try:
            for i in range(adds_per_thread):
                profile = store.add(username_input(name=f"t{index}-{i}"))
                store.set_active(profile.id)
                if i % 3 == 0:
                    store.delete(profile.id)
        except Exception as e:  # collected and asserted below
            errors.append(e)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(threads_count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    deleted_per_thread = len(range(0, adds_per_thread, 3))
    expected = threads_count * (adds_per_thread - deleted_per_thread)

    reloaded = ConnectionStore(registry_path)
    ids = [c.id for c in reloaded.get_all()]
    assert len(ids) == expected
    assert len(set(ids)) == expected
    assert reloaded.get_all() == store.get_all()
    assert reloaded.active_connection_id in ids
