"""State registry helpers tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from mcphubctl.models import ClientInstance, ClientKind, ServerDefinition
from mcphubctl.state import StateRegistry, StateRegistryError


def _server(name: str = "filesystem") -> ServerDefinition:
    return ServerDefinition.create(name, "npx", ["-y", f"@mcp/{name}"])


def test_read_missing_files_returns_default(tmp_path: Path) -> None:
    """Missing files return the provided default structure."""
    registry = StateRegistry(tmp_path)

    result = registry.read("instances.yml", default={"instances": []})

    assert result == {"instances": []}
    assert registry.list_servers() == []
    assert registry.list_instances() == []


def test_write_and_read_roundtrip(tmp_path: Path) -> None:
    """Writing a registry file and reading it back succeeds."""
    registry = StateRegistry(tmp_path)
    payload = {"servers": [{"id": "a", "name": "alpha", "command": "run"}]}

    registry.write("servers.yml", payload)

    path = tmp_path / "servers.yml"
    assert path.exists()
    assert (path.stat().st_mode & 0o777) == 0o640
    assert registry.read("servers.yml") == payload
    assert [server.name for server in registry.list_servers()] == ["alpha"]


def test_invalid_yaml_raises(tmp_path: Path) -> None:
    """Invalid YAML raises a StateRegistryError."""
    registry = StateRegistry(tmp_path)
    (tmp_path / "instances.yml").write_text("::: not yaml :::\n")

    with pytest.raises(StateRegistryError):
        registry.read("instances.yml")


def test_invalid_entry_raises(tmp_path: Path) -> None:
    """Entries missing required fields are reported with the file name."""
    registry = StateRegistry(tmp_path)
    registry.write("servers.yml", {"servers": [{"id": "x", "name": "no-command"}]})

    with pytest.raises(StateRegistryError, match="servers.yml"):
        registry.list_servers()


def test_server_lookup_by_id_or_name(tmp_path: Path) -> None:
    """Servers can be found by identifier first, then by name."""
    registry = StateRegistry(tmp_path)
    server = registry.add_server(_server())

    assert registry.get_server(server.id) == server
    assert registry.get_server("filesystem") == server
    assert registry.get_server("missing") is None
    with pytest.raises(StateRegistryError):
        registry.get_server("  ")


def test_update_and_remove_server(tmp_path: Path) -> None:
    """Updates replace the stored definition; removal drops it."""
    registry = StateRegistry(tmp_path)
    server = registry.add_server(_server())

    registry.update_server(server.touched(args=("--port", "9000")))
    assert registry.get_server(server.id).args == ("--port", "9000")  # type: ignore[union-attr]

    registry.remove_server("filesystem")
    assert registry.list_servers() == []
    with pytest.raises(StateRegistryError):
        registry.remove_server(server.id)


def test_instance_names_are_unique(tmp_path: Path) -> None:
    """A second instance with the same name is rejected."""
    registry = StateRegistry(tmp_path)
    registry.add_instance(ClientInstance.create("cursor", ClientKind.CURSOR, tmp_path / "a.json"))

    with pytest.raises(StateRegistryError, match="already in use"):
        registry.add_instance(
            ClientInstance.create("cursor", ClientKind.CURSOR, tmp_path / "b.json")
        )


def test_set_server_enabled_preserves_order_and_stamps_modified(tmp_path: Path) -> None:
    """Enabling appends in order; only real changes bump last_modified."""
    registry = StateRegistry(tmp_path)
    first = registry.add_server(_server("first"))
    second = registry.add_server(_server("second"))
    instance = registry.add_instance(
        ClientInstance.create("zed", ClientKind.ZED, tmp_path / "settings.json")
    )
    assert instance.last_modified is None

    registry.set_server_enabled("zed", second.id, True)
    updated = registry.set_server_enabled("zed", first.id, True)
    assert updated.enabled_servers == (second.id, first.id)
    assert updated.last_modified is not None

    unchanged = registry.set_server_enabled("zed", first.id, True)
    assert unchanged.last_modified == updated.last_modified

    disabled = registry.set_server_enabled("zed", second.id, False)
    assert disabled.enabled_servers == (first.id,)


def test_record_sync_does_not_touch_last_modified(tmp_path: Path) -> None:
    """Sync timestamps are recorded independently of modification time."""
    registry = StateRegistry(tmp_path)
    instance = registry.add_instance(
        ClientInstance.create("cursor", ClientKind.CURSOR, tmp_path / "mcp.json")
    )
    stamp = instance.created_at

    synced = registry.record_sync(instance.id, stamp)

    assert synced.last_synced == stamp
    assert synced.last_modified is None
    assert registry.get_instance("cursor").last_synced == stamp  # type: ignore[union-attr]


def test_update_instance_rejects_sync_timestamps(tmp_path: Path) -> None:
    """Callers cannot forge sync timestamps through update_instance."""
    registry = StateRegistry(tmp_path)
    instance = registry.add_instance(
        ClientInstance.create("cursor", ClientKind.CURSOR, tmp_path / "mcp.json")
    )

    with pytest.raises(StateRegistryError):
        registry.update_instance(instance.id, last_synced=instance.created_at)

    renamed = registry.update_instance(instance.id, name="cursor-work")
    assert renamed.name == "cursor-work"
    assert renamed.last_modified is not None


def test_remove_instance(tmp_path: Path) -> None:
    """Removing an instance deletes it from the registry."""
    registry = StateRegistry(tmp_path)
    instance = registry.add_instance(
        ClientInstance.create("cursor", ClientKind.CURSOR, tmp_path / "mcp.json")
    )

    registry.remove_instance("cursor")

    assert registry.get_instance(instance.id) is None
    with pytest.raises(StateRegistryError):
        registry.remove_instance("cursor")
