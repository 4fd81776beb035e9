"""Tests for rendering an instance's managed section into config bytes."""
from __future__ import annotations

import json

import pytest

from mcphubctl.credentials import MemoryCredentialStore, server_env_key
from mcphubctl.errors import ConfigCorruptError
from mcphubctl.merge import render_instance, sanitize_server_name
from mcphubctl.models import ClientInstance, ClientKind, ServerDefinition


def _instance(*servers: ServerDefinition, kind: ClientKind = ClientKind.CURSOR) -> ClientInstance:
    return ClientInstance.create(
        "work", kind, "/tmp/mcp.json", enabled_servers=[server.id for server in servers]
    )


def _servers(*servers: ServerDefinition) -> dict[str, ServerDefinition]:
    return {server.id: server for server in servers}


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("GitHub Tools", "github-tools"),
        ("fs_server", "fs_server"),
        ("--Weird!!Name--", "weird--name"),
        ("***", ""),
    ],
)
def test_sanitize_server_name(name: str, expected: str) -> None:
    """Display names become lowercase config keys."""
    assert sanitize_server_name(name) == expected


def test_render_writes_enabled_servers_in_order() -> None:
    """Entries follow the instance's enablement order."""
    beta = ServerDefinition.create("Beta", "b")
    alpha = ServerDefinition.create("Alpha", "a", ["--x"])
    instance = _instance(beta, alpha)

    result = render_instance(instance, _servers(alpha, beta), None)

    document = json.loads(result.content)
    assert list(document["mcpServers"]) == ["beta", "alpha"]
    assert document["mcpServers"]["alpha"] == {"command": "a", "args": ["--x"]}
    assert result.added == ["beta", "alpha"]
    assert result.changed is True


def test_render_replaces_managed_section_and_keeps_foreign_keys() -> None:
    """Entries that are no longer enabled are removed; other keys stay."""
    server = ServerDefinition.create("fs", "npx")
    existing = json.dumps(
        {"editor": {"fontSize": 12}, "mcpServers": {"stale": {"command": "gone"}}}
    ).encode()

    result = render_instance(_instance(server), _servers(server), existing)

    document = json.loads(result.content)
    assert document["editor"] == {"fontSize": 12}
    assert list(document["mcpServers"]) == ["fs"]
    assert result.removed == ["stale"]


def test_render_is_idempotent_and_keeps_bytes() -> None:
    """A second render over its own output changes nothing."""
    server = ServerDefinition.create("fs", "npx", ["-y"])
    instance = _instance(server)

    first = render_instance(instance, _servers(server), None)
    second = render_instance(instance, _servers(server), first.content)

    assert second.content == first.content
    assert second.changed is False


def test_render_leaves_hand_formatted_file_untouched_when_up_to_date() -> None:
    """Formatting differences alone do not trigger a rewrite."""
    server = ServerDefinition.create("fs", "npx")
    existing = b'{"mcpServers":{"fs":{"command":"npx","args":[]}},"x":1}'

    result = render_instance(_instance(server), _servers(server), existing)

    assert result.content == existing
    assert result.changed is False


def test_dangling_references_are_skipped() -> None:
    """Enabled ids without a definition produce a diagnostic, not an error."""
    server = ServerDefinition.create("fs", "npx")
    instance = ClientInstance.create(
        "work", ClientKind.CURSOR, "/tmp/mcp.json", enabled_servers=["ghost", server.id]
    )

    result = render_instance(instance, _servers(server), None)

    assert list(result.managed) == ["fs"]
    assert result.skipped == ("ghost",)
    assert any("ghost" in message for message in result.diagnostics)


def test_key_collisions_keep_first_server() -> None:
    """Two names that sanitize to the same key keep only the first."""
    first = ServerDefinition.create("My Server", "one")
    second = ServerDefinition.create("my-server", "two")

    result = render_instance(_instance(first, second), _servers(first, second), None)

    assert result.managed["my-server"].command == "one"
    assert len(result.managed) == 1
    assert any("already in use" in message for message in result.diagnostics)


def test_unsanitizable_name_falls_back_to_id() -> None:
    """A name with no usable characters is keyed by its id prefix."""
    server = ServerDefinition.create("!!!", "run")

    result = render_instance(_instance(server), _servers(server), None)

    assert list(result.managed) == [f"server-{server.id[:8]}"]


def test_secret_env_resolution() -> None:
    """Secrets are merged into env; missing ones are reported and omitted."""
    server = ServerDefinition.create(
        "gh", "gh-mcp", env={"LOG": "1"}, secret_env=["TOKEN", "OTHER"]
    )
    store = MemoryCredentialStore({server_env_key(server.id, "TOKEN"): "s3cret"})

    result = render_instance(_instance(server), _servers(server), None, secrets=store)

    assert dict(result.managed["gh"].env) == {"LOG": "1", "TOKEN": "s3cret"}
    assert any("OTHER" in message for message in result.diagnostics)


def test_corrupt_existing_file_raises() -> None:
    """Unparseable content is never overwritten."""
    server = ServerDefinition.create("fs", "npx")

    with pytest.raises(ConfigCorruptError) as info:
        render_instance(_instance(server), _servers(server), b"{oops")

    assert info.value.kind == "config-corrupt"


def test_toml_render_is_idempotent() -> None:
    """Codex TOML output is stable across repeated renders."""
    server = ServerDefinition.create("fs", "npx", ["-y"], env={"A": "1"})
    instance = _instance(server, kind=ClientKind.OPENAI_CODEX)
    existing = b'model = "o3"\n'

    first = render_instance(instance, _servers(server), existing)
    second = render_instance(instance, _servers(server), first.content)

    assert b'model = "o3"' in first.content
    assert b"[mcp_servers.fs]" in first.content
    assert second.changed is False
    assert second.content == first.content
