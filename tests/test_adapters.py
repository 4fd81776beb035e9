"""Tests for the per-client config format adapters."""
from __future__ import annotations

import json

import pytest

from mcphubctl.adapters import (
    JsonListAdapter,
    JsonMapAdapter,
    ServerEntry,
    TomlTableAdapter,
    adapter_for,
)
from mcphubctl.errors import ConfigParseError
from mcphubctl.models import ClientKind

ENTRY = ServerEntry(command="npx", args=("-y", "@mcp/fs"), env={"ROOT": "/tmp"})


def test_json_map_preserves_foreign_keys_and_position() -> None:
    """The managed object is replaced in place; siblings keep their order."""
    raw = json.dumps(
        {"theme": "dark", "mcpServers": {"old": {"command": "x"}}, "fontSize": 14}
    ).encode()
    adapter = JsonMapAdapter()

    decoded = adapter.decode(raw)
    assert list(decoded.managed) == ["old"]

    output = json.loads(adapter.encode(decoded.rest, {"fs": ENTRY}))
    assert list(output) == ["theme", "mcpServers", "fontSize"]
    assert output["mcpServers"] == {
        "fs": {"command": "npx", "args": ["-y", "@mcp/fs"], "env": {"ROOT": "/tmp"}}
    }


def test_json_map_creates_document_when_missing() -> None:
    """An absent or blank file decodes to an empty document."""
    adapter = JsonMapAdapter()

    decoded = adapter.decode(b"  \n")
    output = adapter.encode(decoded.rest, {"fs": ServerEntry(command="run")})

    assert output == b'{\n  "mcpServers": {\n    "fs": {\n      "command": "run",\n      "args": []\n    }\n  }\n}\n'


def test_json_map_rejects_invalid_documents() -> None:
    """Unparseable bytes and wrong root types raise ConfigParseError."""
    adapter = JsonMapAdapter()

    with pytest.raises(ConfigParseError):
        adapter.decode(b"{not json")
    with pytest.raises(ConfigParseError):
        adapter.decode(b"[1, 2]")
    with pytest.raises(ConfigParseError):
        adapter.decode(b'{"mcpServers": []}')


def test_json_map_accepts_utf8_bom() -> None:
    """A leading byte-order mark is tolerated."""
    decoded = JsonMapAdapter().decode(b'\xef\xbb\xbf{"mcpServers": {"a": {"command": "b"}}}')

    assert decoded.managed == {"a": ServerEntry(command="b")}


def test_vscode_entries_carry_stdio_transport() -> None:
    """VS Code style clients nest entries under ``servers`` with a type."""
    adapter = adapter_for(ClientKind.VSCODE)

    output = json.loads(adapter.encode(adapter.decode(b"").rest, {"fs": ENTRY}))

    assert output["servers"]["fs"]["type"] == "stdio"
    assert output["servers"]["fs"]["command"] == "npx"


def test_zed_uses_context_servers() -> None:
    """Zed keeps MCP servers under ``context_servers``."""
    adapter = adapter_for(ClientKind.ZED)
    raw = b'{"vim_mode": true, "context_servers": {"a": {"command": "b"}}}'

    decoded = adapter.decode(raw)
    output = json.loads(adapter.encode(decoded.rest, {}))

    assert decoded.managed == {"a": ServerEntry(command="b")}
    assert output == {"vim_mode": True, "context_servers": {}}


def test_json_list_adapter_nested_path() -> None:
    """Augment stores a list of named entries under a nested key."""
    adapter = adapter_for(ClientKind.AUGMENT)
    assert isinstance(adapter, JsonListAdapter)
    raw = json.dumps(
        {
            "editor": {"tabSize": 2},
            "augment.advanced": {
                "other": True,
                "mcpServers": [
                    {"name": "fs", "command": "one"},
                    {"name": "fs", "command": "two"},
                ],
            },
        }
    ).encode()

    decoded = adapter.decode(raw)
    assert decoded.managed == {"fs": ServerEntry(command="one")}

    output = json.loads(adapter.encode(decoded.rest, {"git": ServerEntry(command="git-mcp")}))
    assert output["editor"] == {"tabSize": 2}
    assert output["augment.advanced"]["other"] is True
    assert output["augment.advanced"]["mcpServers"] == [
        {"name": "git", "command": "git-mcp", "args": []}
    ]


def test_non_launchable_entries_are_not_managed_entries() -> None:
    """URL based entries decode to nothing but are still replaced on encode."""
    decoded = JsonMapAdapter().decode(b'{"mcpServers": {"remote": {"url": "https://x"}}}')

    assert decoded.managed == {}
    assert decoded.native == {"remote": {"url": "https://x"}}


def test_toml_preserves_comments_and_appends_table() -> None:
    """Foreign TOML content, including comments, survives a rewrite."""
    raw = (
        b"# codex settings\n"
        b'model = "o3"  # preferred\n'
        b"\n"
        b"[mcp_servers.old]\n"
        b'command = "old"\n'
        b"\n"
        b"[profiles.fast]\n"
        b'model = "mini"\n'
    )
    adapter = adapter_for(ClientKind.OPENAI_CODEX)
    assert isinstance(adapter, TomlTableAdapter)

    decoded = adapter.decode(raw)
    assert decoded.managed == {"old": ServerEntry(command="old")}

    output = adapter.encode(decoded.rest, {"fs": ENTRY}).decode()
    assert output.startswith("# codex settings\n")
    assert 'model = "o3"  # preferred' in output
    assert "[profiles.fast]" in output
    assert "[mcp_servers.old]" not in output
    assert output.index("[profiles.fast]") < output.index("[mcp_servers.fs]")

    again = adapter.decode(output.encode())
    assert again.managed == {"fs": ENTRY}


def test_toml_rejects_invalid_documents() -> None:
    """Broken TOML and a non-table managed key raise ConfigParseError."""
    adapter = TomlTableAdapter()

    with pytest.raises(ConfigParseError):
        adapter.decode(b"[unterminated\n")
    with pytest.raises(ConfigParseError):
        adapter.decode(b'mcp_servers = "nope"\n')


def test_default_adapter_for_unlisted_kinds() -> None:
    """Clients without a specific adapter use ``mcpServers`` JSON."""
    adapter = adapter_for(ClientKind.CURSOR)

    assert isinstance(adapter, JsonMapAdapter)
    assert adapter.managed_path == ("mcpServers",)
    assert adapter.transport is None
    assert adapter.format_name == "json"
    assert adapter_for(ClientKind.OPENAI_CODEX).format_name == "toml"
