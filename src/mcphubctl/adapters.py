"""Per-client translation between canonical server entries and on-disk formats.

Each client kind maps to exactly one :class:`ConfigAdapter`. An adapter
knows which document format the client uses, where in that document the
managed section lives, and how a canonical :class:`ServerEntry` is spelled
inside it. Everything outside the managed section is foreign content: it is
carried through :class:`ForeignContent` untouched and written back verbatim.
"""
from __future__ import annotations

import json
from collections.abc import Mapping
from copy import deepcopy
from dataclasses import dataclass, field

import tomlkit
from tomlkit.exceptions import TOMLKitError

from .errors import ConfigParseError
from .models import ClientKind


@dataclass(frozen=True)
class ServerEntry:
    """Canonical launch description written into a client config."""

    command: str
    args: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        """Return the canonical mapping; ``env`` is omitted when empty."""
        payload: dict[str, object] = {"command": self.command, "args": list(self.args)}
        if self.env:
            payload["env"] = dict(self.env)
        return payload

    @classmethod
    def from_native(cls, value: object) -> ServerEntry | None:
        """Build an entry from a decoded mapping, or ``None`` when not launchable."""
        if not isinstance(value, Mapping):
            return None
        command = value.get("command")
        if not isinstance(command, str) or not command:
            return None
        args_raw = value.get("args") or []
        env_raw = value.get("env") or {}
        if not isinstance(args_raw, list) or not isinstance(env_raw, Mapping):
            return None
        return cls(
            command=command,
            args=tuple(str(item) for item in args_raw),
            env={str(key): str(item) for key, item in env_raw.items()},
        )


@dataclass
class ForeignContent:
    """The document with the managed section removed.

    ``body`` is format specific (a ``dict`` for JSON, a ``TOMLDocument`` for
    TOML). ``position`` records where the managed key sat inside its parent
    mapping so it can be reinserted in place.
    """

    body: object
    position: int | None = None


@dataclass
class DecodedConfig:
    """Result of :meth:`ConfigAdapter.decode`."""

    managed: dict[str, ServerEntry]
    rest: ForeignContent
    native: object = None


class ConfigAdapter:
    """Base class for client config formats."""

    format_name = "json"

    def __init__(self, managed_path: tuple[str, ...] = ("mcpServers",)) -> None:
        if not managed_path:
            raise ValueError("managed_path must contain at least one key")
        self.managed_path = managed_path

    @property
    def managed_key(self) -> str:
        """Return the dotted display form of the managed path."""
        return " -> ".join(self.managed_path)

    def decode(self, raw: bytes) -> DecodedConfig:  # pragma: no cover - abstract
        """Split *raw* into the managed section and the rest of the document."""
        raise NotImplementedError

    def encode(
        self, rest: ForeignContent, managed: Mapping[str, ServerEntry]
    ) -> bytes:  # pragma: no cover - abstract
        """Serialise *rest* with *managed* reinserted at the managed path."""
        raise NotImplementedError

    def to_native(self, managed: Mapping[str, ServerEntry]) -> object:
        """Return the managed section exactly as it will be stored."""
        return {name: self.entry_to_native(entry) for name, entry in managed.items()}

    def entry_to_native(self, entry: ServerEntry) -> dict[str, object]:
        """Return the client's spelling of a single entry."""
        return entry.to_dict()

    def native_to_entries(self, native: object) -> dict[str, ServerEntry]:
        """Convert a decoded managed section into canonical entries."""
        if not isinstance(native, Mapping):
            return {}
        entries: dict[str, ServerEntry] = {}
        for name, value in native.items():
            entry = ServerEntry.from_native(value)
            if entry is not None:
                entries[str(name)] = entry
        return entries

    def check_native(self, native: object) -> None:
        """Reject a managed section with the wrong container type."""
        if not isinstance(native, Mapping):
            raise ConfigParseError(
                f"'{self.managed_key}' must be an object, found {type(native).__name__}."
            )


class JsonMapAdapter(ConfigAdapter):
    """JSON documents whose managed section is a ``name -> entry`` object."""

    def __init__(
        self,
        managed_path: tuple[str, ...] = ("mcpServers",),
        *,
        transport: str | None = None,
    ) -> None:
        super().__init__(managed_path)
        self.transport = transport

    def entry_to_native(self, entry: ServerEntry) -> dict[str, object]:
        """Return the client's spelling of a single entry."""
        payload = entry.to_dict()
        if self.transport:
            return {"type": self.transport, **payload}
        return payload

    def decode(self, raw: bytes) -> DecodedConfig:
        """Split *raw* into the managed section and the rest of the document."""
        document = _load_json(raw)
        parent = _walk_parents(document, self.managed_path)
        leaf = self.managed_path[-1]
        if parent is None or leaf not in parent:
            return DecodedConfig(managed={}, rest=ForeignContent(document), native=None)
        native = parent[leaf]
        self.check_native(native)
        position = list(parent.keys()).index(leaf)
        del parent[leaf]
        return DecodedConfig(
            managed=self.native_to_entries(native),
            rest=ForeignContent(document, position),
            native=native,
        )

    def encode(self, rest: ForeignContent, managed: Mapping[str, ServerEntry]) -> bytes:
        """Serialise *rest* with *managed* reinserted at the managed path."""
        document = deepcopy(rest.body)
        if not isinstance(document, dict):
            raise ConfigParseError("JSON config documents must be objects.")
        parent = document
        for key in self.managed_path[:-1]:
            child = parent.get(key)
            if child is None:
                child = {}
                parent[key] = child
            if not isinstance(child, dict):
                raise ConfigParseError(f"'{key}' must be an object.")
            parent = child
        _insert_at(parent, self.managed_path[-1], self.to_native(managed), rest.position)
        return _dump_json(document)


class JsonListAdapter(JsonMapAdapter):
    """JSON documents whose managed section is a list of named entries."""

    def to_native(self, managed: Mapping[str, ServerEntry]) -> object:
        """Return the managed section exactly as it will be stored."""
        return [{"name": name, **self.entry_to_native(entry)} for name, entry in managed.items()]

    def native_to_entries(self, native: object) -> dict[str, ServerEntry]:
        """Convert a decoded managed section into canonical entries."""
        entries: dict[str, ServerEntry] = {}
        if not isinstance(native, list):
            return entries
        for item in native:
            if not isinstance(item, Mapping):
                continue
            name = item.get("name")
            entry = ServerEntry.from_native(item)
            if isinstance(name, str) and name and entry is not None:
                entries.setdefault(name, entry)
        return entries

    def check_native(self, native: object) -> None:
        """Reject a managed section with the wrong container type."""
        if not isinstance(native, list):
            raise ConfigParseError(
                f"'{self.managed_key}' must be an array, found {type(native).__name__}."
            )


class TomlTableAdapter(ConfigAdapter):
    """TOML documents with a ``[mcp_servers.<name>]`` table per server.

    tomlkit keeps comments and formatting of the foreign content. The managed
    table is always written at the end of the document.
    """

    format_name = "toml"

    def __init__(self, managed_path: tuple[str, ...] = ("mcp_servers",)) -> None:
        if len(managed_path) != 1:
            raise ValueError("TOML adapters manage a single top-level table")
        super().__init__(managed_path)

    def decode(self, raw: bytes) -> DecodedConfig:
        """Split *raw* into the managed section and the rest of the document."""
        text = _decode_text(raw)
        try:
            document = tomlkit.parse(text)
        except TOMLKitError as exc:
            raise ConfigParseError(f"Invalid TOML: {exc}") from exc
        key = self.managed_path[0]
        if key not in document:
            return DecodedConfig(managed={}, rest=ForeignContent(document), native=None)
        native = document.unwrap().get(key)
        self.check_native(native)
        document.remove(key)
        return DecodedConfig(
            managed=self.native_to_entries(native),
            rest=ForeignContent(document),
            native=native,
        )

    def encode(self, rest: ForeignContent, managed: Mapping[str, ServerEntry]) -> bytes:
        """Serialise *rest* with *managed* appended as a table."""
        document = tomlkit.parse(tomlkit.dumps(rest.body))
        table = tomlkit.table(is_super_table=bool(managed))
        for name, entry in managed.items():
            section = tomlkit.table()
            section.add("command", entry.command)
            section.add("args", list(entry.args))
            if entry.env:
                env = tomlkit.inline_table()
                env.update(dict(entry.env))
                section.add("env", env)
            table.add(name, section)
        document.add(self.managed_path[0], table)
        text = tomlkit.dumps(document)
        if not text.endswith("\n"):
            text += "\n"
        return text.encode("utf-8")


_DEFAULT_ADAPTER = JsonMapAdapter()

ADAPTERS: dict[ClientKind, ConfigAdapter] = {
    ClientKind.VSCODE: JsonMapAdapter(("servers",), transport="stdio"),
    ClientKind.VSCODE_INSIDERS: JsonMapAdapter(("servers",), transport="stdio"),
    ClientKind.VISUAL_STUDIO: JsonMapAdapter(("servers",), transport="stdio"),
    ClientKind.ZED: JsonMapAdapter(("context_servers",)),
    ClientKind.AUGMENT: JsonListAdapter(("augment.advanced", "mcpServers")),
    ClientKind.OPENAI_CODEX: TomlTableAdapter(),
}


def adapter_for(kind: ClientKind) -> ConfigAdapter:
    """Return the adapter responsible for *kind*."""
    return ADAPTERS.get(kind, _DEFAULT_ADAPTER)


# JSON helpers -------------------------------------------------------------
def _decode_text(raw: bytes) -> str:
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ConfigParseError(f"Config is not valid UTF-8: {exc}") from exc


def _load_json(raw: bytes) -> dict[str, object]:
    text = _decode_text(raw)
    if not text.strip():
        return {}
    try:
        document = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConfigParseError(f"Invalid JSON: {exc}") from exc
    if not isinstance(document, dict):
        raise ConfigParseError(
            f"Config root must be a JSON object, found {type(document).__name__}."
        )
    return document


def _dump_json(document: Mapping[str, object]) -> bytes:
    return (json.dumps(document, indent=2, ensure_ascii=False) + "\n").encode("utf-8")


def _walk_parents(
    document: dict[str, object], path: tuple[str, ...]
) -> dict[str, object] | None:
    """Return the mapping that should hold the managed key, if it exists."""
    current: dict[str, object] = document
    for key in path[:-1]:
        child = current.get(key)
        if child is None:
            return None
        if not isinstance(child, dict):
            raise ConfigParseError(f"'{key}' must be an object, found {type(child).__name__}.")
        current = child
    return current


def _insert_at(
    parent: dict[str, object], key: str, value: object, position: int | None
) -> None:
    if position is None or position >= len(parent):
        parent[key] = value
        return
    items = list(parent.items())
    items.insert(position, (key, value))
    parent.clear()
    parent.update(items)


__all__ = [
    "ADAPTERS",
    "ConfigAdapter",
    "DecodedConfig",
    "ForeignContent",
    "JsonListAdapter",
    "JsonMapAdapter",
    "ServerEntry",
    "TomlTableAdapter",
    "adapter_for",
]
