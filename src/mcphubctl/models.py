"""Domain records shared by the registry, the merge engine and the CLI.

Records are immutable dataclasses. The registry stores them as plain
mappings (``to_dict``/``from_mapping``) so the YAML files stay readable and
hand-editable.
"""
from __future__ import annotations

import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path


class ModelError(ValueError):
    """Raised when a stored record cannot be converted into a model."""


class ClientKind(str, Enum):
    """Supported MCP client applications."""

    CLAUDE_DESKTOP = "claude-desktop"
    CLAUDE_CODE = "claude-code"
    CURSOR = "cursor"
    WINDSURF = "windsurf"
    VSCODE = "vscode"
    VSCODE_INSIDERS = "vscode-insiders"
    ZED = "zed"
    CONTINUE = "continue"
    CODY = "cody"
    CLINE = "cline"
    ROO_CODE = "roo-code"
    KILO_CODE = "kilo-code"
    AMP = "amp"
    AUGMENT = "augment"
    ANTIGRAVITY = "antigravity"
    JETBRAINS = "jetbrains"
    GEMINI_CLI = "gemini-cli"
    QWEN_CODER = "qwen-coder"
    OPENCODE = "opencode"
    OPENAI_CODEX = "openai-codex"
    KIRO = "kiro"
    TRAE = "trae"
    LM_STUDIO = "lm-studio"
    VISUAL_STUDIO = "visual-studio"
    CRUSH = "crush"
    BOLTAI = "boltai"
    ROVO_DEV = "rovo-dev"
    ZENCODER = "zencoder"
    QODO_GEN = "qodo-gen"
    PERPLEXITY = "perplexity"
    FACTORY = "factory"
    EMDASH = "emdash"
    AMAZON_Q = "amazon-q"
    WARP = "warp"
    COPILOT_AGENT = "copilot-agent"
    COPILOT_CLI = "copilot-cli"
    SMITHERY = "smithery"
    CUSTOM = "custom"

    @property
    def display_name(self) -> str:
        """Return the human-friendly product name."""
        return _DISPLAY_NAMES.get(self, self.value)

    @classmethod
    def parse(cls, value: object) -> ClientKind:
        """Return the kind for *value*, raising :class:`ModelError` when unknown."""
        if isinstance(value, ClientKind):
            return value
        text = str(value or "").strip().lower()
        try:
            return cls(text)
        except ValueError as exc:
            raise ModelError(f"Unknown client kind '{value}'.") from exc


_DISPLAY_NAMES: dict[ClientKind, str] = {
    ClientKind.CLAUDE_DESKTOP: "Claude Desktop",
    ClientKind.CLAUDE_CODE: "Claude Code",
    ClientKind.CURSOR: "Cursor",
    ClientKind.WINDSURF: "Windsurf",
    ClientKind.VSCODE: "VS Code",
    ClientKind.VSCODE_INSIDERS: "VS Code Insiders",
    ClientKind.ZED: "Zed",
    ClientKind.CONTINUE: "Continue",
    ClientKind.CODY: "Sourcegraph Cody",
    ClientKind.CLINE: "Cline",
    ClientKind.ROO_CODE: "Roo Code",
    ClientKind.KILO_CODE: "Kilo Code",
    ClientKind.AMP: "Amp",
    ClientKind.AUGMENT: "Augment Code",
    ClientKind.ANTIGRAVITY: "Google Antigravity",
    ClientKind.JETBRAINS: "JetBrains AI",
    ClientKind.GEMINI_CLI: "Gemini CLI",
    ClientKind.QWEN_CODER: "Qwen Coder",
    ClientKind.OPENCODE: "Opencode",
    ClientKind.OPENAI_CODEX: "OpenAI Codex",
    ClientKind.KIRO: "Kiro",
    ClientKind.TRAE: "Trae",
    ClientKind.LM_STUDIO: "LM Studio",
    ClientKind.VISUAL_STUDIO: "Visual Studio 2022",
    ClientKind.CRUSH: "Crush",
    ClientKind.BOLTAI: "BoltAI",
    ClientKind.ROVO_DEV: "Rovo Dev CLI",
    ClientKind.ZENCODER: "Zencoder",
    ClientKind.QODO_GEN: "Qodo Gen",
    ClientKind.PERPLEXITY: "Perplexity Desktop",
    ClientKind.FACTORY: "Factory",
    ClientKind.EMDASH: "Emdash",
    ClientKind.AMAZON_Q: "Amazon Q Developer",
    ClientKind.WARP: "Warp",
    ClientKind.COPILOT_AGENT: "Copilot Coding Agent",
    ClientKind.COPILOT_CLI: "Copilot CLI",
    ClientKind.SMITHERY: "Smithery",
    ClientKind.CUSTOM: "Custom",
}


class SourceKind(str, Enum):
    """Where a server definition came from."""

    MANUAL = "manual"
    IMPORTED = "imported"
    REGISTRY = "registry"


def utc_now() -> datetime:
    """Return the current UTC time."""
    return datetime.now(tz=UTC)


def format_timestamp(value: datetime | None) -> str | None:
    """Render *value* as ISO-8601 with a ``Z`` suffix."""
    if value is None:
        return None
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: object) -> datetime | None:
    """Parse registry timestamps, treating blanks as ``None``."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError as exc:
            raise ModelError(f"Invalid timestamp {value!r}.") from exc
    else:
        raise ModelError(f"Invalid timestamp {value!r}.")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def new_identifier() -> str:
    """Return a fresh random identifier."""
    return str(uuid.uuid4())


@dataclass(frozen=True)
class ServerSource:
    """Provenance of a server definition."""

    kind: SourceKind = SourceKind.MANUAL
    url: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload: dict[str, object] = {"kind": self.kind.value}
        if self.url:
            payload["url"] = self.url
        return payload

    @classmethod
    def from_mapping(cls, raw: object) -> ServerSource:
        """Build a source from its stored form."""
        if not isinstance(raw, Mapping):
            return cls()
        try:
            kind = SourceKind(str(raw.get("kind", "manual")))
        except ValueError as exc:
            raise ModelError(f"Unknown server source {raw.get('kind')!r}.") from exc
        url = raw.get("url")
        return cls(kind=kind, url=str(url) if url else None)


@dataclass(frozen=True)
class ServerDefinition:
    """A tool server in the central registry."""

    id: str
    name: str
    command: str
    args: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=dict)
    secret_env: tuple[str, ...] = ()
    description: str | None = None
    tags: tuple[str, ...] = ()
    source: ServerSource = ServerSource()
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @classmethod
    def create(
        cls,
        name: str,
        command: str,
        args: Iterable[str] = (),
        *,
        env: Mapping[str, str] | None = None,
        secret_env: Iterable[str] = (),
        description: str | None = None,
        tags: Iterable[str] = (),
        source: ServerSource | None = None,
    ) -> ServerDefinition:
        """Return a new definition with a generated identifier."""
        now = utc_now()
        return cls(
            id=new_identifier(),
            name=name,
            command=command,
            args=tuple(args),
            env=dict(env or {}),
            secret_env=tuple(secret_env),
            description=description,
            tags=tuple(dict.fromkeys(tags)),
            source=source or ServerSource(),
            created_at=now,
            updated_at=now,
        )

    def touched(self, **changes: object) -> ServerDefinition:
        """Return a copy with *changes* applied and ``updated_at`` refreshed."""
        return replace(self, updated_at=utc_now(), **changes)  # type: ignore[arg-type]

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload: dict[str, object] = {
            "id": self.id,
            "name": self.name,
            "command": self.command,
            "args": list(self.args),
            "env": dict(self.env),
        }
        if self.secret_env:
            payload["secret_env"] = list(self.secret_env)
        if self.description:
            payload["description"] = self.description
        payload["tags"] = list(self.tags)
        payload["source"] = self.source.to_dict()
        payload["created_at"] = format_timestamp(self.created_at)
        payload["updated_at"] = format_timestamp(self.updated_at)
        return payload

    @classmethod
    def from_mapping(cls, raw: Mapping[str, object]) -> ServerDefinition:
        """Build a definition from its stored form."""
        identifier = str(raw.get("id", "")).strip()
        name = str(raw.get("name", "")).strip()
        command = str(raw.get("command", "")).strip()
        if not identifier or not name or not command:
            raise ModelError("Server entries require 'id', 'name' and 'command'.")
        env_raw = raw.get("env") or {}
        if not isinstance(env_raw, Mapping):
            raise ModelError(f"Server '{name}' env must be a mapping.")
        description = raw.get("description")
        return cls(
            id=identifier,
            name=name,
            command=command,
            args=_string_tuple(raw.get("args"), f"server '{name}' args"),
            env={str(key): str(value) for key, value in env_raw.items()},
            secret_env=_string_tuple(raw.get("secret_env"), f"server '{name}' secret_env"),
            description=str(description) if description else None,
            tags=_string_tuple(raw.get("tags"), f"server '{name}' tags"),
            source=ServerSource.from_mapping(raw.get("source")),
            created_at=parse_timestamp(raw.get("created_at")) or utc_now(),
            updated_at=parse_timestamp(raw.get("updated_at")) or utc_now(),
        )


@dataclass(frozen=True)
class ClientInstance:
    """A configuration target for one client application."""

    id: str
    name: str
    client_kind: ClientKind
    config_path: str
    enabled_servers: tuple[str, ...] = ()
    is_default: bool = False
    last_synced: datetime | None = None
    last_modified: datetime | None = None
    created_at: datetime = field(default_factory=utc_now)

    @classmethod
    def create(
        cls,
        name: str,
        client_kind: ClientKind,
        config_path: str | Path,
        *,
        enabled_servers: Iterable[str] = (),
        is_default: bool = False,
    ) -> ClientInstance:
        """Return a new instance with a generated identifier."""
        return cls(
            id=new_identifier(),
            name=name,
            client_kind=client_kind,
            config_path=str(config_path),
            enabled_servers=tuple(dict.fromkeys(enabled_servers)),
            is_default=is_default,
        )

    @property
    def resolved_path(self) -> Path | None:
        """Return the config path as an expanded :class:`Path`, if usable."""
        text = self.config_path.strip()
        if not text:
            return None
        return Path(text).expanduser()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "id": self.id,
            "name": self.name,
            "client_kind": self.client_kind.value,
            "config_path": self.config_path,
            "enabled_servers": list(self.enabled_servers),
            "is_default": self.is_default,
            "last_synced": format_timestamp(self.last_synced),
            "last_modified": format_timestamp(self.last_modified),
            "created_at": format_timestamp(self.created_at),
        }

    @classmethod
    def from_mapping(cls, raw: Mapping[str, object]) -> ClientInstance:
        """Build an instance from its stored form."""
        identifier = str(raw.get("id", "")).strip()
        name = str(raw.get("name", "")).strip()
        if not identifier or not name:
            raise ModelError("Instance entries require 'id' and 'name'.")
        path_value = raw.get("config_path")
        return cls(
            id=identifier,
            name=name,
            client_kind=ClientKind.parse(raw.get("client_kind", ClientKind.CUSTOM.value)),
            config_path=str(path_value) if path_value else "",
            enabled_servers=tuple(
                dict.fromkeys(
                    _string_tuple(raw.get("enabled_servers"), f"instance '{name}' servers")
                )
            ),
            is_default=bool(raw.get("is_default", False)),
            last_synced=parse_timestamp(raw.get("last_synced")),
            last_modified=parse_timestamp(raw.get("last_modified")),
            created_at=parse_timestamp(raw.get("created_at")) or utc_now(),
        )


@dataclass(frozen=True)
class BackupRecord:
    """Index entry describing one config snapshot."""

    id: str
    instance_id: str
    path: Path
    created_at: datetime
    source: Path | None = None
    size_bytes: int = 0
    checksum: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        payload: dict[str, object] = {
            "id": self.id,
            "instance": self.instance_id,
            "path": str(self.path),
            "created_at": format_timestamp(self.created_at),
            "size_bytes": self.size_bytes,
        }
        if self.source is not None:
            payload["source"] = str(self.source)
        if self.checksum:
            payload["checksum"] = {"algorithm": "sha256", "value": self.checksum}
        return payload

    @classmethod
    def from_mapping(cls, raw: Mapping[str, object]) -> BackupRecord:
        """Build a record from its index entry."""
        identifier = str(raw.get("id", "")).strip()
        path_value = raw.get("path")
        created_at = parse_timestamp(raw.get("created_at"))
        if not identifier or not path_value or created_at is None:
            raise ModelError("Backup entries require 'id', 'path' and 'created_at'.")
        checksum_raw = raw.get("checksum")
        checksum = None
        if isinstance(checksum_raw, Mapping):
            value = checksum_raw.get("value")
            checksum = str(value) if value else None
        source_value = raw.get("source")
        size_value = raw.get("size_bytes", 0)
        return cls(
            id=identifier,
            instance_id=str(raw.get("instance", "")),
            path=Path(str(path_value)),
            created_at=created_at,
            source=Path(str(source_value)) if source_value else None,
            size_bytes=int(size_value) if isinstance(size_value, (int, str)) else 0,
            checksum=checksum,
        )


@dataclass(frozen=True)
class DetectedClient:
    """Result of probing one client kind's conventional config path."""

    client_kind: ClientKind
    config_path: Path
    has_config: bool
    installed: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "client_kind": self.client_kind.value,
            "display_name": self.client_kind.display_name,
            "config_path": str(self.config_path),
            "has_config": self.has_config,
            "installed": self.installed,
        }


def _string_tuple(value: object, label: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, (str, bytes)) or not isinstance(value, Iterable):
        raise ModelError(f"Expected {label} to be a list of strings.")
    return tuple(str(item) for item in value)


__all__ = [
    "BackupRecord",
    "ClientInstance",
    "ClientKind",
    "DetectedClient",
    "ModelError",
    "ServerDefinition",
    "ServerSource",
    "SourceKind",
    "format_timestamp",
    "new_identifier",
    "parse_timestamp",
    "utc_now",
]
