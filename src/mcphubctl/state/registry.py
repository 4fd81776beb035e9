"""Helpers for interacting with the mcphubctl state registry.

The registry directory (``<data_dir>/registry`` by default) stores YAML
artifacts: ``servers.yml`` for tool-server definitions and ``instances.yml``
for client instances and their enablement mapping. Writes are atomic
(temp file + ``os.replace``) and read-modify-write cycles are serialised with
an in-process lock so parallel sync workers can record results safely.
"""
from __future__ import annotations

import os
import tempfile
import threading
from collections.abc import Callable, Iterable, Mapping
from copy import deepcopy
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import TypeVar

from ..models import ClientInstance, ModelError, ServerDefinition, utc_now

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to manage mcphubctl state. Install with `pip install mcphubctl`."
    ) from exc

_Entry = TypeVar("_Entry", ServerDefinition, ClientInstance)

SERVERS_FILE = "servers.yml"
INSTANCES_FILE = "instances.yml"


class StateRegistryError(RuntimeError):
    """Raised when state registry operations fail."""


@dataclass(frozen=True)
class StateRegistry:
    """High-level interface to the YAML registry."""

    root: Path
    _mutex: threading.RLock = field(
        default_factory=threading.RLock, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", self.root.expanduser())

    def ensure_root(self) -> None:
        """Create the registry directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------
    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named registry file."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a registry file, returning *default* when missing."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
            raise StateRegistryError(f"Failed to parse registry file {path}: {exc}") from exc
        return data if data is not None else deepcopy(default)

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to the given registry file."""
        self.ensure_root()
        path = self.path_for(name)

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(payload, handle, sort_keys=False)
            os.replace(tmp_path, path)
            os.chmod(path, 0o640)
        finally:
            tmp_path.unlink(missing_ok=True)

    # Server helpers -----------------------------------------------------
    def list_servers(self) -> list[ServerDefinition]:
        """Return every server definition in registry order."""
        return [
            _convert(ServerDefinition.from_mapping, entry, SERVERS_FILE)
            for entry in self._entries(SERVERS_FILE, "servers")
        ]

    def server_map(self) -> dict[str, ServerDefinition]:
        """Return servers keyed by identifier for merge-time lookups."""
        return {server.id: server for server in self.list_servers()}

    def get_server(self, key: str) -> ServerDefinition | None:
        """Return the server whose id (or, failing that, name) equals *key*."""
        return _lookup(self.list_servers(), key)

    def add_server(self, server: ServerDefinition) -> ServerDefinition:
        """Register a new server definition."""
        with self._mutex:
            servers = self.list_servers()
            if any(existing.id == server.id for existing in servers):
                raise StateRegistryError(f"Server '{server.id}' already registered.")
            servers.append(server)
            self._write_servers(servers)
        return server

    def update_server(self, server: ServerDefinition) -> ServerDefinition:
        """Replace the stored definition that shares *server*'s identifier."""
        with self._mutex:
            servers = self.list_servers()
            for index, existing in enumerate(servers):
                if existing.id == server.id:
                    servers[index] = server
                    break
            else:
                raise StateRegistryError(f"Server '{server.id}' not found in registry")
            self._write_servers(servers)
        return server

    def remove_server(self, key: str) -> ServerDefinition:
        """Remove a server definition.

        Instances that still enable the server keep the dangling identifier;
        the merge engine skips it when rendering.
        """
        with self._mutex:
            servers = self.list_servers()
            target = _lookup(servers, key)
            if target is None:
                raise StateRegistryError(f"Server '{key}' not found in registry")
            self._write_servers([server for server in servers if server.id != target.id])
        return target

    # Instance helpers -------------------------------------------------
    def list_instances(self) -> list[ClientInstance]:
        """Return every client instance in registry order."""
        return [
            _convert(ClientInstance.from_mapping, entry, INSTANCES_FILE)
            for entry in self._entries(INSTANCES_FILE, "instances")
        ]

    def get_instance(self, key: str) -> ClientInstance | None:
        """Return the instance whose id (or, failing that, name) equals *key*."""
        return _lookup(self.list_instances(), key)

    def add_instance(self, instance: ClientInstance) -> ClientInstance:
        """Register a new client instance."""
        with self._mutex:
            instances = self.list_instances()
            if any(existing.id == instance.id for existing in instances):
                raise StateRegistryError(f"Instance '{instance.id}' already registered.")
            if any(existing.name == instance.name for existing in instances):
                raise StateRegistryError(f"Instance name '{instance.name}' already in use.")
            instances.append(instance)
            self._write_instances(instances)
        return instance

    def update_instance(self, key: str, **changes: object) -> ClientInstance:
        """Apply field *changes* to an instance and stamp ``last_modified``."""
        if "last_synced" in changes or "last_modified" in changes:
            raise StateRegistryError("Sync timestamps are managed by the registry.")
        with self._mutex:
            return self._mutate_instance(key, lambda entry: _modified(entry, **changes))

    def set_server_enabled(self, key: str, server_id: str, enabled: bool) -> ClientInstance:
        """Enable or disable *server_id* for an instance, preserving order."""

        def mutate(entry: ClientInstance) -> ClientInstance:
            current = list(entry.enabled_servers)
            if enabled and server_id not in current:
                current.append(server_id)
            elif not enabled and server_id in current:
                current.remove(server_id)
            else:
                return entry
            return _modified(entry, enabled_servers=tuple(current))

        with self._mutex:
            return self._mutate_instance(key, mutate)

    def record_sync(self, key: str, synced_at: datetime) -> ClientInstance:
        """Persist a successful sync time without touching ``last_modified``."""
        with self._mutex:
            return self._mutate_instance(key, lambda entry: replace(entry, last_synced=synced_at))

    def remove_instance(self, key: str) -> ClientInstance:
        """Remove the instance matching *key* from the registry."""
        with self._mutex:
            instances = self.list_instances()
            target = _lookup(instances, key)
            if target is None:
                raise StateRegistryError(f"Instance '{key}' not found in registry")
            self._write_instances([entry for entry in instances if entry.id != target.id])
        return target

    # Internals --------------------------------------------------------
    def _entries(self, name: str, key: str) -> list[Mapping[str, object]]:
        raw = self.read(name, default={key: []})
        if not isinstance(raw, Mapping):
            raise StateRegistryError(f"Registry file {self.path_for(name)} must be a mapping.")
        entries = raw.get(key, [])
        if entries is None:
            return []
        if not isinstance(entries, list):
            raise StateRegistryError(f"Registry key '{key}' in {name} must be a list.")
        return [entry for entry in entries if isinstance(entry, Mapping)]

    def _write_servers(self, servers: Iterable[ServerDefinition]) -> None:
        self.write(SERVERS_FILE, {"servers": [server.to_dict() for server in servers]})

    def _write_instances(self, instances: Iterable[ClientInstance]) -> None:
        self.write(INSTANCES_FILE, {"instances": [entry.to_dict() for entry in instances]})

    def _mutate_instance(
        self,
        key: str,
        mutator: Callable[[ClientInstance], ClientInstance],
    ) -> ClientInstance:
        instances = self.list_instances()
        target = _lookup(instances, key)
        if target is None:
            raise StateRegistryError(f"Instance '{key}' not found in registry")
        updated = mutator(target)
        if updated is target:
            return target
        self._write_instances([updated if entry.id == target.id else entry for entry in instances])
        return updated


def _modified(entry: ClientInstance, **changes: object) -> ClientInstance:
    if all(getattr(entry, name) == value for name, value in changes.items()):
        return entry
    return replace(entry, last_modified=utc_now(), **changes)  # type: ignore[arg-type]


def _lookup(entries: Iterable[_Entry], key: str) -> _Entry | None:
    normalized = key.strip()
    if not normalized:
        raise StateRegistryError("Identifier must be a non-empty string.")
    for entry in entries:
        if entry.id == normalized:
            return entry
    for entry in entries:
        if entry.name == normalized:
            return entry
    return None


def _convert(
    factory: Callable[[Mapping[str, object]], _Entry],
    entry: Mapping[str, object],
    source: str,
) -> _Entry:
    try:
        return factory(entry)
    except ModelError as exc:
        raise StateRegistryError(f"Invalid entry in {source}: {exc}") from exc


__all__ = ["StateRegistry", "StateRegistryError"]
