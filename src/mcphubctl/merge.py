"""Render the desired managed section for an instance into its config bytes.

The merge is a pure function of its inputs: the instance's ordered enabled
ids, the server definitions, the bytes currently on disk (``None`` when the
file does not exist) and any secrets. Identical inputs always produce
identical output bytes.
"""
from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass

from .adapters import ConfigAdapter, ServerEntry, adapter_for
from .credentials import CredentialError, CredentialStore, server_env_key
from .errors import ConfigCorruptError, ConfigParseError
from .models import ClientInstance, ServerDefinition

_log = logging.getLogger("mcphubctl.merge")


@dataclass(frozen=True)
class MergeResult:
    """Output of :func:`render_instance`."""

    content: bytes
    managed: dict[str, ServerEntry]
    previous: dict[str, ServerEntry]
    diagnostics: tuple[str, ...] = ()
    skipped: tuple[str, ...] = ()
    changed: bool = True

    @property
    def added(self) -> list[str]:
        """Return managed keys that were not present before."""
        return [name for name in self.managed if name not in self.previous]

    @property
    def removed(self) -> list[str]:
        """Return previously managed keys that are no longer enabled."""
        return [name for name in self.previous if name not in self.managed]

    @property
    def updated(self) -> list[str]:
        """Return keys whose launch description changed."""
        return [
            name
            for name, entry in self.managed.items()
            if name in self.previous and self.previous[name] != entry
        ]


def sanitize_server_name(name: str) -> str:
    """Return the config key used for a server display name.

    Lowercases, replaces anything other than alphanumerics, ``-`` and ``_``
    with ``-`` and trims leading/trailing dashes.
    """
    lowered = name.lower()
    replaced = "".join(char if char.isalnum() or char in "-_" else "-" for char in lowered)
    return replaced.strip("-")


def render_instance(
    instance: ClientInstance,
    servers: Mapping[str, ServerDefinition],
    existing: bytes | None,
    *,
    adapter: ConfigAdapter | None = None,
    secrets: CredentialStore | None = None,
) -> MergeResult:
    """Merge the enabled servers of *instance* into *existing* config bytes.

    Raises :class:`ConfigCorruptError` when *existing* cannot be decoded;
    the caller must not overwrite the file in that case.
    """
    chosen = adapter or adapter_for(instance.client_kind)
    try:
        decoded = chosen.decode(existing or b"")
    except ConfigParseError as exc:
        raise ConfigCorruptError(
            f"Cannot parse {instance.config_path} as a {instance.client_kind.display_name} "
            f"config: {exc}",
            path=instance.resolved_path,
        ) from exc

    diagnostics: list[str] = []
    skipped: list[str] = []
    managed: dict[str, ServerEntry] = {}
    for server_id in instance.enabled_servers:
        server = servers.get(server_id)
        if server is None:
            skipped.append(server_id)
            diagnostics.append(f"Enabled server '{server_id}' no longer exists; skipped.")
            continue
        key = sanitize_server_name(server.name) or f"server-{server.id[:8]}"
        if key in managed:
            diagnostics.append(
                f"Server '{server.name}' maps to key '{key}' which is already in use; skipped."
            )
            continue
        managed[key] = ServerEntry(
            command=server.command,
            args=tuple(server.args),
            env=_resolve_env(server, secrets, diagnostics),
        )

    if (
        existing is not None
        and decoded.native is not None
        and _ordered(decoded.native) == _ordered(chosen.to_native(managed))
    ):
        content = existing
    else:
        content = chosen.encode(decoded.rest, managed)

    for message in diagnostics:
        _log.debug("%s: %s", instance.name, message)
    return MergeResult(
        content=content,
        managed=managed,
        previous=decoded.managed,
        diagnostics=tuple(diagnostics),
        skipped=tuple(skipped),
        changed=content != existing,
    )


def _resolve_env(
    server: ServerDefinition,
    secrets: CredentialStore | None,
    diagnostics: list[str],
) -> dict[str, str]:
    env = dict(server.env)
    for name in server.secret_env:
        if secrets is None:
            diagnostics.append(
                f"Secret {name} for '{server.name}' omitted: no credential store configured."
            )
            continue
        try:
            value = secrets.get(server_env_key(server.id, name))
        except CredentialError as exc:
            diagnostics.append(f"Secret {name} for '{server.name}' omitted: {exc}")
            continue
        if value is None:
            diagnostics.append(f"Secret {name} for '{server.name}' is not set; omitted.")
            continue
        env[name] = value
    return env


def _ordered(value: object) -> object:
    """Return a comparison key that is sensitive to mapping order."""
    if isinstance(value, Mapping):
        return [(str(key), _ordered(item)) for key, item in value.items()]
    if isinstance(value, (list, tuple)):
        return [_ordered(item) for item in value]
    return value


__all__ = ["MergeResult", "render_instance", "sanitize_server_name"]
