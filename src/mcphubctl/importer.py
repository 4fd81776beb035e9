"""Import server definitions from an existing client config file."""
from __future__ import annotations

from pathlib import Path

from .adapters import adapter_for
from .errors import ConfigCorruptError, ConfigIOError, ConfigParseError
from .models import ClientKind, ServerDefinition, ServerSource, SourceKind


def import_servers(path: Path, kind: ClientKind) -> list[ServerDefinition]:
    """Return a definition for every launchable entry in *path*'s managed section.

    A missing file yields an empty list. Entries without a ``command`` (for
    example URL-based transports) are ignored.
    """
    try:
        raw = path.read_bytes()
    except FileNotFoundError:
        return []
    except OSError as exc:
        raise ConfigIOError(f"Failed to read {path}: {exc}", path=path, cause=exc) from exc
    try:
        decoded = adapter_for(kind).decode(raw)
    except ConfigParseError as exc:
        raise ConfigCorruptError(f"Cannot parse {path}: {exc}", path=path) from exc

    source = ServerSource(kind=SourceKind.IMPORTED, url=str(path))
    return [
        ServerDefinition.create(
            name,
            entry.command,
            entry.args,
            env=entry.env,
            description=f"Imported from {kind.display_name}",
            source=source,
        )
        for name, entry in decoded.managed.items()
    ]


__all__ = ["import_servers"]
