"""Helpers for managing config snapshots and the backup index."""
from __future__ import annotations

import json
import logging
import os
import secrets
import tempfile
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path

from .config import SyncSettings
from .fileio import atomic_write_bytes, sha256_hex
from .models import BackupRecord, ModelError, utc_now

_log = logging.getLogger("mcphubctl.backups")

_MAX_NAME_ATTEMPTS = 5


class BackupError(RuntimeError):
    """Raised when backup operations fail."""


class BackupRegistryError(BackupError):
    """Raised when backup index interactions fail."""


def _normalise_identifier(value: str, *, label: str) -> str:
    normalised = value.strip()
    if not normalised:
        raise BackupRegistryError(f"{label} must be a non-empty string.")
    return normalised


def _safe_component(value: str) -> str:
    return "".join(char if char.isalnum() or char in {"-", "_"} else "-" for char in value)


@dataclass(slots=True)
class BackupsRegistry:
    """Manage the JSON backup index under the backups directory."""

    root: Path
    index: Path
    _lock: threading.RLock = field(
        default_factory=threading.RLock, init=False, repr=False, compare=False
    )

    def __post_init__(self) -> None:
        """Normalise root/index paths after initialisation."""
        self.root = self.root.expanduser()
        self.index = self.index.expanduser()

    # Basic helpers -------------------------------------------------
    def ensure_root(self) -> None:
        """Ensure the backup root directory exists with safe permissions."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            os.chmod(self.root, 0o750)
        except OSError as exc:  # pragma: no cover - permissions env-specific
            raise BackupRegistryError(f"Failed to prepare backup root {self.root}: {exc}") from exc

    def read(self) -> dict[str, object]:
        """Return the parsed backups index (empty structure when missing)."""
        try:
            text = self.index.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {"backups": []}
        except OSError as exc:
            raise BackupRegistryError(f"Failed to read backup index {self.index}: {exc}") from exc
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise BackupRegistryError(f"Backup index corrupted ({self.index}): {exc}") from exc
        if not isinstance(data, Mapping):
            raise BackupRegistryError(f"Backup index must be a JSON object ({self.index}).")
        return dict(data)

    def write(self, payload: Mapping[str, object]) -> None:
        """Atomically persist *payload* to the backups index."""
        self.ensure_root()
        self.index.parent.mkdir(parents=True, exist_ok=True)
        tmp_fd, tmp_name = tempfile.mkstemp(
            dir=str(self.index.parent),
            prefix=f".{self.index.name}.",
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=False)
                handle.write("\n")
            os.replace(tmp_path, self.index)
            os.chmod(self.index, 0o640)
        except OSError as exc:
            raise BackupRegistryError(f"Failed to write backup index: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    def append(self, entry: Mapping[str, object]) -> None:
        """Append *entry* to the backups index."""
        with self._lock:
            updated: list[object] = list(self.list_entries())
            updated.append(dict(entry))
            self.write({"backups": updated})

    def list_entries(self) -> list[dict[str, object]]:
        """Return a list of backup entries."""
        data = self.read()
        backups = data.get("backups", [])
        entries: list[dict[str, object]] = []
        if isinstance(backups, list):
            for item in backups:
                if isinstance(item, Mapping):
                    entries.append(dict(item))
        return entries

    def find_by_id(self, backup_id: str) -> dict[str, object] | None:
        """Return the entry for *backup_id* if present."""
        normalized = _normalise_identifier(backup_id, label="Backup identifier")
        for entry in self.list_entries():
            if str(entry.get("id", "")).strip() == normalized:
                return entry
        return None

    def entries_for_instance(self, instance: str) -> list[dict[str, object]]:
        """Return entries associated with *instance*."""
        normalized = _normalise_identifier(instance, label="Instance identifier")
        return [
            entry
            for entry in self.list_entries()
            if str(entry.get("instance", "")).strip() == normalized
        ]

    def retain(self, keep: Callable[[dict[str, object]], bool]) -> list[dict[str, object]]:
        """Drop every entry for which *keep* is false; return the dropped entries."""
        with self._lock:
            kept: list[dict[str, object]] = []
            dropped: list[dict[str, object]] = []
            for entry in self.list_entries():
                (kept if keep(entry) else dropped).append(entry)
            if dropped:
                self.write({"backups": kept})
            return dropped

    # Utility helpers -----------------------------------------------
    def generate_identifier(self, instance: str) -> str:
        """Return a unique backup identifier for *instance*."""
        timestamp = datetime.now(tz=UTC).strftime("%Y%m%d-%H%M%S")
        token = secrets.token_hex(3)
        return f"{timestamp}-{_safe_component(instance)[:12]}-{token}"

    def archive_directory(self, instance: str) -> Path:
        """Return the directory that should contain snapshots for *instance*."""
        return self.root / _safe_component(instance)


@dataclass(frozen=True)
class PruneReport:
    """Outcome of a retention pass."""

    cutoff: datetime
    removed: tuple[BackupRecord, ...] = ()
    missing: tuple[BackupRecord, ...] = ()

    @property
    def count(self) -> int:
        """Return how many records were dropped from the index."""
        return len(self.removed) + len(self.missing)


class BackupManager:
    """Create, prune and restore pre-write snapshots of client configs."""

    def __init__(
        self,
        registry: BackupsRegistry,
        settings: SyncSettings | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.registry = registry
        self.settings = settings or SyncSettings()
        self._clock = clock or utc_now

    def backup(
        self,
        instance_id: str,
        path: Path,
        *,
        content: bytes | None = None,
    ) -> BackupRecord | None:
        """Snapshot *path* before it is overwritten.

        *content* is the exact bytes the caller read; when omitted the file
        is read here. Returns ``None`` when backups are disabled or there is
        nothing worth keeping (missing or empty file).
        """
        if not self.settings.create_backups:
            return None
        if content is None:
            try:
                content = path.read_bytes()
            except FileNotFoundError:
                return None
            except OSError as exc:
                raise BackupError(f"Failed to read {path} for backup: {exc}") from exc
        if not content:
            return None

        created_at = self._clock()
        directory = self.registry.archive_directory(instance_id)
        try:
            self.registry.ensure_root()
            directory.mkdir(parents=True, exist_ok=True)
            snapshot = _write_once(directory, path.name, created_at, content)
        except OSError as exc:
            raise BackupError(f"Failed to snapshot {path}: {exc}") from exc

        record = BackupRecord(
            id=self.registry.generate_identifier(instance_id),
            instance_id=instance_id,
            path=snapshot,
            created_at=created_at,
            source=path,
            size_bytes=len(content),
            checksum=sha256_hex(content),
        )
        try:
            self.registry.append(record.to_dict())
        except BackupRegistryError:
            snapshot.unlink(missing_ok=True)
            raise
        _log.debug("Backed up %s to %s", path, snapshot)
        return record

    def discard(self, record: BackupRecord) -> None:
        """Drop a snapshot whose file was never overwritten after all."""
        self.registry.retain(lambda entry: entry.get("id") != record.id)
        try:
            record.path.unlink(missing_ok=True)
        except OSError as exc:
            raise BackupError(f"Failed to delete backup {record.path}: {exc}") from exc

    def records(self, instance_id: str | None = None) -> list[BackupRecord]:
        """Return index entries as records, newest first."""
        entries = (
            self.registry.entries_for_instance(instance_id)
            if instance_id
            else self.registry.list_entries()
        )
        records: list[BackupRecord] = []
        for entry in entries:
            try:
                records.append(BackupRecord.from_mapping(entry))
            except ModelError as exc:
                _log.warning("Skipping malformed backup entry %r: %s", entry.get("id"), exc)
        records.sort(key=lambda item: item.created_at, reverse=True)
        return records

    def prune(self, retention_days: int, *, now: datetime | None = None) -> PruneReport:
        """Delete snapshots strictly older than *retention_days*."""
        if retention_days < 0:
            raise BackupError("retention_days must be non-negative.")
        cutoff = (now or self._clock()) - timedelta(days=retention_days)
        removed: list[BackupRecord] = []
        missing: list[BackupRecord] = []
        failures: list[str] = []

        def keep(entry: dict[str, object]) -> bool:
            try:
                record = BackupRecord.from_mapping(entry)
            except ModelError:
                return True
            if record.created_at >= cutoff:
                return True
            try:
                record.path.unlink()
            except FileNotFoundError:
                missing.append(record)
                return False
            except OSError as exc:
                failures.append(f"{record.path}: {exc}")
                return True
            removed.append(record)
            return False

        self.registry.retain(keep)
        if failures:
            raise BackupError("Failed to delete backups: " + "; ".join(failures))
        return PruneReport(cutoff=cutoff, removed=tuple(removed), missing=tuple(missing))

    def restore(self, backup_id: str, *, target: Path | None = None) -> Path:
        """Atomically copy a snapshot back over its source (or *target*)."""
        entry = self.registry.find_by_id(backup_id)
        if entry is None:
            raise BackupError(f"Backup '{backup_id}' not found in index.")
        try:
            record = BackupRecord.from_mapping(entry)
        except ModelError as exc:
            raise BackupError(f"Backup '{backup_id}' has an invalid index entry: {exc}") from exc
        destination = target or record.source
        if destination is None:
            raise BackupError(f"Backup '{backup_id}' does not record its source; pass a target.")
        try:
            content = record.path.read_bytes()
        except OSError as exc:
            raise BackupError(f"Failed to read backup {record.path}: {exc}") from exc
        if record.checksum and sha256_hex(content) != record.checksum:
            raise BackupError(f"Checksum mismatch for backup '{backup_id}'.")
        try:
            atomic_write_bytes(destination, content)
        except OSError as exc:
            raise BackupError(f"Failed to restore {destination}: {exc}") from exc
        return destination


def _write_once(directory: Path, name: str, created_at: datetime, content: bytes) -> Path:
    stamp = created_at.astimezone(UTC).strftime("%Y%m%dT%H%M%S.%fZ")
    for _ in range(_MAX_NAME_ATTEMPTS):
        candidate = directory / f"{name}.{stamp}-{secrets.token_hex(3)}.backup"
        try:
            handle = candidate.open("xb")
        except FileExistsError:
            continue
        try:
            with handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
        except OSError:
            candidate.unlink(missing_ok=True)
            raise
        os.chmod(candidate, 0o640)
        return candidate
    raise FileExistsError(f"Could not allocate a unique backup name in {directory}")

__all__ = [
    "BackupError",
    "BackupManager",
    "BackupRegistryError",
    "BackupsRegistry",
    "PruneReport",
]
