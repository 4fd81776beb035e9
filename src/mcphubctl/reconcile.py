"""Reconcile client config files with the registry's desired state.

``sync_one`` is the single-instance pipeline: resolve the path, lock it,
read the current bytes, merge, back up the pre-existing bytes when the
content changes, replace the file atomically and finally record
``last_synced``. ``sync_all`` runs that pipeline for every instance with a
bounded worker pool; instances that share a config path are handled by the
same worker so their writes never interleave.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from .backups import BackupError, BackupManager, PruneReport
from .config import SyncSettings
from .credentials import CredentialStore
from .errors import (
    BackupFailedError,
    ConfigConflictError,
    ConfigIOError,
    ConfigLockedError,
    InstanceNotFoundError,
    PathUnresolvedError,
    SyncError,
)
from .fileio import Fingerprint, atomic_write_bytes, current_fingerprint
from .locking import LockError, LockManager, LockTimeoutError
from .merge import MergeResult, render_instance
from .models import BackupRecord, ClientInstance, ServerDefinition, utc_now
from .state import StateRegistry, StateRegistryError

_log = logging.getLogger("mcphubctl.reconcile")


@dataclass(frozen=True)
class SyncResult:
    """What a successful single-instance sync did."""

    instance_id: str
    instance_name: str
    path: Path
    changed: bool
    synced_at: datetime
    merge: MergeResult
    backup: BackupRecord | None = None
    warnings: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable summary."""
        return {
            "instance_id": self.instance_id,
            "instance": self.instance_name,
            "path": str(self.path),
            "changed": self.changed,
            "synced_at": self.synced_at.isoformat().replace("+00:00", "Z"),
            "servers": list(self.merge.managed),
            "added": self.merge.added,
            "removed": self.merge.removed,
            "updated": self.merge.updated,
            "skipped": list(self.merge.skipped),
            "backup": self.backup.id if self.backup else None,
            "warnings": list(self.merge.diagnostics) + list(self.warnings),
        }


@dataclass(frozen=True)
class SyncOutcome:
    """Per-instance entry of a ``sync_all`` batch."""

    instance_id: str
    instance_name: str
    ok: bool
    result: SyncResult | None = None
    error_kind: str | None = None
    message: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable summary."""
        payload: dict[str, object] = {
            "instance_id": self.instance_id,
            "instance": self.instance_name,
            "ok": self.ok,
        }
        if self.result is not None:
            payload["result"] = self.result.to_dict()
        if not self.ok:
            payload["error"] = {"kind": self.error_kind, "message": self.message}
        return payload


class Reconciler:
    """Apply the desired enablement mapping to client config files."""

    def __init__(
        self,
        registry: StateRegistry,
        backups: BackupManager,
        locks: LockManager,
        settings: SyncSettings | None = None,
        *,
        credentials: CredentialStore | None = None,
        clock: Callable[[], datetime] | None = None,
        workers: int = 1,
        auto_prune: bool = False,
        lock_timeout: float | None = None,
    ) -> None:
        self.registry = registry
        self.backups = backups
        self.locks = locks
        self.settings = settings or SyncSettings()
        self.credentials = credentials
        self.workers = max(1, workers)
        self.auto_prune = auto_prune
        self.lock_timeout = lock_timeout
        self.last_prune: PruneReport | None = None
        self._clock = clock or utc_now

    # Public API -----------------------------------------------------
    def sync_one(self, instance_id: str) -> SyncResult:
        """Reconcile a single instance.

        Raises a :class:`SyncError` subclass on per-instance failure and
        :class:`InstanceNotFoundError` when *instance_id* is unknown.
        """
        instance = self._load(instance_id)
        return self._sync(instance, self.registry.server_map())

    def sync_all(self, *, workers: int | None = None) -> list[SyncOutcome]:
        """Reconcile every instance; failures are reported, never raised."""
        instances = self.registry.list_instances()
        servers = self.registry.server_map()

        groups: dict[str, list[tuple[int, ClientInstance]]] = {}
        for index, instance in enumerate(instances):
            try:
                key = str(self._resolve(instance))
            except PathUnresolvedError:
                key = f"unresolved:{instance.id}"
            groups.setdefault(key, []).append((index, instance))

        def run_group(
            members: list[tuple[int, ClientInstance]],
        ) -> list[tuple[int, SyncOutcome]]:
            return [(index, self._outcome(instance, servers)) for index, instance in members]

        outcomes: dict[int, SyncOutcome] = {}
        pool_size = max(1, min(workers or self.workers, len(groups) or 1))
        with ThreadPoolExecutor(max_workers=pool_size, thread_name_prefix="mcphub-sync") as pool:
            futures = [pool.submit(run_group, members) for members in groups.values()]
            for future in futures:
                outcomes.update(future.result())

        if self.auto_prune:
            self._prune_after_batch()
        return [outcomes[index] for index in range(len(instances))]

    def preview(self, instance_id: str) -> MergeResult:
        """Return the merge that ``sync_one`` would write, without side effects."""
        instance = self._load(instance_id)
        path = self._resolve(instance)
        content, _ = self._read(path)
        return render_instance(
            instance, self.registry.server_map(), content, secrets=self.credentials
        )

    # Internals ------------------------------------------------------
    def _load(self, instance_id: str) -> ClientInstance:
        instance = self.registry.get_instance(instance_id)
        if instance is None:
            raise InstanceNotFoundError(f"Instance '{instance_id}' not found in registry")
        return instance

    def _resolve(self, instance: ClientInstance) -> Path:
        path = instance.resolved_path
        if path is None:
            raise PathUnresolvedError(
                f"Instance '{instance.name}' has no configuration path."
            )
        if not path.is_absolute():
            raise PathUnresolvedError(
                f"Instance '{instance.name}' has a relative configuration path: {path}",
                path=path,
            )
        # Symlinked configs are written through to their target.
        try:
            return path.resolve()
        except (OSError, RuntimeError) as exc:
            raise PathUnresolvedError(
                f"Cannot resolve {path} for instance '{instance.name}': {exc}", path=path
            ) from exc

    def _outcome(
        self,
        instance: ClientInstance,
        servers: Mapping[str, ServerDefinition],
    ) -> SyncOutcome:
        try:
            result = self._sync(instance, servers)
        except SyncError as exc:
            _log.warning("Sync of %s failed (%s): %s", instance.name, exc.kind, exc)
            return SyncOutcome(
                instance_id=instance.id,
                instance_name=instance.name,
                ok=False,
                error_kind=exc.kind,
                message=str(exc),
            )
        return SyncOutcome(
            instance_id=instance.id, instance_name=instance.name, ok=True, result=result
        )

    def _sync(
        self,
        instance: ClientInstance,
        servers: Mapping[str, ServerDefinition],
    ) -> SyncResult:
        path = self._resolve(instance)
        try:
            with self.locks.path_lock(path, timeout=self.lock_timeout):
                return self._sync_locked(instance, path, servers)
        except LockTimeoutError as exc:
            raise ConfigLockedError(str(exc), path=path) from exc
        except LockError as exc:
            raise ConfigIOError(f"Cannot lock {path}: {exc}", path=path) from exc

    def _sync_locked(
        self,
        instance: ClientInstance,
        path: Path,
        servers: Mapping[str, ServerDefinition],
    ) -> SyncResult:
        content, fingerprint = self._read(path)
        merge = render_instance(instance, servers, content, secrets=self.credentials)

        warnings: list[str] = []
        backup: BackupRecord | None = None
        if merge.changed:
            self._check_unchanged(path, fingerprint)
            if content and self.settings.create_backups:
                try:
                    backup = self.backups.backup(instance.id, path, content=content)
                except BackupError as exc:
                    if self.settings.backup_on_failure != "continue":
                        raise BackupFailedError(
                            f"Backup of {path} failed, config left untouched: {exc}", path=path
                        ) from exc
                    warnings.append(f"Backup of {path} failed, continuing without one: {exc}")
                    _log.warning("%s", warnings[-1])
            try:
                self._check_unchanged(path, fingerprint)
                try:
                    atomic_write_bytes(path, merge.content)
                except OSError as exc:
                    raise ConfigIOError(
                        f"Failed to write {path}: {exc}", path=path, cause=exc
                    ) from exc
            except SyncError:
                if backup is not None:
                    self._discard_backup(backup)
                raise

        synced_at = self._clock()
        try:
            self.registry.record_sync(instance.id, synced_at)
        except (OSError, StateRegistryError) as exc:
            raise ConfigIOError(
                f"Synced {path} but could not record the sync time: {exc}", path=path
            ) from exc
        _log.debug("Synced %s -> %s (changed=%s)", instance.name, path, merge.changed)
        return SyncResult(
            instance_id=instance.id,
            instance_name=instance.name,
            path=path,
            changed=merge.changed,
            synced_at=synced_at,
            merge=merge,
            backup=backup,
            warnings=tuple(warnings),
        )

    def _read(self, path: Path) -> tuple[bytes | None, Fingerprint | None]:
        try:
            content = path.read_bytes()
        except FileNotFoundError:
            return None, None
        except OSError as exc:
            raise ConfigIOError(f"Failed to read {path}: {exc}", path=path, cause=exc) from exc
        try:
            return content, Fingerprint.of(path, content)
        except OSError as exc:
            raise ConfigIOError(f"Failed to stat {path}: {exc}", path=path, cause=exc) from exc

    def _check_unchanged(self, path: Path, expected: Fingerprint | None) -> None:
        if self.settings.on_conflict == "overwrite":
            return
        try:
            actual = current_fingerprint(path)
        except OSError as exc:
            raise ConfigIOError(f"Failed to re-read {path}: {exc}", path=path, cause=exc) from exc
        if actual != expected:
            raise ConfigConflictError(
                f"{path} changed on disk while it was being synced; rerun to merge the new content.",
                path=path,
            )

    def _discard_backup(self, backup: BackupRecord) -> None:
        try:
            self.backups.discard(backup)
        except BackupError as exc:
            _log.warning("Could not discard unused backup %s: %s", backup.id, exc)

    def _prune_after_batch(self) -> None:
        try:
            self.last_prune = self.backups.prune(self.settings.backup_retention_days)
        except BackupError as exc:
            _log.warning("Backup retention pass failed: %s", exc)


__all__ = ["Reconciler", "SyncOutcome", "SyncResult"]
