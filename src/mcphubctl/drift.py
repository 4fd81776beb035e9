"""Decide which instances are out of date with respect to the registry."""
from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime

from .errors import SyncError
from .merge import MergeResult
from .models import ClientInstance, format_timestamp


def needs_sync(instance: ClientInstance) -> bool:
    """Return ``True`` when the instance changed after its last successful sync."""
    if instance.last_synced is None:
        return True
    if instance.last_modified is None:
        return False
    return instance.last_modified > instance.last_synced


@dataclass(frozen=True)
class DriftStatus:
    """Status line for one instance."""

    instance_id: str
    name: str
    config_path: str
    needs_sync: bool
    last_synced: datetime | None
    last_modified: datetime | None
    file_drift: bool | None = None
    detail: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "instance_id": self.instance_id,
            "name": self.name,
            "config_path": self.config_path,
            "needs_sync": self.needs_sync,
            "last_synced": format_timestamp(self.last_synced),
            "last_modified": format_timestamp(self.last_modified),
            "file_drift": self.file_drift,
            "detail": self.detail,
        }


def drift_report(
    instances: Iterable[ClientInstance],
    *,
    previewer: Callable[[str], MergeResult] | None = None,
) -> list[DriftStatus]:
    """Summarise drift for *instances*.

    When *previewer* is given (normally ``Reconciler.preview``) each config
    file is also compared against what a sync would write; ``file_drift``
    is ``True`` when the on-disk bytes differ.
    """
    report: list[DriftStatus] = []
    for instance in instances:
        file_drift: bool | None = None
        detail: str | None = None
        if previewer is not None:
            try:
                merge = previewer(instance.id)
            except SyncError as exc:
                detail = f"{exc.kind}: {exc}"
            else:
                file_drift = merge.changed
                if merge.skipped:
                    detail = f"{len(merge.skipped)} dangling server reference(s)"
        report.append(
            DriftStatus(
                instance_id=instance.id,
                name=instance.name,
                config_path=instance.config_path,
                needs_sync=needs_sync(instance),
                last_synced=instance.last_synced,
                last_modified=instance.last_modified,
                file_drift=file_drift,
                detail=detail,
            )
        )
    return report


__all__ = ["DriftStatus", "drift_report", "needs_sync"]
