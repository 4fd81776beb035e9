"""Structured operation logging.

Every CLI command runs inside :meth:`StructuredLogger.operation`. The scope
collects steps and a final result, then appends a single JSON line to
``operations.jsonl`` under the configured logs directory. Logging must never
break a command: when the directory or file is unwritable the logger disables
itself and subsequent operations become no-ops.
"""
from __future__ import annotations

import getpass
import json
import logging
import os
import secrets
import time
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

_log = logging.getLogger("mcphubctl")

OPERATIONS_LOG_NAME = "operations.jsonl"


def _sanitize(value: object) -> object:
    """Return a JSON-safe rendition of *value*."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


def _current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):  # pragma: no cover - depends on host passwd setup
        return "unknown"


class OperationScope:
    """Mutable record for a single logged operation."""

    def __init__(
        self,
        logger: StructuredLogger,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        self._logger = logger
        self.command = command
        self.op_id = f"{datetime.now(tz=UTC):%Y%m%dT%H%M%SZ}-{secrets.token_hex(3)}"
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self.lock_wait_ms: int | None = None
        self._started = time.monotonic()

    # Recording helpers ---------------------------------------------
    def add_step(self, name: str, *, status: str = "success", detail: str | None = None) -> None:
        """Record an intermediate step."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail:
            step["detail"] = detail
        self.steps.append(step)

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the operation waited for locks."""
        self.lock_wait_ms = int(wait_ms)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Iterable[str] | None = None,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            warnings=warnings,
            backups=backups,
            context=context,
            rc=0,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int = 0,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=warnings,
            errors=errors,
            backups=backups,
            context=context,
            rc=0,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            errors=list(errors) if errors else [message],
            context=context,
            rc=rc,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int = 0,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        backups: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
        rc: int = 0,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": list(warnings or []),
            "errors": list(errors or []),
            "backups": list(backups or []),
            "context": _sanitize(dict(context or {})),
            "rc": rc,
        }

    # Serialisation --------------------------------------------------
    def to_record(self) -> dict[str, object]:
        """Return the JSON-serialisable log record."""
        duration_ms = int((time.monotonic() - self._started) * 1000)
        record: dict[str, object] = {
            "timestamp": datetime.now(tz=UTC).isoformat().replace("+00:00", "Z"),
            "op_id": self.op_id,
            "command": self.command,
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "actor": {"user": _current_user(), "pid": os.getpid()},
            "steps": self.steps,
            "duration_ms": duration_ms,
            "result": self.result,
        }
        if self.lock_wait_ms is not None:
            record["lock_wait_ms"] = self.lock_wait_ms
        return record


class StructuredLogger:
    """Append operation records to ``operations.jsonl``."""

    def __init__(self, log_dir: Path) -> None:
        self._log_dir = Path(log_dir).expanduser()
        self._operations_log_path = self._log_dir / OPERATIONS_LOG_NAME
        self._enabled = True
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            _log.warning("Operation logging disabled, cannot create %s: %s", self._log_dir, exc)
            self._enabled = False

    @property
    def path(self) -> Path:
        """Return the operations log path."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it when the block exits."""
        scope = OperationScope(self, command, args=args, target=target)
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(f"{type(exc).__name__}: {exc}", rc=1)
            raise
        finally:
            if scope.result is None:
                scope.success("Operation completed.")
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False))
                handle.write("\n")
        except OSError as exc:
            _log.warning(
                "Operation logging disabled after write failure (%s): %s",
                self._operations_log_path,
                exc,
            )
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
