"""Failure-mode tests for the structured logging subsystem."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from mcphubctl.logging import StructuredLogger


def test_structured_logger_disables_when_directory_unavailable(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Logger gracefully disables itself when log directory cannot be created."""
    log_dir = tmp_path / "logs"

    original_mkdir = Path.mkdir

    def fail_mkdir(self: Path, *args: object, **kwargs: object) -> None:
        if self == log_dir:
            raise PermissionError("no access")
        original_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", fail_mkdir)

    logger = StructuredLogger(log_dir)
    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("server list", args={"json": True}) as op:
        op.success("done", changed=0)


def test_structured_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Write failures mark the logger disabled so subsequent writes are skipped."""
    logger = StructuredLogger(tmp_path / "logs")
    operations_path = logger._operations_log_path  # type: ignore[attr-defined]

    original_open = Path.open

    def fail_once(self: Path, *args: object, **kwargs: object) -> object:
        if self == operations_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fail_once)

    with logger.operation("config show") as op:
        op.success("done", changed=0)

    assert logger._enabled is False  # type: ignore[attr-defined]

    # Subsequent operations should not raise even though logger is disabled.
    with logger.operation("instance list") as op:
        op.success("done", changed=0)


def test_operation_scope_warning_sanitises_context(tmp_path: Path) -> None:
    """Warnings should be recorded with JSON-safe context values."""
    logger = StructuredLogger(tmp_path / "logs")

    class Custom:
        def __str__(self) -> str:
            return "<custom>"

    with logger.operation("sync", args={"path": Path("mcp.json")}) as op:
        op.warning(
            "warned",
            warnings=("note",),
            errors=("err",),
            changed=1,
            backups=["20260101T000000Z-abc"],
            context={"path": Path("/home/dev/.cursor"), "obj": Custom()},
        )

    record = json.loads(logger._operations_log_path.read_text(encoding="utf-8"))  # type: ignore[attr-defined]
    result = record["result"]
    assert result["status"] == "warning"
    assert result["warnings"] == ["note"]
    assert result["errors"] == ["err"]
    assert result["backups"] == ["20260101T000000Z-abc"]
    assert result["context"] == {"path": "/home/dev/.cursor", "obj": "<custom>"}


def test_operation_scope_error_defaults_error_list(tmp_path: Path) -> None:
    """Errors should default to the message when not provided."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("config show") as op:
        op.error("boom", errors=None, context={"value": {1, 2}})

    record = json.loads(logger._operations_log_path.read_text(encoding="utf-8"))  # type: ignore[attr-defined]
    result = record["result"]
    assert result["status"] == "error"
    assert result["errors"] == ["boom"]
    assert result["context"] == {"value": "{1, 2}"}


def test_operation_records_steps_and_lock_wait(tmp_path: Path) -> None:
    """Steps and lock wait time are persisted with the operation record."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("sync", args={"instance": "cursor"}, target={"kind": "instance"}) as op:
        op.set_lock_wait_ms(12)
        op.add_step("sync.cursor", detail="changed")
        op.success("Synced.", changed=1)

    record = json.loads(logger.path.read_text(encoding="utf-8"))
    assert record["command"] == "sync"
    assert record["args"] == {"instance": "cursor"}
    assert record["lock_wait_ms"] == 12
    assert record["steps"] == [{"name": "sync.cursor", "status": "success", "detail": "changed"}]
    assert record["result"]["changed"] == 1


def test_operation_exception_records_error(tmp_path: Path) -> None:
    """Unhandled exceptions are logged as errors and re-raised."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(ValueError):
        with logger.operation("detect"):
            raise ValueError("nope")

    record = json.loads(logger.path.read_text(encoding="utf-8"))
    assert record["result"]["status"] == "error"
    assert record["result"]["message"] == "ValueError: nope"
