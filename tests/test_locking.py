"""Tests for the locking primitives."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from mcphubctl.locking import LockManager, LockTimeoutError


def test_path_lock_creates_metadata(tmp_path: Path) -> None:
    """Acquiring a path lock writes holder metadata and releases cleanly."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)
    config_path = tmp_path / "home" / ".cursor" / "mcp.json"

    lock_path = manager.lock_path_for(config_path)
    with manager.path_lock(config_path) as handle:
        assert handle.wait_ms >= 0
        assert lock_path.exists()
        assert lock_path.parent == tmp_path / "run" / "paths"
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["target"] == str(config_path)

    # Lockfile persists for diagnostics but no longer holds the lock.
    with manager.path_lock(config_path, timeout=0.2):
        pass


def test_path_lock_timeout(tmp_path: Path) -> None:
    """Second acquisition of the same file times out while the first is held."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)
    config_path = tmp_path / "mcp.json"

    with manager.path_lock(config_path):
        with pytest.raises(LockTimeoutError):
            with manager.path_lock(config_path, timeout=0.1):
                pass


def test_distinct_paths_do_not_contend(tmp_path: Path) -> None:
    """Locks for different config files are independent."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.path_lock(tmp_path / "a.json"):
        with manager.path_lock(tmp_path / "b.json", timeout=0.1) as handle:
            assert handle.wait_ms >= 0


def test_equivalent_paths_share_a_lock(tmp_path: Path) -> None:
    """Relative and absolute spellings of one file map to the same lock."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)
    target = tmp_path / "mcp.json"

    relative = Path(os.path.relpath(target))
    assert manager.lock_path_for(relative) == manager.lock_path_for(target)


def test_mutate_paths_acquires_global_then_paths(tmp_path: Path) -> None:
    """Lock bundles acquire the global lock followed by sorted path locks."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)
    paths = [tmp_path / "z.json", tmp_path / "a.json"]

    with manager.mutate_paths(paths) as bundle:
        assert bundle.wait_ms >= 0
        assert len(bundle.handles) == 3
        assert bundle.handles[0].path == tmp_path / "run" / "mcphubctl.lock"
        assert bundle.handles[1].path == manager.lock_path_for(tmp_path / "a.json")
        assert bundle.handles[2].path == manager.lock_path_for(tmp_path / "z.json")


def test_global_lock_blocks_second_holder(tmp_path: Path) -> None:
    """The global registry lock is exclusive."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.global_lock():
        with pytest.raises(LockTimeoutError):
            with manager.global_lock(timeout=0.1):
                pass
