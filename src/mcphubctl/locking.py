"""File-based advisory locks.

Locks are ``flock`` locks on small files under the runtime directory. The
lock file is left in place after release and carries JSON metadata about the
last holder for diagnostics. Acquisition polls until the timeout expires and
then raises :class:`LockTimeoutError`.
"""
from __future__ import annotations

import fcntl
import hashlib
import json
import os
import time
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

GLOBAL_LOCK_NAME = "mcphubctl.lock"
_POLL_INTERVAL = 0.05


class LockError(RuntimeError):
    """Raised when a lock cannot be prepared or acquired."""


class LockTimeoutError(LockError):
    """Raised when a lock is still held by someone else after the timeout."""


@dataclass(slots=True)
class LockHandle:
    """A held lock."""

    path: Path
    wait_ms: int
    _fd: int = field(repr=False, default=-1)


@dataclass(slots=True)
class LockBundle:
    """A group of locks acquired in a fixed order."""

    handles: list[LockHandle] = field(default_factory=list)

    @property
    def wait_ms(self) -> int:
        """Return the cumulative wait time across all handles."""
        return sum(handle.wait_ms for handle in self.handles)


class LockManager:
    """Hand out global and per-config-file locks."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 10.0) -> None:
        self.runtime_dir = Path(runtime_dir).expanduser()
        self.default_timeout = default_timeout

    # Public API ---------------------------------------------------------
    @contextmanager
    def global_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Serialise registry mutations across processes."""
        lock_path = self.runtime_dir / GLOBAL_LOCK_NAME
        with self._acquire(lock_path, target="global", timeout=timeout) as handle:
            yield handle

    @contextmanager
    def path_lock(self, config_path: Path, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Serialise writers of a single client config file."""
        lock_path = self.lock_path_for(config_path)
        with self._acquire(lock_path, target=str(config_path), timeout=timeout) as handle:
            yield handle

    @contextmanager
    def mutate_paths(
        self,
        config_paths: Iterable[Path],
        *,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire the global lock followed by per-path locks in sorted order."""
        bundle = LockBundle()
        ordered = sorted({str(Path(path).expanduser().resolve()) for path in config_paths})
        with ExitStack() as stack:
            bundle.handles.append(stack.enter_context(self.global_lock(timeout=timeout)))
            for raw in ordered:
                bundle.handles.append(
                    stack.enter_context(self.path_lock(Path(raw), timeout=timeout))
                )
            yield bundle

    def lock_path_for(self, config_path: Path) -> Path:
        """Return the lock file guarding *config_path*."""
        resolved = str(Path(config_path).expanduser().resolve())
        digest = hashlib.sha256(resolved.encode("utf-8")).hexdigest()[:24]
        return self.runtime_dir / "paths" / f"{digest}.lock"

    # Internals ----------------------------------------------------------
    @contextmanager
    def _acquire(
        self,
        lock_path: Path,
        *,
        target: str,
        timeout: float | None,
    ) -> Iterator[LockHandle]:
        limit = self.default_timeout if timeout is None else timeout
        try:
            lock_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, 0o640)
        except OSError as exc:
            raise LockError(f"Failed to prepare lock {lock_path}: {exc}") from exc

        started = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:.1f}s waiting for lock {lock_path} "
                            f"({target})."
                        ) from None
                    time.sleep(_POLL_INTERVAL)
        except BaseException:
            os.close(fd)
            raise

        wait_ms = int((time.monotonic() - started) * 1000)
        handle = LockHandle(path=lock_path, wait_ms=wait_ms, _fd=fd)
        try:
            _write_metadata(fd, lock_path, target)
            yield handle
        finally:
            try:
                fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)


def _write_metadata(fd: int, lock_path: Path, target: str) -> None:
    payload = {
        "pid": os.getpid(),
        "path": str(lock_path),
        "target": target,
        "acquired_at": datetime.now(tz=UTC).isoformat().replace("+00:00", "Z"),
    }
    data = json.dumps(payload).encode("utf-8")
    os.ftruncate(fd, 0)
    os.pwrite(fd, data, 0)


__all__ = ["LockBundle", "LockError", "LockHandle", "LockManager", "LockTimeoutError"]
