"""Low-level file helpers shared by the reconciler and the backup manager."""
from __future__ import annotations

import hashlib
import os
import stat
import tempfile
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class Fingerprint:
    """Identity of a file's content at the moment it was read."""

    size: int
    mtime_ns: int
    sha256: str

    @classmethod
    def of(cls, path: Path, content: bytes) -> Fingerprint:
        """Fingerprint *content* that was just read from *path*."""
        info = path.stat()
        return cls(size=info.st_size, mtime_ns=info.st_mtime_ns, sha256=sha256_hex(content))


def sha256_hex(content: bytes) -> str:
    """Return the hex sha256 digest of *content*."""
    return hashlib.sha256(content).hexdigest()


def read_optional(path: Path) -> bytes | None:
    """Return the bytes of *path*, or ``None`` when the file does not exist."""
    try:
        return path.read_bytes()
    except FileNotFoundError:
        return None


def current_fingerprint(path: Path) -> Fingerprint | None:
    """Fingerprint whatever is at *path* right now."""
    content = read_optional(path)
    if content is None:
        return None
    return Fingerprint.of(path, content)


def atomic_write_bytes(path: Path, data: bytes, *, mode: int | None = None) -> None:
    """Write *data* to *path* via a sibling temp file and ``os.replace``.

    The replaced file keeps its permission bits unless *mode* is given. A
    symlinked *path* is written through to its target and stays a link.
    """
    path = path.resolve()
    path.parent.mkdir(parents=True, exist_ok=True)
    if mode is None:
        try:
            mode = stat.S_IMODE(path.stat().st_mode)
        except FileNotFoundError:
            mode = 0o644
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "wb") as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)


__all__ = [
    "Fingerprint",
    "atomic_write_bytes",
    "current_fingerprint",
    "read_optional",
    "sha256_hex",
]
