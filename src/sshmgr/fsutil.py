"""
Private-file helpers: 0700 directories, atomic 0600 writes.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from .errors import ConfigIOError

logger = logging.getLogger("sshmgr.fsutil")

PRIVATE_DIR_MODE = 0o700
PRIVATE_FILE_MODE = 0o600


def ensure_private_dir(path: Path) -> Path:
    """Create path (and parents) with owner-only permissions. Idempotent."""
    try:
        path.mkdir(mode=PRIVATE_DIR_MODE, parents=True, exist_ok=True)
    except OSError as exc:
        raise ConfigIOError(f"Cannot create directory {path}: {exc}") from exc
    return path


def atomic_write_text(path: Path, data: str, mode: int = PRIVATE_FILE_MODE) -> None:
    """Replace path with data so readers see either old or new content.

    The text is written to a temp file in the same directory, synced,
    chmod'ed, then renamed over the target.
    """
    ensure_private_dir(path.parent)
    try:
        fd, tmp_name = tempfile.mkstemp(
            dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
        )
    except OSError as exc:
        raise ConfigIOError(f"Cannot write {path}: {exc}") from exc

    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except OSError as exc:
        try:
            os.unlink(tmp_name)
        except OSError:
            pass
        raise ConfigIOError(f"Cannot write {path}: {exc}") from exc


def read_text(path: Path) -> str:
    """Read a UTF-8 file, wrapping OS failures in ConfigIOError."""
    try:
        return path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigIOError(f"Cannot read {path}: {exc}") from exc


def sanitize_filename(name: str) -> str:
    """Map name onto [A-Za-z0-9_-], replacing everything else with '_'."""
    return "".join(
        ch if (ch.isascii() and ch.isalnum()) or ch in "-_" else "_"
        for ch in name
    )
