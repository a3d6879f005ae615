"""
Local backup generation for the credential store.

One generation only: ``ssh_hosts.json.old`` plus ``keys/<name>.old``
for each key file. A new backup first discards the previous one.
"""

from __future__ import annotations

import logging
import os
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from ..errors import ConfigIOError, RestoreError
from ..fsutil import PRIVATE_FILE_MODE
from .models import BackupSnapshot

logger = logging.getLogger("sshmgr.sync.backup")

BACKUP_SUFFIX = ".old"


def backup_path(path: Path) -> Path:
    return path.with_name(path.name + BACKUP_SUFFIX)


def _live_key_files(keys_dir: Path) -> list[Path]:
    if not keys_dir.is_dir():
        return []
    return sorted(
        p for p in keys_dir.iterdir()
        if p.is_file() and not p.name.endswith(BACKUP_SUFFIX)
    )


def _backup_key_files(keys_dir: Path) -> list[Path]:
    if not keys_dir.is_dir():
        return []
    return sorted(keys_dir.glob("*" + BACKUP_SUFFIX))


def has_backup(document_path: Path) -> bool:
    return backup_path(document_path).exists()


def discard_backup(document_path: Path, keys_dir: Path) -> int:
    """Delete the current backup generation. Returns files removed."""
    removed = 0
    try:
        for old in [backup_path(document_path), *_backup_key_files(keys_dir)]:
            if old.exists():
                old.unlink()
                removed += 1
    except OSError as exc:
        raise ConfigIOError(f"Cannot discard backup: {exc}") from exc
    return removed


def backup_local(document_path: Path, keys_dir: Path) -> BackupSnapshot:
    """Copy the document and every key file to their ``.old`` siblings.

    Raises:
        ConfigIOError: A copy failed. Live files are untouched.
    """
    discard_backup(document_path, keys_dir)
    existed = document_path.exists()
    names: list[str] = []
    try:
        if existed:
            _copy_private(document_path, backup_path(document_path))
        for key_file in _live_key_files(keys_dir):
            _copy_private(key_file, backup_path(key_file))
            names.append(key_file.name)
    except OSError as exc:
        raise ConfigIOError(f"Backup failed: {exc}") from exc

    logger.info("Backed up document (%s) and %d key file(s)", "present" if existed else "absent", len(names))
    return BackupSnapshot(
        created_at=datetime.now(timezone.utc),
        document_existed=existed,
        key_files=names,
    )


def restore_from_backup(
    document_path: Path,
    keys_dir: Path,
    snapshot: Optional[BackupSnapshot] = None,
) -> int:
    """Move the ``.old`` generation back over the live files.

    With a snapshot the result is exactly the backed-up state: key files
    that appeared after the backup are removed, and a document that did
    not exist before is deleted. Without one, whatever ``.old`` files
    exist are renamed back.

    Returns:
        Number of files restored.

    Raises:
        RestoreError: Any step failed; local state is unknown.
    """
    try:
        if snapshot is None:
            return _restore_all(document_path, keys_dir)
        return _restore_snapshot(document_path, keys_dir, snapshot)
    except OSError as exc:
        raise RestoreError(f"Restore from backup failed: {exc}") from exc


def _restore_all(document_path: Path, keys_dir: Path) -> int:
    restored = 0
    doc_old = backup_path(document_path)
    if doc_old.exists():
        os.replace(doc_old, document_path)
        restored += 1
    for old in _backup_key_files(keys_dir):
        os.replace(old, old.with_name(old.name[: -len(BACKUP_SUFFIX)]))
        restored += 1
    logger.info("Restored %d file(s) from backup", restored)
    return restored


def _restore_snapshot(document_path: Path, keys_dir: Path, snapshot: BackupSnapshot) -> int:
    missing = [
        name for name in snapshot.key_files
        if not backup_path(keys_dir / name).exists()
    ]
    if snapshot.document_existed and not has_backup(document_path):
        missing.append(document_path.name)
    if missing:
        raise RestoreError(f"Backup incomplete, missing: {', '.join(missing)}")

    restored = 0
    if snapshot.document_existed:
        os.replace(backup_path(document_path), document_path)
        restored += 1
    elif document_path.exists():
        document_path.unlink()

    keep = set(snapshot.key_files)
    for key_file in _live_key_files(keys_dir):
        if key_file.name not in keep:
            key_file.unlink()
    for name in snapshot.key_files:
        os.replace(backup_path(keys_dir / name), keys_dir / name)
        restored += 1

    logger.info("Restored %d file(s) from backup taken %s", restored, snapshot.created_at)
    return restored


def _copy_private(src: Path, dst: Path) -> None:
    shutil.copy2(src, dst)
    os.chmod(dst, PRIVATE_FILE_MODE)
