"""
Sync coordinator -- backup, pull, apply, push, roll back.

    synchronize(token)  ->  backup_local -> pull -> apply_remote
                            (any failure -> restore_from_backup)
    push(token)         ->  read local document -> seal host fields -> submit
    restore_and_push    ->  restore the retained backup -> push it

All file mutations run under the store's lock, so a save and a sync
never interleave.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from ..audit import safe_audit
from ..crypto import CipherEngine
from ..errors import ConfigIOError, ParseError, RestoreError, SshmgrError, SyncCancelled
from ..fsutil import atomic_write_text, ensure_private_dir, read_text
from ..models import CredentialDocument, Host, Key, Password
from ..store import CredentialStore
from .backends import SyncBackend
from .backup import BACKUP_SUFFIX, backup_local, has_backup, restore_from_backup
from .models import (
    REMOTE_SCHEMA_VERSION,
    BackupSnapshot,
    RemoteSnapshot,
    SyncReport,
    SyncState,
)

logger = logging.getLogger("sshmgr.sync.coordinator")

_SEALED_HOST_FIELDS = ("name", "description", "login", "ip", "port")


class SyncCoordinator:
    """Keeps the local store and the remote snapshot in step.

    Args:
        store: The credential store (its lock is reused).
        cipher: Engine for host fields and key material.
        backend: Transport to the sync service.
        home: sshmgr home, for sync state and the audit log.
    """

    def __init__(
        self,
        store: CredentialStore,
        cipher: CipherEngine,
        backend: SyncBackend,
        home: Optional[Path] = None,
    ):
        self.store = store
        self.cipher = cipher
        self.backend = backend
        self.home = home or store.paths.home
        self.state_file = store.paths.sync_dir / "state.json"
        self.state = self._load_state()

    @property
    def lock(self) -> threading.RLock:
        return self.store.lock

    # ── state ──────────────────────────────────────────────────────────

    def _load_state(self) -> SyncState:
        if self.state_file.exists():
            try:
                return SyncState.model_validate_json(self.state_file.read_text(encoding="utf-8"))
            except (OSError, ValidationError) as exc:
                logger.warning("Failed to load sync state: %s", exc)
        return SyncState()

    def _save_state(self) -> None:
        try:
            atomic_write_text(self.state_file, self.state.model_dump_json(indent=2))
        except ConfigIOError as exc:
            logger.warning("Failed to save sync state: %s", exc)

    def _audit(self, event_type: str, detail: str, metadata: Optional[dict] = None) -> None:
        safe_audit(self.home, event_type, detail, metadata)

    # ── building blocks ────────────────────────────────────────────────

    def backup_local(self) -> BackupSnapshot:
        """Snapshot the document and key files into the ``.old`` generation."""
        with self.lock:
            snapshot = backup_local(self.store.paths.document, self.store.paths.keys_dir)
            self.state.last_backup = snapshot
            self._save_state()
            return snapshot

    def pull(self, token: str) -> RemoteSnapshot:
        """Fetch the remote snapshot. Nothing local is touched."""
        return self.backend.fetch(token)

    def apply_remote(self, snapshot: RemoteSnapshot) -> CredentialDocument:
        """Replace local state with the remote snapshot.

        Every field is opened and validated before the first write, so a
        wrong passphrase or a corrupt snapshot fails without touching disk.

        Raises:
            AuthenticationError: A sealed field does not open.
            ParseError: A decrypted field fails validation.
            ConfigIOError: Writing the document or a key file failed.
        """
        document, key_material = self._decode_remote(snapshot)
        paths = self.store.paths

        with self.lock:
            self.store.write_document(document)

            ensure_private_dir(paths.keys_dir)
            try:
                for stale in paths.keys_dir.iterdir():
                    if stale.is_file() and not stale.name.endswith(BACKUP_SUFFIX):
                        stale.unlink()
            except OSError as exc:
                raise ConfigIOError(f"Cannot clear key directory: {exc}") from exc

            for key, material in key_material:
                target = paths.keys_dir / key.file_name
                expected = material.rstrip() + "\n"
                atomic_write_text(target, expected)
                if read_text(target) != expected:
                    raise ConfigIOError(f"Key file verification failed for '{key.description}'")

            self.store.document = document

        logger.info(
            "Applied remote snapshot: %d hosts, %d passwords, %d keys",
            len(document.hosts), len(document.passwords), len(document.keys),
        )
        return document

    def push(self, token: str) -> None:
        """Upload the current local document as the new remote snapshot.

        Raises:
            NetworkError: The sync service rejected or missed the upload.
            ParseError: The local document is malformed.
        """
        with self.lock:
            document = self.store.read_document()
            payload = self._encode_local(document)
            self.backend.submit(token, payload)

        self.state.last_push = datetime.now(timezone.utc)
        self.state.backend = self.backend.name
        self.state.push_count += 1
        self.state.last_error = None
        self._save_state()
        self._audit(
            "SYNC_PUSH",
            f"Pushed {len(document.hosts)} hosts to {self.backend.name}",
            {"hosts": len(document.hosts), "passwords": len(document.passwords), "keys": len(document.keys)},
        )

    def restore_from_backup(self, snapshot: Optional[BackupSnapshot] = None) -> int:
        """Put the ``.old`` generation back and reload the store.

        Raises:
            RestoreError: Restoring failed; local state is unknown.
        """
        with self.lock:
            restored = restore_from_backup(
                self.store.paths.document,
                self.store.paths.keys_dir,
                snapshot or self.state.last_backup,
            )
            try:
                self.store.load()
            except (ConfigIOError, ParseError) as exc:
                raise RestoreError(f"Restored document is unusable: {exc}") from exc

        self.state.last_restore = datetime.now(timezone.utc)
        self.state.rollback_count += 1
        self.state.last_backup = None
        self._save_state()
        self._audit("SYNC_RESTORE", f"Restored {restored} file(s) from backup")
        return restored

    # ── protocols ──────────────────────────────────────────────────────

    def synchronize(
        self, token: str, cancel: Optional[threading.Event] = None
    ) -> SyncReport:
        """Backup, pull and apply; roll back if anything after the backup fails.

        Returns a report; ``ok`` is False when the caller should fall back
        to local-only mode.

        Raises:
            RestoreError: The rollback itself failed.
        """
        with self.lock:
            try:
                snapshot = self.backup_local()
            except ConfigIOError as exc:
                logger.error("Backup failed, skipping sync: %s", exc)
                return self._failed(str(exc), rolled_back=False)

            try:
                self._check_cancel(cancel)
                remote = self.pull(token)
                self._check_cancel(cancel)
                document = self.apply_remote(remote)
            except Exception as exc:
                logger.warning("Sync failed, restoring backup: %s", exc)
                self.restore_from_backup(snapshot)
                if not isinstance(exc, (SshmgrError, OSError)):
                    raise
                return self._failed(str(exc), rolled_back=True)

        self.state.last_pull = datetime.now(timezone.utc)
        self.state.backend = self.backend.name
        self.state.pull_count += 1
        self.state.last_error = None
        self._save_state()
        self._audit(
            "SYNC_PULL",
            f"Pulled {len(document.hosts)} hosts from {self.backend.name}",
            {"hosts": len(document.hosts), "passwords": len(document.passwords), "keys": len(document.keys)},
        )
        return SyncReport(
            ok=True,
            hosts=len(document.hosts),
            passwords=len(document.passwords),
            keys=len(document.keys),
        )

    def restore_and_push(self, token: Optional[str]) -> int:
        """Undo the last sync: restore the retained backup, then push it.

        Without a token only the local restore happens. Returns 0 (and
        changes nothing) when there is no backup.

        Raises:
            RestoreError: Restoring failed.
            NetworkError: Restored locally, but the push failed.
        """
        with self.lock:
            if self.state.last_backup is None and not has_backup(self.store.paths.document):
                logger.info("No backup to restore")
                return 0
            restored = self.restore_from_backup()
            if token:
                self.push(token)
        return restored

    def status(self) -> dict:
        return {
            "backend": self.backend.name,
            "available": self.backend.available(),
            "last_push": self.state.last_push.isoformat() if self.state.last_push else None,
            "last_pull": self.state.last_pull.isoformat() if self.state.last_pull else None,
            "last_restore": self.state.last_restore.isoformat() if self.state.last_restore else None,
            "push_count": self.state.push_count,
            "pull_count": self.state.pull_count,
            "rollback_count": self.state.rollback_count,
            "has_backup": self.state.last_backup is not None,
            "last_error": self.state.last_error,
        }

    # ── internals ──────────────────────────────────────────────────────

    @staticmethod
    def _check_cancel(cancel: Optional[threading.Event]) -> None:
        if cancel is not None and cancel.is_set():
            raise SyncCancelled("Synchronization cancelled")

    def _failed(self, error: str, rolled_back: bool) -> SyncReport:
        self.state.last_error = error
        self._save_state()
        self._audit("SYNC_FAILED", error, {"rolled_back": rolled_back})
        return SyncReport(ok=False, rolled_back=rolled_back, error=error)

    def _decode_remote(self, snapshot: RemoteSnapshot) -> tuple[CredentialDocument, list[tuple[Key, str]]]:
        data = snapshot.data
        try:
            hosts = []
            for remote in data.hosts:
                fields = {name: self.cipher.decrypt(getattr(remote, name)) for name in _SEALED_HOST_FIELDS}
                hosts.append(Host(
                    **fields,
                    password_id=remote.password_id,
                    terminal_type=remote.terminal_type,
                    keep_alive=remote.keep_alive,
                    compression=remote.compression,
                ))

            passwords = []
            for remote in data.passwords:
                self.cipher.decrypt(remote.password)
                passwords.append(Password(description=remote.description, password=remote.password))

            keys = []
            key_material = []
            for remote in data.keys:
                key = Key(description=remote.description, path=remote.path, key_data=remote.key_data)
                if key.is_local:
                    key_material.append((key, self.cipher.decrypt(key.key_data)))
                keys.append(key)
        except ValidationError as exc:
            raise ParseError(f"Remote snapshot failed validation: {exc.error_count()} error(s)") from exc

        names = [h.name for h in hosts]
        if len(names) != len(set(names)):
            raise ParseError("Remote snapshot contains duplicate host names")
        files = [k.file_name for k, _ in key_material]
        if len(files) != len(set(files)):
            raise ParseError("Remote snapshot contains colliding key names")

        document = CredentialDocument(hosts=hosts, passwords=passwords, keys=keys).normalize()
        return document, key_material

    def _encode_local(self, document: CredentialDocument) -> dict:
        document.normalize()
        hosts = []
        for host in document.hosts:
            entry = {name: self.cipher.encrypt(getattr(host, name)) for name in _SEALED_HOST_FIELDS}
            entry.update(
                password_id=host.password_id,
                terminal_type=host.terminal_type,
                keep_alive=host.keep_alive,
                compression=host.compression,
            )
            hosts.append(entry)

        return {
            "schema_version": REMOTE_SCHEMA_VERSION,
            "data": {
                "hosts": hosts,
                "passwords": [
                    {"description": p.description, "password": p.password}
                    for p in document.passwords
                ],
                "keys": [
                    {"description": k.description, "path": k.path, "key_data": k.key_data}
                    for k in document.keys
                ],
            },
        }
