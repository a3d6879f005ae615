"""
Credential store -- the encrypted document plus materialized key files.

Owns ssh_hosts.json, keys/*.key and the sealed API token. Every
mutation and every write happens under ``self.lock``; the sync
coordinator shares the same lock so there is only ever one writer.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Callable, Optional

from pydantic import ValidationError

from .audit import safe_audit
from .config import StorePaths
from .crypto import CipherEngine
from .errors import ConfigIOError, EncryptionError, IntegrityError, ParseError
from .fsutil import atomic_write_text, ensure_private_dir, read_text
from .models import DOCUMENT_VERSION, Credential, CredentialDocument, Host, Key, Password

logger = logging.getLogger("sshmgr.store")

CORRUPT_SUFFIX = ".corrupt"


def parse_document(raw: str, source: str = "credential document") -> CredentialDocument:
    """Parse and validate document JSON.

    Raises:
        ParseError: Invalid JSON, wrong shape, or an unsupported version.
    """
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ParseError(f"Malformed {source}: {exc}") from exc
    if not isinstance(data, dict):
        raise ParseError(f"Malformed {source}: expected a JSON object")

    try:
        document = CredentialDocument.model_validate(data)
    except ValidationError as exc:
        raise ParseError(f"Invalid {source}: {exc.error_count()} validation error(s)") from exc

    if document.version > DOCUMENT_VERSION:
        raise ParseError(
            f"Unsupported {source} version {document.version} "
            f"(this build reads up to {DOCUMENT_VERSION})"
        )
    return document.normalize()


def dump_document(document: CredentialDocument) -> str:
    document.normalize()
    return json.dumps(document.model_dump(mode="json"), indent=2) + "\n"


class CredentialStore:
    """Load, mutate and persist the credential document.

    Args:
        paths: On-disk layout (see sshmgr.config.StorePaths).
        cipher: Engine used for key materialization and the API token.
        lock: Writer lock shared with the sync coordinator.
    """

    def __init__(
        self,
        paths: StorePaths,
        cipher: Optional[CipherEngine] = None,
        lock: Optional[threading.RLock] = None,
    ):
        self.paths = paths
        self.cipher = cipher
        self.lock = lock if lock is not None else threading.RLock()
        self.document = CredentialDocument()
        self._push: Optional[Callable[[], None]] = None

    # ── sync hook ──────────────────────────────────────────────────────

    def attach_sync(self, push: Callable[[], None]) -> None:
        """Call push() after every successful save()."""
        self._push = push

    def detach_sync(self) -> None:
        self._push = None

    @property
    def online(self) -> bool:
        return self._push is not None

    # ── document I/O ───────────────────────────────────────────────────

    def read_document(self) -> CredentialDocument:
        """Parse the document file without touching in-memory state."""
        return parse_document(read_text(self.paths.document))

    def write_document(self, document: CredentialDocument) -> None:
        """Atomically write document with owner-only permissions."""
        ensure_private_dir(self.paths.document.parent)
        atomic_write_text(self.paths.document, dump_document(document))

    def load(self) -> CredentialDocument:
        """Read the document, creating an empty one if absent.

        The empty document is written locally only; nothing is pushed.

        Raises:
            ConfigIOError: The file or its directory is unusable.
            ParseError: The file exists but is malformed.
        """
        with self.lock:
            if not self.paths.document.exists():
                logger.info("No credential document at %s, creating one", self.paths.document)
                self.document = CredentialDocument()
                self.write_document(self.document)
                return self.document
            self.document = self.read_document()
            logger.debug(
                "Loaded %d hosts, %d passwords, %d keys",
                len(self.document.hosts),
                len(self.document.passwords),
                len(self.document.keys),
            )
            return self.document

    def quarantine_document(self) -> Path:
        """Move an unreadable document aside and start an empty one.

        Returns:
            Path: Where the unreadable file now lives.

        Raises:
            ConfigIOError: The file could not be moved or the new one written.
        """
        with self.lock:
            source = self.paths.document
            target = source.with_name(source.name + CORRUPT_SUFFIX)
            try:
                os.replace(source, target)
            except OSError as exc:
                raise ConfigIOError(f"Cannot move {source} aside: {exc}") from exc
            logger.warning("Moved unreadable credential document to %s", target)
            safe_audit(self.paths.home, "DOCUMENT_QUARANTINED", f"Kept unreadable document as {target.name}")
            self.load()
            return target

    def save(self) -> None:
        """Persist the document, then push it if sync is attached.

        Raises:
            ConfigIOError: The local write failed (nothing was pushed).
            NetworkError: The local write succeeded but the push failed.
        """
        with self.lock:
            self.write_document(self.document)
            if self._push is not None:
                self._push()

    # ── lookups ────────────────────────────────────────────────────────

    @property
    def hosts(self) -> list[Host]:
        return self.document.hosts

    @property
    def passwords(self) -> list[Password]:
        return self.document.passwords

    @property
    def keys(self) -> list[Key]:
        return self.document.keys

    def find_host_by_name(self, name: str) -> tuple[int, Host]:
        for i, host in enumerate(self.document.hosts):
            if host.name == name:
                return i, host
        raise KeyError(f"Host not found: {name}")

    def resolve_credential(self, host: Host) -> Optional[Credential]:
        return self.document.resolve(host)

    def credential_ref(self, host: Host) -> Optional[int]:
        """Positional reference of the host's credential, or None if dangling."""
        credential = self.document.resolve(host)
        if credential is None:
            return None
        return self.document.ref_for(credential)

    def key_path(self, key: Key) -> Path:
        """Where ssh should read this key from."""
        if key.is_local:
            return self.paths.keys_dir / key.file_name
        return Path(key.path).expanduser()

    def verify_cipher(self) -> bool:
        """Open one stored secret to check the passphrase.

        Returns False if the document holds no secret to check.

        Raises:
            AuthenticationError: The cipher cannot open stored secrets.
        """
        cipher = self._require_cipher()
        for password in self.document.passwords:
            cipher.decrypt(password.password)
            return True
        for key in self.document.keys:
            if key.is_local:
                cipher.decrypt(key.key_data)
                return True
        return False

    # ── hosts ──────────────────────────────────────────────────────────

    def add_host(self, host: Host) -> int:
        with self.lock:
            self._check_host_name(host.name)
            self._check_credential(host)
            self.document.hosts.append(host)
            self.document.normalize()
            return len(self.document.hosts) - 1

    def update_host(self, index: int, host: Host) -> None:
        with self.lock:
            self._item(self.document.hosts, index, "host")
            self._check_host_name(host.name, skip=index)
            self._check_credential(host)
            self.document.hosts[index] = host
            self.document.normalize()

    def delete_host(self, index: int) -> Host:
        with self.lock:
            self._item(self.document.hosts, index, "host")
            return self.document.hosts.pop(index)

    # ── passwords ──────────────────────────────────────────────────────

    def add_password(self, password: Password) -> int:
        with self.lock:
            self.document.passwords.append(password)
            return len(self.document.passwords) - 1

    def update_password(self, index: int, password: Password) -> None:
        with self.lock:
            old = self._item(self.document.passwords, index, "password")
            password.id = old.id
            self.document.passwords[index] = password

    def delete_password(self, index: int) -> Password:
        """Remove a password unless a host still uses it.

        Raises:
            IntegrityError: A host references the password.
        """
        with self.lock:
            password = self._item(self.document.passwords, index, "password")
            self._check_unreferenced(password, password.description)
            self.document.passwords.pop(index)
            safe_audit(self.paths.home, "CREDENTIAL_DELETE", f"Deleted password '{password.description}'")
            return password

    # ── keys ───────────────────────────────────────────────────────────

    def add_key(self, key: Key) -> int:
        """Append a key, materializing its file if the material is inline."""
        with self.lock:
            self._check_key_name(key)
            self.document.keys.append(key)
            if key.is_local:
                try:
                    self._write_key_file(key)
                except (ConfigIOError, EncryptionError):
                    self.document.keys.pop()
                    raise
            return len(self.document.keys) - 1

    def update_key(self, index: int, key: Key) -> None:
        """Replace a key, keeping its identity and moving its file if needed."""
        with self.lock:
            old = self._item(self.document.keys, index, "key")
            self._check_key_name(key, skip=index)
            key.id = old.id
            if old.is_local and (not key.is_local or old.file_name != key.file_name):
                self._remove_key_file(old)
            if key.is_local:
                self._write_key_file(key)
            self.document.keys[index] = key

    def delete_key(self, index: int) -> Key:
        """Remove a key and its materialized file.

        Raises:
            IntegrityError: A host references the key.
        """
        with self.lock:
            key = self._item(self.document.keys, index, "key")
            self._check_unreferenced(key, key.description)
            self.document.keys.pop(index)
            if key.is_local:
                self._remove_key_file(key)
            safe_audit(self.paths.home, "CREDENTIAL_DELETE", f"Deleted key '{key.description}'")
            return key

    # ── API token ──────────────────────────────────────────────────────

    def load_api_token(self, cipher: Optional[CipherEngine] = None) -> Optional[str]:
        """Return the decrypted sync token, or None if none is stored.

        Raises:
            AuthenticationError: The token does not open with this cipher.
        """
        path = self.paths.api_token
        if not path.exists():
            return None
        sealed = read_text(path).strip()
        if not sealed:
            return None
        return self._require_cipher(cipher).decrypt(sealed)

    def save_api_token(self, token: str, cipher: Optional[CipherEngine] = None) -> None:
        if not token.strip():
            raise ValueError("API token must not be empty")
        sealed = self._require_cipher(cipher).encrypt(token.strip())
        atomic_write_text(self.paths.api_token, sealed + "\n")
        logger.info("Stored sync API token")

    def clear_api_token(self) -> None:
        try:
            self.paths.api_token.unlink(missing_ok=True)
        except OSError as exc:
            raise ConfigIOError(f"Cannot remove {self.paths.api_token}: {exc}") from exc

    # ── internals ──────────────────────────────────────────────────────

    def _require_cipher(self, cipher: Optional[CipherEngine] = None) -> CipherEngine:
        engine = cipher or self.cipher
        if engine is None:
            raise EncryptionError("Store is locked: no cipher available")
        return engine

    @staticmethod
    def _item(items: list, index: int, kind: str):
        if not 0 <= index < len(items):
            raise IndexError(f"Invalid {kind} index: {index}")
        return items[index]

    def _check_host_name(self, name: str, skip: Optional[int] = None) -> None:
        for i, host in enumerate(self.document.hosts):
            if i != skip and host.name == name:
                raise IntegrityError(f"A host named '{name}' already exists")

    def _check_credential(self, host: Host) -> None:
        if host.credential_id and self.document.find_credential(host.credential_id) is None:
            raise IntegrityError(f"Host '{host.name}' references an unknown credential")

    def _check_key_name(self, key: Key, skip: Optional[int] = None) -> None:
        for i, other in enumerate(self.document.keys):
            if i == skip:
                continue
            if other.description == key.description:
                raise IntegrityError(f"A key named '{key.description}' already exists")
            if key.is_local and other.is_local and other.file_name == key.file_name:
                raise IntegrityError(
                    f"Key '{key.description}' would overwrite the file of '{other.description}'"
                )

    def _check_unreferenced(self, credential: Credential, label: str) -> None:
        users = self.document.referencing_hosts(credential.id)
        if users:
            names = ", ".join(h.name for h in users)
            raise IntegrityError(f"'{label}' is used by: {names}")

    def _write_key_file(self, key: Key) -> None:
        material = key.reveal(self._require_cipher())
        ensure_private_dir(self.paths.keys_dir)
        atomic_write_text(self.paths.keys_dir / key.file_name, material.rstrip() + "\n")
        key._raw_key_data = None

    def _remove_key_file(self, key: Key) -> None:
        try:
            (self.paths.keys_dir / key.file_name).unlink(missing_ok=True)
        except OSError as exc:
            raise ConfigIOError(f"Cannot remove key file for '{key.description}': {exc}") from exc
