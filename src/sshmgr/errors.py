"""
Error taxonomy shared by every sshmgr component.

Each class maps to one recovery policy: ``ParseError`` and
``NetworkError`` are surfaced as warnings, ``AuthenticationError``
re-prompts for the passphrase, ``RestoreError`` is fatal.
"""

from __future__ import annotations


class SshmgrError(Exception):
    """Base class for all sshmgr errors."""


class ConfigIOError(SshmgrError):
    """A store file or directory could not be read or written."""


class ParseError(SshmgrError):
    """Malformed document, token file, or remote payload."""


class EncryptionError(SshmgrError):
    """A secret could not be sealed or opened."""


class AuthenticationError(EncryptionError):
    """Ciphertext failed authentication (wrong passphrase or tampering)."""


class IntegrityError(SshmgrError):
    """An operation would leave the document inconsistent."""


class NetworkError(SshmgrError):
    """The sync service was unreachable or answered with an error."""


class RestoreError(SshmgrError):
    """Rollback from backup failed. Local state is unknown."""


class TerminalError(SshmgrError):
    """Terminal handoff between the interface and a session failed."""


class SyncCancelled(SshmgrError):
    """The user interrupted a running synchronization."""
