"""
Controlling-terminal ownership.

Exactly one party owns the terminal at any time: the interface, or a
remote session. release() snapshots the tty attributes before the
session takes over (ssh puts the tty in raw mode); reclaim() puts them
back so the interface never inherits a raw terminal.
"""

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from enum import Enum
from typing import IO, Iterator, Optional

from ..errors import TerminalError

logger = logging.getLogger("sshmgr.session.terminal")

try:
    import termios
except ImportError:  # non-POSIX: no attributes to save
    termios = None  # type: ignore[assignment]


class TerminalOwner(str, Enum):
    INTERFACE = "interface"
    SESSION = "session"


class TerminalController:
    """Tracks and switches terminal ownership.

    Args:
        stream: The controlling terminal's input stream (default stdin).
    """

    def __init__(self, stream: Optional[IO] = None):
        self.stream = stream if stream is not None else sys.stdin
        self.owner = TerminalOwner.INTERFACE
        self._saved_attrs: Optional[list] = None

    def _fd(self) -> Optional[int]:
        try:
            fd = self.stream.fileno()
        except (AttributeError, OSError, ValueError):
            return None
        try:
            return fd if termios is not None and self.stream.isatty() else None
        except (OSError, ValueError):
            return None

    def release(self) -> None:
        """Hand the terminal from the interface to a session.

        Raises:
            TerminalError: Already released, or the tty state could not be saved.
        """
        if self.owner is not TerminalOwner.INTERFACE:
            raise TerminalError("Terminal is already owned by a session")

        sys.stdout.flush()
        fd = self._fd()
        if fd is not None:
            try:
                self._saved_attrs = termios.tcgetattr(fd)
            except termios.error as exc:
                raise TerminalError(f"Cannot save terminal state: {exc}") from exc
        self.owner = TerminalOwner.SESSION
        logger.debug("Terminal released to session")

    def reclaim(self) -> None:
        """Take the terminal back for the interface.

        Ownership returns to the interface even if restoring the tty
        attributes fails; the failure is then raised.

        Raises:
            TerminalError: Attributes could not be restored.
        """
        saved, self._saved_attrs = self._saved_attrs, None
        self.owner = TerminalOwner.INTERFACE
        fd = self._fd()
        if saved is not None and fd is not None:
            try:
                termios.tcsetattr(fd, termios.TCSADRAIN, saved)
            except termios.error as exc:
                raise TerminalError(f"Cannot restore terminal state: {exc}") from exc
        logger.debug("Terminal reclaimed by interface")

    @contextmanager
    def handoff(self) -> Iterator["TerminalController"]:
        """release() on entry, reclaim() on exit, whatever happens inside."""
        self.release()
        try:
            yield self
        finally:
            self.reclaim()
