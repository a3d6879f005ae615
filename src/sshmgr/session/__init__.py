"""
Terminal handoff -- lend the terminal to a remote session and take it back.
"""

from .remote import FileTransferSession, RemoteSession, SessionOutcome
from .terminal import TerminalController, TerminalOwner
from .worker import BackgroundWorker, TaskHandle, TaskResult

__all__ = [
    "BackgroundWorker",
    "FileTransferSession",
    "RemoteSession",
    "SessionOutcome",
    "TaskHandle",
    "TaskResult",
    "TerminalController",
    "TerminalOwner",
]
