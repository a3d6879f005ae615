"""
sshmgr -- encrypted SSH credential manager.

Keeps hosts, passwords and keys in a locally encrypted store, mirrors
that store to a remote sync service with automatic rollback, and hands
the terminal to interactive SSH sessions.
"""

import os

__version__ = "0.1.0"
__author__ = "sshmgr contributors"

SSHMGR_HOME = os.environ.get("SSHMGR_HOME", "~/.sshmgr")
