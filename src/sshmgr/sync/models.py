"""
Sync data models -- the remote wire schema and local sync bookkeeping.

Remote snapshot (GET {base}/sync):

    {"status": "success", "message": "",
     "data": {"hosts": [...], "passwords": [...], "keys": [...], "last_sync": "..."}}

Host string fields arrive sealed and are opened with the CipherEngine.
Password and key secrets stay sealed end to end.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..config import SyncBackendType

REMOTE_SCHEMA_VERSION = 1

__all__ = [
    "BackupSnapshot",
    "REMOTE_SCHEMA_VERSION",
    "RemoteData",
    "RemoteHost",
    "RemoteKey",
    "RemotePassword",
    "RemoteSnapshot",
    "SyncBackendType",
    "SyncReport",
    "SyncState",
]


class RemoteHost(BaseModel):
    """A host as stored by the sync service (string fields sealed)."""

    model_config = ConfigDict(extra="ignore")

    name: str
    description: str
    login: str
    ip: str
    port: str
    password_id: Optional[int] = None
    terminal_type: str = ""
    keep_alive: bool = False
    compression: bool = False


class RemotePassword(BaseModel):
    model_config = ConfigDict(extra="ignore")

    description: str
    password: str


class RemoteKey(BaseModel):
    model_config = ConfigDict(extra="ignore")

    description: str
    path: str = ""
    key_data: str = ""

    @field_validator("path", "key_data", mode="before")
    @classmethod
    def _none_is_empty(cls, value):
        return "" if value is None else value


class RemoteData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    hosts: list[RemoteHost] = Field(default_factory=list)
    passwords: list[RemotePassword] = Field(default_factory=list)
    keys: list[RemoteKey] = Field(default_factory=list)
    last_sync: Optional[str] = None

    @field_validator("hosts", "passwords", "keys", mode="before")
    @classmethod
    def _null_is_empty(cls, value):
        return [] if value is None else value


class RemoteSnapshot(BaseModel):
    """Envelope returned by the sync service."""

    model_config = ConfigDict(extra="ignore")

    status: str = "success"
    message: str = ""
    schema_version: int = REMOTE_SCHEMA_VERSION
    data: RemoteData


class BackupSnapshot(BaseModel):
    """What backup_local() saved, so a restore puts back exactly that."""

    created_at: datetime
    document_existed: bool
    key_files: list[str] = Field(default_factory=list)


class SyncReport(BaseModel):
    """Outcome of one synchronize() run."""

    ok: bool
    rolled_back: bool = False
    hosts: int = 0
    passwords: int = 0
    keys: int = 0
    error: Optional[str] = None


class SyncState(BaseModel):
    """Current sync state persisted to disk."""

    last_push: Optional[datetime] = None
    last_pull: Optional[datetime] = None
    last_restore: Optional[datetime] = None
    backend: Optional[str] = None
    push_count: int = 0
    pull_count: int = 0
    rollback_count: int = 0
    last_backup: Optional[BackupSnapshot] = None
    last_error: Optional[str] = None
