"""
Application configuration and on-disk layout.

    ~/.sshmgr/
        config.yaml         AppConfig
        ssh_hosts.json      CredentialDocument
        api_key.enc         sealed sync API token
        keys/               materialized private keys (+ *.old backups)
        ssh/known_hosts     host keys seen by remote sessions
        sync/state.json     SyncState
        audit.log           JSONL audit trail
        logs/sshmgr.log     application log
"""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from . import SSHMGR_HOME
from .fsutil import atomic_write_text

logger = logging.getLogger("sshmgr.config")

CONFIG_FILE = "config.yaml"
DOCUMENT_FILE = "ssh_hosts.json"
API_TOKEN_FILE = "api_key.enc"
KEYS_DIR = "keys"
KNOWN_HOSTS_FILE = "ssh/known_hosts"
SYNC_DIR = "sync"
LOG_DIR = "logs"


class SyncBackendType(str, Enum):
    """Supported sync transports."""

    HTTP = "http"
    LOCAL = "local"


class AppConfig(BaseModel):
    """User-tunable settings, stored as YAML."""

    api_base_url: str = "https://sshm.io/api/v1/"
    request_timeout: float = Field(default=30.0, gt=0)
    sync_backend: SyncBackendType = SyncBackendType.HTTP
    local_sync_path: Optional[Path] = None
    terminal_type: str = "xterm-256color"
    keep_alive_interval: int = Field(default=30, ge=0)
    connect_timeout: int = Field(default=10, gt=0)
    ssh_binary: str = "ssh"
    sftp_binary: str = "sftp"
    log_level: str = "INFO"


class StorePaths(BaseModel):
    """Every file sshmgr touches, derived from one home directory."""

    home: Path
    document: Path
    keys_dir: Path
    api_token: Path
    config_file: Path
    known_hosts: Path
    sync_dir: Path
    log_dir: Path

    @classmethod
    def for_home(cls, home: Path) -> "StorePaths":
        home = Path(home).expanduser()
        return cls(
            home=home,
            document=home / DOCUMENT_FILE,
            keys_dir=home / KEYS_DIR,
            api_token=home / API_TOKEN_FILE,
            config_file=home / CONFIG_FILE,
            known_hosts=home / KNOWN_HOSTS_FILE,
            sync_dir=home / SYNC_DIR,
            log_dir=home / LOG_DIR,
        )


def resolve_home(home: Optional[str | Path] = None) -> Path:
    """Expand the sshmgr home directory (argument, $SSHMGR_HOME, default)."""
    return Path(home or SSHMGR_HOME).expanduser()


def load_config(home: Path) -> AppConfig:
    """Load config.yaml from home, falling back to defaults.

    A broken config file is logged and ignored; it never prevents startup.
    """
    config_file = home / CONFIG_FILE
    if not config_file.exists():
        return AppConfig()

    try:
        data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise ValueError("config root must be a mapping")
        return AppConfig(**data)
    except (yaml.YAMLError, ValidationError, ValueError, OSError) as exc:
        logger.warning("Failed to load config %s: %s", config_file, exc)
    return AppConfig()


def save_config(home: Path, config: AppConfig) -> Path:
    """Write config to home/config.yaml."""
    config_file = home / CONFIG_FILE
    atomic_write_text(
        config_file,
        yaml.dump(config.model_dump(mode="json"), default_flow_style=False),
    )
    return config_file
