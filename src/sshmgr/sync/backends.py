"""
Sync transports -- where the credential snapshot travels.

HTTP: the sync API. GET/POST {base_url}/sync, authenticated with the
X-Api-Key header.
Local: one JSON snapshot per token in a directory. For USB drives,
NAS, or an offline mirror.
"""

from __future__ import annotations

import hashlib
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import requests
from pydantic import ValidationError

from ..config import AppConfig, SyncBackendType
from ..errors import ConfigIOError, NetworkError, ParseError
from ..fsutil import atomic_write_text, ensure_private_dir, read_text
from .models import REMOTE_SCHEMA_VERSION, RemoteData, RemoteSnapshot

logger = logging.getLogger("sshmgr.sync.backends")


def parse_snapshot(data: Any) -> RemoteSnapshot:
    """Validate a decoded snapshot envelope.

    Raises:
        ParseError: Wrong shape or a schema newer than this build.
    """
    if not isinstance(data, dict):
        raise ParseError("Remote snapshot is not a JSON object")
    try:
        snapshot = RemoteSnapshot.model_validate(data)
    except ValidationError as exc:
        raise ParseError(
            f"Invalid remote snapshot: {exc.error_count()} validation error(s)"
        ) from exc
    if snapshot.schema_version > REMOTE_SCHEMA_VERSION:
        raise ParseError(f"Unsupported remote schema version {snapshot.schema_version}")
    return snapshot


class SyncBackend(ABC):
    """Abstract sync transport."""

    @abstractmethod
    def fetch(self, token: str) -> RemoteSnapshot:
        """Download the current remote snapshot.

        Raises:
            NetworkError: Transport failure or non-success status.
            ParseError: The response is not a valid snapshot.
        """

    @abstractmethod
    def submit(self, token: str, payload: dict) -> None:
        """Upload payload as the new remote snapshot.

        Raises:
            NetworkError: Transport failure or non-success status.
        """

    @abstractmethod
    def available(self) -> bool:
        """Check if this backend is currently usable."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable backend name."""


class HttpSyncBackend(SyncBackend):
    """The hosted sync API."""

    def __init__(self, base_url: str, timeout: float = 30.0):
        self.base_url = base_url
        self.timeout = timeout

    @property
    def name(self) -> str:
        return "http"

    @property
    def endpoint(self) -> str:
        return self.base_url.rstrip("/") + "/sync"

    def _request(self, method: str, token: str, payload: Optional[dict] = None) -> requests.Response:
        headers = {"X-Api-Key": token}
        if payload is not None:
            headers["Content-Type"] = "application/json"
        try:
            resp = requests.request(
                method, self.endpoint, headers=headers, json=payload, timeout=self.timeout,
            )
        except requests.RequestException as exc:
            raise NetworkError(f"Sync API {method} failed: {exc}") from exc

        if resp.status_code != 200:
            raise NetworkError(f"Sync API {method} returned status {resp.status_code}")
        return resp

    def fetch(self, token: str) -> RemoteSnapshot:
        resp = self._request("GET", token)
        try:
            data = resp.json()
        except ValueError as exc:
            raise ParseError(f"Sync API returned invalid JSON: {exc}") from exc
        snapshot = parse_snapshot(data)
        logger.info(
            "Fetched remote snapshot: %d hosts, %d passwords, %d keys",
            len(snapshot.data.hosts),
            len(snapshot.data.passwords),
            len(snapshot.data.keys),
        )
        return snapshot

    def submit(self, token: str, payload: dict) -> None:
        self._request("POST", token, payload)
        logger.info("Pushed snapshot to %s", self.endpoint)

    def available(self) -> bool:
        return bool(self.base_url)


class LocalSyncBackend(SyncBackend):
    """Directory-backed sync target.

    Snapshots are keyed by a hash of the token so several stores can
    share one directory without the token itself touching disk.
    """

    def __init__(self, target: Path):
        self.target = Path(target).expanduser()

    @property
    def name(self) -> str:
        return "local"

    def snapshot_path(self, token: str) -> Path:
        digest = hashlib.sha256(token.encode("utf-8")).hexdigest()[:16]
        return self.target / f"snapshot-{digest}.json"

    def fetch(self, token: str) -> RemoteSnapshot:
        path = self.snapshot_path(token)
        if not path.exists():
            logger.info("No snapshot at %s yet", path)
            return RemoteSnapshot(data=RemoteData())
        try:
            raw = read_text(path)
        except ConfigIOError as exc:
            raise NetworkError(str(exc)) from exc
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ParseError(f"Malformed snapshot {path}: {exc}") from exc
        return parse_snapshot(data)

    def submit(self, token: str, payload: dict) -> None:
        envelope = {
            "status": "success",
            "message": "",
            "schema_version": payload.get("schema_version", REMOTE_SCHEMA_VERSION),
            "data": dict(
                payload.get("data", {}),
                last_sync=datetime.now(timezone.utc).isoformat(),
            ),
        }
        try:
            ensure_private_dir(self.target)
            atomic_write_text(self.snapshot_path(token), json.dumps(envelope, indent=2))
        except ConfigIOError as exc:
            raise NetworkError(str(exc)) from exc
        logger.info("Snapshot written to %s", self.target)

    def available(self) -> bool:
        return self.target.exists()


def create_backend(config: AppConfig, home: Path) -> SyncBackend:
    """Factory function to create the configured backend.

    Raises:
        ValueError: If backend type is not supported.
    """
    if config.sync_backend == SyncBackendType.HTTP:
        return HttpSyncBackend(config.api_base_url, timeout=config.request_timeout)
    if config.sync_backend == SyncBackendType.LOCAL:
        target = config.local_sync_path or (home / "sync" / "local-mirror")
        return LocalSyncBackend(target)
    raise ValueError(f"Unsupported backend: {config.sync_backend}")
