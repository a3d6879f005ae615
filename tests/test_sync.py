"""
Tests for remote sync -- backends, coordinator, and rollback.
"""

from __future__ import annotations

import json
import threading
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import requests

from sshmgr.config import AppConfig, StorePaths, SyncBackendType
from sshmgr.crypto import CipherEngine
from sshmgr.errors import (
    AuthenticationError,
    ConfigIOError,
    NetworkError,
    ParseError,
    RestoreError,
)
from sshmgr.models import Host, Key, Password
from sshmgr.store import CredentialStore
from sshmgr.sync import HttpSyncBackend, LocalSyncBackend, SyncCoordinator, create_backend
from sshmgr.sync.models import RemoteData, RemoteSnapshot

from conftest import SAMPLE_KEY, TEST_ITERATIONS

TOKEN = "api-token-123"


def _snapshot_files(paths: StorePaths) -> dict[str, bytes]:
    """Every file under the document and keys dir, for byte comparisons."""
    files = {"doc": paths.document.read_bytes()}
    if paths.keys_dir.exists():
        for p in sorted(paths.keys_dir.iterdir()):
            files[p.name] = p.read_bytes()
    return files


@pytest.fixture
def mirror(tmp_path: Path) -> LocalSyncBackend:
    return LocalSyncBackend(tmp_path / "mirror")


@pytest.fixture
def device_b(tmp_path: Path, cipher: CipherEngine) -> CredentialStore:
    """A second device with the same passphrase and its own local data."""
    paths = StorePaths.for_home(tmp_path / "device-b")
    store = CredentialStore(paths, cipher)
    store.load()
    store.add_password(Password.create("local-only", "pw", cipher))
    store.add_key(Key.create("old key", cipher, key_data="OLD"))
    store.add_host(Host(name="local", login="me", ip="192.168.1.2", credential_id=store.passwords[0].id))
    store.save()
    return store


def _remote_from(store: CredentialStore, cipher: CipherEngine, backend) -> None:
    SyncCoordinator(store, cipher, backend).push(TOKEN)


# ═══════════════════════════════════════════════════════════════════════════
# Backends
# ═══════════════════════════════════════════════════════════════════════════


class TestHttpSyncBackend:
    """The HTTP sync API transport."""

    def _resp(self, status=200, payload=None):
        resp = MagicMock(status_code=status)
        resp.json.return_value = payload if payload is not None else {
            "status": "success", "message": "",
            "data": {"hosts": None, "passwords": [], "keys": None, "last_sync": "2026-01-01T00:00:00Z"},
        }
        return resp

    @patch("sshmgr.sync.backends.requests.request")
    def test_fetch_sends_api_key(self, mock_request):
        mock_request.return_value = self._resp()
        backend = HttpSyncBackend("https://sync.example/api/v1/", timeout=5)
        snapshot = backend.fetch(TOKEN)

        method, url = mock_request.call_args.args
        assert method == "GET"
        assert url == "https://sync.example/api/v1/sync"
        assert mock_request.call_args.kwargs["headers"]["X-Api-Key"] == TOKEN
        assert mock_request.call_args.kwargs["timeout"] == 5
        assert snapshot.data.hosts == [] and snapshot.data.keys == []

    @patch("sshmgr.sync.backends.requests.request")
    def test_non_200_is_network_error(self, mock_request):
        mock_request.return_value = self._resp(status=401)
        with pytest.raises(NetworkError, match="401"):
            HttpSyncBackend("https://sync.example").fetch(TOKEN)

    @patch("sshmgr.sync.backends.requests.request")
    def test_transport_failure_is_network_error(self, mock_request):
        mock_request.side_effect = requests.ConnectionError("refused")
        with pytest.raises(NetworkError):
            HttpSyncBackend("https://sync.example").fetch(TOKEN)

    @patch("sshmgr.sync.backends.requests.request")
    def test_invalid_json_is_parse_error(self, mock_request):
        resp = self._resp()
        resp.json.side_effect = ValueError("no json")
        mock_request.return_value = resp
        with pytest.raises(ParseError):
            HttpSyncBackend("https://sync.example").fetch(TOKEN)

    @patch("sshmgr.sync.backends.requests.request")
    def test_bad_schema_is_parse_error(self, mock_request):
        mock_request.return_value = self._resp(payload={"data": {"hosts": [{"name": 1}]}})
        with pytest.raises(ParseError):
            HttpSyncBackend("https://sync.example").fetch(TOKEN)

    @patch("sshmgr.sync.backends.requests.request")
    def test_newer_schema_rejected(self, mock_request):
        mock_request.return_value = self._resp(payload={"schema_version": 9, "data": {}})
        with pytest.raises(ParseError, match="schema"):
            HttpSyncBackend("https://sync.example").fetch(TOKEN)

    @patch("sshmgr.sync.backends.requests.request")
    def test_submit_posts_json(self, mock_request):
        mock_request.return_value = self._resp()
        HttpSyncBackend("https://sync.example").submit(TOKEN, {"data": {"hosts": []}})
        assert mock_request.call_args.args[0] == "POST"
        assert mock_request.call_args.kwargs["json"] == {"data": {"hosts": []}}

    @patch("sshmgr.sync.backends.requests.request")
    def test_submit_non_200(self, mock_request):
        mock_request.return_value = self._resp(status=500)
        with pytest.raises(NetworkError):
            HttpSyncBackend("https://sync.example").submit(TOKEN, {})


class TestLocalSyncBackend:
    """Directory-backed transport."""

    def test_empty_when_nothing_pushed(self, mirror: LocalSyncBackend):
        snapshot = mirror.fetch(TOKEN)
        assert snapshot.data.hosts == []

    def test_submit_then_fetch(self, mirror: LocalSyncBackend):
        mirror.submit(TOKEN, {"data": {"hosts": [], "passwords": [{"description": "d", "password": "v1:x"}], "keys": []}})
        snapshot = mirror.fetch(TOKEN)
        assert snapshot.data.passwords[0].description == "d"
        assert snapshot.data.last_sync is not None

    def test_token_not_written(self, mirror: LocalSyncBackend):
        mirror.submit(TOKEN, {"data": {}})
        for path in mirror.target.iterdir():
            assert TOKEN not in path.name
            assert TOKEN not in path.read_text()

    def test_tokens_are_separate(self, mirror: LocalSyncBackend):
        mirror.submit("a", {"data": {"passwords": [{"description": "d", "password": "p"}]}})
        assert mirror.fetch("b").data.passwords == []


class TestCreateBackend:
    def test_http_default(self, tmp_path: Path):
        backend = create_backend(AppConfig(), tmp_path)
        assert isinstance(backend, HttpSyncBackend)
        assert backend.endpoint == "https://sshm.io/api/v1/sync"

    def test_local(self, tmp_path: Path):
        config = AppConfig(sync_backend=SyncBackendType.LOCAL, local_sync_path=tmp_path / "usb")
        backend = create_backend(config, tmp_path)
        assert isinstance(backend, LocalSyncBackend)
        assert backend.target == tmp_path / "usb"


# ═══════════════════════════════════════════════════════════════════════════
# Coordinator
# ═══════════════════════════════════════════════════════════════════════════


class TestPush:
    """Uploading the local document."""

    def test_host_fields_sealed(self, populated_store: CredentialStore, cipher: CipherEngine):
        backend = MagicMock()
        SyncCoordinator(populated_store, cipher, backend).push(TOKEN)

        token, payload = backend.submit.call_args.args
        assert token == TOKEN
        host = payload["data"]["hosts"][0]
        assert host["name"] != "web"
        assert cipher.decrypt(host["name"]) == "web"
        assert cipher.decrypt(host["ip"]) == "10.0.0.5"
        assert host["password_id"] == 0
        assert payload["data"]["hosts"][1]["password_id"] == -1
        assert cipher.decrypt(payload["data"]["passwords"][0]["password"]) == "s3cret"
        assert "OPENSSH" not in json.dumps(payload)

    def test_push_reads_file_not_memory(self, populated_store: CredentialStore, cipher: CipherEngine):
        backend = MagicMock()
        populated_store.add_password(Password.create("unsaved", "x", cipher))
        SyncCoordinator(populated_store, cipher, backend).push(TOKEN)
        payload = backend.submit.call_args.args[1]
        assert [p["description"] for p in payload["data"]["passwords"]] == ["prod"]

    def test_push_failure_raises(self, populated_store: CredentialStore, cipher: CipherEngine):
        backend = MagicMock()
        backend.submit.side_effect = NetworkError("down")
        with pytest.raises(NetworkError):
            SyncCoordinator(populated_store, cipher, backend).push(TOKEN)

    def test_push_updates_state(self, populated_store: CredentialStore, cipher: CipherEngine, paths: StorePaths):
        coordinator = SyncCoordinator(populated_store, cipher, MagicMock())
        coordinator.push(TOKEN)
        assert coordinator.state.push_count == 1
        state = json.loads((paths.sync_dir / "state.json").read_text())
        assert state["push_count"] == 1


class TestSynchronize:
    """The backup -> pull -> apply protocol."""

    def test_two_devices_converge(
        self, populated_store: CredentialStore, device_b: CredentialStore,
        cipher: CipherEngine, mirror: LocalSyncBackend,
    ):
        _remote_from(populated_store, cipher, mirror)
        report = SyncCoordinator(device_b, cipher, mirror).synchronize(TOKEN)

        assert report.ok and report.hosts == 2
        assert [h.name for h in device_b.hosts] == ["web", "db"]
        assert device_b.resolve_credential(device_b.hosts[1]).description == "deploy key"
        keys_dir = device_b.paths.keys_dir
        assert (keys_dir / "deploy_key.key").read_text() == SAMPLE_KEY.rstrip() + "\n"
        assert not (keys_dir / "old_key.key").exists()
        # backup generation retained for a manual restore
        assert (keys_dir / "old_key.key.old").read_text() == "OLD\n"

        reloaded = CredentialStore(device_b.paths, cipher)
        reloaded.load()
        assert [h.name for h in reloaded.hosts] == ["web", "db"]

    def test_pull_failure_leaves_state_identical(self, device_b: CredentialStore, cipher: CipherEngine):
        before = _snapshot_files(device_b.paths)
        backend = MagicMock()
        backend.fetch.side_effect = NetworkError("unreachable")

        report = SyncCoordinator(device_b, cipher, backend).synchronize(TOKEN)

        assert not report.ok and report.rolled_back
        assert _snapshot_files(device_b.paths) == before

    def test_wrong_passphrase_remote_rolls_back(
        self, populated_store: CredentialStore, device_b: CredentialStore,
        other_cipher: CipherEngine, cipher: CipherEngine, mirror: LocalSyncBackend,
    ):
        _remote_from(populated_store, cipher, mirror)
        before = _snapshot_files(device_b.paths)

        report = SyncCoordinator(device_b, other_cipher, mirror).synchronize(TOKEN)

        assert not report.ok
        assert _snapshot_files(device_b.paths) == before

    def test_partial_apply_rolls_back(
        self, populated_store: CredentialStore, device_b: CredentialStore,
        cipher: CipherEngine, mirror: LocalSyncBackend,
    ):
        """Document already rewritten when a key write fails: restore wins."""
        _remote_from(populated_store, cipher, mirror)
        before = _snapshot_files(device_b.paths)

        with patch("sshmgr.sync.coordinator.atomic_write_text", side_effect=ConfigIOError("disk full")):
            report = SyncCoordinator(device_b, cipher, mirror).synchronize(TOKEN)

        assert not report.ok and report.rolled_back
        assert _snapshot_files(device_b.paths) == before
        assert [h.name for h in device_b.hosts] == ["local"]

    def test_cancel_rolls_back(self, device_b: CredentialStore, cipher: CipherEngine, mirror: LocalSyncBackend):
        before = _snapshot_files(device_b.paths)
        cancel = threading.Event()
        cancel.set()
        report = SyncCoordinator(device_b, cipher, mirror).synchronize(TOKEN, cancel=cancel)
        assert not report.ok and "cancel" in report.error.lower()
        assert _snapshot_files(device_b.paths) == before

    def test_restore_failure_propagates(self, device_b: CredentialStore, cipher: CipherEngine):
        backend = MagicMock()
        backend.fetch.side_effect = NetworkError("unreachable")
        with patch(
            "sshmgr.sync.coordinator.restore_from_backup",
            side_effect=RestoreError("rename failed"),
        ):
            with pytest.raises(RestoreError):
                SyncCoordinator(device_b, cipher, backend).synchronize(TOKEN)

    def test_unexpected_error_restores_then_raises(self, device_b: CredentialStore, cipher: CipherEngine):
        before = _snapshot_files(device_b.paths)
        backend = MagicMock()
        backend.fetch.side_effect = RuntimeError("bug")
        with pytest.raises(RuntimeError):
            SyncCoordinator(device_b, cipher, backend).synchronize(TOKEN)
        assert _snapshot_files(device_b.paths) == before

    def test_duplicate_remote_hosts_rejected(self, device_b: CredentialStore, cipher: CipherEngine):
        host = {
            "name": cipher.encrypt("dup"), "description": cipher.encrypt(""),
            "login": cipher.encrypt("u"), "ip": cipher.encrypt("h"),
            "port": cipher.encrypt("22"), "password_id": 0,
        }
        backend = MagicMock()
        backend.fetch.return_value = RemoteSnapshot.model_validate({"data": {"hosts": [host, host]}})
        report = SyncCoordinator(device_b, cipher, backend).synchronize(TOKEN)
        assert not report.ok
        assert [h.name for h in device_b.hosts] == ["local"]


class TestApplyRemote:
    def test_empty_remote_clears_local(self, device_b: CredentialStore, cipher: CipherEngine):
        SyncCoordinator(device_b, cipher, MagicMock()).apply_remote(RemoteSnapshot(data=RemoteData()))
        assert device_b.hosts == []
        assert not (device_b.paths.keys_dir / "old_key.key").exists()

    def test_undecryptable_field_touches_nothing(self, device_b: CredentialStore, cipher: CipherEngine):
        before = _snapshot_files(device_b.paths)
        snapshot = RemoteSnapshot.model_validate({"data": {"passwords": [{"description": "x", "password": "garbage"}]}})
        with pytest.raises(AuthenticationError):
            SyncCoordinator(device_b, cipher, MagicMock()).apply_remote(snapshot)
        assert _snapshot_files(device_b.paths) == before


class TestRestoreAndPush:
    """Manual 'undo last sync'."""

    def test_restores_pre_sync_state_and_pushes(
        self, populated_store: CredentialStore, device_b: CredentialStore,
        cipher: CipherEngine, mirror: LocalSyncBackend,
    ):
        _remote_from(populated_store, cipher, mirror)
        before = _snapshot_files(device_b.paths)
        coordinator = SyncCoordinator(device_b, cipher, mirror)
        coordinator.synchronize(TOKEN)

        restored = coordinator.restore_and_push(TOKEN)

        assert restored > 0
        assert _snapshot_files(device_b.paths) == before
        assert [h.name for h in device_b.hosts] == ["local"]
        remote = mirror.fetch(TOKEN)
        assert [cipher.decrypt(h.name) for h in remote.data.hosts] == ["local"]

    def test_no_backup_is_noop(self, device_b: CredentialStore, cipher: CipherEngine):
        backend = MagicMock()
        assert SyncCoordinator(device_b, cipher, backend).restore_and_push(TOKEN) == 0
        backend.submit.assert_not_called()


class TestSaveHook:
    """Store saves push through the coordinator."""

    def test_save_pushes(self, populated_store: CredentialStore, cipher: CipherEngine, mirror: LocalSyncBackend):
        coordinator = SyncCoordinator(populated_store, cipher, mirror)
        populated_store.attach_sync(lambda: coordinator.push(TOKEN))
        populated_store.add_password(Password.create("new", "pw", cipher))
        populated_store.save()
        remote = mirror.fetch(TOKEN)
        assert [p.description for p in remote.data.passwords] == ["prod", "new"]
