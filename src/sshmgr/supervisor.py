"""
Session supervisor -- the application state machine.

    Unlocking   --PassphraseEntered-->  Supervising (after local load + sync)
    Supervising --ConnectRequested--->  SuspendedForSession
    Suspended   --SessionEnded------->  Supervising
    Supervising --ReloadRequested---->  Restarting
    any         --QuitRequested------>  Quitting

Blocking work (sync, pushes, remote sessions) goes through the
BackgroundWorker so the interface thread can be interrupted. A failed
sync leaves the supervisor in local-only mode; a failed rollback
(RestoreError) propagates out of run().
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Protocol, Union

from pydantic import BaseModel, SecretStr

from .audit import safe_audit
from .config import AppConfig, StorePaths
from .crypto import KDF_ITERATIONS, CipherEngine
from .errors import (
    AuthenticationError,
    ConfigIOError,
    NetworkError,
    ParseError,
    SshmgrError,
    SyncCancelled,
    TerminalError,
)
from .models import Host, Key, Password
from .session import BackgroundWorker, FileTransferSession, RemoteSession, SessionOutcome, TerminalController
from .store import CredentialStore
from .sync import SyncBackend, SyncCoordinator, create_backend
from .sync.models import SyncReport

logger = logging.getLogger("sshmgr.supervisor")


class SupervisorState(str, Enum):
    UNLOCKING = "unlocking"
    SUPERVISING = "supervising"
    SUSPENDED = "suspended_for_session"
    RESTARTING = "restarting"
    QUITTING = "quitting"


# ═══════════════════════════════════════════════════════════════════════════
# Events
# ═══════════════════════════════════════════════════════════════════════════


class PassphraseEntered(BaseModel):
    passphrase: SecretStr


class ConnectRequested(BaseModel):
    host_name: str
    transfer: bool = False


class SessionEnded(BaseModel):
    outcome: SessionOutcome


class ReloadRequested(BaseModel):
    pass


class QuitRequested(BaseModel):
    pass


Event = Union[PassphraseEntered, ConnectRequested, SessionEnded, ReloadRequested, QuitRequested]

_ALLOWED = {
    SupervisorState.UNLOCKING: (PassphraseEntered, QuitRequested),
    SupervisorState.SUPERVISING: (ConnectRequested, ReloadRequested, QuitRequested),
    SupervisorState.SUSPENDED: (SessionEnded,),
}


class Interface(Protocol):
    """What the supervisor needs from the user-facing layer."""

    def next_event(self, supervisor: "SessionSupervisor") -> Event: ...

    def prompt_api_token(self) -> Optional[str]: ...

    def notify(self, message: str, level: str = "info") -> None: ...

    def show_main(self) -> None: ...


SessionFactory = Callable[..., RemoteSession]


class SessionSupervisor:
    """Drives unlock, sync, and terminal handoff for one program run.

    Args:
        home: sshmgr home directory.
        config: Application config.
        interface: User-facing layer producing events.
        backend: Sync transport (default: from config).
        terminal: Terminal ownership controller.
        worker: Background worker.
        session_factory: Builds a session from (host, transfer, password=, key_file=).
        kdf_iterations: PBKDF2 rounds for the passphrase.
    """

    def __init__(
        self,
        home: Path,
        config: AppConfig,
        interface: Interface,
        backend: Optional[SyncBackend] = None,
        terminal: Optional[TerminalController] = None,
        worker: Optional[BackgroundWorker] = None,
        session_factory: Optional[SessionFactory] = None,
        kdf_iterations: int = KDF_ITERATIONS,
    ):
        self.home = home
        self.config = config
        self.interface = interface
        self.paths = StorePaths.for_home(home)
        self.backend = backend
        self.terminal = terminal or TerminalController()
        self.worker = worker or BackgroundWorker()
        self.session_factory = session_factory or self._default_session
        self.kdf_iterations = kdf_iterations
        self.lock = threading.RLock()

        self.state = SupervisorState.UNLOCKING
        self.store: Optional[CredentialStore] = None
        self.coordinator: Optional[SyncCoordinator] = None
        self.api_token: Optional[str] = None
        self.offline = True
        self.last_outcome: Optional[SessionOutcome] = None

    # ── event loop ─────────────────────────────────────────────────────

    def run(self) -> SupervisorState:
        """Process events until the state is Restarting or Quitting."""
        while self.state not in (SupervisorState.RESTARTING, SupervisorState.QUITTING):
            self.handle(self.interface.next_event(self))
        return self.state

    def handle(self, event: Event) -> SupervisorState:
        """Apply one event. Events not valid in the current state are ignored."""
        if not isinstance(event, _ALLOWED.get(self.state, ())):
            logger.warning("Ignoring %s in state %s", type(event).__name__, self.state.value)
            return self.state

        if isinstance(event, PassphraseEntered):
            self.unlock(event.passphrase.get_secret_value())
        elif isinstance(event, ConnectRequested):
            self.connect(event.host_name, transfer=event.transfer)
        elif isinstance(event, SessionEnded):
            self._session_ended(event.outcome)
        elif isinstance(event, ReloadRequested):
            logger.info("Reload requested")
            self.state = SupervisorState.RESTARTING
        elif isinstance(event, QuitRequested):
            logger.info("Quit requested")
            self.state = SupervisorState.QUITTING
        return self.state

    def close(self) -> None:
        self.worker.shutdown()

    # ── unlock and sync ────────────────────────────────────────────────

    def unlock(self, passphrase: str) -> bool:
        """Derive the cipher, load the store, sync, and start supervising.

        Returns False (state stays Unlocking) on a wrong passphrase.

        Raises:
            ConfigIOError: The store cannot be read or created.
            RestoreError: A failed sync could not be rolled back.
        """
        cipher = CipherEngine.from_passphrase(passphrase, iterations=self.kdf_iterations)
        store = CredentialStore(self.paths, cipher, lock=self.lock)

        try:
            token = store.load_api_token()
        except AuthenticationError:
            self.interface.notify("Wrong passphrase.", "error")
            return False

        try:
            store.load()
        except ParseError as exc:
            logger.warning("Credential document unreadable: %s", exc)
            kept = store.quarantine_document()
            self.interface.notify(
                f"Credential document is malformed: {exc}. It was kept as {kept} "
                "and an empty store was started.",
                "warning",
            )

        try:
            store.verify_cipher()
        except AuthenticationError:
            self.interface.notify("Wrong passphrase.", "error")
            return False

        self.store = store
        self.coordinator = SyncCoordinator(
            store, cipher, self.backend or create_backend(self.config, self.home), self.home,
        )
        safe_audit(self.home, "UNLOCK", "Store unlocked")

        if token is None:
            token = self.interface.prompt_api_token()
            if token:
                try:
                    store.save_api_token(token)
                except ConfigIOError as exc:
                    self.interface.notify(f"Could not store API token: {exc}", "warning")
        self.api_token = token or None

        if self.api_token:
            self.synchronize()
        else:
            self.go_offline("no API token")

        self.state = SupervisorState.SUPERVISING
        self.interface.show_main()
        return True

    def synchronize(self) -> SyncReport:
        """Run the pull protocol in the background and pick the mode."""
        try:
            report = self.worker.run("sync", self.coordinator.synchronize, self.api_token)
        except SyncCancelled as exc:
            report = SyncReport(ok=False, error=str(exc))

        if report.ok:
            self.go_online()
            self.interface.notify(
                f"Synced {report.hosts} hosts, {report.passwords} passwords, {report.keys} keys."
            )
        else:
            self.go_offline(report.error or "sync failed")
        return report

    def go_online(self) -> None:
        self.offline = False
        self.store.attach_sync(self._push)

    def go_offline(self, reason: str) -> None:
        was_online = not self.offline
        self.offline = True
        if self.store is not None:
            self.store.detach_sync()
        logger.info("Local-only mode: %s", reason)
        if was_online or self.api_token:
            self.interface.notify(f"Sync unavailable ({reason}). Working locally.", "warning")
        else:
            self.interface.notify("Working in local mode.")

    def _push(self) -> None:
        self.coordinator.push(self.api_token)

    # ── operations used by the interface ───────────────────────────────

    def save(self) -> bool:
        """Persist the store (and push when online).

        Returns False only if the local write failed.
        """
        try:
            self.worker.run("save", self._save_task)
        except NetworkError as exc:
            self.go_offline(str(exc))
        except (ConfigIOError, SyncCancelled) as exc:
            self.interface.notify(f"Save failed: {exc}", "error")
            return False
        return True

    def _save_task(self, cancel: threading.Event) -> None:
        self.store.save()

    def push_now(self) -> bool:
        """Push the local document immediately."""
        if not self.api_token:
            self.interface.notify("No API token configured; nothing to push.", "warning")
            return False
        try:
            self.worker.run("push", self._push_task)
        except (NetworkError, ParseError, SyncCancelled) as exc:
            self.go_offline(str(exc))
            return False
        if self.offline:
            self.go_online()
        self.interface.notify("Pushed local credentials.")
        return True

    def _push_task(self, cancel: threading.Event) -> None:
        self.coordinator.push(self.api_token)

    def restore_backup(self, reload: bool = True) -> bool:
        """Undo the last sync (restore + push), then reload.

        With reload=False the caller is responsible for requesting the reload.

        Raises:
            RestoreError: Restoring failed.
        """
        token = None if self.offline else self.api_token
        try:
            restored = self.worker.run("restore", self._restore_task, token)
        except NetworkError as exc:
            self.interface.notify(f"Backup restored locally, but push failed: {exc}", "warning")
            restored = 1
        if not restored:
            self.interface.notify("No backup to restore.", "warning")
            return False
        self.interface.notify("Backup restored.")
        if reload:
            self.handle(ReloadRequested())
        return True

    def _restore_task(self, token: Optional[str], cancel: threading.Event) -> int:
        return self.coordinator.restore_and_push(token)

    # ── remote sessions ────────────────────────────────────────────────

    def connect(self, host_name: str, transfer: bool = False) -> Optional[SessionOutcome]:
        """Hand the terminal to a session on host_name and take it back."""
        try:
            _, host = self.store.find_host_by_name(host_name)
        except KeyError:
            self.interface.notify(f"Host not found: {host_name}", "error")
            return None

        try:
            session = self._session_for(host, transfer)
        except (AuthenticationError, ConfigIOError) as exc:
            self.interface.notify(f"Cannot use credential for {host.name}: {exc}", "error")
            return None

        self.state = SupervisorState.SUSPENDED
        safe_audit(self.home, "SESSION_START", f"Session to {host.name}", {"transfer": transfer})

        outcome: Optional[SessionOutcome] = None
        try:
            with self.terminal.handoff():
                outcome = self._run_session(host, session)
        except TerminalError as exc:
            logger.error("Terminal handoff for %s failed: %s", host.name, exc)
            if outcome is None:
                outcome = SessionOutcome(host=host.name, error=str(exc))
            elif outcome.ok:
                outcome = outcome.model_copy(update={"error": str(exc)})
        finally:
            if outcome is None:
                outcome = SessionOutcome(host=host.name, error="Session interrupted")
            self.handle(SessionEnded(outcome=outcome))
        return outcome

    def _run_session(self, host: Host, session: RemoteSession) -> SessionOutcome:
        try:
            return self.worker.run("session", self._session_task, session)
        except (SshmgrError, OSError) as exc:
            return SessionOutcome(host=host.name, error=str(exc))
        except Exception as exc:
            logger.exception("Session to %s crashed", host.name)
            return SessionOutcome(host=host.name, error=f"{type(exc).__name__}: {exc}")

    @staticmethod
    def _session_task(session: RemoteSession, cancel: threading.Event) -> SessionOutcome:
        return session.run()

    def _session_for(self, host: Host, transfer: bool) -> RemoteSession:
        credential = self.store.resolve_credential(host)
        password = None
        key_file = None
        if isinstance(credential, Password):
            password = credential.reveal(self.store.cipher)
        elif isinstance(credential, Key):
            key_file = self.store.key_path(credential)
            if not key_file.exists():
                raise ConfigIOError(f"Key file missing: {key_file}")
        return self.session_factory(host, transfer, password=password, key_file=key_file)

    def _default_session(
        self,
        host: Host,
        transfer: bool,
        password: Optional[str] = None,
        key_file: Optional[Path] = None,
    ) -> RemoteSession:
        cls = FileTransferSession if transfer else RemoteSession
        return cls(host, self.config, self.paths.known_hosts, password=password, key_file=key_file)

    def _session_ended(self, outcome: SessionOutcome) -> None:
        self.state = SupervisorState.SUPERVISING
        self.last_outcome = outcome
        safe_audit(
            self.home, "SESSION_END", f"Session to {outcome.host} ended",
            {"exit_code": outcome.exit_code, "error": outcome.error},
        )
        if outcome.ok:
            self.interface.notify(f"Session to {outcome.host} ended.")
        else:
            self.interface.notify(f"Session to {outcome.host} failed: {outcome.error}", "error")
        self.interface.show_main()
