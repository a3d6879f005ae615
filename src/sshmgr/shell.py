"""
sshmgr shell -- the interactive interface the supervisor drives.

Views:
    connect     host list; ``connect`` opens an SSH session (default)
    edit        hosts, passwords and keys with add/edit/delete
    transfer    host list; ``connect`` opens an sftp session

Commands:
    hosts | passwords | keys        List entries
    connect <host|#>                Open a session (sftp in transfer view)
    transfer <host|#>               Open an sftp session
    host add|edit|delete [host|#]   Manage hosts
    password add|edit|delete [#]    Manage passwords
    key add|edit|delete [#]         Manage keys
    sync [push|pull|status]         Talk to the sync service
    restore                         Undo the last sync, push, reload
    status                          Mode and counts
    audit [N]                       Recent audit log entries
    view <connect|edit|transfer>    Switch view
    reload                          Restart with a fresh store
    help                            Show commands
    exit / quit                     Leave
"""

from __future__ import annotations

import logging
import shlex
from pathlib import Path
from typing import Callable, Optional

from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table

from . import __version__
from .audit import read_audit_log
from .errors import IntegrityError, RestoreError, SshmgrError
from .models import Host, Key, Password
from .supervisor import (
    ConnectRequested,
    Event,
    PassphraseEntered,
    QuitRequested,
    ReloadRequested,
    SessionSupervisor,
    SupervisorState,
)

logger = logging.getLogger("sshmgr.shell")

try:
    import readline
except ImportError:  # Windows without pyreadline
    readline = None  # type: ignore[assignment]

VIEWS = ["connect", "edit", "transfer"]

COMMANDS = [
    "hosts", "passwords", "keys", "connect", "transfer",
    "host", "password", "key", "sync", "restore",
    "status", "audit", "view", "reload", "help", "exit", "quit",
]

CRUD_SUBCOMMANDS = ["add", "edit", "delete"]
SYNC_SUBCOMMANDS = ["push", "pull", "status"]

MIN_API_TOKEN_LENGTH = 32
AUDIT_DEFAULT_LIMIT = 20

_LEVEL_STYLE = {"info": "green", "warning": "yellow", "error": "red"}


class ShellInterface:
    """Readline REPL implementing the supervisor's Interface protocol.

    Args:
        view: Initial view (connect, edit or transfer).
        console: Rich console to render to.
        input_func: Line reader (builtin input by default).
    """

    def __init__(
        self,
        view: str = "connect",
        console: Optional[Console] = None,
        input_func: Callable[[str], str] = input,
    ):
        if view not in VIEWS:
            raise ValueError(f"Unknown view: {view}")
        self.view = view
        self.console = console or Console()
        self.input_func = input_func
        self.supervisor: Optional[SessionSupervisor] = None
        self.dispatch: dict[str, Callable[[list[str]], Optional[Event]]] = {
            "hosts": lambda args: self._handle_hosts(),
            "passwords": lambda args: self._handle_passwords(),
            "keys": lambda args: self._handle_keys(),
            "connect": lambda args: self._handle_connect(args, self.view == "transfer"),
            "transfer": lambda args: self._handle_connect(args, True),
            "host": self._handle_host,
            "password": self._handle_password,
            "key": self._handle_key,
            "sync": self._handle_sync,
            "restore": lambda args: self._handle_restore(),
            "status": lambda args: self._handle_status(),
            "audit": self._handle_audit,
            "view": self._handle_view,
            "reload": lambda args: ReloadRequested(),
            "help": lambda args: self._handle_help(),
            "exit": lambda args: QuitRequested(),
            "quit": lambda args: QuitRequested(),
        }

    # ── Interface protocol ─────────────────────────────────────────────

    def next_event(self, supervisor: SessionSupervisor) -> Event:
        """Read input until a command produces a supervisor event."""
        self.supervisor = supervisor
        if supervisor.state is SupervisorState.UNLOCKING:
            return self._ask_passphrase()

        while True:
            try:
                line = self.input_func(self._prompt())
            except EOFError:
                self.console.print()
                return QuitRequested()
            except KeyboardInterrupt:
                self.console.print()
                continue

            event = self.execute(line)
            if event is not None:
                return event

    def prompt_api_token(self) -> Optional[str]:
        self.console.print(
            "\n  No sync API token found. Enter one to sync with the service,\n"
            "  or leave it empty to work in local mode.\n"
        )
        while True:
            try:
                token = self._ask("API token", default="", password=True).strip()
            except (EOFError, KeyboardInterrupt):
                self.console.print()
                return None
            if not token:
                return None
            if len(token) >= MIN_API_TOKEN_LENGTH:
                return token
            self.console.print(
                f"  [red]Invalid API token:[/] expected at least {MIN_API_TOKEN_LENGTH} characters."
            )

    def notify(self, message: str, level: str = "info") -> None:
        style = _LEVEL_STYLE.get(level, "white")
        self.console.print(f"  [{style}]{message}[/]")

    def show_main(self) -> None:
        mode = "[yellow]local[/]" if self.supervisor and self.supervisor.offline else "[green]synced[/]"
        self.console.print(f"\n  [bold cyan]sshmgr[/] v{__version__}  view: [bold]{self.view}[/]  mode: {mode}")
        self._handle_hosts()
        if self.view == "edit":
            self._handle_passwords()
            self._handle_keys()
        self.console.print("  Type [bold]help[/] for commands.\n")

    # ── parsing ────────────────────────────────────────────────────────

    def execute(self, line: str) -> Optional[Event]:
        """Run one command line. Returns an event for the supervisor, if any."""
        line = line.strip()
        if not line:
            return None
        try:
            parts = shlex.split(line)
        except ValueError:
            parts = line.split()

        cmd, args = parts[0].lower(), parts[1:]
        handler = self.dispatch.get(cmd)
        if handler is None:
            self.console.print(f"  Unknown: {cmd}. Type 'help' for options.")
            return None

        try:
            return handler(args)
        except RestoreError:
            raise
        except (SshmgrError, ValueError, IndexError, KeyError) as exc:
            self.console.print(f"  [red]Error:[/] {exc}")
        except (EOFError, KeyboardInterrupt):
            self.console.print("\n  Cancelled.")
        return None

    def _prompt(self) -> str:
        return f"sshmgr[{self.view}]> "

    def _ask(self, label: str, default: Optional[str] = None, password: bool = False) -> str:
        if default is None:
            return Prompt.ask(f"  {label}", console=self.console, password=password)
        return Prompt.ask(f"  {label}", console=self.console, password=password, default=default)

    def _confirm(self, label: str, default: bool = False) -> bool:
        return Confirm.ask(f"  {label}", console=self.console, default=default)

    def _ask_passphrase(self) -> Event:
        try:
            passphrase = self._ask("Passphrase", password=True)
        except (EOFError, KeyboardInterrupt):
            self.console.print()
            return QuitRequested()
        return PassphraseEntered(passphrase=passphrase)

    @property
    def store(self):
        return self.supervisor.store

    def _host_index(self, ref: str) -> int:
        for i, host in enumerate(self.store.hosts):
            if host.name == ref:
                return i
        return self._number(ref, len(self.store.hosts), "host")

    @staticmethod
    def _number(ref: str, count: int, kind: str) -> int:
        if ref.isdigit() and 1 <= int(ref) <= count:
            return int(ref) - 1
        raise IndexError(f"No {kind} '{ref}'")

    def _credential_label(self, host: Host) -> str:
        credential = self.store.resolve_credential(host)
        if isinstance(credential, Password):
            return f"password: {credential.description}"
        if isinstance(credential, Key):
            return f"key: {credential.description}"
        return "[dim]none[/]"

    # ═══════════════════════════════════════════════════════════════════
    # Listing
    # ═══════════════════════════════════════════════════════════════════

    def _handle_hosts(self) -> None:
        hosts = self.store.hosts
        if not hosts:
            self.console.print("  No hosts yet." + ("" if self.view == "edit" else " Switch to the edit view to add one."))
            return None
        table = Table(title="Hosts", title_justify="left")
        table.add_column("#", justify="right", style="dim")
        table.add_column("Name", style="bold cyan")
        table.add_column("Address")
        table.add_column("Login")
        table.add_column("Credential")
        table.add_column("Description", style="dim")
        for i, host in enumerate(hosts, 1):
            table.add_row(
                str(i), host.name, f"{host.ip}:{host.port}", host.login,
                self._credential_label(host), host.description,
            )
        self.console.print(table)
        return None

    def _handle_passwords(self) -> None:
        if not self.store.passwords:
            self.console.print("  No passwords stored.")
            return None
        table = Table(title="Passwords", title_justify="left")
        table.add_column("#", justify="right", style="dim")
        table.add_column("Description", style="bold")
        for i, password in enumerate(self.store.passwords, 1):
            table.add_row(f"p{i}", password.description)
        self.console.print(table)
        return None

    def _handle_keys(self) -> None:
        if not self.store.keys:
            self.console.print("  No keys stored.")
            return None
        table = Table(title="Keys", title_justify="left")
        table.add_column("#", justify="right", style="dim")
        table.add_column("Description", style="bold")
        table.add_column("Source")
        for i, key in enumerate(self.store.keys, 1):
            source = "stored" if key.is_local else key.path
            table.add_row(f"k{i}", key.description, source)
        self.console.print(table)
        return None

    # ═══════════════════════════════════════════════════════════════════
    # Sessions
    # ═══════════════════════════════════════════════════════════════════

    def _handle_connect(self, args: list[str], transfer: bool) -> Optional[Event]:
        if not args:
            self.console.print("  Usage: connect <host|#>")
            return None
        host = self.store.hosts[self._host_index(" ".join(args))]
        return ConnectRequested(host_name=host.name, transfer=transfer)

    # ═══════════════════════════════════════════════════════════════════
    # Editing
    # ═══════════════════════════════════════════════════════════════════

    def _handle_host(self, args: list[str]) -> None:
        sub = args[0] if args else ""
        ref = " ".join(args[1:])
        if sub == "add":
            host = self._host_form(None)
            if host is not None:
                self.store.add_host(host)
                self._saved(f"Host '{host.name}' added.")
        elif sub == "edit" and ref:
            index = self._host_index(ref)
            host = self._host_form(self.store.hosts[index])
            if host is not None:
                self.store.update_host(index, host)
                self._saved(f"Host '{host.name}' updated.")
        elif sub == "delete" and ref:
            index = self._host_index(ref)
            name = self.store.hosts[index].name
            if self._confirm(f"Delete host '{name}'?"):
                self.store.delete_host(index)
                self._saved(f"Host '{name}' deleted.")
        else:
            self.console.print("  Usage: host <add|edit|delete> [host|#]")

    def _host_form(self, current: Optional[Host]) -> Optional[Host]:
        if not self.store.passwords and not self.store.keys:
            raise IntegrityError("Add a password or key before adding hosts")
        cur = current or Host.model_construct(
            name="", description="", login="", ip="", port="22", credential_id=None,
            terminal_type="", keep_alive=False, compression=False,
        )
        fields = {
            "name": self._ask("Name", default=cur.name or None),
            "ip": self._ask("Address", default=cur.ip or None),
            "port": self._ask("Port", default=cur.port),
            "login": self._ask("Login", default=cur.login or None),
            "description": self._ask("Description", default=cur.description),
        }
        current_ref = self._credential_code(cur) if current else None
        fields["credential_id"] = self._parse_credential(
            self._ask("Credential (p<N> password, k<N> key)", default=current_ref)
        )
        fields["terminal_type"] = self._ask("Terminal type (empty for default)", default=cur.terminal_type)
        fields["keep_alive"] = self._confirm("Keep alive?", default=cur.keep_alive)
        fields["compression"] = self._confirm("Compression?", default=cur.compression)
        try:
            return Host(**fields)
        except ValidationError as exc:
            for err in exc.errors():
                self.console.print(f"  [yellow]{'.'.join(str(p) for p in err['loc'])}: {err['msg']}[/]")
            return None

    def _credential_code(self, host: Host) -> Optional[str]:
        ref = self.store.credential_ref(host)
        if ref is None:
            return None
        return f"p{ref + 1}" if ref >= 0 else f"k{-ref}"

    def _parse_credential(self, code: str) -> str:
        code = code.strip().lower()
        if not code:
            raise ValueError("A credential is required")
        if code[0] == "p":
            return self.store.passwords[self._number(code[1:], len(self.store.passwords), "password")].id
        if code[0] == "k":
            return self.store.keys[self._number(code[1:], len(self.store.keys), "key")].id
        raise ValueError(f"Invalid credential '{code}' (use p<N> or k<N>)")

    def _handle_password(self, args: list[str]) -> None:
        sub = args[0] if args else ""
        ref = args[1].lstrip("pP") if len(args) > 1 else ""
        cipher = self.store.cipher
        if sub == "add":
            description = self._ask("Description")
            secret = self._ask("Password", password=True)
            self.store.add_password(Password.create(description, secret, cipher))
            self._saved(f"Password '{description}' added.")
        elif sub == "edit" and ref:
            index = self._number(ref, len(self.store.passwords), "password")
            current = self.store.passwords[index]
            description = self._ask("Description", default=current.description)
            secret = self._ask("Password (empty to keep)", default="", password=True)
            updated = (
                Password.create(description, secret, cipher) if secret
                else Password(description=description, password=current.password)
            )
            self.store.update_password(index, updated)
            self._saved(f"Password '{description}' updated.")
        elif sub == "delete" and ref:
            index = self._number(ref, len(self.store.passwords), "password")
            description = self.store.passwords[index].description
            if self._confirm(f"Delete password '{description}'?"):
                self.store.delete_password(index)
                self._saved(f"Password '{description}' deleted.")
        else:
            self.console.print("  Usage: password <add|edit|delete> [#]")

    def _handle_key(self, args: list[str]) -> None:
        sub = args[0] if args else ""
        ref = args[1].lstrip("kK") if len(args) > 1 else ""
        if sub == "add":
            key = self._key_form(None)
            self.store.add_key(key)
            self._saved(f"Key '{key.description}' added.")
        elif sub == "edit" and ref:
            index = self._number(ref, len(self.store.keys), "key")
            key = self._key_form(self.store.keys[index])
            self.store.update_key(index, key)
            self._saved(f"Key '{key.description}' updated.")
        elif sub == "delete" and ref:
            index = self._number(ref, len(self.store.keys), "key")
            description = self.store.keys[index].description
            if self._confirm(f"Delete key '{description}'?"):
                self.store.delete_key(index)
                self._saved(f"Key '{description}' deleted.")
        else:
            self.console.print("  Usage: key <add|edit|delete> [#]")

    def _key_form(self, current: Optional[Key]) -> Key:
        cipher = self.store.cipher
        description = self._ask("Description", default=current.description if current else None)
        default_path = current.path if current and not current.is_local else None
        path = self._ask("Private key file", default=default_path)
        if current is not None and current.is_local and not path:
            return Key(description=description, key_data=current.key_data)
        if self._confirm("Store the key material in the encrypted store?", default=True):
            try:
                material = Path(path).expanduser().read_text(encoding="utf-8")
            except OSError as exc:
                raise ValueError(f"Cannot read {path}: {exc}") from exc
            return Key.create(description, cipher, key_data=material)
        return Key.create(description, cipher, path=path)

    def _saved(self, message: str) -> None:
        if self.supervisor.save():
            self.notify(message)

    # ═══════════════════════════════════════════════════════════════════
    # Sync and lifecycle
    # ═══════════════════════════════════════════════════════════════════

    def _handle_sync(self, args: list[str]) -> None:
        sub = args[0] if args else "push"
        if sub == "push":
            self.supervisor.push_now()
        elif sub == "pull":
            if not self.supervisor.api_token:
                self.notify("No API token configured.", "warning")
                return None
            self.supervisor.synchronize()
        elif sub == "status":
            status = self.supervisor.coordinator.status()
            table = Table(title="Sync", title_justify="left", show_header=False)
            table.add_column("Key", style="dim")
            table.add_column("Value")
            for key, value in status.items():
                table.add_row(key, "-" if value is None else str(value))
            self.console.print(table)
        else:
            self.console.print("  Usage: sync <push|pull|status>")
        return None

    def _handle_restore(self) -> Optional[Event]:
        if not self._confirm("Restore the backup taken before the last sync and push it?"):
            return None
        if self.supervisor.restore_backup(reload=False):
            return ReloadRequested()
        return None

    def _handle_status(self) -> None:
        sup = self.supervisor
        mode = "[yellow]local[/]" if sup.offline else "[green]synced[/]"
        self.console.print(
            f"\n  Mode: {mode}  View: {self.view}\n"
            f"  Hosts: {len(self.store.hosts)}  Passwords: {len(self.store.passwords)}  "
            f"Keys: {len(self.store.keys)}\n"
            f"  Home: {sup.home}\n"
        )
        if sup.last_outcome is not None:
            outcome = sup.last_outcome
            result = "ok" if outcome.ok else outcome.error
            self.console.print(f"  Last session: {outcome.host} ({result})\n")
        return None

    def _handle_audit(self, args: list[str]) -> None:
        limit = int(args[0]) if args and args[0].isdigit() else AUDIT_DEFAULT_LIMIT
        try:
            entries = read_audit_log(self.supervisor.home, limit=limit)
        except OSError as exc:
            self.console.print(f"  [red]Error:[/] cannot read audit log: {exc}")
            return None
        if not entries:
            self.console.print("  Audit log is empty.")
            return None
        table = Table(title="Audit log", title_justify="left")
        table.add_column("Time", style="dim")
        table.add_column("Event", style="bold")
        table.add_column("Detail")
        for entry in entries:
            table.add_row(entry.timestamp[:19].replace("T", " "), entry.event_type, entry.detail)
        self.console.print(table)
        return None

    def _handle_view(self, args: list[str]) -> None:
        if not args or args[0] not in VIEWS:
            self.console.print(f"  Usage: view <{'|'.join(VIEWS)}>")
            return None
        self.view = args[0]
        self.show_main()
        return None

    def _handle_help(self) -> None:
        self.console.print(
            Panel(
                "[bold]hosts[/] | [bold]passwords[/] | [bold]keys[/]    List entries\n"
                "[bold]connect[/] <host|#>             Open a session (sftp in transfer view)\n"
                "[bold]transfer[/] <host|#>            Open an sftp session\n"
                "[bold]host[/] add|edit|delete          Manage hosts\n"
                "[bold]password[/] add|edit|delete      Manage passwords\n"
                "[bold]key[/] add|edit|delete           Manage keys\n"
                "[bold]sync[/] [push|pull|status]      Talk to the sync service\n"
                "[bold]restore[/]                       Undo the last sync, push, reload\n"
                "[bold]status[/]                        Mode and counts\n"
                "[bold]audit[/] [N]                     Recent audit log entries\n"
                "[bold]view[/] <connect|edit|transfer> Switch view\n"
                "[bold]reload[/]                        Restart with a fresh store\n"
                "[bold]help[/]                          This message\n"
                "[bold]exit[/] / [bold]quit[/]                   Leave",
                title="sshmgr",
                border_style="cyan",
            )
        )
        return None

    # ── readline ───────────────────────────────────────────────────────

    def completer(self, text: str, state: int) -> Optional[str]:
        """Tab completion for commands, subcommands and host names."""
        line = readline.get_line_buffer().strip() if readline else ""
        parts = line.split()

        if len(parts) <= 1 and not line.endswith(" "):
            options = [c for c in COMMANDS if c.startswith(text)]
        elif parts[0] in ("host", "password", "key") and len(parts) <= 2:
            options = [c for c in CRUD_SUBCOMMANDS if c.startswith(text)]
        elif parts[0] == "sync":
            options = [c for c in SYNC_SUBCOMMANDS if c.startswith(text)]
        elif parts[0] == "view":
            options = [c for c in VIEWS if c.startswith(text)]
        elif parts[0] in ("connect", "transfer", "host") and self.supervisor and self.supervisor.store:
            options = [h.name for h in self.supervisor.store.hosts if h.name.startswith(text)]
        else:
            options = []

        return options[state] if state < len(options) else None

    def install_readline(self, history_file: Path) -> None:
        """Enable tab completion and load command history."""
        if readline is None:
            return
        readline.set_completer(self.completer)
        readline.parse_and_bind("tab: complete")
        try:
            readline.read_history_file(str(history_file))
        except (FileNotFoundError, OSError):
            pass

    def save_history(self, history_file: Path) -> None:
        if readline is None:
            return
        try:
            history_file.parent.mkdir(parents=True, exist_ok=True)
            readline.write_history_file(str(history_file))
        except OSError as exc:
            logger.debug("Could not save shell history: %s", exc)
