"""
sshmgr CLI -- start the interactive credential manager.

    sshmgr                  host list, connect over SSH
    sshmgr --edit           manage hosts, passwords and keys
    sshmgr --file-transfer  host list, connect over sftp

Entry point: sshmgr.cli:main
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import click
from rich.console import Console

from . import __version__
from .config import AppConfig, StorePaths, load_config, resolve_home, save_config
from .errors import ConfigIOError, RestoreError
from .fsutil import ensure_private_dir
from .shell import ShellInterface
from .supervisor import SessionSupervisor, SupervisorState

logger = logging.getLogger("sshmgr.cli")

console = Console()

HISTORY_FILE = ".shell_history"


def setup_logging(paths: StorePaths, config: AppConfig) -> None:
    """Send logs to home/logs/sshmgr.log; the terminal belongs to the UI."""
    ensure_private_dir(paths.log_dir)
    handler = logging.FileHandler(paths.log_dir / "sshmgr.log")
    handler.setFormatter(
        logging.Formatter("%(asctime)s [%(name)s] %(levelname)s: %(message)s")
    )
    root = logging.getLogger()
    for existing in list(root.handlers):
        if isinstance(existing, logging.FileHandler) and existing.baseFilename == handler.baseFilename:
            root.removeHandler(existing)
            existing.close()
    root.addHandler(handler)
    root.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))


def run(home: Path, view: str) -> int:
    """Run supervisors until one quits. Returns the process exit code."""
    while True:
        config = load_config(home)
        shell = ShellInterface(view=view, console=console)
        supervisor = SessionSupervisor(home, config, shell)
        history = home / HISTORY_FILE
        shell.install_readline(history)
        try:
            final = supervisor.run()
        finally:
            shell.save_history(history)
            supervisor.close()

        if final is SupervisorState.RESTARTING:
            logger.info("Restarting with a fresh store")
            console.print("  [dim]Reloading...[/]")
            continue
        return 0


@click.command()
@click.version_option(version=__version__, prog_name="sshmgr")
@click.option("--edit", "view", flag_value="edit", help="Start in the edit view.")
@click.option("--file-transfer", "view", flag_value="transfer", help="Start in file-transfer (sftp) mode.")
def main(view):
    """sshmgr -- encrypted SSH credentials, synced, one keystroke from a shell."""
    home = resolve_home()
    paths = StorePaths.for_home(home)

    try:
        ensure_private_dir(home)
        config = load_config(home)
        if not paths.config_file.exists():
            save_config(home, config)
        setup_logging(paths, config)
    except (ConfigIOError, OSError) as exc:
        console.print(f"[red]Cannot initialize {home}:[/] {exc}")
        sys.exit(1)

    logger.info("sshmgr %s starting (home=%s, view=%s)", __version__, home, view or "connect")
    try:
        code = run(home, view or "connect")
    except RestoreError as exc:
        logger.critical("Restore from backup failed: %s", exc)
        console.print(
            f"\n[bold red]Restore from backup failed:[/] {exc}\n"
            f"Local state in {home} may be inconsistent. Check the *.old files by hand."
        )
        sys.exit(1)
    except ConfigIOError as exc:
        logger.error("Store unusable: %s", exc)
        console.print(f"[red]Store unusable:[/] {exc}")
        sys.exit(1)

    console.print("  Goodbye.\n")
    sys.exit(code)
