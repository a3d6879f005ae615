"""
Interactive remote sessions via the system OpenSSH client.

The SSH protocol is the client's job; sshmgr only builds the command
line from a Host and its credential, runs it in the foreground with the
terminal handed over, and reports how it ended.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from pathlib import Path
from typing import Callable, Optional

from pydantic import BaseModel

from ..config import AppConfig
from ..errors import ConfigIOError
from ..fsutil import ensure_private_dir
from ..models import Host

logger = logging.getLogger("sshmgr.session.remote")

SSH_ERROR_EXIT = 255


class SessionOutcome(BaseModel):
    """How a remote session ended."""

    host: str
    exit_code: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class RemoteSession:
    """One interactive shell on a remote host.

    Args:
        host: Target host.
        config: Application config (binaries, timeouts, default TERM).
        known_hosts: known_hosts file the client should use.
        password: Plaintext password when the host uses a password.
        key_file: Private key path when the host uses a key.
        runner: subprocess.run-compatible callable.
    """

    def __init__(
        self,
        host: Host,
        config: AppConfig,
        known_hosts: Path,
        password: Optional[str] = None,
        key_file: Optional[Path] = None,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self.host = host
        self.config = config
        self.known_hosts = known_hosts
        self.password = password
        self.key_file = key_file
        self.runner = runner
        self.sshpass = shutil.which("sshpass") if password and not key_file else None

    @property
    def binary(self) -> str:
        return self.config.ssh_binary

    @property
    def target(self) -> str:
        return f"{self.host.login}@{self.host.ip}"

    @property
    def term(self) -> str:
        return self.host.terminal_type or self.config.terminal_type

    def _options(self) -> list[str]:
        opts = [
            "-o", f"UserKnownHostsFile={self.known_hosts}",
            "-o", "StrictHostKeyChecking=accept-new",
            "-o", f"ConnectTimeout={self.config.connect_timeout}",
        ]
        if self.host.keep_alive and self.config.keep_alive_interval:
            opts += ["-o", f"ServerAliveInterval={self.config.keep_alive_interval}"]
        if self.host.compression:
            opts.append("-C")
        if self.key_file is not None:
            opts += ["-i", str(self.key_file), "-o", "IdentitiesOnly=yes"]
        return opts

    def build_command(self) -> list[str]:
        cmd = [self.binary, "-t", "-p", self.host.port, *self._options(), self.target]
        return self._wrap(cmd)

    def _wrap(self, cmd: list[str]) -> list[str]:
        if self.sshpass:
            return [self.sshpass, "-e", *cmd]
        return cmd

    def environment(self) -> dict[str, str]:
        env = dict(os.environ)
        env["TERM"] = self.term
        if self.sshpass and self.password:
            env["SSHPASS"] = self.password
        return env

    def run(self) -> SessionOutcome:
        """Run the client in the foreground until the remote side exits."""
        try:
            ensure_private_dir(self.known_hosts.parent)
        except ConfigIOError as exc:
            return SessionOutcome(host=self.host.name, error=str(exc))

        cmd = self.build_command()
        if self.password and not self.sshpass:
            logger.info("sshpass not found, %s will prompt for the password", self.binary)
        logger.info(
            "Starting %s session to %s (%s:%s, TERM=%s)",
            self.binary, self.host.name, self.host.ip, self.host.port, self.term,
        )

        try:
            result = self.runner(cmd, env=self.environment(), check=False)
        except OSError as exc:
            return SessionOutcome(host=self.host.name, error=f"Cannot start {cmd[0]}: {exc}")

        code = result.returncode
        error = None
        if code == SSH_ERROR_EXIT:
            error = f"{self.binary} could not connect to {self.host.name} (exit {code})"
        logger.info("Session to %s ended with status %s", self.host.name, code)
        return SessionOutcome(host=self.host.name, exit_code=code, error=error)


class FileTransferSession(RemoteSession):
    """Interactive sftp session (file-transfer mode)."""

    @property
    def binary(self) -> str:
        return self.config.sftp_binary

    def build_command(self) -> list[str]:
        cmd = [self.binary, "-P", self.host.port, *self._options(), self.target]
        return self._wrap(cmd)
