"""
minectl Remote Update Dispatcher
================================

Runs the update procedure on a provisioned instance over SSH.

Shells out to the system ssh client. Exit status 255 is what ssh
itself returns for connection and authentication failures, so it is
told apart from a failing remote command: the former is retried with
backoff before any command runs, the latter is reported as-is and
never re-run.
"""

import logging
import shlex
import subprocess
from typing import Callable, List, Optional

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .errors import PreconditionError, RemoteCommandError, SSHConnectionError
from .template import SERVICE_NAME, UPDATE_SCRIPT_PATH

logger = logging.getLogger(__name__)

SSH_CONNECTION_FAILURE = 255


class RemoteServer:
    """
    SSH target for the update procedure.

    Usage:
        remote = RemoteServer("~/.ssh/id_minectl", "203.0.113.5", "root")
        remote.update_server(spec)
    """

    def __init__(
        self,
        ssh_key_path: str,
        host: str,
        user: str,
        port: int = 22,
        connect_attempts: int = 5,
        connect_max_wait: float = 30.0,
        command_timeout: int = 600,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        self.ssh_key_path = ssh_key_path
        self.host = host
        self.user = user
        self.port = port
        self.connect_attempts = connect_attempts
        self.connect_max_wait = connect_max_wait
        self.command_timeout = command_timeout
        self._sleep = sleep

    def _ssh_args(self, command: str) -> List[str]:
        return [
            "ssh",
            "-i", self.ssh_key_path,
            "-p", str(self.port),
            "-o", "StrictHostKeyChecking=no",
            "-o", "UserKnownHostsFile=/dev/null",
            "-o", "BatchMode=yes",
            "-o", "ConnectTimeout=10",
            f"{self.user}@{self.host}",
            command,
        ]

    def run(self, command: str, timeout: Optional[int] = None) -> str:
        """
        Execute one command remotely and return its stdout.

        Raises:
            SSHConnectionError: ssh could not connect or authenticate
            RemoteCommandError: The command exited non-zero or hung
            PreconditionError: No ssh client installed
        """
        logger.debug(f"ssh {self.user}@{self.host}: {command}")
        try:
            result = subprocess.run(
                self._ssh_args(command),
                capture_output=True,
                text=True,
                timeout=timeout or self.command_timeout,
            )
        except FileNotFoundError as e:
            raise PreconditionError(f"ssh client not found: {e}") from e
        except subprocess.TimeoutExpired as e:
            raise RemoteCommandError(self.host, command, -1, f"timed out after {e.timeout}s") from e

        if result.returncode == SSH_CONNECTION_FAILURE:
            raise SSHConnectionError(self.host, result.stderr.strip() or "connection failed")
        if result.returncode != 0:
            raise RemoteCommandError(self.host, command, result.returncode, result.stderr)
        return result.stdout

    def wait_until_reachable(self) -> None:
        """Retry a no-op command until an SSH session can be opened."""
        kwargs = {"sleep": self._sleep} if self._sleep is not None else {}
        retrying = Retrying(
            stop=stop_after_attempt(max(1, self.connect_attempts)),
            wait=wait_exponential(multiplier=1, min=1, max=self.connect_max_wait),
            retry=retry_if_exception_type(SSHConnectionError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
            **kwargs,
        )
        retrying(self.run, "true", 30)

    def update_command(self, spec) -> str:
        version = str(spec.extra.get("version", "latest"))
        return " && ".join([
            f"sudo systemctl stop {SERVICE_NAME}",
            f"sudo {UPDATE_SCRIPT_PATH} {shlex.quote(version)}",
            f"sudo systemctl start {SERVICE_NAME}",
        ])

    def update_server(self, spec) -> None:
        """Re-fetch the game server for spec and restart it."""
        self.wait_until_reachable()
        logger.info(f"Running update on {self.host} for {spec.name}")
        self.run(self.update_command(spec))
        logger.info(f"Update finished on {self.host}")
