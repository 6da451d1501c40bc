"""
Remote Bootstrap Client — SSH sessions to the lab instance.

A freshly created instance does not accept SSH right away, so
``BootstrapClient.connect`` retries with a fixed backoff up to a hard
attempt cap. Nothing else retries: uploads, commands and the reboot
either succeed or raise RemoteCommandError.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

import paramiko

from .errors import Cancelled, ConnectExhausted, PollTimeout, RemoteCommandError
from .poller import Poller

logger = logging.getLogger(__name__)

REBOOT_COMMAND = "sudo reboot -f"

# Errors that mean "not reachable yet" while an instance boots.
CONNECT_ERRORS = (paramiko.SSHException, OSError, EOFError)

Dialer = Callable[[str, str, Path], Any]


@dataclass
class CommandResult:
    """Output of one remote command."""

    command: str
    stdout: str
    stderr: str
    exit_status: int

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


def paramiko_dial(
    address: str,
    username: str,
    key_file: Path,
    timeout: float = 10.0,
) -> paramiko.SSHClient:
    """Open an SSH connection with a private key.

    Host keys of lab instances are new on every create, so unknown keys
    are accepted.
    """
    client = paramiko.SSHClient()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    try:
        client.connect(
            address,
            username=username,
            key_filename=str(key_file),
            timeout=timeout,
            banner_timeout=timeout,
            auth_timeout=timeout,
            allow_agent=False,
            look_for_keys=False,
        )
    except BaseException:
        client.close()
        raise
    return client


class RemoteSession:
    """One SSH connection to the lab.

    Args:
        client: Connected paramiko.SSHClient (or anything with the same
            exec_command/open_sftp/close surface).
        address: Address the session is connected to.
        cancel: Event checked before every round trip.
    """

    def __init__(
        self,
        client: Any,
        address: str,
        cancel: Optional[threading.Event] = None,
    ) -> None:
        self._client = client
        self.address = address
        self._cancel = cancel
        self._closed = False

    def __enter__(self) -> "RemoteSession":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    def _before_round_trip(self, what: str) -> None:
        if self._closed:
            raise RemoteCommandError(what, output="session is closed")
        if self._cancel is not None and self._cancel.is_set():
            raise Cancelled(f"cancelled before {what} on {self.address}")

    def upload(self, local_file: Path, remote_path: str) -> None:
        """Copy a local file to the instance over SFTP.

        Raises:
            RemoteCommandError: If the transfer fails.
        """
        what = f"upload {local_file} -> {remote_path}"
        self._before_round_trip(what)
        logger.info("Uploading %s to %s:%s", local_file, self.address, remote_path)
        try:
            sftp = self._client.open_sftp()
            try:
                sftp.put(str(local_file), remote_path)
            finally:
                sftp.close()
        except (paramiko.SSHException, OSError) as exc:
            raise RemoteCommandError(what, output=str(exc)) from exc

    def run(self, command: str) -> CommandResult:
        """Run a command and block until it exits.

        stderr is merged into stdout as soon as the command starts;
        ``CommandResult.stderr`` only holds anything that arrived before.

        Returns:
            CommandResult; a non-zero exit status is returned, not raised.

        Raises:
            RemoteCommandError: If the command could not be executed at all.
        """
        self._before_round_trip(command)
        logger.debug("Running on %s: %s", self.address, command)
        try:
            _stdin, stdout, stderr = self._client.exec_command(command)
            # One merged stream, so a chatty stderr cannot stall the channel
            # while stdout is read to EOF.
            stdout.channel.set_combine_stderr(True)
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            exit_status = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as exc:
            raise RemoteCommandError(command, output=str(exc)) from exc
        return CommandResult(command=command, stdout=out, stderr=err, exit_status=exit_status)

    def reboot(self) -> None:
        """Force a reboot and close the session.

        The connection drops as the instance goes down, so no exit status
        is awaited. The session is unusable afterwards.
        """
        self._before_round_trip(REBOOT_COMMAND)
        logger.info("Rebooting %s", self.address)
        try:
            self._client.exec_command(REBOOT_COMMAND)
        except (paramiko.SSHException, OSError) as exc:
            raise RemoteCommandError(REBOOT_COMMAND, output=str(exc)) from exc
        finally:
            self.close()

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._client.close()


class BootstrapClient:
    """Opens SSH sessions to the lab with bounded retry.

    Args:
        username: SSH user on the instance.
        key_file: Private key for that user.
        backoff: Seconds to wait after a failed attempt.
        connect_timeout: Per-attempt TCP/SSH handshake timeout.
        dialer: ``(address, username, key_file) -> client``; defaults to
            paramiko. Tests substitute a fake.
        cancel: Event that aborts retries and session round trips.
        sleep: Replacement for the backoff wait.
    """

    def __init__(
        self,
        username: str,
        key_file: Path,
        backoff: float = 20.0,
        connect_timeout: float = 10.0,
        dialer: Optional[Dialer] = None,
        cancel: Optional[threading.Event] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ) -> None:
        self.username = username
        self.key_file = Path(key_file)
        self.backoff = backoff
        self.connect_timeout = connect_timeout
        self._dialer = dialer
        self._cancel = cancel
        self._sleep = sleep

    def _dial(self, address: str) -> Any:
        logger.info("SSH to %s@%s", self.username, address)
        if self._dialer is not None:
            return self._dialer(address, self.username, self.key_file)
        return paramiko_dial(
            address, self.username, self.key_file, timeout=self.connect_timeout,
        )

    def connect(self, address: str, max_attempts: int = 3) -> RemoteSession:
        """Connect to ``address``, retrying while the instance boots.

        Raises:
            ConnectExhausted: After ``max_attempts`` failed attempts.
            Cancelled: If the cancel event is set while retrying.
        """
        poller = Poller(
            interval=self.backoff,
            max_attempts=max_attempts,
            cancel=self._cancel,
            sleep=self._sleep,
            description=f"SSH on {address}",
        )
        try:
            client = poller.wait_for(
                lambda: self._dial(address),
                ready=lambda c: c is not None,
                retry_on=CONNECT_ERRORS,
            )
        except PollTimeout as exc:
            raise ConnectExhausted(address, exc.attempts, exc.last_error) from exc
        logger.info("Connected to %s", address)
        return RemoteSession(client, address, cancel=self._cancel)
