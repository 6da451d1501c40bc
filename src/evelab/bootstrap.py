"""
Bootstrap protocol — upload and run the lab's setup scripts in order.

Each script runs in its own SSH session and is followed by a forced
reboot, because later scripts depend on kernel state that only exists
after the reboot. A script that prints the sentinel line
"VM is already configured" ends the whole protocol early: the machine
was set up by a previous run and nothing else needs to happen.
"""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Callable, Optional, Sequence

from .errors import Cancelled, RemoteCommandError
from .models import SettingsOutcome
from .remote import BootstrapClient, RemoteSession

logger = logging.getLogger(__name__)

SENTINEL = "VM is already configured"


def is_already_configured(output: str) -> bool:
    """True if the last non-empty output line is the sentinel.

    Comparison ignores case and surrounding whitespace, so CRLF line
    endings and trailing newlines do not matter.
    """
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    if not lines:
        return False
    return lines[-1].casefold() == SENTINEL.casefold()


def run_script(session: RemoteSession, script: Path, remote_home: str) -> str:
    """Upload one script, make it executable and run it with sudo.

    Returns:
        The script's stdout.

    Raises:
        RemoteCommandError: On transfer failure or a non-zero exit.
    """
    remote_path = f"{remote_home}/{script.name}"
    session.upload(script, remote_path)

    for command in (f"chmod +x {remote_path}", f"sudo {remote_path}"):
        result = session.run(command)
        if result.stdout.strip():
            logger.debug("%s output:\n%s", command, result.stdout.rstrip())
        if not result.ok:
            raise RemoteCommandError(
                command, result.exit_status, result.stderr or result.stdout,
            )
    return result.stdout


def run_bootstrap(
    client: BootstrapClient,
    address: str,
    scripts: Sequence[Path],
    remote_home: str,
    connect_attempts: int = 3,
    reboot_settle: float = 60.0,
    cancel: Optional[threading.Event] = None,
    sleep: Optional[Callable[[float], None]] = None,
) -> SettingsOutcome:
    """Run every bootstrap script against the lab at ``address``.

    Args:
        client: SSH client factory.
        address: External address of the running instance.
        scripts: Local script paths, in execution order.
        remote_home: Remote directory scripts are uploaded into.
        connect_attempts: Connection attempts per script.
        reboot_settle: Seconds to wait after each reboot.
        cancel: Event checked before each script and after each settle.
        sleep: Replacement for the settle wait.

    Returns:
        CONFIGURED when every script ran, NOT_MODIFIED when a script
        reported the machine as already configured.
    """
    for index, script in enumerate(scripts, start=1):
        if cancel is not None and cancel.is_set():
            raise Cancelled(f"cancelled before bootstrap script {script.name}")

        logger.info(
            "Bootstrap %d/%d: %s on %s", index, len(scripts), script.name, address,
        )
        session = client.connect(address, max_attempts=connect_attempts)
        try:
            output = run_script(session, script, remote_home)
            if is_already_configured(output):
                logger.info("%s reports the VM is already configured", address)
                return SettingsOutcome.NOT_MODIFIED
            session.reboot()
        finally:
            session.close()

        logger.info("Waiting %ss for %s to come back", reboot_settle, address)
        if sleep is not None:
            sleep(reboot_settle)
        elif cancel is not None:
            cancel.wait(reboot_settle)
        else:
            time.sleep(reboot_settle)
        if cancel is not None and cancel.is_set():
            raise Cancelled(f"cancelled while {address} rebooted after {script.name}")

    return SettingsOutcome.CONFIGURED
