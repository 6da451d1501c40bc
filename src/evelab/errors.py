"""
Error types raised by the lab lifecycle.

Every error carries enough context (resource name, attempted operation)
to diagnose a failed run without re-running it.
"""

from __future__ import annotations

from typing import Optional


class LabError(Exception):
    """Base class for every failure surfaced by evelab."""


class ConfigError(LabError):
    """Raised when the lab configuration is missing or invalid."""


class GatewayError(LabError):
    """Raised when the cloud provider rejects a request.

    Args:
        operation: Gateway operation that failed (e.g. 'create_instance').
        resource: Name of the resource the operation targeted.
        cause: Provider error message.
    """

    def __init__(self, operation: str, resource: str, cause: object = None) -> None:
        self.operation = operation
        self.resource = resource
        self.cause = cause
        message = f"{operation} {resource} failed"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class ResourceExists(GatewayError):
    """Raised when the provider reports the resource is already there."""


class PreconditionError(LabError):
    """Raised when an operation is requested on a lab in the wrong state."""


class PollTimeout(LabError):
    """Raised when a poll runs out of attempts or passes its deadline."""

    def __init__(
        self,
        description: str,
        attempts: int,
        last_error: Optional[BaseException] = None,
    ) -> None:
        self.description = description
        self.attempts = attempts
        self.last_error = last_error
        message = f"gave up waiting for {description} after {attempts} attempts"
        if last_error is not None:
            message = f"{message}: {last_error}"
        super().__init__(message)


class Cancelled(LabError):
    """Raised when a run is cancelled between poll iterations or round trips."""


class ConnectExhausted(LabError):
    """Raised when SSH to the lab could not be established.

    Args:
        address: Target address.
        attempts: How many connection attempts were made.
        last_error: The error from the final attempt.
    """

    def __init__(
        self,
        address: str,
        attempts: int,
        last_error: Optional[BaseException] = None,
    ) -> None:
        self.address = address
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"could not connect to {address} after {attempts} attempts: {last_error}"
        )


class RemoteCommandError(LabError):
    """Raised when a remote command exits non-zero or a transfer fails."""

    def __init__(
        self,
        command: str,
        exit_status: Optional[int] = None,
        output: str = "",
    ) -> None:
        self.command = command
        self.exit_status = exit_status
        self.output = output
        if exit_status is None:
            message = f"remote operation failed: {command}"
        else:
            message = f"'{command}' exited with status {exit_status}"
        if output:
            message = f"{message}: {output.strip()}"
        super().__init__(message)
