"""Exceptions raised by the supervisor components."""

from typing import List, Optional


class SupervisorError(Exception):
    """Base class for all supervisor errors."""


class SpawnFailure(SupervisorError):
    """A process could not be started (executable missing, not permitted, ...)."""

    def __init__(self, command: str, args: Optional[List[str]] = None, error: Optional[BaseException] = None) -> None:
        self.command = command
        self.args_list = list(args or [])
        self.error = error
        super().__init__(f"Failed to start '{command}': {error}")


class ReadinessTimeout(SupervisorError, TimeoutError):
    """The readiness probe did not succeed within the allotted time."""

    def __init__(self, target: str, timeout: float) -> None:
        self.target = target
        self.timeout = timeout
        super().__init__(f"Timeout: {target} was not available within {timeout:g} seconds.")


class ProbeTransportError(SupervisorError, ConnectionError):
    """A readiness probe could not reach its target. Treated as 'not ready yet'."""
