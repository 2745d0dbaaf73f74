import time
import signal
import asyncio
import logging
from enum import Enum
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Union

from testkit.supervisor import process_utils
from testkit.supervisor.events import first_completed

if TYPE_CHECKING:
    from testkit.supervisor.process_utils import ProcessHandle

log = logging.getLogger(__name__)


def parse_signal(name: Union[str, int, signal.Signals]) -> signal.Signals:
    """
    Resolves a signal given as name ('SIGTERM', 'term'), number or Signals member.

    :raises ValueError: If the signal is unknown on this platform.
    """
    if isinstance(name, signal.Signals):
        return name
    if isinstance(name, int):
        return signal.Signals(name)
    key = name.strip().upper()
    if not key.startswith("SIG"):
        key = f"SIG{key}"
    try:
        return signal.Signals[key]
    except KeyError:
        raise ValueError(f"Unknown signal '{name}'.") from None


@dataclass(frozen=True)
class ShutdownPolicy:
    initial_signal: signal.Signals = signal.SIGTERM
    escalation_timeout: float = 5.0
    escalation_signal: signal.Signals = signal.SIGKILL
    signal_children: bool = True

    @classmethod
    def from_names(cls, initial_signal: str = "SIGTERM", escalation_timeout: float = 5.0,
                   escalation_signal: str = "SIGKILL", signal_children: bool = True) -> "ShutdownPolicy":
        return cls(
            initial_signal=parse_signal(initial_signal),
            escalation_timeout=float(escalation_timeout),
            escalation_signal=parse_signal(escalation_signal),
            signal_children=signal_children,
        )


class ShutdownState(Enum):
    RUNNING = "running"
    SIGNAL_SENT = "signal_sent"
    EXITED_GRACEFULLY = "exited_gracefully"
    ESCALATED = "escalated"
    EXITED_FORCED = "exited_forced"


class ShutdownCoordinator:
    """
    Runs the two-stage termination of a process.

    1. Sends the initial signal (default: SIGTERM).
    2. Waits for the process to exit, at most `escalation_timeout` seconds.
    3. If it is still running after the timeout, sends the escalation
       signal (default: SIGKILL) and waits for the exit.

    Descendants snapshotted before the first signal share the same budget:
    any of them still running once it is used up get the escalation signal,
    even when the process itself exited in time.

    The final wait has no timeout: a process that survives SIGKILL (e.g. stuck
    in uninterruptible sleep) makes `shutdown` hang until the kernel reaps it.
    """

    def __init__(self, policy: Optional[ShutdownPolicy] = None) -> None:
        self.policy = policy or ShutdownPolicy()
        self.state = ShutdownState.RUNNING
        self._outcome: Optional[bool] = None

    async def shutdown(self, handle: "ProcessHandle") -> bool:
        """
        Shuts the process down.

        :param handle: The process to stop.
        :return: True if it exited gracefully (or was already gone), False if it (or one of its descendants) had to be force-killed.
        """
        if self._outcome is not None:
            return self._outcome

        # If the process is already dead, there is nothing to signal.
        if handle.has_exited:
            log.debug(f"Process {handle.name} already {handle.state.describe()}; nothing to shut down.")
            self.state = ShutdownState.EXITED_GRACEFULLY
            self._outcome = True
            return True

        policy = self.policy
        children = process_utils.get_descendants(handle.pid) if policy.signal_children else []

        log.info(f"Sending {policy.initial_signal.name} to process {handle.pid}...")
        handle.send_signal(policy.initial_signal)
        process_utils.signal_processes(children, policy.initial_signal)
        self.state = ShutdownState.SIGNAL_SENT
        signal_time = time.monotonic()

        winner, _ = await first_completed(handle.wait(), asyncio.sleep(policy.escalation_timeout))
        if winner == 0:
            log.info(f"Process {handle.pid} shut down gracefully.")
            remaining = policy.escalation_timeout - (time.monotonic() - signal_time)
            survivors = await asyncio.to_thread(process_utils.wait_for_processes, children, remaining)
            if not survivors:
                self.state = ShutdownState.EXITED_GRACEFULLY
                self._outcome = True
                return True
            return self._kill_survivors(handle, survivors)

        self.state = ShutdownState.ESCALATED
        log.warning(
            f"Process {handle.pid} did not exit within {policy.escalation_timeout:g}s. "
            f"Sending {policy.escalation_signal.name}..."
        )
        if not handle.send_signal(policy.escalation_signal):
            log.info(f"Process {handle.pid} exited before {policy.escalation_signal.name} could be sent.")
        process_utils.signal_processes(children, policy.escalation_signal)

        final_state = await handle.wait()
        log.info(f"Process {handle.pid} {final_state.describe()}. Shutdown complete.")
        self.state = ShutdownState.EXITED_FORCED
        self._outcome = False
        return False

    def _kill_survivors(self, handle: "ProcessHandle", survivors: list) -> bool:
        """The process itself exited, but some of its descendants outlived the budget."""
        self.state = ShutdownState.ESCALATED
        pids = ", ".join(str(proc.pid) for proc in survivors)
        log.warning(
            f"{len(survivors)} child processes of {handle.pid} did not exit within "
            f"{self.policy.escalation_timeout:g}s ({pids}). Sending {self.policy.escalation_signal.name}..."
        )
        process_utils.signal_processes(survivors, self.policy.escalation_signal)
        self.state = ShutdownState.EXITED_FORCED
        self._outcome = False
        return False
