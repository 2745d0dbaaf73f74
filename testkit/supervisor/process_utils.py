import sys
import time
import shlex
import signal
import psutil
import asyncio
import logging
from enum import Enum
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from testkit.supervisor.events import ExitEvent

log = logging.getLogger(__name__)

LineHandler = Callable[[str], None]


#* --- Process State ---
class ProcessStatus(Enum):
    RUNNING = "running"
    EXITED = "exited"
    SIGNALED = "signaled"
    FAILED_TO_START = "failed_to_start"


@dataclass(frozen=True)
class ProcessState:
    """Lifecycle state of a spawned process."""
    status: ProcessStatus
    returncode: Optional[int] = None
    signal_name: Optional[str] = None
    error: Optional[BaseException] = None

    @property
    def has_exited(self) -> bool:
        return self.status is not ProcessStatus.RUNNING

    @property
    def is_success(self) -> bool:
        return self.status is ProcessStatus.EXITED and self.returncode == 0

    @classmethod
    def from_returncode(cls, returncode: int) -> "ProcessState":
        """Builds the terminal state from a Popen-style return code (negative = killed by signal)."""
        if returncode < 0:
            try:
                name = signal.Signals(-returncode).name
            except ValueError:
                name = f"SIG{-returncode}"
            return cls(ProcessStatus.SIGNALED, returncode=returncode, signal_name=name)
        return cls(ProcessStatus.EXITED, returncode=returncode)

    def describe(self) -> str:
        if self.status is ProcessStatus.EXITED:
            return f"exited with code {self.returncode}"
        if self.status is ProcessStatus.SIGNALED:
            return f"killed by {self.signal_name}"
        if self.status is ProcessStatus.FAILED_TO_START:
            return f"failed to start: {self.error}"
        return "running"


RUNNING = ProcessState(ProcessStatus.RUNNING)


#* --- Process Output ---
def _handle_stdout_line(name: str, line: str, line_handler: LineHandler) -> None:
    """Handle a line from stdout using the custom handler."""
    try:
        line_handler(line)
    except Exception as e:
        log.error(f"Error in custom line_handler for {name}: {e}", exc_info=True)


class _PassthroughProtocol(asyncio.SubprocessProtocol):
    """
    Forwards a child's stdout/stderr to our own streams line by line and
    reports the child's exit to its ProcessHandle.
    """

    def __init__(self, handle: "ProcessHandle") -> None:
        self._handle = handle
        self._buffers: Dict[int, bytes] = {1: b"", 2: b""}
        self.transport: Optional[asyncio.SubprocessTransport] = None
        self.pipes_closed = asyncio.Event()

    def connection_made(self, transport: asyncio.BaseTransport) -> None:
        self.transport = transport

    def pipe_data_received(self, fd: int, data: bytes) -> None:
        *lines, rest = (self._buffers.get(fd, b"") + data).split(b"\n")
        self._buffers[fd] = rest
        for line in lines:
            self._handle._emit(fd, line + b"\n")

    def pipe_connection_lost(self, fd: int, exc: Optional[Exception]) -> None:
        rest = self._buffers.pop(fd, b"")
        if rest:
            self._handle._emit(fd, rest)
        if not self._buffers:
            self.pipes_closed.set()

    def process_exited(self) -> None:
        self._handle._on_exit(self.transport.get_returncode())


#* --- Process Handle ---
class ProcessHandle:
    """
    Wraps one spawned OS process.

    The handle exposes a state snapshot and an exit event. The exit event fires
    exactly once, either when the process exits or when it fails to start, and
    any number of callers may wait on it.
    """

    def __init__(self, name: str, command: str, args: Optional[List[str]] = None,
                 line_handler: Optional[LineHandler] = None) -> None:
        self.name = name
        self.command = command
        self.args = list(args or [])
        self.line_handler = line_handler
        self.pid: Optional[int] = None
        self.signals_sent: List[signal.Signals] = []
        self.exit_event = ExitEvent()
        self._state = RUNNING
        self._protocol: Optional[_PassthroughProtocol] = None
        self._closed = False

    def __repr__(self) -> str:
        return f"<ProcessHandle {self.name} pid={self.pid} {self._state.status.value}>"

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def has_exited(self) -> bool:
        return self._state.has_exited

    @property
    def failed_to_start(self) -> bool:
        return self._state.status is ProcessStatus.FAILED_TO_START

    async def start(self) -> "ProcessHandle":
        """
        Spawns the process with piped output.

        OS-level spawn errors are not raised: they put the handle into the
        FAILED_TO_START state and fire the exit event.
        """
        log.info(f"Starting process: {self.name} ({shlex.join([self.command, *self.args])})...")
        loop = asyncio.get_running_loop()
        try:
            transport, protocol = await loop.subprocess_exec(
                lambda: _PassthroughProtocol(self),
                self.command, *self.args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            log.critical(f"Failed to start process '{self.name}': {e}")
            self._set_state(ProcessState(ProcessStatus.FAILED_TO_START, error=e))
            return self

        self._protocol = protocol
        self.pid = transport.get_pid()
        log.info(f"{self.name.capitalize()} started with PID: {self.pid}")
        return self

    def _emit(self, fd: int, data: bytes) -> None:
        text = data.decode("utf-8", errors="replace")
        stream = sys.stderr if fd == 2 else sys.stdout
        stream.write(text)
        stream.flush()
        if fd == 1 and self.line_handler:
            line = text.strip()
            if line:
                _handle_stdout_line(self.name, line, self.line_handler)

    def _on_exit(self, returncode: int) -> None:
        state = ProcessState.from_returncode(returncode)
        log.debug(f"Process {self.name} (PID {self.pid}) {state.describe()}.")
        self._set_state(state)

    def _set_state(self, state: ProcessState) -> None:
        if self._state.has_exited:
            return
        self._state = state
        self.exit_event.fire(state)

    async def wait(self) -> ProcessState:
        """Waits until the process has exited (or failed to start)."""
        return await self.exit_event.wait()

    def add_exit_listener(self, callback: Callable[[ProcessState], None]) -> None:
        self.exit_event.add_listener(callback)

    def send_signal(self, sig: signal.Signals) -> bool:
        """
        Sends a signal to the process.

        :return: True if the signal was delivered, False if the process is already gone.
        """
        if self._protocol is None or self.has_exited:
            log.debug(f"Not sending {sig.name} to {self.name}: process is not running.")
            return False
        try:
            self._protocol.transport.send_signal(sig)
        except ProcessLookupError:
            log.warning(f"Process {self.pid} no longer exists, skipping {sig.name}.")
            return False
        self.signals_sent.append(sig)
        return True

    async def close(self, timeout: float = 1.0) -> None:
        """
        Releases the process resources once it has exited.
        Waits up to `timeout` seconds for the remaining output to drain.
        """
        if self._closed or self._protocol is None:
            return
        self._closed = True
        try:
            await asyncio.wait_for(self._protocol.pipes_closed.wait(), timeout)
        except asyncio.TimeoutError:
            log.debug(f"Output pipes of {self.name} still open after {timeout}s; closing anyway.")
        finally:
            self._protocol.transport.close()


async def spawn(name: str, command: str, args: Optional[List[str]] = None,
                line_handler: Optional[LineHandler] = None) -> ProcessHandle:
    """Creates and starts a ProcessHandle. Check `failed_to_start` on the result."""
    return await ProcessHandle(name, command, args, line_handler).start()


def split_command(command_line: str) -> Tuple[str, List[str]]:
    """Splits a configured command string into the executable and its arguments."""
    parts = shlex.split(command_line)
    if not parts:
        raise ValueError("Command must not be empty.")
    return parts[0], parts[1:]


#* --- Process Trees ---
def get_descendants(pid: Optional[int]) -> List[psutil.Process]:
    """Returns all child processes of `pid`, recursively. Empty if it no longer exists."""
    if pid is None:
        return []
    try:
        return psutil.Process(pid).children(recursive=True)
    except psutil.NoSuchProcess:
        log.debug(f"Process {pid} no longer exists, skipping children retrieval.")
        return []


def signal_processes(processes: Iterable[psutil.Process], sig: signal.Signals) -> None:
    """Sends `sig` to every process, skipping the ones that already vanished."""
    for proc in processes:
        try:
            log.debug(f"Sending {sig.name} to child process (PID {proc.pid})")
            proc.send_signal(sig)
        except psutil.NoSuchProcess:
            log.debug(f"Process {proc.pid} no longer exists, skipping {sig.name}.")
            continue
        except psutil.AccessDenied:
            log.warning(f"Not permitted to send {sig.name} to process {proc.pid}.")


def _is_alive(proc: psutil.Process) -> bool:
    # Orphans nobody reaps linger as zombies; they are finished all the same.
    try:
        return proc.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False


def wait_for_processes(processes: List[psutil.Process], timeout: float) -> List[psutil.Process]:
    """
    Waits up to `timeout` seconds for the processes to terminate. Blocking.

    :return: The processes that are still running afterwards.
    """
    deadline = time.monotonic() + max(timeout, 0)
    alive = list(processes)
    while True:
        alive = [proc for proc in alive if _is_alive(proc)]
        remaining = deadline - time.monotonic()
        if not alive or remaining <= 0:
            return alive
        _, alive = psutil.wait_procs(alive, timeout=min(0.1, remaining))
