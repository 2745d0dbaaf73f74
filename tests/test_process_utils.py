"""
Tests for supervisor/process_utils.py.

Covers spawning, output passthrough, exit notification and signalling of
real child processes.
"""

import asyncio
import signal
import time

import psutil
import pytest

from helpers import PARENT_SCRIPT, SLEEP_SCRIPT, LineWaiter, python_command, wait_until_gone
from testkit.supervisor.process_utils import (
    ProcessState,
    ProcessStatus,
    get_descendants,
    signal_processes,
    spawn,
    wait_for_processes,
    split_command,
)

# =============================================================================
# ProcessState
# =============================================================================


@pytest.mark.unit
class TestProcessState:
    """Test state construction from return codes."""

    def test_normal_exit(self):
        state = ProcessState.from_returncode(3)

        assert state.status is ProcessStatus.EXITED
        assert state.returncode == 3
        assert state.has_exited
        assert not state.is_success

    def test_negative_returncode_is_signal(self):
        state = ProcessState.from_returncode(-signal.SIGTERM)

        assert state.status is ProcessStatus.SIGNALED
        assert state.signal_name == "SIGTERM"
        assert "SIGTERM" in state.describe()

    def test_zero_is_success(self):
        assert ProcessState.from_returncode(0).is_success


@pytest.mark.unit
class TestSplitCommand:
    """Test command string splitting."""

    def test_splits_command_and_args(self):
        assert split_command("npm run test:run") == ("npm", ["run", "test:run"])

    def test_respects_quotes(self):
        assert split_command("sh -c 'echo hi'") == ("sh", ["-c", "echo hi"])

    def test_empty_command_rejected(self):
        with pytest.raises(ValueError):
            split_command("   ")


# =============================================================================
# ProcessHandle
# =============================================================================


@pytest.mark.integration
class TestProcessHandle:
    """Test ProcessHandle against real processes."""

    @pytest.mark.asyncio
    async def test_output_is_passed_through(self, capsys):
        script = "import sys; print('hello out'); print('hello err', file=sys.stderr); sys.stdout.write('partial')"
        handle = await spawn("echo", *python_command(script))

        await handle.wait()
        await handle.close()

        captured = capsys.readouterr()
        assert "hello out\n" in captured.out
        assert "partial" in captured.out
        assert "hello err\n" in captured.err
        assert "hello err" not in captured.out

    @pytest.mark.asyncio
    async def test_exit_code_is_reported(self):
        handle = await spawn("exit3", *python_command("import sys; sys.exit(3)"))

        state = await handle.wait()

        assert state.status is ProcessStatus.EXITED
        assert state.returncode == 3
        assert handle.state is state
        await handle.close()

    @pytest.mark.asyncio
    async def test_killed_process_reports_signal(self):
        waiter = LineWaiter()
        handle = await spawn("sleeper", *python_command(SLEEP_SCRIPT), line_handler=waiter)
        await waiter.wait()

        assert handle.send_signal(signal.SIGKILL)
        state = await asyncio.wait_for(handle.wait(), 5)

        assert state.status is ProcessStatus.SIGNALED
        assert state.signal_name == "SIGKILL"
        assert handle.signals_sent == [signal.SIGKILL]
        await handle.close()

    @pytest.mark.asyncio
    async def test_missing_executable_fails_to_start(self):
        handle = await spawn("missing", "/nonexistent/definitely-not-here", ["--flag"])

        assert handle.failed_to_start
        assert handle.exit_event.is_set
        state = await asyncio.wait_for(handle.wait(), 1)
        assert state.status is ProcessStatus.FAILED_TO_START
        assert isinstance(state.error, FileNotFoundError)
        assert handle.pid is None

    @pytest.mark.asyncio
    async def test_every_waiter_sees_the_exit(self):
        handle = await spawn("short", *python_command("import time; time.sleep(0.1)"))

        states = await asyncio.gather(handle.wait(), handle.wait(), handle.wait())

        assert all(state is states[0] for state in states)
        assert states[0].is_success
        await handle.close()

    @pytest.mark.asyncio
    async def test_exit_listener_added_after_exit(self):
        handle = await spawn("short", *python_command("pass"))
        await handle.wait()
        seen = []

        handle.add_exit_listener(seen.append)
        await asyncio.sleep(0)

        assert seen == [handle.state]
        await handle.close()

    @pytest.mark.asyncio
    async def test_line_handler_receives_stdout_lines(self):
        waiter = LineWaiter("second")
        handle = await spawn("lines", *python_command("print('first'); print(''); print('second')"), line_handler=waiter)

        await handle.wait()
        await handle.close()

        assert waiter.lines == ["first", "second"]

    @pytest.mark.asyncio
    async def test_line_handler_errors_are_contained(self, caplog):
        def broken(line):
            raise RuntimeError("handler broke")

        handle = await spawn("lines", *python_command("print('a'); print('b')"), line_handler=broken)
        state = await handle.wait()
        await handle.close()

        assert state.is_success
        assert "handler broke" in caplog.text

    @pytest.mark.asyncio
    async def test_no_signal_after_exit(self):
        handle = await spawn("short", *python_command("pass"))
        await handle.wait()

        assert handle.send_signal(signal.SIGTERM) is False
        assert handle.signals_sent == []
        await handle.close()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        handle = await spawn("short", *python_command("pass"))
        await handle.wait()

        await handle.close()
        await handle.close()


# =============================================================================
# Process trees
# =============================================================================


@pytest.mark.integration
class TestProcessTrees:
    """Test descendant lookup and signalling with psutil."""

    def test_unknown_pid_has_no_descendants(self):
        assert get_descendants(None) == []
        assert get_descendants(2 ** 22 + 12345) == []

    @pytest.mark.asyncio
    async def test_descendants_can_be_signalled(self):
        lines = []
        handle = await spawn("parent", *python_command(PARENT_SCRIPT), line_handler=lines.append)
        for _ in range(200):
            if lines:
                break
            await asyncio.sleep(0.05)
        child_pid = int(lines[0])

        children = get_descendants(handle.pid)
        assert child_pid in [child.pid for child in children]

        signal_processes(children, signal.SIGKILL)
        assert await wait_until_gone(child_pid)

        handle.send_signal(signal.SIGKILL)
        await handle.wait()
        await handle.close()

    def test_vanished_processes_are_skipped(self):
        gone_pid = 2 ** 22 + 54321

        class _Vanished:
            pid = gone_pid

            def send_signal(self, sig):
                raise psutil.NoSuchProcess(gone_pid)

        # Must not raise.
        signal_processes([_Vanished()], signal.SIGTERM)

    def test_waiting_for_nothing_returns_immediately(self):
        assert wait_for_processes([], 5.0) == []

    @pytest.mark.asyncio
    async def test_wait_for_processes_reports_survivors(self):
        lines = []
        handle = await spawn("parent", *python_command(PARENT_SCRIPT), line_handler=lines.append)
        for _ in range(200):
            if lines:
                break
            await asyncio.sleep(0.05)
        child = psutil.Process(int(lines[0]))

        start = time.monotonic()
        alive = await asyncio.to_thread(wait_for_processes, [child], 0.2)
        assert time.monotonic() - start >= 0.2
        assert [proc.pid for proc in alive] == [child.pid]

        signal_processes([child], signal.SIGKILL)
        start = time.monotonic()
        assert await asyncio.to_thread(wait_for_processes, [child], 5.0) == []
        assert time.monotonic() - start < 2.0

        handle.send_signal(signal.SIGKILL)
        await handle.wait()
        await handle.close()
