"""Child process scripts and small helpers shared by the supervisor tests."""

import asyncio
import sys
from typing import List, Tuple

import psutil

PYTHON = sys.executable

# Prints 'ready' once SIGTERM is ignored, then sleeps.
IGNORE_TERM_SCRIPT = """
import signal, time
signal.signal(signal.SIGTERM, signal.SIG_IGN)
print('ready', flush=True)
time.sleep(60)
"""

# Exits cleanly a moment after receiving SIGTERM.
SLOW_TERM_SCRIPT = """
import signal, sys, time
def _stop(signum, frame):
    time.sleep(0.1)
    sys.exit(0)
signal.signal(signal.SIGTERM, _stop)
print('ready', flush=True)
time.sleep(60)
"""

SLEEP_SCRIPT = "import time; print('ready', flush=True); time.sleep(60)"

# Starts a sleeping grandchild, prints its pid, then sleeps itself.
PARENT_SCRIPT = """
import subprocess, sys, time
child = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(60)'])
print(child.pid, flush=True)
time.sleep(60)
"""

# Exits on SIGTERM but leaves a grandchild behind that ignores it.
# Prints the grandchild pid once the grandchild ignores SIGTERM.
STUBBORN_CHILD_SCRIPT = """
import subprocess, sys, time
grandchild = subprocess.Popen(
    [sys.executable, '-c', "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); print('ready', flush=True); time.sleep(60)"],
    stdout=subprocess.PIPE,
)
grandchild.stdout.readline()
print(grandchild.pid, flush=True)
time.sleep(60)
"""

# argv: port, startup delay in seconds
HTTP_SERVER_SCRIPT = """
import http.server, sys, time
time.sleep(float(sys.argv[2]))

class Handler(http.server.BaseHTTPRequestHandler):
    def do_GET(self):
        self.send_response(200)
        self.end_headers()
        self.wfile.write(b'ok')

    def log_message(self, *args):
        pass

server = http.server.HTTPServer(('127.0.0.1', int(sys.argv[1])), Handler)
print('listening', flush=True)
server.serve_forever()
"""


def python_command(script: str, *args: str) -> Tuple[str, List[str]]:
    """Command and arguments that run `script` with the current interpreter."""
    return PYTHON, ["-c", script, *args]


class LineWaiter:
    """A line_handler that lets a test wait for a given stdout line."""

    def __init__(self, expected: str = "ready") -> None:
        self.expected = expected
        self.lines: List[str] = []
        self.seen = asyncio.Event()

    def __call__(self, line: str) -> None:
        self.lines.append(line)
        if line == self.expected:
            self.seen.set()

    async def wait(self, timeout: float = 10.0) -> None:
        await asyncio.wait_for(self.seen.wait(), timeout)

    async def probe(self) -> bool:
        """Readiness probe that succeeds once the expected line was printed."""
        return self.seen.is_set()


def is_gone(pid: int) -> bool:
    """True if the process no longer runs (reaped or left as a zombie)."""
    try:
        return psutil.Process(pid).status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True


async def wait_until_gone(pid: int, timeout: float = 5.0) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if is_gone(pid):
            return True
        await asyncio.sleep(0.05)
    return is_gone(pid)
