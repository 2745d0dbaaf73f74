"""
This module contains the default configuration settings for testkit.
It defines the commands to run, the readiness probe target and the timings
used while waiting for and shutting down the server process.
Every value can be overridden from the environment (or a `.env` file) and
the modifiable ones also from the command line.
"""

import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ('true', '1', 't', 'yes', 'y')


#* --- Commands ---
SERVER_COMMAND = os.getenv("TESTKIT_SERVER_COMMAND", "npm run run")
DRIVER_COMMAND = os.getenv("TESTKIT_DRIVER_COMMAND", "npm run test:run")

#* --- Readiness Probe ---
SERVER_HOST = os.getenv("TESTKIT_HOST", "localhost")
SERVER_PORT = int(os.getenv("TESTKIT_PORT", "3000"))
# Full URL of the readiness probe. Derived from host and port when empty.
READINESS_URL = os.getenv("TESTKIT_URL", "")
READINESS_TIMEOUT = float(os.getenv("TESTKIT_READINESS_TIMEOUT", "60"))  # seconds
POLL_INTERVAL = float(os.getenv("TESTKIT_POLL_INTERVAL", "0.5"))          # seconds
PROBE_REQUEST_TIMEOUT = float(os.getenv("TESTKIT_PROBE_TIMEOUT", "2"))    # seconds per attempt

#* --- Shutdown ---
GRACEFUL_SHUTDOWN_TIMEOUT = float(os.getenv("TESTKIT_SHUTDOWN_TIMEOUT", "5"))  # seconds before force-killing
SHUTDOWN_SIGNAL = os.getenv("TESTKIT_SHUTDOWN_SIGNAL", "SIGTERM")
ESCALATION_SIGNAL = os.getenv("TESTKIT_ESCALATION_SIGNAL", "SIGKILL")
SIGNAL_CHILDREN = _env_bool("TESTKIT_SIGNAL_CHILDREN", "True")
PIPE_DRAIN_TIMEOUT = 1.0  # seconds to wait for a child's output after it exited

#* --- Application variables ---
VERBOSE_LOGGING = _env_bool("TESTKIT_VERBOSE", "False")
PROCESS_TITLE = "Testkit - Orchestrator"

#* --- MODIFIABLE SETTINGS (Changeable per run via --option=value) ---
MODIFIABLE_SETTINGS = {
    "SERVER_COMMAND", "DRIVER_COMMAND",
    "SERVER_HOST", "SERVER_PORT", "READINESS_URL",
    "READINESS_TIMEOUT", "POLL_INTERVAL", "PROBE_REQUEST_TIMEOUT",
    "GRACEFUL_SHUTDOWN_TIMEOUT", "SHUTDOWN_SIGNAL", "ESCALATION_SIGNAL", "SIGNAL_CHILDREN",
    "VERBOSE_LOGGING",
}

# Short command-line spellings for modifiable settings.
OPTION_ALIASES = {
    "port": "SERVER_PORT",
    "host": "SERVER_HOST",
    "url": "READINESS_URL",
    "server": "SERVER_COMMAND",
    "driver": "DRIVER_COMMAND",
    "timeout": "READINESS_TIMEOUT",
    "interval": "POLL_INTERVAL",
    "shutdown-timeout": "GRACEFUL_SHUTDOWN_TIMEOUT",
    "verbose": "VERBOSE_LOGGING",
}
