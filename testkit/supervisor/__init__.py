"""
The Supervisor package.
Manages the lifecycle of the server and driver processes of a testkit run.

This package contains the Orchestrator and its helper modules, which together
handle spawning the processes, waiting for the server to become ready and
shutting it down again.
"""
from .orchestrator import Orchestrator, OrchestrationResult, Outcome, run
from .process_utils import ProcessHandle, ProcessState, ProcessStatus, spawn
from .readiness import ReadinessConfig, ReadinessPoller, http_probe
from .shutdown import ShutdownCoordinator, ShutdownPolicy, ShutdownState

__all__ = [
    'Orchestrator', 'OrchestrationResult', 'Outcome', 'run',
    'ProcessHandle', 'ProcessState', 'ProcessStatus', 'spawn',
    'ReadinessConfig', 'ReadinessPoller', 'http_probe',
    'ShutdownCoordinator', 'ShutdownPolicy', 'ShutdownState',
]
