import time
import logging
from enum import Enum
from dataclasses import dataclass, replace
from typing import List, Optional

from testkit.supervisor import process_utils
from testkit.supervisor.events import first_completed
from testkit.supervisor.exceptions import ReadinessTimeout, SpawnFailure
from testkit.supervisor.process_utils import LineHandler, ProcessHandle, ProcessState, ProcessStatus
from testkit.supervisor.readiness import Probe, ReadinessConfig, ReadinessPoller, http_probe
from testkit.supervisor.shutdown import ShutdownCoordinator, ShutdownPolicy

log = logging.getLogger(__name__)

#* --- Exit codes ---
EXIT_SUCCESS = 0
EXIT_ERROR = 1
EXIT_SERVER_FAILED_TO_START = 3
EXIT_READINESS_TIMED_OUT = 4


class Outcome(Enum):
    SUCCESS = "success"
    DRIVER_FAILED = "driver_failed"
    SERVER_FAILED_TO_START = "server_failed_to_start"
    READINESS_TIMED_OUT = "readiness_timed_out"
    ERROR = "error"


@dataclass
class OrchestrationResult:
    """
    The outcome of one orchestration run.

    `shutdown_forced` is None when no server process was created, otherwise
    True if the server had to be force-killed.
    """
    outcome: Outcome = Outcome.ERROR
    driver_exit_code: Optional[int] = None
    shutdown_forced: Optional[bool] = None
    error: Optional[BaseException] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome is Outcome.SUCCESS

    @property
    def exit_code(self) -> int:
        """Maps the outcome to the exit code of the testkit process."""
        if self.outcome is Outcome.SUCCESS:
            return EXIT_SUCCESS
        if self.outcome is Outcome.DRIVER_FAILED:
            code = self.driver_exit_code
            if code is not None and 0 < code < 256:
                return code
            if code is not None and code < 0:
                return 128 + (-code)
            return EXIT_ERROR
        if self.outcome is Outcome.SERVER_FAILED_TO_START:
            return EXIT_SERVER_FAILED_TO_START
        if self.outcome is Outcome.READINESS_TIMED_OUT:
            return EXIT_READINESS_TIMED_OUT
        return EXIT_ERROR


class Orchestrator:
    """
    Starts a server, waits until it is ready, runs a driver process to
    completion and shuts the server down again.

    Every failure before the shutdown is recorded in the result instead of
    being raised, and the server is always shut down once it was spawned.
    """

    def __init__(self, readiness_config: ReadinessConfig, shutdown_policy: Optional[ShutdownPolicy] = None,
                 probe: Optional[Probe] = None, line_handler: Optional[LineHandler] = None,
                 pipe_drain_timeout: float = 1.0) -> None:
        self.readiness_config = readiness_config
        self.shutdown_policy = shutdown_policy or ShutdownPolicy()
        self.probe = probe or http_probe(readiness_config.target, readiness_config.request_timeout)
        self.line_handler = line_handler
        self.pipe_drain_timeout = pipe_drain_timeout
        self.server: Optional[ProcessHandle] = None
        self.driver: Optional[ProcessHandle] = None
        self._shutting_down = False

    async def run(self, server_command: str, server_args: List[str],
                  driver_command: str, driver_args: List[str]) -> OrchestrationResult:
        """
        Runs the full server/driver sequence.

        :return: The accumulated OrchestrationResult. Only cancellation escapes.
        """
        result = OrchestrationResult()
        start_time = time.monotonic()
        try:
            log.info("Starting server process...")
            self.server = await process_utils.spawn("server", server_command, server_args, self.line_handler)
            if self.server.failed_to_start:
                result.outcome = Outcome.SERVER_FAILED_TO_START
                result.error = SpawnFailure(server_command, server_args, self.server.state.error)
                return result

            self.server.add_exit_listener(self._on_server_exit)
            if not await self._wait_until_ready(result):
                return result

            log.info("Running driver process...")
            await self._run_driver(driver_command, driver_args, result)
        except Exception as e:
            log.critical(f"An unexpected error occurred: {e}", exc_info=True)
            result.outcome = Outcome.ERROR
            result.error = e
        finally:
            # Once the driver is done (or anything failed), shut the server down.
            if self.server is not None:
                await self._shutdown_server(result)
            log.info(f"Orchestration finished in {time.monotonic() - start_time:.2f}s: {result.outcome.value}.")
        return result

    async def _wait_until_ready(self, result: OrchestrationResult) -> bool:
        """Waits for readiness, giving up early if the server exits first."""
        poller = ReadinessPoller(self.probe)
        try:
            winner, state = await first_completed(poller.wait_for(self.readiness_config), self.server.wait())
        except ReadinessTimeout as e:
            result.outcome = Outcome.READINESS_TIMED_OUT
            result.error = e
            return False

        if winner == 1:
            log.error(f"Server process {state.describe()} before becoming ready.")
            result.outcome = Outcome.SERVER_FAILED_TO_START
            return False
        return True

    async def _run_driver(self, command: str, args: List[str], result: OrchestrationResult) -> None:
        self.driver = await process_utils.spawn("driver", command, args, self.line_handler)
        try:
            state = await self.driver.wait()
        finally:
            await self.driver.close(self.pipe_drain_timeout)

        if state.status is ProcessStatus.FAILED_TO_START:
            result.outcome = Outcome.DRIVER_FAILED
            result.error = SpawnFailure(command, args, state.error)
        elif state.is_success:
            log.info("Driver process finished successfully.")
            result.outcome = Outcome.SUCCESS
            result.driver_exit_code = 0
        else:
            log.error(f"Driver process {state.describe()}.")
            result.outcome = Outcome.DRIVER_FAILED
            result.driver_exit_code = state.returncode

    def _on_server_exit(self, state: ProcessState) -> None:
        if not self._shutting_down:
            log.warning(f"Server process {state.describe()} unexpectedly.")

    async def _shutdown_server(self, result: OrchestrationResult) -> None:
        self._shutting_down = True
        coordinator = ShutdownCoordinator(self.shutdown_policy)
        try:
            graceful = await coordinator.shutdown(self.server)
            result.shutdown_forced = not graceful
            if not graceful:
                log.warning("Server had to be force-killed.")
        except Exception as e:
            log.critical(f"Failed to shut down server process {self.server.pid}: {e}", exc_info=True)
            if result.outcome is Outcome.SUCCESS:
                result.outcome = Outcome.ERROR
            result.error = result.error or e
        finally:
            await self.server.close(self.pipe_drain_timeout)


async def run(server_command: str, server_args: List[str], readiness_target: str,
              driver_command: str, driver_args: List[str],
              readiness_config: Optional[ReadinessConfig] = None,
              shutdown_policy: Optional[ShutdownPolicy] = None,
              probe: Optional[Probe] = None) -> OrchestrationResult:
    """
    Runs one orchestration.

    :param readiness_target: The URL to probe; overrides the target of `readiness_config`.
    """
    if readiness_config is None:
        readiness_config = ReadinessConfig(target=readiness_target)
    else:
        readiness_config = replace(readiness_config, target=readiness_target)
    orchestrator = Orchestrator(readiness_config, shutdown_policy, probe=probe)
    return await orchestrator.run(server_command, server_args, driver_command, driver_args)
