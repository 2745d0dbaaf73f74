import time
import asyncio
import logging
import requests
from dataclasses import dataclass
from typing import Awaitable, Callable

from testkit.supervisor.exceptions import ProbeTransportError, ReadinessTimeout

log = logging.getLogger(__name__)

# A probe performs one readiness check: True = ready, False = not yet.
# It may raise a transport error, which also means "not yet".
Probe = Callable[[], Awaitable[bool]]

TRANSPORT_ERRORS = (ProbeTransportError, requests.exceptions.RequestException, OSError)


@dataclass(frozen=True)
class ReadinessConfig:
    target: str
    timeout: float = 60.0
    interval: float = 0.5
    request_timeout: float = 2.0

    def __post_init__(self) -> None:
        if self.timeout <= 0:
            raise ValueError(f"Readiness timeout must be positive, got {self.timeout}.")
        if self.interval <= 0:
            raise ValueError(f"Poll interval must be positive, got {self.interval}.")


def http_probe(url: str, request_timeout: float = 2.0) -> Probe:
    """
    Builds a probe that issues one GET request to `url`.

    The request runs in a worker thread so the event loop stays responsive.
    Connection errors are raised to the caller as ProbeTransportError; a
    response with an error status simply reports "not ready".

    :param url: The URL to check.
    :param request_timeout: Timeout in seconds for a single request.
    """
    def _get() -> bool:
        try:
            response = requests.get(url, timeout=request_timeout)
        except requests.exceptions.RequestException as e:
            raise ProbeTransportError(f"Could not reach {url}: {e}") from e
        response.close()
        return response.ok

    async def probe() -> bool:
        return await asyncio.to_thread(_get)

    return probe


class ReadinessPoller:
    """Repeatedly runs a readiness probe until it succeeds or time runs out."""

    def __init__(self, probe: Probe) -> None:
        self.probe = probe
        self.attempts = 0

    async def _attempt(self, target: str, budget: float) -> bool:
        self.attempts += 1
        try:
            return bool(await asyncio.wait_for(self.probe(), budget))
        except asyncio.TimeoutError:
            log.debug(f"Readiness probe {self.attempts} against {target} gave no answer within {budget:.2f}s.")
            return False
        except TRANSPORT_ERRORS as e:
            # Expected while the server is still starting (e.g. connection refused).
            log.debug(f"Readiness probe {self.attempts} against {target} failed: {e}")
            return False

    async def wait(self, target: str, timeout: float, interval: float) -> None:
        """
        Polls until the probe reports success.

        Each attempt is cut off one `interval` past the deadline at the latest,
        so the timeout fires between `timeout` and `timeout + interval`.

        :param target: The probed address, used for logging and the timeout error.
        :param timeout: Total time budget in seconds.
        :param interval: Delay in seconds between attempts.
        :raises ReadinessTimeout: If the probe did not succeed within `timeout`.
        """
        log.info(f"Waiting for {target} to become ready (timeout {timeout:g}s)...")
        start_time = time.monotonic()
        deadline = start_time + timeout
        while True:
            if await self._attempt(target, deadline + interval - time.monotonic()):
                log.info(f"{target} is up and running after {time.monotonic() - start_time:.2f}s.")
                return

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                log.error(f"{target} did not become available after {timeout:g} seconds.")
                raise ReadinessTimeout(target, timeout)
            await asyncio.sleep(min(interval, remaining))

    async def wait_for(self, config: ReadinessConfig) -> None:
        await self.wait(config.target, config.timeout, config.interval)
