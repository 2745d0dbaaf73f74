"""
Event primitives for the supervisor.

`ExitEvent` is a single-fire broadcast: the first `fire()` records a value
and every past, present and future waiter observes that same value.
`first_completed` races awaitables and returns whichever finishes first.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional, Tuple

log = logging.getLogger(__name__)

_UNSET = object()


class ExitEvent:
    """A state snapshot plus an event that fires exactly once."""

    def __init__(self) -> None:
        self._value: Any = _UNSET
        self._event = asyncio.Event()
        self._listeners: List[Callable[[Any], None]] = []

    @property
    def is_set(self) -> bool:
        return self._value is not _UNSET

    @property
    def value(self) -> Optional[Any]:
        """The fired value, or None while the event has not fired."""
        return None if self._value is _UNSET else self._value

    def fire(self, value: Any) -> bool:
        """
        Records `value` and wakes all waiters and listeners.

        :param value: The terminal value observed by every subscriber.
        :return: True on the first call, False if the event had already fired.
        """
        if self.is_set:
            return False
        self._value = value
        self._event.set()
        listeners, self._listeners = self._listeners, []
        for callback in listeners:
            self._notify(callback)
        return True

    async def wait(self) -> Any:
        """Waits for the event; returns at once if it already fired."""
        await self._event.wait()
        return self._value

    def add_listener(self, callback: Callable[[Any], None]) -> None:
        """
        Registers a callback invoked once with the fired value.
        If the event already fired, the callback is scheduled immediately.
        """
        if self.is_set:
            asyncio.get_running_loop().call_soon(self._notify, callback)
        else:
            self._listeners.append(callback)

    def _notify(self, callback: Callable[[Any], None]) -> None:
        try:
            callback(self._value)
        except Exception as e:
            log.error(f"Exit listener {callback!r} failed: {e}", exc_info=True)


async def first_completed(*awaitables: Awaitable[Any]) -> Tuple[int, Any]:
    """
    Runs the awaitables concurrently and returns as soon as one finishes.

    The losing tasks are cancelled. When several finish in the same loop
    iteration the lowest index wins.

    :return: The winner's index and its result.
    :raises: Whatever the winning awaitable raised.
    """
    if not awaitables:
        raise ValueError("first_completed() needs at least one awaitable")

    tasks = [asyncio.ensure_future(aw) for aw in awaitables]
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()

    winner = min(i for i, task in enumerate(tasks) if task in done)
    for i, task in enumerate(tasks):
        # Retrieve exceptions of finished losers so they are not reported as unhandled.
        if i != winner and task.done() and not task.cancelled():
            task.exception()
    return winner, tasks[winner].result()
