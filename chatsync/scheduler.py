"""
Poll Scheduler.

A single chained timer: the next tick is scheduled only after the previous one
has fully completed, because the delay depends on the live retry counter.

Phases: idle -> scheduled -> running -> scheduled | stopped

All policy lives in ``on_tick_result``, which maps a ``TickOutcome`` to the
next connection state and delay without touching any timer, so it can be
exercised directly in tests. ``sleep`` is injectable for the same reason.
"""

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from chatsync.config import Settings
from chatsync.errors import PermissionDeniedError, TickOutcome, TransientError
from chatsync.metrics import record_poll_tick
from chatsync.schemas import ConnectionState

logger = logging.getLogger(__name__)

Tick = Callable[[], Awaitable[None]]
StateListener = Callable[[ConnectionState, Optional[str]], None]
Sleep = Callable[[float], Awaitable[None]]


class SchedulerPhase(str, Enum):
    IDLE = "idle"
    SCHEDULED = "scheduled"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass(frozen=True)
class Transition:
    """
    Result of one tick.

    Attributes:
        state: connection state to publish
        next_delay_ms: delay before the next tick, or None to stop polling
    """
    state: ConnectionState
    next_delay_ms: Optional[int]


def compute_delay(retry_count: int, base_interval_ms: int, max_delay_ms: int) -> int:
    """
    Exponential backoff delay.

    ``base_interval`` when nothing failed, else ``min(base * 2**retry_count, max)``.
    """
    if retry_count <= 0:
        return base_interval_ms
    return min(base_interval_ms * (2 ** retry_count), max_delay_ms)


class PollScheduler:
    """
    Re-invokes ``tick`` forever with backoff until stopped or forbidden.

    Args:
        tick: coroutine function performing one poll; raises TransientError
            or PermissionDeniedError on failure
        settings: source of base interval, delay cap and max attempts
        on_state: called after every tick with the new state and, for
            permission failures, the error code
        sleep: awaitable delay in seconds
    """

    def __init__(
        self,
        tick: Tick,
        settings: Settings,
        on_state: Optional[StateListener] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self._tick = tick
        self._base_interval_ms = settings.POLLING_INTERVAL_MS
        self._max_delay_ms = settings.MAX_POLLING_DELAY_MS
        self._max_attempts = settings.MAX_RETRY_ATTEMPTS
        self._on_state = on_state
        self._sleep = sleep

        self.retry_count = 0
        self.phase = SchedulerPhase.IDLE
        self._in_flight = False
        self._generation = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def next_delay(self) -> int:
        return compute_delay(self.retry_count, self._base_interval_ms, self._max_delay_ms)

    def reset(self) -> None:
        """Forget past failures; the next delay is the base interval again."""
        self.retry_count = 0

    def on_tick_result(self, outcome: TickOutcome) -> Transition:
        """
        Apply one tick outcome to the retry counter.

        - ok: retry counter reset, ``connected``
        - transient: counter incremented, ``reconnecting`` or ``error`` once
          the counter reaches MAX_RETRY_ATTEMPTS; polling continues either way
        - permission: ``forbidden`` and no further tick
        """
        if outcome is TickOutcome.OK:
            self.retry_count = 0
            return Transition(ConnectionState.CONNECTED, self.next_delay())

        if outcome is TickOutcome.TRANSIENT:
            self.retry_count += 1
            if self.retry_count >= self._max_attempts:
                state = ConnectionState.ERROR
            else:
                state = ConnectionState.RECONNECTING
            return Transition(state, self.next_delay())

        return Transition(ConnectionState.FORBIDDEN, None)

    async def run_once(self) -> Optional[Transition]:
        """
        Run a single tick and apply its outcome.

        Returns None without calling ``tick`` when a tick is already in flight
        or polling has stopped, and None when the scheduler was stopped while
        the tick was running (its result is discarded).
        """
        if self._in_flight or self.phase is SchedulerPhase.STOPPED:
            return None

        generation = self._generation
        self._in_flight = True
        self.phase = SchedulerPhase.RUNNING
        error_code: Optional[str] = None
        try:
            await self._tick()
            outcome = TickOutcome.OK
        except TransientError as e:
            logger.warning(f"Poll failed (retry {self.retry_count + 1}): {e}")
            outcome = TickOutcome.TRANSIENT
        except PermissionDeniedError as e:
            logger.error(f"Poll forbidden, stopping: {e} (code={e.code})")
            outcome = TickOutcome.PERMISSION
            error_code = e.code
        finally:
            self._in_flight = False

        if generation != self._generation:
            logger.debug("Tick completed after stop, result discarded")
            return None

        record_poll_tick(outcome.value)
        transition = self.on_tick_result(outcome)
        if transition.next_delay_ms is None:
            self.phase = SchedulerPhase.STOPPED
        else:
            self.phase = SchedulerPhase.SCHEDULED

        if self._on_state is not None:
            self._on_state(transition.state, error_code)
        return transition

    async def _run(self) -> None:
        delay_ms = self.next_delay()
        while True:
            self.phase = SchedulerPhase.SCHEDULED
            logger.debug(f"Next poll in {delay_ms} ms")
            await self._sleep(delay_ms / 1000)

            transition = await self.run_once()
            if self.phase is SchedulerPhase.STOPPED:
                return
            delay_ms = transition.next_delay_ms if transition is not None else self.next_delay()

    def _on_task_done(self, task: asyncio.Task) -> None:
        """Report a poll loop that ended on an unexpected exception."""
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.phase = SchedulerPhase.STOPPED
            logger.error(f"Poll loop crashed, polling stopped: {error!r}", exc_info=error)

    def start(self) -> None:
        """Begin chained polling. No-op if already running."""
        if self.is_running:
            return
        self.phase = SchedulerPhase.IDLE
        self._task = asyncio.get_running_loop().create_task(self._run())
        self._task.add_done_callback(self._on_task_done)
        logger.info(f"Polling started (interval={self._base_interval_ms} ms)")

    async def stop(self) -> None:
        """
        Cancel the pending timer and any in-flight tick.

        An in-flight tick that still completes can no longer publish a state
        or reschedule.
        """
        self._generation += 1
        self.phase = SchedulerPhase.STOPPED
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            logger.info("Polling stopped")
