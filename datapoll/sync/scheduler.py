"""Client-side poll scheduler.

Repeatedly runs a caller-supplied poll function on the asyncio loop. The
next call is only ever scheduled from the completion of the previous one
(or from an explicit start()), so at most one poll is in flight. Polling
pauses while the page is hidden and cancels itself after repeated failures.

States: init -> active <-> paused, and cancelled from any of them.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable

from .envelope import now_ms
from .visibility import PageVisibility

logger = logging.getLogger(__name__)

MAX_ERRORS_BEFORE_QUIT = 3
DEFAULT_INTERVAL_SECONDS = 60 * 10

PollFunction = Callable[[int | None], Awaitable[Any] | Any]
StatusHandler = Callable[[dict[str, Any]], Any]
DisconnectHandler = Callable[[], Any]


class SchedulerState(Enum):
    """Lifecycle state of a poll scheduler."""

    INIT = "init"
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"


@dataclass
class PollContext:
    """Mutable polling state shared by a request and its scheduler."""

    state: SchedulerState = SchedulerState.INIT
    pending: bool = False
    error_count: int = 0
    last_poll: int | None = None  # epoch ms of the last successful poll

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "pending": self.pending,
            "error_count": self.error_count,
            "last_poll": self.last_poll,
        }


class PollScheduler:
    """Owns the single timer that triggers the next poll."""

    def __init__(self, request: "PollRequest"):
        self._request = request
        self._context = request.context
        self._handle: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()

    def clear_timer(self) -> None:
        """Cancel the pending timer, if any."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def start(self, immediate: bool = False) -> asyncio.TimerHandle:
        """Activate polling and schedule the next poll.

        Must be called from a running event loop.

        Args:
            immediate: Poll right away instead of after the interval.

        Returns:
            The scheduled timer handle.
        """
        self._context.state = SchedulerState.ACTIVE
        self.clear_timer()

        loop = asyncio.get_running_loop()
        delay = 0 if immediate else self._request.interval
        self._handle = loop.call_later(delay, self._fire)
        self._request._message_event()

        self._request._log("scheduler.start()")
        return self._handle

    def pause(self) -> None:
        """Pause polling. A timer already scheduled still fires, but the
        poll it triggers does nothing while paused."""
        self._context.state = SchedulerState.PAUSED
        self._request._message_event()
        self._request._log("scheduler.pause()")

    def unpause(self) -> None:
        """Return to active without scheduling anything."""
        self._context.state = SchedulerState.ACTIVE
        self._request._message_event()
        self._request._log("scheduler.unpause()")

    def cancel(self) -> None:
        """Stop polling until start() is called again."""
        self.clear_timer()
        self._context.state = SchedulerState.CANCELLED
        self._request._message_event()
        self._request._disconnect_event()
        self._request._log("scheduler.cancel()")

    def status(self) -> str:
        """Current state: "init", "active", "paused" or "cancelled"."""
        return self._context.state.value

    def _fire(self) -> None:
        self._handle = None
        task = asyncio.ensure_future(self._run_scheduled())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_scheduled(self) -> None:
        # Failures were already counted by poll(); the status stream and the
        # cancellation warning are how they surface from a timer.
        try:
            await self._request.poll()
        except Exception as e:
            logger.info(f"Scheduled poll failed: {e}")


class PollRequest:
    """A poll function wrapped in a resilient scheduler."""

    def __init__(
        self,
        pollfn: PollFunction,
        interval: float = DEFAULT_INTERVAL_SECONDS,
        long: bool = True,
        log_polls: bool = False,
        max_errors: int = MAX_ERRORS_BEFORE_QUIT,
    ):
        """Initialize the poll request.

        Args:
            pollfn: Called with the epoch ms of the last successful poll
                (None before the first); may be sync or async.
            interval: Seconds between polls. Ignored for long polling, where
                the next poll is sent as soon as one returns.
            long: Long polling mode.
            log_polls: Log scheduler activity at INFO instead of DEBUG.
            max_errors: Consecutive failures before the scheduler cancels.
        """
        if not callable(pollfn):
            raise TypeError("pollfn must be callable")

        self._pollfn = pollfn
        self.long = long
        self.interval = 0 if long else interval
        self.max_errors = max_errors
        self._log_level = logging.INFO if log_polls else logging.DEBUG

        self.context = PollContext()
        self.scheduler = PollScheduler(self)

        self._disconnect_handler: DisconnectHandler | None = None
        self._message_handler: StatusHandler | None = None
        self._unsubscribe_visibility: Callable[[], None] | None = None
        self._handler_tasks: set[asyncio.Task] = set()

    def _log(self, message: str) -> None:
        logger.log(self._log_level, message)

    async def poll(self) -> Any:
        """Run the poll function if the scheduler is active.

        Returns:
            The poll function's result, or None if not active.

        Raises:
            Exception: Whatever the poll function raised, after the failure
                has been counted and the scheduler updated.
        """
        self._log(f"poll() {self.context.snapshot()}")

        if self.context.state is not SchedulerState.ACTIVE:
            return None

        self.context.pending = True
        try:
            response = self._pollfn(self.context.last_poll)
            if inspect.isawaitable(response):
                response = await response
        except Exception:
            self.context.pending = False
            self.context.error_count += 1
            if self.context.error_count < self.max_errors:
                self.scheduler.start()
            else:
                self.context.error_count = 0
                self.scheduler.cancel()
                logger.warning(
                    f"Scheduled polling failed {self.max_errors} time(s) and was "
                    "cancelled. Call start() to restart polling."
                )
            raise
        finally:
            # Also reached when the awaiting task is cancelled
            self.context.pending = False

        self.context.error_count = 0
        self.context.last_poll = now_ms()

        # The state may have changed while the poll was in flight
        if self.context.state is SchedulerState.ACTIVE:
            self.scheduler.start()

        return response

    def handle_visibility_change(self, visible: bool) -> None:
        """Pause while hidden, resume when visible again.

        When a poll is still in flight on becoming visible, the scheduler is
        only unpaused and that poll's completion schedules the next one.
        """
        state = self.context.state

        if visible and state is SchedulerState.PAUSED and not self.context.pending:
            self.scheduler.start()
        elif visible and state is SchedulerState.PAUSED:
            self.scheduler.unpause()
        elif not visible and state is SchedulerState.ACTIVE:
            self.scheduler.clear_timer()
            self.scheduler.pause()
            self._disconnect_event()

    def sleep(self, visibility: PageVisibility) -> "PollRequest":
        """Pause polling whenever the given page becomes hidden."""
        self.awake()
        self._unsubscribe_visibility = visibility.subscribe(self.handle_visibility_change)
        return self

    def awake(self) -> "PollRequest":
        """Stop following page visibility."""
        if self._unsubscribe_visibility is not None:
            self._unsubscribe_visibility()
            self._unsubscribe_visibility = None
        return self

    def on_disconnect(self, fn: DisconnectHandler) -> "PollRequest":
        """Set the callback fired when polling is cancelled or put to sleep."""
        self._disconnect_handler = fn
        return self

    def on_message(self, fn: StatusHandler) -> "PollRequest":
        """Set the callback fired with a status snapshot on every transition."""
        self._message_handler = fn
        return self

    async def wait_handlers(self) -> None:
        """Wait for async handlers that are still running."""
        if self._handler_tasks:
            await asyncio.gather(*self._handler_tasks, return_exceptions=True)

    def _message_event(self) -> None:
        self._call_handler(self._message_handler, self.context.snapshot())

    def _disconnect_event(self) -> None:
        self._call_handler(self._disconnect_handler)

    def _call_handler(self, handler: Callable[..., Any] | None, *args: Any) -> None:
        """Call an optional handler, scheduling it if it returns an awaitable."""
        if handler is None:
            return

        result = handler(*args)
        if not inspect.isawaitable(result):
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("Async poll handler skipped: no running event loop")
            if inspect.iscoroutine(result):
                result.close()
            return

        task = loop.create_task(result)
        self._handler_tasks.add(task)
        task.add_done_callback(self._handler_tasks.discard)
