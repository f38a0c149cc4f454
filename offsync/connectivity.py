"""Connectivity monitoring with debounced online/offline transitions."""

import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, Callable

import httpx

logger = logging.getLogger(__name__)


class ConnectivityState(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


ChangeHandler = Callable[[ConnectivityState], Any]


class ConnectivityMonitor:
    """Process-wide online/offline signal with change notifications.

    Raw reachability samples are fed in through ``report()``. Going offline
    takes effect immediately; going online only takes effect once the raw
    signal has stayed online for ``guard_interval`` seconds, so a brief
    reconnect during flaky signal loss never reaches the handlers.

    Handlers run on the event loop, never inline in ``report()``, and are
    invoked exactly once per committed transition.
    """

    def __init__(self, initial_online: bool = True, guard_interval: float = 2.0):
        """Initialize the monitor.

        Args:
            initial_online: Committed state before the first sample.
            guard_interval: Seconds an online sample must persist before the
                transition is committed.
        """
        self._online = initial_online
        self._guard_interval = guard_interval
        self._handlers: list[ChangeHandler] = []
        self._pending: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def is_online(self) -> bool:
        return self._online

    @property
    def state(self) -> ConnectivityState:
        return ConnectivityState.ONLINE if self._online else ConnectivityState.OFFLINE

    @property
    def guard_interval(self) -> float:
        return self._guard_interval

    @property
    def transition_pending(self) -> bool:
        """True while an online sample is waiting out the guard interval."""
        return self._pending is not None

    def on_change(self, handler: ChangeHandler) -> Callable[[], None]:
        """Register a handler fired on committed transitions.

        Args:
            handler: Callable (or coroutine function) taking the new state.

        Returns:
            Callable that unregisters the handler.
        """
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def report(self, online: bool, immediate: bool = False) -> None:
        """Feed a raw reachability sample.

        Args:
            online: Whether the source currently sees the network.
            immediate: Commit without waiting out the guard interval (used
                for the initial sample at startup).
        """
        if self._pending is not None:
            # Signal flapped inside the guard window
            self._pending.cancel()
            self._pending = None

        if online == self._online:
            return

        if not online or immediate or self._guard_interval <= 0:
            self._commit(online)
            return

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._commit(online)
            return

        logger.debug(f"Online signal seen, confirming in {self._guard_interval}s")
        self._pending = loop.call_later(self._guard_interval, self._commit, online)

    def close(self) -> None:
        """Cancel any pending transition and drop all handlers."""
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
        self._handlers.clear()

    def _commit(self, online: bool) -> None:
        self._pending = None
        if online == self._online:
            return

        self._online = online
        state = self.state
        logger.info(f"Connectivity changed: {state.value}")

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        for handler in list(self._handlers):
            if loop is None:
                self._invoke(handler, state)
            else:
                loop.call_soon(self._invoke, handler, state)

    def _invoke(self, handler: ChangeHandler, state: ConnectivityState) -> None:
        try:
            result = handler(state)
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._handler_done)
        except Exception as e:
            logger.error(f"Connectivity handler failed: {e}", exc_info=True)

    def _handler_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                f"Connectivity handler failed: {task.exception()}",
                exc_info=task.exception(),
            )


class ConnectivityProbe:
    """Background task that samples reachability of an HTTP endpoint.

    Any HTTP response counts as reachable; connection errors and timeouts
    count as unreachable.
    """

    def __init__(
        self,
        monitor: ConnectivityMonitor,
        url: str,
        interval: float = 15.0,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ):
        self._monitor = monitor
        self.url = url
        self._interval = interval
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._task: asyncio.Task | None = None
        self._running = False

    async def sample(self) -> bool:
        """Probe the endpoint once without reporting."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)

        try:
            await self._client.head(self.url)
            return True
        except httpx.TransportError as e:
            logger.debug(f"Probe of {self.url} failed: {e}")
            return False

    async def check_once(self) -> bool:
        """Probe the endpoint once and report the result to the monitor."""
        online = await self.sample()
        self._monitor.report(online)
        return online

    async def start(self) -> None:
        """Start probing as a background task."""
        if self._running:
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(f"Connectivity probe started (url={self.url}, interval={self._interval}s)")

    async def stop(self) -> None:
        """Stop probing and close the HTTP client if we created it."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
        logger.info("Connectivity probe stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.check_once()
            except Exception as e:
                logger.error(f"Connectivity probe error: {e}", exc_info=True)

            await asyncio.sleep(self._interval)
