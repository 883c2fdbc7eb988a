# pikup/services/polling.py
"""
Pseudo-realtime subscriptions built from repeated reads.

A ``PollingSubscription`` fetches immediately, then again every
``interval`` seconds, and hands each result to ``on_data``. A failing fetch
is retried with a linear backoff (``retry_delay * attempt``); when
``max_attempts`` consecutive attempts have failed the subscription stops
itself and calls ``on_error`` once.

``stop()`` does not cancel a fetch that is already running. Its result is
dropped instead, so no callback fires after ``stop()`` returns.

Consumers only rely on ``start()``, ``stop()`` and ``active``, which is the
surface a push-based listener would offer as well.
"""
import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional, Protocol

from loguru import logger

from pikup.core.config import Settings, get_settings
from pikup.core.exceptions import AuthenticationError

Fetch = Callable[[], Awaitable[Any]]
Callback = Callable[..., Any]

_FAILED = object()


class Subscription(Protocol):
    @property
    def active(self) -> bool: ...

    def start(self) -> "Subscription": ...

    def stop(self) -> None: ...


async def notify(callback: Optional[Callback], *args) -> None:
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class PollingSubscription:
    def __init__(
        self,
        fetch: Fetch,
        on_data: Optional[Callback] = None,
        *,
        interval: float,
        on_error: Optional[Callback] = None,
        max_attempts: int = 3,
        retry_delay: float = 1.0,
        name: str = "poll",
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.fetch = fetch
        self.on_data = on_data
        self.on_error = on_error
        self.interval = interval
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.name = name
        self.fetch_count = 0
        self.last_error: Optional[BaseException] = None
        self._active = False
        self._generation = 0
        self._stopped = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self._active

    def start(self) -> "PollingSubscription":
        """Begins polling on the running event loop. Calling it twice is a no-op."""
        if self._active:
            return self
        self._active = True
        self._generation += 1
        self._stopped = asyncio.Event()
        self._task = asyncio.get_running_loop().create_task(self._run(self._generation), name=self.name)
        return self

    def stop(self) -> None:
        if not self._active:
            return
        self._active = False
        self._stopped.set()
        logger.bind(subscription=self.name).debug("Polling stopped.")

    async def wait_closed(self) -> None:
        """Waits for the polling task to notice it was stopped (or gave up)."""
        if self._task is not None:
            await self._task

    def _current(self, generation: int) -> bool:
        return self._active and self._generation == generation

    async def _pause(self, seconds: float) -> None:
        # wakes early when stop() is called
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _fetch_with_retry(self, generation: int) -> Any:
        log = logger.bind(subscription=self.name)
        for attempt in range(1, self.max_attempts + 1):
            self.fetch_count += 1
            try:
                return await self.fetch()
            except AuthenticationError as e:
                log.warning("Polling fetch rejected credentials, not retrying.")
                self.last_error = e
                return _FAILED
            except Exception as e:
                self.last_error = e
                log.warning(f"Polling fetch failed (attempt {attempt}/{self.max_attempts}): {e}")
            if attempt < self.max_attempts:
                await self._pause(self.retry_delay * attempt)
                if not self._current(generation):
                    return _FAILED
        return _FAILED

    async def _run(self, generation: int) -> None:
        log = logger.bind(subscription=self.name)
        while self._current(generation):
            result = await self._fetch_with_retry(generation)
            if not self._current(generation):
                # stopped while the fetch was in flight
                return
            if result is _FAILED:
                self._active = False
                log.error(f"Polling gave up after {self.fetch_count} attempts.")
                try:
                    await notify(self.on_error, self.last_error)
                except Exception:
                    log.exception("Error callback raised.")
                return
            try:
                await notify(self.on_data, result)
            except Exception:
                log.exception("Subscriber callback raised.")
            if not self._current(generation):
                return
            await self._pause(self.interval)

    async def __aenter__(self) -> "PollingSubscription":
        return self.start()

    async def __aexit__(self, *exc) -> None:
        self.stop()


def subscribe(
    fetch: Fetch,
    on_data: Optional[Callback] = None,
    *,
    interval: float,
    on_error: Optional[Callback] = None,
    settings: Optional[Settings] = None,
    name: str = "poll",
) -> PollingSubscription:
    """Starts a subscription using the configured attempt bound and retry delay."""
    settings = settings or get_settings()
    return PollingSubscription(
        fetch,
        on_data,
        interval=interval,
        on_error=on_error,
        max_attempts=settings.poll_max_attempts,
        retry_delay=settings.poll_retry_delay,
        name=name,
    ).start()
