"""Fixed-size worker pool running database and file work off the UI thread."""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import threading
from typing import Any, Awaitable, Callable, TypeVar

LOG = logging.getLogger(__name__)

DEFAULT_WORKERS = 2
DEFAULT_GRACE = 30.0

T = TypeVar("T")

Dispatcher = Callable[..., Any]

_WorkItem = tuple[concurrent.futures.Future, Callable[..., Awaitable[Any]], tuple[Any, ...], dict[str, Any]]


class TaskRunnerClosedError(RuntimeError):
    """Raised when work is submitted after shutdown started."""


class TaskRunner:
    """Bounded pool of worker coroutines on a private event loop thread.

    Units of work are coroutine functions. Every submission returns a
    `concurrent.futures.Future` that can be waited on from any thread, or
    handed to `deliver` so its completion is marshalled onto a foreground
    thread by the caller's dispatcher.
    """

    def __init__(self, workers: int = DEFAULT_WORKERS, *, name: str = "clubconnect-tasks") -> None:
        if workers < 1:
            raise ValueError("TaskRunner needs at least one worker.")
        self._size = workers
        self._lock = threading.Lock()
        self._closed = False
        self._drained: bool | None = None
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._loop.run_forever, name=name, daemon=True)
        self._thread.start()
        self._queue: asyncio.Queue[_WorkItem | None]
        self._workers: list[asyncio.Task[None]] = []
        asyncio.run_coroutine_threadsafe(self._start(), self._loop).result()

    @property
    def workers(self) -> int:
        return self._size

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        """Event loop that owns every connection opened by submitted work."""

        return self._loop

    def submit(self, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any) -> concurrent.futures.Future[T]:
        """Queue a coroutine function; returns a future for its result."""

        future: concurrent.futures.Future[T] = concurrent.futures.Future()
        with self._lock:
            if self._closed:
                raise TaskRunnerClosedError("TaskRunner is shut down; no new work accepted.")
            self._loop.call_soon_threadsafe(self._queue.put_nowait, (future, func, args, kwargs))
        return future

    def call(self, func: Callable[..., Awaitable[T]], *args: Any, timeout: float | None = None, **kwargs: Any) -> T:
        """Submit and block until the result is available."""

        return self.submit(func, *args, **kwargs).result(timeout=timeout)

    @staticmethod
    def deliver(
        future: concurrent.futures.Future[T],
        callback: Callable[[concurrent.futures.Future[T]], None],
        dispatch: Dispatcher,
    ) -> None:
        """Hand the completed future to `callback` through `dispatch`.

        `dispatch(callback, future)` is responsible for running the callback on
        the thread that owns the consumer's state. It must not block the
        runner's loop thread.
        """

        def _on_done(done: concurrent.futures.Future[T]) -> None:
            try:
                dispatch(callback, done)
            except Exception:
                LOG.exception("Failed to deliver task result")

        future.add_done_callback(_on_done)

    def shutdown(self, grace: float = DEFAULT_GRACE) -> bool:
        """Stop accepting work, wait up to `grace` seconds, then cancel the rest.

        Returns True when all queued and in-flight work finished in time.
        """

        with self._lock:
            if self._closed:
                return bool(self._drained)
            self._closed = True
            for _ in self._workers:
                self._loop.call_soon_threadsafe(self._queue.put_nowait, None)
        try:
            drained = asyncio.run_coroutine_threadsafe(self._drain(grace), self._loop).result()
        finally:
            self._loop.call_soon_threadsafe(self._loop.stop)
            self._thread.join(timeout=5)
            if not self._thread.is_alive():
                self._loop.close()
        self._drained = drained
        if drained:
            LOG.debug("Task runner drained cleanly")
        else:
            LOG.warning("Task runner grace period of %ss expired; outstanding work cancelled", grace)
        return drained

    def __enter__(self) -> TaskRunner:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()

    async def _start(self) -> None:
        self._queue = asyncio.Queue()
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"worker-{index}") for index in range(self._size)
        ]

    async def _worker(self, index: int) -> None:
        while True:
            item = await self._queue.get()
            try:
                if item is None:
                    return
                future, func, args, kwargs = item
                if not future.set_running_or_notify_cancel():
                    continue
                try:
                    result = await func(*args, **kwargs)
                except asyncio.CancelledError:
                    future.set_exception(concurrent.futures.CancelledError())
                    raise
                except Exception as exc:
                    LOG.debug("Task failed on worker %s", index, exc_info=True)
                    future.set_exception(exc)
                else:
                    future.set_result(result)
            finally:
                self._queue.task_done()

    async def _drain(self, grace: float) -> bool:
        _, pending = await asyncio.wait(self._workers, timeout=grace)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is not None:
                item[0].cancel()
        return not pending


__all__ = [
    "DEFAULT_GRACE",
    "DEFAULT_WORKERS",
    "Dispatcher",
    "TaskRunner",
    "TaskRunnerClosedError",
]
