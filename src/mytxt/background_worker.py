"""Worker pool that runs indexing and search requests off the foreground loop."""

from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor

from mytxt.bus import AppMessage, MessageBus
from mytxt.logger import logging

logger = logging.getLogger(__name__)

MAX_WORKERS = 4


class BackgroundTasks:
    """
    Runs callables on a small thread pool.

    Tasks talk to the foreground only through the bus. An exception that
    escapes a task is logged and reported on the bus through ``on_error``
    instead of being lost in the future.
    """

    bus: MessageBus

    def __init__(self, bus: MessageBus, max_workers: int = MAX_WORKERS):
        self.bus = bus
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="mytxt-task")

    def submit(
        self,
        fn: Callable[..., object],
        *args,
        on_error: Callable[[str], AppMessage],
    ) -> Future:
        return self._executor.submit(self._run_task, fn, args, on_error)

    def _run_task(self, fn, args, on_error):
        try:
            fn(*args)
        except Exception as e:
            logger.exception("Background task %s failed", getattr(fn, "__qualname__", fn))
            self.bus.send(on_error(str(e) or type(e).__name__))

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait)
