"""Shared slot holding the index that searches run against.

The store is constructed once and handed to both the indexer (the only
writer) and the query executor (readers). A handle is never modified: a
rebuild installs a new handle in place of the old one, and readers that
already took the old handle keep using it until they are done.
"""

import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum

from mytxt.index.engine import Index, IndexReader
from mytxt.logger import logging

logger = logging.getLogger(__name__)


class StoreState(Enum):
    ABSENT = "absent"  # No index built yet
    READY = "ready"


@dataclass(frozen=True)
class IndexHandle:
    index: Index
    reader: IndexReader


class IndexStore:
    """
    Holds the current :class:`IndexHandle`, or nothing.

    A fault raised while the lock is held marks the store as poisoned and
    restores the last handle known to be good. The next access logs the
    recovery and carries on, so one failed access never wedges the store.
    """

    def __init__(self, handle: IndexHandle | None = None):
        self._handle = handle
        self._lock = threading.Lock()
        self._poisoned = False

    @contextmanager
    def _locked(self) -> Iterator[None]:
        with self._lock:
            if self._poisoned:
                logger.warning("Index store recovered from a faulted access")
                self._poisoned = False
            last_known = self._handle
            try:
                yield
            except BaseException:
                self._poisoned = True
                self._handle = last_known
                raise

    @property
    def poisoned(self) -> bool:
        return self._poisoned

    @property
    def state(self) -> StoreState:
        return StoreState.READY if self.snapshot() is not None else StoreState.ABSENT

    def snapshot(self) -> IndexHandle | None:
        """Return the current handle; it stays usable after a later install."""
        with self._locked():
            return self._handle

    def install(self, handle: IndexHandle):
        """Replace the current handle."""
        with self._locked():
            previous = self._handle
            self._handle = handle
        if previous is None:
            logger.info("Index ready at %s", handle.index.location)
        else:
            logger.info("Replaced index at %s", handle.index.location)

    def update(self, fn: Callable[[IndexHandle | None], IndexHandle | None]) -> IndexHandle | None:
        """
        Replace the handle with ``fn(current)`` while holding the lock.

        If ``fn`` raises, the current handle is kept.
        """
        with self._locked():
            self._handle = fn(self._handle)
            return self._handle
