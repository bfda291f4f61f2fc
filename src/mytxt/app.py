"""Foreground application state and the commands that drive the core.

The foreground never indexes or searches itself. Commands hand work to
background tasks; results come back as messages on the bus, which
:meth:`App.poll` drains once per cycle and feeds to :meth:`App.handle_message`.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

from mytxt.background_worker import BackgroundTasks
from mytxt.bus import AppMessage, MessageBus, SettingsChangedMessage
from mytxt.config import Settings, save_settings, update_setting
from mytxt.index.indexer import Indexer
from mytxt.index.messages import (
    INDEX_TERMINAL_MESSAGES,
    SEARCH_TERMINAL_MESSAGES,
    IndexErrorMessage,
    IndexProgressMessage,
    SearchCancelledMessage,
    SearchErrorMessage,
    SearchFinishedMessage,
    SearchMessage,
    SearchResult,
)
from mytxt.index.searcher import CancellationHandle, QueryExecutor
from mytxt.index.store import IndexStore
from mytxt.logger import logging

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.05  # seconds


@dataclass(frozen=True)
class Idle:
    pass


@dataclass(frozen=True)
class Indexing:
    progress: float = 0.0


@dataclass(frozen=True)
class Searching:
    pass


AppState = Idle | Indexing | Searching


@dataclass
class SearchView:
    """What the last search left for display."""

    query: str = ""
    results: list[SearchResult] = field(default_factory=list)
    duration: float | None = None
    error: str | None = None
    cancelled: bool = False


class App:
    settings: Settings
    bus: MessageBus
    store: IndexStore
    tasks: BackgroundTasks
    indexer: Indexer
    executor: QueryExecutor

    def __init__(
        self,
        settings: Settings,
        config_path: Path | None = None,
        bus: MessageBus | None = None,
        store: IndexStore | None = None,
        tasks: BackgroundTasks | None = None,
    ):
        self.settings = settings
        self.config_path = config_path
        self.bus = bus if bus else MessageBus()
        self.store = store if store else IndexStore()
        self.tasks = tasks if tasks else BackgroundTasks(self.bus)
        self.indexer = self._make_indexer(settings)
        self.executor = QueryExecutor(
            self.store,
            self.bus,
            result_limit=settings.result_limit,
            snippet_max_chars=settings.snippet_max_chars,
        )

        self.search = SearchView()
        self.index_error: str | None = None
        self.cancellation_handle: CancellationHandle | None = None
        self._indexing = False
        self._index_progress = 0.0

    def _make_indexer(self, settings: Settings) -> Indexer:
        return Indexer(self.store, self.bus, settings.index_dir, settings.extensions)

    def open_existing_index(self) -> bool:
        """Load the index left on disk by an earlier run, if any."""
        return self.indexer.open_existing() is not None

    @property
    def is_indexing(self) -> bool:
        return self._indexing

    @property
    def is_searching(self) -> bool:
        return self.cancellation_handle is not None

    @property
    def state(self) -> AppState:
        """``Idle`` only when neither a build nor a search is outstanding."""
        if self._indexing:
            return Indexing(progress=self._index_progress)
        if self.is_searching:
            return Searching()
        return Idle()

    # Commands

    def start_indexing(self, directory: str | Path | None) -> bool:
        """
        Start rebuilding the index for ``directory`` in the background.

        Returns False, leaving the running build alone, if a build is
        already in progress.
        """
        if self._indexing:
            self.index_error = "Indexing is already in progress"
            logger.warning(self.index_error)
            return False

        if not directory:
            self.bus.send(IndexErrorMessage("No directory selected"))
            return False

        self._indexing = True
        self._index_progress = 0.0
        self.index_error = None
        self.tasks.submit(self.indexer.run, Path(directory), on_error=IndexErrorMessage)
        return True

    def start_search(self, query: str) -> CancellationHandle | None:
        """
        Start a search in the background; the handle cancels it.

        Returns None, leaving the running search alone, if a search is
        already outstanding.
        """
        if self.is_searching:
            logger.warning("A search is already in progress")
            return None

        cancel = CancellationHandle()
        self.cancellation_handle = cancel
        self.search = SearchView(query=query)
        self.tasks.submit(self.executor.search, query, cancel, on_error=SearchErrorMessage)
        return cancel

    def request_cancel(self, handle: CancellationHandle | None = None):
        if handle is None:
            handle = self.cancellation_handle
        if handle is not None:
            handle.cancel()

    def change_setting(self, key: str, value: str) -> Settings:
        """
        Validate a setting change and publish it on the bus.

        Raises:
            ValueError: If the key or value is invalid.
        """
        settings = update_setting(self.settings, key, value)
        self.bus.send(SettingsChangedMessage(settings))
        return settings

    # Foreground loop

    def poll(self) -> list[AppMessage]:
        """Handle every message already on the bus, without waiting."""
        messages = self.bus.drain()
        for message in messages:
            self.handle_message(message)
        return messages

    def handle_message(self, message: AppMessage):
        if isinstance(message, IndexProgressMessage):
            self._indexing = True
            self._index_progress = message.fraction
        elif isinstance(message, INDEX_TERMINAL_MESSAGES):
            self._indexing = False
            if isinstance(message, IndexErrorMessage):
                logger.error("Indexing Error: %s", message.message)
                self.index_error = message.message
        elif isinstance(message, SEARCH_TERMINAL_MESSAGES):
            self.cancellation_handle = None
            self._apply_search_result(message)
        elif isinstance(message, SettingsChangedMessage):
            self._apply_settings(message.settings)
        else:
            logger.warning("Ignoring unknown message: %r", message)

    def _apply_search_result(self, message: SearchMessage):
        if isinstance(message, SearchFinishedMessage):
            self.search.results = list(message.results)
            self.search.duration = message.duration
            self.search.error = None
        elif isinstance(message, SearchCancelledMessage):
            self.search.cancelled = True
        elif isinstance(message, SearchErrorMessage):
            logger.error("Search Error: %s", message.message)
            self.search.results = []
            self.search.error = message.message

    def _apply_settings(self, settings: Settings):
        if settings.index_dir != self.settings.index_dir or settings.extensions != self.settings.extensions:
            # A build already running keeps the indexer it started with.
            self.indexer = self._make_indexer(settings)
        self.executor.result_limit = settings.result_limit
        self.executor.snippet_max_chars = settings.snippet_max_chars
        self.settings = settings
        if self.config_path is not None:
            save_settings(settings, self.config_path)

    def wait_until(
        self,
        done: Callable[[], bool],
        timeout: float | None = None,
        on_message: Callable[[AppMessage], None] | None = None,
    ) -> bool:
        """
        Poll until ``done()`` is true. Returns False if ``timeout`` runs out.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            for message in self.poll():
                if on_message is not None:
                    on_message(message)
            if done():
                return True
            if deadline is not None and time.monotonic() > deadline:
                return False
            time.sleep(POLL_INTERVAL)

    def wait_until_idle(
        self,
        timeout: float | None = None,
        on_message: Callable[[AppMessage], None] | None = None,
    ) -> bool:
        """Poll until neither a build nor a search is outstanding."""
        return self.wait_until(lambda: isinstance(self.state, Idle), timeout, on_message)

    def wait_for_indexing(
        self,
        timeout: float | None = None,
        on_message: Callable[[AppMessage], None] | None = None,
    ) -> bool:
        return self.wait_until(lambda: not self._indexing, timeout, on_message)

    def wait_for_search(
        self,
        timeout: float | None = None,
        on_message: Callable[[AppMessage], None] | None = None,
    ) -> bool:
        """Poll until the outstanding search has sent its terminal message."""
        return self.wait_until(lambda: not self.is_searching, timeout, on_message)

    def close(self):
        self.tasks.shutdown(wait=True)
