import threading
import time

from mytxt.bus import MessageBus
from mytxt.config import DEFAULT_RESULT_LIMIT, DEFAULT_SNIPPET_MAX_CHARS
from mytxt.index.engine import IndexEngineError, QueryParseError, QueryParser, SnippetGenerator
from mytxt.index.indexer import CONTENT_FIELD, PATH_FIELD
from mytxt.index.messages import (
    SearchCancelledMessage,
    SearchErrorMessage,
    SearchFinishedMessage,
    SearchMessage,
    SearchResult,
)
from mytxt.index.store import IndexStore
from mytxt.logger import logging

logger = logging.getLogger(__name__)

INDEX_NOT_FOUND_MESSAGE = "Index not found. Please index a directory first."
CRITICAL_ERROR_MESSAGE = (
    "A critical error occurred in the search engine, possibly due to a corrupt file."
)


class IndexNotFoundError(Exception):
    pass


class CancellationHandle:
    """One-shot cancellation flag shared between the foreground and a search."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()


class _Cancelled(Exception):
    pass


class QueryExecutor:
    store: IndexStore
    bus: MessageBus
    result_limit: int
    snippet_max_chars: int

    def __init__(
        self,
        store: IndexStore,
        bus: MessageBus,
        result_limit: int = DEFAULT_RESULT_LIMIT,
        snippet_max_chars: int = DEFAULT_SNIPPET_MAX_CHARS,
    ):
        self.store = store
        self.bus = bus
        self.result_limit = result_limit
        self.snippet_max_chars = snippet_max_chars

    def search(self, query: str, cancel: CancellationHandle):
        """Run ``query`` and send exactly one terminal message on the bus."""
        self.bus.send(self.execute(query, cancel))

    def execute(self, query: str, cancel: CancellationHandle) -> SearchMessage:
        """
        Run ``query`` and return its terminal message.

        Every failure is turned into a ``SearchErrorMessage``; nothing raised
        while searching escapes this method.
        """
        time_start = time.perf_counter()
        try:
            results = self._run(query, cancel)
        except _Cancelled:
            logger.info("Search for %r cancelled", query)
            return SearchCancelledMessage()
        except IndexNotFoundError:
            return SearchErrorMessage(INDEX_NOT_FOUND_MESSAGE)
        except QueryParseError as e:
            logger.info("Rejected query %r: %s", query, e)
            return SearchErrorMessage(str(e))
        except IndexEngineError as e:
            logger.error("Search for %r failed: %s", query, e)
            return SearchErrorMessage(str(e))
        except Exception:
            logger.exception("Search for %r crashed", query)
            return SearchErrorMessage(CRITICAL_ERROR_MESSAGE)

        duration = time.perf_counter() - time_start
        logger.info("Search for %r found %d results in %.3fs", query, len(results), duration)
        return SearchFinishedMessage(results=tuple(results), duration=duration)

    def _run(self, query: str, cancel: CancellationHandle) -> list[SearchResult]:
        handle = self.store.snapshot()
        if handle is None:
            raise IndexNotFoundError()

        index = handle.index
        parsed_query = QueryParser.for_index(index, [CONTENT_FIELD]).parse_query(query)

        with handle.reader.searcher() as searcher:
            top_docs = searcher.search(parsed_query, self.result_limit)
            if not top_docs:
                return []

            snippet_generator = SnippetGenerator.create(searcher, parsed_query, CONTENT_FIELD)
            snippet_generator.set_max_num_chars(self.snippet_max_chars)

            results = []
            for _score, doc_address in top_docs:
                if cancel.is_cancelled:
                    raise _Cancelled()

                retrieved_doc = searcher.doc(doc_address)
                snippet = snippet_generator.snippet_from_doc(doc_address)
                results.append(
                    SearchResult(
                        path=retrieved_doc.get(PATH_FIELD, "Unknown Path"),
                        snippet_html=snippet.to_html(),
                    )
                )
        return results
