from collections.abc import Sequence
from dataclasses import dataclass, field


@dataclass(frozen=True)
class SearchResult:
    path: str
    snippet_html: str  # matched terms wrapped in <b>...</b>


@dataclass(frozen=True)
class IndexProgressMessage:
    fraction: float  # processed / eligible, in [0, 1]


@dataclass(frozen=True)
class IndexFinishedMessage:
    pass


@dataclass(frozen=True)
class IndexErrorMessage:
    message: str


@dataclass(frozen=True)
class SearchFinishedMessage:
    results: Sequence[SearchResult] = field(default_factory=tuple)
    duration: float = 0.0  # seconds


@dataclass(frozen=True)
class SearchCancelledMessage:
    pass


@dataclass(frozen=True)
class SearchErrorMessage:
    message: str


IndexMessage = IndexProgressMessage | IndexFinishedMessage | IndexErrorMessage
SearchMessage = SearchFinishedMessage | SearchCancelledMessage | SearchErrorMessage

INDEX_TERMINAL_MESSAGES = (IndexFinishedMessage, IndexErrorMessage)
SEARCH_TERMINAL_MESSAGES = (SearchFinishedMessage, SearchCancelledMessage, SearchErrorMessage)
