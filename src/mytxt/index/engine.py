"""Embedded full-text index on top of SQLite FTS5.

One index is one SQLite database inside an index directory. Documents live in
an FTS5 table whose columns are the schema's fields; the schema itself is
recorded in a ``metadata`` table so an existing index can be reopened.

The database runs in WAL mode: readers keep seeing the last committed state
while a writer holds its transaction, and see the new state once it commits.
"""

import html
import json
import re
import sqlite3
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from pathlib import Path

from mytxt.index.tokenizer import Tokenizer, TokenizerManager, strip_boundaries
from mytxt.logger import logging

logger = logging.getLogger(__name__)

DATABASE_FILENAME = "index.sqlite3"
DOCUMENTS_TABLE = "documents"
BUSY_TIMEOUT_MS = 5000
DEFAULT_SNIPPET_MAX_CHARS = 150

# Markers passed to FTS5 highlight(); removed from stored text on the way in.
HIGHLIGHT_START = "\x02"
HIGHLIGHT_END = "\x03"

_FIELD_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class IndexEngineError(Exception):
    """The index could not be opened, read or written."""


class QueryParseError(IndexEngineError):
    """The query text is not valid query syntax."""


class LockBusyError(IndexEngineError):
    """Another writer holds the index."""


class SchemaError(IndexEngineError):
    pass


class TokenizerNotFoundError(IndexEngineError):
    pass


@dataclass(frozen=True)
class TextField:
    name: str
    indexed: bool = True
    stored: bool = True
    tokenizer: str = "default"


@dataclass(frozen=True)
class Schema:
    fields: tuple[TextField, ...]

    def get_field(self, name: str) -> TextField:
        for field in self.fields:
            if field.name == name:
                return field
        raise SchemaError(f"Schema error: '{name}' field not found")

    def column_index(self, name: str) -> int:
        for i, field in enumerate(self.fields):
            if field.name == name:
                return i
        raise SchemaError(f"Schema error: '{name}' field not found")

    @property
    def indexed_fields(self) -> tuple[TextField, ...]:
        return tuple(field for field in self.fields if field.indexed)

    def column_definitions(self) -> str:
        return ", ".join(
            field.name if field.indexed else f"{field.name} UNINDEXED" for field in self.fields
        )

    def to_json(self) -> str:
        return json.dumps([asdict(field) for field in self.fields], sort_keys=True)

    @classmethod
    def from_json(cls, data: str) -> "Schema":
        return cls(tuple(TextField(**field) for field in json.loads(data)))


class SchemaBuilder:
    def __init__(self):
        self._fields: list[TextField] = []

    def add_text_field(
        self,
        name: str,
        indexed: bool = True,
        stored: bool = True,
        tokenizer: str = "default",
    ) -> TextField:
        if not _FIELD_NAME_RE.match(name):
            raise SchemaError(f"Invalid field name: {name!r}")
        if any(field.name == name for field in self._fields):
            raise SchemaError(f"Duplicate field name: {name!r}")
        field = TextField(name=name, indexed=indexed, stored=stored, tokenizer=tokenizer)
        self._fields.append(field)
        return field

    def build(self) -> Schema:
        if not any(field.indexed for field in self._fields):
            raise SchemaError("Schema needs at least one indexed field")
        return Schema(tuple(self._fields))


@dataclass(frozen=True)
class DocAddress:
    doc_id: int


@dataclass(frozen=True)
class Query:
    text: str
    expression: str
    fields: tuple[str, ...]


def _connect(database_path: Path) -> sqlite3.Connection:
    # Transactions are managed explicitly.
    connection = sqlite3.connect(database_path, isolation_level=None, check_same_thread=False)
    connection.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
    connection.execute("PRAGMA synchronous=NORMAL")
    return connection


def _strip_markers(text: str) -> str:
    return strip_boundaries(text).replace(HIGHLIGHT_START, "").replace(HIGHLIGHT_END, "")


class Index:
    """Handle to an on-disk index. Use :meth:`open_or_create` or :meth:`open`."""

    location: Path
    schema: Schema
    tokenizers: TokenizerManager

    def __init__(self, location: Path, schema: Schema):
        self.location = location
        self.schema = schema
        self.tokenizers = TokenizerManager()

    @property
    def database_path(self) -> Path:
        return self.location / DATABASE_FILENAME

    @classmethod
    def open_or_create(cls, location: Path, schema: Schema) -> "Index":
        """
        Open the index at ``location``, creating it if needed.

        An index that was created with a different schema is cleared and
        recreated with ``schema``.
        """
        location = Path(location)
        try:
            location.mkdir(parents=True, exist_ok=True)
            connection = _connect(location / DATABASE_FILENAME)
        except (OSError, sqlite3.Error) as e:
            raise IndexEngineError(f"Cannot open index at {location}: {e}") from e

        try:
            connection.execute("PRAGMA journal_mode=WAL")
            _initialize(connection, schema)
        except sqlite3.Error as e:
            raise IndexEngineError(f"Cannot initialize index at {location}: {e}") from e
        finally:
            connection.close()

        return cls(location, schema)

    @classmethod
    def open(cls, location: Path) -> "Index":
        """Open an existing index, reading its schema from disk."""
        location = Path(location)
        database_path = location / DATABASE_FILENAME
        if not database_path.exists():
            raise IndexEngineError(f"No index found at {location}")

        try:
            connection = _connect(database_path)
            try:
                row = connection.execute(
                    "SELECT value FROM metadata WHERE key = 'schema'"
                ).fetchone()
            finally:
                connection.close()
        except sqlite3.Error as e:
            raise IndexEngineError(f"Cannot open index at {location}: {e}") from e

        if row is None:
            raise IndexEngineError(f"Index at {location} has no schema")
        try:
            schema = Schema.from_json(row[0])
        except (TypeError, ValueError) as e:
            raise IndexEngineError(f"Index at {location} has an unreadable schema: {e}") from e
        return cls(location, schema)

    def writer(self) -> "IndexWriter":
        return IndexWriter(self)

    def reader(self) -> "IndexReader":
        return IndexReader(self)

    def tokenizer_for(self, field: TextField) -> Tokenizer:
        tokenizer = self.tokenizers.get(field.tokenizer)
        if tokenizer is None:
            raise TokenizerNotFoundError(
                f"Tokenizer '{field.tokenizer}' for field '{field.name}' is not registered"
            )
        return tokenizer


def _initialize(connection: sqlite3.Connection, schema: Schema):
    connection.execute("BEGIN IMMEDIATE")
    try:
        connection.execute("""
            CREATE TABLE IF NOT EXISTS metadata (
                key TEXT PRIMARY KEY,
                value TEXT
            )
        """)
        row = connection.execute("SELECT value FROM metadata WHERE key = 'schema'").fetchone()
        stored_schema = row[0] if row else None

        if stored_schema is not None and stored_schema != schema.to_json():
            logger.warning("Index schema changed, clearing index and recreating it...")
            connection.execute(f"DROP TABLE IF EXISTS {DOCUMENTS_TABLE}")

        connection.execute(f"""
            CREATE VIRTUAL TABLE IF NOT EXISTS {DOCUMENTS_TABLE} USING fts5(
                {schema.column_definitions()},
                tokenize = 'unicode61'
            )
        """)
        connection.execute(
            "INSERT OR REPLACE INTO metadata (key, value) VALUES ('schema', ?)",
            (schema.to_json(),),
        )
        connection.execute("COMMIT")
    except sqlite3.Error:
        connection.execute("ROLLBACK")
        raise


class IndexWriter:
    """
    The single writer of an index.

    Holds SQLite's write lock from construction until :meth:`commit`,
    :meth:`rollback` or :meth:`close`. Nothing it does is visible to readers
    before :meth:`commit`.
    """

    def __init__(self, index: Index):
        self.index = index
        self._tokenizers = {
            field.name: index.tokenizer_for(field) for field in index.schema.indexed_fields
        }

        try:
            self._connection = _connect(index.database_path)
        except sqlite3.Error as e:
            raise IndexEngineError(f"Cannot open index for writing: {e}") from e

        try:
            self._connection.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as e:
            self._connection.close()
            if "locked" in str(e) or "busy" in str(e):
                raise LockBusyError("Another writer is holding the index") from e
            raise IndexEngineError(f"Cannot start writing: {e}") from e

        self._active = True
        self._num_added = 0

    def _check_active(self):
        if not self._active:
            raise IndexEngineError("Index writer is closed")

    def clear_all(self):
        """Delete every document."""
        self._check_active()
        try:
            self._connection.execute(f"DELETE FROM {DOCUMENTS_TABLE}")
        except sqlite3.Error as e:
            raise IndexEngineError(f"Failed to clear index: {e}") from e

    def add_document(self, **values: str):
        self._check_active()
        schema = self.index.schema
        unknown = set(values) - {field.name for field in schema.fields}
        if unknown:
            raise SchemaError(f"Unknown fields: {', '.join(sorted(unknown))}")

        row = []
        for field in schema.fields:
            value = values.get(field.name, "")
            if field.indexed:
                value = self._tokenizers[field.name].segment(_strip_markers(value))
            row.append(value)

        placeholders = ", ".join("?" for _ in row)
        try:
            self._connection.execute(
                f"INSERT INTO {DOCUMENTS_TABLE} VALUES ({placeholders})", row
            )
        except sqlite3.Error as e:
            raise IndexEngineError(f"Failed to add document: {e}") from e
        self._num_added += 1

    def commit(self):
        self._check_active()
        try:
            self._connection.execute("COMMIT")
        except sqlite3.Error as e:
            raise IndexEngineError(f"Failed to commit index: {e}") from e
        finally:
            self.close()
        logger.info("Committed %d documents to %s", self._num_added, self.index.location)

    def rollback(self):
        if not self._active:
            return
        try:
            self._connection.execute("ROLLBACK")
        except sqlite3.Error as e:
            logger.warning("Rollback failed: %s", e)
        finally:
            self.close()

    def close(self):
        if self._active:
            self._active = False
            # Closing with an open transaction discards it.
            self._connection.close()

    def __enter__(self) -> "IndexWriter":
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is not None:
            self.rollback()
        self.close()


class IndexReader:
    """Read access to the committed state of an index."""

    def __init__(self, index: Index):
        self.index = index
        # Fail now rather than on the first search.
        with self.searcher() as searcher:
            searcher.num_docs()

    @contextmanager
    def searcher(self) -> Iterator["Searcher"]:
        """Yield a searcher over one consistent snapshot of the index."""
        try:
            connection = _connect(self.index.database_path)
        except sqlite3.Error as e:
            raise IndexEngineError(f"Cannot open index for reading: {e}") from e

        try:
            connection.execute("PRAGMA query_only=ON")
            connection.execute("BEGIN")
            yield Searcher(self.index, connection)
        except sqlite3.Error as e:
            raise IndexEngineError(f"Index read failed: {e}") from e
        finally:
            connection.close()


class Searcher:
    def __init__(self, index: Index, connection: sqlite3.Connection):
        self.index = index
        self.schema = index.schema
        self._connection = connection

    def num_docs(self) -> int:
        try:
            row = self._connection.execute(f"SELECT COUNT(*) FROM {DOCUMENTS_TABLE}").fetchone()
        except sqlite3.Error as e:
            raise IndexEngineError(f"Index is not readable: {e}") from e
        return row[0]

    def search(self, query: Query, limit: int) -> list[tuple[float, DocAddress]]:
        """
        Rank documents matching ``query``.

        Returns at most ``limit`` (score, address) pairs, best first. Higher
        scores are better; equal scores keep document order.
        """
        if not query.expression:
            return []
        try:
            rows = self._connection.execute(
                f"""
                SELECT rowid, bm25({DOCUMENTS_TABLE}) AS score
                FROM {DOCUMENTS_TABLE}
                WHERE {DOCUMENTS_TABLE} MATCH ?
                ORDER BY score, rowid
                LIMIT ?
                """,
                (query.expression, limit),
            ).fetchall()
        except sqlite3.Error as e:
            raise IndexEngineError(f"Search failed: {e}") from e
        # bm25() is lower-is-better.
        return [(-score, DocAddress(rowid)) for rowid, score in rows]

    def doc(self, address: DocAddress) -> dict[str, str]:
        """Return the stored fields of a document."""
        stored_fields = [field for field in self.schema.fields if field.stored]
        stored = [field.name for field in stored_fields]
        try:
            row = self._connection.execute(
                f"SELECT {', '.join(stored)} FROM {DOCUMENTS_TABLE} WHERE rowid = ?",
                (address.doc_id,),
            ).fetchone()
        except sqlite3.Error as e:
            raise IndexEngineError(f"Failed to fetch document {address.doc_id}: {e}") from e
        if row is None:
            raise IndexEngineError(f"Document {address.doc_id} not found")
        # Only indexed fields went through a tokenizer.
        return {
            field.name: strip_boundaries(value or "") if field.indexed else value or ""
            for field, value in zip(stored_fields, row, strict=True)
        }

    def highlight(self, query: Query, field: str, address: DocAddress) -> str:
        """Return ``field`` of a document with matched terms between highlight markers."""
        column = self.schema.column_index(field)
        try:
            row = self._connection.execute(
                f"""
                SELECT highlight({DOCUMENTS_TABLE}, ?, ?, ?)
                FROM {DOCUMENTS_TABLE}
                WHERE {DOCUMENTS_TABLE} MATCH ? AND rowid = ?
                """,
                (column, HIGHLIGHT_START, HIGHLIGHT_END, query.expression, address.doc_id),
            ).fetchone()
        except sqlite3.Error as e:
            raise IndexEngineError(f"Failed to highlight document {address.doc_id}: {e}") from e
        if row is None or row[0] is None:
            return ""
        return strip_boundaries(row[0])


SHOULD = "should"
MUST = "must"
MUST_NOT = "must_not"

_SIMPLE_PHRASE_RE = re.compile(r'^"[^"]*"\*?$')


def _tokenize_query(text: str) -> list[tuple[str, str]]:
    """Split query text into ``(kind, value)`` tokens.

    Kinds are ``(``, ``)``, ``sign`` (a ``+`` or ``-`` directly before a
    phrase or group), ``phrase`` (the text between double quotes) and ``word``.
    """
    tokens = []
    position = 0
    while position < len(text):
        ch = text[position]
        if ch.isspace():
            position += 1
        elif ch in "()":
            tokens.append((ch, ch))
            position += 1
        elif ch in "+-" and text[position + 1 : position + 2] in ('"', "("):
            tokens.append(("sign", ch))
            position += 1
        elif ch == '"':
            end = text.find('"', position + 1)
            if end == -1:
                raise QueryParseError("Invalid query: unbalanced quote")
            tokens.append(("phrase", text[position + 1 : end]))
            position = end + 1
        else:
            end = position
            while end < len(text) and not text[end].isspace() and text[end] not in '()"':
                end += 1
            tokens.append(("word", text[position:end]))
            position = end
    return tokens


def _wrap(expression: str) -> str:
    return expression if _SIMPLE_PHRASE_RE.match(expression) else f"({expression})"


def _combine(clauses: list[tuple[str, str | None]]) -> str | None:
    """
    Join clauses the way a keyword search engine does.

    Required clauses must all match; without any, at least one optional clause
    must match. Excluded clauses remove documents. Returns None when nothing
    positive is left to match.
    """
    must = [_wrap(e) for occur, e in clauses if occur == MUST and e is not None]
    should = [_wrap(e) for occur, e in clauses if occur == SHOULD and e is not None]
    must_not = [_wrap(e) for occur, e in clauses if occur == MUST_NOT and e is not None]

    if must:
        expression = " AND ".join(must)
    elif should:
        expression = " OR ".join(should)
    else:
        return None

    if must_not:
        expression = f"{_wrap(expression)} NOT ({' OR '.join(must_not)})"
    return expression


class _QueryTranslator:
    """
    Translates user query text into an FTS5 expression.

    Every term and phrase becomes an FTS5 string, so punctuation inside words
    is split by the index tokenizer instead of being read as FTS5 syntax.
    Terms are alternatives by default. ``AND`` and ``OR`` combine their
    neighbours, ``NOT``, a leading ``-`` or ``+`` exclude or require a clause,
    a trailing ``*`` makes a prefix term, and parentheses group.
    """

    def __init__(self, text: str, tokenizer: Tokenizer):
        self.tokens = _tokenize_query(text)
        self.position = 0
        self.tokenizer = tokenizer

    def translate(self) -> str:
        expression = self._group()
        if self.position < len(self.tokens):
            raise QueryParseError("Invalid query: unbalanced parenthesis")
        return expression or ""

    def _peek(self) -> tuple[str, str] | None:
        if self.position < len(self.tokens):
            return self.tokens[self.position]
        return None

    def _group(self) -> str | None:
        clauses: list[tuple[str, str | None]] = []
        conjunction = None
        while True:
            token = self._peek()
            if token is None or token[0] == ")":
                break
            kind, value = token
            if kind == "word" and value in ("AND", "OR"):
                if not clauses or conjunction is not None:
                    raise QueryParseError(f"Invalid query: unexpected {value}")
                conjunction = value
                self.position += 1
                continue

            occur, expression = self._clause()
            if conjunction == "AND":
                previous_occur, previous = clauses[-1]
                if previous_occur == SHOULD:
                    clauses[-1] = (MUST, previous)
                if occur == SHOULD:
                    occur = MUST
            conjunction = None
            clauses.append((occur, expression))

        if conjunction is not None:
            raise QueryParseError(f"Invalid query: {conjunction} needs a term after it")
        return _combine(clauses)

    def _clause(self) -> tuple[str, str | None]:
        occur = SHOULD
        kind, value = self.tokens[self.position]
        if kind == "sign":
            occur = MUST if value == "+" else MUST_NOT
            self.position += 1
        elif kind == "word" and value == "NOT":
            occur = MUST_NOT
            self.position += 1

        token = self._peek()
        if token is None:
            raise QueryParseError("Invalid query: expected a term at the end")
        kind, value = token
        self.position += 1

        if kind == "(":
            expression = self._group()
            if self._peek() is None or self._peek()[0] != ")":
                raise QueryParseError("Invalid query: unbalanced parenthesis")
            self.position += 1
            return occur, expression
        if kind == "phrase":
            return occur, self._phrase(value)
        if kind == "word" and value not in ("AND", "OR", "NOT"):
            if occur == SHOULD and len(value) > 1 and value[0] in "+-":
                occur = MUST if value[0] == "+" else MUST_NOT
                value = value[1:]
            if value.endswith("*"):
                return occur, self._phrase(value.rstrip("*"), prefix=True)
            return occur, self._phrase(value)
        raise QueryParseError(f"Invalid query: unexpected {value}")

    def _phrase(self, text: str, prefix: bool = False) -> str | None:
        segmented = self.tokenizer.segment(text)
        if not any(ch.isalnum() for ch in segmented):
            # Nothing the index tokenizer would keep.
            return None
        expression = '"' + segmented + '"'
        return expression + "*" if prefix else expression


class QueryParser:
    """Turns user query text into a :class:`Query` over some indexed fields.

    Query text is keyword search: ``hello world`` matches documents with either
    word, ranked by relevance. ``"quoted phrases"``, ``AND``, ``OR``, ``NOT``,
    ``+required``, ``-excluded``, ``prefix*`` and parentheses are understood.
    Only an unbalanced quote or parenthesis, or an operator without a term,
    is a syntax error.
    """

    def __init__(self, schema: Schema, default_fields: Sequence[str], tokenizer: Tokenizer):
        if not default_fields:
            raise SchemaError("At least one default field is required")
        for name in default_fields:
            if not schema.get_field(name).indexed:
                raise SchemaError(f"Field '{name}' is not indexed")
        self.schema = schema
        self.default_fields = tuple(default_fields)
        self.tokenizer = tokenizer

    @classmethod
    def for_index(cls, index: Index, default_fields: Sequence[str]) -> "QueryParser":
        tokenizer = index.tokenizer_for(index.schema.get_field(default_fields[0]))
        return cls(index.schema, default_fields, tokenizer)

    def parse_query(self, text: str) -> Query:
        if not text.strip():
            raise QueryParseError("Query is empty")

        expression = _QueryTranslator(text, self.tokenizer).translate()
        if not expression:
            # Only punctuation or exclusions: nothing can match.
            return Query(text=text, expression="", fields=self.default_fields)

        indexed = {field.name for field in self.schema.indexed_fields}
        if set(self.default_fields) != indexed:
            expression = f"{{{' '.join(self.default_fields)}}} : ({expression})"

        self._validate(expression)
        return Query(text=text, expression=expression, fields=self.default_fields)

    def _validate(self, expression: str):
        # FTS5 parses the expression even when the table is empty.
        connection = sqlite3.connect(":memory:")
        try:
            connection.execute(
                f"CREATE VIRTUAL TABLE q USING fts5({self.schema.column_definitions()})"
            )
            connection.execute("SELECT rowid FROM q WHERE q MATCH ?", (expression,)).fetchall()
        except sqlite3.OperationalError as e:
            raise QueryParseError(f"Invalid query: {e}") from e
        finally:
            connection.close()


@dataclass(frozen=True)
class Snippet:
    """A fragment of a document and the ranges of it that matched."""

    fragment: str
    highlighted: tuple[tuple[int, int], ...] = ()

    def to_html(self) -> str:
        parts = []
        position = 0
        for start, end in self.highlighted:
            parts.append(html.escape(self.fragment[position:start], quote=False))
            parts.append("<b>")
            parts.append(html.escape(self.fragment[start:end], quote=False))
            parts.append("</b>")
            position = end
        parts.append(html.escape(self.fragment[position:], quote=False))
        return "".join(parts)


def split_highlights(marked: str) -> tuple[str, list[tuple[int, int]]]:
    """Remove highlight markers, returning the text and the marked ranges.

    Ranges that touch are merged.
    """
    chars: list[str] = []
    spans: list[tuple[int, int]] = []
    start = None
    for ch in marked:
        if ch == HIGHLIGHT_START:
            start = len(chars)
        elif ch == HIGHLIGHT_END:
            if start is None:
                continue
            if spans and spans[-1][1] == start:
                spans[-1] = (spans[-1][0], len(chars))
            else:
                spans.append((start, len(chars)))
            start = None
        else:
            chars.append(ch)
    return "".join(chars), spans


def select_fragment(text: str, spans: Sequence[tuple[int, int]], max_num_chars: int) -> Snippet:
    """Pick the window of ``max_num_chars`` characters covering the most matches."""
    if not spans:
        return Snippet(text[:max_num_chars])

    spans = sorted(spans)
    best_start = spans[0][0]
    best_count = 0
    # Sliding window: spans[first:last] end inside the window starting at spans[first].
    last = 0
    for first, (candidate, _) in enumerate(spans):
        window_end = candidate + max_num_chars
        last = max(last, first)
        while last < len(spans) and spans[last][1] <= window_end:
            last += 1
        count = last - first
        if count > best_count:
            best_start, best_count = candidate, count

    end = min(len(text), best_start + max_num_chars)
    start = max(0, end - max_num_chars)
    highlighted = tuple(
        (max(s, start) - start, min(e, end) - start) for s, e in spans if s < end and e > start
    )
    return Snippet(text[start:end], highlighted)


class SnippetGenerator:
    def __init__(self, searcher: Searcher, query: Query, field: str):
        searcher.schema.get_field(field)
        self._searcher = searcher
        self._query = query
        self._field = field
        self._max_num_chars = DEFAULT_SNIPPET_MAX_CHARS

    @classmethod
    def create(cls, searcher: Searcher, query: Query, field: str) -> "SnippetGenerator":
        return cls(searcher, query, field)

    def set_max_num_chars(self, max_num_chars: int):
        self._max_num_chars = max_num_chars

    def snippet_from_doc(self, address: DocAddress) -> Snippet:
        marked = self._searcher.highlight(self._query, self._field, address)
        text, spans = split_highlights(marked)
        return select_fragment(text, spans, self._max_num_chars)
