import sqlite3
import time

import pytest

from mytxt.index.engine import (
    DATABASE_FILENAME,
    HIGHLIGHT_END,
    HIGHLIGHT_START,
    Index,
    IndexEngineError,
    LockBusyError,
    QueryParseError,
    QueryParser,
    SchemaBuilder,
    SchemaError,
    Snippet,
    SnippetGenerator,
    TokenizerNotFoundError,
    select_fragment,
    split_highlights,
)
from mytxt.index.indexer import CONTENT_FIELD, build_schema, register_tokenizers


@pytest.fixture
def index(index_dir):
    index = Index.open_or_create(index_dir, build_schema())
    register_tokenizers(index)
    return index


def add(index, *documents):
    with index.writer() as writer:
        for path, content in documents:
            writer.add_document(path=path, content=content)
        writer.commit()


def search(index, text, limit=10):
    query = QueryParser.for_index(index, [CONTENT_FIELD]).parse_query(text)
    with index.reader().searcher() as searcher:
        return [searcher.doc(address)["path"] for _, address in searcher.search(query, limit)]


class TestSchema:
    def test_builder_rejects_bad_names(self):
        builder = SchemaBuilder()
        with pytest.raises(SchemaError):
            builder.add_text_field("bad name")
        builder.add_text_field("ok")
        with pytest.raises(SchemaError):
            builder.add_text_field("ok")

    def test_schema_needs_an_indexed_field(self):
        builder = SchemaBuilder()
        builder.add_text_field("path", indexed=False)
        with pytest.raises(SchemaError):
            builder.build()

    def test_unknown_field(self):
        with pytest.raises(SchemaError):
            build_schema().get_field("title")


class TestIndex:
    def test_open_reads_schema_back(self, index, index_dir):
        reopened = Index.open(index_dir)
        assert reopened.schema == index.schema

    def test_open_missing_index(self, tmp_path):
        with pytest.raises(IndexEngineError):
            Index.open(tmp_path / "nowhere")

    def test_writer_needs_registered_tokenizer(self, index_dir):
        index = Index.open_or_create(index_dir, build_schema())
        with pytest.raises(TokenizerNotFoundError):
            index.writer()

    def test_schema_change_recreates_documents(self, index, index_dir):
        add(index, ("a.txt", "hello"))

        builder = SchemaBuilder()
        builder.add_text_field("path", indexed=False)
        builder.add_text_field("body")
        other = Index.open_or_create(index_dir, builder.build())
        with other.reader().searcher() as searcher:
            assert searcher.num_docs() == 0

    def test_uncommitted_documents_are_invisible(self, index):
        reader = index.reader()
        writer = index.writer()
        writer.add_document(path="a.txt", content="hello")
        with reader.searcher() as searcher:
            assert searcher.num_docs() == 0
        writer.rollback()
        with reader.searcher() as searcher:
            assert searcher.num_docs() == 0

    def test_second_writer_is_refused(self, index, monkeypatch):
        monkeypatch.setattr("mytxt.index.engine.BUSY_TIMEOUT_MS", 0)
        with index.writer():
            with pytest.raises(LockBusyError):
                index.writer()

    def test_writer_rolls_back_on_error(self, index):
        add(index, ("a.txt", "hello"))
        with pytest.raises(RuntimeError):
            with index.writer() as writer:
                writer.clear_all()
                raise RuntimeError("boom")
        assert search(index, "hello") == ["a.txt"]

    def test_database_file_location(self, index, index_dir):
        assert index.database_path == index_dir / DATABASE_FILENAME
        assert index.database_path.exists()

    def test_corrupt_database_cannot_be_read(self, tmp_path):
        location = tmp_path / "corrupt"
        location.mkdir()
        (location / DATABASE_FILENAME).write_bytes(b"definitely not sqlite" * 100)
        with pytest.raises(IndexEngineError):
            Index.open(location)


class TestSearch:
    def test_ranking_prefers_more_matches(self, index):
        add(
            index,
            ("once.txt", "apple " + "and many other words that dilute the match " * 3),
            ("twice.txt", "apple apple"),
            ("none.txt", "banana"),
        )
        assert search(index, "apple") == ["twice.txt", "once.txt"]

    def test_limit(self, index):
        add(index, *[(f"{i}.txt", "same words") for i in range(5)])
        assert len(search(index, "same", limit=3)) == 3

    def test_chinese_words_are_searchable(self, index):
        add(index, ("zh.txt", "我们在学习中文"), ("en.txt", "learning"))
        assert search(index, "学习") == ["zh.txt"]

    def test_stored_text_has_no_boundaries(self, index):
        add(index, ("zh.txt", "我们在学习中文"))
        query = QueryParser.for_index(index, [CONTENT_FIELD]).parse_query("学习")
        with index.reader().searcher() as searcher:
            _, address = searcher.search(query, 1)[0]
            assert searcher.doc(address)["content"] == "我们在学习中文"

    def test_reader_sees_new_commits(self, index):
        reader = index.reader()
        add(index, ("a.txt", "hello"))
        with reader.searcher() as searcher:
            assert searcher.num_docs() == 1

    def test_unindexed_fields_are_stored_verbatim(self, index):
        odd_path = f"docs/zero\u200bwidth/{HIGHLIGHT_START}marked{HIGHLIGHT_END}.txt"
        add(index, (odd_path, f"hello {HIGHLIGHT_START}there{HIGHLIGHT_END}"))
        query = QueryParser.for_index(index, [CONTENT_FIELD]).parse_query("hello")
        with index.reader().searcher() as searcher:
            _, address = searcher.search(query, 1)[0]
            document = searcher.doc(address)
        assert document["path"] == odd_path
        assert document["content"] == "hello there"


class TestQueryParser:
    def test_empty_query(self, index):
        with pytest.raises(QueryParseError, match="Query is empty"):
            QueryParser.for_index(index, [CONTENT_FIELD]).parse_query("   ")

    @pytest.mark.parametrize("text", ['"unbalanced', "hello AND", "(open"])
    def test_syntax_errors(self, index, text):
        with pytest.raises(QueryParseError):
            QueryParser.for_index(index, [CONTENT_FIELD]).parse_query(text)

    def test_query_syntax_error_is_engine_error(self):
        assert issubclass(QueryParseError, IndexEngineError)

    def test_default_field_must_be_indexed(self, index):
        with pytest.raises(SchemaError):
            QueryParser.for_index(index, ["path"])

    def test_parse_does_not_touch_index(self, index):
        query = QueryParser.for_index(index, [CONTENT_FIELD]).parse_query('"hello world" OR app*')
        assert query.text == '"hello world" OR app*'
        assert query.fields == (CONTENT_FIELD,)

    @pytest.mark.parametrize(
        "text,expression",
        [
            ("hello world", '"hello" OR "world"'),
            ("hello AND world", '"hello" AND "world"'),
            ("hello OR world", '"hello" OR "world"'),
            ("+hello world", '"hello"'),
            ("hello -there", '"hello" NOT ("there")'),
            ("NOT there hello", '"hello" NOT ("there")'),
            ("app*", '"app"*'),
            ('"hello world" -"good bye"', '"hello world" NOT ("good bye")'),
            ("(a OR b) AND c", '("a" OR "b") AND "c"'),
            ("e-mail foo.bar", '"e-mail" OR "foo.bar"'),
            ("hello, world", '"hello," OR "world"'),
            (", ; -", ""),
            ("-hello", ""),
        ],
    )
    def test_translation(self, index, text, expression):
        query = QueryParser.for_index(index, [CONTENT_FIELD]).parse_query(text)
        assert query.expression == expression

    @pytest.mark.parametrize("text", ["hello)", "NOT", "OR hello", "hello AND OR world", "-(a"])
    def test_more_syntax_errors(self, index, text):
        with pytest.raises(QueryParseError):
            QueryParser.for_index(index, [CONTENT_FIELD]).parse_query(text)


class TestKeywordSearch:
    @pytest.fixture
    def index(self, index):
        add(
            index,
            ("punct.txt", "don't send e-mail to foo.bar or C++ people"),
            ("greeting.txt", "hello world"),
            ("there.txt", "hello there"),
        )
        return index

    @pytest.mark.parametrize(
        "text,expected",
        [
            ("don't", ["punct.txt"]),
            ("e-mail", ["punct.txt"]),
            ("foo.bar", ["punct.txt"]),
            ("C++", ["punct.txt"]),
            ("hello, world", ["greeting.txt", "there.txt"]),
        ],
    )
    def test_punctuation_inside_terms(self, index, text, expected):
        assert search(index, text) == expected

    def test_terms_are_alternatives(self, index):
        assert sorted(search(index, "world there")) == ["greeting.txt", "there.txt"]
        assert search(index, "hello world") == ["greeting.txt", "there.txt"]

    def test_required_and_excluded_terms(self, index):
        assert search(index, "+hello +world") == ["greeting.txt"]
        assert search(index, "hello AND world") == ["greeting.txt"]
        assert search(index, "hello -world") == ["there.txt"]

    def test_prefix(self, index):
        assert search(index, "peop*") == ["punct.txt"]

    def test_nothing_to_match(self, index):
        assert search(index, "-hello") == []
        assert search(index, ", ;") == []


class TestSnippets:
    def test_split_highlights_merges_touching_ranges(self):
        marked = f"a {HIGHLIGHT_START}b{HIGHLIGHT_END}{HIGHLIGHT_START}c{HIGHLIGHT_END} d"
        assert split_highlights(marked) == ("a bc d", [(2, 4)])

    def test_fragment_without_matches_is_the_head(self):
        assert select_fragment("abcdef", [], 3) == Snippet("abc")

    def test_fragment_with_many_matches(self):
        text = "error " * 20000
        spans = [(start, start + 5) for start in range(0, len(text), 6)]

        time_start = time.perf_counter()
        snippet = select_fragment(text, spans, 120)
        elapsed = time.perf_counter() - time_start

        assert snippet.fragment == text[:120]
        assert len(snippet.highlighted) == 20
        assert elapsed < 1.0

    def test_fragment_spans_in_any_order(self):
        text = "x" * 50 + "hit" + "y" * 50 + "hit hit" + "z" * 50
        spans = [(103, 106), (50, 53), (107, 110)]
        assert select_fragment(text, spans, 20) == select_fragment(text, sorted(spans), 20)

    def test_fragment_prefers_dense_window(self):
        text = "x" * 50 + "hit" + "y" * 50 + "hit hit" + "z" * 50
        first = 50
        second = text.index("hit hit")
        spans = [(first, first + 3), (second, second + 3), (second + 4, second + 7)]
        snippet = select_fragment(text, spans, 20)
        assert len(snippet.fragment) == 20
        assert snippet.to_html().count("<b>hit</b>") == 2

    def test_fragment_near_end_fills_window(self):
        text = "a" * 30 + "end"
        snippet = select_fragment(text, [(30, 33)], 10)
        assert snippet.fragment == "aaaaaaaend"
        assert snippet.highlighted == ((7, 10),)

    def test_html_is_escaped(self):
        snippet = Snippet("<tag> & hit", ((8, 11),))
        assert snippet.to_html() == "&lt;tag&gt; &amp; <b>hit</b>"

    def test_generator_highlights_matches(self, index):
        add(index, ("a.txt", "say hello to the world"))
        query = QueryParser.for_index(index, [CONTENT_FIELD]).parse_query("hello")
        with index.reader().searcher() as searcher:
            _, address = searcher.search(query, 1)[0]
            generator = SnippetGenerator.create(searcher, query, CONTENT_FIELD)
            generator.set_max_num_chars(120)
            assert generator.snippet_from_doc(address).to_html() == "say <b>hello</b> to the world"

    def test_generator_bounds_length(self, index):
        add(index, ("a.txt", "filler " * 100 + "needle" + " filler" * 100))
        query = QueryParser.for_index(index, [CONTENT_FIELD]).parse_query("needle")
        with index.reader().searcher() as searcher:
            _, address = searcher.search(query, 1)[0]
            generator = SnippetGenerator.create(searcher, query, CONTENT_FIELD)
            generator.set_max_num_chars(40)
            snippet = generator.snippet_from_doc(address)
        assert len(snippet.fragment) == 40
        assert "<b>needle</b>" in snippet.to_html()


def test_in_memory_fts5_is_available():
    connection = sqlite3.connect(":memory:")
    try:
        connection.execute("CREATE VIRTUAL TABLE t USING fts5(x)")
    finally:
        connection.close()
