"""
Shared fixtures for the mytxt tests.
"""

from pathlib import Path

import docx
import pytest

from mytxt.bus import MessageBus
from mytxt.config import Settings
from mytxt.index.indexer import Indexer
from mytxt.index.searcher import QueryExecutor
from mytxt.index.store import IndexStore


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch):
    """Keep tests away from the user's settings and index."""
    monkeypatch.delenv("MYTXT_CONFIG", raising=False)
    monkeypatch.delenv("MYTXT_INDEX_DIR", raising=False)
    monkeypatch.delenv("MYTXT_LOG_LEVEL", raising=False)


@pytest.fixture
def index_dir(tmp_path) -> Path:
    return tmp_path / "index"


@pytest.fixture
def docs_dir(tmp_path) -> Path:
    directory = tmp_path / "docs"
    directory.mkdir()
    return directory


@pytest.fixture
def settings(index_dir) -> Settings:
    return Settings(index_dir=index_dir)


@pytest.fixture
def bus() -> MessageBus:
    return MessageBus()


@pytest.fixture
def store() -> IndexStore:
    return IndexStore()


@pytest.fixture
def indexer(store, bus, index_dir) -> Indexer:
    return Indexer(store, bus, index_dir)


@pytest.fixture
def executor(store, bus) -> QueryExecutor:
    return QueryExecutor(store, bus)


# =============================================================================
# File helpers
# =============================================================================


def write_text(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def write_docx(path: Path, paragraphs: list[str]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    document = docx.Document()
    for text in paragraphs:
        document.add_paragraph(text)
    document.save(str(path))
    return path


def resolved(path: Path) -> str:
    return str(path.resolve())
