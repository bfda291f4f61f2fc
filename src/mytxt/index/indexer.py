import os
import time
from collections.abc import Iterable
from pathlib import Path

from mytxt.bus import MessageBus
from mytxt.config import DEFAULT_EXTENSIONS, normalize_extensions
from mytxt.index.engine import Index, IndexEngineError, Schema, SchemaBuilder
from mytxt.index.extractors import ExtractError, TextExtractor
from mytxt.index.messages import IndexErrorMessage, IndexFinishedMessage, IndexProgressMessage
from mytxt.index.store import IndexHandle, IndexStore
from mytxt.index.tokenizer import JiebaTokenizer
from mytxt.logger import logging

logger = logging.getLogger(__name__)

PATH_FIELD = "path"
CONTENT_FIELD = "content"
SEGMENTATION_TOKENIZER = "jieba"


class IndexBuildError(Exception):
    """An indexing run failed; the previously installed index is untouched."""


def build_schema() -> Schema:
    schema_builder = SchemaBuilder()
    schema_builder.add_text_field(PATH_FIELD, indexed=False, stored=True)
    schema_builder.add_text_field(
        CONTENT_FIELD, indexed=True, stored=True, tokenizer=SEGMENTATION_TOKENIZER
    )
    return schema_builder.build()


def register_tokenizers(index: Index):
    index.tokenizers.register(SEGMENTATION_TOKENIZER, JiebaTokenizer())


def scan_files(root_dir: Path, extensions: Iterable[str]) -> list[Path]:
    """All files under ``root_dir`` with an eligible extension, in a stable order."""
    extensions = set(normalize_extensions(extensions))
    files = []
    for dirpath, dirnames, filenames in os.walk(root_dir):
        dirnames.sort()
        for filename in sorted(filenames):
            path = Path(dirpath) / filename
            if path.suffix.lower() in extensions and path.is_file():
                files.append(path)
    return files


class Indexer:
    """
    Builds the full-text index for a directory and installs it in the store.

    Every build is a full rebuild: the index ends up holding exactly the
    eligible files found under the directory during that run.
    """

    store: IndexStore
    bus: MessageBus
    index_dir: Path
    extensions: tuple[str, ...]
    extractor: TextExtractor

    def __init__(
        self,
        store: IndexStore,
        bus: MessageBus,
        index_dir: Path,
        extensions: Iterable[str] = DEFAULT_EXTENSIONS,
        extractor: TextExtractor | None = None,
    ):
        self.store = store
        self.bus = bus
        self.index_dir = Path(index_dir)
        self.extensions = normalize_extensions(extensions)
        self.extractor = extractor if extractor else TextExtractor()

    def run(self, root_dir: str | Path):
        """
        Build the index for ``root_dir``, reporting on the bus.

        Sends progress messages followed by exactly one ``IndexFinishedMessage``
        or ``IndexErrorMessage``. Never raises.
        """
        try:
            self.build_index(root_dir)
        except IndexBuildError as e:
            logger.error("Indexing %s failed: %s", root_dir, e)
            self.bus.send(IndexErrorMessage(str(e)))
        except Exception as e:
            logger.exception("Unexpected failure while indexing %s", root_dir)
            self.bus.send(IndexErrorMessage(f"Indexing Error: {e}"))
        else:
            self.bus.send(IndexFinishedMessage())

    def build_index(self, root_dir: str | Path) -> IndexHandle:
        """
        Index every eligible file under ``root_dir`` and install the result.

        Raises:
            IndexBuildError: If the directory, the index location, the commit
                or the reader fails. Nothing is installed in that case.
        """
        root = Path(root_dir).expanduser()
        if not root.is_dir():
            raise IndexBuildError(f"Directory not found: {root}")
        root = root.resolve()

        logger.info("Starting indexing process for: %s", root)
        time_start = time.time()

        files = scan_files(root, self.extensions)
        total_files = len(files)
        logger.info("Found %d eligible files", total_files)

        try:
            index = Index.open_or_create(self.index_dir, build_schema())
            register_tokenizers(index)

            with index.writer() as writer:
                writer.clear_all()
                indexed = self._add_files(writer, files)
                writer.commit()

            reader = index.reader()
        except IndexEngineError as e:
            raise IndexBuildError(str(e)) from e

        handle = IndexHandle(index, reader)
        self.store.install(handle)

        logger.info(
            "Indexed %d of %d files in %.2fs",
            indexed,
            total_files,
            time.time() - time_start,
        )
        return handle

    def _add_files(self, writer, files: list[Path]) -> int:
        total_files = len(files)
        if total_files == 0:
            self.bus.send(IndexProgressMessage(1.0))
            return 0

        indexed = 0
        for processed, path in enumerate(files, start=1):
            logger.debug("Indexing: %s", path)
            try:
                content = self.extractor.extract(path)
            except ExtractError as e:
                logger.warning("Failed to process file %s: %s", path, e.reason)
            else:
                if content:
                    writer.add_document(path=str(path), content=content)
                    indexed += 1
            self.bus.send(IndexProgressMessage(processed / total_files))
        return indexed

    def open_existing(self) -> IndexHandle | None:
        """
        Install the index already on disk at ``index_dir``, if there is one.

        Does nothing when the store already holds a handle. Returns the handle
        in the store afterwards.
        """
        try:
            index = Index.open(self.index_dir)
            register_tokenizers(index)
            reader = index.reader()
        except IndexEngineError as e:
            logger.info("No usable index at %s: %s", self.index_dir, e)
            return self.store.snapshot()

        handle = IndexHandle(index, reader)
        return self.store.update(lambda current: current if current is not None else handle)
