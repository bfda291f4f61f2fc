from pathlib import Path

import docx

DOCX_EXTENSION = ".docx"


class ExtractError(Exception):
    """Text could not be extracted from a file."""

    def __init__(self, path: Path, reason: str):
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


class MalformedDocumentError(ExtractError):
    """A structured document could not be opened or parsed."""


class UnreadableFileError(ExtractError):
    """A file could not be read or decoded as text."""


def get_file_extension(path: str | Path) -> str:
    return Path(path).suffix.lower()


class TextExtractor:
    """
    Convert a file into plain text, choosing the format by file extension.

    ``extract`` only ever raises :class:`ExtractError`, so a caller walking
    many files can skip a bad one and carry on.
    """

    def extract(self, path: str | Path) -> str:
        path = Path(path)
        if get_file_extension(path) == DOCX_EXTENSION:
            return self._extract_docx(path)
        return self._extract_plaintext(path)

    def _extract_docx(self, path: Path) -> str:
        """One line per body paragraph, in document order."""
        try:
            document = docx.Document(str(path))
            lines = []
            for paragraph in document.paragraphs:
                lines.append("".join(run.text for run in paragraph.runs) + "\n")
        except Exception as e:
            raise MalformedDocumentError(path, f"{type(e).__name__}: {e}") from e
        return "".join(lines)

    def _extract_plaintext(self, path: Path) -> str:
        try:
            data = path.read_bytes()
        except OSError as e:
            raise UnreadableFileError(path, str(e)) from e

        try:
            return data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise UnreadableFileError(path, f"not valid UTF-8 text ({e.reason} at byte {e.start})") from e
