"""Tokenizers that prepare text for the FTS5 ``unicode61`` tokenizer.

FTS5 only splits on separator characters, so a run of Chinese characters would
otherwise be indexed as one token. ``JiebaTokenizer`` segments such runs into
words and marks each boundary with a zero-width space, which ``unicode61``
treats as a separator. The marker is invisible and is removed again before
stored text leaves the engine.
"""

import re

import jieba

from mytxt.logger import logging

logger = logging.getLogger(__name__)

jieba.setLogLevel(logging.WARNING)

WORD_BOUNDARY = "\u200b"

# Han, kana and hangul: scripts written without spaces between words.
_CJK_RE = re.compile("[\u3040-\u30ff\u3400-\u4dbf\u4e00-\u9fff\uf900-\ufaff\uac00-\ud7af]")


def _is_word_char(ch: str) -> bool:
    return ch.isalnum() or ch == "_"


def _is_cjk(ch: str) -> bool:
    return _CJK_RE.match(ch) is not None


def strip_boundaries(text: str) -> str:
    return text.replace(WORD_BOUNDARY, "")


class Tokenizer:
    """Identity tokenizer: leaves word splitting entirely to ``unicode61``."""

    def segment(self, text: str) -> str:
        return strip_boundaries(text)


class JiebaTokenizer(Tokenizer):
    """Segmentation tokenizer for text without whitespace word boundaries."""

    def segment(self, text: str) -> str:
        text = strip_boundaries(text)
        parts: list[str] = []
        previous = ""
        for word in jieba.cut(text):
            if not word:
                continue
            if previous and _needs_boundary(previous[-1], word[0]):
                parts.append(WORD_BOUNDARY)
            parts.append(word)
            previous = word
        return "".join(parts)


def _needs_boundary(left: str, right: str) -> bool:
    if not (_is_word_char(left) and _is_word_char(right)):
        return False
    return _is_cjk(left) or _is_cjk(right)


class TokenizerManager:
    """Name -> tokenizer registry owned by an index."""

    def __init__(self):
        self._tokenizers: dict[str, Tokenizer] = {"default": Tokenizer()}

    def register(self, name: str, tokenizer: Tokenizer):
        logger.debug("Registering tokenizer %s", name)
        self._tokenizers[name] = tokenizer

    def get(self, name: str) -> Tokenizer | None:
        return self._tokenizers.get(name)
