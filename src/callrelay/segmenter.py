"""
Incremental sentence segmentation for streamed assistant text.

Sentence boundaries are a plain terminal-punctuation scan (`.`, `!`, `?`) from
the start of the buffer. A run of terminators ("...", "?!") closes a single
sentence. Abbreviations ("Sr.", "Dr.") are NOT recognised and will split a
sentence early; that is a known limitation of this scan, not something to
patch over here.
"""

from __future__ import annotations

import re
from typing import List, Tuple

_SENTENCE_RE = re.compile(r"[^.!?]*[.!?]+")


def split_sentences(buffer: str, delta: str) -> Tuple[List[str], str]:
    """
    Append `delta` to `buffer` and cut off every complete sentence.

    Returns:
        (complete sentences in order, trimmed and non-empty; remaining fragment)
    """
    text = (buffer or "") + (delta or "")
    sentences: List[str] = []
    end = 0
    for match in _SENTENCE_RE.finditer(text):
        sentence = match.group(0).strip()
        end = match.end()
        if sentence and not _is_punctuation_only(sentence):
            sentences.append(sentence)
    return sentences, text[end:].lstrip()


def _is_punctuation_only(sentence: str) -> bool:
    return not sentence.strip(".!? \t\n")


class SentenceSegmenter:
    """Per-response buffer around `split_sentences`."""

    def __init__(self) -> None:
        self.buffer = ""

    def append(self, delta: str) -> List[str]:
        sentences, self.buffer = split_sentences(self.buffer, delta)
        return sentences

    def flush(self) -> List[str]:
        """Emit the trailing fragment (if any) as a final sentence."""
        tail = self.buffer.strip()
        self.buffer = ""
        if not tail or _is_punctuation_only(tail):
            return []
        return [tail]

    def reset(self) -> None:
        self.buffer = ""
