"""
Interest detection for caller utterances.

A small, deterministic keyword layer: decides whether a single caller utterance
signals intent to move forward (schedule a meeting, ask for pricing, ...).

Matching rules:
- lower-case + trim; no other normalization (accents are significant)
- utterances shorter than `min_words` are never classified
- negative phrases are checked first and short-circuit to "not matched"
- positive phrases are checked in priority order; first match wins
"""

from __future__ import annotations

import re
from typing import NamedTuple, Optional, Sequence

# Priority order matters: scheduling beats pricing beats generic interest.
DEFAULT_POSITIVE_KEYWORDS: tuple[str, ...] = (
    "agendar",
    "marcar uma reunião",
    "marcar reunião",
    "marcar um horário",
    "reunião",
    "quanto custa",
    "qual o preço",
    "qual o valor",
    "quanto fica",
    "quanto é",
    "tenho interesse",
    "me interessa",
    "quero saber mais",
    "quero contratar",
    "vamos fechar",
    "pode me mandar",
    "manda uma proposta",
    "me envia uma proposta",
    "proposta",
    "pode me ligar",
    "fala com um consultor",
)

DEFAULT_NEGATIVE_KEYWORDS: tuple[str, ...] = (
    "não tenho interesse",
    "nao tenho interesse",
    "não me interessa",
    "sem interesse",
    "não quero",
    "nao quero",
    "não preciso",
    "não, obrigado",
    "não obrigado",
    "não posso falar",
    "pare de ligar",
    "para de ligar",
    "tira meu número",
    "já tenho",
    "agora não",
)


class InterestResult(NamedTuple):
    matched: bool
    signal: Optional[str] = None


NOT_MATCHED = InterestResult(False, None)


def _normalize(text: str) -> str:
    return (text or "").strip().lower()


def _compile(keywords: Sequence[str]) -> tuple[tuple[str, re.Pattern[str]], ...]:
    compiled = []
    for keyword in keywords:
        keyword = _normalize(keyword)
        if keyword:
            compiled.append((keyword, re.compile(rf"(?<!\w){re.escape(keyword)}(?!\w)")))
    return tuple(compiled)


class InterestClassifier:
    """Stateless keyword/negation matcher over a single utterance."""

    def __init__(
        self,
        *,
        positive_keywords: Sequence[str] = DEFAULT_POSITIVE_KEYWORDS,
        negative_keywords: Sequence[str] = DEFAULT_NEGATIVE_KEYWORDS,
        min_words: int = 3,
    ):
        self.min_words = max(1, min_words)
        self._positive = _compile(positive_keywords or DEFAULT_POSITIVE_KEYWORDS)
        self._negative = _compile(negative_keywords or DEFAULT_NEGATIVE_KEYWORDS)

    @classmethod
    def from_config(cls, config) -> "InterestClassifier":
        return cls(
            positive_keywords=config.interest_positive_keywords,
            negative_keywords=config.interest_negative_keywords,
            min_words=config.interest_min_words,
        )

    def classify(self, text: str) -> InterestResult:
        normalized = _normalize(text)
        if len(normalized.split()) < self.min_words:
            return NOT_MATCHED

        for _keyword, pattern in self._negative:
            if pattern.search(normalized):
                return NOT_MATCHED

        for keyword, pattern in self._positive:
            if pattern.search(normalized):
                return InterestResult(True, keyword)

        return NOT_MATCHED
