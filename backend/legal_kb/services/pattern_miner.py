"""
Pattern Miner — recurring phrases per category

Algorithm:
  1. Load the category's training documents
  2. Split each text into sentences, lowercase, tokenize into words
  3. Collect the SET of word n-grams (min_words..max_words) per document,
     never crossing a sentence boundary
  4. Document frequency per n-gram; keep n-grams present in at least
     max(min_documents, ceil(min_share × category size)) documents
  5. Drop an n-gram when a longer kept n-gram contains it and was found in
     exactly the same documents (it adds no information)
  6. Rank by frequency, then length, and persist the top max_results as
     DocumentPattern rows (type "phrase")

Confidence = documents containing the phrase / documents in the category.
"""

from __future__ import annotations

import logging
import math
import re
import uuid
from collections import defaultdict
from typing import Iterable, Sequence

from legal_kb.repositories.training import PatternDraft, StoredDocument, TrainingRepository

logger = logging.getLogger(__name__)

_SENTENCE_SPLIT_RE = re.compile(r"[.;:!?\n\r]+")
_WORD_RE           = re.compile(r"[^\W_]+", re.UNICODE)

Ngram = tuple[str, ...]


def sentence_words(text: str) -> Iterable[list[str]]:
    """Lowercased word lists, one per sentence-like fragment."""
    for sentence in _SENTENCE_SPLIT_RE.split(text):
        words = _WORD_RE.findall(sentence.lower())
        if words:
            yield words


def document_ngrams(text: str, min_words: int, max_words: int) -> set[Ngram]:
    grams: set[Ngram] = set()
    for words in sentence_words(text):
        for size in range(min_words, min(max_words, len(words)) + 1):
            for start in range(len(words) - size + 1):
                gram = tuple(words[start : start + size])
                if all(word.isdigit() for word in gram):
                    continue
                grams.add(gram)
    return grams


class PatternMiner:
    """
    Usage:
        miner = PatternMiner.from_settings(repository)
        count = await miner.mine_patterns("Contract")
    """

    def __init__(
        self,
        repository:    TrainingRepository,
        min_documents: int   = 3,
        min_share:     float = 0.3,
        min_words:     int   = 4,
        max_words:     int   = 8,
        max_results:   int   = 100,
    ) -> None:
        if min_words < 1 or max_words < min_words:
            raise ValueError("require 1 <= min_words <= max_words")
        self._repository    = repository
        self._min_documents = min_documents
        self._min_share     = min_share
        self._min_words     = min_words
        self._max_words     = max_words
        self._max_results   = max_results

    @classmethod
    def from_settings(cls, repository: TrainingRepository) -> "PatternMiner":
        from legal_kb.core.config import settings

        return cls(
            repository,
            min_documents=settings.pattern_min_documents,
            min_words=settings.pattern_min_words,
            max_words=settings.pattern_max_words,
            max_results=settings.pattern_max_results,
        )

    async def mine_patterns(self, category: str) -> int:
        """Mine and persist the category's phrase patterns; returns how many were stored."""
        documents = await self._repository.list_documents(category)
        if len(documents) < self._min_documents:
            logger.info(
                "Pattern mining skipped | category=%s documents=%d min=%d",
                category, len(documents), self._min_documents,
            )
            return 0

        drafts = self.find_patterns(category, documents)
        if not drafts:
            return 0
        return await self._repository.save_patterns(drafts)

    def find_patterns(self, category: str, documents: Sequence[StoredDocument]) -> list[PatternDraft]:
        total = len(documents)
        if total < self._min_documents:
            return []
        required = max(self._min_documents, math.ceil(self._min_share * total))

        seen_in: dict[Ngram, set[uuid.UUID]] = defaultdict(set)
        for doc in documents:
            for gram in document_ngrams(doc.text_content or "", self._min_words, self._max_words):
                seen_in[gram].add(doc.id)

        kept = {gram: ids for gram, ids in seen_in.items() if len(ids) >= required}
        subsumed = self._subsumed(kept)

        ranked = sorted(
            (gram for gram in kept if gram not in subsumed),
            key=lambda gram: (-len(kept[gram]), -len(gram), gram),
        )[: self._max_results]

        order = {doc.id: index for index, doc in enumerate(documents)}
        drafts = [
            PatternDraft(
                category=category,
                text=" ".join(gram),
                document_ids=sorted(kept[gram], key=order.__getitem__),
                confidence=round(len(kept[gram]) / total, 4),
            )
            for gram in ranked
        ]
        logger.debug(
            "Patterns found | category=%s documents=%d candidates=%d kept=%d",
            category, total, len(kept), len(drafts),
        )
        return drafts

    def _subsumed(self, kept: dict[Ngram, set[uuid.UUID]]) -> set[Ngram]:
        """N-grams contained in a longer kept n-gram with the same document set."""
        subsumed: set[Ngram] = set()
        for gram, ids in kept.items():
            for size in range(self._min_words, len(gram)):
                for start in range(len(gram) - size + 1):
                    inner = gram[start : start + size]
                    if inner not in subsumed and kept.get(inner) == ids:
                        subsumed.add(inner)
        return subsumed
