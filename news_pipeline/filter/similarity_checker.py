"""
Article similarity checker for duplicate detection.

Word-set Jaccard similarity over normalized text. Title and description are
compared separately and combined with fixed weights (title 0.7, description
0.3); a combined score at or above the threshold marks a duplicate.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable

from news_pipeline.models import Article
from news_pipeline.utils.logger import get_logger

logger = get_logger(__name__)

_TITLE_WEIGHT = 0.7
_DESCRIPTION_WEIGHT = 0.3

# Words of this length or shorter are ignored
_MIN_WORD_LENGTH = 2


@dataclass(frozen=True)
class SimilarityMatch:
    """Closest earlier article found for a candidate."""

    title_similarity: float
    description_similarity: float
    combined: float
    matched_title: str


class SimilarityChecker:
    """Detects near-duplicate articles using word-set Jaccard similarity."""

    def __init__(self, threshold: float = 0.65) -> None:
        self.threshold: float = threshold

    @staticmethod
    def normalize(text: str) -> str:
        """Lowercase, strip punctuation, collapse whitespace."""
        text = (text or "").lower()
        text = re.sub(r"[^\w\s]", "", text)
        text = re.sub(r"\s+", " ", text)
        return text.strip()

    @staticmethod
    def word_set(normalized: str) -> set[str]:
        return {w for w in normalized.split(" ") if len(w) > _MIN_WORD_LENGTH}

    @staticmethod
    def jaccard_similarity(set_a: set[str], set_b: set[str]) -> float:
        """Compute Jaccard similarity between two sets. Empty union is 0."""
        union = set_a | set_b
        if not union:
            return 0.0
        return len(set_a & set_b) / len(union)

    def text_similarity(self, text_a: str, text_b: str) -> float:
        return self.jaccard_similarity(
            self.word_set(self.normalize(text_a)),
            self.word_set(self.normalize(text_b)),
        )

    def compare(self, article: Article, other: Article) -> SimilarityMatch:
        title_sim = self.text_similarity(article.title, other.title)
        desc_sim = self.text_similarity(article.description, other.description)
        return SimilarityMatch(
            title_similarity=title_sim,
            description_similarity=desc_sim,
            combined=title_sim * _TITLE_WEIGHT + desc_sim * _DESCRIPTION_WEIGHT,
            matched_title=other.title,
        )

    def find_duplicate(
        self,
        article: Article,
        existing: Iterable[Article],
    ) -> SimilarityMatch | None:
        """Return the first earlier article at or above the threshold.

        Articles are checked in order; the first match wins, mirroring how a
        reader would notice the earliest repeat.
        """
        for other in existing:
            match = self.compare(article, other)
            if match.combined >= self.threshold:
                logger.debug(
                    "Duplicate detected (%.2f): '%s' ~ '%s'",
                    match.combined, article.title[:80], other.title[:80],
                )
                return match
        return None
