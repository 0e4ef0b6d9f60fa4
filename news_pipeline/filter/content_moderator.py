"""
Content moderation and duplicate filtering.

Every article starts at a score of 1.0 and loses points for each finding:

  - duplicate:          similar to an earlier article in the same call
  - low_quality:        short/missing title or description, bad URL,
                        missing date, odd title length, shouting
  - unreliable_source:  source reliability below 0.5
  - spam:               spam keywords, promotional language, punctuation

An article is approved when its score stays at or above the minimum and it
carries no high-severity flag. Keyword lists and the reliability table are
read from moderation_config.json.
"""

from __future__ import annotations

import json
import re
import time
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional
from urllib.parse import urlparse

from news_pipeline.filter.similarity_checker import SimilarityChecker
from news_pipeline.models import (
    Article,
    ModerationBatch,
    ModerationFlag,
    ModerationResult,
    strip_source_suffix,
)
from news_pipeline.utils.logger import get_logger

logger = get_logger(__name__)

_DEFAULT_CONFIG_PATH = str(Path(__file__).parent / "moderation_config.json")

# Penalties subtracted from the starting score of 1.0
_DUPLICATE_PENALTY = 0.8
_UNRELIABLE_PENALTY = 0.3
_SPAM_PENALTY = 0.6

_MIN_TITLE_CHARS = 5
_MIN_DESCRIPTION_CHARS = 20
_MAX_TITLE_WORDS = 20
_MIN_TITLE_WORDS = 3
_MAX_CAPS_RATIO = 0.5


@dataclass
class _Reliability:
    score: float
    flags: list[str]
    expires_at: float


class ContentModerator:
    """Scores, flags and approves articles."""

    def __init__(
        self,
        config_path: Optional[str] = None,
        min_quality_score: float | None = None,
        duplicate_threshold: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config: dict[str, Any] = self._load_config(
            config_path or _DEFAULT_CONFIG_PATH
        )
        self.min_quality_score: float = (
            min_quality_score
            if min_quality_score is not None
            else self.config.get("min_quality_score", 0.3)
        )
        self._similarity_checker = SimilarityChecker(
            threshold=(
                duplicate_threshold
                if duplicate_threshold is not None
                else self.config.get("duplicate_threshold", 0.65)
            )
        )
        self._known_sources: dict[str, float] = dict(
            self.config.get("source_reliability", {})
        )
        self._spam_keywords: list[str] = [
            kw.lower() for kw in self.config.get("spam_keywords", [])
        ]
        self._promo_indicators: list[str] = [
            kw.lower() for kw in self.config.get("promo_indicators", [])
        ]
        self._reliability_ttl = self.config.get("reliability_cache_hours", 24) * 3600
        self._reliability_cache: dict[str, _Reliability] = {}
        self._clock = clock
        self._stats: Counter[str] = Counter()

        logger.info(
            "ContentModerator initialized: min_score=%.2f, dup_threshold=%.2f, "
            "%d known sources, %d spam keywords",
            self.min_quality_score,
            self._similarity_checker.threshold,
            len(self._known_sources),
            len(self._spam_keywords),
        )

    @staticmethod
    def _load_config(config_path: str) -> dict[str, Any]:
        """Load moderation rules from a JSON file."""
        path = Path(config_path)
        if not path.exists():
            logger.warning(
                "Config file not found at %s, using empty config", config_path
            )
            return {}
        with open(path, encoding="utf-8") as f:
            config = json.load(f)
        logger.info("Moderation config loaded from %s", config_path)
        return config

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def moderate_article(
        self,
        article: Article,
        existing: list[Article] | None = None,
    ) -> ModerationResult:
        """Moderate one article against ``existing`` articles.

        Args:
            article: The candidate.
            existing: Articles to check for duplicates, in order.

        Returns:
            ModerationResult with score, flags and (when rejected) a reason.
        """
        flags: list[ModerationFlag] = []
        score = 1.0

        match = self._similarity_checker.find_duplicate(article, existing or [])
        if match is not None:
            flags.append(
                ModerationFlag(
                    type="duplicate",
                    severity="high",
                    description=f'Similar to existing article: "{match.matched_title}"',
                    confidence=min(1.0, match.combined),
                )
            )
            score -= _DUPLICATE_PENALTY
            self._stats["duplicates_removed"] += 1

        quality_flags, reduction = self._check_quality(article)
        flags.extend(quality_flags)
        score -= reduction
        self._stats["quality_issues"] += len(quality_flags)

        reliability = self.get_source_reliability(article.source)
        if reliability < self.config.get("unreliable_below", 0.5):
            flags.append(
                ModerationFlag(
                    type="unreliable_source",
                    severity="medium",
                    description=(
                        f'Source "{article.source}" has low reliability score: {reliability}'
                    ),
                    confidence=0.8,
                )
            )
            score -= _UNRELIABLE_PENALTY

        spam_flag = self._detect_spam(article)
        if spam_flag is not None:
            flags.append(spam_flag)
            score -= _SPAM_PENALTY

        approved = score >= self.min_quality_score and not any(
            f.severity == "high" for f in flags
        )
        self._stats["processed"] += 1
        self._stats["approved" if approved else "rejected"] += 1

        return ModerationResult(
            approved=approved,
            score=max(0.0, min(1.0, score)),
            flags=flags,
            reason=None if approved else self._rejection_reason(flags),
        )

    def moderate_articles(self, articles: list[Article]) -> ModerationBatch:
        """Moderate a batch left to right.

        Article ``i`` is compared only against articles ``0..i-1`` of this
        call, whatever their verdict.
        """
        batch = ModerationBatch()
        for i, article in enumerate(articles):
            result = self.moderate_article(article, articles[:i])
            batch.results.append(result)
            if result.approved:
                batch.approved.append(article)
            else:
                batch.rejected.append(article)
                logger.warning(
                    "Article rejected: '%s' - %s", article.title[:80], result.reason
                )

        logger.info(
            "Moderation complete: %d approved, %d rejected",
            len(batch.approved), len(batch.rejected),
        )
        return batch

    def get_source_reliability(self, source: str) -> float:
        """Reliability score for ``source``, cached per source for 24 hours."""
        now = self._clock()
        cached = self._reliability_cache.get(source)
        if cached is not None and cached.expires_at > now:
            return cached.score

        lookup = strip_source_suffix(source)
        score = self._known_sources.get(
            lookup, self.config.get("default_reliability", 0.4)
        )
        flags = ["needs_review"] if score < self.config.get("needs_review_below", 0.7) else []
        self._reliability_cache[source] = _Reliability(
            score=score, flags=flags, expires_at=now + self._reliability_ttl
        )
        self._stats["source_reliability_updates"] += 1
        return score

    def get_source_flags(self, source: str) -> list[str]:
        """Review flags attached to ``source`` (e.g. ``needs_review``)."""
        self.get_source_reliability(source)
        return list(self._reliability_cache[source].flags)

    def clear_reliability_cache(self) -> None:
        self._reliability_cache.clear()
        logger.info("Source reliability cache cleared")

    @staticmethod
    def get_quality_metrics(results: list[ModerationResult]) -> dict[str, Any]:
        """Summarise a set of moderation results."""
        total = len(results)
        approved = sum(1 for r in results if r.approved)
        flag_counts = Counter(f.type for r in results for f in r.flags)
        return {
            "total": total,
            "approved": approved,
            "rejected": total - approved,
            "approval_rate": round(approved / total * 100, 1) if total else 0.0,
            "average_score": round(sum(r.score for r in results) / total, 3) if total else 0.0,
            "flag_counts": dict(flag_counts),
        }

    def get_stats(self) -> dict[str, int]:
        """Cumulative counters since construction."""
        return {
            "total_articles_processed": self._stats["processed"],
            "approved_articles": self._stats["approved"],
            "rejected_articles": self._stats["rejected"],
            "duplicates_removed": self._stats["duplicates_removed"],
            "quality_issues": self._stats["quality_issues"],
            "source_reliability_updates": self._stats["source_reliability_updates"],
        }

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    @staticmethod
    def is_valid_url(url: str) -> bool:
        if not url:
            return False
        try:
            parsed = urlparse(url)
        except ValueError:
            return False
        return parsed.scheme in ("http", "https") and bool(parsed.netloc)

    def _check_quality(self, article: Article) -> tuple[list[ModerationFlag], float]:
        checks: list[tuple[str, str, float, float]] = []
        title = article.title or ""

        if len(title.strip()) < _MIN_TITLE_CHARS:
            checks.append(("high", "Title is missing or too short", 1.0, 0.5))
        if len((article.description or "").strip()) < _MIN_DESCRIPTION_CHARS:
            checks.append(("medium", "Description is missing or too short", 0.9, 0.3))
        if not self.is_valid_url(article.link):
            checks.append(("high", "Invalid or missing URL", 1.0, 0.4))
        if article.pub_date is None:
            checks.append(("low", "Invalid or missing publication date", 0.8, 0.1))

        title_words = len(title.split(" "))
        if title_words > _MAX_TITLE_WORDS:
            checks.append(("low", "Title is unusually long (may be clickbait)", 0.6, 0.1))
        if title_words < _MIN_TITLE_WORDS:
            checks.append(("medium", "Title is too short", 0.8, 0.2))

        if title and len(re.findall(r"[A-Z]", title)) / len(title) > _MAX_CAPS_RATIO:
            checks.append(("medium", "Excessive capitalization in title", 0.7, 0.2))

        flags = [
            ModerationFlag(
                type="low_quality",
                severity=severity,
                description=description,
                confidence=confidence,
            )
            for severity, description, confidence, _ in checks
        ]
        return flags, sum(penalty for *_, penalty in checks)

    def _detect_spam(self, article: Article) -> ModerationFlag | None:
        """First matching rule wins: keywords, promo language, punctuation."""
        text = f"{article.title} {article.description}".lower()

        keyword_hits = [kw for kw in self._spam_keywords if kw in text]
        if len(keyword_hits) >= self.config.get("spam_keyword_min_matches", 2):
            return self._spam_flag(
                f"Contains spam keywords: {', '.join(keyword_hits)}", 0.9
            )

        promo_hits = [kw for kw in self._promo_indicators if kw in text]
        if len(promo_hits) >= self.config.get("promo_min_matches", 3):
            return self._spam_flag(
                f"Contains excessive promotional language: {', '.join(promo_hits)}", 0.7
            )

        if (
            text.count("!") > self.config.get("max_exclamations", 5)
            or text.count("?") > self.config.get("max_questions", 3)
        ):
            return self._spam_flag(
                "Excessive punctuation indicating promotional content", 0.6
            )
        return None

    @staticmethod
    def _spam_flag(description: str, confidence: float) -> ModerationFlag:
        return ModerationFlag(
            type="spam", severity="high", description=description, confidence=confidence
        )

    @staticmethod
    def _rejection_reason(flags: list[ModerationFlag]) -> str:
        for severity in ("high", "medium"):
            selected = [f.description for f in flags if f.severity == severity]
            if selected:
                return "; ".join(selected)
        return "; ".join(f.description for f in flags)
