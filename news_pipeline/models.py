"""
Typed records shared by every pipeline stage.

Articles and registry entries are frozen pydantic models so downstream
consumers can hold references without defensive copies. Cache entries are
plain dataclasses owned by their cache tier.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

from news_pipeline.errors import ValidationError


class Category(str, Enum):
    """Content buckets used for routing and cache partitioning."""

    BRICS = "BRICS"
    INDONESIA = "Indonesia"
    BALI = "Bali"


# ---------------------------------------------------------------------------
# Articles
# ---------------------------------------------------------------------------

class Article(BaseModel):
    """Canonical article record. Immutable once produced."""

    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    link: str
    description: str = ""
    # None means the upstream date was missing or unparseable
    pub_date: datetime | None = None
    author: str | None = None
    category: Category
    source: str
    source_url: str
    image_url: str | None = None

    @classmethod
    def build(cls, **fields: Any) -> Article:
        """Construct from loosely typed upstream fields.

        Raises:
            ValidationError: A required field is missing or has the wrong type.
        """
        try:
            return cls(**fields)
        except PydanticValidationError as e:
            raise ValidationError(
                f"Malformed article ({e.error_count()} field errors): {e}",
                source=fields.get("source"),
            ) from e

    def sort_key(self) -> float:
        """Timestamp used for newest-first ordering; undated sorts last."""
        if self.pub_date is None:
            return float("-inf")
        return self.pub_date.timestamp()


# Articles from the budgeted API carry this suffix on their source name
API_SOURCE_SUFFIX = " (NewsData.io)"


def strip_source_suffix(source: str) -> str:
    """'Antara News (NewsData.io)' -> 'Antara News'."""
    if source.endswith(API_SOURCE_SUFFIX):
        return source[: -len(API_SOURCE_SUFFIX)]
    return source


def sort_newest_first(articles: list[Article]) -> list[Article]:
    """Return a new list ordered by publication date, newest first."""
    return sorted(articles, key=Article.sort_key, reverse=True)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class SourceDescriptor(BaseModel):
    """A feed source. Read-only at runtime."""

    model_config = ConfigDict(frozen=True)

    key: str
    name: str
    url: str
    category: Category
    active: bool = True
    # 1 = known fast/reliable, 2 = standard, 3 = slow or flaky
    tier: int = Field(default=2, ge=1, le=3)


class ScraperSelectors(BaseModel):
    """CSS selectors for one site. Container, link and title are required."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    article_list: str = Field(min_length=1)
    article_link: str = Field(min_length=1)
    article_title: str = Field(min_length=1)
    article_description: str | None = None
    article_date: str | None = None
    article_author: str | None = None
    article_image: str | None = None


class ScraperConfig(BaseModel):
    """Selector config for one scrapeable site."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    key: str
    name: str
    url: str
    category: Category
    selectors: ScraperSelectors
    base_url: str
    max_articles: int = Field(default=20, gt=0)
    active: bool = True


# ---------------------------------------------------------------------------
# Caches
# ---------------------------------------------------------------------------

@dataclass
class CacheEntry:
    """One cached payload. Timestamps are epoch seconds."""

    key: str
    payload: list[Article]
    created_at: float
    expires_at: float
    etag: str | None = None
    last_modified: str | None = None

    def __post_init__(self) -> None:
        if self.expires_at < self.created_at:
            raise ValueError(
                f"expires_at ({self.expires_at}) precedes created_at ({self.created_at})"
            )

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "articles": [a.model_dump(mode="json") for a in self.payload],
            "createdAt": self.created_at,
            "expiresAt": self.expires_at,
            "etag": self.etag,
            "lastModified": self.last_modified,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CacheEntry:
        return cls(
            key=data["key"],
            payload=[Article.model_validate(a) for a in data.get("articles", [])],
            created_at=float(data["createdAt"]),
            expires_at=float(data["expiresAt"]),
            etag=data.get("etag"),
            last_modified=data.get("lastModified"),
        )


class CreditLedger(BaseModel):
    """Daily credit budget for the paid API.

    A single instance is owned by the budgeted cache; every mutation happens
    under that cache's lock.
    """

    day: date = Field(default_factory=lambda: datetime.now(tz=timezone.utc).date())
    credits_used: int = Field(default=0, ge=0)
    limit: int = Field(default=200, gt=0)
    articles_per_credit: int = Field(default=10, gt=0)

    def credits_needed(self, articles: int) -> int:
        """Credits charged for requesting ``articles`` items."""
        return math.ceil(max(articles, 0) / self.articles_per_credit)

    def has_capacity(self, credits: int) -> bool:
        return self.credits_used + credits <= self.limit

    def debit(self, credits: int) -> None:
        """Spend credits. Must be preceded by ``has_capacity``."""
        if not self.has_capacity(credits):
            raise ValueError(
                f"debit of {credits} would exceed limit "
                f"({self.credits_used}/{self.limit})"
            )
        self.credits_used += credits

    @property
    def remaining_credits(self) -> int:
        return max(0, self.limit - self.credits_used)

    @property
    def usage_ratio(self) -> float:
        return self.credits_used / self.limit

    def reset_if_stale(self, today: date) -> bool:
        """Zero the ledger when it belongs to an earlier day.

        Returns:
            True if the ledger was reset.
        """
        if self.day == today:
            return False
        self.day = today
        self.credits_used = 0
        return True


class FetchResponse(BaseModel):
    """Result of one budgeted API fetch."""

    articles: list[Article] = Field(default_factory=list)
    total_results: int = 0
    next_page: str | None = None
    from_cache: bool = False


# ---------------------------------------------------------------------------
# Moderation
# ---------------------------------------------------------------------------

FlagType = Literal["duplicate", "spam", "low_quality", "unreliable_source"]
Severity = Literal["low", "medium", "high"]


class ModerationFlag(BaseModel):
    """A typed finding raised against one article."""

    model_config = ConfigDict(frozen=True)

    type: FlagType
    severity: Severity
    description: str
    confidence: float = Field(ge=0.0, le=1.0)


class ModerationResult(BaseModel):
    """Verdict for one article. Derived per run, never persisted."""

    approved: bool
    score: float = Field(ge=0.0, le=1.0)
    flags: list[ModerationFlag] = Field(default_factory=list)
    reason: str | None = None

    @model_validator(mode="after")
    def _approved_has_no_high_flag(self) -> ModerationResult:
        if self.approved and any(f.severity == "high" for f in self.flags):
            raise ValueError("an approved result cannot carry a high-severity flag")
        return self

    @property
    def high_flags(self) -> list[ModerationFlag]:
        return [f for f in self.flags if f.severity == "high"]


@dataclass
class ModerationBatch:
    """Output of batch moderation, aligned with the input order."""

    approved: list[Article] = field(default_factory=list)
    rejected: list[Article] = field(default_factory=list)
    results: list[ModerationResult] = field(default_factory=list)
