"""
Error taxonomy for the aggregation pipeline.

Per-source and per-article failures are raised close to the network or
parsing code and caught by the caller that owns the source, so a single
failure degrades to "zero articles from this source". Only
ConfigurationError is allowed to reach the orchestrator's caller.
"""

from __future__ import annotations

from enum import Enum


class PipelineError(Exception):
    """Base class for every pipeline error."""

    def __init__(self, message: str, source: str | None = None) -> None:
        super().__init__(message)
        self.source = source


class TransientNetworkError(PipelineError):
    """Timeouts, DNS failures and HTTP errors. Safe to retry."""


class StructuralParseError(PipelineError):
    """The response can never be parsed as a feed. Never retried."""


class AuthenticationError(PipelineError):
    """Credentials were rejected. The owning client disables itself."""


class BudgetExceededError(PipelineError):
    """The daily credit ledger has no room for the request.

    Callers serve stale cache or skip the API stage.
    """


class ValidationError(PipelineError):
    """A single malformed article. Drop it and keep the batch."""


class ConfigurationError(PipelineError):
    """Registry or settings are unusable. Surfaces to the caller."""


# ---------------------------------------------------------------------------
# Budgeted API errors
# ---------------------------------------------------------------------------

class AuthError(AuthenticationError):
    """HTTP 401 from the news API."""


class RateLimitError(PipelineError):
    """HTTP 429 from the news API. The client soft-disables itself."""


class ParameterError(PipelineError):
    """HTTP 422 from the news API: the request itself is wrong."""


class NetworkError(TransientNetworkError):
    """Transport failure or 5xx from the news API."""


# ---------------------------------------------------------------------------
# Feed failure classification
# ---------------------------------------------------------------------------

class FetchFailureKind(str, Enum):
    """Why a single feed attempt failed."""

    TIMEOUT = "timeout"
    HTML_INSTEAD_OF_XML = "html_instead_of_xml"
    HTTP_ERROR = "http_error"
    DNS_ERROR = "dns_error"
    PARSE_ERROR = "parse_error"
    EMPTY_FEED = "empty_feed"

    @property
    def retryable(self) -> bool:
        """HTML served in place of a feed is structurally unfixable."""
        return self is not FetchFailureKind.HTML_INSTEAD_OF_XML


class FeedFetchError(PipelineError):
    """One failed feed attempt, tagged with its failure kind."""

    def __init__(
        self,
        kind: FetchFailureKind,
        message: str,
        source: str | None = None,
        status: int | None = None,
    ) -> None:
        super().__init__(message, source=source)
        self.kind = kind
        self.status = status

    @property
    def retryable(self) -> bool:
        return self.kind.retryable

    def as_taxonomy(self) -> PipelineError:
        """Map the attempt failure onto the public taxonomy."""
        if self.kind in (
            FetchFailureKind.HTML_INSTEAD_OF_XML,
            FetchFailureKind.PARSE_ERROR,
        ):
            return StructuralParseError(str(self), source=self.source)
        return TransientNetworkError(str(self), source=self.source)
