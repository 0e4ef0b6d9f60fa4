"""
Project-wide settings.
Loads environment variables (and an optional .env file) into a type-safe settings object.
"""
from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Settings for every stage of the aggregation pipeline."""

    # Logging
    log_level: str = "INFO"
    log_dir: str = "logs"

    # NewsData.io (budgeted API)
    newsdata_api_key: str = ""
    newsdata_base_url: str = "https://newsdata.io/api/1/news"
    newsdata_rate_limit_delay: float = 1.0  # seconds between requests
    newsdata_max_page_size: int = 10

    # Daily credit ledger
    max_daily_credits: int = 200
    articles_per_credit: int = 10
    near_limit_threshold: float = 0.85
    # true skips credit accounting entirely (development only)
    disable_credit_tracking: bool = False

    # Tier B storage: "file" or "redis"
    budget_cache_backend: str = "file"
    budget_cache_path: str = "cache/newsdata-cache.json"
    budget_cache_redis_key: str = "news_pipeline:newsdata_cache"

    # Redis
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: str = ""

    # Tier A feed cache
    feed_cache_max_age: int = 300  # seconds
    feed_cache_max_size: int = 50
    feed_cache_stale_while_revalidate: bool = True

    # Feed fetching
    fetch_timeout: float = 15.0
    fetch_max_retries: int = 3
    fetch_backoff_base: float = 2.0
    # false lets an empty but well-formed feed count as success
    empty_feed_is_failure: bool = True

    # Orchestration
    target_article_count: int = 100
    rss_batch_size: int = 6

    # Moderation
    min_quality_score: float = 0.3
    duplicate_threshold: float = 0.65

    @field_validator("rss_batch_size")
    @classmethod
    def _check_batch_size(cls, value: int) -> int:
        """Batches stay between 4 and 8 concurrent fetches."""
        if not 4 <= value <= 8:
            raise ValueError("rss_batch_size must be between 4 and 8")
        return value

    @field_validator("budget_cache_backend")
    @classmethod
    def _check_backend(cls, value: str) -> str:
        value = value.lower()
        if value not in {"file", "redis"}:
            raise ValueError("budget_cache_backend must be 'file' or 'redis'")
        return value

    @property
    def redis_url(self) -> str:
        """Redis connection URL."""
        if self.redis_password:
            return f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}"
        return f"redis://{self.redis_host}:{self.redis_port}"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


_settings: Settings | None = None


def get_settings() -> Settings:
    """Return the Settings singleton."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
