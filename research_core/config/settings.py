"""Application settings using Pydantic. No side effects at import time."""

import logging
from functools import lru_cache
from typing import TYPE_CHECKING, Annotated, Any

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .constants import (
    CLAUDE_REQUESTS_PER_HOUR,
    CLAUDE_REQUESTS_PER_MINUTE,
    CLAUDE_TOKENS_PER_MINUTE,
    DEFAULT_FAILURE_THRESHOLD,
    DEFAULT_JOB_ATTEMPTS,
    DEFAULT_JOB_BACKOFF,
    DEFAULT_MAX_RETRY_DELAY,
    DEFAULT_QUEUE_PREFIX,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_RESET_TIMEOUT,
    DEFAULT_RETRY_DELAY,
    DEFAULT_SUCCESS_THRESHOLD,
    MAX_RETRIES,
    MONITOR_BACKLOG_THRESHOLD,
    MONITOR_FAILURE_RATE_THRESHOLD,
    MONITOR_INTERVAL,
    MONITOR_MIN_FINISHED,
    PERPLEXITY_DEEP_RESEARCH_PER_HOUR,
    PERPLEXITY_REQUESTS_PER_DAY,
    PERPLEXITY_REQUESTS_PER_MINUTE,
    PROVIDER_CLAUDE,
    PROVIDER_PERPLEXITY,
    RATE_LIMIT_FAIL_SAFE_DELAY,
    REDIS_POLL_INTERVAL,
    REMOVE_ON_COMPLETE,
    REMOVE_ON_FAIL,
    SERVICE_BREAKER_OVERRIDES,
    THROTTLE_BACKLOG_THRESHOLD,
    THROTTLE_MIN_DELAY,
    THROTTLE_STEP_DELAY,
)

if TYPE_CHECKING:
    from research_core.resilience.rate_limiter import ProviderLimits

logger = logging.getLogger(__name__)


def mask_secret(value: str | None, visible_chars: int = 4) -> str:
    """Mask a secret value for safe logging."""
    if not value:
        return "(not set)"
    if len(value) <= visible_chars * 2:
        return "*" * len(value)
    return f"{value[:visible_chars]}...{value[-visible_chars:]}"


class Settings(BaseSettings):
    """Application settings with validation.

    Settings are loaded from environment variables and .env file.
    No side effects at class definition time - .env is loaded only when
    Settings() is instantiated.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",  # Ignore extra env vars
    )

    # === App ===
    app_name: str = "Research Core API"
    app_version: str = "0.1.0"
    log_level: str = "INFO"
    log_json: bool = Field(default=False, description="Emit JSON log lines")

    # === Queue Backend ===
    redis_url: str | None = None
    use_memory_queue: bool = Field(default=False, description="Force the in-process queue")
    queue_prefix: str = DEFAULT_QUEUE_PREFIX
    redis_poll_interval: Annotated[float, Field(gt=0)] = REDIS_POLL_INTERVAL

    # === Jobs ===
    job_attempts: Annotated[int, Field(ge=1)] = DEFAULT_JOB_ATTEMPTS
    job_backoff_delay: Annotated[float, Field(ge=0)] = DEFAULT_JOB_BACKOFF
    remove_on_complete: Annotated[int, Field(ge=0)] = REMOVE_ON_COMPLETE
    remove_on_fail: Annotated[int, Field(ge=0)] = REMOVE_ON_FAIL

    # === Enqueue Throttling ===
    throttle_backlog_threshold: Annotated[int, Field(ge=0)] = THROTTLE_BACKLOG_THRESHOLD
    throttle_step_delay: Annotated[float, Field(ge=0)] = THROTTLE_STEP_DELAY
    throttle_min_delay: Annotated[float, Field(ge=0)] = THROTTLE_MIN_DELAY

    # === Monitoring ===
    monitor_interval: Annotated[float, Field(gt=0)] = MONITOR_INTERVAL
    monitor_backlog_threshold: Annotated[int, Field(ge=0)] = MONITOR_BACKLOG_THRESHOLD
    monitor_failure_rate_threshold: Annotated[float, Field(ge=0, le=1)] = (
        MONITOR_FAILURE_RATE_THRESHOLD
    )
    monitor_min_finished: Annotated[int, Field(ge=1)] = MONITOR_MIN_FINISHED

    # === Retry ===
    max_retries: Annotated[int, Field(ge=0)] = MAX_RETRIES
    retry_delay: Annotated[float, Field(ge=0)] = DEFAULT_RETRY_DELAY
    retry_max_delay: Annotated[float, Field(gt=0)] = DEFAULT_MAX_RETRY_DELAY
    request_timeout: Annotated[float, Field(gt=0)] = DEFAULT_REQUEST_TIMEOUT

    # === Circuit Breaker ===
    breaker_failure_threshold: Annotated[int, Field(ge=1)] = DEFAULT_FAILURE_THRESHOLD
    breaker_success_threshold: Annotated[int, Field(ge=1)] = DEFAULT_SUCCESS_THRESHOLD
    breaker_reset_timeout: Annotated[float, Field(ge=0)] = DEFAULT_RESET_TIMEOUT

    # === Rate Limits ===
    claude_requests_per_minute: Annotated[int, Field(gt=0)] = CLAUDE_REQUESTS_PER_MINUTE
    claude_requests_per_hour: Annotated[int, Field(gt=0)] = CLAUDE_REQUESTS_PER_HOUR
    claude_tokens_per_minute: Annotated[int, Field(gt=0)] = CLAUDE_TOKENS_PER_MINUTE
    perplexity_requests_per_minute: Annotated[int, Field(gt=0)] = PERPLEXITY_REQUESTS_PER_MINUTE
    perplexity_requests_per_day: Annotated[int, Field(gt=0)] = PERPLEXITY_REQUESTS_PER_DAY
    perplexity_deep_research_per_hour: Annotated[int, Field(gt=0)] = (
        PERPLEXITY_DEEP_RESEARCH_PER_HOUR
    )
    rate_limit_fail_safe_delay: Annotated[float, Field(ge=0)] = RATE_LIMIT_FAIL_SAFE_DELAY

    @property
    def has_redis(self) -> bool:
        """Check if the durable queue backend should be used."""
        return bool(self.redis_url) and not self.use_memory_queue

    def provider_limits(self) -> dict[str, "ProviderLimits"]:
        """Rate-limit ceilings for every known provider."""
        from research_core.resilience.rate_limiter import ProviderLimits

        return {
            PROVIDER_CLAUDE: ProviderLimits(
                requests_per_minute=self.claude_requests_per_minute,
                requests_per_hour=self.claude_requests_per_hour,
                tokens_per_minute=self.claude_tokens_per_minute,
            ),
            PROVIDER_PERPLEXITY: ProviderLimits(
                requests_per_minute=self.perplexity_requests_per_minute,
                requests_per_day=self.perplexity_requests_per_day,
                expensive_per_window=self.perplexity_deep_research_per_hour,
            ),
        }

    def breaker_config(self, service: str) -> dict[str, Any]:
        """Circuit breaker thresholds for a service, with per-service overrides."""
        config: dict[str, Any] = {
            "failure_threshold": self.breaker_failure_threshold,
            "success_threshold": self.breaker_success_threshold,
            "reset_timeout": self.breaker_reset_timeout,
        }
        config.update(SERVICE_BREAKER_OVERRIDES.get(service, {}))
        config["failure_threshold"] = int(config["failure_threshold"])
        return config

    def log_config_summary(self) -> None:
        """Log configuration summary with masked secrets."""
        logger.info("=== Configuration Summary ===")
        logger.info(f"App: {self.app_name} v{self.app_version}")
        logger.info(f"Queue backend: {'redis' if self.has_redis else 'memory'}")
        logger.info(f"REDIS_URL: {mask_secret(self.redis_url, 8)}")
        logger.info(f"Retries: {self.max_retries} (base {self.retry_delay}s)")
        logger.info(
            f"Breaker: {self.breaker_failure_threshold} failures / "
            f"{self.breaker_reset_timeout}s reset"
        )
        logger.info("=============================")


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    This is the recommended way to access settings to avoid
    repeated .env file parsing.
    """
    return Settings()
