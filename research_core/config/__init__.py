"""Configuration module for research core."""

from .constants import (
    # Providers
    PROVIDER_CLAUDE,
    PROVIDER_PERPLEXITY,
    # Retry
    MAX_RETRIES,
    RETRYABLE_STATUS_CODES,
    # Queues
    DEEP_RESEARCH_QUEUE,
    RESEARCH_QUEUE,
)
from .settings import Settings, get_settings, mask_secret

__all__ = [
    "Settings",
    "get_settings",
    "mask_secret",
    "PROVIDER_CLAUDE",
    "PROVIDER_PERPLEXITY",
    "MAX_RETRIES",
    "RETRYABLE_STATUS_CODES",
    "DEEP_RESEARCH_QUEUE",
    "RESEARCH_QUEUE",
]
