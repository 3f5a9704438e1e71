"""Pure constants for research core. No side effects at import time."""

# === Providers ===
PROVIDER_CLAUDE = "claude"
PROVIDER_PERPLEXITY = "perplexity"

# === Circuit Breaker ===
DEFAULT_FAILURE_THRESHOLD = 5  # Consecutive failures before opening
DEFAULT_SUCCESS_THRESHOLD = 2  # Half-open successes before closing
DEFAULT_RESET_TIMEOUT = 30.0  # Seconds before an open circuit admits a trial call
STATE_HISTORY_LIMIT = 100

# Per-service overrides
SERVICE_BREAKER_OVERRIDES: dict[str, dict[str, float]] = {
    PROVIDER_PERPLEXITY: {"failure_threshold": 3, "reset_timeout": 300.0},
}

# === Retry ===
MAX_RETRIES = 3
DEFAULT_RETRY_DELAY = 1.0  # Base backoff delay (seconds)
DEFAULT_MAX_RETRY_DELAY = 60.0  # Backoff ceiling (seconds)
RETRY_JITTER_RATIO = 0.3  # Up to 30% random jitter
RETRY_ESCALATION_AFTER = 2  # Attempts beyond this get the escalation multiplier
RETRY_ESCALATION_FACTOR = 1.5
RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})

# === Timeouts (seconds) ===
DEFAULT_REQUEST_TIMEOUT = 30.0

# === Rate Limit Windows (seconds) ===
MINUTE_WINDOW = 60.0
HOUR_WINDOW = 3600.0
DAY_WINDOW = 86400.0
DEFAULT_EXPENSIVE_WINDOW = HOUR_WINDOW
RATE_LIMIT_FAIL_SAFE_DELAY = 5.0  # Wait applied to unknown providers

# === Provider Rate Limits ===
CLAUDE_REQUESTS_PER_MINUTE = 50
CLAUDE_REQUESTS_PER_HOUR = 500
CLAUDE_TOKENS_PER_MINUTE = 100_000

PERPLEXITY_REQUESTS_PER_MINUTE = 20
PERPLEXITY_REQUESTS_PER_DAY = 1000
PERPLEXITY_DEEP_RESEARCH_PER_HOUR = 10

# === Job Queue ===
DEFAULT_QUEUE_PREFIX = "research_core"
DEFAULT_JOB_ATTEMPTS = 3
DEFAULT_JOB_BACKOFF = 1.0  # Seconds; doubles on each retry
DEFAULT_JOB_PRIORITY = 5
MIN_JOB_PRIORITY = 0
MAX_JOB_PRIORITY = 100
DEFAULT_CONCURRENCY = 1
REMOVE_ON_COMPLETE = 100  # Completed jobs kept per queue
REMOVE_ON_FAIL = 200  # Failed jobs kept per queue
REDIS_POLL_INTERVAL = 0.5

# === Enqueue Throttling (rate-limited job classes) ===
THROTTLE_BACKLOG_THRESHOLD = 0  # Throttle once active + waiting exceeds this
THROTTLE_STEP_DELAY = 5.0  # Seconds per waiting job
THROTTLE_MIN_DELAY = 5.0

# === Queue Monitoring ===
MONITOR_INTERVAL = 60.0
MONITOR_BACKLOG_THRESHOLD = 50
MONITOR_FAILURE_RATE_THRESHOLD = 0.2
MONITOR_MIN_FINISHED = 10  # Finished jobs needed before failure rate is judged

# === Well-known Queues ===
DEEP_RESEARCH_QUEUE = "deep-research"
RESEARCH_QUEUE = "research"
