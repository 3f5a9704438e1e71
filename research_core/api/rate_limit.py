"""Rate limiting configuration for the HTTP API."""

from slowapi import Limiter
from slowapi.util import get_remote_address

# Create limiter instance
limiter = Limiter(key_func=get_remote_address)

# Rate limit configurations
RATE_LIMITS = {
    "default": "100/minute",  # Reads
    "enqueue": "30/minute",  # Job submission
    "admin": "10/minute",  # Pause, resume, cancel
}
