"""HTTP API for health, resilience state and job control.

Run with:
    uvicorn research_core.api:create_app --factory
"""

from .app import create_app

__all__ = ["create_app"]
