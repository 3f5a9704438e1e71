"""Circuit breaker and rate limiter inspection routes."""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request

from research_core.api.deps import get_runtime
from research_core.api.rate_limit import RATE_LIMITS, limiter
from research_core.runtime import Runtime

router = APIRouter(prefix="/resilience", tags=["resilience"])


@router.get("/circuits")
@limiter.limit(RATE_LIMITS["default"])
async def get_circuits(
    request: Request,
    runtime: Runtime = Depends(get_runtime),
) -> dict[str, Any]:
    """Circuit breaker stats per service."""
    return runtime.registry.circuit_stats()


@router.get("/rate-limits/{provider}")
@limiter.limit(RATE_LIMITS["default"])
async def get_rate_limits(
    request: Request,
    provider: str,
    runtime: Runtime = Depends(get_runtime),
) -> dict[str, Any]:
    """Rate limit usage for a provider."""
    limiter_ = runtime.registry.rate_limiter
    if provider not in limiter_.providers:
        raise HTTPException(status_code=404, detail=f"Unknown provider: {provider}")
    return limiter_.get_rate_limit_stats(provider)
