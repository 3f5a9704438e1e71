"""FastAPI dependencies."""

from fastapi import HTTPException, Request

from research_core.runtime import Runtime


async def get_runtime(request: Request) -> Runtime:
    """Dependency for FastAPI routes."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Service is starting up")
    return runtime
