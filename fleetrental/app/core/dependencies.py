"""
Shared FastAPI dependencies.

Authentication lives in front of this service; callers identify the
operator through the ``X-Actor`` header, which is recorded in audit entries.
"""

from typing import Optional
from fastapi import Header, Request

from fleetrental.app.services.allocation import AllocationEngine
from fleetrental.app.services.runtime import EngineRuntime


def get_runtime(request: Request) -> EngineRuntime:
    return request.app.state.runtime


def get_engine(request: Request) -> AllocationEngine:
    """Allocation engine built in the application lifespan."""
    return request.app.state.runtime.allocation


async def get_actor(x_actor: Optional[str] = Header(None, max_length=100)) -> Optional[str]:
    return x_actor
