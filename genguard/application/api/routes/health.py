"""
Health Routes

GET /health              liveness, no dependencies touched
GET /health/generation   breaker state, failure budget, adaptive timeout,
                         recovery probe status and worker admission state

When the workers run in other processes the generation endpoint reports what
they publish to the shared status board.

The generation endpoint reports 200 even while the breaker is open: an open
breaker is the system protecting itself, not the API being down.
"""

from datetime import datetime, timezone

from fastapi import APIRouter
from pydantic import BaseModel

from genguard.application.api.dependencies import ServicesDep
from genguard.application.api.models.admin import GenerationHealthResponse

router = APIRouter(prefix="/health", tags=["Health"])


class HealthResponse(BaseModel):
    status: str
    timestamp: str


@router.get("", response_model=HealthResponse)
async def health_check():
    return HealthResponse(status="healthy", timestamp=datetime.now(timezone.utc).isoformat())


@router.get("/generation", response_model=GenerationHealthResponse)
async def generation_health(services: ServicesDep):
    return GenerationHealthResponse(**await services.get_generation_health())
