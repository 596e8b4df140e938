"""
FastAPI Dependencies

Route handlers reach the wired component graph through ``app.state.services``,
set by the application lifespan (or by ``create_app(services=...)`` in tests).

Example:
    @router.get("/jobs/{job_id}")
    async def get_job(job_id: str, queue: QueueDep):
        return await queue.get_job_status(job_id)
"""

from typing import Annotated

from fastapi import Depends, Request

from genguard.bootstrap import GenerationServices
from genguard.core.config.settings import Settings, get_settings
from genguard.core.resilience.dead_letter_store import DeadLetterStore
from genguard.core.resilience.job_queue import JobQueue


def get_services(request: Request) -> GenerationServices:
    """
    Raises:
        RuntimeError: The lifespan did not run and no services were supplied
    """
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise RuntimeError(
            "Generation services are not initialised; the application lifespan did not run"
        )
    return services


def get_job_queue(services: Annotated[GenerationServices, Depends(get_services)]) -> JobQueue:
    return services.queue


async def get_dead_letters(
    services: Annotated[GenerationServices, Depends(get_services)],
) -> DeadLetterStore:
    """The dead-letter view, reloaded from the store when workers run elsewhere."""
    await services.refresh_dead_letters()
    return services.dead_letters


ServicesDep = Annotated[GenerationServices, Depends(get_services)]
QueueDep = Annotated[JobQueue, Depends(get_job_queue)]
DeadLetterDep = Annotated[DeadLetterStore, Depends(get_dead_letters)]
SettingsDep = Annotated[Settings, Depends(get_settings)]
