"""
Admin Routes

Operator tooling for the dead-letter quarantine and queue inspection:

GET  /admin/dead-letter                       stats + jobs ordered for triage
GET  /admin/dead-letter/{job_id}/should-retry whether the job may be retried
POST /admin/dead-letter/reprocess             give dead-lettered jobs a fresh budget
GET  /admin/queue                             job counts by status + worker state

With workers in other processes the dead-letter view is rebuilt from the store
and worker state comes from the shared status board.

In production these endpoints belong behind authentication on an internal port.
"""

from fastapi import APIRouter, Query

from genguard.application.api.dependencies import DeadLetterDep, QueueDep, ServicesDep
from genguard.application.api.models.admin import (
    DeadLetterEntry,
    DeadLetterListResponse,
    QueueMetricsResponse,
    ReprocessResponse,
    ShouldRetryResponse,
)
from genguard.core.logging.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])


@router.get("/dead-letter", response_model=DeadLetterListResponse)
async def list_dead_letter_jobs(
    dead_letters: DeadLetterDep,
    limit: int = Query(default=10, ge=1, le=100),
):
    jobs = [DeadLetterEntry(**entry.to_dict()) for entry in dead_letters.get_jobs_for_ops(limit)]
    return DeadLetterListResponse(stats=dead_letters.get_stats(), jobs=jobs)


@router.get("/dead-letter/{job_id}/should-retry", response_model=ShouldRetryResponse)
async def should_retry_job(job_id: str, dead_letters: DeadLetterDep):
    return ShouldRetryResponse(
        job_id=job_id,
        should_retry=dead_letters.should_retry_job(job_id),
        attempt_count=dead_letters.get_attempt_count(job_id),
        quarantined=job_id in dead_letters,
    )


@router.post("/dead-letter/reprocess", response_model=ReprocessResponse)
async def reprocess_dead_letter_jobs(
    queue: QueueDep,
    limit: int = Query(default=10, ge=1, le=100),
):
    reprocessed = await queue.reprocess_dead_letter_jobs(limit)
    logger.info("Dead-letter reprocess requested", limit=limit, reprocessed=len(reprocessed))
    return ReprocessResponse(reprocessed=reprocessed, count=len(reprocessed))


@router.get("/queue", response_model=QueueMetricsResponse)
async def queue_metrics(queue: QueueDep, services: ServicesDep):
    await services.refresh_dead_letters()
    snapshots = await services.get_worker_snapshots()
    return QueueMetricsResponse(
        queue=await queue.get_metrics(),
        worker=None if services.reads_remote_workers else services.worker.get_metrics(),
        workers={worker_id: snapshot["worker"] for worker_id, snapshot in snapshots.items()},
    )
