"""
Job Routes

POST /jobs                  enqueue one generation job
POST /jobs/pre-generation   enqueue low-priority background jobs
GET  /jobs/{job_id}         poll job status

Dead-lettered jobs report a "please retry later" message instead of staying
pending forever.
"""

from fastapi import APIRouter, status

from genguard.application.api.dependencies import QueueDep
from genguard.application.api.models.jobs import (
    EnqueueBatchResponse,
    EnqueueJobRequest,
    EnqueueJobResponse,
    PreGenerationRequest,
)
from genguard.core.models.job import JobStatusView

router = APIRouter(prefix="/jobs", tags=["Jobs"])


@router.post("", response_model=EnqueueJobResponse, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_job(body: EnqueueJobRequest, queue: QueueDep):
    job_id = await queue.enqueue_job(
        body.user_id,
        body.payload,
        body.priority,
        session_id=body.session_id,
        max_retries=body.max_retries,
    )
    return EnqueueJobResponse(job_id=job_id)


@router.post(
    "/pre-generation",
    response_model=EnqueueBatchResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def enqueue_pre_generation(body: PreGenerationRequest, queue: QueueDep):
    job_ids = await queue.enqueue_pre_generation_jobs(
        body.user_id, body.session_id, body.payloads, reason=body.reason
    )
    return EnqueueBatchResponse(job_ids=job_ids, count=len(job_ids))


@router.get("/{job_id}", response_model=JobStatusView)
async def get_job_status(job_id: str, queue: QueueDep):
    """Raises JobNotFoundError (404) for unknown ids."""
    return await queue.get_job_status(job_id)
