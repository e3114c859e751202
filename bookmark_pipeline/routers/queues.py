"""Job queue endpoints: submission, inspection and resubmission."""

import structlog
from fastapi import APIRouter, Depends, HTTPException, status

from bookmark_pipeline.core.errors import JobNotFoundError, JobStateError, PayloadValidationError
from bookmark_pipeline.jobs.broker import JobQueue, get_job_queue
from bookmark_pipeline.jobs.types import QueueName
from bookmark_pipeline.routers.metrics import record_enqueue, set_queue_stats
from bookmark_pipeline.schemas import (
    EnqueueBody,
    JobHandleResponse,
    JobResponse,
    QueueStatsResponse,
)

router = APIRouter(prefix="/queues", tags=["queues"])
logger = structlog.get_logger(__name__)

_db_pool = None


def set_db_pool(pool) -> None:
    """Set the database pool for this router."""
    global _db_pool
    _db_pool = pool


def get_broker() -> JobQueue:
    try:
        return get_job_queue(_db_pool)
    except ValueError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Job queue unavailable: database not connected",
        ) from e


@router.get("/{queue}/stats", response_model=QueueStatsResponse)
async def queue_stats(queue: QueueName, broker: JobQueue = Depends(get_broker)):
    """Per-status job counts for one queue."""
    stats = await broker.stats(queue)
    set_queue_stats(stats)
    return QueueStatsResponse.from_stats(stats)


@router.get(
    "/{queue}/jobs/{job_id}",
    response_model=JobResponse,
    responses={404: {"description": "Job not found"}},
)
async def get_job(queue: QueueName, job_id: str, broker: JobQueue = Depends(get_broker)):
    job = await broker.get(queue, job_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job {queue.value}/{job_id} not found",
        )
    return JobResponse.from_job(job)


@router.post(
    "/{queue}/jobs",
    response_model=JobHandleResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={422: {"description": "Payload does not match the queue schema"}},
)
async def enqueue_job(
    queue: QueueName, body: EnqueueBody, broker: JobQueue = Depends(get_broker)
):
    """
    Submit a job.

    Snapshot and index jobs are keyed by bookmark id unless ``job_id`` is
    given; resubmitting while a copy is waiting, active or recently completed
    returns the existing job with outcome "deduplicated".
    """
    try:
        handle = await broker.enqueue(
            queue, body.payload, job_id=body.job_id, priority=body.priority
        )
    except PayloadValidationError as e:
        logger.info("enqueue_rejected", queue=queue.value, error=e.message)
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": e.message, "errors": e.errors},
        ) from e

    record_enqueue(handle.queue.value, handle.outcome.value)
    return JobHandleResponse.from_handle(handle)


@router.post(
    "/{queue}/jobs/{job_id}/retry",
    response_model=JobResponse,
    responses={
        404: {"description": "Job not found"},
        409: {"description": "Job is not terminally failed"},
    },
)
async def retry_job(queue: QueueName, job_id: str, broker: JobQueue = Depends(get_broker)):
    """Resubmit a terminally failed job with a fresh retry budget."""
    try:
        job = await broker.retry(queue, job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message) from e
    except JobStateError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message) from e
    return JobResponse.from_job(job)
