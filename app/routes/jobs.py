"""
Job API Routes
Submit background jobs, poll their status and manage queues.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from app.auth.verify import admin_dependency, auth_dependency
from app.infrastructure.observability.logging import get_logger
from app.jobs.errors import InvalidJobPayload, QueueCapacityExceeded, UnknownJobType
from app.jobs.registry import get_queue_manager
from app.models.api.calendar_request import EnqueueJobRequest
from app.models.api.calendar_response import JobAcceptedResponse, JobStatusResponse

logger = get_logger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.post("/{job_type}", response_model=JobAcceptedResponse, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_job(
    job_type: str,
    request: EnqueueJobRequest | None = None,
    claims: dict = Depends(auth_dependency),
):
    """Submit a job for the authenticated user."""
    user_id = claims["sub"]
    extra = request.payload if request else {}
    payload = {**extra, "user_id": user_id}

    try:
        job_id = await get_queue_manager().add_job(job_type, payload)
    except UnknownJobType as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except InvalidJobPayload as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"message": str(e), "errors": e.errors},
        )
    except QueueCapacityExceeded as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    logger.info("Job accepted", job_type=job_type, job_id=job_id, user_id=user_id)
    return JobAcceptedResponse(job_id=job_id, type=job_type)


@router.get("/stats")
async def queue_stats(claims: dict = Depends(admin_dependency)):
    """Per-queue counts."""
    return {"queues": await get_queue_manager().get_queue_stats()}


@router.get("/{job_id}", response_model=JobStatusResponse)
async def get_job_status(job_id: str, claims: dict = Depends(auth_dependency)):
    job = await get_queue_manager().get_job(job_id)
    # Other users' jobs are indistinguishable from missing ones
    if job is None or job.user_id != claims["sub"]:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return job.to_status_dict()


@router.post("/queues/{name}/pause")
async def pause_queue(name: str, claims: dict = Depends(admin_dependency)):
    try:
        await get_queue_manager().pause_queue(name)
    except UnknownJobType as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    logger.info("Queue paused via API", queue=name, user_id=claims["sub"])
    return {"queue": name, "paused": True}


@router.post("/queues/{name}/resume")
async def resume_queue(name: str, claims: dict = Depends(admin_dependency)):
    try:
        await get_queue_manager().resume_queue(name)
    except UnknownJobType as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    logger.info("Queue resumed via API", queue=name, user_id=claims["sub"])
    return {"queue": name, "paused": False}
