"""Orthanc stable-study callback and asynchronous job status polling."""
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from prometheus_client import Counter

from ..schemas import JobStatusOut, StableStudyAccepted
from ..services import orthanc_client
from ..services.errors import InvalidNotification
from ..services.job_queue import JobQueue
from ..services.notification import decode_body, generate_request_id, parse_stable_study_notification
from ..services.result_cache import ResultCache
from .deps import get_job_queue, get_result_cache

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orthanc", tags=["orthanc"])

NOTIFICATIONS_RECEIVED = Counter("dcm_intake_notifications_received_total", "Stable-study callbacks by outcome", ["outcome"])


@router.post("/stable-study", response_model=StableStudyAccepted, status_code=202)
async def stable_study(
    request: Request,
    x_request_id: Optional[str] = Header(default=None),
    queue: JobQueue = Depends(get_job_queue),
):
    """Queue a stable study for ingestion and answer immediately."""
    body = decode_body(await request.body(), request.headers.get("content-type"))
    try:
        notification = parse_stable_study_notification(body)
    except InvalidNotification as exc:
        logger.warning("Rejected stable-study callback: %r", body)
        NOTIFICATIONS_RECEIVED.labels(outcome="rejected").inc()
        return JSONResponse(
            status_code=400,
            content={
                "error": str(exc),
                "receivedBody": body,
                "bodyType": type(body).__name__,
                "keys": list(body.keys()) if isinstance(body, dict) else "N/A",
            },
        )

    request_id = (x_request_id or "").strip() or generate_request_id()
    job = queue.enqueue({
        "orthanc_study_id": notification.orthanc_study_id,
        "request_id": request_id,
        "submitted_at": datetime.now(timezone.utc),
        "raw_notification": notification.raw,
    })
    NOTIFICATIONS_RECEIVED.labels(outcome="queued").inc()
    logger.info(
        "Job %d queued for stable study %s (%s payload)",
        job.id, notification.orthanc_study_id, notification.shape,
    )

    return StableStudyAccepted(
        job_id=job.id,
        request_id=request_id,
        orthanc_study_id=notification.orthanc_study_id,
        check_status_url=f"/orthanc/job-status/{request_id}",
    )


@router.get("/job-status/{request_id}", response_model=JobStatusOut, response_model_exclude_none=True)
async def job_status(
    request_id: str,
    queue: JobQueue = Depends(get_job_queue),
    cache: ResultCache = Depends(get_result_cache),
):
    result = await cache.fetch(request_id)
    if result is not None:
        return JobStatusOut(
            status="completed" if result.get("success") else "failed",
            result=result,
            request_id=request_id,
        )

    job = queue.get_job_by_request_id(request_id)
    if job is None:
        return JSONResponse(
            status_code=404,
            content={"status": "not_found", "message": "Job not found or expired", "requestId": request_id},
        )

    return JobStatusOut(
        status=job.status.value,
        progress=job.progress,
        request_id=request_id,
        job_id=job.id,
        created_at=job.created_at,
        error=job.error,
    )


@router.get("/test-connection")
async def test_connection(
    queue: JobQueue = Depends(get_job_queue),
    cache: ResultCache = Depends(get_result_cache),
):
    """Check that the result cache and the archive both answer."""
    try:
        await cache.ping()
        system = await orthanc_client.get_system()
    except Exception as exc:
        logger.error("Connection test failed: %s", exc)
        return JSONResponse(status_code=500, content={"error": str(exc)})

    return {
        "redis": "working",
        "orthanc": "working",
        "orthancVersion": system.get("Version"),
        "queue": queue.stats(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
