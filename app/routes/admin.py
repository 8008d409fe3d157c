"""
Admin Routes for maintenance jobs and pipeline health
Provides endpoints to monitor and control scheduled jobs, the rating
stream backlog and the rating stats cache

Features:
- Manual job triggers
- Job status monitoring
- Pause/resume jobs
- Rating stream and consumer status
- Cache statistics

All endpoints require the X-API-Key header
"""

from apscheduler.jobstores.base import JobLookupError
from fastapi import APIRouter, Depends, HTTPException, status
from datetime import datetime, timezone

from app.services.background_jobs import background_jobs
from app.services.rating_consumer import rating_consumer
from app.services.rating_events import RatingEventPublisher, get_event_publisher
from app.utils.cache import RatingStatsCache, get_rating_cache
from app.utils.dependencies import require_api_key

router = APIRouter(prefix="/admin", tags=["Admin"], dependencies=[Depends(require_api_key)])

VALID_JOBS = ['monitor_rating_stream', 'reconcile_search_index']


def _check_job_id(job_id: str) -> None:
    if job_id not in VALID_JOBS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid job_id. Must be one of: {', '.join(VALID_JOBS)}"
        )


@router.post("/jobs/trigger/{job_id}", status_code=status.HTTP_200_OK)
def trigger_job(job_id: str):
    """
    Run a maintenance job now

    Valid job_ids:
    - monitor_rating_stream
    - reconcile_search_index (may run a full sync)
    """
    _check_job_id(job_id)
    background_jobs.run_job_now(job_id)
    stats = background_jobs.job_stats[job_id]
    return {
        "message": f"Job '{job_id}' finished with status '{stats['status']}'",
        "job": job_id,
        "result": stats.get('result'),
        "error": stats.get('error'),
        "triggered_at": datetime.now(timezone.utc).isoformat()
    }


@router.get("/jobs/status", status_code=status.HTTP_200_OK)
def get_jobs_status():
    """
    Get status of all scheduled background jobs

    Returns:
    - Job IDs and names
    - Next run times
    - Last execution times
    - Current status (idle/running/success/failed)
    - Error messages (if any)
    """
    stats = background_jobs.get_job_stats()
    return {
        "scheduler_running": stats['scheduler_running'],
        "timezone": stats['timezone'],
        "jobs": stats['jobs'],
        "checked_at": datetime.now(timezone.utc).isoformat()
    }


@router.post("/jobs/pause/{job_id}", status_code=status.HTTP_200_OK)
def pause_job(job_id: str):
    """Pause a scheduled job"""
    _check_job_id(job_id)

    try:
        background_jobs.pause_job(job_id)
    except JobLookupError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job is not scheduled: {str(e)}"
        )

    return {
        "message": f"Job '{job_id}' paused successfully",
        "job_id": job_id,
        "paused_at": datetime.now(timezone.utc).isoformat()
    }


@router.post("/jobs/resume/{job_id}", status_code=status.HTTP_200_OK)
def resume_job(job_id: str):
    """Resume a paused job"""
    _check_job_id(job_id)

    try:
        background_jobs.resume_job(job_id)
    except JobLookupError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job is not scheduled: {str(e)}"
        )

    return {
        "message": f"Job '{job_id}' resumed successfully",
        "job_id": job_id,
        "resumed_at": datetime.now(timezone.utc).isoformat()
    }


@router.get("/stream/pending", status_code=status.HTTP_200_OK)
def get_stream_pending(publisher: RatingEventPublisher = Depends(get_event_publisher)):
    """
    Rating stream backlog

    Returns:
    - Entries delivered but not acknowledged (pending)
    - Stream length
    - Consumer loop counters
    """
    return {
        "stream": publisher.stream_key,
        "group": publisher.group,
        "pending": publisher.pending_count(),
        "stream_length": publisher.stream_length(),
        "consumer": rating_consumer.get_status(),
        "checked_at": datetime.now(timezone.utc).isoformat()
    }


@router.get("/cache/stats", status_code=status.HTTP_200_OK)
def get_cache_statistics(cache: RatingStatsCache = Depends(get_rating_cache)):
    """Hit/miss counters of the rating stats cache"""
    return {
        **cache.get_cache_stats(),
        "checked_at": datetime.now(timezone.utc).isoformat()
    }
