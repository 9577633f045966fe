from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field

from config.settings import settings
from crawler.job import JobConfig
from crawler.registry import DEFAULT_SITE, EXTRACTORS
from data.database import get_session
from data.repositories import TaskRepository

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


class SubmitRequest(BaseModel):
    target_id: str = Field(min_length=1, max_length=128)
    site: str = DEFAULT_SITE
    max_records: int | None = Field(default=None, ge=1, le=10_000)
    duplicate_stop_threshold: int | None = Field(default=None, ge=1, le=1_000)


def _manager(request: Request):
    manager = getattr(request.app.state, "manager", None)
    if manager is None:
        raise HTTPException(503, "Job manager not initialized")
    return manager


def _task_to_dict(t) -> dict:
    return {
        "id": t.id,
        "target_id": t.target_id,
        "site": t.site,
        "status": t.status,
        "record_count": t.record_count,
        "result": t.result,
        "created_at": t.created_at.isoformat() if t.created_at else None,
        "started_at": t.started_at.isoformat() if t.started_at else None,
        "completed_at": t.completed_at.isoformat() if t.completed_at else None,
    }


@router.post("", status_code=202)
async def submit_job(body: SubmitRequest, request: Request):
    if body.site not in EXTRACTORS:
        raise HTTPException(400, f"Unknown site: {body.site}")
    config = JobConfig(
        site=body.site,
        max_records=body.max_records or settings.CRAWL_MAX_RECORDS,
        duplicate_stop_threshold=body.duplicate_stop_threshold
        or settings.CRAWL_DUPLICATE_STOP_THRESHOLD,
    )
    job_id = await _manager(request).submit(body.target_id, config)
    return {"job_id": job_id, "target_id": body.target_id}


@router.get("")
async def list_jobs(request: Request):
    return [s.to_dict() for s in _manager(request).list_active()]


@router.get("/history")
async def job_history(
    status: str | None = Query(None, pattern="^(created|running|completed|failed)$"),
    limit: int = Query(20, ge=1, le=100),
):
    async with get_session() as session:
        tasks = await TaskRepository(session).recent(status=status, limit=limit)
        return [_task_to_dict(t) for t in tasks]


@router.get("/schedule")
async def schedule_status(request: Request):
    scheduler = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        return {"running": False, "jobs": []}
    return scheduler.get_status()


@router.post("/force-reset")
async def force_reset(request: Request):
    """Recovery: clear in-memory slots, then fail durable tasks left "running"."""
    manager = _manager(request)
    cleared = await manager.force_reset()
    demoted = await request.app.state.store.fail_orphaned_running()
    return {"cleared": cleared, "demoted": demoted}


@router.get("/{job_id}")
async def job_status(job_id: str, request: Request):
    return _manager(request).status(job_id).to_dict()


@router.delete("/{job_id}", status_code=202)
async def cancel_job(job_id: str, request: Request):
    await _manager(request).cancel(job_id)
    return {"job_id": job_id, "cancelling": True}
