from __future__ import annotations

from fastapi import APIRouter, Query

from data.database import get_session
from data.repositories import RecordRepository

router = APIRouter(prefix="/api/records", tags=["records"])


def _record_to_dict(r) -> dict:
    return {
        "id": r.record_id,
        "target_id": r.target_id,
        "site": r.site,
        "task_id": r.task_id,
        "url": r.url,
        "author_handle": r.author_handle,
        "author_name": r.author_name,
        "content": r.content,
        "engagement": r.engagement,
        "media_urls": r.media_urls,
        "is_repost": r.is_repost,
        "is_reply": r.is_reply,
        # epoch ms as JSON integers
        "published_at": r.published_at,
        "scraped_at": r.scraped_at,
    }


@router.get("")
async def list_records(
    target_id: str | None = None,
    author: str | None = None,
    search: str | None = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    async with get_session() as session:
        repo = RecordRepository(session)
        rows = await repo.list_records(
            target_id=target_id, author=author, search=search, limit=limit, offset=offset
        )
        return [_record_to_dict(r) for r in rows]


@router.get("/stats")
async def record_stats():
    async with get_session() as session:
        return await RecordRepository(session).count_by_target()
