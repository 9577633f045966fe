from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_upsert
from sqlalchemy.ext.asyncio import AsyncSession

from core.models import Record
from data.schema import DBCrawlTask, DBRecord

# Durable task lifecycle
STATUS_CREATED = "created"
STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── RecordRepository ─────────────────────────────────────────────────


class RecordRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._s = session

    async def exists(self, record_id: str, target_id: str) -> bool:
        q = select(DBRecord.id).where(
            DBRecord.target_id == target_id, DBRecord.record_id == record_id
        )
        return (await self._s.scalar(q.limit(1))) is not None

    async def insert_if_absent(self, record: Record, task_id: str | None = None) -> bool:
        """Insert a record unless (target, id) is already stored.

        Returns True when a new row was written.
        """
        stmt = (
            sqlite_upsert(DBRecord)
            .values(
                record_id=record.id,
                target_id=record.source_target_id,
                site=record.site,
                task_id=task_id,
                url=record.url,
                author_handle=record.author_handle,
                author_name=record.author_name,
                content=record.content,
                engagement=dict(record.engagement_counters),
                media_urls=list(record.media_urls),
                is_repost=record.is_repost,
                is_reply=record.is_reply,
                published_at=int(record.published_at),
                scraped_at=int(record.scraped_at),
            )
            .on_conflict_do_nothing(index_elements=["target_id", "record_id"])
        )
        result = await self._s.execute(stmt)
        return bool(result.rowcount and result.rowcount > 0)

    async def list_records(
        self,
        *,
        target_id: str | None = None,
        author: str | None = None,
        search: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[DBRecord]:
        q = select(DBRecord)
        if target_id:
            q = q.where(DBRecord.target_id == target_id)
        if author:
            q = q.where(DBRecord.author_handle == author)
        if search:
            q = q.where(DBRecord.content.ilike(f"%{search}%"))
        q = q.order_by(DBRecord.published_at.desc()).limit(limit).offset(offset)
        result = await self._s.execute(q)
        return list(result.scalars().all())

    async def count_by_target(self) -> dict[str, int]:
        q = select(DBRecord.target_id, func.count(DBRecord.id)).group_by(
            DBRecord.target_id
        )
        rows = (await self._s.execute(q)).all()
        return {r[0]: r[1] for r in rows}


# ── TaskRepository ───────────────────────────────────────────────────


class TaskRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._s = session

    async def create(self, task_id: str, *, target_id: str, site: str, config: dict) -> None:
        self._s.add(
            DBCrawlTask(
                id=task_id,
                target_id=target_id,
                site=site,
                status=STATUS_CREATED,
                record_count=0,
                config=config,
                created_at=_utcnow(),
            )
        )

    async def get(self, task_id: str) -> DBCrawlTask | None:
        return await self._s.get(DBCrawlTask, task_id)

    async def mark_running(self, task_id: str) -> None:
        await self._s.execute(
            update(DBCrawlTask)
            .where(DBCrawlTask.id == task_id)
            .values(status=STATUS_RUNNING, started_at=_utcnow())
        )

    async def finish(self, task_id: str, *, status: str, result: dict) -> None:
        await self._s.execute(
            update(DBCrawlTask)
            .where(DBCrawlTask.id == task_id)
            .values(
                status=status,
                result=result,
                record_count=result.get("new_count", 0),
                completed_at=_utcnow(),
            )
        )

    async def update_record_count(self, task_id: str, count: int) -> None:
        await self._s.execute(
            update(DBCrawlTask)
            .where(DBCrawlTask.id == task_id)
            .values(record_count=count)
        )

    async def running_tasks(self) -> list[DBCrawlTask]:
        q = select(DBCrawlTask).where(DBCrawlTask.status == STATUS_RUNNING)
        return list((await self._s.execute(q)).scalars().all())

    async def recent(
        self, *, status: str | None = None, limit: int = 20
    ) -> list[DBCrawlTask]:
        q = select(DBCrawlTask)
        if status:
            q = q.where(DBCrawlTask.status == status)
        q = q.order_by(DBCrawlTask.created_at.desc()).limit(limit)
        return list((await self._s.execute(q)).scalars().all())
