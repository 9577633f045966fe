"""Durable storage used by crawl jobs: record existence, upsert and task status mirroring."""

from __future__ import annotations

import logging
import uuid

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.errors import PersistenceError
from core.models import ErrorDetail, Record, TaskResult
from data.database import async_session_factory, session_scope
from data.repositories import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    RecordRepository,
    TaskRepository,
)

log = logging.getLogger(__name__)


class CrawlStore:
    """SQL-backed implementation of the storage capability the crawl engine consumes.

    Each call runs in its own short transaction so concurrent jobs never hold a
    session across an await on the browser.
    """

    def __init__(
        self, session_factory: async_sessionmaker[AsyncSession] | None = None
    ) -> None:
        self._factory = session_factory or async_session_factory

    async def exists(self, record_id: str, target_id: str) -> bool:
        try:
            async with session_scope(self._factory) as session:
                return await RecordRepository(session).exists(record_id, target_id)
        except SQLAlchemyError as e:
            raise PersistenceError(f"lookup of {record_id} failed: {e}") from e

    async def upsert(self, record: Record, task_id: str | None = None) -> bool:
        """Store a record if absent. Returns False when it was already stored."""
        try:
            async with session_scope(self._factory) as session:
                return await RecordRepository(session).insert_if_absent(record, task_id)
        except SQLAlchemyError as e:
            raise PersistenceError(f"write of {record.id} failed: {e}") from e

    # ── task status mirroring ────────────────────────────────────────

    async def create_task(self, target_id: str, site: str, config: dict) -> str:
        task_id = str(uuid.uuid4())
        async with session_scope(self._factory) as session:
            await TaskRepository(session).create(
                task_id, target_id=target_id, site=site, config=config
            )
        return task_id

    async def mark_running(self, task_id: str) -> None:
        async with session_scope(self._factory) as session:
            await TaskRepository(session).mark_running(task_id)

    async def mark_completed(self, task_id: str, result: TaskResult) -> None:
        async with session_scope(self._factory) as session:
            await TaskRepository(session).finish(
                task_id, status=STATUS_COMPLETED, result=result.to_dict()
            )

    async def mark_failed(self, task_id: str, result: TaskResult) -> None:
        async with session_scope(self._factory) as session:
            await TaskRepository(session).finish(
                task_id, status=STATUS_FAILED, result=result.to_dict()
            )

    async def update_record_count(self, task_id: str, count: int) -> None:
        async with session_scope(self._factory) as session:
            await TaskRepository(session).update_record_count(task_id, count)

    async def fail_orphaned_running(self, keep: set[str] | None = None) -> list[str]:
        """Demote every durable "running" task not in ``keep`` to "failed".

        This is the durable half of the recovery protocol that follows
        ``JobExclusivityManager.force_reset``.
        """
        keep = keep or set()
        demoted: list[str] = []
        async with session_scope(self._factory) as session:
            repo = TaskRepository(session)
            for task in await repo.running_tasks():
                if task.id in keep:
                    continue
                error = ErrorDetail(
                    code="ORPHANED_TASK",
                    message="Task was running when its job was lost; marked failed",
                )
                await repo.finish(
                    task.id,
                    status=STATUS_FAILED,
                    result={
                        "success": False,
                        "end_reason": "ERROR",
                        "new_count": task.record_count,
                        "error": {"code": error.code, "message": error.message},
                    },
                )
                demoted.append(task.id)
        if demoted:
            log.warning("Marked %d orphaned running task(s) as failed: %s", len(demoted), demoted)
        return demoted
