from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sse_starlette.sse import EventSourceResponse

from api.routers import jobs, records
from core.errors import CapacityError, ConflictError, ExclusivityError, NotFoundError

log = logging.getLogger(__name__)

_SSE_PING_SECONDS = 15


class EventHub:
    """Fans job lifecycle events out to SSE subscribers.

    Each subscriber gets a bounded queue; a subscriber that falls behind loses
    events rather than slowing the crawl that publishes them.
    """

    def __init__(self, queue_size: int = 50) -> None:
        self._queue_size = queue_size
        self._subscribers: set[asyncio.Queue] = set()
        self.dropped = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def publish(self, event: dict) -> None:
        for q in list(self._subscribers):
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                self.dropped += 1
                log.debug("Dropped %s event for a slow subscriber", event.get("event"))

    @contextmanager
    def subscription(self) -> Iterator[asyncio.Queue]:
        q: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers.add(q)
        try:
            yield q
        finally:
            self._subscribers.discard(q)


_STATUS_BY_ERROR = {
    ConflictError: 409,
    CapacityError: 429,
    NotFoundError: 404,
}


def create_app() -> FastAPI:
    app = FastAPI(title="Timeline Crawler", version="0.1.0")
    events = EventHub()
    app.state.events = events

    app.include_router(jobs.router)
    app.include_router(records.router)

    @app.exception_handler(ExclusivityError)
    async def exclusivity_error(request: Request, exc: ExclusivityError):
        status = _STATUS_BY_ERROR.get(type(exc), 400)
        return JSONResponse(status_code=status, content={"code": exc.code, "detail": str(exc)})

    # Job lifecycle stream; ?target_id= narrows it to one target
    @app.get("/api/events")
    async def job_events(target_id: str | None = None):
        async def stream():
            with events.subscription() as q:
                while True:
                    event = await q.get()
                    if target_id and event.get("target_id") != target_id:
                        continue
                    yield {"event": event.get("event", "message"), "data": json.dumps(event)}

        return EventSourceResponse(stream(), ping=_SSE_PING_SECONDS)

    @app.get("/health")
    async def health(request: Request):
        manager = getattr(request.app.state, "manager", None)
        return {
            "status": "ok",
            "active_jobs": len(manager.list_active()) if manager else 0,
            "event_subscribers": events.subscriber_count,
        }

    return app
