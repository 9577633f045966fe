"""Timeline Crawler — entry point."""

from __future__ import annotations

import logging

import uvicorn

from api.app import create_app
from config.settings import settings
from crawler.manager import JobExclusivityManager
from crawler.scheduler import CrawlScheduler
from data.database import init_db
from data.store import CrawlStore

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
)
log = logging.getLogger(__name__)

app = create_app()


@app.on_event("startup")
async def on_startup() -> None:
    log.info("Initialising database…")
    await init_db()

    store = CrawlStore()
    # nothing runs yet: any "running" row was left behind by a previous process
    orphans = await store.fail_orphaned_running()
    if orphans:
        log.warning("Recovered %d task(s) orphaned by a previous run", len(orphans))

    app.state.store = store
    app.state.manager = JobExclusivityManager(store, broadcast_fn=app.state.events.publish)

    scheduler = CrawlScheduler(app.state.manager)
    app.state.scheduler = scheduler
    scheduler.start()


@app.on_event("shutdown")
async def on_shutdown() -> None:
    if hasattr(app.state, "scheduler"):
        app.state.scheduler.stop()
    if hasattr(app.state, "manager"):
        await app.state.manager.shutdown()
        log.info("Running crawls cancelled, browser sessions released.")


if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.DASHBOARD_PORT,
        reload=False,
    )
