import pytest
from fastapi.testclient import TestClient

from api.app import EventHub, create_app
from core.errors import CapacityError, ConflictError, NotFoundError
from core.models import JobStatus


class FakeManager:
    def __init__(self):
        self.submitted = []
        self.cancelled = []
        self.busy = set()
        self.full = False

    async def submit(self, target_id, config):
        if target_id in self.busy:
            raise ConflictError(target_id, "job-0")
        if self.full:
            raise CapacityError(3)
        self.submitted.append((target_id, config))
        return f"job-{len(self.submitted)}"

    def status(self, job_id):
        if job_id != "job-1":
            raise NotFoundError(job_id)
        return JobStatus(
            job_id="job-1",
            target_id="list-1",
            site="twitter_list",
            state="RUNNING",
            counters={"new_count": 4},
            started_at_ms=1_700_000_000_000,
        )

    async def cancel(self, job_id):
        if job_id != "job-1":
            raise NotFoundError(job_id)
        self.cancelled.append(job_id)

    def list_active(self):
        return [self.status("job-1")]

    async def force_reset(self):
        return ["job-1"]


class FakeStatusStore:
    async def fail_orphaned_running(self, keep=None):
        return ["job-1"]


@pytest.fixture
def client():
    app = create_app()
    app.state.manager = FakeManager()
    app.state.store = FakeStatusStore()
    with TestClient(app) as c:
        yield c, app.state.manager


def test_submit_returns_job_id(client):
    c, manager = client
    r = c.post("/api/jobs", json={"target_id": "list-1", "max_records": 5})
    assert r.status_code == 202
    assert r.json() == {"job_id": "job-1", "target_id": "list-1"}
    config = manager.submitted[0][1]
    assert config.max_records == 5
    assert config.site == "twitter_list"


def test_submit_for_busy_target_is_conflict(client):
    c, manager = client
    manager.busy.add("list-1")
    r = c.post("/api/jobs", json={"target_id": "list-1"})
    assert r.status_code == 409
    assert r.json()["code"] == "CONFLICT"


def test_submit_when_full_is_429(client):
    c, manager = client
    manager.full = True
    r = c.post("/api/jobs", json={"target_id": "list-9"})
    assert r.status_code == 429
    assert r.json()["code"] == "CAPACITY"


def test_submit_unknown_site(client):
    c, _ = client
    r = c.post("/api/jobs", json={"target_id": "list-1", "site": "myspace"})
    assert r.status_code == 400


def test_status_and_list(client):
    c, _ = client
    r = c.get("/api/jobs/job-1")
    assert r.status_code == 200
    assert r.json()["state"] == "RUNNING"
    assert r.json()["counters"] == {"new_count": 4}
    assert c.get("/api/jobs/nope").status_code == 404
    assert [j["job_id"] for j in c.get("/api/jobs").json()] == ["job-1"]


def test_cancel(client):
    c, manager = client
    assert c.delete("/api/jobs/job-1").status_code == 202
    assert manager.cancelled == ["job-1"]
    r = c.delete("/api/jobs/nope")
    assert r.status_code == 404
    assert r.json()["code"] == "NOT_FOUND"


def test_force_reset_reconciles_durable_status(client):
    c, _ = client
    r = c.post("/api/jobs/force-reset")
    assert r.json() == {"cleared": ["job-1"], "demoted": ["job-1"]}


def test_health(client):
    c, _ = client
    assert c.get("/health").json() == {"status": "ok", "active_jobs": 1, "event_subscribers": 0}


def test_schedule_status_without_scheduler(client):
    c, _ = client
    assert c.get("/api/jobs/schedule").json() == {"running": False, "jobs": []}


@pytest.mark.asyncio
async def test_event_hub_fans_out_and_drops_for_slow_subscribers():
    hub = EventHub(queue_size=1)
    with hub.subscription() as fast, hub.subscription() as slow:
        assert hub.subscriber_count == 2
        await hub.publish({"event": "job_started", "job_id": "job-1"})
        assert fast.get_nowait()["job_id"] == "job-1"

        await hub.publish({"event": "job_finished", "job_id": "job-1"})
        assert hub.dropped == 1  # slow still holds the first event
        assert slow.get_nowait()["event"] == "job_started"
    assert hub.subscriber_count == 0
