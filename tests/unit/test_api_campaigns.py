"""
Unit Tests for the Campaigns API
Runs the FastAPI app in-process against an in-memory engine
"""
import httpx
import pytest

from bulk_audit.core.config import EngineLimits, Settings
from bulk_audit.core.engine import build_engine
from bulk_audit.domain.interfaces.audit_executor import AuditExecutor
from bulk_audit.domain.models.execution import AuditOutcome
from bulk_audit.infrastructure.queue.memory_queue import InMemoryJobQueue
from bulk_audit.infrastructure.storage.memory_store import InMemoryCampaignStore
from bulk_audit.main import app


class StaticAuditor(AuditExecutor):
    """Audits every recording successfully"""

    @property
    def name(self) -> str:
        return "static"

    async def run_audit(self, audio_url, parameter_set_id=None, agent_name=None, call_id=None):
        return AuditOutcome(audit_id=f"audit-{audio_url.rsplit('/', 1)[-1]}", overall_score=75.0)


RECORDINGS = [
    {"audio_url": "https://cdn.example.com/calls/1.wav", "agent_name": "Dana"},
    {"audio_url": "https://cdn.example.com/calls/2.mp3"},
    {"audio_url": "https://cdn.example.com/calls/3.txt"},
]


@pytest.fixture
def engine():
    limits = EngineLimits(retry_base_delay_seconds=0, max_jobs_per_campaign=5)
    engine = build_engine(
        Settings(queue_backend="memory", store_backend="memory"),
        limits,
        store=InMemoryCampaignStore(),
        queue=InMemoryJobQueue(),
        auditor=StaticAuditor(),
    )
    app.state.engine = engine
    yield engine
    app.state.engine = None


@pytest.fixture
def client(engine):
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


async def create_campaign(client, **overrides) -> str:
    body = {"name": "Week 12 QA", "jobs": RECORDINGS, "rpm": 60, **overrides}
    response = await client.post("/api/v1/campaigns/", json=body)
    assert response.status_code == 201, response.text
    return response.json()["campaign_id"]


async def run_dispatcher(engine, ticks: int = 1) -> None:
    for _ in range(ticks):
        await engine.dispatcher.tick()
        await engine.dispatcher.wait_idle()


class TestCreateCampaign:
    """Tests for POST /campaigns"""

    @pytest.mark.asyncio
    async def test_create(self, client, engine):
        response = await client.post("/api/v1/campaigns/", json={
            "name": "Week 12 QA",
            "jobs": RECORDINGS,
            "project_id": "p-1",
            "parameter_set_id": "params-1",
        })

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "pending"
        assert data["total_jobs"] == 3
        assert await engine.queue.length(data["campaign_id"]) == 3

    @pytest.mark.asyncio
    async def test_create_requires_recordings(self, client):
        response = await client.post("/api/v1/campaigns/", json={"name": "Empty", "jobs": []})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_create_rejects_bad_config(self, client):
        response = await client.post("/api/v1/campaigns/", json={
            "name": "Bad", "jobs": RECORDINGS, "failure_threshold_percent": 120
        })
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_create_rejects_oversized_batch(self, client):
        jobs = [{"audio_url": f"https://cdn.example.com/{i}.wav"} for i in range(6)]

        response = await client.post("/api/v1/campaigns/", json={"name": "Big", "jobs": jobs})

        assert response.status_code == 422
        assert "Maximum 5 jobs" in response.json()["detail"]


class TestCampaignLifecycle:
    """Tests for the control endpoints"""

    @pytest.mark.asyncio
    async def test_status_of_unknown_campaign(self, client):
        response = await client.get("/api/v1/campaigns/missing/status")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_pause_pending_campaign_conflicts(self, client):
        campaign_id = await create_campaign(client)

        response = await client.post(f"/api/v1/campaigns/{campaign_id}/pause")

        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_run_to_completion(self, client, engine):
        """Dispatching every job completes the campaign; the bad format is dead-lettered"""
        campaign_id = await create_campaign(client, failure_threshold_percent=100)

        await run_dispatcher(engine, ticks=2)

        status = (await client.get(f"/api/v1/campaigns/{campaign_id}/status")).json()
        assert status["status"] == "completed"
        assert status["completed_jobs"] == 2
        assert status["failed_jobs"] == 1
        assert status["progress"] == 100.0

        dead = (await client.get(f"/api/v1/campaigns/{campaign_id}/dead-letters")).json()
        assert [d["audio_url"] for d in dead["dead_letters"]] == ["https://cdn.example.com/calls/3.txt"]

        record = (await client.get(f"/api/v1/campaigns/{campaign_id}")).json()["campaign"]
        assert record["stats"]["avg_score"] == 75.0

    @pytest.mark.asyncio
    async def test_pause_resume_cancel(self, client, engine):
        campaign_id = await create_campaign(client, rpm=1)
        await run_dispatcher(engine)

        response = await client.post(f"/api/v1/campaigns/{campaign_id}/pause")
        assert response.status_code == 200
        assert response.json()["status"] == "paused"
        assert response.json()["pause_reason"] == "manual"

        response = await client.post(f"/api/v1/campaigns/{campaign_id}/resume")
        assert response.json()["status"] == "processing"

        response = await client.post(f"/api/v1/campaigns/{campaign_id}/cancel")
        assert response.status_code == 200
        assert response.json()["dropped_jobs"] == 2

        response = await client.post(f"/api/v1/campaigns/{campaign_id}/cancel")
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_update_config(self, client, engine):
        campaign_id = await create_campaign(client)

        response = await client.patch(f"/api/v1/campaigns/{campaign_id}/config", json={"rpm": 5})
        assert response.status_code == 200
        assert response.json()["config"]["rpm"] == 5

        response = await client.patch(f"/api/v1/campaigns/{campaign_id}/config", json={"rpm": -5})
        assert response.status_code == 422
        assert (await engine.store.load(campaign_id)).config.rpm == 5

    @pytest.mark.asyncio
    async def test_add_jobs(self, client):
        campaign_id = await create_campaign(client)

        response = await client.post(
            f"/api/v1/campaigns/{campaign_id}/jobs",
            json={"jobs": [{"audio_url": "https://cdn.example.com/calls/4.ogg"}]}
        )

        assert response.status_code == 200
        assert response.json()["total_jobs"] == 4

    @pytest.mark.asyncio
    async def test_retry_failed_on_pending_conflicts(self, client):
        campaign_id = await create_campaign(client)

        response = await client.post(f"/api/v1/campaigns/{campaign_id}/retry-failed")

        assert response.status_code == 409


class TestReadEndpoints:
    """Tests for listing and observability endpoints"""

    @pytest.mark.asyncio
    async def test_list_by_project(self, client):
        await create_campaign(client, project_id="p-1")
        await create_campaign(client, project_id="p-2")

        response = await client.get("/api/v1/campaigns/", params={"project_id": "p-1"})

        campaigns = response.json()["campaigns"]
        assert len(campaigns) == 1
        assert campaigns[0]["project_id"] == "p-1"

    @pytest.mark.asyncio
    async def test_dispatcher_status(self, client, engine):
        await create_campaign(client)
        await run_dispatcher(engine)

        data = (await client.get("/api/v1/campaigns/dispatcher/status")).json()

        assert data["dispatcher"]["jobs_started"] == 3
        assert data["queue"]["backend"] == "memory"

    @pytest.mark.asyncio
    async def test_health(self, client):
        data = (await client.get("/health")).json()

        assert data["status"] == "healthy"
        assert "dispatcher" in data
        assert data["queue"]["total_enqueued"] == 0

    @pytest.mark.asyncio
    async def test_engine_not_running(self, client):
        app.state.engine = None

        response = await client.get("/api/v1/campaigns/")

        assert response.status_code == 503
