"""
API endpoint tests
"""

import pytest
import pytest_asyncio
import httpx
from datetime import date
from api.main import app
from api.dependencies import get_db, get_pipeline
from core.exceptions import AuthError
from ingestion.bus import INGEST_REQUESTS_TOPIC, STRUCTURED_WRITER_GROUP
from ingestion.runtime import Pipeline
from models.base import FetchStatus
from schemas.work_item import WorkItem
from tests.factories import raw_item


@pytest.fixture
def pipeline(bus, watermark, retry_manager, cycle_scheduler):
    return Pipeline(bus, watermark, retry_manager, cycle_scheduler)


@pytest_asyncio.fixture
async def client(session_factory, pipeline):
    """Create test client with database and pipeline overrides"""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_pipeline] = lambda: pipeline

    # ASGITransport does not run the lifespan, so the cron scheduler stays off
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def settled_cycle(cycle_scheduler, consumer, bus, adapters, make_profile):
    """One successful and one dead-lettered profile for 2024-01-15"""
    ok = await make_profile("instagram", entity_name="Roma")
    broken = await make_profile("tiktok", entity_name="Napoli")
    adapters["instagram"].script([raw_item("p1", likes=10), raw_item("p2", likes=3)])
    adapters["tiktok"].script(AuthError("token expired", context={"source_name": "tiktok"}))

    await cycle_scheduler.run_cycle()
    for source_name in ("instagram", "tiktok"):
        delivery = (await bus.pull(INGEST_REQUESTS_TOPIC, STRUCTURED_WRITER_GROUP, routing_key=source_name))[0]
        await consumer.handle(delivery)

    return {"ok": ok, "broken": broken}


@pytest.mark.asyncio
async def test_root(client):
    response = await client.get("/")

    assert response.status_code == 200
    assert response.json()["endpoints"]["dead_letters"] == "/dead-letters"


@pytest.mark.asyncio
async def test_request_id_propagated(client):
    response = await client.get("/", headers={"X-Request-ID": "req_operator"})

    assert response.headers["X-Request-ID"] == "req_operator"
    assert "X-API-Latency-ms" in response.headers


@pytest.mark.asyncio
async def test_health_before_any_cycle(client):
    """Test health endpoint returns database status"""
    response = await client.get("/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["database_connected"] is True
    assert data["last_cycle"] is None
    assert data["pending_work_items"] == 0


@pytest.mark.asyncio
async def test_health_reports_queues_and_last_cycle(client, settled_cycle):
    response = await client.get("/health")

    data = response.json()
    assert data["status"] == "healthy"
    assert data["pending_work_items"] == 0
    assert data["pending_dead_letters"] == 1
    assert data["last_cycle"]["status"] == "completed"
    assert data["last_cycle"]["items_enqueued"] == 2


@pytest.mark.asyncio
async def test_fetch_log_filters_and_pagination(client, settled_cycle):
    response = await client.get("/fetch-log?page=1&page_size=1")

    assert response.status_code == 200
    data = response.json()
    assert len(data["items"]) == 1
    assert data["pagination"]["total_items"] == 2
    assert data["pagination"]["total_pages"] == 2
    assert data["pagination"]["has_next"] is True

    failed = (await client.get("/fetch-log?status=failed")).json()
    assert [item["profile_id"] for item in failed["items"]] == [settled_cycle["broken"].id]
    assert failed["items"][0]["retry_count"] == 0
    assert "token expired" in failed["items"][0]["message"]
    assert failed["filters_applied"] == {"status": "failed"}

    by_source = (await client.get("/fetch-log?source_name=instagram&cycle_date=2024-01-15")).json()
    assert len(by_source["items"]) == 1
    assert by_source["items"][0]["status"] == "success"
    assert by_source["items"][0]["items_written"] == 2


@pytest.mark.asyncio
async def test_fetch_log_invalid_status(client):
    response = await client.get("/fetch-log?status=exploded")

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_dead_letters_list_and_get(client, settled_cycle):
    response = await client.get("/dead-letters")

    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 1
    item = data["items"][0]
    assert item["error_kind"] == "auth"
    assert item["error_type"] == "AuthError"
    assert item["work_item"]["profile_id"] == settled_cycle["broken"].id

    single = await client.get(f"/dead-letters/{item['delivery_id']}")
    assert single.status_code == 200
    assert single.json()["message"] == item["message"]


@pytest.mark.asyncio
async def test_dead_letter_not_found(client):
    response = await client.get("/dead-letters/12345")

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_replay_dead_letter(client, bus, settled_cycle):
    delivery_id = (await client.get("/dead-letters")).json()["items"][0]["delivery_id"]

    response = await client.post(f"/dead-letters/{delivery_id}/replay")

    assert response.status_code == 200
    data = response.json()
    assert data["profile_id"] == settled_cycle["broken"].id
    assert data["source_name"] == "tiktok"

    assert (await client.get("/dead-letters")).json()["total"] == 0
    replayed = await bus.list_pending(INGEST_REQUESTS_TOPIC, STRUCTURED_WRITER_GROUP)
    assert len(replayed) == 1
    assert WorkItem.from_payload(replayed[0].payload).replay is True

    # A dead letter is replayed at most once
    again = await client.post(f"/dead-letters/{delivery_id}/replay")
    assert again.status_code == 404


@pytest.mark.asyncio
async def test_replay_rejects_work_item_delivery(client, bus):
    await bus.publish(INGEST_REQUESTS_TOPIC, {"profile_id": 1})
    delivery = (await bus.list_pending(INGEST_REQUESTS_TOPIC, STRUCTURED_WRITER_GROUP))[0]

    response = await client.post(f"/dead-letters/{delivery.delivery_id}/replay")

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_stats(client, settled_cycle):
    response = await client.get("/stats")

    assert response.status_code == 200
    data = response.json()
    assert data["total_entities"] == 2
    assert data["total_profiles"] == 2
    assert data["total_records"] == 2
    assert data["cycle_date"] == date(2024, 1, 15).isoformat()
    assert data["fetch_status_counts"] == {
        FetchStatus.SUCCESS.value: 1,
        FetchStatus.FAILED.value: 1,
    }
    assert data["pending_dead_letters"] == 1
    assert len(data["recent_cycles"]) == 1

    by_source = {s["source_name"]: s for s in data["source_statistics"]}
    assert by_source["instagram"]["total_records"] == 2
    assert by_source["instagram"]["last_checked"] is not None
    assert by_source["tiktok"]["total_records"] == 0
    assert by_source["facebook"]["total_profiles"] == 0
