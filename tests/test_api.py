# ============================================================================
# API TESTS
# ============================================================================
"""
HTTP surface over the task platform, exercised in-process through
httpx.ASGITransport against a started platform.

Run with:
    pytest tests/test_api.py -v
"""

import httpx
import pytest
import pytest_asyncio

from factories import add_order, add_proxy
from skyhotel_orchestrator.control_plane.models import ExecutionStatus
from skyhotel_orchestrator.main import create_app


@pytest_asyncio.fixture
async def api(settings, redis_client, db, platform):
    app = create_app(settings, redis_client=redis_client, db=db, platform=platform)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://platform.test") as client:
        yield client


@pytest.mark.asyncio
async def test_health(api):
    response = await api.get("/health")

    assert response.status_code == 200
    assert response.json()["taskSystem"] == "enabled"
    assert response.json()["queues"] == ["accounts", "orders"]


@pytest.mark.asyncio
async def test_modules_can_be_listed_and_patched(api):
    listed = (await api.get("/api/tasks/modules")).json()["items"]
    assert [it["module_id"] for it in listed] == [
        "account.daily-checkin", "order.cancel", "order.payment-link", "order.submit",
    ]

    response = await api.patch("/api/tasks/modules/order.submit", json={"concurrency": 2, "queue_name": "submit jobs"})

    assert response.status_code == 200
    assert response.json()["concurrency"] == 2
    assert response.json()["queue_name"] == "submit-jobs"


@pytest.mark.asyncio
async def test_patch_rejects_invalid_values(api):
    response = await api.patch("/api/tasks/modules/order.submit", json={"attempts": 0})

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_run_now(api):
    response = await api.post("/api/tasks/modules/order.cancel/run-now", json={"payload": {"orderItemId": "item-x"}})

    assert response.status_code == 201
    body = response.json()
    assert body["jobId"].startswith("order.cancel.")
    assert body["run"]["state"] == "waiting"

    runs = (await api.get("/api/tasks/runs", params={"moduleId": "order.cancel"})).json()["items"]
    assert [it["jobId"] for it in runs] == [body["jobId"]]

    jobs = (await api.get("/api/tasks/queues/orders/jobs")).json()["items"]
    assert jobs[0]["data"]["meta"] == {"source": "manual"}


@pytest.mark.asyncio
@pytest.mark.parametrize("module_id, status_code, code", [
    ("order.teleport", 404, "MODULE_NOT_FOUND"),
    ("account.daily-checkin", 400, "MODULE_DISABLED"),
])
async def test_run_now_errors(api, module_id, status_code, code):
    response = await api.post(f"/api/tasks/modules/{module_id}/run-now", json={})

    assert response.status_code == status_code
    assert response.json()["code"] == code


@pytest.mark.asyncio
async def test_run_now_on_disabled_platform(api, platform):
    platform.enabled = False

    response = await api.post("/api/tasks/modules/order.cancel/run-now", json={})

    assert response.status_code == 503
    assert response.json()["code"] == "PLATFORM_DISABLED"


@pytest.mark.asyncio
async def test_queue_controls(api):
    assert (await api.post("/api/tasks/queues/orders/pause")).status_code == 200
    stats = {it["queueName"]: it for it in (await api.get("/api/tasks/queues")).json()["items"]}
    assert set(stats) == {"accounts", "orders"}

    assert (await api.post("/api/tasks/queues/orders/resume")).status_code == 200
    assert (await api.post("/api/tasks/queues/nope/pause")).status_code == 404
    assert (await api.get("/api/tasks/queues/orders/jobs", params={"status_filter": "exploded"})).status_code == 400


@pytest.mark.asyncio
async def test_proxy_health(api, db):
    await add_proxy(db, "proxy-a")

    response = await api.post("/api/proxies/proxy-a/health", json={"status": "OFFLINE"})
    missing = await api.post("/api/proxies/proxy-z/health", json={"status": "ONLINE"})

    assert response.status_code == 200
    assert response.json()["fail_count"] == 1
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_order_item_actions(api, db):
    _, (item,) = await add_order(db, [ExecutionStatus.FAILED])

    submitted = await api.post(f"/api/orders/items/{item.id}/confirm-submit")
    again = await api.post(f"/api/orders/items/{item.id}/confirm-submit")
    cancelled = await api.post(f"/api/orders/items/{item.id}/cancel")
    missing = await api.post("/api/orders/items/item_missing/cancel")

    assert submitted.status_code == 200
    assert submitted.json()["item"]["execution_status"] == "PENDING"
    assert again.json()["task"]["jobId"] == submitted.json()["task"]["jobId"]
    assert cancelled.json()["task"]["run"]["moduleId"] == "order.cancel"
    assert missing.status_code == 404
