# ============================================================================
# TASK PLATFORM TESTS
# ============================================================================
"""
Platform lifecycle, module sync, enqueue validation, scheduled firings and
queue introspection.

Run with:
    pytest tests/test_task_platform.py -v
"""

import asyncio

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlmodel import select

from factories import add_account, add_order
from skyhotel_orchestrator.control_plane.errors import ModuleDisabled, ModuleNotFound, PlatformDisabled
from skyhotel_orchestrator.control_plane.models import ModuleCategory, PoolAccount, TaskModule, TaskRunState
from skyhotel_orchestrator.control_plane.task_platform import TaskPlatform
from skyhotel_orchestrator.modules import build_registry


class DownRedis:
    """Broker stand-in whose connection is refused."""

    async def ping(self):
        raise RedisConnectionError("connection refused")


def make_platform(settings, redis_client, db, resource_pool, atour_client, run_workers=False):
    return TaskPlatform(
        settings=settings,
        redis_client=redis_client,
        db=db,
        registry=build_registry(),
        resource_pool=resource_pool,
        atour_client=atour_client,
        run_workers=run_workers,
    )


# ============================================================================
# LIFECYCLE / SYNC
# ============================================================================

@pytest.mark.asyncio
async def test_start_seeds_modules_and_sizes_worker_pools(platform):
    modules = {it.module_id: it for it in await platform.load_modules()}

    assert set(modules) == {"order.submit", "order.cancel", "order.payment-link", "account.daily-checkin"}
    assert platform.queue_manager.names() == ["accounts", "orders"]
    assert platform.workers["orders"].concurrency == 4
    assert platform.workers["accounts"].concurrency == 1


@pytest.mark.asyncio
async def test_seeding_does_not_overwrite_operator_changes(platform):
    await platform.update_module("order.submit", attempts=7)

    assert await platform.seed_modules() == []
    assert platform.get_module_config("order.submit").attempts == 7


@pytest.mark.asyncio
async def test_sync_is_idempotent(platform):
    pools = dict(platform.workers)

    await platform.sync()
    await platform.sync()

    assert platform.queue_manager.names() == ["accounts", "orders"]
    assert platform.workers == pools


@pytest.mark.asyncio
async def test_queue_names_are_normalized_and_persisted(platform):
    module = await platform.update_module("order.payment-link", queue_name="pay links/v2")

    stored = {it.module_id: it for it in await platform.load_modules()}
    assert module.queue_name == "pay-links-v2"
    assert stored["order.payment-link"].queue_name == "pay-links-v2"
    assert "pay-links-v2" in platform.queue_manager.names()
    assert "pay-links-v2" in platform.workers
    # Queues are never dropped once created.
    assert "orders" in platform.queue_manager.names()


@pytest.mark.asyncio
async def test_update_unknown_module(platform):
    with pytest.raises(ModuleNotFound):
        await platform.update_module("order.teleport", enabled=True)


@pytest.mark.asyncio
async def test_unreachable_broker_disables_platform(settings, db, resource_pool, atour_client):
    plat = make_platform(settings, DownRedis(), db, resource_pool, atour_client)

    await plat.start()

    assert plat.enabled is False
    with pytest.raises(PlatformDisabled):
        await plat.enqueue("order.payment-link", {})
    await plat.stop()


@pytest.mark.asyncio
async def test_switched_off_platform_rejects_jobs(settings, redis_client, db, resource_pool, atour_client):
    off = settings.model_copy(update={"task_system_enabled": False})
    plat = make_platform(off, redis_client, db, resource_pool, atour_client)

    await plat.start()

    assert plat.workers == {}
    with pytest.raises(PlatformDisabled):
        await plat.enqueue("order.payment-link", {})


# ============================================================================
# ENQUEUE
# ============================================================================

@pytest.mark.asyncio
async def test_enqueue_records_waiting_run(platform, db):
    order, (item,) = await add_order(db)

    queued = await platform.enqueue(
        "order.payment-link",
        {"orderItemId": item.id},
        {"orderGroupId": order.id, "orderItemId": item.id, "source": "manual"},
    )

    assert queued["jobId"].startswith("order.payment-link.")
    assert queued["queueName"] == "orders"
    run = queued["run"]
    assert run.state == TaskRunState.WAITING
    assert run.order_item_id == item.id

    (job,) = await platform.queue_manager.get("orders").get_jobs("waiting")
    assert job.id == queued["jobId"]
    assert job.meta["source"] == "manual"


@pytest.mark.asyncio
async def test_job_taken_as_soon_as_it_is_pushed_still_reaches_the_ledger(platform, db, monkeypatch):
    _, (item,) = await add_order(db, payment_link="https://pay.test/1")
    queue = platform.queue_manager.get("orders")
    pool = platform.workers["orders"]
    push = queue.add

    async def push_then_work(*args, **kwargs):
        # Another worker takes the job the moment it lands in the broker.
        added = await push(*args, **kwargs)
        assert await pool.run_once() is True
        return added

    monkeypatch.setattr(queue, "add", push_then_work)

    queued = await platform.enqueue("order.payment-link", {"orderItemId": item.id})

    run = await platform.ledger.get_run("orders", queued["jobId"])
    job = await queue.get_job(queued["jobId"])
    assert job.state == "completed"
    assert run.state == TaskRunState.COMPLETED
    assert run.started_at is not None
    assert run.result["paymentLink"] == "https://pay.test/1"


@pytest.mark.asyncio
async def test_broker_failure_after_ledger_write_fails_the_run(platform, monkeypatch):
    queue = platform.queue_manager.get("orders")

    async def refuse(*args, **kwargs):
        raise RedisConnectionError("connection reset")

    monkeypatch.setattr(queue, "add", refuse)

    with pytest.raises(PlatformDisabled):
        await platform.enqueue("order.cancel", {"orderItemId": "item-x"})

    (run,) = await platform.list_runs(module_id="order.cancel")
    assert run["state"] == "failed"
    assert "connection reset" in run["error"]
    assert (await queue.get_counts())["waiting"] == 0


@pytest.mark.asyncio
async def test_enqueue_unknown_module(platform):
    with pytest.raises(ModuleNotFound):
        await platform.enqueue("order.teleport", {})


@pytest.mark.asyncio
async def test_enqueue_disabled_module(platform):
    with pytest.raises(ModuleDisabled):
        await platform.enqueue("account.daily-checkin", {})


@pytest.mark.asyncio
async def test_enqueue_uses_module_retry_policy(platform):
    await platform.update_module("order.cancel", attempts=4, backoff_ms=250)

    queued = await platform.enqueue("order.cancel", {"orderItemId": "item-x"})

    job = await platform.queue_manager.get("orders").get_job(queued["jobId"])
    assert job.attempts == 4
    assert job.backoff_ms == 250


# ============================================================================
# SCHEDULED FIRINGS
# ============================================================================

@pytest.mark.asyncio
async def test_scheduled_module_fires_once_per_due_time(platform, db, cipher):
    await add_account(db, cipher, "token-1", phone="1001")
    await add_account(db, cipher, "token-2", phone="1002", is_online=False)
    await platform.update_module("account.daily-checkin", enabled=True)

    queue = platform.queue_manager.get("accounts")
    entry = await queue.get_repeatable("repeat-account.daily-checkin")
    assert entry["pattern"] == "0 9 * * *"

    entry["next_run_ms"] = 0
    await queue.upsert_repeatable("repeat-account.daily-checkin", entry)
    assert await platform.scheduler.tick() == 1

    # Same due time again: the firing is already claimed and nothing new is queued.
    await queue.upsert_repeatable("repeat-account.daily-checkin", entry)
    assert await platform.scheduler.tick() == 0

    (job,) = await queue.get_jobs("waiting")
    assert job.id == "repeat-account.daily-checkin:0"
    assert job.meta == {"source": "scheduler"}
    assert job.attempts == 2
    assert len(await platform.list_runs(module_id="account.daily-checkin")) == 1

    assert await platform.workers["accounts"].run_once() is True

    (run,) = await platform.list_runs(module_id="account.daily-checkin")
    assert run["state"] == "completed"
    assert run["result"]["totalOnline"] == 1
    assert run["result"]["executed"] == 1
    async with db.session() as session:
        result = await session.execute(select(PoolAccount))
        accounts = {it.phone: it for it in result.scalars().all()}
    assert accounts["1001"].last_execution["type"] == "daily-checkin"
    assert accounts["1001"].last_execution["jobId"] == "repeat-account.daily-checkin:0"
    assert accounts["1002"].last_execution == {}


@pytest.mark.asyncio
async def test_firing_already_in_the_ledger_is_not_pushed_again(platform):
    await platform.update_module("account.daily-checkin", enabled=True)
    queue = platform.queue_manager.get("accounts")
    # Another process recorded this firing but has not pushed it yet.
    await platform.ledger.create_run("account.daily-checkin", "accounts", "repeat-account.daily-checkin:5", {})

    entry = await queue.get_repeatable("repeat-account.daily-checkin")
    entry["next_run_ms"] = 5
    await queue.upsert_repeatable("repeat-account.daily-checkin", entry)
    await platform.scheduler.tick()

    assert await queue.get_jobs("waiting") == []
    (run,) = await platform.list_runs(module_id="account.daily-checkin")
    assert run["jobId"] == "repeat-account.daily-checkin:5"
    assert run["state"] == "waiting"


@pytest.mark.asyncio
async def test_disabling_scheduled_module_removes_registration(platform):
    await platform.update_module("account.daily-checkin", enabled=True)
    await platform.update_module("account.daily-checkin", enabled=False)

    assert await platform.queue_manager.get("accounts").list_repeatables() == {}


@pytest.mark.asyncio
async def test_on_demand_module_is_never_scheduled(platform):
    await platform.update_module("order.cancel", schedule="* * * * *")

    assert await platform.queue_manager.get("orders").list_repeatables() == {}
    assert platform.get_module_config("order.cancel").category == ModuleCategory.ON_DEMAND


# ============================================================================
# INTROSPECTION
# ============================================================================

@pytest.mark.asyncio
async def test_queue_introspection(platform):
    await platform.enqueue("order.cancel", {"orderItemId": "item-x"})

    stats = {it["queueName"]: it for it in await platform.list_queues()}
    assert stats["orders"]["waiting"] == 1

    assert await platform.pause_queue("orders") is True
    assert await platform.pause_queue("nope") is False
    assert len(await platform.list_jobs("orders", "paused")) == 1
    assert await platform.resume_queue("orders") is True
    assert await platform.resume_queue("nope") is False

    (summary,) = await platform.list_jobs("orders", "waiting")
    assert summary["name"] == "order.cancel"
    assert await platform.list_jobs("nope") == []
    with pytest.raises(ValueError):
        await platform.list_jobs("orders", "exploded")


@pytest.mark.asyncio
async def test_list_runs_serializes(platform):
    await platform.enqueue("order.cancel", {"orderItemId": "item-x"}, {"orderItemId": "item-x"})

    (run,) = await platform.list_runs(module_id="order.cancel")

    assert run["moduleId"] == "order.cancel"
    assert run["queueName"] == "orders"
    assert run["state"] == "waiting"
    assert run["orderItemId"] == "item-x"
    assert run["attemptsMade"] == 0


# ============================================================================
# RUNNING WORKERS
# ============================================================================

@pytest.mark.asyncio
async def test_started_workers_drain_the_queue(settings, redis_client, db, resource_pool, atour_client):
    plat = make_platform(settings, redis_client, db, resource_pool, atour_client, run_workers=True)
    await plat.start()
    try:
        _, (item,) = await add_order(db, payment_link="https://pay.test/1")
        queued = await plat.enqueue("order.payment-link", {"orderItemId": item.id})

        for _ in range(200):
            run = await plat.ledger.get_run("orders", queued["jobId"])
            if run.state == TaskRunState.COMPLETED:
                break
            await asyncio.sleep(0.02)

        assert run.state == TaskRunState.COMPLETED
        assert run.result["paymentLink"] == "https://pay.test/1"
    finally:
        await plat.stop()

    assert plat.workers == {}
