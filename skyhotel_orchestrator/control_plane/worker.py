"""
Worker Pool

One WorkerPool per queue runs ``concurrency`` slots; each slot recovers jobs
whose lease expired, promotes due delayed jobs, takes the next waiting job
and hands it to the JobProcessor while renewing its lease.
Several processes may run pools for the same queue: taking a job is atomic
in the broker.
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog

from .errors import ModuleDisabled, is_retryable
from .models import TaskModule
from .queue_manager import QueueJob, RedisQueue
from .registry import TaskContext, TaskDependencies, TaskModuleRegistry
from .run_ledger import TaskRunLedger

logger = structlog.get_logger(__name__)


def describe_error(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


class JobProcessor:
    """
    Executes one dequeued job and reports its outcome.

    Steps: resolve the module config (disabled -> ModuleDisabled), resolve
    the handler (missing -> ModuleNotImplemented), acquire a proxy when the
    module asks for one, mark the run active, invoke the handler, then record
    completion or failure and refresh the owning order.
    """

    def __init__(
        self,
        module_configs: Callable[[str], Optional[TaskModule]],
        registry: TaskModuleRegistry,
        ledger: TaskRunLedger,
        deps: TaskDependencies,
    ):
        self._module_config = module_configs
        self.registry = registry
        self.ledger = ledger
        self.deps = deps

    async def process(self, queue: RedisQueue, job: QueueJob) -> None:
        queue_name = queue.name
        try:
            config = self._module_config(job.name)
            if config is None or not config.enabled:
                raise ModuleDisabled(job.name)
            handler = self.registry.get(job.name)

            proxy = None
            if config.use_proxy:
                proxy = await self.deps.resource_pool.acquire_proxy()

            await self.ledger.mark_active(
                queue_name,
                job.id,
                attempts_made=job.attempts_made,
                proxy_id=proxy.id if proxy else None,
            )
            logger.info("job_started", queue=queue_name, job_id=job.id, module_id=job.name,
                        attempt=job.attempts_made, proxy_id=proxy.id if proxy else None)

            ctx = TaskContext(
                module_id=job.name,
                job_id=job.id,
                queue_name=queue_name,
                payload=job.payload,
                meta=job.meta,
                proxy=proxy,
                attempt=job.attempts_made,
                deps=self.deps,
            )
            result = await self.registry.invoke(handler, ctx)
        except Exception as exc:
            await self._on_failure(queue, job, exc)
            return

        await self._on_success(queue, job, result)

    # The ledger is written before the broker is acknowledged: if the ledger
    # write raises, the job keeps its lease and is recovered when it expires.

    async def _on_success(self, queue: RedisQueue, job: QueueJob, result: Any) -> None:
        await self.ledger.mark_completed(queue.name, job.id, result, attempts_made=job.attempts_made)
        await queue.complete(job, result)
        logger.info("job_completed", queue=queue.name, job_id=job.id, module_id=job.name)

        orders = self.deps.orders
        order_group_id = job.meta.get("orderGroupId")
        order_item_id = job.meta.get("orderItemId")
        if order_group_id:
            await orders.refresh_order_status(order_group_id)
        elif order_item_id:
            await orders.refresh_for_item(order_item_id)

    async def _on_failure(self, queue: RedisQueue, job: QueueJob, exc: Exception) -> None:
        error = describe_error(exc)
        retrying = is_retryable(exc) and job.can_retry
        await self._record_failure(queue, job, error, retrying, error_type=type(exc).__name__)
        await queue.fail(job, error, retry=retrying)
        if not retrying:
            await self._fail_order_item(job)

    async def on_stalled(self, queue: RedisQueue, job: QueueJob, retrying: bool) -> None:
        """Ledger and order bookkeeping for a job recovered from an expired lease."""
        await self._record_failure(queue, job, job.failed_reason or "job stalled", retrying, error_type="Stalled")
        if not retrying:
            await self._fail_order_item(job)

    async def _record_failure(
        self,
        queue: RedisQueue,
        job: QueueJob,
        error: str,
        retrying: bool,
        error_type: str,
    ) -> None:
        if retrying:
            await self.ledger.record_attempt_failure(queue.name, job.id, error, attempts_made=job.attempts_made)
            logger.warning("job_attempt_failed", queue=queue.name, job_id=job.id, module_id=job.name,
                           attempt=job.attempts_made, attempts=job.attempts, error=error)
            return

        await self.ledger.mark_failed(queue.name, job.id, error, attempts_made=job.attempts_made)
        logger.error("job_failed", queue=queue.name, job_id=job.id, module_id=job.name,
                     attempt=job.attempts_made, error=error, error_type=error_type)

    async def _fail_order_item(self, job: QueueJob) -> None:
        order_item_id = job.meta.get("orderItemId")
        if order_item_id:
            await self.deps.orders.fail_item(order_item_id)


class WorkerPool:
    """Concurrent worker slots pulling from one queue."""

    def __init__(
        self,
        queue: RedisQueue,
        concurrency: int,
        process: Callable[[RedisQueue, QueueJob], Awaitable[None]],
        poll_interval: float = 1.0,
        promote_batch_size: int = 100,
        on_stalled: Optional[Callable[[RedisQueue, QueueJob, bool], Awaitable[None]]] = None,
        lease_seconds: float = 60.0,
    ):
        self.queue = queue
        self.concurrency = max(1, int(concurrency))
        self._process = process
        self._on_stalled = on_stalled
        self.poll_interval = poll_interval
        self.promote_batch_size = promote_batch_size
        self.lease_ms = max(1, int(lease_seconds * 1000))
        self._slots: List[asyncio.Task] = []
        self._shutdown_event = asyncio.Event()
        self._running: Dict[str, str] = {}

    @property
    def running_jobs(self) -> Dict[str, str]:
        """job id -> slot id for jobs currently being processed."""
        return dict(self._running)

    def start(self) -> None:
        if self._slots:
            return
        for index in range(self.concurrency):
            slot_id = f"{self.queue.name}-{index + 1}"
            self._slots.append(asyncio.create_task(self._run_slot(slot_id)))
        logger.info("worker_pool_started", queue=self.queue.name, concurrency=self.concurrency)

    async def run_once(self, slot_id: str = "manual") -> bool:
        """Recover stalled jobs, promote due ones and process at most one. Returns whether a job ran."""
        for stalled, retrying in await self.queue.recover_stalled(limit=self.promote_batch_size):
            if self._on_stalled is not None:
                await self._on_stalled(self.queue, stalled, retrying)
        await self.queue.promote_delayed(limit=self.promote_batch_size)

        job = await self.queue.take(lease_ms=self.lease_ms)
        if job is None:
            return False
        self._running[job.id] = slot_id
        heartbeat = asyncio.create_task(self._keep_lease(job.id))
        try:
            await self._process(self.queue, job)
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)
            self._running.pop(job.id, None)
        return True

    async def _keep_lease(self, job_id: str) -> None:
        while True:
            await asyncio.sleep(self.lease_ms / 3000)
            if not await self.queue.extend_lease(job_id, self.lease_ms):
                return

    async def _run_slot(self, slot_id: str) -> None:
        logger.info("worker_slot_started", slot=slot_id)
        while not self._shutdown_event.is_set():
            try:
                if not await self.run_once(slot_id):
                    await asyncio.sleep(self.poll_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("worker_slot_error", slot=slot_id, error=str(e))
                await asyncio.sleep(5)
        logger.info("worker_slot_stopped", slot=slot_id)

    async def close(self) -> None:
        self._shutdown_event.set()
        for slot in self._slots:
            slot.cancel()
        if self._slots:
            await asyncio.gather(*self._slots, return_exceptions=True)
        self._slots.clear()
