"""
Task Platform

Facade over the module registry, queue manager, worker pools, scheduler and
task run ledger. Callers enqueue (moduleId, payload, meta); the platform
resolves the module's queue, records a waiting ledger row and lets the
queue's worker pool execute the job.
"""
import uuid
from typing import Any, Dict, List, Optional

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from ..booking.order_state import OrderService
from ..resources.resource_pool import ResourcePool
from .errors import ModuleDisabled, ModuleNotFound, NotFound, PlatformDisabled
from .models import TaskModule, TaskRun, default_task_modules, utcnow
from .queue_manager import JOB_STATUSES, QueueManager, RedisQueue, normalize_queue_name
from .registry import TaskDependencies, TaskModuleRegistry
from .run_ledger import TaskRunLedger
from .scheduler import Scheduler
from .worker import JobProcessor, WorkerPool

logger = structlog.get_logger(__name__)


class TaskPlatform:
    def __init__(
        self,
        settings,
        redis_client: redis.Redis,
        db,  # Database instance (not just engine)
        registry: TaskModuleRegistry,
        resource_pool: ResourcePool,
        atour_client=None,
        run_workers: bool = True,
    ):
        self.settings = settings
        self.redis = redis_client
        self.db = db
        self.registry = registry
        self.enabled = bool(settings.task_system_enabled)
        self.run_workers = run_workers
        self.started = False

        self.queue_manager = QueueManager(redis_client)
        self.ledger = TaskRunLedger(redis_client, db)
        self.resource_pool = resource_pool
        self.orders = OrderService(db)
        self.deps = TaskDependencies(
            orders=self.orders,
            resource_pool=resource_pool,
            atour_client=atour_client,
            settings=settings,
        )
        self.processor = JobProcessor(self.get_module_config, registry, self.ledger, self.deps)
        self.scheduler = Scheduler(
            self.queue_manager,
            self._fire_scheduled,
            tick_seconds=settings.scheduler_tick_seconds,
        )

        self.module_configs: Dict[str, TaskModule] = {}
        self.workers: Dict[str, WorkerPool] = {}

    async def start(self) -> None:
        """Connect to the broker and start workers; disable the platform if Redis is down."""
        if not self.enabled or self.started:
            return
        try:
            await self.queue_manager.ping()
        except (RedisError, OSError) as e:
            self.enabled = False
            logger.warning("task_platform_disabled", reason="redis unavailable", error=str(e))
            return

        await self.seed_modules()
        await self.sync()
        if self.run_workers:
            self.scheduler.start()
        self.started = True
        logger.info("task_platform_started", queues=self.queue_manager.names(), workers=len(self.workers))

    async def stop(self) -> None:
        await self.scheduler.close()
        for pool in self.workers.values():
            await pool.close()
        self.workers.clear()
        self.queue_manager.clear()
        self.module_configs.clear()
        self.started = False
        logger.info("task_platform_stopped")

    async def seed_modules(self) -> List[str]:
        """Insert the built-in module configs that are not persisted yet."""
        created = []
        async with self.db.session() as session:
            for module in default_task_modules():
                if await session.get(TaskModule, module.module_id) is None:
                    session.add(module)
                    created.append(module.module_id)
            await session.commit()
        if created:
            logger.info("task_modules_seeded", modules=created)
        return created

    def get_module_config(self, module_id: str) -> Optional[TaskModule]:
        return self.module_configs.get(module_id)

    async def load_modules(self) -> List[TaskModule]:
        async with self.db.session() as session:
            result = await session.execute(select(TaskModule).order_by(TaskModule.module_id))
            return list(result.scalars().all())

    async def update_module(self, module_id: str, **changes: Any) -> TaskModule:
        """Persist a module config change and resync."""
        async with self.db.session() as session:
            module = await session.get(TaskModule, module_id)
            if module is None:
                raise ModuleNotFound(module_id)
            for key, value in changes.items():
                if value is not None and hasattr(module, key):
                    setattr(module, key, value)
            module.updated_at = utcnow()
            session.add(module)
            await session.commit()
            await session.refresh(module)
        if self.enabled:
            await self.sync()
        return self.module_configs.get(module_id, module)

    async def sync(self) -> None:
        """
        Reload module configs and reconcile queues, workers and schedules.

        Idempotent. Queue names are normalized (and the normalization is
        persisted); queues are never removed once created; each new queue
        gets one worker pool sized to the largest concurrency among the
        enabled modules assigned to it.
        """
        modules = []
        async with self.db.session() as session:
            result = await session.execute(select(TaskModule).order_by(TaskModule.module_id))
            for module in result.scalars().all():
                normalized = normalize_queue_name(module.queue_name)
                if module.queue_name != normalized:
                    logger.info("queue_name_normalized", module_id=module.module_id,
                                queue=module.queue_name, normalized=normalized)
                    module.queue_name = normalized
                    session.add(module)
                modules.append(module)
            await session.commit()

        self.module_configs = {it.module_id: it for it in modules}

        for queue_name in dict.fromkeys(it.queue_name for it in modules):
            self.queue_manager.ensure_queue(queue_name)

        for queue in self.queue_manager.queues():
            if queue.name in self.workers:
                continue
            concurrency = max(
                [1] + [it.concurrency or 1 for it in modules if it.queue_name == queue.name and it.enabled]
            )
            pool = WorkerPool(
                queue,
                concurrency,
                self.processor.process,
                poll_interval=self.settings.worker_poll_interval_seconds,
                promote_batch_size=self.settings.promote_batch_size,
                on_stalled=self.processor.on_stalled,
                lease_seconds=self.settings.job_lease_seconds,
            )
            self.workers[queue.name] = pool
            if self.run_workers:
                pool.start()

        await self.scheduler.sync(modules)
        logger.info("task_modules_synced", modules=len(modules), queues=self.queue_manager.names())

    async def enqueue(
        self,
        module_id: str,
        payload: Optional[Dict[str, Any]] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Queue one job for a module. Returns {jobId, queueName, run}."""
        if not self.enabled or not self.started:
            raise PlatformDisabled()

        module = self.module_configs.get(module_id)
        if module is None:
            async with self.db.session() as session:
                module = await session.get(TaskModule, module_id)
        if module is None:
            raise ModuleNotFound(module_id)
        if not module.enabled:
            raise ModuleDisabled(module_id)

        queue_name = normalize_queue_name(module.queue_name)
        queue = self.queue_manager.get(queue_name)
        if queue is None:
            await self.sync()
            queue = self.queue_manager.get(queue_name)
        if queue is None:
            raise NotFound("queue", queue_name)

        job_id = f"{module_id}.{uuid.uuid4()}"
        _, run = await self._add_job(module, queue, job_id, payload or {}, meta or {})
        return {"jobId": job_id, "queueName": queue_name, "run": run}

    async def _add_job(
        self,
        module: TaskModule,
        queue: RedisQueue,
        job_id: str,
        payload: Dict[str, Any],
        meta: Dict[str, Any],
        attempts: Optional[int] = None,
        backoff_ms: Optional[int] = None,
    ):
        """
        Record the waiting run, then push the job.

        The ledger row exists before any worker can take the job. The row's
        (queue, job id) uniqueness also decides which of several concurrent
        adders of the same job id pushes it.
        """
        try:
            existing = await queue.get_job(job_id)
        except (RedisError, OSError) as e:
            logger.error("enqueue_failed", module_id=module.module_id, queue=queue.name, error=str(e))
            raise PlatformDisabled(f"Task broker unavailable: {e}")
        if existing is not None:
            return existing, await self.ledger.get_run(queue.name, job_id)

        try:
            run = await self.ledger.create_run(module.module_id, queue.name, job_id, payload, meta)
        except IntegrityError:
            logger.info("job_already_enqueued", module_id=module.module_id, queue=queue.name, job_id=job_id)
            return await queue.get_job(job_id), await self.ledger.get_run(queue.name, job_id)

        try:
            job, _ = await queue.add(
                module.module_id,
                {"payload": payload, "meta": meta},
                job_id=job_id,
                attempts=attempts or module.attempts,
                backoff_ms=module.backoff_ms if backoff_ms is None else backoff_ms,
            )
        except (RedisError, OSError) as e:
            logger.error("enqueue_failed", module_id=module.module_id, queue=queue.name, error=str(e))
            await self.ledger.mark_failed(queue.name, job_id, f"enqueue failed: {e}", attempts_made=0)
            raise PlatformDisabled(f"Task broker unavailable: {e}")

        logger.info("job_enqueued", module_id=module.module_id, queue=queue.name, job_id=job_id,
                    source=meta.get("source"))
        return job, run

    async def _fire_scheduled(
        self,
        module_id: str,
        queue: RedisQueue,
        job_id: str,
        entry: Dict[str, Any],
    ) -> Optional[TaskRun]:
        module = self.module_configs.get(module_id)
        if module is None:
            logger.warning("scheduled_fire_skipped", module_id=module_id, reason="module not loaded")
            return None
        _, run = await self._add_job(
            module,
            queue,
            job_id,
            {},
            {"source": "scheduler"},
            attempts=entry.get("attempts"),
            backoff_ms=entry.get("backoff_ms"),
        )
        return run

    async def list_queues(self) -> List[Dict[str, Any]]:
        return await self.queue_manager.get_stats()

    async def pause_queue(self, queue_name: str) -> bool:
        queue = self.queue_manager.get(queue_name)
        if queue is None:
            return False
        await queue.pause()
        logger.info("queue_paused", queue=queue_name)
        return True

    async def resume_queue(self, queue_name: str) -> bool:
        queue = self.queue_manager.get(queue_name)
        if queue is None:
            return False
        await queue.resume()
        logger.info("queue_resumed", queue=queue_name)
        return True

    async def list_jobs(self, queue_name: str, status: str = "waiting", limit: int = 20) -> List[Dict[str, Any]]:
        queue = self.queue_manager.get(queue_name)
        if queue is None:
            return []
        if status not in JOB_STATUSES:
            raise ValueError(f"unknown job status: {status}")
        return [job.summary() for job in await queue.get_jobs(status, limit)]

    async def list_runs(self, **filters: Any) -> List[Dict[str, Any]]:
        return [TaskRunLedger.serialize(it) for it in await self.ledger.list_runs(**filters)]
