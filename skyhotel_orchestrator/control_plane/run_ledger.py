"""
Task Run Ledger

Durable audit record of every job execution.
Coordinates between Redis (for fast lookups) and the database (source of truth).

Rows move only along waiting -> active -> {completed | failed}. Retries of
the same job keep their row: the row stays active, attempts_made grows and
the last error is recorded until the job completes or fails for good.
"""
import json
import logging
from typing import Any, Dict, List, Optional

import redis.asyncio as redis
from redis.exceptions import RedisError
from sqlmodel import select

from .models import TaskRun, TaskRunState, utcnow

logger = logging.getLogger(__name__)

_TRANSITIONS = {
    TaskRunState.WAITING: {TaskRunState.ACTIVE},
    TaskRunState.ACTIVE: {TaskRunState.ACTIVE, TaskRunState.COMPLETED, TaskRunState.FAILED},
    TaskRunState.COMPLETED: set(),
    TaskRunState.FAILED: set(),
}

OPEN_STATES = (TaskRunState.WAITING, TaskRunState.ACTIVE)


def can_transition(current: TaskRunState, target: TaskRunState) -> bool:
    return target in _TRANSITIONS[TaskRunState(current)]


class TaskRunLedger:
    """
    Records job state transitions and provides fast state lookups.

    Uses Redis for state caching and the database as source of truth.
    """

    def __init__(self, redis_client: redis.Redis, db):
        """
        Initialize the ledger.

        Args:
            redis_client: Redis async client for caching
            db: Database instance (not just engine)
        """
        self.redis = redis_client
        self.db = db
        self.cache_prefix = "task_run:state:"
        self.cache_ttl = 3600  # 1 hour cache TTL

    async def create_run(
        self,
        module_id: str,
        queue_name: str,
        job_id: str,
        payload: Dict[str, Any],
        meta: Optional[Dict[str, Any]] = None,
    ) -> TaskRun:
        meta = meta or {}
        run = TaskRun(
            module_id=module_id,
            queue_name=queue_name,
            job_id=job_id,
            state=TaskRunState.WAITING,
            payload=payload or {},
            order_group_id=meta.get("orderGroupId"),
            order_item_id=meta.get("orderItemId"),
        )
        async with self.db.session() as session:
            session.add(run)
            await session.commit()
            await session.refresh(run)
        logger.info(f"Created task run {run.id} for {queue_name}/{job_id} ({module_id})")
        return run

    async def get_run(self, queue_name: str, job_id: str) -> Optional[TaskRun]:
        async with self.db.session() as session:
            return await self._load(session, queue_name, job_id)

    async def get_run_state(self, queue_name: str, job_id: str) -> Optional[Dict[str, Any]]:
        """
        Get run state (cached from Redis, fallback to DB).

        Returns:
            Run state dict or None if not found
        """
        cache_key = f"{self.cache_prefix}{queue_name}:{job_id}"
        try:
            cached = await self.redis.get(cache_key)
            if cached:
                if isinstance(cached, bytes):
                    cached = cached.decode("utf-8")
                return json.loads(cached)
        except RedisError as e:
            logger.warning(f"Error reading from cache for run {queue_name}/{job_id}: {e}")

        run = await self.get_run(queue_name, job_id)
        if run is None:
            return None
        state = self.serialize(run)
        await self._cache_state(cache_key, state)
        return state

    async def mark_active(
        self,
        queue_name: str,
        job_id: str,
        attempts_made: int,
        proxy_id: Optional[str] = None,
    ) -> Optional[TaskRun]:
        return await self._transition(
            queue_name,
            job_id,
            TaskRunState.ACTIVE,
            started_at=utcnow(),
            attempts_made=attempts_made,
            proxy_id=proxy_id,
        )

    async def record_attempt_failure(
        self,
        queue_name: str,
        job_id: str,
        error: str,
        attempts_made: int,
    ) -> Optional[TaskRun]:
        """A failed attempt that will be retried: the row stays active."""
        return await self._transition(
            queue_name,
            job_id,
            TaskRunState.ACTIVE,
            error=error,
            attempts_made=attempts_made,
        )

    async def mark_completed(
        self,
        queue_name: str,
        job_id: str,
        result: Any,
        attempts_made: int,
    ) -> Optional[TaskRun]:
        return await self._transition(
            queue_name,
            job_id,
            TaskRunState.COMPLETED,
            progress=100,
            result=result if isinstance(result, dict) else {"value": result},
            error=None,
            finished_at=utcnow(),
            attempts_made=attempts_made,
        )

    async def mark_failed(
        self,
        queue_name: str,
        job_id: str,
        error: str,
        attempts_made: int,
    ) -> Optional[TaskRun]:
        run = await self.get_run(queue_name, job_id)
        if run is not None and run.state == TaskRunState.WAITING:
            # Failed before the handler ran; record the active step first.
            await self.mark_active(queue_name, job_id, attempts_made=attempts_made)
        return await self._transition(
            queue_name,
            job_id,
            TaskRunState.FAILED,
            error=error,
            finished_at=utcnow(),
            attempts_made=attempts_made,
        )

    async def list_runs(
        self,
        module_id: Optional[str] = None,
        queue_name: Optional[str] = None,
        state: Optional[str] = None,
        limit: int = 50,
    ) -> List[TaskRun]:
        statement = select(TaskRun)
        if module_id:
            statement = statement.where(TaskRun.module_id == module_id)
        if queue_name:
            statement = statement.where(TaskRun.queue_name == queue_name)
        if state:
            statement = statement.where(TaskRun.state == TaskRunState(state))
        statement = statement.order_by(TaskRun.created_at.desc()).limit(max(1, min(int(limit), 500)))
        async with self.db.session() as session:
            result = await session.execute(statement)
            return list(result.scalars().all())

    async def find_open_run_for_item(self, order_item_id: str) -> Optional[TaskRun]:
        statement = (
            select(TaskRun)
            .where(TaskRun.order_item_id == order_item_id)
            .where(TaskRun.state.in_(OPEN_STATES))
            .order_by(TaskRun.created_at.desc())
            .limit(1)
        )
        async with self.db.session() as session:
            result = await session.execute(statement)
            return result.scalars().first()

    @staticmethod
    def serialize(run: TaskRun) -> Dict[str, Any]:
        return {
            "id": run.id,
            "moduleId": run.module_id,
            "queueName": run.queue_name,
            "jobId": run.job_id,
            "state": TaskRunState(run.state).value,
            "progress": run.progress,
            "attemptsMade": run.attempts_made,
            "payload": run.payload,
            "result": run.result,
            "error": run.error,
            "proxyId": run.proxy_id,
            "orderGroupId": run.order_group_id,
            "orderItemId": run.order_item_id,
            "createdAt": run.created_at.isoformat() if run.created_at else None,
            "startedAt": run.started_at.isoformat() if run.started_at else None,
            "finishedAt": run.finished_at.isoformat() if run.finished_at else None,
        }

    async def _load(self, session, queue_name: str, job_id: str) -> Optional[TaskRun]:
        statement = select(TaskRun).where(TaskRun.queue_name == queue_name).where(TaskRun.job_id == job_id)
        result = await session.execute(statement)
        return result.scalars().first()

    async def _transition(
        self,
        queue_name: str,
        job_id: str,
        target: TaskRunState,
        **fields: Any,
    ) -> Optional[TaskRun]:
        async with self.db.session() as session:
            run = await self._load(session, queue_name, job_id)
            if run is None:
                logger.warning(f"Task run {queue_name}/{job_id} not found for {target.value} update")
                return None

            if not can_transition(run.state, target):
                logger.warning(
                    f"Ignoring {TaskRunState(run.state).value} -> {target.value} for task run {queue_name}/{job_id}"
                )
                return run

            run.state = target
            for key, value in fields.items():
                if key == "proxy_id" and value is None:
                    continue
                setattr(run, key, value)

            session.add(run)
            await session.commit()
            await session.refresh(run)

        await self._invalidate_cache(queue_name, job_id)
        logger.info(f"Task run {queue_name}/{job_id} -> {target.value} (attempts={run.attempts_made})")
        return run

    async def _cache_state(self, cache_key: str, state: Dict[str, Any]) -> None:
        try:
            await self.redis.setex(cache_key, self.cache_ttl, json.dumps(state))
        except RedisError as e:
            logger.warning(f"Error caching task run state {cache_key}: {e}")

    async def _invalidate_cache(self, queue_name: str, job_id: str) -> None:
        try:
            await self.redis.delete(f"{self.cache_prefix}{queue_name}:{job_id}")
        except RedisError as e:
            logger.warning(f"Error invalidating cache for run {queue_name}/{job_id}: {e}")
