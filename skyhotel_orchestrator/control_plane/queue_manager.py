"""
Queue Manager

One durable Redis-backed queue per queue name. Each queue keeps:

    <prefix>:<queue>:job:<id>   hash with the job's data and bookkeeping
    <prefix>:<queue>:wait       list, LPUSH on add, taken from the right (FIFO)
    <prefix>:<queue>:active     list of jobs currently held by a worker
    <prefix>:<queue>:leases     zset of active jobs scored by lease expiry
    <prefix>:<queue>:delayed    zset scored by due time (retries, delayed adds)
    <prefix>:<queue>:completed  zset scored by finish time
    <prefix>:<queue>:failed     zset scored by finish time
    <prefix>:<queue>:meta       hash, "paused" flag
    <prefix>:<queue>:repeat     hash of repeatable registrations (scheduler)
    <prefix>:<queue>:fired:<k>  marker claimed by the one process firing a repeat
    <prefix>:<queue>:events     pub/sub channel for job transitions

Taking a job is a single LMOVE so several worker processes can share a queue.
A job whose lease runs out (its worker died or never acknowledged it) is
handed back to waiting, or failed once its attempts are used up.
"""
import json
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import redis.asyncio as redis
import structlog
from redis.exceptions import RedisError

logger = structlog.get_logger(__name__)

JOB_STATUSES = ("waiting", "active", "completed", "failed", "delayed", "paused")

DEFAULT_LEASE_MS = 60_000
FIRED_MARKER_TTL_MS = 7 * 24 * 3600 * 1000
STALLED_REASON = "job stalled: worker lease expired"


def normalize_queue_name(value: Optional[str]) -> str:
    """Map a configured queue name onto the canonical charset."""
    raw = str(value or "default").strip()
    return re.sub(r"[:\s/\\]+", "-", raw) or "default"


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class QueueJob:
    """A job as stored in the broker."""
    id: str
    name: str
    data: Dict[str, Any] = field(default_factory=dict)
    attempts: int = 1
    backoff_ms: int = 0
    attempts_made: int = 0
    state: str = "waiting"
    timestamp: int = 0
    processed_on: Optional[int] = None
    finished_on: Optional[int] = None
    failed_reason: Optional[str] = None
    return_value: Any = None

    @property
    def payload(self) -> Dict[str, Any]:
        return self.data.get("payload") or {}

    @property
    def meta(self) -> Dict[str, Any]:
        return self.data.get("meta") or {}

    @property
    def can_retry(self) -> bool:
        return self.attempts_made < self.attempts

    def to_hash(self) -> Dict[str, str]:
        mapping = {
            "name": self.name,
            "data": json.dumps(self.data),
            "attempts": str(self.attempts),
            "backoff_ms": str(self.backoff_ms),
            "attempts_made": str(self.attempts_made),
            "state": self.state,
            "timestamp": str(self.timestamp),
        }
        return mapping

    @classmethod
    def from_hash(cls, job_id: str, raw: Dict[str, str]) -> "QueueJob":
        def _opt_int(key: str) -> Optional[int]:
            value = raw.get(key)
            return int(value) if value not in (None, "") else None

        return_value = raw.get("return_value")
        return cls(
            id=job_id,
            name=raw.get("name", ""),
            data=json.loads(raw.get("data") or "{}"),
            attempts=int(raw.get("attempts") or 1),
            backoff_ms=int(raw.get("backoff_ms") or 0),
            attempts_made=int(raw.get("attempts_made") or 0),
            state=raw.get("state", "waiting"),
            timestamp=int(raw.get("timestamp") or 0),
            processed_on=_opt_int("processed_on"),
            finished_on=_opt_int("finished_on"),
            failed_reason=raw.get("failed_reason") or None,
            return_value=json.loads(return_value) if return_value else None,
        )

    def summary(self) -> Dict[str, Any]:
        """Shape returned by queue introspection."""
        return {
            "id": self.id,
            "name": self.name,
            "data": self.data,
            "attemptsMade": self.attempts_made,
            "timestamp": self.timestamp,
            "processedOn": self.processed_on,
            "finishedOn": self.finished_on,
        }


class RedisQueue:
    """A single named durable queue."""

    def __init__(self, redis_client: redis.Redis, name: str, prefix: str = "skyq"):
        self.redis = redis_client
        self.name = name
        self.key_prefix = f"{prefix}:{name}"
        self.wait_key = f"{self.key_prefix}:wait"
        self.active_key = f"{self.key_prefix}:active"
        self.leases_key = f"{self.key_prefix}:leases"
        self.delayed_key = f"{self.key_prefix}:delayed"
        self.completed_key = f"{self.key_prefix}:completed"
        self.failed_key = f"{self.key_prefix}:failed"
        self.meta_key = f"{self.key_prefix}:meta"
        self.repeat_key = f"{self.key_prefix}:repeat"
        self.events_channel = f"{self.key_prefix}:events"

    def job_key(self, job_id: str) -> str:
        return f"{self.key_prefix}:job:{job_id}"

    async def add(
        self,
        name: str,
        data: Dict[str, Any],
        job_id: str,
        attempts: int = 1,
        backoff_ms: int = 0,
        delay_ms: int = 0,
    ) -> Tuple[QueueJob, bool]:
        """
        Add a job.

        Returns the job and whether it was created. A job id that already
        exists is not added twice; the stored job is returned instead.
        The id is claimed with HSETNX, so of several concurrent adders
        (in any process) exactly one pushes the job.
        """
        if not await self.redis.hsetnx(self.job_key(job_id), "name", name):
            existing = await self.get_job(job_id)
            return existing, False

        created_at = now_ms()
        job = QueueJob(
            id=job_id,
            name=name,
            data=data,
            attempts=max(1, int(attempts)),
            backoff_ms=max(0, int(backoff_ms)),
            state="delayed" if delay_ms > 0 else "waiting",
            timestamp=created_at,
        )
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(self.job_key(job_id), mapping=job.to_hash())
            if delay_ms > 0:
                pipe.zadd(self.delayed_key, {job_id: created_at + delay_ms})
            else:
                pipe.lpush(self.wait_key, job_id)
            await pipe.execute()

        await self._publish(job.state, job_id)
        return job, True

    async def take(self, lease_ms: int = DEFAULT_LEASE_MS) -> Optional[QueueJob]:
        """
        Move the oldest waiting job to active, or return None.

        The taker holds the job for ``lease_ms``; extend_lease() keeps it
        while the job runs. An expired lease is picked up by recover_stalled().
        """
        if await self.is_paused():
            return None

        job_id = await self.redis.lmove(self.wait_key, self.active_key, "RIGHT", "LEFT")
        if job_id is None:
            return None

        job_key = self.job_key(job_id)
        taken_at = now_ms()
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zadd(self.leases_key, {job_id: taken_at + max(0, int(lease_ms))})
            pipe.hset(job_key, mapping={"state": "active", "processed_on": str(taken_at)})
            pipe.hincrby(job_key, "attempts_made", 1)
            pipe.hgetall(job_key)
            _, _, _, raw = await pipe.execute()

        if not raw or "data" not in raw:
            # Job hash vanished underneath us; drop the orphaned id.
            await self.redis.lrem(self.active_key, 1, job_id)
            await self.redis.zrem(self.leases_key, job_id)
            await self.redis.delete(job_key)
            logger.warning("orphaned_job_dropped", queue=self.name, job_id=job_id)
            return None

        await self._publish("active", job_id)
        return QueueJob.from_hash(job_id, raw)

    async def complete(self, job: QueueJob, result: Any) -> None:
        finished = now_ms()
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self.active_key, 1, job.id)
            pipe.zrem(self.leases_key, job.id)
            pipe.zadd(self.completed_key, {job.id: finished})
            pipe.hset(
                self.job_key(job.id),
                mapping={
                    "state": "completed",
                    "finished_on": str(finished),
                    "return_value": json.dumps(result, default=str),
                },
            )
            await pipe.execute()
        job.state = "completed"
        job.finished_on = finished
        job.return_value = result
        await self._publish("completed", job.id)

    async def fail(self, job: QueueJob, reason: str, retry: bool = True) -> bool:
        """
        Record a failed attempt.

        Returns True when another attempt was scheduled (fixed backoff),
        False when the job reached its terminal failed state.
        """
        finished = now_ms()
        will_retry = retry and job.attempts_made < job.attempts
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.lrem(self.active_key, 1, job.id)
            pipe.zrem(self.leases_key, job.id)
            if will_retry:
                pipe.zadd(self.delayed_key, {job.id: finished + job.backoff_ms})
                pipe.hset(self.job_key(job.id), mapping={"state": "delayed", "failed_reason": reason})
            else:
                pipe.zadd(self.failed_key, {job.id: finished})
                pipe.hset(
                    self.job_key(job.id),
                    mapping={"state": "failed", "failed_reason": reason, "finished_on": str(finished)},
                )
            await pipe.execute()

        job.failed_reason = reason
        if will_retry:
            job.state = "delayed"
            await self._publish("retrying", job.id)
        else:
            job.state = "failed"
            job.finished_on = finished
            await self._publish("failed", job.id)
        return will_retry

    async def promote_delayed(self, limit: int = 100, at_ms: Optional[int] = None) -> int:
        """Move due delayed jobs to waiting. Returns how many were moved."""
        due = await self.redis.zrangebyscore(
            self.delayed_key, "-inf", at_ms if at_ms is not None else now_ms(), start=0, num=limit
        )
        promoted = 0
        for job_id in due:
            # Only the caller whose ZREM succeeds owns the promotion.
            if not await self.redis.zrem(self.delayed_key, job_id):
                continue
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.hset(self.job_key(job_id), "state", "waiting")
                pipe.lpush(self.wait_key, job_id)
                await pipe.execute()
            promoted += 1
        return promoted

    async def extend_lease(self, job_id: str, lease_ms: int = DEFAULT_LEASE_MS) -> bool:
        """Push out an active job's lease. False once the job is no longer leased."""
        updated = await self.redis.zadd(self.leases_key, {job_id: now_ms() + lease_ms}, xx=True, ch=True)
        return bool(updated)

    async def recover_stalled(self, limit: int = 100, at_ms: Optional[int] = None) -> List[Tuple[QueueJob, bool]]:
        """
        Take back active jobs whose lease expired.

        A stalled job goes back to waiting while it has attempts left and
        to failed otherwise. Returns (job, retrying) for every recovered job.
        """
        current = at_ms if at_ms is not None else now_ms()

        # An id moved to active by a taker that died before leasing it gets a
        # fresh lease, so it is recovered once that lease runs out.
        for job_id in await self.redis.lrange(self.active_key, 0, -1):
            await self.redis.zadd(self.leases_key, {job_id: current + DEFAULT_LEASE_MS}, nx=True)

        expired = await self.redis.zrangebyscore(self.leases_key, "-inf", current, start=0, num=limit)
        recovered = []
        for job_id in expired:
            # Only the caller whose ZREM succeeds owns the recovery.
            if not await self.redis.zrem(self.leases_key, job_id):
                continue
            job = await self.get_job(job_id)
            if job is None:
                await self.redis.lrem(self.active_key, 1, job_id)
                continue

            retrying = job.can_retry
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.lrem(self.active_key, 1, job_id)
                if retrying:
                    pipe.hset(self.job_key(job_id), mapping={"state": "waiting", "failed_reason": STALLED_REASON})
                    pipe.lpush(self.wait_key, job_id)
                else:
                    pipe.zadd(self.failed_key, {job_id: current})
                    pipe.hset(
                        self.job_key(job_id),
                        mapping={"state": "failed", "failed_reason": STALLED_REASON, "finished_on": str(current)},
                    )
                await pipe.execute()

            job.failed_reason = STALLED_REASON
            job.state = "waiting" if retrying else "failed"
            logger.warning("job_stalled", queue=self.name, job_id=job_id, attempts_made=job.attempts_made,
                           retrying=retrying)
            await self._publish("stalled", job_id)
            recovered.append((job, retrying))
        return recovered

    async def claim_firing(self, repeat_key: str, due_ms: int) -> bool:
        """Claim one due firing of a repeatable; True for exactly one caller."""
        marker = f"{self.key_prefix}:fired:{repeat_key}:{due_ms}"
        return bool(await self.redis.set(marker, "1", nx=True, px=FIRED_MARKER_TTL_MS))

    async def get_job(self, job_id: str) -> Optional[QueueJob]:
        raw = await self.redis.hgetall(self.job_key(job_id))
        if not raw:
            return None
        return QueueJob.from_hash(job_id, raw)

    async def pause(self) -> None:
        await self.redis.hset(self.meta_key, "paused", "1")
        await self._publish("paused", None)

    async def resume(self) -> None:
        await self.redis.hdel(self.meta_key, "paused")
        await self._publish("resumed", None)

    async def is_paused(self) -> bool:
        return bool(await self.redis.hget(self.meta_key, "paused"))

    async def get_counts(self) -> Dict[str, int]:
        paused = await self.is_paused()
        waiting = await self.redis.llen(self.wait_key)
        return {
            "waiting": 0 if paused else waiting,
            "active": await self.redis.llen(self.active_key),
            "completed": await self.redis.zcard(self.completed_key),
            "failed": await self.redis.zcard(self.failed_key),
            "delayed": await self.redis.zcard(self.delayed_key),
            "paused": waiting if paused else 0,
        }

    async def get_jobs(self, status: str, limit: int = 20) -> List[QueueJob]:
        """Jobs in one status, oldest first."""
        limit = max(1, int(limit))
        if status in ("waiting", "paused"):
            if (status == "paused") != await self.is_paused():
                return []
            ids = list(reversed(await self.redis.lrange(self.wait_key, 0, -1)))[:limit]
        elif status == "active":
            ids = list(reversed(await self.redis.lrange(self.active_key, 0, -1)))[:limit]
        elif status == "delayed":
            ids = await self.redis.zrange(self.delayed_key, 0, limit - 1)
        elif status == "completed":
            ids = await self.redis.zrange(self.completed_key, 0, limit - 1)
        elif status == "failed":
            ids = await self.redis.zrange(self.failed_key, 0, limit - 1)
        else:
            raise ValueError(f"unknown job status: {status}")

        jobs = []
        for job_id in ids:
            job = await self.get_job(job_id)
            if job:
                jobs.append(job)
        return jobs

    # ------------------------------------------------------------------
    # Repeatable registrations
    # ------------------------------------------------------------------

    async def upsert_repeatable(self, repeat_key: str, entry: Dict[str, Any]) -> None:
        await self.redis.hset(self.repeat_key, repeat_key, json.dumps(entry))

    async def get_repeatable(self, repeat_key: str) -> Optional[Dict[str, Any]]:
        raw = await self.redis.hget(self.repeat_key, repeat_key)
        return json.loads(raw) if raw else None

    async def remove_repeatable(self, repeat_key: str) -> bool:
        return bool(await self.redis.hdel(self.repeat_key, repeat_key))

    async def list_repeatables(self) -> Dict[str, Dict[str, Any]]:
        raw = await self.redis.hgetall(self.repeat_key)
        return {key: json.loads(value) for key, value in raw.items()}

    async def _publish(self, event: str, job_id: Optional[str]) -> None:
        try:
            await self.redis.publish(
                self.events_channel,
                json.dumps({"event": event, "jobId": job_id, "queue": self.name}),
            )
        except RedisError as e:
            logger.warning("queue_event_publish_failed", queue=self.name, event=event, error=str(e))


class QueueManager:
    """
    Owns one RedisQueue (and its events channel) per distinct queue name.

    Queues are append-only for the process lifetime.
    """

    def __init__(self, redis_client: redis.Redis, prefix: str = "skyq"):
        self.redis = redis_client
        self.prefix = prefix
        self._queues: Dict[str, RedisQueue] = {}

    async def ping(self) -> bool:
        return bool(await self.redis.ping())

    def ensure_queue(self, queue_name: str) -> RedisQueue:
        name = normalize_queue_name(queue_name)
        queue = self._queues.get(name)
        if queue is None:
            queue = RedisQueue(self.redis, name, prefix=self.prefix)
            self._queues[name] = queue
            logger.info("queue_created", queue=name, events=queue.events_channel)
        return queue

    def get(self, queue_name: str) -> Optional[RedisQueue]:
        return self._queues.get(queue_name)

    def names(self) -> List[str]:
        return list(self._queues)

    def queues(self) -> List[RedisQueue]:
        return list(self._queues.values())

    def events_channel(self, queue_name: str) -> Optional[str]:
        queue = self._queues.get(queue_name)
        return queue.events_channel if queue else None

    async def get_stats(self) -> List[Dict[str, Any]]:
        """Job counts for every tracked queue."""
        stats = []
        for name, queue in self._queues.items():
            counts = await queue.get_counts()
            stats.append({"queueName": name, **counts})
        return stats

    def clear(self) -> None:
        self._queues.clear()
