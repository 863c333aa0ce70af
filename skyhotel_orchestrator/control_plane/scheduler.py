"""
Scheduler

Keeps one repeatable registration per SCHEDULED module, keyed by a stable
repeat key derived from the module id and stored in the module's queue.
Each tick enqueues one firing per due registration and advances its next
fire time. A due time is claimed in Redis before it fires, so schedulers in
several processes fire it once between them. Cron patterns are evaluated in
UTC.
"""
import asyncio
import re
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

import structlog
from croniter import croniter

from .models import ModuleCategory, TaskModule
from .queue_manager import QueueManager, RedisQueue, normalize_queue_name, now_ms

logger = structlog.get_logger(__name__)

FireCallback = Callable[[str, RedisQueue, str, Dict[str, Any]], Awaitable[Any]]


def repeat_key_for(module_id: Optional[str]) -> str:
    return "repeat-" + re.sub(r"[^a-zA-Z0-9_.-]", "-", str(module_id or "module"))


def next_fire_ms(pattern: str, after_ms: int) -> int:
    start = datetime.fromtimestamp(after_ms / 1000, tz=timezone.utc)
    return int(croniter(pattern, start).get_next(float) * 1000)


class Scheduler:
    """Cron-style recurring jobs for SCHEDULED modules."""

    def __init__(
        self,
        queue_manager: QueueManager,
        fire: FireCallback,
        tick_seconds: float = 5.0,
        clock: Callable[[], int] = now_ms,
    ):
        self.queue_manager = queue_manager
        self._fire = fire
        self.tick_seconds = tick_seconds
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self._shutdown_event = asyncio.Event()

    async def sync(self, modules: Iterable[TaskModule]) -> None:
        """Register or remove the recurring job of every SCHEDULED module."""
        for module in modules:
            if module.category != ModuleCategory.SCHEDULED:
                continue
            if module.enabled and (module.schedule or "").strip():
                await self.register(module)
            else:
                await self.remove(module.module_id)

    async def register(self, module: TaskModule) -> bool:
        pattern = module.schedule.strip()
        if not croniter.is_valid(pattern):
            logger.error("schedule_invalid", module_id=module.module_id, schedule=pattern)
            return False

        key = repeat_key_for(module.module_id)
        target = self.queue_manager.ensure_queue(normalize_queue_name(module.queue_name))

        # A queue-name change leaves the old registration behind; drop it.
        for queue in self.queue_manager.queues():
            if queue.name != target.name:
                await queue.remove_repeatable(key)

        existing = await target.get_repeatable(key)
        if existing and existing.get("pattern") == pattern:
            next_run = existing["next_run_ms"]
        else:
            next_run = next_fire_ms(pattern, self._clock())

        await target.upsert_repeatable(key, {
            "module_id": module.module_id,
            "pattern": pattern,
            "attempts": module.attempts,
            "backoff_ms": module.backoff_ms,
            "next_run_ms": next_run,
        })
        if not existing or existing.get("pattern") != pattern:
            logger.info("schedule_registered", module_id=module.module_id, queue=target.name,
                        schedule=pattern, repeat_key=key, next_run_ms=next_run)
        return True

    async def remove(self, module_id: str) -> bool:
        """Remove a module's registration from every queue; no-op when absent."""
        key = repeat_key_for(module_id)
        removed = False
        for queue in self.queue_manager.queues():
            removed = await queue.remove_repeatable(key) or removed
        if removed:
            logger.info("schedule_removed", module_id=module_id, repeat_key=key)
        return removed

    async def tick(self) -> int:
        """Fire every due registration once. Returns the number of firings."""
        fired = 0
        current = self._clock()
        for queue in self.queue_manager.queues():
            for key, entry in (await queue.list_repeatables()).items():
                due_at = entry["next_run_ms"]
                if due_at > current:
                    continue
                # Several schedulers may see the same due time; one claims it.
                claimed = await queue.claim_firing(key, due_at)
                # Advance first so a slow firing is not picked up again.
                entry["next_run_ms"] = next_fire_ms(entry["pattern"], current)
                await queue.upsert_repeatable(key, entry)
                if not claimed:
                    logger.info("schedule_firing_skipped", repeat_key=key, due_ms=due_at, reason="claimed")
                    continue
                await self._fire(entry["module_id"], queue, f"{key}:{due_at}", entry)
                fired += 1
        return fired

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._run())

    async def _run(self) -> None:
        while not self._shutdown_event.is_set():
            try:
                await self.tick()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("scheduler_tick_failed", error=str(e))
            await asyncio.sleep(self.tick_seconds)

    async def close(self) -> None:
        self._shutdown_event.set()
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
