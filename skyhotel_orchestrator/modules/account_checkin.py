"""
account.daily-checkin

Scheduled upkeep of online pool accounts.
"""
from typing import Any, Dict

import structlog

from ..control_plane.models import PoolAccount, utcnow
from ..control_plane.registry import TaskContext

logger = structlog.get_logger(__name__)

BATCH_SIZE = 10


async def daily_checkin(ctx: TaskContext) -> Dict[str, Any]:
    pool = ctx.deps.resource_pool
    accounts = await pool.list_online_accounts()
    sample = accounts[:BATCH_SIZE]
    checked_at = utcnow().isoformat()

    async with pool.db.session() as session:
        for account in sample:
            row = await session.get(PoolAccount, account.id)
            if row is None:
                continue
            row.last_execution = {"type": "daily-checkin", "at": checked_at, "jobId": ctx.job_id}
            row.updated_at = utcnow()
            session.add(row)
        await session.commit()

    logger.info("daily_checkin_done", online=len(accounts), executed=len(sample))
    return {
        "ok": True,
        "totalOnline": len(accounts),
        "executed": len(sample),
        "proxyId": ctx.proxy.id if ctx.proxy else None,
    }
