"""
order.submit

Places one order item with the remote booking API:
SUBMITTING -> (token, calculate, add order, pay order) -> ORDERED.
The remote order id is stored as soon as the order is created; a retry of
an item that already has one only creates the pay order.
Failures propagate to the worker, which owns the FAILED transition.
"""
from typing import Any, Dict

import structlog

from ..booking.atour_client import build_calculate_payload
from ..control_plane.errors import NotFound, ResourceUnavailable
from ..control_plane.models import ExecutionStatus, ItemStatus
from ..control_plane.registry import TaskContext

logger = structlog.get_logger(__name__)


async def resolve_token(ctx: TaskContext, tier) -> Dict[str, Any]:
    """Pool token first, then the configured fallback token."""
    lease = await ctx.deps.resource_pool.acquire_token(tier)
    if lease is not None:
        return {"token": lease.token, "source": lease.source, "accountId": lease.account_id}

    fallback = getattr(ctx.deps.settings, "atour_access_token", "") if ctx.deps.settings else ""
    if fallback:
        return {"token": fallback, "source": "env", "accountId": None}

    raise ResourceUnavailable(
        "token",
        "No available token. Please configure pool account token or ATOUR_ACCESS_TOKEN.",
    )


async def submit_order_item(ctx: TaskContext) -> Dict[str, Any]:
    orders = ctx.deps.orders
    order_item_id = ctx.payload.get("orderItemId")

    item = await orders.get_item(order_item_id)
    if item is None:
        raise NotFound("order item", order_item_id)
    order = await orders.get_order(item.group_id)
    if order is None:
        raise NotFound("order", item.group_id)

    if item.status == ItemStatus.CANCELLED:
        logger.info("order_submit_skipped", order_item_id=item.id, reason="cancelled")
        await orders.refresh_order_status(order.id)
        return {"ok": False, "orderItemId": item.id, "skipped": "cancelled"}

    try:
        await orders.set_item_execution(item.id, ExecutionStatus.SUBMITTING)

        token = await resolve_token(ctx, item.booking_tier)
        calculate_payload = build_calculate_payload(order, item)

        async def remember_remote_order(remote_order_id: str) -> None:
            await orders.record_remote_order(item.id, remote_order_id)

        # A remote order left by an earlier attempt is paid for, not booked again.
        workflow = await ctx.deps.atour_client.run_order_workflow(
            token["token"],
            calculate_payload,
            customer_name=order.customer_name,
            customer_phone=order.contact_phone,
            proxy=ctx.proxy,
            existing_order_id=item.atour_order_id,
            on_order_created=remember_remote_order,
        )

        atour_order_id = str(workflow["addResult"]["orderId"])
        latest = await orders.get_item(item.id)
        if latest is not None and latest.status == ItemStatus.CANCELLED:
            # Cancelled while the remote calls were in flight; keep the cancellation.
            await orders.set_item_execution(item.id, ExecutionStatus.CANCELLED, atour_order_id=atour_order_id)
        else:
            await orders.set_item_execution(item.id, ExecutionStatus.ORDERED, atour_order_id=atour_order_id)
    finally:
        await orders.refresh_order_status(order.id)

    logger.info("order_submitted", order_item_id=item.id, atour_order_id=atour_order_id,
                token_source=token["source"])
    return {
        "ok": True,
        "orderItemId": item.id,
        "atourOrderId": atour_order_id,
        "tokenSource": token["source"],
        "tokenAccountId": token["accountId"],
        "proxyId": ctx.proxy.id if ctx.proxy else None,
        **workflow,
    }
