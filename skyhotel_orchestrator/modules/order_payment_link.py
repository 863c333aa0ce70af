"""
order.payment-link

Read-only: returns the stored payment/detail links of an order item.
"""
from typing import Any, Dict

from ..control_plane.errors import NotFound
from ..control_plane.registry import TaskContext


async def fetch_payment_link(ctx: TaskContext) -> Dict[str, Any]:
    order_item_id = ctx.payload.get("orderItemId")
    links = await ctx.deps.orders.get_item_links(order_item_id)
    if links is None:
        raise NotFound("order item", order_item_id)
    return links
