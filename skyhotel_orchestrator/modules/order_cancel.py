"""
order.cancel
"""
from typing import Any, Dict

from ..control_plane.errors import NotFound
from ..control_plane.registry import TaskContext


async def cancel_order_item(ctx: TaskContext) -> Dict[str, Any]:
    orders = ctx.deps.orders
    order_item_id = ctx.payload.get("orderItemId")
    item = await orders.cancel_item(order_item_id)
    if item is None:
        raise NotFound("order item", order_item_id)
    await orders.refresh_order_status(item.group_id)
    return {"ok": True, "orderItemId": item.id}
