"""
Order State Machine

An order item's coarse status is derived from its execution status by one
fixed mapping; an order's status is derived from its items' statuses by one
fixed aggregation rule, recomputed every time an item changes.
"""
from typing import Any, Dict, Iterable, List, Optional

import structlog
from sqlalchemy import update
from sqlmodel import select

from ..control_plane.errors import NotFound
from ..control_plane.models import ExecutionStatus, ItemStatus, OrderGroup, OrderItem, utcnow

logger = structlog.get_logger(__name__)

ITEM_STATUS_BY_EXECUTION = {
    ExecutionStatus.PENDING: ItemStatus.PROCESSING,
    ExecutionStatus.SUBMITTING: ItemStatus.PROCESSING,
    ExecutionStatus.ORDERED: ItemStatus.CONFIRMED,
    ExecutionStatus.FAILED: ItemStatus.FAILED,
    ExecutionStatus.CANCELLED: ItemStatus.CANCELLED,
}

RESUBMITTABLE = (ExecutionStatus.PENDING, ExecutionStatus.FAILED)


def item_status_for(execution_status: ExecutionStatus) -> ItemStatus:
    return ITEM_STATUS_BY_EXECUTION[ExecutionStatus(execution_status)]


def aggregate_order_status(statuses: Iterable[ItemStatus]) -> ItemStatus:
    """
    Fold item statuses into the order status.

    - no items, or any item still processing -> PROCESSING
    - every item cancelled                   -> CANCELLED
    - any item failed                        -> FAILED
    - otherwise (confirmed, cancelled mixed) -> CONFIRMED
    """
    values = [ItemStatus(it) for it in statuses]
    if not values or ItemStatus.PROCESSING in values:
        return ItemStatus.PROCESSING
    if all(it == ItemStatus.CANCELLED for it in values):
        return ItemStatus.CANCELLED
    if ItemStatus.FAILED in values:
        return ItemStatus.FAILED
    return ItemStatus.CONFIRMED


class OrderService:
    """Reads and drives order items through their execution states."""

    def __init__(self, db):
        self.db = db

    async def get_order(self, order_id: Optional[str]) -> Optional[OrderGroup]:
        if not order_id:
            return None
        async with self.db.session() as session:
            return await session.get(OrderGroup, order_id)

    async def get_item(self, item_id: Optional[str]) -> Optional[OrderItem]:
        if not item_id:
            return None
        async with self.db.session() as session:
            return await session.get(OrderItem, item_id)

    async def list_items(self, order_id: str) -> List[OrderItem]:
        async with self.db.session() as session:
            result = await session.execute(
                select(OrderItem).where(OrderItem.group_id == order_id).order_by(OrderItem.split_index)
            )
            return list(result.scalars().all())

    async def set_item_execution(
        self,
        item_id: str,
        execution_status: ExecutionStatus,
        **fields: Any,
    ) -> OrderItem:
        """Move an item to an execution status; its coarse status follows."""
        async with self.db.session() as session:
            item = await session.get(OrderItem, item_id)
            if item is None:
                raise NotFound("order item", item_id)
            item.execution_status = ExecutionStatus(execution_status)
            item.status = item_status_for(execution_status)
            for key, value in fields.items():
                setattr(item, key, value)
            item.updated_at = utcnow()
            session.add(item)
            await session.commit()
            await session.refresh(item)
        logger.info(
            "order_item_updated",
            order_item_id=item_id,
            execution_status=item.execution_status.value,
            status=item.status.value,
        )
        return item

    async def refresh_order_status(self, order_id: str) -> Optional[OrderGroup]:
        async with self.db.session() as session:
            order = await session.get(OrderGroup, order_id)
            if order is None:
                logger.warning("order_refresh_skipped", order_id=order_id, reason="not_found")
                return None
            result = await session.execute(select(OrderItem.status).where(OrderItem.group_id == order_id))
            statuses = list(result.scalars().all())
            next_status = aggregate_order_status(statuses)
            if order.status != next_status:
                logger.info("order_status_changed", order_id=order_id, previous=ItemStatus(order.status).value,
                            status=next_status.value)
            order.status = next_status
            order.updated_at = utcnow()
            session.add(order)
            await session.commit()
            await session.refresh(order)
        return order

    async def refresh_for_item(self, item_id: str) -> Optional[OrderGroup]:
        item = await self.get_item(item_id)
        if item is None:
            return None
        return await self.refresh_order_status(item.group_id)

    async def cancel_item(self, item_id: Optional[str]) -> Optional[OrderItem]:
        item = await self.get_item(item_id)
        if item is None:
            return None
        return await self.set_item_execution(item.id, ExecutionStatus.CANCELLED)

    async def fail_item(self, item_id: str) -> Optional[OrderItem]:
        """
        Force an item to FAILED after its job failed for good.

        A cancelled item keeps its state: the CANCELLED check and the write
        are one conditional UPDATE, so a cancel committed in between wins.
        The owning order is refreshed.
        """
        async with self.db.session() as session:
            result = await session.execute(
                update(OrderItem)
                .where(OrderItem.id == item_id)
                .where(OrderItem.status != ItemStatus.CANCELLED)
                .values(
                    execution_status=ExecutionStatus.FAILED,
                    status=item_status_for(ExecutionStatus.FAILED),
                    updated_at=utcnow(),
                )
            )
            await session.commit()
            item = await session.get(OrderItem, item_id)

        if item is None:
            return None
        if result.rowcount == 0:
            logger.info("order_item_failure_ignored", order_item_id=item_id, reason="cancelled")
            return item
        logger.info("order_item_updated", order_item_id=item_id, execution_status=ExecutionStatus.FAILED.value,
                    status=ItemStatus.FAILED.value)
        await self.refresh_order_status(item.group_id)
        return item

    async def record_remote_order(self, item_id: str, atour_order_id: str) -> Optional[OrderItem]:
        """Store the remote order id the moment the remote order exists."""
        async with self.db.session() as session:
            item = await session.get(OrderItem, item_id)
            if item is None:
                return None
            item.atour_order_id = atour_order_id
            item.updated_at = utcnow()
            session.add(item)
            await session.commit()
            await session.refresh(item)
        logger.info("order_item_remote_order_recorded", order_item_id=item_id, atour_order_id=atour_order_id)
        return item

    async def get_item_links(self, item_id: Optional[str]) -> Optional[Dict[str, Any]]:
        item = await self.get_item(item_id)
        if item is None:
            return None
        return {
            "orderItemId": item.id,
            "atourOrderId": item.atour_order_id,
            "paymentLink": item.payment_link,
            "detailUrl": item.detail_url,
        }

    async def confirm_submit(self, item_id: str, platform) -> Dict[str, Any]:
        """
        (Re)submit an item through the order.submit module.

        Only PENDING or FAILED items are submitted, and a new job is queued
        only when the item has no waiting/active run already.
        """
        item = await self.get_item(item_id)
        if item is None:
            raise NotFound("order item", item_id)
        if ExecutionStatus(item.execution_status) not in RESUBMITTABLE:
            return {"item": item, "task": None}

        item = await self.set_item_execution(item.id, ExecutionStatus.PENDING)
        task = await platform.ledger.find_open_run_for_item(item.id)
        if task is None:
            task = await platform.enqueue(
                "order.submit",
                {"orderItemId": item.id},
                {"orderGroupId": item.group_id, "orderItemId": item.id},
            )
        await self.refresh_order_status(item.group_id)
        return {"item": item, "task": task}

    async def request_cancel(self, item_id: str, platform) -> Dict[str, Any]:
        item = await self.get_item(item_id)
        if item is None:
            raise NotFound("order item", item_id)
        task = await platform.enqueue(
            "order.cancel",
            {"orderItemId": item.id},
            {"orderGroupId": item.group_id, "orderItemId": item.id},
        )
        return {"queued": True, "task": task}
