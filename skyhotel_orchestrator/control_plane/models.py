"""
Task Platform Data Models

Defines the task module configuration, the task run ledger and the booking
records (pool accounts, proxy nodes, orders) the task modules drive forward.
These models are the source of truth for platform state in the database.
"""
import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Any, Dict, List, Optional

from sqlalchemy import DateTime, UniqueConstraint
from sqlmodel import JSON, Column, Field, SQLModel


def _new_id(prefix: str) -> str:
    return f"{prefix}{uuid.uuid4().hex[:12]}"


def utcnow() -> datetime:
    """Timezone-aware UTC now; every timestamp column stores aware values."""
    return datetime.now(timezone.utc)


class ModuleCategory(str, PyEnum):
    """How a task module gets its jobs."""
    ON_DEMAND = "ON_DEMAND"
    SCHEDULED = "SCHEDULED"


class TaskRunState(str, PyEnum):
    """Ledger state of one job execution."""
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class BookingTier(str, PyEnum):
    """Eligibility class of a pool account / order item."""
    NEW_USER = "NEW_USER"
    PLATINUM = "PLATINUM"
    CORPORATE = "CORPORATE"


class ProxyType(str, PyEnum):
    STATIC = "STATIC"
    DYNAMIC = "DYNAMIC"


class ProxyStatus(str, PyEnum):
    ONLINE = "ONLINE"
    OFFLINE = "OFFLINE"
    LATENCY = "LATENCY"


class ExecutionStatus(str, PyEnum):
    """Fine-grained execution lifecycle of an order item."""
    PENDING = "PENDING"
    SUBMITTING = "SUBMITTING"
    ORDERED = "ORDERED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class ItemStatus(str, PyEnum):
    """Coarse lifecycle shared by order items and orders."""
    PROCESSING = "PROCESSING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


# Orders aggregate their items onto the same coarse lifecycle.
OrderStatus = ItemStatus


class TaskModule(SQLModel, table=True):
    """
    Persisted configuration of one task module.

    Edited by operators; read by the platform at start-up and on every sync.
    """
    __tablename__ = "task_modules"

    module_id: str = Field(primary_key=True, description="Stable module identifier, e.g. 'order.submit'")
    name: str = Field(default="", description="Human readable name")
    queue_name: str = Field(default="default", index=True, description="Queue the module's jobs go to")
    enabled: bool = Field(default=True)
    concurrency: int = Field(default=1, ge=1)
    attempts: int = Field(default=3, ge=1, description="Maximum attempts per job")
    backoff_ms: int = Field(default=5000, ge=0, description="Fixed delay between attempts")
    category: ModuleCategory = Field(default=ModuleCategory.ON_DEMAND)
    schedule: Optional[str] = Field(default=None, description="Cron pattern, required for SCHEDULED")
    use_proxy: bool = Field(default=False)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


class TaskRun(SQLModel, table=True):
    """
    Ledger row: durable audit record of one job execution.

    One row per (queue_name, job_id); retries update attempts_made in place.
    """
    __tablename__ = "task_runs"
    __table_args__ = (UniqueConstraint("queue_name", "job_id", name="uq_task_runs_queue_job"),)

    id: str = Field(default_factory=lambda: _new_id("run_"), primary_key=True)
    module_id: str = Field(index=True)
    queue_name: str = Field(index=True)
    job_id: str = Field(index=True)
    state: TaskRunState = Field(default=TaskRunState.WAITING, index=True)
    progress: int = Field(default=0, ge=0, le=100)
    attempts_made: int = Field(default=0)
    payload: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    result: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    error: Optional[str] = Field(default=None)
    proxy_id: Optional[str] = Field(default=None)
    order_group_id: Optional[str] = Field(default=None, index=True)
    order_item_id: Optional[str] = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True), index=True)
    started_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    finished_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))


class PoolAccount(SQLModel, table=True):
    """Shared third-party credential usable for remote booking operations."""
    __tablename__ = "pool_accounts"

    id: str = Field(default_factory=lambda: _new_id("pool_"), primary_key=True)
    phone: str = Field(default="", index=True)
    login_token_cipher: Optional[str] = Field(default=None, description="Base64 RSA-OAEP ciphertext")
    is_online: bool = Field(default=False, index=True)
    is_platinum: bool = Field(default=False)
    is_new_user: bool = Field(default=False)
    corporate_agreements: List[Dict[str, Any]] = Field(default_factory=list, sa_column=Column(JSON))
    remark: Optional[str] = Field(default=None)
    daily_orders_left: int = Field(default=0)
    last_execution: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


class ProxyNode(SQLModel, table=True):
    """Network egress endpoint."""
    __tablename__ = "proxy_nodes"

    id: str = Field(default_factory=lambda: _new_id("proxy-"), primary_key=True)
    ip: str = Field(default="")
    port: int = Field(default=0, ge=0)
    type: ProxyType = Field(default=ProxyType.DYNAMIC, index=True)
    status: ProxyStatus = Field(default=ProxyStatus.OFFLINE, index=True)
    location: str = Field(default="")
    fail_count: int = Field(default=0, ge=0)
    last_checked: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))

    @property
    def url(self) -> str:
        return f"http://{self.ip}:{self.port}"


class OrderGroup(SQLModel, table=True):
    """An order: aggregate of one or more order items."""
    __tablename__ = "order_groups"

    id: str = Field(default_factory=lambda: _new_id("ord_"), primary_key=True)
    biz_order_no: str = Field(default="", index=True)
    chain_id: str = Field(default="")
    hotel_name: str = Field(default="")
    customer_name: str = Field(default="")
    contact_phone: Optional[str] = Field(default=None)
    check_in_date: str = Field(default="")
    check_out_date: str = Field(default="")
    total_amount: float = Field(default=0.0)
    status: ItemStatus = Field(default=ItemStatus.PROCESSING, index=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


class OrderItem(SQLModel, table=True):
    """One bookable unit within an order."""
    __tablename__ = "order_items"

    id: str = Field(default_factory=lambda: _new_id("item_"), primary_key=True)
    group_id: str = Field(index=True)
    atour_order_id: Optional[str] = Field(default=None)
    room_type: str = Field(default="")
    room_type_id: Optional[str] = Field(default=None)
    room_count: int = Field(default=1)
    rate_code: Optional[str] = Field(default=None)
    rate_code_id: Optional[str] = Field(default=None)
    rp_activity_id: Optional[str] = Field(default=None)
    rate_code_activities: str = Field(default="")
    check_in_date: str = Field(default="")
    check_out_date: str = Field(default="")
    amount: float = Field(default=0.0)
    booking_tier: Optional[BookingTier] = Field(default=None)
    execution_status: ExecutionStatus = Field(default=ExecutionStatus.PENDING, index=True)
    status: ItemStatus = Field(default=ItemStatus.PROCESSING, index=True)
    payment_link: Optional[str] = Field(default=None)
    detail_url: Optional[str] = Field(default=None)
    split_index: int = Field(default=1)
    split_total: int = Field(default=1)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))


# ============================================================================
# BUILDERS
# ============================================================================

def default_task_modules() -> List[TaskModule]:
    """Fully populated configuration for every built-in module."""
    return [
        TaskModule(
            module_id="order.submit",
            name="Submit order item",
            queue_name="orders",
            enabled=True,
            concurrency=4,
            attempts=3,
            backoff_ms=5000,
            category=ModuleCategory.ON_DEMAND,
            use_proxy=False,
        ),
        TaskModule(
            module_id="order.cancel",
            name="Cancel order item",
            queue_name="orders",
            enabled=True,
            concurrency=2,
            attempts=1,
            backoff_ms=0,
            category=ModuleCategory.ON_DEMAND,
            use_proxy=False,
        ),
        TaskModule(
            module_id="order.payment-link",
            name="Fetch payment links",
            queue_name="orders",
            enabled=True,
            concurrency=2,
            attempts=1,
            backoff_ms=0,
            category=ModuleCategory.ON_DEMAND,
            use_proxy=False,
        ),
        TaskModule(
            module_id="account.daily-checkin",
            name="Pool account daily check-in",
            queue_name="accounts",
            enabled=False,
            concurrency=1,
            attempts=2,
            backoff_ms=60000,
            category=ModuleCategory.SCHEDULED,
            schedule="0 9 * * *",
            use_proxy=True,
        ),
    ]


def new_proxy_node(
    ip: str = "",
    port: int = 0,
    type: ProxyType = ProxyType.DYNAMIC,
    status: ProxyStatus = ProxyStatus.OFFLINE,
    location: str = "",
) -> ProxyNode:
    """Fully populated proxy node; unknown type/status fall back to DYNAMIC/OFFLINE."""
    return ProxyNode(
        ip=ip.strip(),
        port=max(0, int(port or 0)),
        type=type if isinstance(type, ProxyType) else _coerce(ProxyType, type, ProxyType.DYNAMIC),
        status=status if isinstance(status, ProxyStatus) else _coerce(ProxyStatus, status, ProxyStatus.OFFLINE),
        location=location.strip(),
        fail_count=0,
        last_checked=utcnow(),
    )


def _coerce(enum_cls, value, fallback):
    try:
        return enum_cls(str(value or "").upper())
    except ValueError:
        return fallback
