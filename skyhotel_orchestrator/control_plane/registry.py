"""
Task Module Registry

Maps a stable module identifier to the handler that executes its jobs.
Workers look the handler up by the job name (which is the module id).

Design:
- Built-in modules are an enumerated set (ModuleId)
- Handlers are registered explicitly at start-up into a lookup table
- Fail-fast on duplicate registration
- Supports both sync and async handlers
"""
import asyncio
import inspect
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import structlog

from .errors import ModuleNotImplemented
from .models import ProxyNode

logger = structlog.get_logger(__name__)


class ModuleId(str, Enum):
    """Built-in task modules."""
    ORDER_SUBMIT = "order.submit"
    ORDER_CANCEL = "order.cancel"
    ORDER_PAYMENT_LINK = "order.payment-link"
    ACCOUNT_DAILY_CHECKIN = "account.daily-checkin"


@dataclass
class TaskDependencies:
    """Collaborators handed to every handler invocation."""
    orders: Any
    resource_pool: Any
    atour_client: Any = None
    settings: Any = None


@dataclass
class TaskContext:
    """
    Context passed to handler functions.

    Contains all information needed to execute one job attempt.
    """
    module_id: str
    job_id: str
    queue_name: str
    payload: Dict[str, Any] = field(default_factory=dict)
    meta: Dict[str, Any] = field(default_factory=dict)
    proxy: Optional[ProxyNode] = None
    attempt: int = 1
    deps: Optional[TaskDependencies] = None


HandlerResult = Dict[str, Any]
HandlerFunc = Callable[[TaskContext], Union[HandlerResult, Awaitable[HandlerResult]]]


class DuplicateModuleError(Exception):
    """Raised when a module id is already registered."""
    def __init__(self, module_id: str):
        self.module_id = module_id
        super().__init__(f"Module already registered: {module_id}")


class TaskModuleRegistry:
    """Lookup table of module id -> handler."""

    def __init__(self) -> None:
        self._handlers: Dict[str, HandlerFunc] = {}

    def register(self, module_id: Union[ModuleId, str], handler: HandlerFunc) -> HandlerFunc:
        key = module_id.value if isinstance(module_id, ModuleId) else str(module_id)
        if key in self._handlers:
            raise DuplicateModuleError(key)
        self._handlers[key] = handler
        logger.debug("module_registered", module_id=key, handler=getattr(handler, "__name__", repr(handler)))
        return handler

    def module(self, module_id: Union[ModuleId, str]) -> Callable[[HandlerFunc], HandlerFunc]:
        """Decorator form of register()."""
        def decorator(func: HandlerFunc) -> HandlerFunc:
            return self.register(module_id, func)
        return decorator

    def get(self, module_id: str) -> HandlerFunc:
        handler = self._handlers.get(module_id)
        if handler is None:
            raise ModuleNotImplemented(module_id)
        return handler

    def has(self, module_id: str) -> bool:
        return module_id in self._handlers

    def module_ids(self) -> List[str]:
        return sorted(self._handlers)

    async def invoke(self, handler: HandlerFunc, ctx: TaskContext) -> HandlerResult:
        """Run a handler; sync handlers run in a worker thread."""
        if inspect.iscoroutinefunction(handler):
            return await handler(ctx)
        result = await asyncio.to_thread(handler, ctx)
        if inspect.isawaitable(result):
            return await result
        return result
