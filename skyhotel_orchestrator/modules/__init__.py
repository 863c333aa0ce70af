"""
Built-in task modules.
"""
from ..control_plane.registry import ModuleId, TaskModuleRegistry
from .account_checkin import daily_checkin
from .order_cancel import cancel_order_item
from .order_payment_link import fetch_payment_link
from .order_submit import submit_order_item

BUILTIN_HANDLERS = {
    ModuleId.ORDER_SUBMIT: submit_order_item,
    ModuleId.ORDER_CANCEL: cancel_order_item,
    ModuleId.ORDER_PAYMENT_LINK: fetch_payment_link,
    ModuleId.ACCOUNT_DAILY_CHECKIN: daily_checkin,
}


def build_registry() -> TaskModuleRegistry:
    """Registry holding every built-in module."""
    registry = TaskModuleRegistry()
    for module_id, handler in BUILTIN_HANDLERS.items():
        registry.register(module_id, handler)
    return registry


__all__ = ["BUILTIN_HANDLERS", "build_registry"]
