"""
Order lifecycle and the remote booking API.
"""

from .atour_client import AtourClient
from .order_state import OrderService, aggregate_order_status, item_status_for

__all__ = [
    "AtourClient",
    "OrderService",
    "aggregate_order_status",
    "item_status_for",
]
