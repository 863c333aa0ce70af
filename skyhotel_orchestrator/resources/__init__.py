"""
Shared resources: pool account tokens and proxy nodes.
"""

from .resource_pool import ProxyCursor, ResourcePool, TokenLease, can_use_tier
from .token_crypto import PoolTokenCipher

__all__ = [
    "ProxyCursor",
    "ResourcePool",
    "TokenLease",
    "can_use_tier",
    "PoolTokenCipher",
]
