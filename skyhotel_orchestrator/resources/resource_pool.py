"""
Resource Pool

Hands out shared resources to job executions:

- pool account tokens, filtered by tier eligibility and tried in random order
  until one decrypts
- proxy nodes, ONLINE only, round-robin per preferred type

The round-robin cursor is the only process-wide mutable state; it lives in
ProxyCursor behind a lock.
"""
import random
import threading
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Union

import structlog
from sqlmodel import select

from ..control_plane.errors import NotFound
from ..control_plane.models import BookingTier, PoolAccount, ProxyNode, ProxyStatus, ProxyType, utcnow

logger = structlog.get_logger(__name__)

TokenDecryptor = Callable[[str], str]


@dataclass
class TokenLease:
    """A decrypted pool token and where it came from."""
    token: str
    source: str
    account_id: Optional[str] = None
    account_phone: Optional[str] = None


class ProxyCursor:
    """Round-robin cursors keyed by proxy type (or "ALL")."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cursors: Dict[str, int] = {}

    def next_index(self, key: str, length: int) -> int:
        if length <= 0:
            raise ValueError("length must be positive")
        with self._lock:
            cursor = self._cursors.get(key, 0)
            self._cursors[key] = cursor + 1
        return cursor % length

    def snapshot(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._cursors)

    def reset(self) -> None:
        with self._lock:
            self._cursors.clear()


def _normalize_tier(tier: Union[BookingTier, str, None]) -> Optional[str]:
    if tier is None or tier == "":
        return None
    if isinstance(tier, BookingTier):
        return tier.value
    return str(tier).upper()


def can_use_tier(account: PoolAccount, tier: Union[BookingTier, str, None]) -> bool:
    """Whether an account may serve a booking of the given tier."""
    tier = _normalize_tier(tier)
    if tier is None:
        return True
    if tier == BookingTier.NEW_USER.value:
        return bool(account.is_new_user)
    if tier == BookingTier.PLATINUM.value:
        return bool(account.is_platinum)
    if tier == BookingTier.CORPORATE.value:
        return len(account.corporate_agreements or []) > 0
    return True


class ResourcePool:
    """Token and proxy acquisition for job executions."""

    def __init__(
        self,
        db,
        decryptor: TokenDecryptor,
        cursor: Optional[ProxyCursor] = None,
        rng: Optional[random.Random] = None,
    ):
        self.db = db
        self._decrypt = decryptor
        self.cursor = cursor or ProxyCursor()
        self._rng = rng or random.Random()

    async def list_online_accounts(self) -> List[PoolAccount]:
        async with self.db.session() as session:
            result = await session.execute(
                select(PoolAccount).where(PoolAccount.is_online == True).order_by(PoolAccount.id)  # noqa: E712
            )
            return list(result.scalars().all())

    async def acquire_token(self, tier: Union[BookingTier, str, None] = None) -> Optional[TokenLease]:
        """
        Pick a token from an online, tier-eligible account.

        Accounts whose stored cipher is empty or fails to decrypt are skipped.
        Returns None when nothing usable is left; never blocks.
        """
        candidates = [it for it in await self.list_online_accounts() if can_use_tier(it, tier)]
        if not candidates:
            logger.info("token_unavailable", tier=_normalize_tier(tier), reason="no_eligible_account")
            return None

        self._rng.shuffle(candidates)
        for account in candidates:
            if not account.login_token_cipher:
                continue
            try:
                token = self._decrypt(account.login_token_cipher)
            except Exception as e:
                logger.warning("pool_token_decrypt_failed", account_id=account.id, error=type(e).__name__)
                continue
            if token:
                return TokenLease(
                    token=token,
                    source="pool-account",
                    account_id=account.id,
                    account_phone=account.phone,
                )

        logger.info("token_unavailable", tier=_normalize_tier(tier), reason="no_decryptable_account")
        return None

    async def acquire_proxy(self, proxy_type: Union[ProxyType, str, None] = None) -> Optional[ProxyNode]:
        """
        Round-robin over ONLINE proxies.

        A preferred type narrows the candidates when any node of that type is
        online; otherwise the full online set is used.
        """
        async with self.db.session() as session:
            result = await session.execute(
                select(ProxyNode).where(ProxyNode.status == ProxyStatus.ONLINE).order_by(ProxyNode.id)
            )
            rows = list(result.scalars().all())
        if not rows:
            logger.info("proxy_unavailable", proxy_type=str(proxy_type) if proxy_type else None)
            return None

        preferred = None
        if proxy_type:
            preferred = proxy_type.value if isinstance(proxy_type, ProxyType) else str(proxy_type).upper()
        candidates = [it for it in rows if ProxyType(it.type).value == preferred] if preferred else rows
        pool = candidates or rows
        index = self.cursor.next_index(preferred or "ALL", len(pool))
        return pool[index]

    async def mark_health(
        self,
        proxy_id: str,
        status: Union[ProxyStatus, str],
        location: Optional[str] = None,
    ) -> ProxyNode:
        """
        Record a health check result.

        OFFLINE increments fail_count, ONLINE resets it, LATENCY leaves it.
        An unrecognised status keeps the node's current status.
        """
        async with self.db.session() as session:
            node = await session.get(ProxyNode, proxy_id)
            if node is None:
                raise NotFound("proxy node", proxy_id)

            try:
                next_status = status if isinstance(status, ProxyStatus) else ProxyStatus(str(status or "").upper())
            except ValueError:
                next_status = ProxyStatus(node.status)

            if next_status == ProxyStatus.OFFLINE:
                node.fail_count = (node.fail_count or 0) + 1
            elif next_status == ProxyStatus.ONLINE:
                node.fail_count = 0
            node.status = next_status
            if location is not None:
                node.location = location.strip()
            node.last_checked = utcnow()

            session.add(node)
            await session.commit()
            await session.refresh(node)

        logger.info("proxy_health_marked", proxy_id=proxy_id, status=next_status.value, fail_count=node.fail_count)
        return node
