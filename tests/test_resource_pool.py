# ============================================================================
# RESOURCE POOL TESTS
# ============================================================================
"""
Token and proxy acquisition.

Covers:
1. Proxy round-robin over ONLINE nodes, per preferred type with fallback,
   with the cursor shared by concurrent callers
2. Proxy health marking and fail counters
3. Tier eligibility of pool accounts
4. Token selection skipping accounts that cannot be decrypted

Run with:
    pytest tests/test_resource_pool.py -v
"""

import asyncio
import random
from collections import Counter
from concurrent.futures import ThreadPoolExecutor

import pytest

from factories import add_account, add_proxy
from skyhotel_orchestrator.control_plane.errors import NotFound
from skyhotel_orchestrator.control_plane.models import (
    BookingTier,
    PoolAccount,
    ProxyStatus,
    ProxyType,
)
from skyhotel_orchestrator.resources.resource_pool import ProxyCursor, ResourcePool, can_use_tier


# ============================================================================
# PROXIES
# ============================================================================

@pytest.mark.asyncio
async def test_proxy_round_robin_cycles_online_nodes(db, resource_pool):
    for proxy_id in ("proxy-a", "proxy-b", "proxy-c"):
        await add_proxy(db, proxy_id)
    await add_proxy(db, "proxy-d", status=ProxyStatus.OFFLINE)

    picks = [(await resource_pool.acquire_proxy()).id for _ in range(4)]

    assert picks == ["proxy-a", "proxy-b", "proxy-c", "proxy-a"]


@pytest.mark.asyncio
async def test_preferred_type_narrows_candidates(db, resource_pool):
    await add_proxy(db, "proxy-a", type=ProxyType.DYNAMIC)
    await add_proxy(db, "proxy-b", type=ProxyType.STATIC)
    await add_proxy(db, "proxy-c", type=ProxyType.STATIC)

    picks = [(await resource_pool.acquire_proxy(ProxyType.STATIC)).id for _ in range(3)]

    assert picks == ["proxy-b", "proxy-c", "proxy-b"]
    assert resource_pool.cursor.snapshot() == {"STATIC": 3}


@pytest.mark.asyncio
async def test_preferred_type_falls_back_to_all_online(db, resource_pool):
    await add_proxy(db, "proxy-a", type=ProxyType.DYNAMIC)
    await add_proxy(db, "proxy-b", type=ProxyType.DYNAMIC)

    node = await resource_pool.acquire_proxy("static")

    assert node.id == "proxy-a"


@pytest.mark.asyncio
async def test_no_online_proxy_returns_none(db, resource_pool):
    await add_proxy(db, "proxy-a", status=ProxyStatus.OFFLINE)

    assert await resource_pool.acquire_proxy() is None


def test_cursor_spreads_concurrent_callers_evenly():
    cursor = ProxyCursor()
    nodes, rounds = 3, 200

    with ThreadPoolExecutor(max_workers=8) as executor:
        picks = list(executor.map(lambda _: cursor.next_index("ALL", nodes), range(nodes * rounds)))

    assert Counter(picks) == {index: rounds for index in range(nodes)}
    assert cursor.snapshot() == {"ALL": nodes * rounds}


@pytest.mark.asyncio
async def test_concurrent_acquisitions_share_the_cursor(db, resource_pool):
    for proxy_id in ("proxy-a", "proxy-b", "proxy-c"):
        await add_proxy(db, proxy_id)

    nodes = await asyncio.gather(*[resource_pool.acquire_proxy() for _ in range(12)])

    assert Counter(it.id for it in nodes) == {"proxy-a": 4, "proxy-b": 4, "proxy-c": 4}


def test_cursor_rejects_empty_pool():
    with pytest.raises(ValueError):
        ProxyCursor().next_index("ALL", 0)


@pytest.mark.asyncio
async def test_mark_health_tracks_failures(db, resource_pool):
    await add_proxy(db, "proxy-a")

    await resource_pool.mark_health("proxy-a", ProxyStatus.OFFLINE)
    node = await resource_pool.mark_health("proxy-a", "offline")
    assert node.status == ProxyStatus.OFFLINE
    assert node.fail_count == 2

    node = await resource_pool.mark_health("proxy-a", ProxyStatus.LATENCY, location=" Shanghai ")
    assert node.fail_count == 2
    assert node.location == "Shanghai"

    node = await resource_pool.mark_health("proxy-a", ProxyStatus.ONLINE)
    assert node.status == ProxyStatus.ONLINE
    assert node.fail_count == 0


@pytest.mark.asyncio
async def test_mark_health_keeps_status_on_unknown_value(db, resource_pool):
    await add_proxy(db, "proxy-a", status=ProxyStatus.LATENCY)

    node = await resource_pool.mark_health("proxy-a", "EXPLODED")

    assert node.status == ProxyStatus.LATENCY


@pytest.mark.asyncio
async def test_mark_health_unknown_proxy(resource_pool):
    with pytest.raises(NotFound):
        await resource_pool.mark_health("proxy-missing", ProxyStatus.ONLINE)


# ============================================================================
# TIER ELIGIBILITY
# ============================================================================

@pytest.mark.parametrize("account, tier, expected", [
    (PoolAccount(), None, True),
    (PoolAccount(), "", True),
    (PoolAccount(is_new_user=True), BookingTier.NEW_USER, True),
    (PoolAccount(is_new_user=False), BookingTier.NEW_USER, False),
    (PoolAccount(is_platinum=True), "platinum", True),
    (PoolAccount(is_platinum=False), BookingTier.PLATINUM, False),
    (PoolAccount(corporate_agreements=[{"id": "c1"}]), BookingTier.CORPORATE, True),
    (PoolAccount(corporate_agreements=[]), BookingTier.CORPORATE, False),
    (PoolAccount(), "SOMETHING_ELSE", True),
])
def test_can_use_tier(account, tier, expected):
    assert can_use_tier(account, tier) is expected


# ============================================================================
# TOKENS
# ============================================================================

@pytest.mark.asyncio
async def test_token_requires_eligible_online_account(db, cipher, resource_pool):
    await add_account(db, cipher, "offline-token", is_online=False, is_platinum=True)
    await add_account(db, cipher, "regular-token", is_platinum=False)

    assert await resource_pool.acquire_token(BookingTier.PLATINUM) is None

    lease = await resource_pool.acquire_token()
    assert lease.token == "regular-token"
    assert lease.source == "pool-account"


@pytest.mark.asyncio
async def test_token_skips_accounts_that_fail_to_decrypt(db, cipher):
    await add_account(db, cipher, "token-1", phone="1001")
    await add_account(db, None, "not-a-ciphertext", phone="1002")
    await add_account(db, cipher, "token-3", phone="1003")
    await add_account(db, None, None, phone="1004")

    for seed in range(12):
        pool = ResourcePool(db, cipher, rng=random.Random(seed))
        lease = await pool.acquire_token()
        assert lease.token in ("token-1", "token-3")
        assert lease.account_phone in ("1001", "1003")


@pytest.mark.asyncio
async def test_token_none_when_nothing_decrypts(db, cipher, resource_pool):
    await add_account(db, None, "garbage")

    assert await resource_pool.acquire_token() is None
