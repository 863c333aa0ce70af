# ============================================================================
# SHARED FIXTURES
# ============================================================================
"""
Shared fixtures for the task platform tests.

Redis is an in-memory fakeredis server per test; the database is a SQLite
file per test (aiosqlite). The remote booking API is an httpx MockTransport.
"""

import random

import httpx
import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fakeredis import FakeAsyncRedis, FakeServer

from factories import FakeBookingApi
from skyhotel_orchestrator.booking.atour_client import AtourClient
from skyhotel_orchestrator.config import PlatformSettings
from skyhotel_orchestrator.control_plane.task_platform import TaskPlatform
from skyhotel_orchestrator.database import Database
from skyhotel_orchestrator.modules import build_registry
from skyhotel_orchestrator.resources.resource_pool import ResourcePool
from skyhotel_orchestrator.resources.token_crypto import PoolTokenCipher


# ============================================================================
# KEYS / SETTINGS
# ============================================================================

@pytest.fixture(scope="session")
def private_key_pem() -> str:
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


@pytest.fixture
def cipher(private_key_pem) -> PoolTokenCipher:
    return PoolTokenCipher(private_key_pem)


@pytest.fixture
def settings(tmp_path, private_key_pem, monkeypatch) -> PlatformSettings:
    monkeypatch.delenv("SKIP_INIT_MODELS", raising=False)
    return PlatformSettings(
        database_url=f"sqlite+aiosqlite:///{tmp_path}/platform.db",
        redis_url="redis://localhost:6379/15",
        task_system_enabled=True,
        worker_poll_interval_seconds=0.01,
        scheduler_tick_seconds=60.0,
        remote_timeout_seconds=2.0,
        atour_order_api_base_url="https://booking.test/atourlife",
        atour_access_token="",
        atour_cookie="",
        pool_token_private_key=private_key_pem,
    )


# ============================================================================
# INFRASTRUCTURE
# ============================================================================

@pytest_asyncio.fixture
async def redis_client():
    client = FakeAsyncRedis(server=FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest_asyncio.fixture
async def db(settings):
    database = Database(settings)
    await database.init_models()
    yield database
    await database.dispose()


# ============================================================================
# REMOTE BOOKING API
# ============================================================================

@pytest.fixture
def booking_api() -> FakeBookingApi:
    return FakeBookingApi()


@pytest.fixture
def atour_client(settings, booking_api) -> AtourClient:
    return AtourClient(settings, transport=httpx.MockTransport(booking_api))


# ============================================================================
# PLATFORM
# ============================================================================

@pytest.fixture
def resource_pool(db, cipher) -> ResourcePool:
    return ResourcePool(db, cipher, rng=random.Random(7))


@pytest_asyncio.fixture
async def platform(settings, redis_client, db, resource_pool, atour_client):
    """Started platform; workers are driven by hand through run_once()."""
    plat = TaskPlatform(
        settings=settings,
        redis_client=redis_client,
        db=db,
        registry=build_registry(),
        resource_pool=resource_pool,
        atour_client=atour_client,
        run_workers=False,
    )
    await plat.start()
    yield plat
    await plat.stop()
