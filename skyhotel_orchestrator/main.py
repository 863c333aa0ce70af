"""
Task Platform API

FastAPI application exposing the task orchestration engine to operators.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from redis.asyncio import Redis

from .booking.atour_client import AtourClient
from .config import PlatformSettings
from .control_plane.errors import (
    InvalidPayload,
    ModuleDisabled,
    ModuleNotFound,
    ModuleNotImplemented,
    NotFound,
    PlatformDisabled,
    TaskPlatformError,
)
from .control_plane.models import ModuleCategory, ProxyStatus
from .control_plane.run_ledger import TaskRunLedger
from .control_plane.task_platform import TaskPlatform
from .database import Database
from .modules import build_registry
from .resources.resource_pool import ResourcePool
from .resources.token_crypto import PoolTokenCipher


def setup_logging() -> None:
    """Configure structured logging."""
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ]
    )
    logging.basicConfig(level=logging.INFO)


setup_logging()
logger = structlog.get_logger(__name__)

ERROR_STATUS = {
    NotFound: status.HTTP_404_NOT_FOUND,
    ModuleNotFound: status.HTTP_404_NOT_FOUND,
    ModuleDisabled: status.HTTP_400_BAD_REQUEST,
    ModuleNotImplemented: status.HTTP_400_BAD_REQUEST,
    InvalidPayload: status.HTTP_400_BAD_REQUEST,
    PlatformDisabled: status.HTTP_503_SERVICE_UNAVAILABLE,
}


class ModulePatch(BaseModel):
    queue_name: Optional[str] = None
    enabled: Optional[bool] = None
    concurrency: Optional[int] = Field(default=None, ge=1)
    attempts: Optional[int] = Field(default=None, ge=1)
    backoff_ms: Optional[int] = Field(default=None, ge=0)
    category: Optional[ModuleCategory] = None
    schedule: Optional[str] = None
    use_proxy: Optional[bool] = None


class RunNowRequest(BaseModel):
    payload: Dict[str, Any] = Field(default_factory=dict)


class ProxyHealthRequest(BaseModel):
    status: ProxyStatus
    location: Optional[str] = None


def build_platform(settings: PlatformSettings, redis_client: Redis, db: Database) -> TaskPlatform:
    """Wire the task platform and its collaborators."""
    resource_pool = ResourcePool(db, PoolTokenCipher(settings.pool_token_private_key))
    return TaskPlatform(
        settings=settings,
        redis_client=redis_client,
        db=db,
        registry=build_registry(),
        resource_pool=resource_pool,
        atour_client=AtourClient(settings),
    )


def create_app(
    settings: Optional[PlatformSettings] = None,
    redis_client: Optional[Redis] = None,
    db: Optional[Database] = None,
    platform: Optional[TaskPlatform] = None,
) -> FastAPI:
    settings = settings or PlatformSettings()
    redis_client = redis_client or Redis.from_url(settings.redis_url, decode_responses=True)
    db = db or Database(settings)
    platform = platform or build_platform(settings, redis_client, db)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        FastAPI lifespan: startup and shutdown.

        - Initialize database tables
        - Start the task platform (queues, workers, scheduler)
        - Cleanup on shutdown
        """
        logger.info("task_platform_api_starting")
        await db.init_models()
        await platform.start()
        logger.info("task_platform_api_ready", enabled=platform.enabled, queues=platform.queue_manager.names())

        yield

        logger.info("task_platform_api_shutting_down")
        await platform.stop()
        await db.dispose()
        await redis_client.aclose()
        logger.info("task_platform_api_stopped")

    app = FastAPI(
        title="SkyHotel Task Platform API",
        description="Task modules, queues, runs and order item execution.",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.platform = platform

    @app.exception_handler(TaskPlatformError)
    async def task_platform_error_handler(request: Request, exc: TaskPlatformError):
        code = ERROR_STATUS.get(type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR)
        return JSONResponse(status_code=code, content=exc.to_dict())

    def get_platform(request: Request) -> TaskPlatform:
        """Dependency to get the platform instance."""
        return request.app.state.platform

    @app.get("/health")
    async def health_check(plat: TaskPlatform = Depends(get_platform)):
        return {
            "status": "healthy",
            "service": "task-platform",
            "taskSystem": "enabled" if plat.enabled else "disabled",
            "queues": plat.queue_manager.names(),
        }

    @app.get("/api/tasks/modules")
    async def list_modules(plat: TaskPlatform = Depends(get_platform)):
        return {"items": [it.model_dump() for it in await plat.load_modules()]}

    @app.patch("/api/tasks/modules/{module_id}")
    async def update_module(module_id: str, patch: ModulePatch, plat: TaskPlatform = Depends(get_platform)):
        module = await plat.update_module(module_id, **patch.model_dump(exclude_unset=True))
        return module.model_dump()

    @app.post("/api/tasks/modules/{module_id}/run-now", status_code=status.HTTP_201_CREATED)
    async def run_module_now(module_id: str, body: RunNowRequest, plat: TaskPlatform = Depends(get_platform)):
        queued = await plat.enqueue(module_id, body.payload, {"source": "manual"})
        return {**queued, "run": TaskRunLedger.serialize(queued["run"])}

    @app.get("/api/tasks/runs")
    async def list_runs(
        moduleId: Optional[str] = None,
        queueName: Optional[str] = None,
        state: Optional[str] = None,
        limit: int = 50,
        plat: TaskPlatform = Depends(get_platform),
    ):
        items = await plat.list_runs(module_id=moduleId, queue_name=queueName, state=state, limit=limit)
        return {"items": items}

    @app.get("/api/tasks/queues")
    async def list_queues(plat: TaskPlatform = Depends(get_platform)):
        return {"items": await plat.list_queues()}

    @app.post("/api/tasks/queues/{queue_name}/pause")
    async def pause_queue(queue_name: str, plat: TaskPlatform = Depends(get_platform)):
        if not await plat.pause_queue(queue_name):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="queue not found")
        return {"ok": True}

    @app.post("/api/tasks/queues/{queue_name}/resume")
    async def resume_queue(queue_name: str, plat: TaskPlatform = Depends(get_platform)):
        if not await plat.resume_queue(queue_name):
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="queue not found")
        return {"ok": True}

    @app.get("/api/tasks/queues/{queue_name}/jobs")
    async def list_jobs(
        queue_name: str,
        status_filter: str = "waiting",
        limit: int = 20,
        plat: TaskPlatform = Depends(get_platform),
    ):
        try:
            items = await plat.list_jobs(queue_name, status_filter, limit)
        except ValueError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
        return {"items": items}

    @app.post("/api/proxies/{proxy_id}/health")
    async def mark_proxy_health(proxy_id: str, body: ProxyHealthRequest, plat: TaskPlatform = Depends(get_platform)):
        node = await plat.resource_pool.mark_health(proxy_id, body.status, location=body.location)
        return node.model_dump()

    @app.post("/api/orders/items/{item_id}/confirm-submit")
    async def confirm_submit(item_id: str, plat: TaskPlatform = Depends(get_platform)):
        outcome = await plat.orders.confirm_submit(item_id, plat)
        task = outcome["task"]
        if isinstance(task, dict):
            task = {**task, "run": TaskRunLedger.serialize(task["run"])}
        elif task is not None:
            task = TaskRunLedger.serialize(task)
        return {"item": outcome["item"].model_dump(), "task": task}

    @app.post("/api/orders/items/{item_id}/cancel")
    async def cancel_item(item_id: str, plat: TaskPlatform = Depends(get_platform)):
        outcome = await plat.orders.request_cancel(item_id, plat)
        task = outcome["task"]
        return {"queued": True, "task": {**task, "run": TaskRunLedger.serialize(task["run"])}}

    return app


# For running directly with python -m
if __name__ == "__main__":
    import uvicorn

    settings = PlatformSettings()
    uvicorn.run(
        "skyhotel_orchestrator.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
    )
