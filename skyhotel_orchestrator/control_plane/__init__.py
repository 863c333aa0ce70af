"""
Control Plane Core

Core orchestration components: models, queues, workers, scheduler, ledger.
"""

from .models import TaskModule, TaskRun, TaskRunState
from .errors import TaskPlatformError
from .queue_manager import QueueManager, RedisQueue
from .registry import ModuleId, TaskContext, TaskModuleRegistry
from .run_ledger import TaskRunLedger
from .scheduler import Scheduler
from .worker import JobProcessor, WorkerPool
from .task_platform import TaskPlatform

__all__ = [
    "TaskModule",
    "TaskRun",
    "TaskRunState",
    "TaskPlatformError",
    "QueueManager",
    "RedisQueue",
    "ModuleId",
    "TaskContext",
    "TaskModuleRegistry",
    "TaskRunLedger",
    "Scheduler",
    "JobProcessor",
    "WorkerPool",
    "TaskPlatform",
]
