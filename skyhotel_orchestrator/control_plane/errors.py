"""
Task Platform Error Taxonomy

Every failure a job can end with. Workers read ``retryable`` to decide
between scheduling the next attempt and failing the job for good:

- Non-retryable: configuration/programming errors and bad payloads
  (ModuleDisabled, ModuleNotImplemented, NotFound, InvalidPayload)
- Retryable: transient conditions (ResourceUnavailable, RemoteStepFailed,
  RemoteTimeout) and any exception the platform does not recognise
"""
from typing import Any, Dict, Optional


class TaskPlatformError(Exception):
    """Base exception for task platform errors."""
    code = "TASK_PLATFORM_ERROR"
    retryable = True

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.context}


class PlatformDisabled(TaskPlatformError):
    """Raised when the broker is unreachable or the task system is turned off."""
    code = "PLATFORM_DISABLED"
    retryable = False

    def __init__(self, message: str = "Task platform is disabled"):
        super().__init__(message)


class ModuleNotFound(TaskPlatformError):
    code = "MODULE_NOT_FOUND"
    retryable = False

    def __init__(self, module_id: str):
        super().__init__(f"module not found: {module_id}", module_id=module_id)
        self.module_id = module_id


class ModuleDisabled(TaskPlatformError):
    code = "MODULE_DISABLED"
    retryable = False

    def __init__(self, module_id: str):
        super().__init__(f"module disabled: {module_id}", module_id=module_id)
        self.module_id = module_id


class ModuleNotImplemented(TaskPlatformError):
    code = "MODULE_NOT_IMPLEMENTED"
    retryable = False

    def __init__(self, module_id: str):
        super().__init__(f"module not implemented: {module_id}", module_id=module_id)
        self.module_id = module_id


class NotFound(TaskPlatformError):
    """A referenced order, order item, job or queue does not exist."""
    code = "NOT_FOUND"
    retryable = False

    def __init__(self, kind: str, identifier: Optional[str]):
        super().__init__(f"{kind} not found: {identifier}", kind=kind, identifier=identifier)
        self.kind = kind
        self.identifier = identifier


class InvalidPayload(TaskPlatformError):
    """The job payload or the record it points at cannot be executed as-is."""
    code = "INVALID_PAYLOAD"
    retryable = False


class ResourceUnavailable(TaskPlatformError):
    """No eligible token or proxy could be acquired."""
    code = "RESOURCE_UNAVAILABLE"
    retryable = True

    def __init__(self, resource: str, message: Optional[str] = None):
        super().__init__(message or f"no {resource} available", resource=resource)
        self.resource = resource


class RemoteStepFailed(TaskPlatformError):
    """The remote booking API answered with a non-success status or code."""
    code = "REMOTE_STEP_FAILED"
    retryable = True

    def __init__(
        self,
        step: str,
        message: str,
        http_status: Optional[int] = None,
        remote_code: Optional[Any] = None,
    ):
        super().__init__(
            f"{step} failed: {message} (http={http_status}, code={remote_code})",
            step=step,
            http_status=http_status,
            remote_code=remote_code,
            remote_message=message,
        )
        self.step = step
        self.http_status = http_status
        self.remote_code = remote_code
        self.remote_message = message


class RemoteTimeout(TaskPlatformError):
    """A remote call exceeded its time bound."""
    code = "REMOTE_TIMEOUT"
    retryable = True

    def __init__(self, step: str, timeout: float):
        super().__init__(f"{step} timed out after {timeout:g}s", step=step, timeout=timeout)
        self.step = step
        self.timeout = timeout


def is_retryable(exc: BaseException) -> bool:
    """Unknown exceptions are treated as transient."""
    return bool(getattr(exc, "retryable", True))
