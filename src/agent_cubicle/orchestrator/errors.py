"""Error taxonomy shared by orchestrator components."""

from __future__ import annotations

from agent_cubicle.store.base import StoreUnavailableError


class OrchestratorError(RuntimeError):
    """Base class for orchestrator failures with a machine-readable code."""

    code = "orchestrator_error"
    retryable = False


class ValidationError(OrchestratorError):
    """Malformed request or unknown provider; nothing was enqueued or spawned."""

    code = "validation"


class CapacityError(OrchestratorError):
    """Per-user instance limit reached; the caller may retry later."""

    code = "capacity"
    retryable = True


class InstanceNotFoundError(OrchestratorError):
    code = "instance_not_found"


class InstanceStateError(OrchestratorError):
    """Instance exists but is not in the status the operation requires."""

    code = "instance_state"


class ProcessError(OrchestratorError):
    """Spawn failure, crash, or readiness timeout of an agent process."""

    code = "process_error"


class TaskTimeoutError(OrchestratorError):
    code = "timeout"

    def __init__(self, seconds: float) -> None:
        super().__init__(f"Task timed out after {seconds:g}s")
        self.seconds = seconds


class ResponseTimeoutError(OrchestratorError):
    """No human reply arrived before the notification expired.

    Does not fail the task; what to do with a task whose prompt went
    unanswered is decided above the orchestrator core.
    """

    code = "response_timeout"


class NotificationNotFoundError(OrchestratorError):
    code = "notification_not_found"


class NotificationAccessError(OrchestratorError):
    code = "notification_access"


__all__ = [
    "CapacityError",
    "InstanceNotFoundError",
    "InstanceStateError",
    "NotificationAccessError",
    "NotificationNotFoundError",
    "OrchestratorError",
    "ProcessError",
    "ResponseTimeoutError",
    "StoreUnavailableError",
    "TaskTimeoutError",
    "ValidationError",
]
