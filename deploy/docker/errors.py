"""
Error taxonomy of the capture service.

Every error carries the HTTP status it maps to, so the FastAPI layer can turn
it into the response envelope without knowing where it came from.
"""
from typing import Optional


class CaptureServiceError(Exception):
    status_code = 500

    def __init__(self, message: str, task_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.task_id = task_id

    def __str__(self) -> str:
        if self.task_id:
            return f"[{self.task_id}] {self.message}"
        return self.message


# ── client errors (never retried) ────────────────────────────
class ValidationError(CaptureServiceError):
    status_code = 400


class DeviceNotFound(CaptureServiceError):
    status_code = 400


# ── pool ─────────────────────────────────────────────────────
class PoolUnavailable(CaptureServiceError):
    status_code = 503


# ── render time ──────────────────────────────────────────────
class RenderError(CaptureServiceError):
    status_code = 500


class NavigationFailed(RenderError):
    pass


class CaptureFailed(RenderError):
    pass


class DataWaitTimeout(RenderError):
    pass


class TaskFailed(RenderError):
    """Raised once the pool's retry budget for a task is spent."""

    def __init__(self, message: str, task_id: Optional[str] = None,
                 attempts: int = 0, cause: Optional[BaseException] = None):
        super().__init__(message, task_id)
        self.attempts = attempts
        self.cause = cause


NON_RETRYABLE = (ValidationError, DeviceNotFound)
