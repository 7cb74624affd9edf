"""Typed error taxonomy for the update orchestrator.

Every error that can reach the Control API boundary carries a stable
``code``/``message``/``hint`` triple and the HTTP status it maps to, so
``updater.app`` can shape responses without inspecting exception text.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class UpdaterError(RuntimeError):
    """Base exception containing a typed error payload for API responses."""

    def __init__(
        self,
        *,
        code: str,
        message: str,
        hint: str = "",
        status_code: int = 500,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.hint = hint
        self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        """Return the wire-format error body."""
        return {"code": self.code, "message": self.message, "hint": self.hint}


class UnauthorizedError(UpdaterError):
    def __init__(self) -> None:
        super().__init__(
            code="auth.unauthorized",
            message="Unauthorized",
            hint="Send the shared secret in the X-Updater-Token header.",
            status_code=401,
        )


class AlreadyInProgressError(UpdaterError):
    """Raised when the single-flight slot is held by another job."""

    def __init__(self, job: Any) -> None:
        super().__init__(
            code="update.already_in_progress",
            message="Update already running",
            hint=f"Wait for active job {job.id} to finish or follow its log.",
            status_code=409,
        )
        self.job = job

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["job"] = self.job.handle()
        return payload


class InvalidOptionsError(UpdaterError):
    def __init__(self, hint: str) -> None:
        super().__init__(
            code="update.invalid_options",
            message="Invalid update options",
            hint=hint,
            status_code=422,
        )


class InvalidRequestError(UpdaterError):
    def __init__(self, hint: str, *, code: str = "update.invalid_body", message: str = "Invalid request body") -> None:
        super().__init__(
            code=code,
            message=message,
            hint=hint,
            status_code=400,
        )


class PayloadTooLargeError(UpdaterError):
    def __init__(self, limit: int) -> None:
        super().__init__(
            code="update.payload_too_large",
            message="Request body exceeds size limit",
            hint=f"Maximum request body size is {limit} bytes.",
            status_code=413,
        )


class InvalidJobIdError(UpdaterError):
    """Raised for ids that do not have the expected numeric shape."""

    def __init__(self, job_id: Any) -> None:
        super().__init__(
            code="jobs.invalid_id",
            message="Job not found",
            hint="Job ids are decimal numbers.",
            status_code=404,
        )
        self.job_id = job_id


class JobNotFoundError(UpdaterError):
    def __init__(self, job_id: str) -> None:
        super().__init__(
            code="jobs.not_found",
            message="Job not found",
            hint=f"No job with id {job_id} is known to this updater.",
            status_code=404,
        )
        self.job_id = job_id


class JobStoreError(UpdaterError):
    """Raised when the job ledger cannot be read or written."""

    def __init__(self, hint: str) -> None:
        super().__init__(
            code="jobs.store_failed",
            message="Job store I/O failed",
            hint=hint or "Check free disk space and permissions of the log directory.",
            status_code=500,
        )


class PipelineSpawnError(UpdaterError):
    """Raised when the update pipeline process cannot be started."""

    def __init__(self, hint: str, *, exit_code: int, cause: Optional[BaseException] = None) -> None:
        super().__init__(
            code="pipeline.spawn_failed",
            message="Failed to start update pipeline",
            hint=hint,
            status_code=500,
        )
        self.exit_code = exit_code
        self.cause = cause


__all__ = [
    "AlreadyInProgressError",
    "InvalidJobIdError",
    "InvalidOptionsError",
    "InvalidRequestError",
    "JobNotFoundError",
    "JobStoreError",
    "PayloadTooLargeError",
    "PipelineSpawnError",
    "UnauthorizedError",
    "UpdaterError",
]
