"""Typed failures raised by the updater client.

The service answers errors as ``{"code", "message", "hint"}`` (a 409 conflict
adds ``job``). Routing errors produced by FastAPI itself carry ``detail``
instead, and proxies in front of the updater may answer with plain text.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

CONFLICT_CODE = "update.already_in_progress"


class ApiError(RuntimeError):
    """Failure reported by, or while reaching, the updater service."""

    def __init__(
        self,
        message: str,
        *,
        status: Optional[int] = None,
        code: Optional[str] = None,
        hint: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        context: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.code = code
        self.hint = hint
        self.payload = payload or {}
        self.context = context


class ApiClientError(ApiError):
    """HTTP 4xx from the updater; ``code`` is the service error code."""

    @property
    def is_conflict(self) -> bool:
        return self.code == CONFLICT_CODE

    @property
    def active_job_id(self) -> Optional[str]:
        """Id of the in-flight job named by a single-flight conflict."""
        job = self.payload.get("job")
        if isinstance(job, dict) and job.get("id"):
            return str(job["id"])
        return None


class ApiServerError(ApiError):
    """HTTP 5xx from the updater, e.g. ``jobs.store_failed``."""


class ApiTimeoutError(ApiError):
    """Timeout or connection failure before any answer arrived."""

    def __init__(self, message: str, *, context: Optional[str] = None) -> None:
        super().__init__(message, context=context)


def _text(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def read_error_body(resp: Any) -> Dict[str, Any]:
    """Return the error object of ``resp``, wrapping non-JSON bodies as ``message``."""
    try:
        payload = resp.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        return payload
    text = _text(getattr(resp, "text", ""))
    return {"message": text[:400]} if text else {}


def error_from_response(resp: Any, ctx: str) -> ApiError:
    """Map a non-2xx response to the matching ``ApiError`` subclass."""
    status = int(resp.status_code)
    body = read_error_body(resp)
    detail = _text(body.get("message")) or _text(body.get("detail"))
    message = f"{ctx}: {detail} (HTTP {status})" if detail else f"{ctx}: HTTP {status}"
    fields: Dict[str, Any] = {
        "status": status,
        "code": _text(body.get("code")),
        "hint": _text(body.get("hint")),
        "payload": body,
        "context": ctx,
    }
    if 400 <= status < 500:
        return ApiClientError(message, **fields)
    if 500 <= status < 600:
        return ApiServerError(message, **fields)
    return ApiError(message, **fields)


__all__ = [
    "ApiClientError",
    "ApiError",
    "ApiServerError",
    "ApiTimeoutError",
    "CONFLICT_CODE",
    "error_from_response",
    "read_error_body",
]
