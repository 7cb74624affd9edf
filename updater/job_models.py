"""Job record shared by the store, the runner, and the manager."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

STATE_QUEUED = "queued"
STATE_RUNNING = "running"
STATE_SUCCEEDED = "succeeded"
STATE_FAILED = "failed"
STATE_CANCELLED = "cancelled"

JOB_STATES = (STATE_QUEUED, STATE_RUNNING, STATE_SUCCEEDED, STATE_FAILED, STATE_CANCELLED)
ACTIVE_STATES = {STATE_QUEUED, STATE_RUNNING}
TERMINAL_STATES = {STATE_SUCCEEDED, STATE_FAILED, STATE_CANCELLED}

JOB_ID_RE = re.compile(r"^[0-9]{1,20}$")


def utcnow_iso() -> str:
    """Return ISO UTC timestamp used across job payloads and log markers."""
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def is_valid_job_id(value: Any) -> bool:
    """Return whether ``value`` has the decimal shape of a job id."""
    return isinstance(value, str) and bool(JOB_ID_RE.match(value))


def is_terminal_state(state: Optional[str]) -> bool:
    return str(state or "").strip().lower() in TERMINAL_STATES


@dataclass
class Job:
    """Mutable state for one invocation of the update pipeline."""

    id: str
    log_path: str
    state: str = STATE_QUEUED
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    options: Dict[str, Any] = field(default_factory=dict)
    exit_code: Optional[int] = None
    pid: Optional[int] = None
    message: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_STATES

    def handle(self) -> Dict[str, Any]:
        """Return the short identity used by trigger and conflict responses."""
        return {"id": self.id, "logfile": self.log_path, "state": self.state}

    def to_dict(self) -> Dict[str, Any]:
        """Return a JSON-serializable snapshot."""
        return {
            "id": self.id,
            "state": self.state,
            "startedAt": self.started_at,
            "endedAt": self.ended_at,
            "logfile": self.log_path,
            "options": dict(self.options),
            "exitCode": self.exit_code,
            "pid": self.pid,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Job":
        """Rebuild a job from a persisted snapshot."""
        state = str(payload.get("state") or STATE_FAILED)
        if state not in JOB_STATES:
            state = STATE_FAILED
        exit_code = payload.get("exitCode")
        pid = payload.get("pid")
        options = payload.get("options")
        return cls(
            id=str(payload["id"]),
            log_path=str(payload.get("logfile") or ""),
            state=state,
            started_at=payload.get("startedAt"),
            ended_at=payload.get("endedAt"),
            options=dict(options) if isinstance(options, Mapping) else {},
            exit_code=int(exit_code) if exit_code is not None else None,
            pid=int(pid) if pid is not None else None,
            message=str(payload.get("message") or ""),
        )


@dataclass(frozen=True)
class LogEntry:
    """One job log as seen by a directory scan."""

    id: str
    size_bytes: int
    updated_at: str


@dataclass(frozen=True)
class JobSummary:
    """Metadata-only row returned by the job listing."""

    id: str
    size_bytes: int
    updated_at: str
    state: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sizeBytes": self.size_bytes,
            "updatedAt": self.updated_at,
            "state": self.state,
        }


__all__ = [
    "ACTIVE_STATES",
    "JOB_ID_RE",
    "JOB_STATES",
    "Job",
    "JobSummary",
    "LogEntry",
    "STATE_CANCELLED",
    "STATE_FAILED",
    "STATE_QUEUED",
    "STATE_RUNNING",
    "STATE_SUCCEEDED",
    "TERMINAL_STATES",
    "is_terminal_state",
    "is_valid_job_id",
    "utcnow_iso",
]
