"""REST adapter for the updater Control API.

Used by the dashboard backend to trigger updates and proxy job logs, and by
operators scripting an update from another host.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional

import requests

from updater.client.api_errors import error_from_response
from updater.client.http_client import HttpConfig, RetryingSession
from updater.job_models import JOB_STATES, Job, JobSummary, is_terminal_state, is_valid_job_id


@dataclass(frozen=True)
class UpdateStartResult:
    """Handle returned by an admitted update trigger."""

    job_id: str
    logfile: str
    state: str


class UpdaterRestAdapter:
    """HTTP adapter for ``/update``, ``/jobs*`` and ``/health``."""

    def __init__(
        self,
        base_url: str,
        *,
        token: Optional[str] = None,
        request_timeout_s: int = 10,
        retries: int = 2,
        session: Optional[RetryingSession] = None,
    ) -> None:
        base = str(base_url or "").strip()
        if not base:
            raise ValueError("UpdaterRestAdapter requires a base URL")
        # Accept the legacy form that points at the trigger endpoint itself.
        if base.endswith("/update"):
            base = base[: -len("/update")]
        self.base_url = base.rstrip("/")
        self.cfg = HttpConfig(request_timeout_s=request_timeout_s, retries=retries)
        self.session = session or RetryingSession(token, self.cfg)

    def health(self) -> bool:
        """Return whether ``/health`` answers ``ok``."""
        resp = self.session.get(self._make_url("/health"), timeout=self.cfg.request_timeout_s)
        self._ensure_ok(resp, "health")
        return bool(self._json_dict(resp).get("ok"))

    def trigger_update(
        self,
        *,
        force_agent: bool = False,
        options: Optional[Mapping[str, Any]] = None,
    ) -> UpdateStartResult:
        """POST ``/update`` in asynchronous mode.

        Raises:
            ApiClientError: ``code == "update.already_in_progress"`` when another
                job is running; ``active_job_id`` names it.
        """
        body: Dict[str, Any] = {"async": True}
        merged = dict(options or {})
        if force_agent:
            merged["forceAgent"] = True
        if merged:
            body["options"] = merged
        resp = self.session.post(
            self._make_url("/update"),
            json_body=body,
            headers={"Prefer": "respond-async"},
            timeout=self.cfg.request_timeout_s,
        )
        self._ensure_ok(resp, "trigger_update")
        payload = self._json_dict(resp)
        job = payload.get("job")
        if not payload.get("started") or not isinstance(job, Mapping):
            raise RuntimeError("Invalid update start payload: job missing")
        job_id = str(job.get("id") or "").strip()
        if not is_valid_job_id(job_id):
            raise RuntimeError("Invalid update start payload: job id is invalid")
        return UpdateStartResult(
            job_id=job_id,
            logfile=str(job.get("logfile") or ""),
            state=str(job.get("state") or ""),
        )

    def list_jobs(self) -> List[JobSummary]:
        resp = self.session.get(self._make_url("/jobs"), timeout=self.cfg.request_timeout_s)
        self._ensure_ok(resp, "list_jobs")
        rows = self._json_dict(resp).get("jobs") or []
        summaries: List[JobSummary] = []
        for row in rows:
            if not isinstance(row, Mapping):
                raise RuntimeError("Invalid jobs payload: entry is not an object")
            summaries.append(
                JobSummary(
                    id=str(row.get("id") or ""),
                    size_bytes=int(row.get("sizeBytes") or 0),
                    updated_at=str(row.get("updatedAt") or ""),
                    state=row.get("state"),
                )
            )
        return summaries

    def get_log(self, job_id: str, *, tail: int = 500) -> str:
        """Return the plain-text tail of one job log."""
        key = self._require_id(job_id)
        resp = self.session.get(
            self._make_url(f"/jobs/{key}"),
            params={"tail": int(tail)},
            accept="text/plain",
            timeout=self.cfg.request_timeout_s,
        )
        self._ensure_ok(resp, f"get_log[{key}]")
        return resp.text

    def get_job(self, job_id: str) -> Job:
        key = self._require_id(job_id)
        resp = self.session.get(self._make_url(f"/jobs/{key}/status"), timeout=self.cfg.request_timeout_s)
        self._ensure_ok(resp, f"get_job[{key}]")
        return self._parse_job(self._json_dict(resp))

    def cancel_job(self, job_id: str) -> Job:
        key = self._require_id(job_id)
        resp = self.session.post(
            self._make_url(f"/jobs/{key}/cancel"),
            timeout=self.cfg.request_timeout_s,
        )
        self._ensure_ok(resp, f"cancel_job[{key}]")
        return self._parse_job(self._json_dict(resp))

    def wait_for_terminal(
        self,
        job_id: str,
        *,
        timeout_s: float = 600.0,
        poll_interval_s: float = 2.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> Job:
        """Poll ``/jobs/{id}/status`` until the job reaches a terminal state."""
        deadline = time.monotonic() + timeout_s
        while True:
            job = self.get_job(job_id)
            if is_terminal_state(job.state):
                return job
            if time.monotonic() >= deadline:
                raise TimeoutError(f"Update job {job_id} still {job.state} after {timeout_s}s")
            sleep(poll_interval_s)

    # ------------------------------------------------------------------
    def _make_url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    @staticmethod
    def _require_id(job_id: str) -> str:
        key = str(job_id or "").strip()
        if not is_valid_job_id(key):
            raise ValueError(f"Invalid job id: {job_id!r}")
        return key

    @staticmethod
    def _ensure_ok(resp: requests.Response, ctx: str) -> None:
        """Raise typed adapter errors for non-2xx responses."""
        if not 200 <= resp.status_code < 300:
            raise error_from_response(resp, ctx)

    @staticmethod
    def _json_dict(resp: requests.Response) -> Dict[str, Any]:
        """Parse response JSON and require object payload."""
        try:
            payload = resp.json()
        except Exception:
            snippet = getattr(resp, "text", "")[:400]
            raise RuntimeError(f"Invalid JSON response: {snippet}")
        if not isinstance(payload, dict):
            raise RuntimeError("Invalid JSON response shape: expected object")
        return dict(payload)

    @staticmethod
    def _parse_job(payload: Mapping[str, Any]) -> Job:
        if not is_valid_job_id(str(payload.get("id") or "")):
            raise RuntimeError("Invalid job payload: id missing")
        if payload.get("state") not in JOB_STATES:
            raise RuntimeError("Invalid job payload: state is invalid")
        return Job.from_dict(payload)


__all__ = ["UpdateStartResult", "UpdaterRestAdapter"]
