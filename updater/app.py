# updater/app.py
"""Control API for the deployment updater.

Routes:
    GET  /health                 unauthenticated liveness check
    POST /update                 trigger an update (single-flight)
    GET  /jobs                   list known jobs
    GET  /jobs/{job_id}          plain-text log tail
    GET  /jobs/{job_id}/status   job metadata
    POST /jobs/{job_id}/cancel   stop a queued or running job

When ``UPDATER_TOKEN`` is empty the service runs without authentication. That
mode is meant for trusted networks only and is logged as a warning at startup.
"""

import hmac
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Mapping, Optional

from fastapi import FastAPI, Header, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from starlette.concurrency import run_in_threadpool

from updater.config import load_settings
from updater.errors import (
    InvalidJobIdError,
    InvalidOptionsError,
    InvalidRequestError,
    JobNotFoundError,
    JobStoreError,
    PayloadTooLargeError,
    UnauthorizedError,
    UpdaterError,
)
from updater.job_manager import JobManager
from updater.job_models import is_valid_job_id
from updater.job_store import DEFAULT_TAIL_LINES, JobStore
from updater.pipeline_runner import PipelineRunner

log = logging.getLogger("updater.app")

SETTINGS = load_settings()
JOB_STORE = JobStore(SETTINGS.log_dir)
JOB_MANAGER = JobManager(
    store=JOB_STORE,
    runner=PipelineRunner(
        store=JOB_STORE,
        workspace=SETTINGS.workspace,
        update_script=SETTINGS.update_script,
        shell=SETTINGS.shell,
        timeout_s=SETTINGS.timeout_s,
        cancel_grace_s=SETTINGS.cancel_grace_s,
        extra_options=SETTINGS.allowed_options,
    ),
)

# ---------- Models ----------
class UpdateRequest(BaseModel):
    """Body of POST /update. Unknown top-level keys are legacy options."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    options: Optional[Dict[str, Any]] = Field(None, description="Pass-through options for the pipeline")
    async_: bool = Field(False, alias="async", description="Return 202 with the job handle")


# ---------- Startup ----------
@asynccontextmanager
async def lifespan(app: FastAPI):
    if not SETTINGS.auth_enabled:
        log.warning("UPDATER_TOKEN is not set; update endpoints are unauthenticated")
    log.info(
        "Updater ready workspace=%s script=%s log_dir=%s timeout_s=%s extra_options=%s",
        SETTINGS.workspace,
        SETTINGS.update_script,
        SETTINGS.log_dir,
        SETTINGS.timeout_s,
        list(JOB_MANAGER.runner.extra_options),
    )
    yield


app = FastAPI(title="Deployment Updater API", version="0.1.0", lifespan=lifespan)


@app.exception_handler(UpdaterError)
async def updater_error_handler(request: Request, exc: UpdaterError) -> JSONResponse:
    if exc.status_code >= 500:
        log.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.hint)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    if errors:
        field = ".".join(str(part) for part in errors[0].get("loc", ()))
        hint = f"{field}: {errors[0].get('msg', 'invalid value')}"
    else:
        hint = "Request parameters are invalid."
    wrapped = InvalidRequestError(hint, code="request.invalid_parameters", message="Invalid request parameters")
    return JSONResponse(status_code=wrapped.status_code, content=wrapped.to_dict())


@app.exception_handler(OSError)
async def os_error_handler(request: Request, exc: OSError) -> JSONResponse:
    log.exception("%s %s failed with I/O error", request.method, request.url.path)
    wrapped = JobStoreError(exc.strerror or exc.__class__.__name__)
    return JSONResponse(status_code=wrapped.status_code, content=wrapped.to_dict())


# ---------- Auth Helper ----------
def require_token(x_updater_token: Optional[str]) -> None:
    expected = SETTINGS.token
    if not expected:
        return
    supplied = x_updater_token or ""
    if not hmac.compare_digest(supplied.encode("utf-8"), expected.encode("utf-8")):
        raise UnauthorizedError()


# ---------- Request helpers ----------
async def _read_json_body(request: Request) -> Dict[str, Any]:
    """Read the request body up to the configured cap and parse a JSON object."""
    limit = SETTINGS.max_body_bytes
    declared = request.headers.get("content-length")
    if declared:
        try:
            if int(declared) > limit:
                raise PayloadTooLargeError(limit)
        except ValueError:
            raise InvalidRequestError("Content-Length header is not a number.") from None

    chunks = []
    received = 0
    async for chunk in request.stream():
        received += len(chunk)
        if received > limit:
            raise PayloadTooLargeError(limit)
        chunks.append(chunk)
    raw = b"".join(chunks)
    if not raw.strip():
        return {}
    try:
        payload = json.loads(raw)
    except ValueError as exc:
        raise InvalidRequestError(f"Body is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise InvalidRequestError("Body must be a JSON object.")
    return payload


def _parse_update_request(body: Mapping[str, Any]) -> UpdateRequest:
    try:
        return UpdateRequest.model_validate(body)
    except ValidationError as exc:
        errors = exc.errors()
        field = ".".join(str(part) for part in errors[0]["loc"]) if errors else "body"
        hint = f"{field}: {errors[0]['msg']}" if errors else "Invalid update request."
        raise InvalidOptionsError(hint) from None


def _options_from_request(update: UpdateRequest) -> Dict[str, Any]:
    """Merge legacy top-level option keys with the explicit ``options`` object."""
    options = dict(update.model_extra or {})
    options.update(update.options or {})
    return options


def _wants_async(update: UpdateRequest, prefer: Optional[str]) -> bool:
    return "respond-async" in str(prefer or "").lower() or update.async_


def _checked_job_id(job_id: str) -> str:
    if not is_valid_job_id(job_id):
        raise InvalidJobIdError(job_id)
    return job_id


# ---------- Health ----------
@app.get("/health")
def health():
    return {"ok": True}


# ---------- Update trigger ----------
@app.post("/update")
async def trigger_update(
    request: Request,
    x_updater_token: Optional[str] = Header(None),
    prefer: Optional[str] = Header(None),
):
    """Start the update pipeline unless another job is already in flight.

    Synchronous mode does not wait for the pipeline; it only reports where the
    log is written.
    """
    require_token(x_updater_token)
    update = _parse_update_request(await _read_json_body(request))
    options = _options_from_request(update)
    asynchronous = _wants_async(update, prefer)

    job = await run_in_threadpool(JOB_MANAGER.try_start_job, options)

    if asynchronous:
        return JSONResponse(status_code=202, content={"started": True, "job": job.handle()})
    text = (
        f"# Update job {job.id} started...\n"
        f"# Logs: {job.log_path}\n"
        "# This endpoint is designed for async usage; logs are written to file.\n"
    )
    return PlainTextResponse(text, headers={"X-Job-Id": job.id})


# ---------- Jobs ----------
@app.get("/jobs")
def list_jobs(x_updater_token: Optional[str] = Header(None)):
    require_token(x_updater_token)
    return {"success": True, "jobs": [summary.to_dict() for summary in JOB_MANAGER.list_jobs()]}


@app.get("/jobs/{job_id}", response_class=PlainTextResponse)
def job_log(
    job_id: str,
    tail: int = Query(DEFAULT_TAIL_LINES),
    x_updater_token: Optional[str] = Header(None),
):
    """Return the last ``tail`` lines of a job log (at most 5000)."""
    require_token(x_updater_token)
    key = _checked_job_id(job_id)
    lines = JOB_MANAGER.store.tail(key, tail)
    headers = {}
    try:
        headers["X-Job-State"] = JOB_MANAGER.get_job(key).state
    except JobNotFoundError:
        pass
    text = "\n".join(lines) + "\n" if lines else ""
    return PlainTextResponse(text, headers=headers)


@app.get("/jobs/{job_id}/status")
def job_status(job_id: str, x_updater_token: Optional[str] = Header(None)):
    require_token(x_updater_token)
    return JOB_MANAGER.get_job(_checked_job_id(job_id)).to_dict()


@app.post("/jobs/{job_id}/cancel", status_code=202)
def cancel_job(job_id: str, x_updater_token: Optional[str] = Header(None)):
    """Signal cancellation for a queued or running job."""
    require_token(x_updater_token)
    return JOB_MANAGER.cancel_job(_checked_job_id(job_id)).to_dict()
