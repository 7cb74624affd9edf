"""Supervision of the external update pipeline process.

The pipeline script owns backup, fetch, rebuild, rolling restart, health check
and rollback. This module only guarantees that:

- allow-listed options reach the script as environment variables,
- stdout and stderr land in the job log interleaved in arrival order,
- the exit status is observed and recorded exactly once.
"""

from __future__ import annotations

import logging
import os
import re
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

from updater.errors import InvalidOptionsError, PipelineSpawnError
from updater.job_models import Job, utcnow_iso
from updater.job_store import JobStore

# Option keys understood by the deployment scripts.
PORT_OPTION_KEYS = ("PROJECT_PORT", "NODE_PORT", "BACKEND_PORT", "DB_PORT")
FORCE_AGENT_OPTION = "forceAgent"
FORCE_AGENT_ENV = "FORCE_ENABLE_AGENT"
ENV_NAME_RE = re.compile(r"^[A-Z_][A-Z0-9_]*$")
# Never accepted as extra options: they change how the shell or loader behaves.
PROTECTED_ENV_NAMES = frozenset(
    {"BASH_ENV", "ENV", "SHELLOPTS", "BASHOPTS", "PS4", "IFS", "PATH", "HOME", "CDPATH", "GLOBIGNORE", "PROMPT_COMMAND"}
)
PROTECTED_ENV_PREFIXES = ("LD_", "DYLD_", "BASH_FUNC_", "PYTHON", "NODE_OPTIONS")

EXIT_COMMAND_NOT_FOUND = 127
EXIT_PERMISSION_DENIED = 126
WAIT_POLL_S = 0.2


@dataclass(frozen=True)
class PipelineOutcome:
    """Terminal observation of one pipeline process."""

    exit_code: int
    timed_out: bool = False
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled


def validate_options(options: Any, extra_keys: Iterable[str] = ()) -> Dict[str, Any]:
    """Normalize caller options against the allow-list.

    ``forceAgent`` and the port keys are always accepted. Any other name must
    appear in ``extra_keys``, the operator-configured ``UPDATE_ALLOWED_OPTIONS``.
    """
    allowed = frozenset(allowed_extra_options(extra_keys))
    if options is None:
        return {}
    if not isinstance(options, Mapping):
        raise InvalidOptionsError("options must be a JSON object.")

    normalized: Dict[str, Any] = {}
    for key, value in options.items():
        name = str(key)
        if name == FORCE_AGENT_OPTION:
            if not isinstance(value, bool):
                raise InvalidOptionsError("forceAgent must be a boolean.")
            normalized[name] = value
            continue
        if name in PORT_OPTION_KEYS:
            if isinstance(value, bool):
                raise InvalidOptionsError(f"{name} must be a port number.")
            try:
                port = int(str(value).strip())
            except ValueError:
                raise InvalidOptionsError(f"{name} must be a port number.") from None
            if not 1 <= port <= 65535:
                raise InvalidOptionsError(f"{name} must be between 1 and 65535.")
            normalized[name] = port
            continue
        if name not in allowed:
            raise InvalidOptionsError(
                f"Unsupported option '{name}'. Allowed: {', '.join(_known_options(allowed))}."
            )
        if value is None or isinstance(value, (dict, list)):
            raise InvalidOptionsError(f"Option '{name}' must be a string, number or boolean.")
        normalized[name] = value
    return normalized


def _known_options(extra: Iterable[str]) -> list[str]:
    return [FORCE_AGENT_OPTION, *PORT_OPTION_KEYS, *sorted(extra)]


def allowed_extra_options(names: Iterable[str], logger: Optional[logging.Logger] = None) -> tuple[str, ...]:
    """Keep configured option names that are valid and not interpreter hooks."""
    log = logger or logging.getLogger("updater.pipeline")
    kept = []
    for raw in names:
        name = str(raw).strip()
        if not name or name in PORT_OPTION_KEYS or name in kept:
            continue
        if not ENV_NAME_RE.match(name) or name in PROTECTED_ENV_NAMES or name.startswith(PROTECTED_ENV_PREFIXES):
            log.warning("Ignoring unsafe allowed option %r", name)
            continue
        kept.append(name)
    return tuple(kept)


def _env_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class PipelineRunner:
    """Spawn the update script and supervise it until exit."""

    def __init__(
        self,
        *,
        store: JobStore,
        workspace: Path,
        update_script: Path,
        shell: str = "bash",
        timeout_s: Optional[float] = None,
        cancel_grace_s: float = 10.0,
        extra_options: Iterable[str] = (),
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.store = store
        self.workspace = Path(workspace)
        self.update_script = Path(update_script)
        self.shell = shell
        self.timeout_s = timeout_s
        self.cancel_grace_s = float(cancel_grace_s)
        self._log = logger or logging.getLogger("updater.pipeline")
        self.extra_options = allowed_extra_options(extra_options, self._log)

    def validate_options(self, options: Any) -> Dict[str, Any]:
        return validate_options(options, self.extra_options)

    def build_env(self, options: Mapping[str, Any]) -> Dict[str, str]:
        """Return the process environment with allow-listed options applied."""
        env = dict(os.environ)
        for key, value in (options or {}).items():
            if key == FORCE_AGENT_OPTION:
                if value:
                    env[FORCE_AGENT_ENV] = "true"
                continue
            if key not in PORT_OPTION_KEYS and key not in self.extra_options:
                self._log.warning("Dropping option %s that is not allowed", key)
                continue
            env[key] = _env_value(value)
        return env

    def command(self) -> list[str]:
        return [self.shell, str(self.update_script)]

    def run(
        self,
        job: Job,
        *,
        cancel_event: Optional[threading.Event] = None,
        on_spawn: Optional[Callable[[subprocess.Popen], None]] = None,
    ) -> PipelineOutcome:
        """Run the pipeline for ``job`` and return its outcome.

        Output streams into the job log while the process runs. The finish
        footer is appended before returning, so the log is complete by the
        time the caller records a terminal state.

        Raises:
            PipelineSpawnError: if the process could not be started. The error
                and footer are already in the log.
        """
        if cancel_event is not None and cancel_event.is_set():
            self.store.append(job.id, "# Cancelled before the pipeline was started.\n")
            outcome = PipelineOutcome(exit_code=-int(signal.SIGTERM), cancelled=True)
            self._write_footer(job, outcome.exit_code)
            return outcome

        process = self._spawn(job)
        if on_spawn is not None:
            on_spawn(process)
        outcome = self._wait(job, process, cancel_event)
        self._write_footer(job, outcome.exit_code)
        return outcome

    def terminate(self, process: subprocess.Popen) -> None:
        """Send SIGTERM to the process group, then SIGKILL after the grace period."""
        if process.poll() is not None:
            return
        self._signal(process, signal.SIGTERM)
        try:
            process.wait(timeout=self.cancel_grace_s)
        except subprocess.TimeoutExpired:
            self._log.warning("Pipeline pid=%s ignored SIGTERM; killing", process.pid)
            self._signal(process, signal.SIGKILL if hasattr(signal, "SIGKILL") else signal.SIGTERM)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _spawn(self, job: Job) -> subprocess.Popen:
        cmd = self.command()
        self.store.append(
            job.id,
            f"# Update job {job.id} started at {utcnow_iso()}\n# Script: {' '.join(cmd)}\n",
        )
        popen_kwargs: Dict[str, Any] = {}
        if os.name == "posix":
            popen_kwargs["start_new_session"] = True
        try:
            with self.store.open_log(job.id) as handle:
                process = subprocess.Popen(
                    cmd,
                    cwd=str(self.workspace),
                    env=self.build_env(job.options),
                    stdin=subprocess.DEVNULL,
                    stdout=handle,
                    stderr=subprocess.STDOUT,
                    **popen_kwargs,
                )
        except OSError as exc:
            exit_code = EXIT_PERMISSION_DENIED if isinstance(exc, PermissionError) else EXIT_COMMAND_NOT_FOUND
            self._log.warning("Failed to start pipeline for job %s: %s", job.id, exc)
            self.store.append(job.id, f"# Failed to start update pipeline: {exc}\n")
            self._write_footer(job, exit_code)
            raise PipelineSpawnError(str(exc), exit_code=exit_code, cause=exc) from exc

        self._log.info("Pipeline for job %s started pid=%s", job.id, process.pid)
        return process

    def _wait(
        self,
        job: Job,
        process: subprocess.Popen,
        cancel_event: Optional[threading.Event],
    ) -> PipelineOutcome:
        deadline = None if not self.timeout_s else time.monotonic() + self.timeout_s
        while True:
            try:
                code = process.wait(timeout=WAIT_POLL_S)
                return PipelineOutcome(exit_code=int(code))
            except subprocess.TimeoutExpired:
                pass

            if cancel_event is not None and cancel_event.is_set():
                self._log.info("Cancelling pipeline for job %s pid=%s", job.id, process.pid)
                self.terminate(process)
                self.store.append(job.id, f"\n# Cancelled by operator at {utcnow_iso()}\n")
                return PipelineOutcome(exit_code=self._reap(process), cancelled=True)

            if deadline is not None and time.monotonic() >= deadline:
                self._log.warning(
                    "Pipeline for job %s exceeded %ss; terminating pid=%s",
                    job.id,
                    self.timeout_s,
                    process.pid,
                )
                self.terminate(process)
                self.store.append(job.id, f"\n# Timed out after {self.timeout_s}s at {utcnow_iso()}\n")
                return PipelineOutcome(exit_code=self._reap(process), timed_out=True)

    @staticmethod
    def _reap(process: subprocess.Popen) -> int:
        code = process.wait()
        return int(code)

    def _signal(self, process: subprocess.Popen, signum: int) -> None:
        try:
            if os.name == "posix":
                os.killpg(process.pid, signum)
            else:
                process.send_signal(signum)
        except ProcessLookupError:
            pass

    def _write_footer(self, job: Job, exit_code: int) -> None:
        self.store.append(job.id, f"\n---\nUpdate finished with code {exit_code}\n")


__all__ = ["PipelineOutcome", "PipelineRunner", "allowed_extra_options", "validate_options"]
