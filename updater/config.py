"""Environment-backed startup settings for the updater service."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Tuple

DEFAULT_PORT = 8765
DEFAULT_WORKSPACE = "/workspace"
DEFAULT_MAX_BODY_BYTES = 1024 * 1024
DEFAULT_CANCEL_GRACE_S = 10.0

log = logging.getLogger("updater.config")


@dataclass(frozen=True)
class UpdaterSettings:
    """Startup parameters consumed by the orchestrator.

    Attributes:
        host: Listen address for the HTTP server.
        port: Listen port for the HTTP server.
        token: Shared secret expected in ``X-Updater-Token``; empty disables auth.
        workspace: Deployment root, used as the pipeline working directory.
        update_script: Path of the external update pipeline script.
        shell: Interpreter used to run ``update_script``.
        log_dir: Directory holding the per-job log and metadata files.
        timeout_s: Wall-clock pipeline timeout in seconds; ``None`` disables it.
        cancel_grace_s: Delay between SIGTERM and SIGKILL when stopping a job.
        allowed_options: Extra option names callers may pass to the pipeline.
        max_body_bytes: Request body cap for the Control API.
        log_level: Orchestrator log level name.
    """

    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    token: str = ""
    workspace: Path = Path(DEFAULT_WORKSPACE)
    update_script: Path = Path(DEFAULT_WORKSPACE) / "scripts" / "update-frontend.sh"
    shell: str = "bash"
    log_dir: Path = Path(DEFAULT_WORKSPACE) / ".update" / "logs"
    timeout_s: Optional[float] = None
    cancel_grace_s: float = DEFAULT_CANCEL_GRACE_S
    allowed_options: Tuple[str, ...] = ()
    max_body_bytes: int = DEFAULT_MAX_BODY_BYTES
    log_level: str = "INFO"

    @property
    def auth_enabled(self) -> bool:
        return bool(self.token)


def _int_env(env: Mapping[str, str], name: str, default: int) -> int:
    raw = str(env.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        log.warning("Ignoring non-integer %s=%r; using %s", name, raw, default)
        return default


def _float_env(env: Mapping[str, str], name: str, default: float) -> float:
    raw = str(env.get(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        log.warning("Ignoring non-numeric %s=%r; using %s", name, raw, default)
        return default


def load_settings(environ: Optional[Mapping[str, str]] = None) -> UpdaterSettings:
    """Build settings from environment variables.

    ``UPDATE_SCRIPT`` and ``UPDATE_LOG_DIR`` default to locations under
    ``WORKSPACE``, matching the layout the deployment scripts expect.
    """
    env = os.environ if environ is None else environ

    workspace = Path(str(env.get("WORKSPACE") or DEFAULT_WORKSPACE)).expanduser()
    script_raw = str(env.get("UPDATE_SCRIPT") or "").strip()
    update_script = Path(script_raw).expanduser() if script_raw else workspace / "scripts" / "update-frontend.sh"
    log_dir_raw = str(env.get("UPDATE_LOG_DIR") or "").strip()
    log_dir = Path(log_dir_raw).expanduser() if log_dir_raw else workspace / ".update" / "logs"

    timeout_s = _float_env(env, "UPDATE_TIMEOUT_S", 0.0)
    max_body_bytes = _int_env(env, "UPDATE_MAX_BODY_BYTES", DEFAULT_MAX_BODY_BYTES)

    return UpdaterSettings(
        host=str(env.get("HOST") or "0.0.0.0").strip(),
        port=_int_env(env, "PORT", DEFAULT_PORT),
        token=str(env.get("UPDATER_TOKEN") or ""),
        workspace=workspace,
        update_script=update_script,
        shell=str(env.get("UPDATE_SHELL") or "bash").strip() or "bash",
        log_dir=log_dir,
        timeout_s=timeout_s if timeout_s > 0 else None,
        cancel_grace_s=max(0.0, _float_env(env, "UPDATE_CANCEL_GRACE_S", DEFAULT_CANCEL_GRACE_S)),
        allowed_options=tuple(
            name.strip() for name in str(env.get("UPDATE_ALLOWED_OPTIONS") or "").split(",") if name.strip()
        ),
        max_body_bytes=max_body_bytes if max_body_bytes > 0 else DEFAULT_MAX_BODY_BYTES,
        log_level=str(env.get("LOG_LEVEL") or "INFO").strip().upper() or "INFO",
    )


__all__ = ["UpdaterSettings", "load_settings"]
