from __future__ import annotations

import sys
import textwrap
from pathlib import Path
from typing import Callable, Optional

import pytest

ROOT_DIR = Path(__file__).resolve().parents[2]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from updater.job_manager import JobManager
from updater.job_store import JobStore
from updater.pipeline_runner import PipelineRunner
from updater.tests.helpers import EXTRA_OPTIONS, SUCCESS_PIPELINE


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    path = tmp_path / "workspace"
    path.mkdir()
    return path


@pytest.fixture
def log_dir(tmp_path: Path) -> Path:
    return tmp_path / "logs"


@pytest.fixture
def make_script(tmp_path: Path) -> Callable[..., Path]:
    def _make(body: str, name: str = "pipeline.py") -> Path:
        path = tmp_path / name
        path.write_text(textwrap.dedent(body).lstrip(), encoding="utf-8")
        return path

    return _make


@pytest.fixture
def store(log_dir: Path) -> JobStore:
    return JobStore(log_dir)


@pytest.fixture
def make_runner(store: JobStore, workspace: Path, make_script):
    def _make(
        body: str = SUCCESS_PIPELINE,
        *,
        shell: Optional[str] = None,
        timeout_s: Optional[float] = None,
        cancel_grace_s: float = 2.0,
        extra_options=EXTRA_OPTIONS,
    ) -> PipelineRunner:
        return PipelineRunner(
            store=store,
            workspace=workspace,
            update_script=make_script(body),
            shell=shell or sys.executable,
            timeout_s=timeout_s,
            cancel_grace_s=cancel_grace_s,
            extra_options=extra_options,
        )

    return _make


@pytest.fixture
def make_manager(store: JobStore, make_runner):
    managers = []

    def _make(body: str = SUCCESS_PIPELINE, **runner_kwargs) -> JobManager:
        manager = JobManager(store=store, runner=make_runner(body, **runner_kwargs))
        managers.append(manager)
        return manager

    yield _make

    for manager in managers:
        active = manager.active_job()
        if active is not None:
            manager.cancel_job(active.id)
