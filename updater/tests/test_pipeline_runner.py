"""Pipeline process supervision tests."""

from __future__ import annotations

import logging
import threading
from pathlib import Path

import pytest

from updater.errors import InvalidOptionsError, PipelineSpawnError
from updater.job_models import Job
from updater.job_store import JobStore
from updater.pipeline_runner import (
    EXIT_COMMAND_NOT_FOUND,
    FORCE_AGENT_ENV,
    PipelineOutcome,
    allowed_extra_options,
    validate_options,
)
from updater.tests.helpers import (
    ENV_PIPELINE,
    EXTRA_OPTIONS,
    FAILING_PIPELINE,
    HANGING_PIPELINE,
    SUCCESS_PIPELINE,
    wait_until,
)


def _job(store: JobStore, job_id: str = "1", **options) -> Job:
    store.create_log(job_id)
    return Job(id=job_id, log_path=str(store.log_path(job_id)), options=validate_options(options, EXTRA_OPTIONS))


def _log_text(store: JobStore, job_id: str = "1") -> str:
    return store.log_path(job_id).read_text(encoding="utf-8")


def test_validate_options_normalizes_known_keys():
    options = validate_options(
        {"forceAgent": True, "PROJECT_PORT": "8080", "DB_PORT": 5432, "CUSTOM_FLAG": "on"},
        extra_keys=["CUSTOM_FLAG"],
    )

    assert options == {"forceAgent": True, "PROJECT_PORT": 8080, "DB_PORT": 5432, "CUSTOM_FLAG": "on"}
    assert validate_options(None) == {}


@pytest.mark.parametrize(
    "options",
    [
        ["forceAgent"],
        {"forceAgent": "yes"},
        {"PROJECT_PORT": "http"},
        {"NODE_PORT": 70000},
        {"BACKEND_PORT": True},
        {"lower_case": "1"},
        {"BAD-NAME": "1"},
        {"CUSTOM_FLAG": "not configured"},
        {"BASH_ENV": "/tmp/hook.sh"},
        {"LD_PRELOAD": "/tmp/hook.so"},
        {"PATH": "/tmp"},
        {"NESTED": {"a": 1}},
        {"EMPTY": None},
    ],
)
def test_validate_options_rejects_unmappable_values(options):
    with pytest.raises(InvalidOptionsError) as exc_info:
        validate_options(options, extra_keys=["NESTED", "EMPTY"])
    assert exc_info.value.status_code == 422


def test_build_env_maps_options(make_runner):
    runner = make_runner()

    env = runner.build_env({"forceAgent": True, "PROJECT_PORT": 8080, "CUSTOM_FLAG": False})

    assert env[FORCE_AGENT_ENV] == "true"
    assert env["PROJECT_PORT"] == "8080"
    assert env["CUSTOM_FLAG"] == "false"
    assert "forceAgent" not in env


def test_configured_options_never_include_shell_or_loader_hooks(caplog: pytest.LogCaptureFixture):
    names = ["RELEASE_CHANNEL", " BASH_ENV", "LD_PRELOAD", "PATH", "PYTHONSTARTUP", "lower", "PROJECT_PORT", "RELEASE_CHANNEL"]

    with caplog.at_level(logging.WARNING, logger="updater.pipeline"):
        assert allowed_extra_options(names) == ("RELEASE_CHANNEL",)
    assert "BASH_ENV" in caplog.text
    with pytest.raises(InvalidOptionsError):
        validate_options({"BASH_ENV": "/tmp/hook.sh"}, extra_keys=["BASH_ENV"])


def test_build_env_drops_names_outside_the_allow_list(make_runner, monkeypatch):
    monkeypatch.delenv("BASH_ENV", raising=False)
    runner = make_runner(extra_options=("RELEASE_CHANNEL", "BASH_ENV"))

    env = runner.build_env({"BASH_ENV": "/tmp/hook.sh", "RELEASE_CHANNEL": "beta", "CUSTOM_FLAG": "x"})

    assert runner.extra_options == ("RELEASE_CHANNEL",)
    assert "BASH_ENV" not in env
    assert env["RELEASE_CHANNEL"] == "beta"
    assert env.get("CUSTOM_FLAG") != "x"


def test_build_env_leaves_agent_flag_unset_when_false(make_runner, monkeypatch):
    monkeypatch.delenv(FORCE_AGENT_ENV, raising=False)
    runner = make_runner()

    assert FORCE_AGENT_ENV not in runner.build_env({"forceAgent": False})


def test_run_success_writes_header_output_and_footer(make_runner, store: JobStore):
    runner = make_runner(SUCCESS_PIPELINE)
    job = _job(store)
    spawned = []

    outcome = runner.run(job, on_spawn=spawned.append)

    assert outcome == PipelineOutcome(exit_code=0)
    assert outcome.succeeded
    assert len(spawned) == 1
    text = _log_text(store)
    assert text.startswith("# Update job 1 started at ")
    assert "[1/6] backup created" in text
    assert "warning: image cache cold" in text
    assert text.index("[2/6] fetched revision") < text.index("warning: image cache cold")
    assert text.index("warning: image cache cold") < text.index("UPDATE_OK")
    assert text.endswith("\n---\nUpdate finished with code 0\n")


def test_run_failure_reports_exit_code(make_runner, store: JobStore):
    runner = make_runner(FAILING_PIPELINE)

    outcome = runner.run(_job(store))

    assert outcome.exit_code == 1
    assert not outcome.succeeded
    text = _log_text(store)
    assert "rolling back to previous backup" in text
    assert text.endswith("Update finished with code 1\n")


def test_run_passes_options_and_workspace(make_runner, store: JobStore, workspace: Path):
    runner = make_runner(ENV_PIPELINE)
    job = _job(store, forceAgent=True, PROJECT_PORT=3000, CUSTOM_FLAG="blue")

    runner.run(job)

    text = _log_text(store)
    assert "FORCE_ENABLE_AGENT=true" in text
    assert "PROJECT_PORT=3000" in text
    assert "CUSTOM_FLAG=blue" in text
    assert f"CWD={workspace.resolve()}" in text


def test_spawn_failure_is_logged_and_raised(make_runner, store: JobStore, tmp_path: Path):
    runner = make_runner(shell=str(tmp_path / "missing-interpreter"))

    with pytest.raises(PipelineSpawnError) as exc_info:
        runner.run(_job(store))

    assert exc_info.value.exit_code == EXIT_COMMAND_NOT_FOUND
    text = _log_text(store)
    assert "# Failed to start update pipeline:" in text
    assert text.endswith(f"Update finished with code {EXIT_COMMAND_NOT_FOUND}\n")


def test_timeout_terminates_pipeline(make_runner, store: JobStore):
    runner = make_runner(HANGING_PIPELINE, timeout_s=0.5, cancel_grace_s=2.0)

    outcome = runner.run(_job(store))

    assert outcome.timed_out
    assert not outcome.succeeded
    assert outcome.exit_code != 0
    text = _log_text(store)
    assert "# Timed out after 0.5s" in text
    assert "Update finished with code" in text.splitlines()[-1]


def test_cancel_event_stops_running_pipeline(make_runner, store: JobStore):
    runner = make_runner(HANGING_PIPELINE, cancel_grace_s=2.0)
    cancel = threading.Event()
    job = _job(store)
    result = {}
    thread = threading.Thread(target=lambda: result.update(outcome=runner.run(job, cancel_event=cancel)))
    thread.start()

    wait_until(lambda: "waiting forever" in _log_text(store))
    cancel.set()
    thread.join(timeout=10)

    assert not thread.is_alive()
    assert result["outcome"].cancelled
    assert "# Cancelled by operator at" in _log_text(store)


def test_cancel_before_spawn_never_starts_process(make_runner, store: JobStore):
    runner = make_runner(SUCCESS_PIPELINE)
    cancel = threading.Event()
    cancel.set()
    spawned = []

    outcome = runner.run(_job(store), cancel_event=cancel, on_spawn=spawned.append)

    assert outcome.cancelled
    assert spawned == []
    text = _log_text(store)
    assert "UPDATE_OK" not in text
    assert "Cancelled before the pipeline was started" in text
