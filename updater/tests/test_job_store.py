"""Filesystem ledger tests for job logs and metadata."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from updater.errors import InvalidJobIdError, JobNotFoundError, JobStoreError
from updater.job_models import STATE_RUNNING, Job
from updater.job_store import DEFAULT_TAIL_LINES, MAX_TAIL_LINES, JobStore


def _write_lines(store: JobStore, job_id: str, count: int) -> None:
    store.append(job_id, "".join(f"line {index}\n" for index in range(1, count + 1)))


def test_list_on_missing_directory_is_empty(tmp_path: Path):
    store = JobStore(tmp_path / "never-created")

    assert store.list() == []
    assert store.max_job_id() == 0
    assert list(store.iter_meta()) == []


def test_append_creates_directory_and_preserves_order(store: JobStore, log_dir: Path):
    store.append("100", "first\n")
    store.append("100", b"second\n")

    assert log_dir.is_dir()
    assert (log_dir / "100.log").read_text(encoding="utf-8") == "first\nsecond\n"
    assert store.tail("100") == ["first", "second"]


def test_create_log_refuses_existing_job(store: JobStore):
    store.create_log("7")

    with pytest.raises(JobStoreError) as exc_info:
        store.create_log("7")
    assert exc_info.value.code == "jobs.store_failed"


def test_tail_returns_last_lines_in_order(store: JobStore):
    _write_lines(store, "1", 20)

    assert store.tail("1", 3) == ["line 18", "line 19", "line 20"]


def test_tail_defaults_only_when_limit_is_omitted(store: JobStore):
    _write_lines(store, "1", DEFAULT_TAIL_LINES + 50)

    lines = store.tail("1", None)
    assert len(lines) == DEFAULT_TAIL_LINES
    assert lines[-1] == f"line {DEFAULT_TAIL_LINES + 50}"
    assert len(store.tail("1")) == DEFAULT_TAIL_LINES


@pytest.mark.parametrize("limit", [0, -5])
def test_tail_with_non_positive_limit_returns_nothing(store: JobStore, limit: int):
    _write_lines(store, "1", 1000)

    assert store.tail("1", limit) == []
    with pytest.raises(JobNotFoundError):
        store.tail("2", limit)


def test_tail_is_capped_at_ceiling(store: JobStore):
    _write_lines(store, "1", MAX_TAIL_LINES + 1000)

    lines = store.tail("1", MAX_TAIL_LINES * 4)

    assert len(lines) == MAX_TAIL_LINES
    assert lines[0] == "line 1001"


@pytest.mark.parametrize("job_id", ["", "abc", "../etc/passwd", "12.log", "-1", "1" * 21])
def test_tail_rejects_malformed_ids_as_not_found(store: JobStore, job_id: str):
    with pytest.raises(JobNotFoundError):
        store.tail(job_id)


def test_paths_reject_malformed_ids(store: JobStore):
    with pytest.raises(InvalidJobIdError):
        store.log_path("../../secret")
    with pytest.raises(InvalidJobIdError):
        store.meta_path("1/2")


def test_tail_of_unknown_job_raises_not_found(store: JobStore):
    store.append("1", "x\n")

    with pytest.raises(JobNotFoundError) as exc_info:
        store.tail("2")
    assert exc_info.value.code == "jobs.not_found"


def test_tail_replaces_undecodable_bytes(store: JobStore):
    store.append("5", b"ok \xff\xfe bytes\n")

    assert store.tail("5") == ["ok �� bytes"]


def test_list_is_newest_first_and_skips_foreign_files(store: JobStore, log_dir: Path):
    for job_id in ("9", "1700000000000", "42"):
        store.append(job_id, "x\n")
    (log_dir / "notes.txt").write_text("hello", encoding="utf-8")
    (log_dir / "abc.log").write_text("hello", encoding="utf-8")

    entries = store.list()

    assert [entry.id for entry in entries] == ["1700000000000", "42", "9"]
    assert entries[0].size_bytes == 2
    assert entries[0].updated_at.endswith("Z")


def test_meta_is_replaced_atomically(store: JobStore, log_dir: Path):
    job = Job(id="12", log_path=str(store.log_path("12")), state=STATE_RUNNING, pid=4321)
    store.save_meta(job)

    loaded = store.load_meta("12")

    assert loaded == job
    assert not list(log_dir.glob("*.tmp"))
    assert json.loads((log_dir / "12.json").read_text(encoding="utf-8"))["state"] == "running"


def test_unreadable_meta_is_ignored(store: JobStore, log_dir: Path):
    store.ensure_root()
    (log_dir / "3.json").write_text("{not json", encoding="utf-8")
    (log_dir / "4.json").write_text(json.dumps({"id": "5", "state": "running"}), encoding="utf-8")

    assert store.load_meta("3") is None
    assert store.load_meta("4") is None
    assert list(store.iter_meta()) == []


def test_max_job_id_considers_logs_and_metadata(store: JobStore):
    store.append("10", "x\n")
    store.save_meta(Job(id="25", log_path=str(store.log_path("25"))))

    assert store.max_job_id() == 25
