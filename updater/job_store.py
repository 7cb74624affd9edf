"""Filesystem ledger for update jobs.

Each job owns two files in the log directory:

- ``<id>.log``  append-only combined pipeline output, never rewritten;
- ``<id>.json`` job metadata snapshot, replaced atomically on every change.

The directory is the source of truth, so job history and in-flight logs
survive an orchestrator restart. A missing directory simply means "no jobs"
and is created on first write.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Dict, Iterator, List, Optional, Union

from updater.errors import InvalidJobIdError, JobNotFoundError, JobStoreError
from updater.job_models import Job, LogEntry, is_valid_job_id

DEFAULT_TAIL_LINES = 500
MAX_TAIL_LINES = 5000
LOG_SUFFIX = ".log"
META_SUFFIX = ".json"


class JobStore:
    """Append-only log files plus JSON metadata, one pair per job."""

    def __init__(self, root: Path, *, logger: Optional[logging.Logger] = None) -> None:
        self.root = Path(root)
        self._log = logger or logging.getLogger("updater.store")
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------
    def log_path(self, job_id: str) -> Path:
        """Return ``<root>/<id>.log`` after validating the id shape."""
        return self.root / f"{self._checked_id(job_id)}{LOG_SUFFIX}"

    def meta_path(self, job_id: str) -> Path:
        return self.root / f"{self._checked_id(job_id)}{META_SUFFIX}"

    @staticmethod
    def _checked_id(job_id: str) -> str:
        if not is_valid_job_id(job_id):
            raise InvalidJobIdError(job_id)
        return job_id

    def _lock_for(self, job_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(job_id)
            if lock is None:
                lock = self._locks[job_id] = threading.Lock()
            return lock

    def release(self, job_id: str) -> None:
        """Forget the append lock of a finished job; a later append recreates it."""
        with self._locks_guard:
            self._locks.pop(job_id, None)

    def ensure_root(self) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise JobStoreError(f"Cannot create log directory {self.root}: {exc}") from exc

    # ------------------------------------------------------------------
    # Logs
    # ------------------------------------------------------------------
    def create_log(self, job_id: str) -> Path:
        """Create an empty log for a new job; fails if one already exists."""
        path = self.log_path(job_id)
        self.ensure_root()
        try:
            with path.open("xb"):
                pass
        except FileExistsError as exc:
            raise JobStoreError(f"Log for job {job_id} already exists") from exc
        except OSError as exc:
            raise JobStoreError(f"Cannot create {path}: {exc}") from exc
        return path

    def append(self, job_id: str, data: Union[bytes, str]) -> None:
        """Append ``data`` to the job log, creating the file on first write."""
        path = self.log_path(job_id)
        payload = data.encode("utf-8") if isinstance(data, str) else bytes(data)
        with self._lock_for(job_id):
            try:
                self.ensure_root()
                with path.open("ab") as handle:
                    handle.write(payload)
            except OSError as exc:
                raise JobStoreError(f"Cannot append to {path}: {exc}") from exc

    def open_log(self, job_id: str) -> BinaryIO:
        """Return an append-mode handle for the pipeline process output."""
        path = self.log_path(job_id)
        try:
            self.ensure_root()
            return path.open("ab")
        except OSError as exc:
            raise JobStoreError(f"Cannot open {path}: {exc}") from exc

    def tail(self, job_id: str, max_lines: Optional[int] = DEFAULT_TAIL_LINES) -> List[str]:
        """Return at most ``min(max_lines, MAX_TAIL_LINES)`` trailing log lines.

        ``None`` means the default of 500; zero or a negative count returns
        no lines but still checks that the log exists.

        Raises:
            JobNotFoundError: if ``job_id`` is malformed or has no log.
            JobStoreError: if the log exists but cannot be read.
        """
        try:
            path = self.log_path(job_id)
        except InvalidJobIdError as exc:
            raise JobNotFoundError(str(job_id)) from exc

        limit = DEFAULT_TAIL_LINES if max_lines is None else max(0, int(max_lines))
        limit = min(limit, MAX_TAIL_LINES)

        try:
            with path.open("rb") as handle:
                lines = deque(handle, maxlen=limit)
        except FileNotFoundError as exc:
            raise JobNotFoundError(job_id) from exc
        except OSError as exc:
            raise JobStoreError(f"Cannot read {path}: {exc}") from exc
        return [line.decode("utf-8", errors="replace").rstrip("\r\n") for line in lines]

    def list(self) -> List[LogEntry]:
        """Enumerate job logs in the directory, newest id first."""
        if not self.root.is_dir():
            return []
        entries: List[LogEntry] = []
        try:
            candidates = list(self.root.iterdir())
        except OSError as exc:
            raise JobStoreError(f"Cannot list {self.root}: {exc}") from exc
        for path in candidates:
            if path.suffix != LOG_SUFFIX or not is_valid_job_id(path.stem):
                continue
            try:
                stat = path.stat()
            except FileNotFoundError:
                continue
            updated = datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc)
            entries.append(
                LogEntry(
                    id=path.stem,
                    size_bytes=int(stat.st_size),
                    updated_at=updated.replace(microsecond=0).isoformat().replace("+00:00", "Z"),
                )
            )
        entries.sort(key=lambda entry: int(entry.id), reverse=True)
        return entries

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------
    def save_meta(self, job: Job) -> None:
        """Write the job snapshot via a temporary file and atomic replace."""
        path = self.meta_path(job.id)
        tmp = path.with_suffix(".tmp")
        try:
            self.ensure_root()
            tmp.write_text(json.dumps(job.to_dict(), indent=2, sort_keys=True), encoding="utf-8")
            tmp.replace(path)
        except OSError as exc:
            raise JobStoreError(f"Cannot write {path}: {exc}") from exc

    def load_meta(self, job_id: str) -> Optional[Job]:
        """Return the persisted job or ``None`` when no readable snapshot exists."""
        path = self.meta_path(job_id)
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            self._log.warning("Ignoring unreadable job metadata %s", path)
            return None
        if not isinstance(payload, dict) or str(payload.get("id")) != job_id:
            self._log.warning("Ignoring job metadata with mismatched id %s", path)
            return None
        return Job.from_dict(payload)

    def iter_meta(self) -> Iterator[Job]:
        """Yield every readable persisted job, oldest id first."""
        if not self.root.is_dir():
            return
        ids = sorted(
            (path.stem for path in self.root.glob(f"*{META_SUFFIX}") if is_valid_job_id(path.stem)),
            key=int,
        )
        for job_id in ids:
            job = self.load_meta(job_id)
            if job is not None:
                yield job

    def max_job_id(self) -> int:
        """Return the highest job id present on disk, or ``0``."""
        if not self.root.is_dir():
            return 0
        highest = 0
        for path in self.root.iterdir():
            if path.suffix in (LOG_SUFFIX, META_SUFFIX) and is_valid_job_id(path.stem):
                highest = max(highest, int(path.stem))
        return highest


__all__ = ["DEFAULT_TAIL_LINES", "JobStore", "MAX_TAIL_LINES"]
