"""
File-backed job store.

One data directory holds:

    jobs.json     ordered list of job records
    jobs.lock     lock marker; guarded with fcntl.flock
    workers.json  liveness record of the running worker pool
    config.json   tunables (see config.py)

Every read-modify-write runs inside ``JobStore.locked()``. The lock is a
single ``flock(LOCK_EX | LOCK_NB)`` call, so there is no gap between seeing
the lock free and owning it, and the kernel drops it if the holder dies.
Each acquisition opens its own file description, which makes threads of one
process exclude each other too.

Writes go to a temp file in the same directory and are moved into place with
``os.replace``, so ``jobs.json`` is always either the old or the new version.

The whole collection is rewritten on every mutation. That is fine for a few
thousand jobs; beyond that this is the ceiling.
"""
import fcntl
import json
import logging
import os
import tempfile
import threading
import time
from contextlib import contextmanager
from dataclasses import fields, replace
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .errors import DuplicateId, LockTimeout, StorageCorruption
from .models import COMPLETED, ELIGIBLE_STATES, Job, JobState, PoolInfo
from .utils import advance_timestamp, parse_iso, utc_now

logger = logging.getLogger(__name__)

DEFAULT_DATA_DIR = "./data"
JOBS_FILE = "jobs.json"
LOCK_FILE = "jobs.lock"
POOL_FILE = "workers.json"

DEFAULT_LOCK_TIMEOUT = 5.0
LOCK_POLL_INTERVAL = 0.01

_JOB_FIELDS = frozenset(f.name for f in fields(Job))


def resolve_data_dir(data_dir: Optional[str] = None) -> Path:
    return Path(data_dir or os.environ.get("QUEUECTL_DATA_DIR", DEFAULT_DATA_DIR)).resolve()


def atomic_json_write(path: Path, payload: Any) -> None:
    """Write `payload` as JSON to `path` via temp file + fsync + os.replace."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def load_json(path: Path, default: Any) -> Any:
    """Load JSON from `path`; `default` if the file does not exist."""
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return default
    try:
        return json.loads(raw)
    except ValueError as e:
        raise StorageCorruption(f"{path} is not valid JSON: {e}")


class JobStore:
    def __init__(self, data_dir: Optional[str] = None, lock_timeout: float = DEFAULT_LOCK_TIMEOUT):
        self.data_dir = resolve_data_dir(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.jobs_file = self.data_dir / JOBS_FILE
        self.lock_file = self.data_dir / LOCK_FILE
        self.pool_file = self.data_dir / POOL_FILE
        self.lock_timeout = lock_timeout
        self._local = threading.local()

    # ---------- Locking ----------
    @contextmanager
    def locked(self) -> Iterator[None]:
        """
        Hold the store lock for the duration of the block.

        Re-entrant for the calling thread, so a transition made of several
        store calls still runs as one critical section. While held, the
        loaded collection is cached and reused.
        """
        if getattr(self._local, "depth", 0):
            self._local.depth += 1
            try:
                yield
            finally:
                self._local.depth -= 1
            return

        fd = self._acquire()
        self._local.depth = 1
        self._local.jobs = None
        try:
            yield
        finally:
            self._local.depth = 0
            self._local.jobs = None
            self._release(fd)

    def _acquire(self) -> int:
        fd = os.open(self.lock_file, os.O_RDWR | os.O_CREAT, 0o644)
        deadline = time.monotonic() + self.lock_timeout
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        raise LockTimeout(
                            f"could not lock {self.lock_file} within {self.lock_timeout}s"
                        )
                    time.sleep(LOCK_POLL_INTERVAL)
            os.ftruncate(fd, 0)
            os.write(fd, f"{os.getpid()}\n".encode())
        except BaseException:
            os.close(fd)
            raise
        return fd

    @staticmethod
    def _release(fd: int) -> None:
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    # ---------- Raw collection ----------
    def _load(self) -> List[Job]:
        cached = getattr(self._local, "jobs", None)
        if cached is not None:
            return cached

        raw = load_json(self.jobs_file, [])
        if not isinstance(raw, list):
            raise StorageCorruption(f"{self.jobs_file} must hold a list of jobs")
        jobs = [Job.from_dict(item) for item in raw]
        seen = set()
        for job in jobs:
            if job.id in seen:
                raise StorageCorruption(f"{self.jobs_file} holds job {job.id} twice")
            seen.add(job.id)

        self._local.jobs = jobs
        return jobs

    def _save(self, jobs: List[Job]) -> None:
        atomic_json_write(self.jobs_file, [j.to_dict() for j in jobs])
        self._local.jobs = jobs

    @staticmethod
    def _find(jobs: List[Job], job_id: str) -> Optional[int]:
        for i, job in enumerate(jobs):
            if job.id == job_id:
                return i
        return None

    # ---------- Contract ----------
    def append(self, job: Job) -> None:
        with self.locked():
            jobs = self._load()
            if self._find(jobs, job.id) is not None:
                raise DuplicateId(f"Job '{job.id}' already exists.")
            self._save(jobs + [replace(job)])

    def get(self, job_id: str) -> Optional[Job]:
        with self.locked():
            jobs = self._load()
            idx = self._find(jobs, job_id)
            return replace(jobs[idx]) if idx is not None else None

    def update(self, job_id: str, **changes: Any) -> bool:
        unknown = set(changes) - _JOB_FIELDS
        if unknown:
            raise TypeError(f"unknown job fields: {', '.join(sorted(unknown))}")
        if "state" in changes:
            changes["state"] = JobState(changes["state"])

        with self.locked():
            jobs = self._load()
            idx = self._find(jobs, job_id)
            if idx is None:
                return False
            current = jobs[idx]
            updated = replace(current, **changes)
            updated.updated_at = advance_timestamp(current.updated_at)
            self._save(jobs[:idx] + [updated] + jobs[idx + 1:])
            return True

    def delete(self, job_id: str) -> bool:
        with self.locked():
            jobs = self._load()
            idx = self._find(jobs, job_id)
            if idx is None:
                return False
            self._save(jobs[:idx] + jobs[idx + 1:])
            return True

    def query(self, state: JobState) -> List[Job]:
        state = JobState(state)
        with self.locked():
            return [replace(j) for j in self._load() if j.state is state]

    def all(self) -> List[Job]:
        with self.locked():
            return [replace(j) for j in self._load()]

    def claim_next_eligible(self) -> Optional[Job]:
        """
        Earliest-created job that is pending, or failed with its retry time
        passed. Ties keep file order. Does not change the job; callers mark it
        inside the same ``locked()`` block.
        """
        now = utc_now()
        with self.locked():
            best = None
            for job in self._load():
                if job.state not in ELIGIBLE_STATES:
                    continue
                if job.next_retry_at is not None and parse_iso(job.next_retry_at) > now:
                    continue
                if best is None or job.created_at < best.created_at:
                    best = job
            return replace(best) if best is not None else None

    # ---------- Maintenance ----------
    def counts(self) -> Dict[str, int]:
        out = {s.value: 0 for s in JobState}
        with self.locked():
            for job in self._load():
                out[job.state.value] += 1
        return out

    def cleanup(self, days: float) -> int:
        """Delete completed jobs last updated more than `days` days ago."""
        cutoff = utc_now() - timedelta(days=days)
        with self.locked():
            jobs = self._load()
            kept = [
                j for j in jobs
                if not (j.state is COMPLETED and parse_iso(j.updated_at) < cutoff)
            ]
            removed = len(jobs) - len(kept)
            if removed:
                self._save(kept)
        if removed:
            logger.info("Removed %d completed job(s) older than %s day(s)", removed, days)
        return removed

    # ---------- Pool liveness ----------
    def read_pool(self) -> Optional[PoolInfo]:
        raw = load_json(self.pool_file, None)
        if raw is None:
            return None
        return PoolInfo.from_dict(raw)

    def write_pool(self, info: PoolInfo) -> None:
        atomic_json_write(self.pool_file, info.to_dict())

    def remove_pool(self, pid: Optional[int] = None) -> bool:
        """Remove the pool file; with `pid`, only if that process owns it."""
        with self.locked():
            if pid is not None:
                current = self.read_pool()
                if current is None or current.pid != pid:
                    return False
            try:
                self.pool_file.unlink()
            except FileNotFoundError:
                return False
            return True
