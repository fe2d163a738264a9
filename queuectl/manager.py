"""
Queue manager: the only code that changes a job's state.

    pending --claim--> processing --success--> completed
    processing --failure, attempts < max_retries--> failed --claim--> processing
    processing --failure, attempts >= max_retries--> dead --dlq retry--> pending

Each transition reads and writes the job inside one ``JobStore.locked()``
block, so no other worker or process can see a half-applied change.
"""
import logging
import uuid
from typing import Dict, List, Optional

from .config import ConfigStore
from .errors import InvalidCommand, InvalidTransition, ValidationError
from .models import COMPLETED, DEAD, FAILED, PENDING, PROCESSING, TRANSITIONS, Job, JobState
from .store import JobStore
from .utils import iso_in_utc_from_seconds_from_now, now_iso

logger = logging.getLogger(__name__)

MAX_COMMAND_LENGTH = 10_000
ERROR_MESSAGE_LIMIT = 2_000
# Keeps next_retry_at inside the datetime range for any base and attempt count.
MAX_BACKOFF_SECONDS = 7 * 24 * 3600


def validate_command(command: str) -> None:
    if not isinstance(command, str) or not command.strip():
        raise InvalidCommand("Command cannot be empty.")
    if len(command) > MAX_COMMAND_LENGTH:
        raise InvalidCommand(f"Command is too long ({len(command)} > {MAX_COMMAND_LENGTH} characters).")


def backoff_delay(base: float, attempts: int) -> float:
    """Seconds to wait before the next try, after `attempts` failures so far."""
    try:
        delay = float(base) ** attempts
    except OverflowError:
        return MAX_BACKOFF_SECONDS
    return min(delay, MAX_BACKOFF_SECONDS)


class QueueManager:
    def __init__(self, store: JobStore, config: ConfigStore):
        self.store = store
        self.config = config

    def _move(self, job: Job, target: JobState, **changes) -> bool:
        """Apply one lifecycle transition; refuses moves TRANSITIONS forbids."""
        if target not in TRANSITIONS[job.state]:
            raise InvalidTransition(f"Job {job.id}: {job.state.value} -> {target.value} is not allowed")
        return self.store.update(job.id, state=target, **changes)

    # ---------- Enqueue ----------
    def enqueue(self, command: str, max_retries: Optional[int] = None) -> Job:
        validate_command(command)
        if max_retries is None:
            max_retries = int(self.config.get("max_retries"))
        elif isinstance(max_retries, bool) or not isinstance(max_retries, int) or max_retries < 0:
            raise ValidationError("max_retries must be a non-negative integer.")

        ts = now_iso()
        job = Job(
            id=str(uuid.uuid4()),
            command=command,
            state=PENDING,
            attempts=0,
            max_retries=max_retries,
            created_at=ts,
            updated_at=ts,
        )
        self.store.append(job)
        logger.info("Enqueued job %s: %s", job.id, command)
        return job

    # ---------- Claim / report ----------
    def claim(self, worker_id: str) -> Optional[Job]:
        """Pick the next eligible job and mark it processing for `worker_id`."""
        with self.store.locked():
            job = self.store.claim_next_eligible()
            if job is None:
                return None
            self._move(job, PROCESSING, worker_id=worker_id, next_retry_at=None)
            return self.store.get(job.id)

    def _owned_processing(self, job_id: str, worker_id: Optional[str]) -> Optional[Job]:
        job = self.store.get(job_id)
        if job is None:
            logger.warning("Job %s not found", job_id)
            return None
        if job.state is not PROCESSING:
            logger.warning("Job %s is %s, not processing; ignoring report", job_id, job.state.value)
            return None
        if worker_id is not None and job.worker_id != worker_id:
            logger.warning(
                "Job %s is held by %s, not %s; ignoring report", job_id, job.worker_id, worker_id
            )
            return None
        return job

    def complete(self, job_id: str, output: Optional[str] = None, worker_id: Optional[str] = None) -> bool:
        with self.store.locked():
            job = self._owned_processing(job_id, worker_id)
            if job is None:
                return False
            return self._move(job, COMPLETED, output=output, worker_id=None)

    def fail(self, job_id: str, error_message: str, worker_id: Optional[str] = None) -> bool:
        """
        Record a failed run. Moves the job to dead once attempts reaches
        max_retries, otherwise schedules a retry at base ** attempts seconds
        from now, counting the failure just recorded.
        """
        error_message = (error_message or "Unknown error")[:ERROR_MESSAGE_LIMIT]
        with self.store.locked():
            job = self._owned_processing(job_id, worker_id)
            if job is None:
                return False

            attempts = job.attempts + 1
            if attempts >= job.max_retries:
                logger.warning(
                    "Job %s failed %d time(s); moving to DLQ: %s", job_id, attempts, error_message
                )
                return self._move(
                    job,
                    DEAD,
                    attempts=attempts,
                    error_message=error_message,
                    next_retry_at=None,
                    worker_id=None,
                )

            delay = backoff_delay(self.config.get("backoff_base"), attempts)
            logger.info(
                "Job %s failed (attempt %d/%d); retrying in %.1fs", job_id, attempts, job.max_retries, delay
            )
            return self._move(
                job,
                FAILED,
                attempts=attempts,
                error_message=error_message,
                next_retry_at=iso_in_utc_from_seconds_from_now(delay),
                worker_id=None,
            )

    # ---------- DLQ / recovery ----------
    def retry_from_dlq(self, job_id: str) -> bool:
        with self.store.locked():
            job = self.store.get(job_id)
            if job is None or job.state is not DEAD:
                return False
            self._move(
                job,
                PENDING,
                attempts=0,
                error_message=None,
                next_retry_at=None,
                worker_id=None,
            )
        logger.info("Re-queued DLQ job %s", job_id)
        return True

    def recover_orphans(self) -> int:
        """Put every processing job back to pending. Returns how many moved."""
        with self.store.locked():
            orphans = self.store.query(PROCESSING)
            for job in orphans:
                logger.warning("Recovering orphaned job %s (was held by %s)", job.id, job.worker_id)
                self._move(job, PENDING, worker_id=None)
        return len(orphans)

    # ---------- Queries ----------
    def get_job(self, job_id: str) -> Optional[Job]:
        return self.store.get(job_id)

    def list_jobs(self, state: Optional[JobState] = None, limit: Optional[int] = None) -> List[Job]:
        """Jobs newest first, optionally filtered by state and truncated."""
        jobs = self.store.query(state) if state else self.store.all()
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs[:limit] if limit is not None else jobs

    def dlq_list(self) -> List[Job]:
        jobs = self.store.query(DEAD)
        jobs.sort(key=lambda j: j.updated_at, reverse=True)
        return jobs

    def stats(self) -> Dict[str, int]:
        return self.store.counts()

    def delete_job(self, job_id: str) -> bool:
        return self.store.delete(job_id)

    def cleanup(self, days: float = 7) -> int:
        if days < 0:
            raise ValidationError("days must be >= 0")
        return self.store.cleanup(days)
