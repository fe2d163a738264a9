import logging
import os
import signal
import threading
import time
from typing import Callable, Dict, List, Optional

from .errors import AlreadyRunning, LockTimeout, ValidationError
from .manager import QueueManager
from .models import CommandResult, Job, PoolInfo
from .runner import execute
from .store import JobStore
from .utils import now_iso

logger = logging.getLogger(__name__)

IDLE = "idle"
BUSY = "busy"
STOPPING = "stopping"

Runner = Callable[[str, float], CommandResult]


def process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class Worker:
    """
    One polling thread. Claims at most one job at a time, runs it, reports
    the outcome, and only then looks for more work.
    """

    def __init__(
        self,
        worker_id: str,
        manager: QueueManager,
        poll_interval: float = 1.0,
        job_timeout: float = 300.0,
        runner: Runner = execute,
    ):
        self.id = worker_id
        self.manager = manager
        self.poll_interval = poll_interval
        self.job_timeout = job_timeout
        self.runner = runner

        self.phase = IDLE
        self.current_job_id: Optional[str] = None
        self.jobs_completed = 0
        self.jobs_failed = 0
        self.errors = 0

        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ---------- Lifecycle ----------
    def start(self) -> None:
        self._thread = threading.Thread(target=self.run, name=self.id, daemon=True)
        self._thread.start()

    def request_stop(self) -> None:
        self._stop.set()
        if self.phase == IDLE:
            self.phase = STOPPING

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def is_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # ---------- Loop ----------
    def run(self) -> None:
        logger.info("Worker %s started", self.id)
        while not self._stop.is_set():
            try:
                worked = self.run_once()
            except LockTimeout as e:
                logger.warning("[%s] Store busy, will retry next poll: %s", self.id, e)
                worked = False
            except Exception:
                self.errors += 1
                logger.exception("[%s] Unexpected error", self.id)
                worked = False

            if not worked:
                self._stop.wait(self.poll_interval)

        self.phase = STOPPING
        logger.info(
            "Worker %s stopped (completed=%d, failed=%d)", self.id, self.jobs_completed, self.jobs_failed
        )

    def run_once(self) -> bool:
        """Claim and process one job. Returns False when nothing was eligible."""
        if self._stop.is_set():
            return False
        job = self.manager.claim(self.id)
        if job is None:
            return False
        self.process(job)
        return True

    def process(self, job: Job) -> None:
        self.phase = BUSY
        self.current_job_id = job.id
        try:
            logger.info("[%s] Executing job %s: %s", self.id, job.id, job.command)
            result = self.runner(job.command, self.job_timeout)

            if result.success:
                if self._report(self.manager.complete, job.id, result.output):
                    self.jobs_completed += 1
                    logger.info("[%s] Job %s completed", self.id, job.id)
            else:
                error = result.error or f"exit_code={result.exit_code}"
                if self._report(self.manager.fail, job.id, error):
                    self.jobs_failed += 1
                    logger.info("[%s] Job %s failed with code %s", self.id, job.id, result.exit_code)
        finally:
            self.current_job_id = None
            self.phase = STOPPING if self._stop.is_set() else IDLE

    def _report(self, report: Callable[..., bool], job_id: str, detail: Optional[str]) -> bool:
        """
        Hand the outcome to the manager once. A LockTimeout propagates to the
        poll loop and the job stays processing until orphan recovery.
        """
        if report(job_id, detail, worker_id=self.id):
            return True
        self.errors += 1
        logger.warning("[%s] Report for job %s was not accepted", self.id, job_id)
        return False

    def snapshot(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "state": self.phase,
            "current_job": self.current_job_id,
            "jobs_completed": self.jobs_completed,
            "jobs_failed": self.jobs_failed,
            "errors": self.errors,
        }


class WorkerPool:
    """
    Runs `count` workers against one data directory.

    The pool file (workers.json) records the owning pid so a second pool on
    the same directory refuses to start.
    """

    def __init__(self, manager: QueueManager, count: int = 1, runner: Runner = execute):
        self.manager = manager
        self.store: JobStore = manager.store
        self.count = count
        self.runner = runner
        self.workers: List[Worker] = []
        self.pid = os.getpid()

        self._stop_requested = threading.Event()
        self._stop_lock = threading.Lock()
        self._stopped = False

    def start(self) -> None:
        if isinstance(self.count, bool) or not isinstance(self.count, int) or self.count < 1:
            raise ValidationError("Worker count must be at least 1")

        cfg = self.manager.config
        self.workers = [
            Worker(
                f"worker-{self.pid}-{i + 1}",
                self.manager,
                poll_interval=float(cfg.get("worker_poll_interval")),
                job_timeout=float(cfg.get("job_timeout")),
                runner=self.runner,
            )
            for i in range(self.count)
        ]

        with self.store.locked():
            current = self.store.read_pool()
            if current is not None:
                if process_alive(current.pid):
                    raise AlreadyRunning(
                        f"Workers are already running (pid {current.pid}). Stop them first."
                    )
                logger.warning("Replacing stale pool file left by pid %s", current.pid)
            self.store.write_pool(
                PoolInfo(pid=self.pid, workers=[w.id for w in self.workers], started_at=now_iso())
            )

        recovered = self.manager.recover_orphans()
        if recovered:
            logger.warning("Reset %d orphaned job(s) from a previous run", recovered)

        for w in self.workers:
            w.start()
        logger.info("Started %d worker(s)", len(self.workers))

    def request_stop(self) -> None:
        """Ask the pool to stop. Safe to call from a signal handler, any number of times."""
        self._stop_requested.set()

    def stop(self) -> None:
        with self._stop_lock:
            if self._stopped:
                return
            self._stopped = True

        self._stop_requested.set()
        logger.info("Stopping workers gracefully...")
        for w in self.workers:
            w.request_stop()

        timeout = float(self.manager.config.get("graceful_shutdown_timeout"))
        deadline = time.monotonic() + timeout
        for w in self.workers:
            w.join(max(0.0, deadline - time.monotonic()))

        for w in self.workers:
            if w.is_alive():
                logger.warning(
                    "Worker %s still busy with job %s after %ss; leaving it for orphan recovery",
                    w.id, w.current_job_id, timeout,
                )

        try:
            self.store.remove_pool(self.pid)
        except LockTimeout as e:
            logger.error("Could not remove pool file: %s", e)
        logger.info("All workers stopped")

    def install_signal_handlers(self) -> None:
        def _handler(signum, frame):
            logger.info("Received signal %s, shutting down gracefully...", signum)
            self.request_stop()

        if threading.current_thread() is not threading.main_thread():
            logger.debug("Not in main thread; signal handlers not installed")
            return
        for sig in (signal.SIGINT, signal.SIGTERM):
            signal.signal(sig, _handler)

    def run_until_stopped(self, check_interval: float = 0.5) -> None:
        """Block until a stop is requested or every worker has exited, then stop."""
        try:
            while not self._stop_requested.wait(check_interval):
                if not any(w.is_alive() for w in self.workers):
                    break
        finally:
            self.stop()

    def snapshot(self) -> List[Dict[str, object]]:
        return [w.snapshot() for w in self.workers]


def read_live_pool(store: JobStore) -> Optional[PoolInfo]:
    """Pool file contents if its owner is still alive, else None."""
    info = store.read_pool()
    if info is None or not process_alive(info.pid):
        return None
    return info


def stop_running_pool(store: JobStore, timeout: float, poll: float = 0.2) -> str:
    """
    Signal the pool that owns `store` to shut down.

    Returns "not_running", "stale" (dead owner, file removed), "stopped",
    or "timeout" (still running after `timeout` seconds).
    """
    info = store.read_pool()
    if info is None:
        return "not_running"
    if not process_alive(info.pid):
        store.remove_pool(info.pid)
        logger.info("Removed stale pool file left by pid %s", info.pid)
        return "stale"

    logger.info("Sending SIGTERM to worker pool pid %s", info.pid)
    os.kill(info.pid, signal.SIGTERM)
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if store.read_pool() is None or not process_alive(info.pid):
            return "stopped"
        time.sleep(poll)
    return "timeout"
