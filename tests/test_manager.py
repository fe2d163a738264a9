import threading
from datetime import timedelta

import pytest

from queuectl.errors import InvalidCommand, ValidationError
from queuectl.manager import MAX_BACKOFF_SECONDS, MAX_COMMAND_LENGTH, QueueManager, backoff_delay
from queuectl.models import JobState
from queuectl.store import JobStore
from queuectl.utils import iso_in_utc_from_seconds_from_now, parse_iso, utc_now


def _make_due(manager, job_id):
    """Pretend the retry delay of a failed job has already elapsed."""
    manager.store.update(job_id, next_retry_at=iso_in_utc_from_seconds_from_now(-1))


def test_enqueue_read_back_uses_configured_default(manager, config):
    config.set("max_retries", 5)
    job = manager.enqueue("echo hi")

    stored = manager.get_job(job.id)
    assert stored.state is JobState.PENDING
    assert stored.attempts == 0
    assert stored.max_retries == 5
    assert stored.created_at == stored.updated_at
    assert stored.worker_id is None
    assert stored.next_retry_at is None


def test_enqueue_override_max_retries(manager):
    job = manager.enqueue("echo hi", max_retries=1)
    assert manager.get_job(job.id).max_retries == 1


def test_enqueue_generates_unique_ids(manager):
    ids = {manager.enqueue("true").id for _ in range(20)}
    assert len(ids) == 20


@pytest.mark.parametrize("command", ["", "   ", "x" * (MAX_COMMAND_LENGTH + 1)])
def test_enqueue_rejects_bad_commands(manager, command):
    with pytest.raises(InvalidCommand):
        manager.enqueue(command)
    assert manager.store.all() == []


@pytest.mark.parametrize("retries", [-1, 1.5, "2", True])
def test_enqueue_rejects_bad_max_retries(manager, retries):
    with pytest.raises(ValidationError):
        manager.enqueue("true", max_retries=retries)


def test_claim_marks_processing(manager):
    job = manager.enqueue("echo hi")

    claimed = manager.claim("w1")
    assert claimed.id == job.id
    assert claimed.state is JobState.PROCESSING
    assert claimed.worker_id == "w1"
    assert manager.claim("w2") is None


def test_claim_empty_queue(manager):
    assert manager.claim("w1") is None


def test_complete(manager):
    job = manager.enqueue("echo ok")
    manager.claim("w1")

    assert manager.complete(job.id, "ok", worker_id="w1") is True
    done = manager.get_job(job.id)
    assert done.state is JobState.COMPLETED
    assert done.output == "ok"
    assert done.worker_id is None
    assert done.attempts == 0


def test_complete_requires_processing(manager):
    job = manager.enqueue("echo ok")
    assert manager.complete(job.id, "ok") is False
    assert manager.complete("unknown", "ok") is False
    assert manager.get_job(job.id).state is JobState.PENDING


def test_report_from_wrong_worker_is_ignored(manager):
    job = manager.enqueue("echo ok")
    manager.claim("w1")

    assert manager.complete(job.id, "ok", worker_id="w2") is False
    assert manager.fail(job.id, "boom", worker_id="w2") is False
    stored = manager.get_job(job.id)
    assert stored.state is JobState.PROCESSING
    assert stored.worker_id == "w1"
    assert stored.attempts == 0


def test_first_failure_schedules_retry_with_exponent_one(manager, config):
    config.set("backoff_base", 2)
    job = manager.enqueue("exit 1", max_retries=3)
    manager.claim("w1")

    before = utc_now()
    assert manager.fail(job.id, "exit 1", worker_id="w1") is True

    failed = manager.get_job(job.id)
    assert failed.state is JobState.FAILED
    assert failed.attempts == 1
    assert failed.worker_id is None
    assert failed.error_message == "exit 1"
    delay = parse_iso(failed.next_retry_at) - before
    assert timedelta(seconds=1.5) < delay < timedelta(seconds=2.5)


def test_backoff_exponent_is_post_increment_count(manager, config):
    config.set("backoff_base", 3)
    job = manager.enqueue("exit 1", max_retries=5)

    delays = []
    for _ in range(2):
        _make_due(manager, job.id)
        manager.claim("w1")
        before = utc_now()
        manager.fail(job.id, "boom")
        delays.append((parse_iso(manager.get_job(job.id).next_retry_at) - before).total_seconds())

    assert 2.5 < delays[0] < 3.5    # 3 ** 1
    assert 8.5 < delays[1] < 9.5    # 3 ** 2


def test_backoff_delay():
    assert backoff_delay(2, 1) == 2
    assert backoff_delay(2, 3) == 8
    assert backoff_delay(1.5, 2) == 2.25


def test_backoff_delay_is_capped():
    assert backoff_delay(1000000, 2) == MAX_BACKOFF_SECONDS
    assert backoff_delay(2, 40) == MAX_BACKOFF_SECONDS
    assert backoff_delay(10, 5000) == MAX_BACKOFF_SECONDS


@pytest.mark.parametrize("base, retries, failures", [(1000000, 3, 2), (2, 45, 40)])
def test_huge_backoff_still_schedules_retry(manager, config, base, retries, failures):
    config.set("backoff_base", base)
    job = manager.enqueue("exit 1", max_retries=retries)

    for _ in range(failures):
        _make_due(manager, job.id)
        manager.claim("w1")
        assert manager.fail(job.id, "boom", worker_id="w1") is True

    failed = manager.get_job(job.id)
    assert failed.state is JobState.FAILED
    assert failed.attempts == failures
    assert failed.worker_id is None
    delay = parse_iso(failed.next_retry_at) - utc_now()
    assert delay <= timedelta(seconds=MAX_BACKOFF_SECONDS)


def test_huge_backoff_still_reaches_dlq(manager, config):
    config.set("backoff_base", 1000000)
    job = manager.enqueue("exit 1", max_retries=3)

    for _ in range(3):
        _make_due(manager, job.id)
        manager.claim("w1")
        manager.fail(job.id, "boom", worker_id="w1")

    dead = manager.get_job(job.id)
    assert dead.state is JobState.DEAD
    assert dead.attempts == 3


def test_failed_job_not_eligible_before_retry_time(manager):
    job = manager.enqueue("exit 1", max_retries=3)
    manager.claim("w1")
    manager.fail(job.id, "boom")

    assert manager.claim("w1") is None
    _make_due(manager, job.id)
    reclaimed = manager.claim("w2")
    assert reclaimed.id == job.id
    assert reclaimed.next_retry_at is None
    assert reclaimed.attempts == 1


def test_scenario_exhausts_retries_into_dlq(manager, config):
    config.set("backoff_base", 2)
    job = manager.enqueue("exit 1", max_retries=2)

    manager.claim("w1")
    manager.fail(job.id, "Command exited with code 1")
    first = manager.get_job(job.id)
    assert (first.state, first.attempts) == (JobState.FAILED, 1)

    _make_due(manager, job.id)
    manager.claim("w1")
    manager.fail(job.id, "Command exited with code 1")

    dead = manager.get_job(job.id)
    assert dead.state is JobState.DEAD
    assert dead.attempts == dead.max_retries == 2
    assert dead.next_retry_at is None
    assert dead.worker_id is None
    assert dead.error_message == "Command exited with code 1"

    assert [j.id for j in manager.dlq_list()] == [job.id]
    assert manager.list_jobs(JobState.PENDING) == []
    assert manager.list_jobs(JobState.FAILED) == []
    assert manager.claim("w1") is None


def test_zero_retries_dies_on_first_failure(manager):
    job = manager.enqueue("exit 1", max_retries=0)
    manager.claim("w1")
    manager.fail(job.id, "boom")

    dead = manager.get_job(job.id)
    assert dead.state is JobState.DEAD
    assert dead.attempts == 1


def test_retry_from_dlq(manager):
    job = manager.enqueue("exit 1", max_retries=1)
    manager.claim("w1")
    manager.fail(job.id, "boom")

    assert manager.retry_from_dlq(job.id) is True
    revived = manager.get_job(job.id)
    assert revived.state is JobState.PENDING
    assert revived.attempts == 0
    assert revived.error_message is None
    assert revived.next_retry_at is None
    assert manager.claim("w1").id == job.id


def test_retry_from_dlq_rejects_other_states(manager):
    pending = manager.enqueue("echo a")
    before = manager.store.all()

    assert manager.retry_from_dlq(pending.id) is False
    assert manager.retry_from_dlq("no-such-job") is False
    assert manager.store.all() == before


def test_recover_orphans(manager):
    a = manager.enqueue("echo a")
    b = manager.enqueue("echo b")
    manager.claim("crashed-worker")

    assert manager.recover_orphans() == 1
    recovered = manager.get_job(a.id)
    assert recovered.state is JobState.PENDING
    assert recovered.worker_id is None
    assert manager.get_job(b.id).state is JobState.PENDING
    assert manager.recover_orphans() == 0


def test_due_retry_is_claimed_ahead_of_newer_pending(manager):
    old = manager.enqueue("exit 1", max_retries=3)
    manager.claim("w1")
    manager.fail(old.id, "boom")
    newer = manager.enqueue("echo new")

    assert manager.claim("w1").id == newer.id
    manager.complete(newer.id, "new")

    third = manager.enqueue("echo third")
    _make_due(manager, old.id)
    assert manager.claim("w1").id == old.id
    assert manager.claim("w1").id == third.id


def test_list_jobs_newest_first_with_limit(manager):
    ids = [manager.enqueue(f"echo {i}").id for i in range(5)]

    listed = manager.list_jobs(limit=3)
    assert [j.id for j in listed] == list(reversed(ids))[:3]


def test_stats(manager):
    manager.enqueue("echo a")
    job = manager.enqueue("echo b")
    manager.claim("w1")

    stats = manager.stats()
    assert stats["pending"] == 1
    assert stats["processing"] == 1
    assert manager.get_job(job.id).state is JobState.PENDING


def test_cleanup_rejects_negative_days(manager):
    with pytest.raises(ValidationError):
        manager.cleanup(-1)


def test_concurrent_claims_never_share_a_job(data_dir, config):
    setup = QueueManager(JobStore(data_dir), config)
    expected = {setup.enqueue(f"echo {i}").id for i in range(40)}

    claimed = {}
    errors = []
    lock = threading.Lock()

    def claimer(worker_id):
        mgr = QueueManager(JobStore(data_dir, lock_timeout=30), config)
        try:
            while True:
                job = mgr.claim(worker_id)
                if job is None:
                    return
                with lock:
                    claimed.setdefault(job.id, []).append(worker_id)
        except Exception as e:  # surfaced below
            errors.append(e)

    threads = [threading.Thread(target=claimer, args=(f"w{i}",)) for i in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert set(claimed) == expected
    assert all(len(owners) == 1 for owners in claimed.values())
    for job in setup.store.all():
        assert job.state is JobState.PROCESSING
        assert job.worker_id == claimed[job.id][0]


def test_delete_job(manager):
    job = manager.enqueue("echo a")
    assert manager.delete_job(job.id) is True
    assert manager.delete_job(job.id) is False
    assert manager.get_job(job.id) is None
