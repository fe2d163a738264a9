"""Shared test fixtures."""

import time

import pytest

from queuectl.config import ConfigStore
from queuectl.manager import QueueManager
from queuectl.models import Job, JobState
from queuectl.store import JobStore
from queuectl.utils import now_iso


@pytest.fixture()
def data_dir(tmp_path):
    return str(tmp_path / "data")


@pytest.fixture()
def config(data_dir):
    cfg = ConfigStore(data_dir)
    cfg.set("worker_poll_interval", 0.05)
    cfg.set("graceful_shutdown_timeout", 5)
    return cfg


@pytest.fixture()
def store(data_dir):
    return JobStore(data_dir)


@pytest.fixture()
def manager(store, config):
    return QueueManager(store, config)


def make_job(job_id, command="echo hi", state=JobState.PENDING, **kwargs):
    ts = kwargs.pop("created_at", None) or now_iso()
    kwargs.setdefault("updated_at", ts)
    return Job(id=job_id, command=command, state=state, created_at=ts, **kwargs)


def wait_for(predicate, timeout=10.0, interval=0.02):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
