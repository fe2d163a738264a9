from dataclasses import dataclass, field, asdict, fields
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import StorageCorruption
from .utils import parse_iso


class JobState(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD = "dead"  # DLQ


# Job States
PENDING = JobState.PENDING
PROCESSING = JobState.PROCESSING
COMPLETED = JobState.COMPLETED
FAILED = JobState.FAILED
DEAD = JobState.DEAD

ELIGIBLE_STATES = frozenset({PENDING, FAILED})

# Every state must appear here; processing -> pending is orphan recovery.
TRANSITIONS = {
    PENDING: frozenset({PROCESSING}),
    PROCESSING: frozenset({COMPLETED, FAILED, DEAD, PENDING}),
    FAILED: frozenset({PROCESSING}),
    COMPLETED: frozenset(),
    DEAD: frozenset({PENDING}),
}
assert set(TRANSITIONS) == set(JobState), "TRANSITIONS must cover every JobState"


@dataclass
class Job:
    id: str
    command: str
    state: JobState = PENDING
    attempts: int = 0
    max_retries: int = 3
    created_at: str = ""
    updated_at: str = ""
    next_retry_at: Optional[str] = None
    error_message: Optional[str] = None
    output: Optional[str] = None
    worker_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "Job":
        if not isinstance(data, dict):
            raise StorageCorruption(f"job record is not an object: {data!r}")
        missing = [f.name for f in fields(cls) if f.name not in data]
        if missing:
            raise StorageCorruption(
                f"job {data.get('id', '?')} is missing fields: {', '.join(missing)}"
            )
        try:
            state = JobState(data["state"])
        except ValueError:
            raise StorageCorruption(f"job {data['id']} has unknown state {data['state']!r}")

        for name in ("id", "command", "created_at", "updated_at"):
            if not isinstance(data[name], str):
                raise StorageCorruption(f"job {data['id']!r}: {name} must be a string")
        for name in ("attempts", "max_retries"):
            if not isinstance(data[name], int) or isinstance(data[name], bool) or data[name] < 0:
                raise StorageCorruption(f"job {data['id']}: {name} must be a non-negative integer")
        for name in ("next_retry_at", "error_message", "output", "worker_id"):
            if data[name] is not None and not isinstance(data[name], str):
                raise StorageCorruption(f"job {data['id']}: {name} must be a string or null")
        for name in ("created_at", "updated_at", "next_retry_at"):
            if data[name] is None:
                continue
            try:
                parse_iso(data[name])
            except ValueError:
                raise StorageCorruption(f"job {data['id']}: {name} is not a timestamp: {data[name]!r}")

        return cls(
            id=data["id"],
            command=data["command"],
            state=state,
            attempts=data["attempts"],
            max_retries=data["max_retries"],
            created_at=data["created_at"],
            updated_at=data["updated_at"],
            next_retry_at=data["next_retry_at"],
            error_message=data["error_message"],
            output=data["output"],
            worker_id=data["worker_id"],
        )


@dataclass
class CommandResult:
    success: bool
    output: Optional[str] = None
    error: Optional[str] = None
    exit_code: int = 0


@dataclass
class PoolInfo:
    """Liveness record of the worker pool that owns a data directory."""

    pid: int
    workers: List[str] = field(default_factory=list)
    started_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Any) -> "PoolInfo":
        try:
            return cls(
                pid=int(data["pid"]),
                workers=[str(w) for w in data["workers"]],
                started_at=str(data["started_at"]),
            )
        except (TypeError, KeyError, ValueError) as e:
            raise StorageCorruption(f"malformed pool file: {e}")
