# models.py
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Optional


class JobState:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"    # owning worker vanished, force-closed by the supervisor
    DEAD = "dead"        # retry budget exhausted


JOB_STATES = (
    JobState.PENDING,
    JobState.PROCESSING,
    JobState.COMPLETED,
    JobState.FAILED,
    JobState.DEAD,
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: datetime) -> str:
    # Fixed precision keeps lexical order == chronological order in SQLite
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Job:
    id: str
    command: str
    state: str = JobState.PENDING
    attempts: int = 0
    max_retries: int = 3
    backoff_base: float = 2
    run_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    locked_by: Optional[str] = None
    last_error: Optional[str] = None
    last_exit_code: Optional[int] = None
    output: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "Job":
        return cls(
            id=row["id"],
            command=row["command"],
            state=row["state"],
            attempts=row["attempts"],
            max_retries=row["max_retries"],
            backoff_base=row["backoff_base"],
            run_at=row["run_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            locked_by=row["locked_by"],
            last_error=row["last_error"],
            last_exit_code=row["last_exit_code"],
            output=row["output"],
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class WorkerRecord:
    id: str
    pid: Optional[int]
    started_at: str
    last_heartbeat: str

    @classmethod
    def from_row(cls, row) -> "WorkerRecord":
        return cls(
            id=row["id"],
            pid=row["pid"],
            started_at=row["started_at"],
            last_heartbeat=row["last_heartbeat"],
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ExecutionResult:
    ok: bool
    exit_code: int
    output: str = ""
