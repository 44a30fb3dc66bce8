"""
Execution schemas - run attempts of jobs and steps.

JobExecution tracks one attempt to run a JobInstance.
StepExecution tracks one attempt to run a Step within a JobExecution.

Both follow the same status machine:

    STARTING -> STARTED -> (COMPLETED | FAILED | STOPPED)

Terminal statuses are final. STARTING may move straight to a terminal
status when a run fails before it starts.
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from batchrun.errors import IllegalStatusTransitionError

from .parameters import JobParameters


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class BatchStatus(str, Enum):
    """Status of a job or step execution."""
    STARTING = "STARTING"
    STARTED = "STARTED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    STOPPED = "STOPPED"

    @property
    def is_terminal(self) -> bool:
        return self in (BatchStatus.COMPLETED, BatchStatus.FAILED, BatchStatus.STOPPED)

    @property
    def is_running(self) -> bool:
        return self in (BatchStatus.STARTING, BatchStatus.STARTED)


_ALLOWED_TRANSITIONS = {
    BatchStatus.STARTING: {BatchStatus.STARTED, BatchStatus.COMPLETED, BatchStatus.FAILED, BatchStatus.STOPPED},
    BatchStatus.STARTED: {BatchStatus.COMPLETED, BatchStatus.FAILED, BatchStatus.STOPPED},
}


def _check_transition(kind: str, current: BatchStatus, new: BatchStatus) -> None:
    if new not in _ALLOWED_TRANSITIONS.get(current, set()):
        raise IllegalStatusTransitionError(
            f"{kind} cannot move from {current.value} to {new.value}"
        )


# Exit codes in addition to the terminal status values
EXIT_EXECUTING = "EXECUTING"
EXIT_COMPLETED_WITH_SKIPS = "COMPLETED_WITH_SKIPS"


@dataclass
class StepExecution:
    """
    One attempt to run a Step within a JobExecution.

    Counters are updated at every chunk boundary while the step runs and
    finalized when the step reaches a terminal status.

    Attributes:
        step_name: Name of the step
        job_execution_id: Owning JobExecution
        status: Current status
        read_count: Items read from the source
        write_count: Items handed to the sink in committed chunks
        filter_count: Items dropped by the transform
        commit_count: Chunks (or tasklet invocations) committed
        rollback_count: Chunks (or tasklet invocations) rolled back
        skip_count: Items in chunks skipped under SKIP_CHUNK
        start_time: When the step started
        end_time: When the step reached a terminal status
        exit_code: EXECUTING while running, then the final status value
        exit_description: Human-readable outcome
        failure: Error details if status is FAILED
    """
    step_name: str
    job_execution_id: Optional[int] = None
    status: BatchStatus = BatchStatus.STARTING
    read_count: int = 0
    write_count: int = 0
    filter_count: int = 0
    commit_count: int = 0
    rollback_count: int = 0
    skip_count: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    exit_code: str = EXIT_EXECUTING
    exit_description: str = ""
    failure: Optional[dict[str, Any]] = None

    def start(self) -> None:
        _check_transition(f"Step '{self.step_name}'", self.status, BatchStatus.STARTED)
        self.status = BatchStatus.STARTED
        self.start_time = _utcnow()

    def finish(
        self,
        status: BatchStatus,
        exit_description: str = "",
        failure: Optional[dict[str, Any]] = None,
        exit_code: Optional[str] = None,
    ) -> None:
        """Move to a terminal status and stamp the end time."""
        if not status.is_terminal:
            raise IllegalStatusTransitionError(f"{status.value} is not a terminal status")
        _check_transition(f"Step '{self.step_name}'", self.status, status)
        self.status = status
        self.end_time = _utcnow()
        self.exit_code = exit_code or status.value
        self.exit_description = exit_description
        self.failure = failure

    @property
    def duration_ms(self) -> Optional[int]:
        """Calculate execution duration in milliseconds if both timestamps present."""
        if self.start_time and self.end_time:
            delta = self.end_time - self.start_time
            return int(delta.total_seconds() * 1000)
        return None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "step_name": self.step_name,
            "status": self.status.value,
            "read_count": self.read_count,
            "write_count": self.write_count,
            "filter_count": self.filter_count,
            "commit_count": self.commit_count,
            "rollback_count": self.rollback_count,
            "skip_count": self.skip_count,
            "exit_code": self.exit_code,
            "exit_description": self.exit_description,
        }
        if self.job_execution_id is not None:
            result["job_execution_id"] = self.job_execution_id
        if self.start_time is not None:
            result["start_time"] = self.start_time.isoformat()
        if self.end_time is not None:
            result["end_time"] = self.end_time.isoformat()
        if self.failure is not None:
            result["failure"] = self.failure
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StepExecution":
        """Deserialize from dictionary."""
        return cls(
            step_name=data["step_name"],
            job_execution_id=data.get("job_execution_id"),
            status=BatchStatus(data["status"]),
            read_count=data.get("read_count", 0),
            write_count=data.get("write_count", 0),
            filter_count=data.get("filter_count", 0),
            commit_count=data.get("commit_count", 0),
            rollback_count=data.get("rollback_count", 0),
            skip_count=data.get("skip_count", 0),
            start_time=_parse_time(data.get("start_time")),
            end_time=_parse_time(data.get("end_time")),
            exit_code=data.get("exit_code", EXIT_EXECUTING),
            exit_description=data.get("exit_description", ""),
            failure=data.get("failure"),
        )


@dataclass
class JobExecution:
    """
    One attempt to run a JobInstance.

    Created by the repository in STARTING status, then mutated only by the
    JobExecutor and StepExecutor. Once terminal it does not change.

    Attributes:
        execution_id: Repository-assigned identifier
        instance_id: The JobInstance being run
        job_name: Name of the job
        parameters: Launch parameters
        status: Current status
        created_at: When the execution record was created
        start_time: When the executor started running steps
        end_time: When the execution reached a terminal status
        exit_code: EXECUTING while running, then the final status value
        exit_description: Human-readable outcome
        step_executions: StepExecutions in the order they ran
        failure: Error details of the step failure that ended the job
    """
    execution_id: int
    instance_id: int
    job_name: str
    parameters: JobParameters = field(default_factory=JobParameters)
    status: BatchStatus = BatchStatus.STARTING
    created_at: datetime = field(default_factory=_utcnow)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    exit_code: str = EXIT_EXECUTING
    exit_description: str = ""
    step_executions: list[StepExecution] = field(default_factory=list)
    failure: Optional[dict[str, Any]] = None
    _stop_event: threading.Event = field(default_factory=threading.Event, init=False, repr=False, compare=False)

    def start(self) -> None:
        _check_transition(f"Job '{self.job_name}'", self.status, BatchStatus.STARTED)
        self.status = BatchStatus.STARTED
        self.start_time = _utcnow()

    def finish(
        self,
        status: BatchStatus,
        exit_description: str = "",
        failure: Optional[dict[str, Any]] = None,
    ) -> None:
        """Move to a terminal status and stamp the end time."""
        if not status.is_terminal:
            raise IllegalStatusTransitionError(f"{status.value} is not a terminal status")
        _check_transition(f"Job '{self.job_name}'", self.status, status)
        self.status = status
        self.end_time = _utcnow()
        self.exit_code = status.value
        self.exit_description = exit_description
        self.failure = failure

    def request_stop(self) -> None:
        """Ask the running execution to stop at the next chunk or step boundary."""
        self._stop_event.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def add_step_execution(self, step_execution: StepExecution) -> None:
        step_execution.job_execution_id = self.execution_id
        self.step_executions.append(step_execution)

    def get_step_execution(self, step_name: str) -> Optional[StepExecution]:
        """Get a step execution by step name."""
        for step_execution in self.step_executions:
            if step_execution.step_name == step_name:
                return step_execution
        return None

    def get_failed_steps(self) -> tuple[StepExecution, ...]:
        """Get all failed step executions."""
        return tuple(s for s in self.step_executions if s.status == BatchStatus.FAILED)

    @property
    def duration_ms(self) -> Optional[int]:
        """Calculate execution duration in milliseconds if completed."""
        if self.start_time and self.end_time:
            delta = self.end_time - self.start_time
            return int(delta.total_seconds() * 1000)
        return None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "execution_id": self.execution_id,
            "instance_id": self.instance_id,
            "job_name": self.job_name,
            "parameters": self.parameters.to_dict(),
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "exit_code": self.exit_code,
            "exit_description": self.exit_description,
            "step_executions": [s.to_dict() for s in self.step_executions],
        }
        if self.start_time is not None:
            result["start_time"] = self.start_time.isoformat()
        if self.end_time is not None:
            result["end_time"] = self.end_time.isoformat()
        if self.failure is not None:
            result["failure"] = self.failure
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobExecution":
        """Deserialize from dictionary."""
        return cls(
            execution_id=data["execution_id"],
            instance_id=data["instance_id"],
            job_name=data["job_name"],
            parameters=JobParameters.from_dict(data.get("parameters", {})),
            status=BatchStatus(data["status"]),
            created_at=datetime.fromisoformat(data["created_at"]),
            start_time=_parse_time(data.get("start_time")),
            end_time=_parse_time(data.get("end_time")),
            exit_code=data.get("exit_code", EXIT_EXECUTING),
            exit_description=data.get("exit_description", ""),
            step_executions=[StepExecution.from_dict(s) for s in data.get("step_executions", [])],
            failure=data.get("failure"),
        )
