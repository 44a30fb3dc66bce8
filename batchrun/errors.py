"""
Error classes for batchrun execution.

Launch errors are raised to the caller of JobExecutor.run:
- DuplicateRunError: parameters identify an instance that already completed
- JobExecutionAlreadyRunningError: the instance has an execution in flight

Step failures are caught at the step boundary and recorded on the
StepExecution / JobExecution instead of escaping:
- ReadError: the item source failed to produce an item
- WriteError: the item sink failed for a chunk (chunk is rolled back)
- TransformError: an item transform failed (handled as a WriteError)
- TaskletError: a tasklet raised

Error handling contract:
- Execution records carry failures as values ({"type", "message"})
- Exceptions escape only for launch conflicts and programmer errors
"""

from typing import Any, Optional


class BatchError(Exception):
    """Base exception for batchrun."""
    pass


class DuplicateRunError(BatchError):
    """
    Raised when a launch would re-run a COMPLETED job instance.

    Two launches collide when their identifying JobParameters are
    equivalent. Add a unique token or a date parameter to the launch
    to get a new instance.
    """

    def __init__(self, job_name: str, parameters: Any = None, instance_id: Optional[int] = None):
        self.job_name = job_name
        self.parameters = parameters
        self.instance_id = instance_id
        message = f"Job '{job_name}' already completed for parameters {parameters}"
        if instance_id is not None:
            message += f" (instance {instance_id})"
        super().__init__(message)


class JobExecutionAlreadyRunningError(BatchError):
    """Raised when the job instance already has a STARTING/STARTED execution."""

    def __init__(self, job_name: str, execution_id: int):
        self.job_name = job_name
        self.execution_id = execution_id
        super().__init__(
            f"Job '{job_name}' is already running (execution {execution_id})"
        )


class IllegalStatusTransitionError(BatchError):
    """Raised when an execution is moved out of a terminal status."""
    pass


class StepFailure(BatchError):
    """
    Base class for failures recorded against a step.

    Attributes:
        step_name: Step that failed, when known
    """

    def __init__(self, message: str, step_name: Optional[str] = None):
        self.step_name = step_name
        super().__init__(message)


class ReadError(StepFailure):
    """The item source failed to produce an item. Always aborts the step."""
    pass


class WriteError(StepFailure):
    """
    The item sink failed for a chunk.

    The chunk's transaction is rolled back. Under the default ABORT_STEP
    policy the step fails; under SKIP_CHUNK reading continues.
    """
    pass


class TransformError(WriteError):
    """An item transform raised; the owning chunk is treated as a failed write."""
    pass


class TaskletError(StepFailure):
    """A tasklet raised. The step fails immediately, without retry."""
    pass


def describe_error(error: BaseException) -> dict[str, Any]:
    """Serializable failure description recorded on executions."""
    info: dict[str, Any] = {
        "type": type(error).__name__,
        "message": str(error),
    }
    cause = error.__cause__
    if cause is not None:
        info["cause"] = {"type": type(cause).__name__, "message": str(cause)}
    return info
