"""
Job and Step definitions.

Definitions are immutable values built by ordinary function calls:

    job = Job(
        name="import-movies",
        steps=(
            ChunkStep(
                name="load",
                source=FlatFileItemSource("movies.csv", names=["title", "year"], skip_lines=1),
                sink=ConsoleItemSink(),
                chunk_size=2,
            ),
            TaskletStep(name="report", tasklet=print_report),
        ),
    )

A definition says what a step does; StepExecution records one run of it.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Union

from batchrun.items.sinks import ItemSink
from batchrun.items.sources import ItemSource
from batchrun.schemas import JobExecution, JobParameters, StepExecution
from batchrun.transaction import TransactionManager


class RepeatStatus(str, Enum):
    """Returned by a tasklet to ask for another invocation or to finish."""
    CONTINUE = "CONTINUE"
    FINISHED = "FINISHED"


class FailurePolicy(str, Enum):
    """What a chunk step does after a chunk is rolled back."""
    ABORT_STEP = "abort_step"
    SKIP_CHUNK = "skip_chunk"

    @classmethod
    def from_string(cls, value: str) -> "FailurePolicy":
        try:
            return cls(value.lower())
        except ValueError:
            valid = ", ".join(p.value for p in cls)
            raise ValueError(f"Unknown failure policy '{value}' (valid: {valid})")


@dataclass(frozen=True)
class StepContext:
    """
    Run state handed to a tasklet at invocation time.

    Attributes:
        job_parameters: Parameters of the current launch
        job_execution: The running JobExecution
        step_execution: The running StepExecution
    """
    job_parameters: JobParameters
    job_execution: JobExecution
    step_execution: StepExecution


Tasklet = Callable[[StepContext], Optional[RepeatStatus]]
Transform = Callable[[Any], Any]
SourceFactory = Callable[[StepContext], ItemSource]
SinkFactory = Callable[[StepContext], ItemSink]


@dataclass(frozen=True)
class TaskletStep:
    """
    A step that calls a tasklet until it returns FINISHED.

    A tasklet returning None is treated as FINISHED.

    Attributes:
        name: Step name, unique within the job
        tasklet: Callable taking a StepContext
        allow_start_if_complete: Run again on restart even if it completed before
        transaction_manager: Scope for each invocation (default: the executor's)
    """
    name: str
    tasklet: Tasklet
    allow_start_if_complete: bool = False
    transaction_manager: Optional[TransactionManager] = None

    def __post_init__(self):
        if not self.name:
            raise ValueError("Step name is required")
        if not callable(self.tasklet):
            raise ValueError(f"Step '{self.name}': tasklet must be callable")


@dataclass(frozen=True)
class ChunkStep:
    """
    A step that reads items, optionally transforms them, and writes chunks.

    source and sink are either instances or factories called with the
    StepContext of each execution. A source instance is copied per
    execution, so its read position is never shared between runs. A sink
    instance is the same destination for every execution; pass a factory
    for a sink per execution.

    Attributes:
        name: Step name, unique within the job
        source: Where items come from (ItemSource or SourceFactory)
        sink: Where chunks go (ItemSink or SinkFactory)
        chunk_size: Items per chunk (the last chunk may be smaller)
        transform: Optional per-item function; returning None filters the item
        failure_policy: ABORT_STEP (default) or SKIP_CHUNK
        allow_start_if_complete: Run again on restart even if it completed before
        transaction_manager: Scope for each chunk (default: the executor's)
    """
    name: str
    source: Union[ItemSource, SourceFactory]
    sink: Union[ItemSink, SinkFactory]
    chunk_size: int
    transform: Optional[Transform] = None
    failure_policy: FailurePolicy = FailurePolicy.ABORT_STEP
    allow_start_if_complete: bool = False
    transaction_manager: Optional[TransactionManager] = None

    def __post_init__(self):
        if not self.name:
            raise ValueError("Step name is required")
        if isinstance(self.chunk_size, bool) or not isinstance(self.chunk_size, int) or self.chunk_size <= 0:
            raise ValueError(f"Step '{self.name}': chunk_size must be a positive integer, got {self.chunk_size!r}")
        if not isinstance(self.source, ItemSource) and not callable(self.source):
            raise ValueError(f"Step '{self.name}': source must be an ItemSource or a factory")
        if not isinstance(self.sink, ItemSink) and not callable(self.sink):
            raise ValueError(f"Step '{self.name}': sink must be an ItemSink or a factory")
        if self.transform is not None and not callable(self.transform):
            raise ValueError(f"Step '{self.name}': transform must be callable")


Step = Union[TaskletStep, ChunkStep]


@dataclass(frozen=True)
class Job:
    """
    A named, ordered sequence of steps.

    Attributes:
        name: Job name; with the launch parameters it identifies a JobInstance
        steps: Steps in execution order
    """
    name: str
    steps: tuple[Step, ...] = field(default_factory=tuple)

    def __post_init__(self):
        if not self.name:
            raise ValueError("Job name is required")
        # Accept any sequence but store a tuple
        object.__setattr__(self, "steps", tuple(self.steps))
        if not self.steps:
            raise ValueError(f"Job '{self.name}' has no steps")
        names = [s.name for s in self.steps]
        if len(names) != len(set(names)):
            duplicates = {n for n in names if names.count(n) > 1}
            raise ValueError(f"Job '{self.name}' has duplicate step names: {duplicates}")

    def get_step(self, name: str) -> Optional[Step]:
        """Get a step by name."""
        for step in self.steps:
            if step.name == name:
                return step
        return None
