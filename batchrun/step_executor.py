"""
StepExecutor - run one Step to a terminal StepExecution.

Tasklet steps: the tasklet is invoked inside a transaction until it
returns FINISHED (or None). Each successful invocation is one commit. A
raised exception rolls the invocation back and fails the step; there is
no implicit retry.

Chunk steps: the source and sink of each execution are built first (a copy
of a source instance, or a factory called with the StepContext), then
the ChunkOrchestrator drives the step and the executor copies
its counters into the StepExecution after every chunk, persisting progress
through the repository.

The returned StepExecution is always COMPLETED, FAILED or STOPPED.
"""

import copy
import logging
from typing import Optional

from batchrun.chunk import ChunkOrchestrator, ChunkResult, ChunkStatus
from batchrun.errors import BatchError, ReadError, TaskletError, WriteError, describe_error
from batchrun.items import ItemSink, ItemSource
from batchrun.job import ChunkStep, RepeatStatus, Step, StepContext, TaskletStep
from batchrun.repository import JobRepository
from batchrun.schemas import (
    BatchStatus,
    EXIT_COMPLETED_WITH_SKIPS,
    JobExecution,
    StepExecution,
)
from batchrun.transaction import ResourcelessTransactionManager, TransactionManager
from batchrun.utils import sanitize_error_message

logger = logging.getLogger(__name__)


class StepExecutor:
    """
    Executes steps of a running JobExecution.

    Usage:
        executor = StepExecutor(repository=repo)
        step_execution = executor.execute(step, job_execution)

    Args:
        repository: Where step progress is saved (optional)
        transaction_manager: Default transaction scope for steps
    """

    def __init__(
        self,
        repository: Optional[JobRepository] = None,
        transaction_manager: Optional[TransactionManager] = None,
    ):
        self._repository = repository
        self._transaction_manager = transaction_manager or ResourcelessTransactionManager()

    def execute(self, step: Step, job_execution: JobExecution) -> StepExecution:
        """
        Run a step within a job execution.

        Args:
            step: The step definition
            job_execution: The running JobExecution; the new StepExecution
                is appended to it

        Returns:
            The terminal StepExecution
        """
        step_execution = StepExecution(step_name=step.name)
        job_execution.add_step_execution(step_execution)
        step_execution.start()
        self._save(job_execution, step_execution)

        logger.info(f"Executing step: {step.name}")
        try:
            if isinstance(step, TaskletStep):
                self._execute_tasklet(step, job_execution, step_execution)
            elif isinstance(step, ChunkStep):
                self._execute_chunk(step, job_execution, step_execution)
            else:
                raise TypeError(f"Unsupported step type: {type(step).__name__}")
        except Exception as e:
            # Anything escaping the step body still ends the step as FAILED
            logger.error(f"Step {step.name} failed unexpectedly", exc_info=True)
            if not step_execution.status.is_terminal:
                step_execution.finish(
                    BatchStatus.FAILED,
                    exit_description=sanitize_error_message(e),
                    failure=describe_error(e),
                )

        self._save(job_execution, step_execution)
        logger.info(
            f"Step {step.name} {step_execution.status.value} "
            f"(read={step_execution.read_count}, written={step_execution.write_count}, "
            f"commits={step_execution.commit_count}, rollbacks={step_execution.rollback_count})"
        )
        return step_execution

    def _save(self, job_execution: JobExecution, step_execution: StepExecution) -> None:
        if self._repository is not None:
            self._repository.save_step_execution(job_execution, step_execution)

    def _execute_tasklet(self, step: TaskletStep, job_execution: JobExecution, step_execution: StepExecution) -> None:
        context = StepContext(
            job_parameters=job_execution.parameters,
            job_execution=job_execution,
            step_execution=step_execution,
        )
        transaction_manager = step.transaction_manager or self._transaction_manager
        while True:
            if job_execution.stop_requested:
                step_execution.finish(BatchStatus.STOPPED, exit_description="Stop requested")
                return

            try:
                with transaction_manager.transaction():
                    status = step.tasklet(context)
                    if status is not None and not isinstance(status, RepeatStatus):
                        raise TypeError(f"Tasklet returned {status!r}, expected a RepeatStatus")
            except Exception as e:
                step_execution.rollback_count += 1
                error = e if isinstance(e, TaskletError) else TaskletError(str(e), step_name=step.name)
                if error is not e:
                    error.__cause__ = e
                logger.error(f"Tasklet of step {step.name} failed: {sanitize_error_message(e)}", exc_info=True)
                step_execution.finish(
                    BatchStatus.FAILED,
                    exit_description=sanitize_error_message(error),
                    failure=describe_error(error),
                )
                return

            step_execution.commit_count += 1
            if status is None or status == RepeatStatus.FINISHED:
                step_execution.finish(BatchStatus.COMPLETED)
                return
            self._save(job_execution, step_execution)

    def _execute_chunk(self, step: ChunkStep, job_execution: JobExecution, step_execution: StepExecution) -> None:
        context = StepContext(
            job_parameters=job_execution.parameters,
            job_execution=job_execution,
            step_execution=step_execution,
        )
        try:
            source = _build_source(step, context)
            sink = _build_sink(step, context)
        except BatchError as error:
            logger.error(f"Step {step.name} could not build its components: {error}")
            step_execution.finish(
                BatchStatus.FAILED,
                exit_description=sanitize_error_message(error),
                failure=describe_error(error),
            )
            return

        def on_chunk(result: ChunkResult) -> None:
            _copy_counters(result, step_execution)
            self._save(job_execution, step_execution)

        orchestrator = ChunkOrchestrator(
            transaction_manager=step.transaction_manager or self._transaction_manager,
            failure_policy=step.failure_policy,
            on_chunk=on_chunk,
            should_stop=lambda: job_execution.stop_requested,
        )
        result = orchestrator.run(source, step.transform, sink, step.chunk_size)
        _copy_counters(result, step_execution)

        if result.status == ChunkStatus.FAILED:
            error: BatchError = result.error
            error.step_name = getattr(error, "step_name", None) or step.name
            step_execution.finish(
                BatchStatus.FAILED,
                exit_description=sanitize_error_message(error),
                failure=describe_error(error),
            )
        elif result.status == ChunkStatus.STOPPED:
            step_execution.finish(
                BatchStatus.STOPPED,
                exit_description=f"Stop requested after {result.commit_count} committed chunks",
            )
        elif result.skipped_errors:
            step_execution.finish(
                BatchStatus.COMPLETED,
                exit_code=EXIT_COMPLETED_WITH_SKIPS,
                exit_description=(
                    f"{len(result.skipped_errors)} chunks rolled back and skipped "
                    f"({result.skip_count} items); last error: "
                    f"{sanitize_error_message(result.skipped_errors[-1])}"
                ),
            )
        else:
            step_execution.finish(BatchStatus.COMPLETED)


def _build_source(step: ChunkStep, context: StepContext) -> ItemSource:
    """A source of this execution only: a copy of the step's instance, or a new one from its factory."""
    if isinstance(step.source, ItemSource):
        return copy.copy(step.source)
    try:
        source = step.source(context)
    except Exception as e:
        raise ReadError(f"Source factory of step '{step.name}' failed: {e}", step_name=step.name) from e
    if not isinstance(source, ItemSource):
        raise ReadError(
            f"Source factory of step '{step.name}' returned {type(source).__name__}, expected an ItemSource",
            step_name=step.name,
        )
    return source


def _build_sink(step: ChunkStep, context: StepContext) -> ItemSink:
    if isinstance(step.sink, ItemSink):
        return step.sink
    try:
        sink = step.sink(context)
    except Exception as e:
        raise WriteError(f"Sink factory of step '{step.name}' failed: {e}", step_name=step.name) from e
    if not isinstance(sink, ItemSink):
        raise WriteError(
            f"Sink factory of step '{step.name}' returned {type(sink).__name__}, expected an ItemSink",
            step_name=step.name,
        )
    return sink


def _copy_counters(result: ChunkResult, step_execution: StepExecution) -> None:
    step_execution.read_count = result.read_count
    step_execution.write_count = result.write_count
    step_execution.filter_count = result.filter_count
    step_execution.commit_count = result.commit_count
    step_execution.rollback_count = result.rollback_count
    step_execution.skip_count = result.skip_count
