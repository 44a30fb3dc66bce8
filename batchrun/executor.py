"""
JobExecutor - run the steps of a Job as one JobExecution.

The JobExecutor implements:
- Instance resolution via the repository (job name + parameters)
- Duplicate-run detection (through repository.create_execution)
- Sequential step dispatch to the StepExecutor
- Short-circuit on a FAILED or STOPPED step
- Restart: steps COMPLETED by an earlier execution of the same instance
  are skipped unless they allow a restart
- Stop requests honored at chunk, tasklet and step boundaries

Execution flow:
1. Find or create the JobInstance
2. Create the JobExecution (STARTING), persisted by the repository
3. Move to STARTED and persist
4. For each step:
   a. Skip it if it already completed for this instance
   b. Execute it, appending its StepExecution
   c. Persist the JobExecution
   d. Stop on FAILED / STOPPED
5. Move to COMPLETED (or FAILED / STOPPED) and persist
"""

import logging
import threading
from typing import Optional

from batchrun.errors import describe_error
from batchrun.job import Job
from batchrun.repository import JobRepository
from batchrun.schemas import (
    BatchStatus,
    JobExecution,
    JobInstance,
    JobParameters,
)
from batchrun.step_executor import StepExecutor
from batchrun.transaction import TransactionManager

logger = logging.getLogger(__name__)


class JobExecutor:
    """
    Execution engine for Jobs.

    Usage:
        executor = JobExecutor(repository=SqliteJobRepository("runs.db"))
        execution = executor.run(job, JobParameters({"run.date": date.today()}))
        execution.status, execution.instance_id

    Normal failures are reported through the returned JobExecution's
    status and failure. run() raises only when the launch itself is
    refused (DuplicateRunError, JobExecutionAlreadyRunningError).

    Args:
        repository: JobRepository for instances and executions
        transaction_manager: Default transaction scope for steps
        step_executor: Custom StepExecutor (defaults to one sharing the repository)
    """

    def __init__(
        self,
        repository: JobRepository,
        transaction_manager: Optional[TransactionManager] = None,
        step_executor: Optional[StepExecutor] = None,
    ):
        self._repository = repository
        self._step_executor = step_executor or StepExecutor(
            repository=repository,
            transaction_manager=transaction_manager,
        )
        self._running: dict[int, JobExecution] = {}
        self._running_lock = threading.Lock()

    @property
    def repository(self) -> JobRepository:
        return self._repository

    def run(self, job: Job, parameters: Optional[JobParameters] = None) -> JobExecution:
        """
        Run a job.

        Args:
            job: The job definition
            parameters: Launch parameters (default: none)

        Returns:
            The terminal JobExecution

        Raises:
            DuplicateRunError: If the instance already completed
            JobExecutionAlreadyRunningError: If the instance is running
        """
        parameters = parameters if parameters is not None else JobParameters()

        instance = self._repository.find_or_create(job.name, parameters)
        execution = self._repository.create_execution(instance, parameters)
        completed_steps = self._completed_steps(instance, execution)

        with self._running_lock:
            self._running[execution.execution_id] = execution
        try:
            self._execute(job, execution, completed_steps)
        finally:
            with self._running_lock:
                self._running.pop(execution.execution_id, None)
        return execution

    def stop(self, execution_id: int) -> bool:
        """
        Request a stop of a running execution owned by this executor.

        The stop takes effect at the next chunk, tasklet invocation, or
        step boundary; the execution ends as STOPPED.

        Returns:
            True if the execution was running here, False otherwise
        """
        with self._running_lock:
            execution = self._running.get(execution_id)
        if execution is None:
            return False
        logger.info(f"Stop requested for execution {execution_id}")
        execution.request_stop()
        return True

    def _completed_steps(self, instance: JobInstance, execution: JobExecution) -> set[str]:
        """Names of steps that COMPLETED in earlier executions of the instance."""
        completed: set[str] = set()
        for previous in self._repository.list_executions(instance):
            if previous.execution_id == execution.execution_id:
                continue
            for step_execution in previous.step_executions:
                if step_execution.status == BatchStatus.COMPLETED:
                    completed.add(step_execution.step_name)
        return completed

    def _execute(self, job: Job, execution: JobExecution, completed_steps: set[str]) -> None:
        execution.start()
        self._repository.save(execution)
        logger.info(
            f"Starting job: {job.name} (instance={execution.instance_id}, execution={execution.execution_id})"
        )
        if completed_steps:
            logger.info(f"  Restart of instance {execution.instance_id}")

        try:
            for step in job.steps:
                if execution.stop_requested:
                    execution.finish(BatchStatus.STOPPED, exit_description=f"Stopped before step '{step.name}'")
                    break

                if step.name in completed_steps and not step.allow_start_if_complete:
                    logger.info(f"  Skipping step {step.name}: already completed for this instance")
                    continue

                step_execution = self._step_executor.execute(step, execution)
                self._repository.save(execution)

                if step_execution.status == BatchStatus.FAILED:
                    failure = dict(step_execution.failure or {})
                    failure["step_name"] = step.name
                    execution.finish(
                        BatchStatus.FAILED,
                        exit_description=f"Step '{step.name}' failed: {step_execution.exit_description}",
                        failure=failure,
                    )
                    break
                if step_execution.status == BatchStatus.STOPPED:
                    execution.finish(BatchStatus.STOPPED, exit_description=f"Stopped in step '{step.name}'")
                    break
            else:
                execution.finish(BatchStatus.COMPLETED)
        except Exception as e:
            # Repository or programming failure outside any step: record it, then surface it
            logger.error(f"Job failed: {job.name}", exc_info=True)
            if not execution.status.is_terminal:
                execution.finish(BatchStatus.FAILED, exit_description=str(e), failure=describe_error(e))
            self._repository.save(execution)
            raise

        self._repository.save(execution)
        if execution.status == BatchStatus.COMPLETED:
            logger.info(f"Job completed: {job.name} (instance={execution.instance_id})")
        else:
            logger.warning(
                f"Job {execution.status.value.lower()}: {job.name} - {execution.exit_description}"
            )


def run_job(
    job: Job,
    parameters: Optional[JobParameters],
    repository: JobRepository,
    transaction_manager: Optional[TransactionManager] = None,
) -> JobExecution:
    """
    Run a job once with a fresh JobExecutor.

    Args:
        job: The job definition
        parameters: Launch parameters
        repository: JobRepository for instances and executions
        transaction_manager: Default transaction scope for steps

    Returns:
        The terminal JobExecution

    Raises:
        DuplicateRunError: If the instance already completed
    """
    executor = JobExecutor(repository=repository, transaction_manager=transaction_manager)
    return executor.run(job, parameters)
