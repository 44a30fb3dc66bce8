"""
Run identity - decide whether a launch is a new run or a re-run.

A launch re-runs a JobInstance when its identifying parameters are
equivalent to an earlier launch. Re-running a COMPLETED instance is
refused with DuplicateRunError. Strategies here add a discriminator
parameter before launch:

- NoRunIdentity: parameters as given (re-runs are detected as duplicates)
- UniqueRunIdentity: a fresh UUID every launch, so every launch is new
- DailyRunIdentity: today's date, so the job runs at most once per day

The JobLauncher applies a strategy and hands the result to a JobExecutor,
which checks the JobRepository.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from datetime import date
from typing import Callable, Optional

from batchrun.executor import JobExecutor
from batchrun.job import Job
from batchrun.repository import JobRepository
from batchrun.schemas import JobExecution, JobParameters

logger = logging.getLogger(__name__)


class RunIdentity(ABC):
    """Derives the parameter set of a launch."""

    @abstractmethod
    def apply(self, parameters: JobParameters) -> JobParameters:
        """Return the parameters to launch with."""
        pass


class NoRunIdentity(RunIdentity):
    """Launch with the parameters as given."""

    def apply(self, parameters: JobParameters) -> JobParameters:
        return parameters


class UniqueRunIdentity(RunIdentity):
    """
    Add a fresh UUID4 string so every launch creates a new instance.

    Args:
        key: Parameter name for the token
        token_factory: Produces the token (default: uuid4 string)
    """

    def __init__(self, key: str = "run.id", token_factory: Optional[Callable[[], str]] = None):
        self._key = key
        self._token_factory = token_factory or (lambda: str(uuid.uuid4()))

    @property
    def key(self) -> str:
        return self._key

    def apply(self, parameters: JobParameters) -> JobParameters:
        return parameters.with_parameter(self._key, self._token_factory())


class DailyRunIdentity(RunIdentity):
    """
    Add today's date (no time component) so the job runs at most once a day.

    A second launch on the same day with otherwise equivalent parameters
    resolves to the same instance and is refused once that instance has
    completed.

    Args:
        key: Parameter name for the date
        clock: Returns the current date (default: date.today)
    """

    def __init__(self, key: str = "run.date", clock: Optional[Callable[[], date]] = None):
        self._key = key
        self._clock = clock or date.today

    @property
    def key(self) -> str:
        return self._key

    def apply(self, parameters: JobParameters) -> JobParameters:
        today = self._clock()
        # A datetime would add a time component and defeat the once-a-day rule
        if not isinstance(today, date) or hasattr(today, "hour"):
            raise TypeError(f"clock must return a date, got {today!r}")
        return parameters.with_parameter(self._key, today)


IDENTITIES: dict[str, Callable[[], RunIdentity]] = {
    "none": NoRunIdentity,
    "unique": UniqueRunIdentity,
    "daily": DailyRunIdentity,
}


def get_run_identity(name: str) -> RunIdentity:
    """Get a run identity strategy by name ("none", "unique", "daily")."""
    try:
        return IDENTITIES[name]()
    except KeyError:
        raise ValueError(f"Unknown run identity '{name}' (valid: {', '.join(IDENTITIES)})")


class JobLauncher:
    """
    Launch jobs with a run identity strategy.

    Usage:
        launcher = JobLauncher(repository)
        execution = launcher.launch(job, JobParameters(), identity=UniqueRunIdentity())
        print(f"InstanceId: {execution.instance_id}")

    Args:
        repository: JobRepository shared by all launches
        executor: JobExecutor to run with (defaults to one over the repository)
    """

    def __init__(self, repository: JobRepository, executor: Optional[JobExecutor] = None):
        self._repository = repository
        self._executor = executor or JobExecutor(repository=repository)

    @property
    def executor(self) -> JobExecutor:
        return self._executor

    def launch(
        self,
        job: Job,
        parameters: Optional[JobParameters] = None,
        identity: Optional[RunIdentity] = None,
    ) -> JobExecution:
        """
        Launch a job.

        Args:
            job: The job definition
            parameters: Caller parameters (default: none)
            identity: Strategy adding a discriminator (default: none)

        Returns:
            The terminal JobExecution

        Raises:
            DuplicateRunError: If the derived parameters identify a completed instance
        """
        identity = identity or NoRunIdentity()
        run_parameters = identity.apply(parameters if parameters is not None else JobParameters())
        logger.info(f"Launching {job.name} with {run_parameters}")

        execution = self._executor.run(job, run_parameters)
        logger.info(f"InstanceId: {execution.instance_id} status={execution.status.value}")
        return execution
