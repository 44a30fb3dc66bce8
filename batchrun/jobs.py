"""
Builtin jobs shipped with batchrun.

hello: one tasklet step greeting the run by its "run.id" parameter.
Launched with the unique identity by default, so every launch is a new
job instance.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Optional

import click

from batchrun.job import Job, RepeatStatus, StepContext, TaskletStep

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BuiltinJob:
    """
    A job defined in code.

    Attributes:
        factory: Builds the Job
        identity: Default run identity ("none", "unique", "daily")
        description: One-line summary for `batchrun jobs list`
    """
    factory: Callable[[], Job]
    identity: str = "none"
    description: str = ""


def hello_tasklet(context: StepContext) -> RepeatStatus:
    run_id = context.job_parameters.get("run.id")
    logger.info(f"hello tasklet invoked for run {run_id}")
    click.echo(f"Hello, batch! your run id is {run_id}")
    return RepeatStatus.FINISHED


def hello_job() -> Job:
    return Job(name="hello", steps=[TaskletStep(name="step1", tasklet=hello_tasklet)])


BUILTIN_JOBS: dict[str, BuiltinJob] = {
    "hello": BuiltinJob(
        factory=hello_job,
        identity="unique",
        description="Print a greeting with the run id",
    ),
}


def get_builtin_job(name: str) -> Optional[BuiltinJob]:
    """Get a builtin job by name, or None."""
    return BUILTIN_JOBS.get(name)
