"""
batchrun.schemas - Record types for job runs.

JobParameters -> JobInstance -> JobExecution -> StepExecution

Lifecycle:
1. JobParameters: Typed launch parameters; identifying ones define the instance
2. JobInstance: A job identified by (job name, identity key of parameters)
3. JobExecution: One attempt to run a JobInstance
4. StepExecution: One attempt to run a Step inside a JobExecution
"""

from .parameters import (
    ParameterType,
    JobParameter,
    JobParameters,
    JobParametersBuilder,
    parse_parameter_arg,
)
from .job_instance import (
    JobInstance,
)
from .execution import (
    BatchStatus,
    JobExecution,
    StepExecution,
    EXIT_EXECUTING,
    EXIT_COMPLETED_WITH_SKIPS,
)
from .job_def import (
    StepKind,
    StepDef,
    JobDef,
)

__all__ = [
    # Parameters
    "ParameterType",
    "JobParameter",
    "JobParameters",
    "JobParametersBuilder",
    "parse_parameter_arg",
    # Job Instance
    "JobInstance",
    # Executions
    "BatchStatus",
    "JobExecution",
    "StepExecution",
    "EXIT_EXECUTING",
    "EXIT_COMPLETED_WITH_SKIPS",
    # Definitions
    "StepKind",
    "StepDef",
    "JobDef",
]
