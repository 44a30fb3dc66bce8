"""
batchrun - Chunk-oriented batch job runner

Runs jobs made of tasklet and chunk steps. Chunks are committed in
transactions, and every run is recorded in a job repository that refuses
to re-run a completed job instance.
"""

__version__ = "0.1.0"
__author__ = "batchrun maintainers"


__all__ = [
    "BatchConfig",
    "load_config",
    "get_batchrun_home",
    "Job",
    "TaskletStep",
    "ChunkStep",
    "RepeatStatus",
    "FailurePolicy",
    "JobExecutor",
    "run_job",
    "JobLauncher",
    "InMemoryJobRepository",
    "SqliteJobRepository",
]

from .config import BatchConfig, load_config, get_batchrun_home
from .job import Job, TaskletStep, ChunkStep, RepeatStatus, FailurePolicy
from .executor import JobExecutor, run_job
from .run_identity import JobLauncher
from .repository import InMemoryJobRepository, SqliteJobRepository
