"""
JobInstance schema - a job identified by its parameters.

A JobInstance is created the first time a job is launched with a given
identifying parameter set and reused for every relaunch with equivalent
parameters. It owns the JobExecutions (run attempts) made against it.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from .parameters import JobParameters


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class JobInstance:
    """
    A job identified by (job name, identifying parameters).

    Attributes:
        instance_id: Repository-assigned identifier
        job_name: The job this instance belongs to
        job_key: SHA256 identity key of the identifying parameters
        parameters: Parameters of the first launch
        created_at: When the instance was created
    """
    instance_id: int
    job_name: str
    job_key: str
    parameters: JobParameters = field(default_factory=JobParameters)
    created_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        return {
            "instance_id": self.instance_id,
            "job_name": self.job_name,
            "job_key": self.job_key,
            "parameters": self.parameters.to_dict(),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobInstance":
        """Deserialize from dictionary."""
        return cls(
            instance_id=data["instance_id"],
            job_name=data["job_name"],
            job_key=data["job_key"],
            parameters=JobParameters.from_dict(data.get("parameters", {})),
            created_at=datetime.fromisoformat(data["created_at"]),
        )
