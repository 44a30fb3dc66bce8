"""
JobDef schema - the declarative job definition.

A JobDef is the static, version-controlled description of a job as found
in a YAML or JSON file. The compiler turns it into a Job whose steps hold
live sources, sinks and callables. Callables are referenced as
"module:attribute" strings.

Example (YAML):

    name: import-movies
    identity: daily
    steps:
      - name: load
        type: chunk
        chunk_size: 2
        source:
          type: flat_file
          path: movies.csv
          names: [title, year, rating]
          skip_lines: 1
          types: {year: int}
        transform: movies.transforms:normalize
        sink:
          type: console
      - name: report
        type: tasklet
        tasklet: movies.tasklets:report
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class StepKind(str, Enum):
    """Kind of a step definition."""
    TASKLET = "tasklet"
    CHUNK = "chunk"

    @classmethod
    def from_string(cls, value: str) -> "StepKind":
        try:
            return cls(value.lower())
        except ValueError:
            valid = ", ".join(k.value for k in cls)
            raise ValueError(f"Unknown step type '{value}' (valid: {valid})")


@dataclass(frozen=True)
class StepDef:
    """
    A step definition within a JobDef.

    Attributes:
        name: Step name, unique within the job
        kind: TASKLET or CHUNK
        tasklet: "module:attr" of the tasklet (tasklet steps)
        source: Source config with a "type" key (chunk steps)
        sink: Sink config with a "type" key (chunk steps)
        transform: Optional "module:attr" of the item transform (chunk steps)
        chunk_size: Items per chunk; the configured default when omitted
        failure_policy: "abort_step" or "skip_chunk"; the configured default when omitted
        allow_start_if_complete: Run again on restart even if it completed before
    """
    name: str
    kind: StepKind
    tasklet: Optional[str] = None
    source: Optional[dict[str, Any]] = None
    sink: Optional[dict[str, Any]] = None
    transform: Optional[str] = None
    chunk_size: Optional[int] = None
    failure_policy: Optional[str] = None
    allow_start_if_complete: bool = False

    def __post_init__(self):
        if not self.name:
            raise ValueError("Step name is required")
        if self.kind == StepKind.TASKLET:
            if not self.tasklet:
                raise ValueError(f"Step '{self.name}': tasklet steps need a 'tasklet' reference")
            if self.source is not None or self.sink is not None:
                raise ValueError(f"Step '{self.name}': tasklet steps take no source or sink")
        else:
            if self.tasklet:
                raise ValueError(f"Step '{self.name}': chunk steps take no tasklet")
            for key in ("source", "sink"):
                value = getattr(self, key)
                if not isinstance(value, dict) or "type" not in value:
                    raise ValueError(f"Step '{self.name}': chunk steps need a '{key}' mapping with a 'type'")

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.name, "type": self.kind.value}
        for key in ("tasklet", "source", "sink", "transform", "chunk_size", "failure_policy"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        if self.allow_start_if_complete:
            data["allow_start_if_complete"] = True
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StepDef":
        return cls(
            name=data["name"],
            kind=StepKind.from_string(data.get("type", "chunk" if "source" in data else "tasklet")),
            tasklet=data.get("tasklet"),
            source=data.get("source"),
            sink=data.get("sink"),
            transform=data.get("transform"),
            chunk_size=data.get("chunk_size"),
            failure_policy=data.get("failure_policy"),
            allow_start_if_complete=bool(data.get("allow_start_if_complete", False)),
        )


@dataclass(frozen=True)
class JobDef:
    """
    A job definition.

    Attributes:
        name: Job name
        steps: Ordered step definitions
        description: Free text shown by `batchrun jobs list`
        identity: Default run identity for launches ("none", "unique", "daily")
    """
    name: str
    steps: tuple[StepDef, ...] = field(default_factory=tuple)
    description: Optional[str] = None
    identity: str = "none"

    def __post_init__(self):
        if not self.name:
            raise ValueError("Job name is required")
        if not self.steps:
            raise ValueError(f"Job '{self.name}' has no steps")
        names = [s.name for s in self.steps]
        if len(names) != len(set(names)):
            duplicates = [n for n in names if names.count(n) > 1]
            raise ValueError(f"Duplicate step names: {set(duplicates)}")

    def get_step(self, name: str) -> Optional[StepDef]:
        """Get a step by name."""
        for step in self.steps:
            if step.name == name:
                return step
        return None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON/YAML output."""
        return {
            "name": self.name,
            **({"description": self.description} if self.description else {}),
            "identity": self.identity,
            "steps": [s.to_dict() for s in self.steps],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobDef":
        """Deserialize from dictionary."""
        return cls(
            name=data["name"],
            steps=tuple(StepDef.from_dict(s) for s in data.get("steps") or []),
            description=data.get("description"),
            identity=data.get("identity", "none"),
        )
