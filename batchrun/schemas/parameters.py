"""
JobParameters schema - the typed launch parameters of a job run.

JobParameters are immutable. Their identifying content determines which
JobInstance a launch belongs to: two launches with equivalent parameters
resolve to the same instance, which is how duplicate runs are detected.
"""

import hashlib
import json
import re
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Iterator, Optional


class ParameterType(str, Enum):
    """Supported parameter value types."""
    STRING = "string"
    LONG = "long"
    DOUBLE = "double"
    DATE = "date"
    DATETIME = "datetime"

    @classmethod
    def of(cls, value: Any) -> "ParameterType":
        """Infer the parameter type of a Python value."""
        # bool is an int subclass and has no parameter type
        if isinstance(value, bool):
            raise TypeError(f"Unsupported parameter value type: {type(value).__name__}")
        if isinstance(value, str):
            return cls.STRING
        if isinstance(value, int):
            return cls.LONG
        if isinstance(value, float):
            return cls.DOUBLE
        # datetime is a date subclass; check it first
        if isinstance(value, datetime):
            return cls.DATETIME
        if isinstance(value, date):
            return cls.DATE
        raise TypeError(f"Unsupported parameter value type: {type(value).__name__}")

    def parse(self, text: str) -> Any:
        """Parse a string into a value of this type."""
        if self == ParameterType.STRING:
            return text
        if self == ParameterType.LONG:
            return int(text)
        if self == ParameterType.DOUBLE:
            return float(text)
        if self == ParameterType.DATE:
            return date.fromisoformat(text)
        return datetime.fromisoformat(text)

    def to_json(self, value: Any) -> Any:
        if self in (ParameterType.DATE, ParameterType.DATETIME):
            return value.isoformat()
        return value

    def from_json(self, value: Any) -> Any:
        if self in (ParameterType.DATE, ParameterType.DATETIME):
            return self.parse(value)
        return value


@dataclass(frozen=True)
class JobParameter:
    """
    A single typed parameter value.

    Attributes:
        value: The parameter value
        type: The parameter type
        identifying: Whether the value takes part in instance identity
    """
    value: Any
    type: ParameterType
    identifying: bool = True

    def __post_init__(self):
        actual = ParameterType.of(self.value)
        if actual != self.type:
            raise TypeError(
                f"Parameter value {self.value!r} is {actual.value}, not {self.type.value}"
            )

    @classmethod
    def of(cls, value: Any, identifying: bool = True) -> "JobParameter":
        return cls(value=value, type=ParameterType.of(value), identifying=identifying)

    def to_dict(self) -> dict[str, Any]:
        return {
            "value": self.type.to_json(self.value),
            "type": self.type.value,
            "identifying": self.identifying,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobParameter":
        param_type = ParameterType(data["type"])
        return cls(
            value=param_type.from_json(data["value"]),
            type=param_type,
            identifying=data.get("identifying", True),
        )


class JobParameters(Mapping):
    """
    Immutable mapping of parameter name to value.

    Indexing returns the raw value; use parameter() for the typed
    JobParameter. Equality compares every parameter; equivalent_to()
    compares only identifying ones, which is what instance identity uses.

    Example:
        params = JobParameters({"run.date": date(2024, 1, 1), "input": "movies.csv"})
        params["input"]        # "movies.csv"
        params.identity_key()  # sha256 hex of the identifying content
    """

    def __init__(self, parameters: Optional[Mapping[str, Any]] = None):
        items: dict[str, JobParameter] = {}
        for name, value in (parameters or {}).items():
            if not isinstance(name, str) or not name:
                raise ValueError(f"Parameter names must be non-empty strings, got {name!r}")
            items[name] = value if isinstance(value, JobParameter) else JobParameter.of(value)
        self._parameters = items

    def __getitem__(self, name: str) -> Any:
        return self._parameters[name].value

    def __iter__(self) -> Iterator[str]:
        return iter(self._parameters)

    def __len__(self) -> int:
        return len(self._parameters)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, JobParameters):
            return NotImplemented
        return self._parameters == other._parameters

    def __hash__(self) -> int:
        return hash(tuple(sorted(self._parameters.items(), key=lambda kv: kv[0])))

    def __repr__(self) -> str:
        inner = ", ".join(f"{k}={p.value!r}" for k, p in self._parameters.items())
        return f"JobParameters({inner})"

    def parameter(self, name: str) -> JobParameter:
        """Get the typed parameter by name."""
        return self._parameters[name]

    def identifying(self) -> dict[str, JobParameter]:
        """Get the identifying parameters."""
        return {k: p for k, p in self._parameters.items() if p.identifying}

    def equivalent_to(self, other: "JobParameters") -> bool:
        """True if both identify the same job instance."""
        return self.identifying() == other.identifying()

    def identity_key(self) -> str:
        """
        Content hash of the identifying parameters.

        The hash covers name, type and value of each identifying parameter
        in a canonical JSON form, so it is stable across processes.
        """
        canonical = {
            name: [p.type.value, p.type.to_json(p.value)]
            for name, p in self.identifying().items()
        }
        blob = json.dumps(canonical, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(blob.encode()).hexdigest()

    def with_parameter(self, name: str, value: Any, identifying: bool = True) -> "JobParameters":
        """Return a copy with one parameter added or replaced."""
        merged = dict(self._parameters)
        merged[name] = JobParameter.of(value, identifying=identifying)
        return JobParameters(merged)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        return {name: p.to_dict() for name, p in self._parameters.items()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobParameters":
        """Deserialize from dictionary."""
        return cls({name: JobParameter.from_dict(p) for name, p in data.items()})


class JobParametersBuilder:
    """
    Fluent builder for JobParameters.

    Example:
        params = (
            JobParametersBuilder()
            .add_string("uuid", str(uuid.uuid4()))
            .add_date("run.date", date.today())
            .to_job_parameters()
        )
    """

    def __init__(self, parameters: Optional[JobParameters] = None):
        self._parameters: dict[str, JobParameter] = {}
        if parameters is not None:
            for name in parameters:
                self._parameters[name] = parameters.parameter(name)

    def _add(self, name: str, value: Any, param_type: ParameterType, identifying: bool) -> "JobParametersBuilder":
        self._parameters[name] = JobParameter(value=value, type=param_type, identifying=identifying)
        return self

    def add_string(self, name: str, value: str, identifying: bool = True) -> "JobParametersBuilder":
        return self._add(name, value, ParameterType.STRING, identifying)

    def add_long(self, name: str, value: int, identifying: bool = True) -> "JobParametersBuilder":
        return self._add(name, value, ParameterType.LONG, identifying)

    def add_double(self, name: str, value: float, identifying: bool = True) -> "JobParametersBuilder":
        return self._add(name, value, ParameterType.DOUBLE, identifying)

    def add_date(self, name: str, value: date, identifying: bool = True) -> "JobParametersBuilder":
        return self._add(name, value, ParameterType.DATE, identifying)

    def add_datetime(self, name: str, value: datetime, identifying: bool = True) -> "JobParametersBuilder":
        return self._add(name, value, ParameterType.DATETIME, identifying)

    def add(self, name: str, value: Any, identifying: bool = True) -> "JobParametersBuilder":
        return self._add(name, value, ParameterType.of(value), identifying)

    def to_job_parameters(self) -> JobParameters:
        return JobParameters(self._parameters)


# name(type)=value, type optional (defaults to string)
PARAMETER_ARG_PATTERN = re.compile(r"^(?P<name>[^=()]+?)(?:\((?P<type>[a-z]+)\))?=(?P<value>.*)$")


def parse_parameter_arg(arg: str) -> tuple[str, JobParameter]:
    """
    Parse a command-line parameter of the form ``name(type)=value``.

    Args:
        arg: e.g. "input=movies.csv", "year(long)=1996", "run.date(date)=2024-01-31"

    Returns:
        Tuple of (name, JobParameter)

    Raises:
        ValueError: If the argument is malformed or the value does not parse
    """
    match = PARAMETER_ARG_PATTERN.match(arg.strip())
    if not match:
        raise ValueError(f"Invalid parameter '{arg}', expected name(type)=value")

    name = match.group("name").strip()
    type_name = match.group("type") or ParameterType.STRING.value
    try:
        param_type = ParameterType(type_name)
    except ValueError:
        valid = ", ".join(t.value for t in ParameterType)
        raise ValueError(f"Unknown parameter type '{type_name}' (valid: {valid})")

    return name, JobParameter(value=param_type.parse(match.group("value")), type=param_type)
