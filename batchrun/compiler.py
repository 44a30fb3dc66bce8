"""
Compiler - turn a JobDef into a runnable Job.

Compilation resolves:
- Source and sink configs into ItemSource / ItemSink objects
- "module:attr" references into tasklet and transform callables
- Missing chunk sizes and failure policies from BatchConfig defaults
- Relative file paths against the definition file's directory
- "{name}" references in flat_file paths against the launch's job
  parameters, when each execution builds its source

SQLite sinks open a connection at compile time and get a
SqliteTransactionManager over the same connection, so each chunk's rows
commit or roll back together. The CompiledJob owns these connections;
close it (or use it as a context manager) after the run.
"""

import importlib
import logging
import re
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional, Union

from batchrun.config import BatchConfig
from batchrun.errors import BatchError
from batchrun.items import (
    ConsoleItemSink,
    FlatFileItemSource,
    ItemSink,
    ItemSource,
    ListItemSink,
    ListItemSource,
    SqliteItemSink,
)
from batchrun.job import ChunkStep, FailurePolicy, Job, SourceFactory, Step, StepContext, TaskletStep
from batchrun.schemas import JobDef, StepDef, StepKind
from batchrun.transaction import SqliteTransactionManager, TransactionManager

logger = logging.getLogger(__name__)

PARAMETER_REFERENCE = re.compile(r"\{([^{}]+)\}")


class CompileError(BatchError):
    """Raised when a JobDef cannot be compiled."""
    pass


def load_callable(reference: str) -> Callable[..., Any]:
    """Load a callable by "module:attr" reference.

    Args:
        reference: e.g. "movies.transforms:normalize"

    Returns:
        The callable

    Raises:
        ValueError: If the reference is malformed
        ImportError: If the module is not found
        AttributeError: If the attribute is not found in the module
        TypeError: If the attribute is not callable
    """
    if not isinstance(reference, str) or ":" not in reference:
        raise ValueError(f"Callable reference must be 'module:attr', got: {reference!r}")

    module_path, attr_name = reference.rsplit(":", 1)
    if not module_path or not attr_name:
        raise ValueError(f"Callable reference must be 'module:attr', got: {reference!r}")

    try:
        module = importlib.import_module(module_path)
    except ImportError as e:
        raise ImportError(f"Cannot import module '{module_path}': {e}") from e

    target: Any = module
    for part in attr_name.split("."):
        try:
            target = getattr(target, part)
        except AttributeError as e:
            raise AttributeError(f"'{attr_name}' not found in '{module_path}': {e}") from e

    if not callable(target):
        raise TypeError(f"'{reference}' is not callable")
    return target


@dataclass
class CompiledJob:
    """
    A compiled Job plus the resources it holds open.

    Attributes:
        job: The runnable Job
        identity: Default run identity name from the definition
        connections: SQLite connections opened for sinks
    """
    job: Job
    identity: str = "none"
    connections: list[sqlite3.Connection] = field(default_factory=list)

    def close(self) -> None:
        for conn in self.connections:
            conn.close()
        self.connections.clear()

    def __enter__(self) -> "CompiledJob":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class _Compilation:
    """State of one compile_job call."""

    def __init__(self, config: BatchConfig, base_dir: Optional[Path]):
        self.config = config
        self.base_dir = base_dir
        self.connections: dict[Path, sqlite3.Connection] = {}

    def resolve_path(self, value: str) -> Path:
        path = Path(value).expanduser()
        if not path.is_absolute() and self.base_dir is not None:
            path = self.base_dir / path
        return path

    def connect(self, value: str) -> sqlite3.Connection:
        path = self.resolve_path(value)
        if path not in self.connections:
            path.parent.mkdir(parents=True, exist_ok=True)
            self.connections[path] = sqlite3.connect(str(path), isolation_level=None)
        return self.connections[path]

    def close(self) -> None:
        for conn in self.connections.values():
            conn.close()
        self.connections.clear()


def _flat_file_factory(template: str, options: dict[str, Any], state: _Compilation) -> SourceFactory:
    """
    Factory building a FlatFileItemSource per execution.

    "{name}" in the path is replaced by the job parameter of that name, so
    one definition can read a different file on every launch.
    """
    # Reject bad options at compile time; the constructor does not touch the file
    FlatFileItemSource(template, **options)

    def build(context: StepContext) -> FlatFileItemSource:
        def substitute(match: re.Match) -> str:
            name = match.group(1)
            if name not in context.job_parameters:
                raise ValueError(f"path '{template}' needs job parameter '{name}'")
            return str(context.job_parameters[name])

        path = PARAMETER_REFERENCE.sub(substitute, template)
        return FlatFileItemSource(state.resolve_path(path), **options)

    return build


def _build_source(step_name: str, settings: dict[str, Any], state: _Compilation) -> Union[ItemSource, SourceFactory]:
    options = {k: v for k, v in settings.items() if k != "type"}
    source_type = settings["type"]

    if source_type == "list":
        return ListItemSource(options.get("items") or [])
    if source_type == "flat_file":
        if "path" not in options:
            raise CompileError(f"Step '{step_name}': flat_file source needs a 'path'")
        return _flat_file_factory(str(options.pop("path")), options, state)
    if source_type == "custom":
        factory = load_callable(options.pop("factory"))
        source = factory(**options)
        if not isinstance(source, ItemSource):
            raise CompileError(f"Step '{step_name}': custom source factory returned {type(source).__name__}")
        return source
    raise CompileError(f"Step '{step_name}': unknown source type '{source_type}'")


def _build_sink(
    step_name: str, settings: dict[str, Any], state: _Compilation
) -> tuple[ItemSink, Optional[TransactionManager]]:
    options = {k: v for k, v in settings.items() if k != "type"}
    sink_type = settings["type"]

    if sink_type == "console":
        return ConsoleItemSink(prefix=options.get("prefix", "")), None
    if sink_type == "list":
        return ListItemSink(), None
    if sink_type == "sqlite":
        if "path" not in options or "table" not in options:
            raise CompileError(f"Step '{step_name}': sqlite sink needs 'path' and 'table'")
        conn = state.connect(options.pop("path"))
        return SqliteItemSink(conn, **options), SqliteTransactionManager(conn)
    if sink_type == "custom":
        factory = load_callable(options.pop("factory"))
        sink = factory(**options)
        if not isinstance(sink, ItemSink):
            raise CompileError(f"Step '{step_name}': custom sink factory returned {type(sink).__name__}")
        return sink, None
    raise CompileError(f"Step '{step_name}': unknown sink type '{sink_type}'")


def _compile_step(step_def: StepDef, state: _Compilation) -> Step:
    if step_def.kind == StepKind.TASKLET:
        return TaskletStep(
            name=step_def.name,
            tasklet=load_callable(step_def.tasklet),
            allow_start_if_complete=step_def.allow_start_if_complete,
        )

    source = _build_source(step_def.name, step_def.source, state)
    sink, transaction_manager = _build_sink(step_def.name, step_def.sink, state)
    transform = load_callable(step_def.transform) if step_def.transform else None
    return ChunkStep(
        name=step_def.name,
        source=source,
        sink=sink,
        chunk_size=step_def.chunk_size if step_def.chunk_size is not None else state.config.chunk_size,
        transform=transform,
        failure_policy=FailurePolicy.from_string(step_def.failure_policy or state.config.failure_policy),
        allow_start_if_complete=step_def.allow_start_if_complete,
        transaction_manager=transaction_manager,
    )


def compile_job(
    job_def: JobDef,
    config: Optional[BatchConfig] = None,
    base_dir: Optional[Path] = None,
) -> CompiledJob:
    """
    Compile a JobDef into a runnable Job.

    Args:
        job_def: The job definition
        config: Supplies default chunk size and failure policy
        base_dir: Directory that relative paths are resolved against

    Returns:
        CompiledJob holding the Job and any opened connections

    Raises:
        CompileError: If a source, sink, callable or step setting is invalid
    """
    state = _Compilation(config or BatchConfig(), base_dir)
    try:
        steps = [_compile_step(step_def, state) for step_def in job_def.steps]
        job = Job(name=job_def.name, steps=steps)
    except CompileError:
        state.close()
        raise
    except (ImportError, AttributeError, KeyError, TypeError, ValueError, OSError, sqlite3.Error) as e:
        state.close()
        raise CompileError(f"Cannot compile job '{job_def.name}': {e}") from e

    logger.debug(f"Compiled job {job.name} with {len(job.steps)} steps")
    return CompiledJob(job=job, identity=job_def.identity, connections=list(state.connections.values()))
