"""
JobRepository - Persist job instances and executions.

The JobRepository manages:
- JobInstances (one per job name + identifying parameters)
- JobExecutions (one per run attempt, created atomically)
- StepExecutions (saved as they start, progress and finish)

Duplicate-run detection lives in create_execution(): it checks the
latest execution of the instance and creates the new one under the same
lock (in memory) or the same immediate transaction (SQLite), so two
near-simultaneous launches with equivalent parameters cannot both run a
COMPLETED instance again.

Storage backends:
- In-memory (for testing and single-process use)
- SQLite (durable, safe across threads and processes)
"""

import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional

from batchrun.errors import DuplicateRunError, JobExecutionAlreadyRunningError
from batchrun.schemas import (
    BatchStatus,
    JobExecution,
    JobInstance,
    JobParameters,
    StepExecution,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


def _check_can_create(instance: JobInstance, latest: Optional[JobExecution]) -> None:
    """
    Raise if a new execution may not be created for the instance.

    Raises:
        DuplicateRunError: The latest execution COMPLETED
        JobExecutionAlreadyRunningError: The latest execution is still running
    """
    if latest is None:
        return
    if latest.status == BatchStatus.COMPLETED:
        raise DuplicateRunError(instance.job_name, instance.parameters, instance.instance_id)
    if latest.status.is_running:
        raise JobExecutionAlreadyRunningError(instance.job_name, latest.execution_id)


class JobRepository(ABC):
    """
    Abstract base class for job run storage.

    Implementations must provide methods to:
    - Resolve JobInstances by (job name, parameters)
    - Create JobExecutions with duplicate-run detection
    - Store JobExecutions and StepExecutions
    - Look up executions
    """

    @abstractmethod
    def find_or_create(self, job_name: str, parameters: JobParameters) -> JobInstance:
        """
        Get the instance for these parameters, creating it on first launch.

        Args:
            job_name: Name of the job
            parameters: Launch parameters (identifying ones define the instance)

        Returns:
            The existing or newly created JobInstance
        """
        pass

    @abstractmethod
    def create_execution(self, instance: JobInstance, parameters: Optional[JobParameters] = None) -> JobExecution:
        """
        Atomically create a new STARTING execution for the instance.

        Args:
            instance: The JobInstance to run
            parameters: Launch parameters (defaults to the instance's)

        Returns:
            The new JobExecution

        Raises:
            DuplicateRunError: If the latest execution COMPLETED
            JobExecutionAlreadyRunningError: If the latest execution is running
        """
        pass

    @abstractmethod
    def save(self, job_execution: JobExecution) -> None:
        """
        Store a JobExecution and all of its StepExecutions.

        Args:
            job_execution: The execution to store
        """
        pass

    @abstractmethod
    def save_step_execution(self, job_execution: JobExecution, step_execution: StepExecution) -> None:
        """
        Store progress of one StepExecution.

        Args:
            job_execution: Owning execution
            step_execution: The step execution to store
        """
        pass

    @abstractmethod
    def find_latest_execution(self, instance: JobInstance) -> Optional[JobExecution]:
        """
        Get the most recent execution of an instance.

        Args:
            instance: The JobInstance

        Returns:
            The latest JobExecution, or None if it never ran
        """
        pass

    @abstractmethod
    def get_execution(self, execution_id: int) -> Optional[JobExecution]:
        """Retrieve an execution by ID, or None."""
        pass

    @abstractmethod
    def list_executions(self, instance: JobInstance) -> list[JobExecution]:
        """All executions of an instance, oldest first."""
        pass

    @abstractmethod
    def find_instances(self, job_name: str) -> list[JobInstance]:
        """All instances of a job, oldest first."""
        pass


class InMemoryJobRepository(JobRepository):
    """
    In-memory implementation of JobRepository.

    A single lock serializes all writers. Stored executions are copies, so
    callers mutating their JobExecution do not change stored state until
    they save it.
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._instances: dict[int, JobInstance] = {}
        self._instance_keys: dict[tuple[str, str], int] = {}  # (job_name, job_key) -> instance_id
        self._executions: dict[int, dict] = {}  # execution_id -> serialized JobExecution
        self._instance_executions: dict[int, list[int]] = {}  # instance_id -> execution ids
        self._next_instance_id = 1
        self._next_execution_id = 1

    def find_or_create(self, job_name: str, parameters: JobParameters) -> JobInstance:
        key = (job_name, parameters.identity_key())
        with self._lock:
            instance_id = self._instance_keys.get(key)
            if instance_id is not None:
                return self._instances[instance_id]

            instance = JobInstance(
                instance_id=self._next_instance_id,
                job_name=job_name,
                job_key=key[1],
                parameters=parameters,
            )
            self._next_instance_id += 1
            self._instances[instance.instance_id] = instance
            self._instance_keys[key] = instance.instance_id
            self._instance_executions[instance.instance_id] = []
            logger.debug(f"Created instance {instance.instance_id} of {job_name}")
            return instance

    def create_execution(self, instance: JobInstance, parameters: Optional[JobParameters] = None) -> JobExecution:
        with self._lock:
            _check_can_create(instance, self.find_latest_execution(instance))
            execution = JobExecution(
                execution_id=self._next_execution_id,
                instance_id=instance.instance_id,
                job_name=instance.job_name,
                parameters=parameters if parameters is not None else instance.parameters,
            )
            self._next_execution_id += 1
            self._executions[execution.execution_id] = execution.to_dict()
            self._instance_executions.setdefault(instance.instance_id, []).append(execution.execution_id)
            return execution

    def save(self, job_execution: JobExecution) -> None:
        with self._lock:
            if job_execution.execution_id not in self._executions:
                raise KeyError(f"Unknown execution: {job_execution.execution_id}")
            self._executions[job_execution.execution_id] = job_execution.to_dict()

    def save_step_execution(self, job_execution: JobExecution, step_execution: StepExecution) -> None:
        with self._lock:
            stored = self._executions.get(job_execution.execution_id)
            if stored is None:
                raise KeyError(f"Unknown execution: {job_execution.execution_id}")
            steps = stored["step_executions"]
            data = step_execution.to_dict()
            for i, existing in enumerate(steps):
                if existing["step_name"] == step_execution.step_name:
                    steps[i] = data
                    break
            else:
                steps.append(data)

    def find_latest_execution(self, instance: JobInstance) -> Optional[JobExecution]:
        with self._lock:
            execution_ids = self._instance_executions.get(instance.instance_id, [])
            if not execution_ids:
                return None
            return self.get_execution(max(execution_ids))

    def get_execution(self, execution_id: int) -> Optional[JobExecution]:
        with self._lock:
            data = self._executions.get(execution_id)
            return JobExecution.from_dict(data) if data is not None else None

    def list_executions(self, instance: JobInstance) -> list[JobExecution]:
        with self._lock:
            return [
                JobExecution.from_dict(self._executions[eid])
                for eid in sorted(self._instance_executions.get(instance.instance_id, []))
            ]

    def find_instances(self, job_name: str) -> list[JobInstance]:
        with self._lock:
            return sorted(
                (i for i in self._instances.values() if i.job_name == job_name),
                key=lambda i: i.instance_id,
            )

    def clear(self) -> None:
        """Clear all stored data (for testing)."""
        with self._lock:
            self._instances.clear()
            self._instance_keys.clear()
            self._executions.clear()
            self._instance_executions.clear()


# =============================================================================
# SQLITE
# =============================================================================

SCHEMA = """
CREATE TABLE IF NOT EXISTS job_instance (
    instance_id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_name TEXT NOT NULL,
    job_key TEXT NOT NULL,
    parameters TEXT NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE (job_name, job_key)
);

CREATE TABLE IF NOT EXISTS job_execution (
    execution_id INTEGER PRIMARY KEY AUTOINCREMENT,
    instance_id INTEGER NOT NULL REFERENCES job_instance (instance_id),
    job_name TEXT NOT NULL,
    parameters TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    start_time TEXT,
    end_time TEXT,
    exit_code TEXT NOT NULL,
    exit_description TEXT NOT NULL DEFAULT '',
    failure TEXT
);

CREATE INDEX IF NOT EXISTS job_execution_instance ON job_execution (instance_id);

CREATE TABLE IF NOT EXISTS step_execution (
    execution_id INTEGER NOT NULL REFERENCES job_execution (execution_id),
    seq INTEGER NOT NULL,
    step_name TEXT NOT NULL,
    data TEXT NOT NULL,
    PRIMARY KEY (execution_id, step_name)
);
"""


class SqliteJobRepository(JobRepository):
    """
    SQLite implementation of JobRepository.

    Each operation opens its own connection, so one repository can be
    shared between threads, and separate processes pointing at the same
    file serialize through SQLite's locking:
    - job_instance has UNIQUE (job_name, job_key)
    - create_execution runs in a BEGIN IMMEDIATE transaction, taking the
      write lock before reading the latest execution

    Tables:
        job_instance(instance_id, job_name, job_key, parameters, created_at)
        job_execution(execution_id, instance_id, job_name, parameters, status, ...)
        step_execution(execution_id, seq, step_name, data)

    Args:
        path: Database file (":memory:" is not supported, use InMemoryJobRepository)
        timeout: Seconds to wait for a locked database
    """

    def __init__(self, path: Path | str, timeout: float = 30.0):
        if str(path) == ":memory:":
            raise ValueError("SqliteJobRepository needs a file path; use InMemoryJobRepository for memory")
        self._path = Path(path).expanduser()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._timeout = timeout
        with self._connect() as conn:
            conn.executescript(SCHEMA)

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        # isolation_level=None: statements autocommit unless we BEGIN explicitly
        conn = sqlite3.connect(self._path, timeout=self._timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self, conn: sqlite3.Connection) -> Iterator[None]:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")

    def _row_to_instance(self, row: sqlite3.Row) -> JobInstance:
        return JobInstance(
            instance_id=row["instance_id"],
            job_name=row["job_name"],
            job_key=row["job_key"],
            parameters=JobParameters.from_dict(json.loads(row["parameters"])),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def _load_execution(self, conn: sqlite3.Connection, row: sqlite3.Row) -> JobExecution:
        steps = conn.execute(
            "SELECT data FROM step_execution WHERE execution_id = ? ORDER BY seq",
            (row["execution_id"],),
        ).fetchall()
        return JobExecution.from_dict({
            "execution_id": row["execution_id"],
            "instance_id": row["instance_id"],
            "job_name": row["job_name"],
            "parameters": json.loads(row["parameters"]),
            "status": row["status"],
            "created_at": row["created_at"],
            "start_time": row["start_time"],
            "end_time": row["end_time"],
            "exit_code": row["exit_code"],
            "exit_description": row["exit_description"],
            "failure": json.loads(row["failure"]) if row["failure"] else None,
            "step_executions": [json.loads(s["data"]) for s in steps],
        })

    def _latest_row(self, conn: sqlite3.Connection, instance_id: int) -> Optional[sqlite3.Row]:
        return conn.execute(
            "SELECT * FROM job_execution WHERE instance_id = ? ORDER BY execution_id DESC LIMIT 1",
            (instance_id,),
        ).fetchone()

    def find_or_create(self, job_name: str, parameters: JobParameters) -> JobInstance:
        job_key = parameters.identity_key()
        with self._connect() as conn:
            # INSERT OR IGNORE leans on the unique constraint when two launches race
            conn.execute(
                "INSERT OR IGNORE INTO job_instance (job_name, job_key, parameters, created_at) "
                "VALUES (?, ?, ?, ?)",
                (job_name, job_key, json.dumps(parameters.to_dict()), _utcnow().isoformat()),
            )
            row = conn.execute(
                "SELECT * FROM job_instance WHERE job_name = ? AND job_key = ?",
                (job_name, job_key),
            ).fetchone()
        return self._row_to_instance(row)

    def create_execution(self, instance: JobInstance, parameters: Optional[JobParameters] = None) -> JobExecution:
        params = parameters if parameters is not None else instance.parameters
        with self._connect() as conn:
            with self._transaction(conn):
                latest_row = self._latest_row(conn, instance.instance_id)
                latest = self._load_execution(conn, latest_row) if latest_row is not None else None
                _check_can_create(instance, latest)

                created_at = _utcnow()
                cursor = conn.execute(
                    "INSERT INTO job_execution "
                    "(instance_id, job_name, parameters, status, created_at, exit_code) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (
                        instance.instance_id,
                        instance.job_name,
                        json.dumps(params.to_dict()),
                        BatchStatus.STARTING.value,
                        created_at.isoformat(),
                        "EXECUTING",
                    ),
                )
                execution_id = cursor.lastrowid

        return JobExecution(
            execution_id=execution_id,
            instance_id=instance.instance_id,
            job_name=instance.job_name,
            parameters=params,
            created_at=created_at,
        )

    def _write_step(self, conn: sqlite3.Connection, execution_id: int, seq: int, step_execution: StepExecution) -> None:
        conn.execute(
            "INSERT INTO step_execution (execution_id, seq, step_name, data) VALUES (?, ?, ?, ?) "
            "ON CONFLICT (execution_id, step_name) DO UPDATE SET data = excluded.data",
            (execution_id, seq, step_execution.step_name, json.dumps(step_execution.to_dict())),
        )

    def save(self, job_execution: JobExecution) -> None:
        with self._connect() as conn:
            with self._transaction(conn):
                cursor = conn.execute(
                    "UPDATE job_execution SET status = ?, start_time = ?, end_time = ?, "
                    "exit_code = ?, exit_description = ?, failure = ? WHERE execution_id = ?",
                    (
                        job_execution.status.value,
                        job_execution.start_time.isoformat() if job_execution.start_time else None,
                        job_execution.end_time.isoformat() if job_execution.end_time else None,
                        job_execution.exit_code,
                        job_execution.exit_description,
                        json.dumps(job_execution.failure) if job_execution.failure else None,
                        job_execution.execution_id,
                    ),
                )
                if cursor.rowcount == 0:
                    raise KeyError(f"Unknown execution: {job_execution.execution_id}")
                for seq, step_execution in enumerate(job_execution.step_executions):
                    self._write_step(conn, job_execution.execution_id, seq, step_execution)

    def save_step_execution(self, job_execution: JobExecution, step_execution: StepExecution) -> None:
        seq = next(
            (i for i, s in enumerate(job_execution.step_executions) if s.step_name == step_execution.step_name),
            len(job_execution.step_executions),
        )
        with self._connect() as conn:
            self._write_step(conn, job_execution.execution_id, seq, step_execution)

    def find_latest_execution(self, instance: JobInstance) -> Optional[JobExecution]:
        with self._connect() as conn:
            row = self._latest_row(conn, instance.instance_id)
            return self._load_execution(conn, row) if row is not None else None

    def get_execution(self, execution_id: int) -> Optional[JobExecution]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM job_execution WHERE execution_id = ?", (execution_id,)
            ).fetchone()
            return self._load_execution(conn, row) if row is not None else None

    def list_executions(self, instance: JobInstance) -> list[JobExecution]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM job_execution WHERE instance_id = ? ORDER BY execution_id",
                (instance.instance_id,),
            ).fetchall()
            return [self._load_execution(conn, row) for row in rows]

    def find_instances(self, job_name: str) -> list[JobInstance]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM job_instance WHERE job_name = ? ORDER BY instance_id",
                (job_name,),
            ).fetchall()
        return [self._row_to_instance(row) for row in rows]
