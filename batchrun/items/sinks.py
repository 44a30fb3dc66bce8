"""
Item sinks - where chunk steps write items to.

An ItemSink receives one chunk (an ordered list of items) per write()
call. Success or failure is per chunk: write() either returns normally or
raises, and the orchestrator commits or rolls back the chunk's transaction
accordingly.

Known limitation: only effects that go through the step's transaction are
rolled back. A sink that prints, sends a request, or writes to a store the
transaction manager does not control keeps those effects when its chunk is
rolled back. Sinks needing exactly-once effects must make them idempotent
themselves.
"""

import logging
import sqlite3
from abc import ABC, abstractmethod
from typing import Any, Optional, Sequence

from rich.console import Console

logger = logging.getLogger(__name__)


class ItemSink(ABC):
    """
    Abstract base class for item sinks.

    Implementations must provide write(). open() and close() default to
    no-ops.
    """

    def open(self) -> None:
        """Acquire resources before the first chunk."""
        pass

    @abstractmethod
    def write(self, chunk: list[Any]) -> None:
        """
        Write one chunk.

        Args:
            chunk: Items in read order

        Raises:
            Exception: Any failure; the chunk is rolled back and reported as a WriteError
        """
        pass

    def close(self) -> None:
        """Release resources after the last chunk."""
        pass


class ListItemSink(ItemSink):
    """
    Collects written chunks in memory.

    Attributes:
        chunks: Every chunk passed to write(), in order
    """

    def __init__(self):
        self.chunks: list[list[Any]] = []

    def write(self, chunk: list[Any]) -> None:
        self.chunks.append(list(chunk))

    @property
    def items(self) -> list[Any]:
        """All written items, flattened."""
        return [item for chunk in self.chunks for item in chunk]


class ConsoleItemSink(ItemSink):
    """
    Prints each item to the console.

    Printing is not transactional: items printed for a chunk that is later
    rolled back stay printed.
    """

    def __init__(self, console: Optional[Console] = None, prefix: str = ""):
        self._console = console or Console()
        self._prefix = prefix

    def write(self, chunk: list[Any]) -> None:
        for item in chunk:
            self._console.print(f"{self._prefix}{item}", highlight=False)


class SqliteItemSink(ItemSink):
    """
    Inserts dict items as rows of a SQLite table.

    The sink only executes statements; commit and rollback belong to the
    SqliteTransactionManager sharing the same connection, so a failed
    chunk leaves no rows behind.

    Args:
        connection: Connection shared with the step's SqliteTransactionManager
        table: Target table name
        columns: Columns to insert; defaults to the keys of the first item
        create_table: Create the table (all TEXT columns) if it does not exist
    """

    def __init__(
        self,
        connection: sqlite3.Connection,
        table: str,
        columns: Optional[Sequence[str]] = None,
        create_table: bool = True,
    ):
        self._connection = connection
        self._table = table
        self._columns = list(columns) if columns is not None else None
        self._create_table = create_table

    def _ensure_table(self, columns: Sequence[str]) -> None:
        # Runs every chunk: a rolled-back chunk also rolls back the DDL
        if not self._create_table:
            return
        col_defs = ", ".join(f'"{col}"' for col in columns)
        self._connection.execute(f'CREATE TABLE IF NOT EXISTS "{self._table}" ({col_defs})')

    def write(self, chunk: list[Any]) -> None:
        if not chunk:
            return
        columns = self._columns or list(chunk[0].keys())
        self._ensure_table(columns)

        placeholders = ", ".join("?" * len(columns))
        col_names = ", ".join(f'"{c}"' for c in columns)
        insert_sql = f'INSERT INTO "{self._table}" ({col_names}) VALUES ({placeholders})'
        rows = [tuple(item[c] for c in columns) for item in chunk]
        self._connection.executemany(insert_sql, rows)
        logger.debug(f"Inserted {len(rows)} rows into {self._table}")
