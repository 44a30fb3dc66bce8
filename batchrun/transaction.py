"""
Transaction managers - the commit boundary around each chunk.

The chunk orchestrator runs every chunk (transform + write) and the step
executor runs every tasklet invocation inside transaction(). The block
commits when it exits normally and rolls back when it raises.

Only storage the manager controls is covered. See batchrun.items.sinks
for the limitation on sink side effects outside the transaction.
"""

import logging
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Iterator

logger = logging.getLogger(__name__)


class TransactionManager(ABC):
    """Abstract base class for transaction managers."""

    @abstractmethod
    def begin(self) -> None:
        pass

    @abstractmethod
    def commit(self) -> None:
        pass

    @abstractmethod
    def rollback(self) -> None:
        pass

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """
        Scope a unit of work.

        Commits on normal exit. Rolls back and re-raises when the block
        raises, or when the commit itself fails.
        """
        self.begin()
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        try:
            self.commit()
        except Exception:
            self.rollback()
            raise


class ResourcelessTransactionManager(TransactionManager):
    """
    Transaction manager with no underlying resource.

    Used when the sink has no transactional storage (in-memory lists,
    console output). Commit and rollback only mark the boundary.
    """

    def begin(self) -> None:
        pass

    def commit(self) -> None:
        pass

    def rollback(self) -> None:
        pass


class SqliteTransactionManager(TransactionManager):
    """
    Transaction manager over a sqlite3 connection.

    Issues an explicit BEGIN so every statement of the chunk (including
    DDL) belongs to one transaction, then commits or rolls back the
    connection.
    """

    def __init__(self, connection: sqlite3.Connection):
        self._connection = connection

    @property
    def connection(self) -> sqlite3.Connection:
        return self._connection

    def begin(self) -> None:
        if not self._connection.in_transaction:
            self._connection.execute("BEGIN")

    def commit(self) -> None:
        self._connection.commit()

    def rollback(self) -> None:
        logger.debug("Rolling back sqlite transaction")
        self._connection.rollback()
