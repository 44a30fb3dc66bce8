"""
ChunkOrchestrator - chunk-oriented read / transform / write loop.

The orchestrator implements:
- Reading items one at a time until chunk_size items or END_OF_DATA
- Optional per-item transform (None result filters the item out)
- Writing each chunk inside its own transaction
- Commit / rollback accounting per chunk
- Failure policy after a rolled-back chunk (ABORT_STEP or SKIP_CHUNK)
- Stop requests honored at chunk boundaries

Execution flow for each chunk:
1. Read up to chunk_size items (a read failure aborts the step)
2. Open a transaction
3. Transform every item, dropping filtered ones
4. Write the remaining items to the sink
5. Commit, or roll back if step 3 or 4 raised
6. Report counters through on_chunk

The item source is not rewound after a rollback: items of a skipped chunk
are not read again.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from batchrun.errors import BatchError, ReadError, TransformError, WriteError
from batchrun.items.sinks import ItemSink
from batchrun.items.sources import END_OF_DATA, ItemSource
from batchrun.job import FailurePolicy, Transform
from batchrun.transaction import ResourcelessTransactionManager, TransactionManager

logger = logging.getLogger(__name__)


class ChunkStatus(str, Enum):
    """Outcome of a chunk loop."""
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    STOPPED = "STOPPED"


@dataclass
class ChunkResult:
    """
    Counters and outcome of a chunk loop.

    Attributes:
        status: COMPLETED, FAILED or STOPPED
        read_count: Items read from the source
        write_count: Items written in committed chunks
        filter_count: Items dropped by the transform
        commit_count: Chunks committed
        rollback_count: Chunks rolled back
        skip_count: Items in chunks skipped under SKIP_CHUNK
        error: The failure that ended the loop (status FAILED)
        skipped_errors: Failures of chunks skipped under SKIP_CHUNK
    """
    status: ChunkStatus = ChunkStatus.COMPLETED
    read_count: int = 0
    write_count: int = 0
    filter_count: int = 0
    commit_count: int = 0
    rollback_count: int = 0
    skip_count: int = 0
    error: Optional[BatchError] = None
    skipped_errors: list[BatchError] = field(default_factory=list)

    @property
    def chunk_count(self) -> int:
        return self.commit_count + self.rollback_count


class ChunkOrchestrator:
    """
    Drives one chunk step: source -> transform -> sink, chunk by chunk.

    Usage:
        orchestrator = ChunkOrchestrator(failure_policy=FailurePolicy.SKIP_CHUNK)
        result = orchestrator.run(source, transform=None, sink=sink, chunk_size=100)
        result.commit_count, result.rollback_count

    Args:
        transaction_manager: Scope for each chunk (default: resourceless)
        failure_policy: Policy applied after a chunk is rolled back
        on_chunk: Called with the running ChunkResult after every chunk boundary
        should_stop: Checked before each chunk; True ends the loop as STOPPED
    """

    def __init__(
        self,
        transaction_manager: Optional[TransactionManager] = None,
        failure_policy: FailurePolicy = FailurePolicy.ABORT_STEP,
        on_chunk: Optional[Callable[[ChunkResult], None]] = None,
        should_stop: Optional[Callable[[], bool]] = None,
    ):
        self._transaction_manager = transaction_manager or ResourcelessTransactionManager()
        self._failure_policy = failure_policy
        self._on_chunk = on_chunk
        self._should_stop = should_stop

    def run(
        self,
        source: ItemSource,
        transform: Optional[Transform],
        sink: ItemSink,
        chunk_size: int,
    ) -> ChunkResult:
        """
        Process every item of the source.

        Args:
            source: Where items are read from
            transform: Optional per-item function (None result filters the item)
            sink: Where chunks are written
            chunk_size: Items per chunk, positive

        Returns:
            ChunkResult with final counters and status

        Raises:
            ValueError: If chunk_size is not a positive integer
        """
        if isinstance(chunk_size, bool) or not isinstance(chunk_size, int) or chunk_size <= 0:
            raise ValueError(f"chunk_size must be a positive integer, got {chunk_size!r}")

        result = ChunkResult()
        try:
            source.open()
        except Exception as e:
            result.status = ChunkStatus.FAILED
            result.error = ReadError(f"Failed to open source: {e}")
            result.error.__cause__ = e
            self._close(source)
            return result
        try:
            sink.open()
        except Exception as e:
            result.status = ChunkStatus.FAILED
            result.error = WriteError(f"Failed to open sink: {e}")
            result.error.__cause__ = e
            self._close(sink, source)
            return result

        try:
            self._loop(source, transform, sink, chunk_size, result)
        finally:
            self._close(sink, source)
        return result

    def _loop(
        self,
        source: ItemSource,
        transform: Optional[Transform],
        sink: ItemSink,
        chunk_size: int,
        result: ChunkResult,
    ) -> None:
        chunk_number = 0
        while True:
            if self._should_stop is not None and self._should_stop():
                logger.info(f"Stop requested after {result.chunk_count} chunks")
                result.status = ChunkStatus.STOPPED
                return

            try:
                chunk, exhausted = self._read_chunk(source, chunk_size, result)
            except ReadError as e:
                logger.error(f"Read failed: {e}")
                result.status = ChunkStatus.FAILED
                result.error = e
                return

            if chunk:
                chunk_number += 1
                try:
                    written, filtered = self._write_chunk(chunk, transform, sink)
                except WriteError as e:
                    result.rollback_count += 1
                    if self._failure_policy == FailurePolicy.SKIP_CHUNK:
                        logger.warning(f"Chunk {chunk_number} rolled back and skipped: {e}")
                        result.skip_count += len(chunk)
                        result.skipped_errors.append(e)
                        self._notify(result)
                    else:
                        logger.error(f"Chunk {chunk_number} rolled back, aborting step: {e}")
                        result.status = ChunkStatus.FAILED
                        result.error = e
                        self._notify(result)
                        return
                else:
                    result.commit_count += 1
                    result.write_count += written
                    result.filter_count += filtered
                    logger.debug(f"Chunk {chunk_number} committed ({written} written, {filtered} filtered)")
                    self._notify(result)

            if exhausted:
                return

    def _read_chunk(self, source: ItemSource, chunk_size: int, result: ChunkResult) -> tuple[list[Any], bool]:
        """Read up to chunk_size items. Returns (items, source_exhausted)."""
        chunk: list[Any] = []
        while len(chunk) < chunk_size:
            try:
                item = source.read()
            except ReadError:
                raise
            except Exception as e:
                raise ReadError(f"Source failed after {result.read_count} items: {e}") from e
            if item is END_OF_DATA:
                return chunk, True
            result.read_count += 1
            chunk.append(item)
        return chunk, False

    def _write_chunk(self, chunk: list[Any], transform: Optional[Transform], sink: ItemSink) -> tuple[int, int]:
        """
        Transform and write one chunk inside a transaction.

        Returns:
            Tuple of (items written, items filtered)

        Raises:
            WriteError: If the transform or the sink failed; the transaction
                has been rolled back
        """
        try:
            with self._transaction_manager.transaction():
                outputs = self._transform_chunk(chunk, transform)
                if outputs:
                    try:
                        sink.write(outputs)
                    except WriteError:
                        raise
                    except Exception as e:
                        raise WriteError(f"Sink failed for chunk of {len(outputs)} items: {e}") from e
        except WriteError:
            raise
        except Exception as e:
            # begin/commit/rollback of the transaction manager itself failed
            raise WriteError(f"Transaction failed: {e}") from e
        return len(outputs), len(chunk) - len(outputs)

    def _transform_chunk(self, chunk: list[Any], transform: Optional[Transform]) -> list[Any]:
        if transform is None:
            return list(chunk)
        outputs = []
        for index, item in enumerate(chunk):
            try:
                output = transform(item)
            except Exception as e:
                raise TransformError(f"Transform failed on item {index} of chunk: {e}") from e
            if output is not None:
                outputs.append(output)
        return outputs

    def _notify(self, result: ChunkResult) -> None:
        if self._on_chunk is not None:
            self._on_chunk(result)

    def _close(self, *resources: Any) -> None:
        for resource in resources:
            try:
                resource.close()
            except Exception as e:
                logger.warning(f"Failed to close {type(resource).__name__}: {e}")
