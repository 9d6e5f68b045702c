"""Parallel batch execution against one record store.

Records are split into fixed-size batches (stable chunking of the input
order) and up to ``max_parallel`` batch calls run concurrently. A failing
record never aborts its batch, and a failing batch never aborts the run:
failures are collected with their original index and the store's error text.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, TypeVar

from refdata_migration.config import MAX_REQUEST_RECORDS
from refdata_migration.migration.models import (
    BatchError,
    BulkOperationResult,
    KeyMode,
    OperationOutcome,
    Record,
)
from refdata_migration.migration.store import RecordResult, RecordStore
from refdata_migration.reporting.progress import ProgressCallback, ProgressReporter
from refdata_migration.utils.logging import get_logger
from refdata_migration.utils.retry import RetryPolicy, classify_error

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_MAX_PARALLEL = 4
DEFAULT_BATCH_SIZE = 1000


def chunk_records(items: Sequence[T], batch_size: int) -> list[tuple[int, list[T]]]:
    """Split items into consecutive batches.

    Args:
        items: Items in submission order
        batch_size: Maximum items per batch

    Returns:
        List of (offset of the first item, batch)
    """
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")
    return [(i, list(items[i : i + batch_size])) for i in range(0, len(items), batch_size)]


class BatchUpsertExecutor:
    """Runs batched upserts and deletes with bounded parallelism.

    ``last_result`` always holds the aggregate of the most recent call, also
    when that call was cancelled half way.
    """

    def __init__(
        self,
        retry_policy: RetryPolicy | None = None,
        progress_interval: float = 3.0,
    ):
        """Initialize executor.

        Args:
            retry_policy: Retry applied to each whole batch call
            progress_interval: Minimum seconds between progress snapshots
        """
        self.retry_policy = retry_policy or RetryPolicy()
        self.progress_interval = progress_interval
        self.last_result: BulkOperationResult | None = None

    async def execute(
        self,
        store: RecordStore,
        entity_type: str,
        records: Sequence[Record],
        max_parallel: int = DEFAULT_MAX_PARALLEL,
        batch_size: int = DEFAULT_BATCH_SIZE,
        key_mode: KeyMode = KeyMode.NATURAL_KEY,
        progress: ProgressCallback | None = None,
    ) -> BulkOperationResult:
        """Upsert records in parallel batches.

        Args:
            store: Store to write to
            entity_type: Entity type of every record
            records: Records to upsert
            max_parallel: Maximum batch calls in flight
            batch_size: Records per batch call
            key_mode: Identity the store matches records by
            progress: Optional callback receiving progress snapshots

        Returns:
            Aggregated BulkOperationResult
        """

        async def upsert(batch: list[Record]) -> list[RecordResult]:
            return await store.batch_upsert(entity_type, batch, key_mode)

        return await self._run(
            operation="batch_upsert",
            entity_type=entity_type,
            items=records,
            call=upsert,
            max_parallel=max_parallel,
            batch_size=batch_size,
            progress=progress,
        )

    async def execute_delete(
        self,
        store: RecordStore,
        entity_type: str,
        surrogate_ids: Sequence[str],
        max_parallel: int = DEFAULT_MAX_PARALLEL,
        batch_size: int = DEFAULT_BATCH_SIZE,
        progress: ProgressCallback | None = None,
    ) -> BulkOperationResult:
        """Delete records by surrogate id in parallel batches."""

        async def delete(batch: list[str]) -> list[RecordResult]:
            return await store.batch_delete(entity_type, batch)

        return await self._run(
            operation="batch_delete",
            entity_type=entity_type,
            items=surrogate_ids,
            call=delete,
            max_parallel=max_parallel,
            batch_size=batch_size,
            progress=progress,
        )

    async def _run(
        self,
        operation: str,
        entity_type: str,
        items: Sequence[Any],
        call: Callable[[list[Any]], Awaitable[list[RecordResult]]],
        max_parallel: int,
        batch_size: int,
        progress: ProgressCallback | None,
    ) -> BulkOperationResult:
        if max_parallel < 1:
            raise ValueError("max_parallel must be at least 1")
        if not 1 <= batch_size <= MAX_REQUEST_RECORDS:
            raise ValueError(f"batch_size must be between 1 and {MAX_REQUEST_RECORDS}")

        result = BulkOperationResult(total=len(items))
        self.last_result = result
        if not items:
            return result

        chunks = chunk_records(items, batch_size)
        reporter = ProgressReporter(total=len(items), interval=self.progress_interval)
        semaphore = asyncio.Semaphore(max_parallel)
        lock = asyncio.Lock()
        start_time = time.monotonic()

        logger.info(
            f"{operation}_started",
            entity_type=entity_type,
            records=len(items),
            batches=len(chunks),
            batch_size=batch_size,
            max_parallel=max_parallel,
        )

        async def process_batch(batch_num: int, offset: int, batch: list[Any]) -> None:
            async with semaphore:
                try:
                    outcomes = await self.retry_policy.call(
                        call,
                        batch,
                        operation=operation,
                        log_context={"entity_type": entity_type, "batch_num": batch_num},
                    )
                except Exception as e:
                    logger.error(
                        "batch_failed",
                        operation=operation,
                        entity_type=entity_type,
                        batch_num=batch_num,
                        batch_size=len(batch),
                        error_kind=classify_error(e).value,
                        error_type=type(e).__name__,
                        error=str(e),
                    )
                    async with lock:
                        result.failure_count += len(batch)
                        result.errors.extend(
                            BatchError(index=offset + i, message=str(e)) for i in range(len(batch))
                        )
                        snapshot = reporter.observe(len(batch))
                else:
                    async with lock:
                        self._apply_outcomes(result, offset, len(batch), outcomes)
                        snapshot = reporter.observe(len(batch))

                    logger.debug(
                        "batch_completed",
                        operation=operation,
                        entity_type=entity_type,
                        batch_num=batch_num,
                        batch_size=len(batch),
                    )

            if snapshot is not None and progress is not None:
                progress(snapshot)

        tasks = [
            asyncio.create_task(process_batch(num, offset, batch))
            for num, (offset, batch) in enumerate(chunks, start=1)
        ]

        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            result.cancelled = True
            logger.warning(
                f"{operation}_cancelled",
                entity_type=entity_type,
                processed=result.processed,
                total=result.total,
            )
            raise
        finally:
            result.duration = time.monotonic() - start_time

        logger.info(
            f"{operation}_completed",
            entity_type=entity_type,
            total=result.total,
            succeeded=result.success_count,
            created=result.created_count,
            updated=result.updated_count,
            failed=result.failure_count,
            duration_seconds=round(result.duration, 2),
        )
        return result

    @staticmethod
    def _apply_outcomes(
        result: BulkOperationResult,
        offset: int,
        batch_size: int,
        outcomes: Sequence[RecordResult],
    ) -> None:
        """Fold one batch's per-record results into the aggregate. Caller holds the lock."""
        reported: set[int] = set()
        for outcome in outcomes:
            if not 0 <= outcome.index < batch_size or outcome.index in reported:
                continue
            reported.add(outcome.index)

            if outcome.outcome is OperationOutcome.FAILED:
                result.failure_count += 1
                result.errors.append(
                    BatchError(index=offset + outcome.index, message=outcome.error or "Unknown error")
                )
                continue

            result.success_count += 1
            if outcome.outcome is OperationOutcome.CREATED:
                result.created_count += 1
            elif outcome.outcome is OperationOutcome.UPDATED:
                result.updated_count += 1

        for index in range(batch_size):
            if index not in reported:
                result.failure_count += 1
                result.errors.append(
                    BatchError(index=offset + index, message="No result returned by store")
                )
