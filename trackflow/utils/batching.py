"""
Batch processing for bulk tracker operations.

Items are split into fixed-size batches that run one after another, which
bounds the outstanding work sent to the tracker at any moment.
"""

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, TypeVar

import structlog

log = structlog.get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")


def chunked(items: Sequence[T], size: int) -> list[Sequence[T]]:
    """Split a sequence into consecutive chunks of at most ``size`` items."""
    if size < 1:
        raise ValueError(f"Batch size must be positive, got {size}")
    return [items[i : i + size] for i in range(0, len(items), size)]


class BatchProcessor:
    """Process items in sequential batches with optional pacing."""

    def __init__(self, batch_size: int = 50, delay_between_batches: float = 0.0) -> None:
        if batch_size < 1:
            raise ValueError(f"Batch size must be positive, got {batch_size}")
        self.batch_size = batch_size
        self.delay_between_batches = delay_between_batches

    async def process_batches(
        self,
        items: Sequence[T],
        processor: Callable[[Sequence[T]], Awaitable[Any]],
        on_batch_complete: Callable[[int, list[R]], None] | None = None,
    ) -> list[R]:
        """
        Process items in batches.

        Args:
            items: Items to process
            processor: Async function to process a batch of items
            on_batch_complete: Called with the batch number and all results
                collected so far after every batch

        Returns:
            List of results from all batches
        """
        results: list[R] = []
        batches = chunked(items, self.batch_size)

        log.info(
            "batch_processing_started",
            total_items=len(items),
            batch_size=self.batch_size,
            total_batches=len(batches),
        )

        for batch_num, batch in enumerate(batches, start=1):
            log.debug(
                "processing_batch",
                batch_num=batch_num,
                batch_size=len(batch),
                total_batches=len(batches),
            )

            batch_results = await processor(batch)
            if isinstance(batch_results, list):
                results.extend(batch_results)
            else:
                results.append(batch_results)

            if on_batch_complete is not None:
                on_batch_complete(batch_num, results)

            if self.delay_between_batches and batch_num < len(batches):
                await asyncio.sleep(self.delay_between_batches)

        log.info("batch_processing_complete", total_results=len(results))
        return results
