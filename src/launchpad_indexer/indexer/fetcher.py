"""Parallel log fetching for the sub-ranges of a sweep."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine, Iterable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, TypeVar

from launchpad_indexer.chain.events import EVENT_TOPICS, EventKind

if TYPE_CHECKING:
    from launchpad_indexer.chain.client import ChainClient
    from launchpad_indexer.indexer.planner import BlockRange

logger = logging.getLogger(__name__)

DEFAULT_FETCH_CONCURRENCY = 4

T = TypeVar("T")


async def _all_or_nothing(coros: Iterable[Coroutine[Any, Any, T]]) -> list[T]:
    """Await every coroutine concurrently, in order.

    The first failure cancels the ones still running and is re-raised as is.
    """
    try:
        async with asyncio.TaskGroup() as group:
            tasks = [group.create_task(coro) for coro in coros]
    except ExceptionGroup as eg:
        raise eg.exceptions[0] from None
    return [task.result() for task in tasks]


@dataclass(frozen=True)
class FetchedLog:
    """A raw log tagged with the event kind whose topic matched it."""

    kind: EventKind
    source_address: str
    log: dict[str, Any]


class EventFetcher:
    """Issues one `eth_getLogs` query per event topic for each sub-range.

    All queries of a sub-range run concurrently, and at most `concurrency`
    sub-ranges are in flight at once. The first failing query fails the whole
    fetch and cancels the queries still running: a range is never returned
    with some event kinds missing.
    """

    def __init__(
        self,
        client: ChainClient,
        *,
        concurrency: int = DEFAULT_FETCH_CONCURRENCY,
        kinds: Sequence[EventKind] = tuple(EventKind),
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self._client = client
        self._kinds = tuple(kinds)
        self._semaphore = asyncio.Semaphore(concurrency)

    async def _fetch_topic(self, source_address: str, kind: EventKind, block_range: BlockRange) -> list[FetchedLog]:
        logs = await self._client.get_logs(
            source_address,
            EVENT_TOPICS[kind],
            from_block=block_range.from_block,
            to_block=block_range.to_block,
        )
        return [FetchedLog(kind=kind, source_address=source_address, log=log) for log in logs]

    async def fetch_range(self, source_address: str, block_range: BlockRange) -> list[FetchedLog]:
        """Fetch every tracked event kind emitted by `source_address` in one sub-range."""
        async with self._semaphore:
            per_topic = await _all_or_nothing(
                self._fetch_topic(source_address, kind, block_range) for kind in self._kinds
            )
        fetched = [item for batch in per_topic for item in batch]
        logger.debug(
            "Fetched %d logs for %s in [%d, %d]",
            len(fetched),
            source_address,
            block_range.from_block,
            block_range.to_block,
        )
        return fetched

    async def fetch(self, source_address: str, sub_ranges: Sequence[BlockRange]) -> list[list[FetchedLog]]:
        """Fetch all sub-ranges concurrently; one result list per sub-range."""
        return await _all_or_nothing(self.fetch_range(source_address, r) for r in sub_ranges)
