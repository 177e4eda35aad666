"""Flattening, decoding and chain-ordering of fetched logs."""

from __future__ import annotations

from collections.abc import Iterable
from typing import TYPE_CHECKING

from launchpad_indexer.chain.events import DecodedEvent, EventDecodeError, EventDecoder
from launchpad_indexer.indexer.processor import IndexerInconsistencyError

if TYPE_CHECKING:
    from launchpad_indexer.indexer.fetcher import FetchedLog


def merge_events(
    batches: Iterable[Iterable[FetchedLog]],
    decoder: EventDecoder,
) -> list[DecodedEvent]:
    """Decode every fetched log and return them in chain order.

    Order is (block number, transaction index, log index), independent of the
    order in which sub-ranges and topics were fetched. A log that cannot be
    decoded as the kind it was fetched for is an inconsistency.
    """
    events: list[DecodedEvent] = []
    for batch in batches:
        for fetched in batch:
            try:
                events.append(decoder.decode(fetched.kind, fetched.log, source_address=fetched.source_address))
            except EventDecodeError as e:
                raise IndexerInconsistencyError(str(e)) from e
    events.sort(key=lambda event: event.sort_key)
    return events
