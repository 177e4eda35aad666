"""Block window planning for a sweep."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class BlockRange:
    """Inclusive block range [from_block, to_block]."""

    from_block: int
    to_block: int

    def __post_init__(self) -> None:
        if self.from_block < 0 or self.to_block < self.from_block:
            raise ValueError(f"Invalid block range [{self.from_block}, {self.to_block}]")

    @property
    def size(self) -> int:
        return self.to_block - self.from_block + 1


@dataclass(frozen=True)
class SweepPlan:
    """The window a sweep covers and its sub-ranges for parallel fetch."""

    window: BlockRange
    sub_ranges: tuple[BlockRange, ...]


def plan_sweep(
    last_indexed_block: int,
    chain_height: int,
    *,
    max_window_blocks: int,
    max_sub_range_blocks: int,
) -> SweepPlan | None:
    """Compute the next window after `last_indexed_block`.

    The window is [L+1, min(L+W, H)], split into ceil(size/S) contiguous,
    non-overlapping sub-ranges of at most S blocks each. Returns None when
    there is no new block to index.
    """
    if max_window_blocks < 1:
        raise ValueError("max_window_blocks must be >= 1")
    if max_sub_range_blocks < 1:
        raise ValueError("max_sub_range_blocks must be >= 1")

    target = min(last_indexed_block + max_window_blocks, chain_height)
    if target - last_indexed_block < 1:
        return None

    window = BlockRange(last_indexed_block + 1, target)
    sub_ranges = tuple(
        BlockRange(start, min(start + max_sub_range_blocks - 1, target))
        for start in range(window.from_block, target + 1, max_sub_range_blocks)
    )
    return SweepPlan(window=window, sub_ranges=sub_ranges)
