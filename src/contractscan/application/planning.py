from __future__ import annotations
from typing import Iterable

from ..domain.models import Chunk
from ..domain.value_types import Address, Chain

Interval = tuple[int, int]


def split_range(start: int, end: int, step: int) -> list[Interval]:
    """Consecutive inclusive (from, to) windows of at most `step` blocks."""
    if step <= 0:
        raise ValueError(f"step must be positive, got {step}")
    return [(lo, min(end, lo + step - 1)) for lo in range(start, end + 1, step)]


def divide_into_chunks(
    contract_address: Address,
    chain: Chain,
    start_block: int,
    end_block: int,
    chunk_size: int,
) -> list[Chunk]:
    """Partition [start_block, end_block] into contiguous chunks; only the last may be short."""
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    return [
        Chunk(start_block=fb, end_block=tb, chain=chain, contract_address=contract_address)
        for fb, tb in split_range(start_block, end_block, chunk_size)
    ]


def merge_intervals(intervals: Iterable[Interval]) -> list[Interval]:
    """Union of inclusive intervals; touching intervals are joined."""
    merged: list[Interval] = []
    for lo, hi in sorted(intervals):
        if merged and lo <= merged[-1][1] + 1:
            merged[-1] = (merged[-1][0], max(merged[-1][1], hi))
        else:
            merged.append((lo, hi))
    return merged


def subtract_interval(iv: Interval, covered: list[Interval]) -> list[Interval]:
    """Parts of `iv` not inside any of the sorted, disjoint `covered` intervals."""
    lo, hi = iv
    holes: list[Interval] = []
    cursor = lo
    for c_lo, c_hi in covered:
        if cursor > hi or c_lo > hi:
            break
        if c_hi < cursor:
            continue
        if c_lo > cursor:
            holes.append((cursor, c_lo - 1))
        cursor = c_hi + 1
    if cursor <= hi:
        holes.append((cursor, hi))
    return holes
