"""
Horizontal validation of a chunk's fetched data before it is committed.

A check is any callable `(chunk, result) -> str | None` returning a rejection
reason, or an awaitable of one. The default set only looks at the chunk itself;
`CrossEndpointCheck` additionally re-reads the logs and compares.
"""
from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, Iterable, Sequence, Union

from eth_utils import is_address, is_hexstr

from ..domain.models import BlockRange, Chunk, ScanResult
from .planning import merge_intervals, subtract_interval

if TYPE_CHECKING:
    from .fetcher import ContractFetcher

log = logging.getLogger(__name__)

Check = Callable[[Chunk, ScanResult], Union[str, None, Awaitable[Union[str, None]]]]


@dataclass(slots=True, frozen=True)
class ValidationOutcome:
    accepted: bool
    reason: str | None = None
    check: str | None = None


def _is_hash(h: str | None) -> bool:
    return bool(h) and len(h) == 66 and is_hexstr(h)


def records_within_range(chunk: Chunk, result: ScanResult) -> str | None:
    lo, hi = chunk.start_block, chunk.end_block
    for ev in result.events:
        if not lo <= ev.block_number <= hi:
            return f"event {ev.tx_hash}:{ev.log_index} at block {ev.block_number} outside {lo}-{hi}"
    for tx in result.transactions:
        if not lo <= tx.block_number <= hi:
            return f"transaction {tx.hash} at block {tx.block_number} outside {lo}-{hi}"
    return None


def monotonic_blocks(chunk: Chunk, result: ScanResult) -> str | None:
    for name, numbers in (
        ("event", [e.block_number for e in result.events]),
        ("transaction", [t.block_number for t in result.transactions]),
    ):
        for i in range(1, len(numbers)):
            if numbers[i] < numbers[i - 1]:
                return f"{name} block numbers go backwards ({numbers[i - 1]} -> {numbers[i]})"
    return None


def no_duplicate_events(chunk: Chunk, result: ScanResult) -> str | None:
    seen: set[tuple[str, int]] = set()
    for ev in result.events:
        if ev.key in seen:
            return f"duplicate event {ev.tx_hash}:{ev.log_index}"
        seen.add(ev.key)
    return None


def well_formed_records(chunk: Chunk, result: ScanResult) -> str | None:
    for ev in result.events:
        if type(ev.block_number) is not int or type(ev.log_index) is not int:
            return (f"event {ev.tx_hash} has non-integer block number {ev.block_number!r} "
                    f"or log index {ev.log_index!r}")
        if not _is_hash(ev.tx_hash):
            return f"malformed event transaction hash {ev.tx_hash!r}"
        if not is_address(ev.address):
            return f"malformed event address {ev.address!r}"
        if ev.address != chunk.contract_address:
            return f"event from foreign address {ev.address}"
    for tx in result.transactions:
        if type(tx.block_number) is not int:
            return f"transaction {tx.hash} has non-integer block number {tx.block_number!r}"
        if not _is_hash(tx.hash):
            return f"malformed transaction hash {tx.hash!r}"
        if not is_address(tx.from_address):
            return f"malformed sender {tx.from_address!r} in {tx.hash}"
        if tx.to_address is not None and not is_address(tx.to_address):
            return f"malformed recipient {tx.to_address!r} in {tx.hash}"
    return None


def event_transactions_present(chunk: Chunk, result: ScanResult) -> str | None:
    hashes = {t.hash for t in result.transactions}
    missing = {e.tx_hash for e in result.events} - hashes
    if missing:
        return f"{len(missing)} event transaction(s) missing, e.g. {sorted(missing)[0]}"
    return None


class PlausibleTransactionCount:
    """Rejects results with more transactions than the chunk's blocks could hold."""

    def __init__(self, max_per_block: int = 2_000) -> None:
        self.max_per_block = max_per_block
        self.__name__ = "plausible_transaction_count"

    def __call__(self, chunk: Chunk, result: ScanResult) -> str | None:
        limit = self.max_per_block * chunk.span()
        if len(result.transactions) > limit:
            return f"{len(result.transactions)} transactions exceed {limit} for {chunk.span()} blocks"
        return None


class CrossEndpointCheck:
    """Re-reads the chunk's logs (round-robin lands on the next endpoint) and compares event keys."""

    def __init__(self, fetcher: "ContractFetcher") -> None:
        self.fetcher = fetcher
        self.__name__ = "cross_endpoint"

    async def __call__(self, chunk: Chunk, result: ScanResult) -> str | None:
        logs = await self.fetcher.fetch_logs(
            chunk.contract_address, chunk.chain, chunk.start_block, chunk.end_block)
        theirs = {e.key for e in logs}
        ours = {e.key for e in result.events}
        if theirs != ours:
            return (f"endpoints disagree: {len(ours - theirs)} event(s) only in first read, "
                    f"{len(theirs - ours)} only in second")
        return None


DEFAULT_CHECKS: tuple[Check, ...] = (
    well_formed_records,   # first: the others assume integer block numbers
    records_within_range,
    monotonic_blocks,
    no_duplicate_events,
    event_transactions_present,
    PlausibleTransactionCount(),
)


class HorizontalValidator:
    def __init__(self, checks: Sequence[Check] = DEFAULT_CHECKS, cross_check: Check | None = None) -> None:
        self.checks: list[Check] = list(checks)
        if cross_check is not None:
            self.checks.append(cross_check)

    async def validate(self, chunk: Chunk, result: ScanResult) -> ValidationOutcome:
        """First failing check wins; the chunk is accepted only if every check passes."""
        for check in self.checks:
            reason = check(chunk, result)
            if inspect.isawaitable(reason):
                reason = await reason
            if reason:
                name = getattr(check, "__name__", type(check).__name__)
                log.warning("chunk %d-%d rejected by %s: %s", chunk.start_block, chunk.end_block, name, reason)
                return ValidationOutcome(False, reason, name)
        return ValidationOutcome(True)


def validate_chunk_boundary(previous: BlockRange | None, current: BlockRange) -> BlockRange | None:
    """Return the missing range between two consecutive ranges, if any."""
    if previous is None or current.start - previous.end <= 1:
        return None
    return BlockRange(previous.end + 1, current.start - 1)


def detect_missing_ranges(ranges: Iterable[BlockRange]) -> list[BlockRange]:
    """Holes between the lowest and highest block covered by `ranges`."""
    covered = merge_intervals([(r.start, r.end) for r in ranges])
    if not covered:
        return []
    span = (covered[0][0], covered[-1][1])
    return [BlockRange(s, e) for s, e in subtract_interval(span, covered)]
