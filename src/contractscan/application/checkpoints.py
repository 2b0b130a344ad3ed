from __future__ import annotations

import asyncio
import logging
import time

from ..domain.models import BlockRange, Checkpoint, ScanResult
from ..domain.value_types import Address, Chain, normalize_address
from ..ports.storage import RecordStore
from .planning import Interval, merge_intervals
from .validation import detect_missing_ranges, validate_chunk_boundary

log = logging.getLogger(__name__)


def scan_key(chain: str, address: str) -> str:
    return f"scan__{chain}__{normalize_address(address)}.json"


def checkpoint_key(chain: str, address: str) -> str:
    return f"checkpoint__{chain}__{normalize_address(address)}.json"


def _end_of(covered: list[Interval], block: int) -> int:
    return next(hi for lo, hi in covered if lo <= block <= hi)


class CheckpointRepository:
    """
    One merged ScanResult and one Checkpoint record per (chain, contract).

    The checkpoint keeps every indexed block interval in `covered`, so a later
    scan only fetches what is missing from its range. `last_completed_block`
    is the end of the gap-free run the checkpoint started with; it grows only
    when a newly covered interval touches it and never moves back.

    Writes for one contract are serialized by a per-contract lock held by this
    repository, so every scan of a data directory should share one instance.
    """

    def __init__(self, store: RecordStore) -> None:
        self.store = store
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock(self, address: str, chain: str) -> asyncio.Lock:
        return self._locks.setdefault(checkpoint_key(chain, address), asyncio.Lock())

    async def load_result(self, address: str, chain: str) -> ScanResult | None:
        raw = await self.store.read_json(scan_key(chain, address))
        return ScanResult.from_dict(raw) if raw else None

    async def save_result(self, address: str, chain: str, result: ScanResult) -> None:
        await self.store.write_json(scan_key(chain, address), result.to_dict())

    async def load_checkpoint(self, address: str, chain: str) -> Checkpoint | None:
        raw = await self.store.read_json(checkpoint_key(chain, address))
        return Checkpoint.from_dict(raw) if raw else None

    async def advance(self, address: str, chain: str, from_block: int, to_block: int) -> Checkpoint:
        """Mark [from_block, to_block] as indexed and return the updated checkpoint."""
        async with self._lock(address, chain):
            return await self._cover(address, chain, from_block, to_block)

    async def commit_chunk(
        self, address: str, chain: str, chunk_result: ScanResult, from_block: int, to_block: int,
    ) -> tuple[ScanResult, int, Checkpoint]:
        """
        Merge one chunk into the stored dataset, then mark its blocks covered.

        The stored result is re-read under the contract's lock, so scans of the
        same contract running side by side add to each other's records instead
        of overwriting them. Returns the merged dataset, the number of new
        records and the new checkpoint.
        """
        async with self._lock(address, chain):
            stored = await self.load_result(address, chain) or ScanResult()
            added = stored.merge(chunk_result)
            await self.save_result(address, chain, stored)
            cp = await self._cover(address, chain, from_block, to_block)
        return stored, added, cp

    async def _cover(self, address: str, chain: str, from_block: int, to_block: int) -> Checkpoint:
        current = await self.load_checkpoint(address, chain)
        covered = merge_intervals([*(current.covered if current else ()), (from_block, to_block)])
        if current is None:
            last = _end_of(covered, to_block)
        elif validate_chunk_boundary(
                BlockRange(current.last_completed_block, current.last_completed_block),
                BlockRange(from_block, to_block)) is None:
            last = max(current.last_completed_block, _end_of(covered, to_block))
        else:
            last = current.last_completed_block
            log.debug("blocks %d-%d leave a gap after %d; %s checkpoint stays there",
                      from_block, to_block, last, address)
        cp = Checkpoint(
            contract_address=Address(normalize_address(address)),
            chain=Chain(chain),
            last_completed_block=last,
            updated_at=time.time(),
            covered=tuple(covered),
        )
        await self.store.write_json(checkpoint_key(chain, address), cp.to_dict())
        return cp

    async def gaps(self, address: str, chain: str) -> list[BlockRange]:
        """Unindexed holes between the lowest and highest covered block."""
        cp = await self.load_checkpoint(address, chain)
        if cp is None:
            return []
        return detect_missing_ranges(BlockRange(lo, hi) for lo, hi in cp.covered)

    async def list_scans(self) -> list[tuple[str, str]]:
        """(chain, address) pairs that have a stored dataset."""
        out: list[tuple[str, str]] = []
        for name in await self.store.list_files("scan__"):
            parts = name[: -len(".json")].split("__")
            if len(parts) == 3:
                out.append((parts[1], parts[2]))
        return out
