from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Union

from ..domain.errors import MalformedRecordError, ValidationRejectedError
from ..domain.models import BlockRange, Checkpoint, Chunk, ChunkRec, ScanResult
from ..domain.value_types import Chain, normalize_address
from ..ports.storage import EventSink, ManifestSink
from .checkpoints import CheckpointRepository
from .fetcher import ContractFetcher
from .planning import Interval, divide_into_chunks, subtract_interval
from .security import AnomalyDetector
from .validation import HorizontalValidator, ValidationOutcome

log = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ChunkCommit:
    """What the caller hears about after each chunk is durably committed."""
    chunk: Chunk
    checkpoint: Checkpoint
    added: int
    events: int
    transactions: int
    attempts: int
    elapsed_s: float
    blocks_covered: int = 0     # blocks of the scanned range indexed so far


@dataclass(slots=True)
class ChunkScanOutcome:
    result: ScanResult
    requested: BlockRange
    completed_range: BlockRange | None
    chunks_total: int
    chunks_committed: int
    error: BaseException | None = None
    cancelled: bool = False
    resumed_from: int | None = None

    @property
    def complete(self) -> bool:
        return (
            self.error is None
            and not self.cancelled
            and self.completed_range is not None
            and self.completed_range.end >= self.requested.end
        )

    @property
    def blocks_completed(self) -> int:
        return self.completed_range.span() if self.completed_range else 0


OnChunk = Callable[[ChunkCommit], Union[None, Awaitable[None]]]


def _covered_prefix(covered: list[Interval], requested: BlockRange) -> BlockRange | None:
    for lo, hi in covered:
        if lo <= requested.start <= hi:
            return BlockRange(requested.start, min(hi, requested.end))
    return None


def _covered_count(covered: list[Interval], requested: BlockRange) -> int:
    holes = subtract_interval((requested.start, requested.end), covered)
    return requested.span() - sum(hi - lo + 1 for lo, hi in holes)


class ChunkManager:
    """
    Splits a scan range into fixed-size chunks and drives fetch -> validate -> commit.

    Only blocks the checkpoint does not already cover are planned. Up to
    `concurrency` chunks are fetched ahead of the commit cursor, but commits
    happen strictly in block order, so `completed_range` is always a gap-free
    prefix of the requested range.
    """

    def __init__(
        self,
        fetcher: ContractFetcher,
        validator: HorizontalValidator,
        checkpoints: CheckpointRepository,
        *,
        chunk_size: int = 200_000,
        concurrency: int = 5,
        max_validation_retries: int = 2,
        manifest: ManifestSink | None = None,
        event_sink: EventSink | None = None,
        anomaly_detector: AnomalyDetector | None = None,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.fetcher = fetcher
        self.validator = validator
        self.checkpoints = checkpoints
        self.chunk_size = chunk_size
        self.concurrency = concurrency
        self.max_validation_retries = max_validation_retries
        self.manifest = manifest
        self.event_sink = event_sink
        self.anomaly_detector = anomaly_detector

    async def _append_manifest(self, chunk: Chunk, status: Any, attempts: int, err: str | None,
                               logs_cnt: int = 0, txs_cnt: int = 0) -> None:
        if self.manifest is None:
            return
        await self.manifest.append(ChunkRec(
            from_block=chunk.start_block, to_block=chunk.end_block, status=status,
            attempts=attempts, error=err, logs=logs_cnt, transactions=txs_cnt, updated_at=time.time(),
        ))

    async def _process(self, chunk: Chunk) -> tuple[ScanResult, int, float]:
        t0 = time.monotonic()
        attempts = 0
        while True:
            attempts += 1
            try:
                res = await self.fetcher.fetch_range(
                    chunk.contract_address, chunk.chain, chunk.start_block, chunk.end_block)
            except MalformedRecordError as e:
                log.warning("chunk %d-%d: %s", chunk.start_block, chunk.end_block, e)
                verdict = ValidationOutcome(False, str(e), "well_formed_records")
            else:
                verdict = await self.validator.validate(chunk, res)
            if verdict.accepted:
                return res, attempts, time.monotonic() - t0
            if attempts > self.max_validation_retries:
                raise ValidationRejectedError(chunk, verdict.reason or "rejected", attempts)
            log.info("re-fetching chunk %d-%d (attempt %d): %s",
                     chunk.start_block, chunk.end_block, attempts + 1, verdict.reason)

    async def scan(
        self,
        address: str,
        chain: str,
        from_block: int,
        to_block: int,
        *,
        on_chunk: OnChunk | None = None,
        should_continue: Callable[[], bool] | None = None,
        resume: bool = True,
        chunk_size: int | None = None,
    ) -> ChunkScanOutcome:
        if from_block > to_block:
            raise ValueError(f"from_block ({from_block}) must be <= to_block ({to_block})")
        addr = normalize_address(address)
        requested = BlockRange(from_block, to_block)

        result = await self.checkpoints.load_result(addr, chain) or ScanResult()
        covered: list[Interval] = []
        if resume:
            cp = await self.checkpoints.load_checkpoint(addr, chain)
            covered = list(cp.covered) if cp is not None else []
        todo = subtract_interval((from_block, to_block), covered)
        resumed_from: int | None = None
        if todo != [(from_block, to_block)]:
            resumed_from = todo[0][0] if todo else to_block + 1
            log.info("resuming %s on %s: %d of %d block(s) already indexed, %d gap(s) left",
                     addr, chain, _covered_count(covered, requested), requested.span(), len(todo))

        size = chunk_size or self.chunk_size
        chunks = [c for lo, hi in todo for c in divide_into_chunks(addr, Chain(chain), lo, hi, size)]
        outcome = ChunkScanOutcome(
            result=result, requested=requested, completed_range=_covered_prefix(covered, requested),
            chunks_total=len(chunks), chunks_committed=0, resumed_from=resumed_from,
        )
        if not chunks:
            return outcome

        pending = iter(chunks)
        in_flight: deque[tuple[Chunk, asyncio.Task[tuple[ScanResult, int, float]]]] = deque()
        stopped = False

        def dispatch() -> None:
            nonlocal stopped
            while not stopped and len(in_flight) < self.concurrency:
                if should_continue is not None and not should_continue():
                    stopped = outcome.cancelled = True
                    log.info("scan of %s cancelled; letting %d in-flight chunk(s) finish", addr, len(in_flight))
                    return
                chunk = next(pending, None)
                if chunk is None:
                    return
                task = asyncio.get_running_loop().create_task(
                    self._process(chunk), name=f"chunk-{chunk.start_block}-{chunk.end_block}")
                in_flight.append((chunk, task))

        try:
            dispatch()
            while in_flight:
                chunk, task = in_flight.popleft()
                try:
                    chunk_result, attempts, elapsed = await task
                    await self._commit(chunk, chunk_result, outcome, attempts, elapsed, on_chunk)
                except Exception as e:
                    attempts = getattr(e, "attempts", 1)
                    log.error("chunk %d-%d failed: %s", chunk.start_block, chunk.end_block, e)
                    await self._append_manifest(chunk, "failed", attempts, str(e))
                    outcome.error = e
                    stopped = True
                    break
                dispatch()
        finally:
            # later chunks cannot commit past a failed one; let them finish, drop their output
            if in_flight:
                leftovers = [t for _, t in in_flight]
                if outcome.error is None:
                    for t in leftovers:
                        t.cancel()
                await asyncio.gather(*leftovers, return_exceptions=True)
        return outcome

    async def _commit(
        self,
        chunk: Chunk,
        chunk_result: ScanResult,
        outcome: ChunkScanOutcome,
        attempts: int,
        elapsed: float,
        on_chunk: OnChunk | None,
    ) -> None:
        addr, chain = chunk.contract_address, chunk.chain
        stored, added, cp = await self.checkpoints.commit_chunk(
            addr, chain, chunk_result, chunk.start_block, chunk.end_block)
        outcome.result = stored
        outcome.chunks_committed += 1
        covered = list(cp.covered)
        outcome.completed_range = _covered_prefix(covered, outcome.requested)

        # the chunk is durable from here on; a failing side effect only gets logged
        n_events, n_txs = len(chunk_result.events), len(chunk_result.transactions)
        await self._after_commit(chunk, "manifest", lambda: self._append_manifest(
            chunk, "done", attempts, None, n_events, n_txs))
        if self.event_sink is not None:
            await self._after_commit(chunk, "event sink", lambda: self.event_sink.write_chunk(
                chunk.start_block, chunk.end_block, chunk_result.events))
        if self.anomaly_detector is not None:
            await self._after_commit(chunk, "anomaly detector",
                                     lambda: self.anomaly_detector.observe_chunk(addr, n_events))
        log.info("committed chunk %d-%d: %d events, %d txs (%d new)",
                 chunk.start_block, chunk.end_block, n_events, n_txs, added)

        if on_chunk is not None:
            commit = ChunkCommit(
                chunk=chunk, checkpoint=cp, added=added, events=n_events,
                transactions=n_txs, attempts=attempts, elapsed_s=elapsed,
                blocks_covered=_covered_count(covered, outcome.requested),
            )
            await self._after_commit(chunk, "on_chunk callback", lambda: on_chunk(commit))

    async def _after_commit(self, chunk: Chunk, what: str, fn: Callable[[], Any]) -> None:
        try:
            ret = fn()
            if inspect.isawaitable(ret):
                await ret
        except Exception:
            log.exception("chunk %d-%d is committed, but its %s step failed",
                          chunk.start_block, chunk.end_block, what)
