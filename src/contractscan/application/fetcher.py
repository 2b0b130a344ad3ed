from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Iterable, TypeVar

from ..domain.errors import CircuitOpenError, FetchError, MalformedRecordError, NoHealthyEndpointError
from ..domain.models import BlockRange, EventLog, ScanResult, Transaction
from ..domain.normalize import hex_to_int, parse_transaction
from ..domain.value_types import Address, normalize_address
from ..ports.rpc import RPCClient
from .endpoint_pool import EndpointPool
from .metrics import MetricsCollector
from .planning import split_range
from .resilience import RetryPolicy

log = logging.getLogger(__name__)

T = TypeVar("T")


async def _gather_all(aws: Iterable[Awaitable[T]]) -> list[T]:
    """Like gather(), but lets every sibling finish before re-raising the first error."""
    results = await asyncio.gather(*aws, return_exceptions=True)
    for r in results:
        if isinstance(r, BaseException):
            raise r
    return results  # type: ignore[return-value]


def _tx_block(tx: dict[str, Any]) -> int | None:
    try:
        return hex_to_int(tx.get("blockNumber"))
    except ValueError:
        return None


def _parse_tx(tx: dict[str, Any], receipt: dict[str, Any] | None, **kw: Any) -> Transaction:
    try:
        return parse_transaction(tx, receipt, **kw)
    except (KeyError, TypeError, ValueError, AttributeError) as e:
        raise MalformedRecordError("transaction", tx.get("hash"), e) from e


class ContractFetcher:
    """
    Pulls a contract's events and transactions for a block range.

    Each JSON-RPC request is its own retried unit: it picks an endpoint from the
    pool, runs through that endpoint's circuit breaker under `call_timeout`, and
    on failure only that request is retried, possibly on another endpoint.
    """

    def __init__(
        self,
        pool: EndpointPool,
        retry_policy: RetryPolicy,
        *,
        call_timeout: float = 30.0,
        log_batch_span: int = 10_000,
        min_split_span: int = 2_000,
        tx_batch_size: int = 15,
        direct_scan_max_blocks: int = 50,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.pool = pool
        self.retry = retry_policy
        self.call_timeout = call_timeout
        self.log_batch_span = log_batch_span
        self.min_split_span = min_split_span
        self.tx_batch_size = tx_batch_size
        self.direct_scan_max_blocks = direct_scan_max_blocks
        self.metrics = metrics

    # ── one network sub-call ────────────────────────────────────

    async def _call(
        self,
        chain: str,
        label: str,
        fn: Callable[[RPCClient], Awaitable[T]],
        block_range: BlockRange,
    ) -> T:
        async def attempt() -> T:
            ep = self.pool.get_healthy_endpoint(chain)
            client = self.pool.client_for(ep)
            t0 = time.perf_counter()
            try:
                result = await self.pool.breaker_for(ep).execute(
                    lambda: asyncio.wait_for(fn(client), timeout=self.call_timeout))
            except CircuitOpenError:
                raise
            except Exception as e:
                latency = (time.perf_counter() - t0) * 1000.0
                self.pool.record_failure(ep, e)
                if self.metrics:
                    self.metrics.record_rpc(False, latency)
                raise
            latency = (time.perf_counter() - t0) * 1000.0
            self.pool.record_success(ep, latency)
            if self.metrics:
                self.metrics.record_rpc(True, latency)
            return result

        try:
            return await self.retry.execute(attempt, label=f"{label} {block_range.start}-{block_range.end}@{chain}")
        except (NoHealthyEndpointError, MalformedRecordError):
            raise
        except Exception as e:
            raise FetchError(chain, block_range, e, label=label) from e

    # ── single-purpose helpers ──────────────────────────────────

    async def latest_block(self, chain: str) -> int:
        return await self._call(chain, "eth_blockNumber", lambda c: c.latest_block(), BlockRange(0, 0))

    async def get_code(self, chain: str, address: str, block: int) -> str:
        addr = normalize_address(address)
        return await self._call(chain, "eth_getCode", lambda c: c.get_code(addr, block), BlockRange(block, block))

    async def get_block(self, chain: str, number: int, full_transactions: bool = False) -> dict[str, Any] | None:
        return await self._call(
            chain, "eth_getBlockByNumber",
            lambda c: c.get_block(number, full_transactions), BlockRange(number, number))

    async def get_receipt(self, chain: str, tx_hash: str, block_range: BlockRange) -> dict[str, Any] | None:
        return await self._call(chain, "eth_getTransactionReceipt", lambda c: c.get_receipt(tx_hash), block_range)

    async def get_transaction(self, chain: str, tx_hash: str, block_range: BlockRange) -> dict[str, Any] | None:
        return await self._call(chain, "eth_getTransactionByHash", lambda c: c.get_transaction(tx_hash), block_range)

    # ── logs ────────────────────────────────────────────────────

    async def fetch_logs(self, address: str, chain: str, start: int, end: int) -> list[EventLog]:
        """Logs for [start, end] in provider order, requested `log_batch_span` blocks at a time."""
        addr = normalize_address(address)
        out: list[EventLog] = []
        for fb, tb in split_range(start, end, self.log_batch_span):
            out.extend(await self._logs_with_split(addr, chain, fb, tb))
        return out

    async def _logs_with_split(self, address: Address, chain: str, fb: int, tb: int) -> list[EventLog]:
        # providers cap eth_getLogs by range or result size; halve and try again
        out: list[EventLog] = []
        stack: list[tuple[int, int]] = [(fb, tb)]
        while stack:
            a, b = stack.pop()
            try:
                logs = await self._call(
                    chain, "eth_getLogs",
                    lambda c, a=a, b=b: c.get_logs(address, a, b), BlockRange(a, b))
            except FetchError as e:
                if b - a + 1 > self.min_split_span:
                    mid = (a + b) // 2
                    log.info("splitting eth_getLogs %d-%d after failure: %s", a, b, e.cause)
                    stack.append((mid + 1, b))
                    stack.append((a, mid))
                    continue
                raise
            out.extend(logs)
        return out

    # ── transactions ────────────────────────────────────────────

    async def _block_timestamps(self, chain: str, numbers: Iterable[int], cache: dict[int, int | None]) -> None:
        missing = sorted({n for n in numbers if n not in cache})
        blocks = await _gather_all(self.get_block(chain, n) for n in missing)
        for n, blk in zip(missing, blocks):
            cache[n] = hex_to_int(blk.get("timestamp")) if blk else None

    async def _tx_and_receipt(self, chain: str, tx_hash: str, rng: BlockRange):
        tx = await self.get_transaction(chain, tx_hash, rng)
        if tx is None:
            return None, None
        return tx, await self.get_receipt(chain, tx_hash, rng)

    async def fetch_transactions(self, chain: str, tx_hashes: list[str], rng: BlockRange) -> list[Transaction]:
        out: list[Transaction] = []
        ts_cache: dict[int, int | None] = {}
        for i in range(0, len(tx_hashes), self.tx_batch_size):
            batch = tx_hashes[i:i + self.tx_batch_size]
            pairs = await _gather_all(self._tx_and_receipt(chain, h, rng) for h in batch)
            await self._block_timestamps(
                chain, (n for n in (_tx_block(tx) for tx, _ in pairs if tx) if n is not None), ts_cache)
            for h, (tx, receipt) in zip(batch, pairs):
                if tx is None:
                    log.warning("transaction %s not known to endpoint; left for validation", h)
                    continue
                out.append(_parse_tx(tx, receipt, block_timestamp=ts_cache.get(_tx_block(tx)), source="event"))
        return out

    async def _scan_blocks_directly(self, address: Address, chain: str, start: int, end: int) -> list[Transaction]:
        out: list[Transaction] = []
        rng = BlockRange(start, end)
        for n in range(start, end + 1):
            blk = await self.get_block(chain, n, full_transactions=True)
            if not blk:
                continue
            ts = hex_to_int(blk.get("timestamp"))
            for tx in blk.get("transactions") or []:
                if not isinstance(tx, dict):
                    continue
                to = (tx.get("to") or "").lower()
                frm = (tx.get("from") or "").lower()
                if address not in (to, frm):
                    continue
                receipt = await self.get_receipt(chain, tx.get("hash"), rng)
                out.append(_parse_tx(
                    tx, receipt, block_timestamp=ts,
                    source="to_contract" if to == address else "from_contract"))
        return out

    # ── public entry ────────────────────────────────────────────

    async def fetch_range(self, address: str, chain: str, start: int, end: int) -> ScanResult:
        """Partial ScanResult for [start, end]; records stay in provider order."""
        addr = normalize_address(address)
        rng = BlockRange(start, end)
        events = await self.fetch_logs(addr, chain, start, end)
        tx_hashes = list(dict.fromkeys(e.tx_hash for e in events))
        transactions = await self.fetch_transactions(chain, tx_hashes, rng)
        if not events and rng.span() <= self.direct_scan_max_blocks:
            transactions = await self._scan_blocks_directly(addr, chain, start, end)
        log.debug("fetched %d events, %d transactions for %s %d-%d",
                  len(events), len(transactions), addr, start, end)
        return ScanResult.from_records(transactions, events, rng)
