from __future__ import annotations

import logging
from datetime import datetime, timezone

from ..domain.models import BlockRange, DeploymentInfo
from ..domain.normalize import hex_to_int, receipt_contract_address
from ..domain.value_types import Address, normalize_address
from .fetcher import ContractFetcher

log = logging.getLogger(__name__)


def _has_code(code: str | None) -> bool:
    return bool(code) and code not in ("0x", "0x0")


class DeploymentBlockFinder:
    """
    Binary search over eth_getCode for the first block where a contract has code.

    Every probe goes through the fetcher, so each one is retried and rotated
    across endpoints. "Not found" is a result, not an error; only infrastructure
    failures (no endpoint, exhausted retries) propagate.
    """

    def __init__(self, fetcher: ContractFetcher) -> None:
        self.fetcher = fetcher
        self._found: dict[tuple[str, Address], DeploymentInfo] = {}
        self._missing: dict[tuple[str, Address, int, int], DeploymentInfo] = {}

    def cached(self, address: str, chain: str) -> DeploymentInfo | None:
        return self._found.get((chain, normalize_address(address)))

    async def find(
        self,
        address: str,
        chain: str,
        upper_bound: int | None = None,
        floor: int = 0,
    ) -> DeploymentInfo:
        addr = normalize_address(address)
        hit = self._found.get((chain, addr))
        if hit is not None and (upper_bound is None or hit.block_number <= upper_bound):
            return hit

        hi = upper_bound if upper_bound is not None else await self.fetcher.latest_block(chain)
        lo = max(0, floor)
        if hi < lo:
            return DeploymentInfo.not_found(f"empty search range {lo}-{hi}")
        miss_key = (chain, addr, lo, hi)
        if miss_key in self._missing:
            return self._missing[miss_key]

        info = await self._search(addr, chain, lo, hi)
        if info.found:
            self._found[(chain, addr)] = info
        else:
            self._missing[miss_key] = info
        return info

    async def _search(self, addr: Address, chain: str, lo: int, hi: int) -> DeploymentInfo:
        if not _has_code(await self.fetcher.get_code(chain, addr, hi)):
            log.info("%s has no code at block %d on %s", addr, hi, chain)
            return DeploymentInfo.not_found("no code at upper bound")

        if _has_code(await self.fetcher.get_code(chain, addr, lo)):
            if lo > 0:
                return DeploymentInfo.not_found("predates searchable history")
            return await self._describe(addr, chain, 0)

        # invariant: no code at lo, code at hi
        probes = 0
        while hi - lo > 1:
            mid = (lo + hi) // 2
            probes += 1
            if _has_code(await self.fetcher.get_code(chain, addr, mid)):
                hi = mid
            else:
                lo = mid
        log.info("deployment of %s on %s at block %d (%d probes)", addr, chain, hi, probes)
        return await self._describe(addr, chain, hi)

    async def _describe(self, addr: Address, chain: str, number: int) -> DeploymentInfo:
        blk = await self.fetcher.get_block(chain, number, full_transactions=True)
        if not blk:
            return DeploymentInfo(found=True, block_number=number)

        ts = hex_to_int(blk.get("timestamp"))
        date = datetime.fromtimestamp(ts, tz=timezone.utc).isoformat() if ts is not None else None
        rng = BlockRange(number, number)
        for tx in blk.get("transactions") or []:
            # only contract-creation transactions can have deployed addr directly
            if not isinstance(tx, dict) or tx.get("to"):
                continue
            receipt = await self.fetcher.get_receipt(chain, tx["hash"], rng)
            if receipt_contract_address(receipt) == addr:
                return DeploymentInfo(
                    found=True,
                    block_number=number,
                    transaction_hash=str(tx["hash"]).lower(),
                    deployer=normalize_address(tx["from"]) if tx.get("from") else None,
                    date=date,
                )
        # created by another contract (factory): no top-level creation tx
        return DeploymentInfo(found=True, block_number=number, date=date)
