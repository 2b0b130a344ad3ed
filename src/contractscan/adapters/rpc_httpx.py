from __future__ import annotations
import itertools
from typing import Any

import httpx

from ..domain.errors import MalformedRecordError, RPCError
from ..domain.models import EventLog
from ..domain.normalize import hex_to_int, parse_log
from ..domain.value_types import Address
from ..ports.rpc import RPCClient


def _to_hex_block(n: int) -> str: return hex(int(n))


class HttpxRPC(RPCClient):
    """JSON-RPC client bound to one endpoint URL."""

    def __init__(
        self,
        rpc_url: str,
        timeout_s: float = 20,
        max_conn: int = 64,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.url = rpc_url
        self._ids = itertools.count(1)
        self.client = httpx.AsyncClient(
            http2=transport is None,
            timeout=httpx.Timeout(timeout_s),
            limits=httpx.Limits(max_connections=max_conn, max_keepalive_connections=max(1, max_conn // 2)),
            transport=transport,
        )

    async def _request(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            r = await self.client.post(self.url, json=payload)
        except httpx.HTTPError as e:
            raise RPCError(f"{method} transport error: {type(e).__name__}: {e}", url=self.url) from e
        if r.status_code == 429:
            raise RPCError(f"{method} rate limited (HTTP 429)", url=self.url, code=429)
        if r.is_error:
            raise RPCError(f"{method} HTTP {r.status_code}", url=self.url, code=r.status_code)
        try:
            data = r.json()
        except ValueError as e:
            raise RPCError(f"{method} returned invalid JSON", url=self.url) from e
        if "error" in data:
            err = data["error"]
            if isinstance(err, dict):
                raise RPCError(
                    f"{method} RPC error code={err.get('code')} message={err.get('message')}",
                    url=self.url, code=err.get("code"),
                )
            raise RPCError(f"{method} RPC error: {err}", url=self.url)
        return data.get("result")

    async def latest_block(self) -> int:
        return hex_to_int(await self._request("eth_blockNumber", []))

    async def get_logs(self, address: Address, from_block: int, to_block: int) -> list[EventLog]:
        res = await self._request("eth_getLogs", [{
            "address": str(address),
            "fromBlock": _to_hex_block(from_block),
            "toBlock": _to_hex_block(to_block),
        }])
        out: list[EventLog] = []
        for rl in res or []:
            try:
                out.append(parse_log(rl))
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                raise MalformedRecordError("log", rl.get("transactionHash") if isinstance(rl, dict) else rl, e) from e
        return out

    async def get_transaction(self, tx_hash: str) -> dict[str, Any] | None:
        return await self._request("eth_getTransactionByHash", [tx_hash])

    async def get_receipt(self, tx_hash: str) -> dict[str, Any] | None:
        return await self._request("eth_getTransactionReceipt", [tx_hash])

    async def get_block(self, number: int, full_transactions: bool = False) -> dict[str, Any] | None:
        return await self._request("eth_getBlockByNumber", [_to_hex_block(number), full_transactions])

    async def get_code(self, address: Address, block: int) -> str:
        code = await self._request("eth_getCode", [str(address), _to_hex_block(block)])
        return code or "0x"

    async def aclose(self) -> None:
        await self.client.aclose()
