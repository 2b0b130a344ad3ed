import json

import httpx
import pytest

from contractscan.adapters.rpc_httpx import HttpxRPC
from contractscan.domain.errors import MalformedRecordError, RPCError
from contractscan.domain.value_types import Address

from fakes import CONTRACT, h

URL = "https://rpc.example"


def _rpc(handler) -> HttpxRPC:
    return HttpxRPC(URL, transport=httpx.MockTransport(handler))


def _result(request: httpx.Request, result) -> httpx.Response:
    body = json.loads(request.content)
    return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})


class TestHttpxRPC:

    @pytest.mark.asyncio
    async def test_get_logs_sends_hex_range_and_parses(self):
        seen = {}

        def handler(request):
            body = json.loads(request.content)
            seen.update(body)
            return _result(request, [{
                "address": CONTRACT, "topics": [h(1)], "data": "0x",
                "blockNumber": "0x64", "transactionHash": h(7), "logIndex": "0x0",
            }])

        rpc = _rpc(handler)
        logs = await rpc.get_logs(Address(CONTRACT), 100, 199)
        await rpc.aclose()
        assert seen["method"] == "eth_getLogs"
        assert seen["params"] == [{"address": CONTRACT, "fromBlock": "0x64", "toBlock": "0xc7"}]
        assert len(logs) == 1 and logs[0].block_number == 100 and logs[0].tx_hash == h(7)

    @pytest.mark.asyncio
    async def test_unparseable_log_raises_malformed_record(self):
        rpc = _rpc(lambda req: _result(req, [{"topics": [], "blockNumber": "0x64", "transactionHash": h(7)}]))
        with pytest.raises(MalformedRecordError) as ei:
            await rpc.get_logs(Address(CONTRACT), 100, 199)
        await rpc.aclose()
        assert ei.value.kind == "log"
        assert h(7) in str(ei.value)

    @pytest.mark.asyncio
    async def test_latest_block(self):
        rpc = _rpc(lambda req: _result(req, "0x10"))
        assert await rpc.latest_block() == 16
        await rpc.aclose()

    @pytest.mark.asyncio
    async def test_json_rpc_error_object(self):
        def handler(request):
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": 1,
                                             "error": {"code": -32005, "message": "limit exceeded"}})

        rpc = _rpc(handler)
        with pytest.raises(RPCError) as ei:
            await rpc.get_logs(Address(CONTRACT), 0, 10)
        await rpc.aclose()
        assert ei.value.code == -32005
        assert ei.value.url == URL

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [429, 500, 503])
    async def test_http_failures(self, status):
        rpc = _rpc(lambda req: httpx.Response(status, text="busy"))
        with pytest.raises(RPCError) as ei:
            await rpc.latest_block()
        await rpc.aclose()
        assert ei.value.code == status

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        rpc = _rpc(lambda req: httpx.Response(200, text="<html>"))
        with pytest.raises(RPCError, match="invalid JSON"):
            await rpc.latest_block()
        await rpc.aclose()

    @pytest.mark.asyncio
    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        rpc = _rpc(handler)
        with pytest.raises(RPCError, match="transport error"):
            await rpc.get_receipt(h(1))
        await rpc.aclose()

    @pytest.mark.asyncio
    async def test_get_code_defaults_to_empty(self):
        rpc = _rpc(lambda req: _result(req, None))
        assert await rpc.get_code(Address(CONTRACT), 5) == "0x"
        await rpc.aclose()

    @pytest.mark.asyncio
    async def test_get_block_passes_full_flag(self):
        seen = {}

        def handler(request):
            seen.update(json.loads(request.content))
            return _result(request, {"number": "0x5", "transactions": []})

        rpc = _rpc(handler)
        blk = await rpc.get_block(5, full_transactions=True)
        await rpc.aclose()
        assert seen["params"] == ["0x5", True]
        assert blk["number"] == "0x5"
