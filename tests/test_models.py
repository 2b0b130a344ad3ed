from contractscan.domain.models import BlockRange, Checkpoint, EventLog, ScanResult, Transaction
from contractscan.domain.normalize import hex_to_int, parse_log, parse_transaction

from fakes import CONTRACT, SENDER, FakeChain, h


def _chunk_result(chain: FakeChain, lo: int, hi: int) -> ScanResult:
    events = [parse_log(rl) for rl in chain.logs if lo <= int(rl["blockNumber"], 16) <= hi]
    txs = [parse_transaction(chain.txs[e.tx_hash], chain.receipts[e.tx_hash]) for e in events]
    return ScanResult.from_records(txs, events, BlockRange(lo, hi))


class TestScanResultMerge:
    """Merging is deduplicating and order-restoring."""

    def test_double_merge_is_idempotent(self):
        chain = FakeChain()
        for b in (150, 160, 170):
            chain.add_event(b)
        chunk = _chunk_result(chain, 100, 199)

        once = ScanResult()
        once.merge(chunk)
        twice = ScanResult()
        twice.merge(chunk)
        added = twice.merge(chunk)

        assert added == 0
        assert [t.hash for t in twice.transactions] == [t.hash for t in once.transactions]
        assert [e.key for e in twice.events] == [e.key for e in once.events]
        assert twice.accounts == once.accounts
        assert twice.blocks == once.blocks

    def test_merge_sorts_and_unions_range(self):
        chain = FakeChain()
        for b in (120, 250, 260):
            chain.add_event(b)
        agg = ScanResult()
        agg.merge(_chunk_result(chain, 200, 299))
        agg.merge(_chunk_result(chain, 100, 199))
        assert [e.block_number for e in agg.events] == [120, 250, 260]
        assert [t.block_number for t in agg.transactions] == [120, 250, 260]
        assert agg.block_range == BlockRange(100, 299)
        assert agg.summary()["total_events"] == 3

    def test_round_trip_through_dict(self):
        chain = FakeChain()
        chain.add_event(130)
        agg = ScanResult()
        agg.merge(_chunk_result(chain, 100, 199))
        restored = ScanResult.from_dict(agg.to_dict())
        assert restored.transactions == agg.transactions
        assert restored.events == agg.events
        assert restored.accounts == agg.accounts
        # the restored result still dedupes
        assert restored.merge(_chunk_result(chain, 100, 199)) == 0


class TestNormalize:
    def test_hex_to_int(self):
        assert hex_to_int("0x1a") == 26
        assert hex_to_int("42") == 42
        assert hex_to_int(None, 7) == 7
        assert hex_to_int(5) == 5

    def test_parse_log_keeps_unknown_fields(self):
        raw = {
            "address": CONTRACT.upper().replace("0X", "0x"),
            "topics": [h(1)],
            "data": "0x01",
            "blockNumber": "0x10",
            "transactionHash": h(2).upper().replace("0X", "0x"),
            "logIndex": "0x3",
            "providerSpecific": {"k": 1},
        }
        ev = parse_log(raw)
        assert ev.address == CONTRACT
        assert ev.tx_hash == h(2)
        assert (ev.block_number, ev.log_index) == (16, 3)
        assert ev.extra == {"providerSpecific": {"k": 1}}
        assert EventLog.from_dict(ev.to_dict()) == ev

    def test_parse_transaction_uses_receipt(self):
        chain = FakeChain()
        tx_hash = chain.add_event(150)
        tx = parse_transaction(chain.txs[tx_hash], chain.receipts[tx_hash], block_timestamp=99)
        assert tx.status is True
        assert tx.gas_used == str(0x5208)
        assert tx.value == str(10**18)
        assert tx.from_address == SENDER
        assert tx.to_address == CONTRACT
        assert tx.block_timestamp == 99
        assert Transaction.from_dict(tx.to_dict()) == tx

    def test_contract_creation_has_no_recipient(self):
        chain = FakeChain()
        raw = next(t for t in chain.txs.values() if t["to"] is None)
        assert parse_transaction(raw).to_address is None


class TestCheckpointRecord:

    def test_covered_intervals_survive_json(self):
        cp = Checkpoint(CONTRACT, "ethereum", 199, 1.0, covered=((100, 199), (400, 499)))
        raw = cp.to_dict()
        assert raw["covered"] == [[100, 199], [400, 499]]
        assert Checkpoint.from_dict(raw) == cp

    def test_record_without_covered_has_no_coverage(self):
        cp = Checkpoint.from_dict({"contract_address": CONTRACT, "chain": "ethereum", "last_completed_block": 599})
        assert cp.covered == ()
