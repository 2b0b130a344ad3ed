from __future__ import annotations
import asyncio, os
from typing import Any, Iterable

import pyarrow as pa
import pyarrow.parquet as pq

from ..ports.storage import EventSink
from ..domain.models import EventLog

EVENT_SCHEMA = pa.schema([
    pa.field("block_number", pa.int64(), nullable=False),
    pa.field("log_index", pa.int64(), nullable=False),
    pa.field("tx_hash", pa.string(), nullable=False),
    pa.field("address", pa.string(), nullable=False),
    pa.field("topic0", pa.string()),
    pa.field("topics", pa.list_(pa.string())),
    pa.field("data_hex", pa.string()),
    pa.field("block_hash", pa.string()),
    pa.field("transaction_index", pa.int64()),
    pa.field("removed", pa.bool_()),
])


def _row(e: EventLog) -> dict[str, Any]:
    return {
        "block_number": e.block_number,
        "log_index": e.log_index,
        "tx_hash": e.tx_hash,
        "address": e.address,
        "topic0": e.topics[0] if e.topics else None,
        "topics": list(e.topics),
        "data_hex": e.data_hex,
        "block_hash": e.block_hash,
        "transaction_index": e.transaction_index,
        "removed": e.removed,
    }


def events_table(events: Iterable[EventLog]) -> pa.Table:
    rows = sorted((_row(e) for e in events), key=lambda r: (r["block_number"], r["log_index"]))
    return pa.Table.from_pylist(rows, schema=EVENT_SCHEMA)


class ParquetEventSink(EventSink):
    """One Parquet file per committed chunk: <chain>__<address>__chunk_<from>_<to>.parquet."""

    def __init__(self, root_dir: str, chain: str, addr_slug: str, codec: str = "snappy") -> None:
        self.root = root_dir
        self.chain = chain
        self.addr_slug = addr_slug
        self.codec = codec
        os.makedirs(self.root, exist_ok=True)

    def path_for(self, fb: int, tb: int) -> str:
        return os.path.join(self.root, f"{self.chain}__{self.addr_slug}__chunk_{fb}_{tb}.parquet")

    async def write_chunk(self, from_block: int, to_block: int, events: Iterable[EventLog]) -> None:
        table = events_table(events)
        await asyncio.to_thread(self._write, self.path_for(from_block, to_block), table)

    def _write(self, path: str, table: pa.Table) -> None:
        tmp = path + ".tmp"
        pq.write_table(table, tmp, compression=self.codec)
        os.replace(tmp, path)
