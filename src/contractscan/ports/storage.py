# contractscan/ports/storage.py
from __future__ import annotations

from typing import Any, Iterable, Protocol
from ..domain.models import EventLog, ChunkRec


class RecordStore(Protocol):
    """Port for named JSON records with crash-safe replacement."""

    async def write_json(self, key: str, data: Any) -> None:
        """Persist `data` under `key`; the previous version stays recoverable."""

    async def read_json(self, key: str) -> Any | None:
        """Return the latest fully written value for `key`, or None."""

    async def list_files(self, prefix: str = "") -> list[str]:
        """Return the keys of all stored records, optionally filtered by prefix."""


class EventSink(Protocol):
    """Optional export of each committed chunk's raw events (Parquet in practice)."""

    async def write_chunk(
        self,
        from_block: int,
        to_block: int,
        events: Iterable[EventLog],
    ) -> None:
        """Called once per committed chunk, after its checkpoint has advanced."""


class ManifestSink(Protocol):
    """Audit trail of chunk outcomes (done or failed, with attempt counts)."""

    async def append(self, rec: ChunkRec) -> None:
        """Append one record; a torn final record must not hide earlier ones."""
