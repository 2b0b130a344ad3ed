from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict, deque
from typing import Any, AsyncIterator

from ..domain.models import ProgressEvent
from ..domain.value_types import EventKind

log = logging.getLogger(__name__)


class ProgressChannel:
    """
    Push channel of job events keyed by consumer.

    A connected consumer gets events on its own bounded queue. While a consumer
    is disconnected its most recent `buffer_size` events are kept and replayed
    on the next `connect`. When a queue or buffer is full the oldest event is
    dropped, so the newest (and any terminal) event always survives.

    The last event of at most `max_tracked_jobs` jobs is remembered for
    `last_event`; the least recently updated job is forgotten first.
    """

    def __init__(self, buffer_size: int = 50, max_tracked_jobs: int = 1_000) -> None:
        if buffer_size < 1:
            raise ValueError("buffer_size must be >= 1")
        if max_tracked_jobs < 1:
            raise ValueError("max_tracked_jobs must be >= 1")
        self.buffer_size = buffer_size
        self.max_tracked_jobs = max_tracked_jobs
        self._queues: dict[str, asyncio.Queue[ProgressEvent]] = {}
        self._buffers: dict[str, deque[ProgressEvent]] = {}
        self._last: OrderedDict[str, ProgressEvent] = OrderedDict()

    def publish(self, event: ProgressEvent) -> None:
        self._last[event.job_id] = event
        self._last.move_to_end(event.job_id)
        while len(self._last) > self.max_tracked_jobs:
            self._last.popitem(last=False)
        q = self._queues.get(event.consumer_id)
        if q is None:
            buf = self._buffers.get(event.consumer_id)
            if buf is None:
                buf = self._buffers[event.consumer_id] = deque(maxlen=self.buffer_size)
            buf.append(event)
            return
        if q.full():
            dropped = q.get_nowait()
            log.debug("consumer %s lagging; dropped %s event for %s", event.consumer_id, dropped.kind, dropped.job_id)
        q.put_nowait(event)

    def _emit(self, kind: EventKind, consumer_id: str, job_id: str, payload: dict[str, Any]) -> ProgressEvent:
        ev = ProgressEvent(kind=kind, job_id=job_id, consumer_id=consumer_id, payload=payload)
        self.publish(ev)
        return ev

    def emit_progress(self, consumer_id: str, job_id: str, percent: float, current_step: str,
                      **extra: Any) -> ProgressEvent:
        return self._emit("progress", consumer_id, job_id,
                          {"job_id": job_id, "percent": percent, "current_step": current_step, **extra})

    def emit_completion(self, consumer_id: str, job_id: str, result: dict[str, Any]) -> ProgressEvent:
        return self._emit("completion", consumer_id, job_id, {"job_id": job_id, "result": result})

    def emit_error(self, consumer_id: str, job_id: str, message: str, **extra: Any) -> ProgressEvent:
        return self._emit("error", consumer_id, job_id, {"job_id": job_id, "message": message, **extra})

    def connect(self, consumer_id: str) -> asyncio.Queue[ProgressEvent]:
        """Attach a consumer; buffered events are replayed into the returned queue first."""
        q: asyncio.Queue[ProgressEvent] = asyncio.Queue(maxsize=self.buffer_size)
        for ev in self._buffers.pop(consumer_id, ()):
            q.put_nowait(ev)
        self._queues[consumer_id] = q
        return q

    def disconnect(self, consumer_id: str) -> None:
        q = self._queues.pop(consumer_id, None)
        if q is None:
            return
        # undelivered events go back to the replay buffer
        buf = self._buffers.setdefault(consumer_id, deque(maxlen=self.buffer_size))
        while not q.empty():
            buf.append(q.get_nowait())

    def is_connected(self, consumer_id: str) -> bool:
        return consumer_id in self._queues

    def buffered(self, consumer_id: str) -> list[ProgressEvent]:
        return list(self._buffers.get(consumer_id, ()))

    def last_event(self, job_id: str) -> ProgressEvent | None:
        return self._last.get(job_id)

    def forget(self, job_id: str) -> None:
        self._last.pop(job_id, None)

    async def stream(self, consumer_id: str, job_id: str | None = None) -> AsyncIterator[ProgressEvent]:
        """Yield events for `consumer_id` until a terminal event (for `job_id`, if given) arrives."""
        q = self._queues.get(consumer_id) or self.connect(consumer_id)
        try:
            while True:
                ev = await q.get()
                yield ev
                if ev.terminal and (job_id is None or ev.job_id == job_id):
                    return
        finally:
            self.disconnect(consumer_id)

    def consumer_count(self) -> int:
        return len(self._queues)
