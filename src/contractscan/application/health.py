from __future__ import annotations

import asyncio
import logging
from collections import deque
from datetime import datetime, timezone
from typing import Any

from ..adapters.storage_json import JsonFileStore
from .endpoint_pool import EndpointPool
from .indexer_manager import IndexerManager
from .progress import ProgressChannel

log = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class HealthMonitor:
    """Periodic roll-up of endpoint, storage and job health with a short alert log."""

    def __init__(
        self,
        pool: EndpointPool,
        store: JsonFileStore,
        manager: IndexerManager | None = None,
        channel: ProgressChannel | None = None,
        *,
        history_size: int = 100,
        alert_size: int = 50,
    ) -> None:
        self.pool = pool
        self.store = store
        self.manager = manager
        self.channel = channel
        self.history: deque[dict[str, Any]] = deque(maxlen=history_size)
        self.alerts: deque[dict[str, Any]] = deque(maxlen=alert_size)
        self._task: asyncio.Task[None] | None = None

    def _rpc_health(self) -> dict[str, Any]:
        state = self.pool.get_state()
        return {"healthy": state["healthy"], "chains": state["chains"]}

    async def _storage_health(self) -> dict[str, Any]:
        try:
            return await self.store.check_health()
        except OSError as e:
            return {"healthy": False, "error": str(e)}

    def _indexer_health(self) -> dict[str, Any]:
        active = self.manager.active_jobs() if self.manager else []
        return {"healthy": True, "active_count": len(active),
                "details": f"{len(active)} active indexing sessions"}

    async def perform_health_check(self) -> dict[str, Any]:
        components: dict[str, Any] = {
            "rpc": self._rpc_health(),
            "storage": await self._storage_health(),
            "indexer": self._indexer_health(),
        }
        if self.channel is not None:
            n = self.channel.consumer_count()
            components["progress"] = {"healthy": True, "connected_consumers": n}
        overall = "healthy" if all(c.get("healthy") for c in components.values()) else "degraded"
        report = {"timestamp": _now(), "overall": overall, "components": components}
        self.history.append(report)
        self._check_alerts(report)
        return report

    def _check_alerts(self, report: dict[str, Any]) -> None:
        storage = report["components"]["storage"]
        free = storage.get("free_space_percent")
        if free is not None and free < 10:
            self.add_alert("warning", "Low disk space", {"free_space_percent": free})
        if not report["components"]["rpc"]["healthy"]:
            self.add_alert("error", "RPC endpoints unhealthy", {})
        if report["overall"] == "degraded":
            self.add_alert("warning", "System health degraded", {})

    def add_alert(self, level: str, message: str, data: dict[str, Any]) -> None:
        self.alerts.append({"level": level, "message": message, "data": data, "timestamp": _now()})
        log.warning("[%s] %s", level.upper(), message)

    async def _loop(self, interval: float) -> None:
        while True:
            try:
                await self.perform_health_check()
            except Exception:
                log.exception("health check failed")
            await asyncio.sleep(interval)

    def start_monitoring(self, interval: float = 30.0) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.get_running_loop().create_task(self._loop(interval), name="health-monitor")

    async def stop_monitoring(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def get_detailed_health(self) -> dict[str, Any]:
        report = await self.perform_health_check()
        report["recent_alerts"] = list(self.alerts)[-10:]
        report["history_size"] = len(self.history)
        if self.manager is not None:
            report["metrics"] = self.manager.metrics.get_metrics()
            report["jobs"] = [j.snapshot() for j in self.manager.active_jobs()]
        return report
