from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable

from ..domain.errors import NoHealthyEndpointError
from ..domain.models import Endpoint
from ..domain.value_types import Chain, CircuitState
from ..ports.rpc import RPCClient
from .resilience import CircuitBreaker
from .security import validate_secure_endpoint

log = logging.getLogger(__name__)

RPCFactory = Callable[[str], RPCClient]


class EndpointPool:
    """
    Registry of RPC endpoints per chain, keyed by (chain, url).

    Endpoint health and breaker state are shared by every scan job on a chain.
    They are only changed through `record_success`, `record_failure` and
    `apply_probe`, which run to completion without awaiting, so concurrent
    call-outcome and health-check writers cannot interleave mid-update.
    """

    def __init__(
        self,
        rpc_factory: RPCFactory,
        *,
        failure_threshold: int = 3,
        breaker_threshold: int = 5,
        breaker_cooldown: float = 60.0,
        health_check_interval: float = 30.0,
        probe_timeout: float = 5.0,
        production: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._factory = rpc_factory
        self.failure_threshold = failure_threshold
        self.breaker_threshold = breaker_threshold
        self.breaker_cooldown = breaker_cooldown
        self.health_check_interval = health_check_interval
        self.probe_timeout = probe_timeout
        self.production = production
        self._clock = clock
        self._endpoints: dict[Chain, list[Endpoint]] = {}
        self._clients: dict[tuple[Chain, str], RPCClient] = {}
        self._breakers: dict[tuple[Chain, str], CircuitBreaker] = {}
        self._cursor: dict[Chain, int] = {}
        self._check_locks: dict[Chain, asyncio.Lock] = {}
        self._health_task: asyncio.Task[None] | None = None

    # ── registration ────────────────────────────────────────────

    def initialize_chain(self, chain: str, urls: list[str] | tuple[str, ...]) -> list[Endpoint]:
        chain = Chain(chain)
        eps = self._endpoints.setdefault(chain, [])
        self._cursor.setdefault(chain, 0)
        self._check_locks.setdefault(chain, asyncio.Lock())
        known = {e.url for e in eps}
        for url in urls:
            if url in known:
                continue
            validate_secure_endpoint(url, production=self.production)
            eps.append(Endpoint(url=url, chain=chain, last_checked=self._clock()))
            self._clients[(chain, url)] = self._factory(url)
            self._breakers[(chain, url)] = CircuitBreaker(
                f"{chain}:{url}", self.breaker_threshold, self.breaker_cooldown, clock=self._clock,
            )
            known.add(url)
        log.debug("chain %s has %d endpoint(s)", chain, len(eps))
        return list(eps)

    def chains(self) -> list[Chain]:
        return list(self._endpoints)

    def endpoints(self, chain: str) -> list[Endpoint]:
        return list(self._endpoints.get(Chain(chain), []))

    def client_for(self, endpoint: Endpoint) -> RPCClient:
        return self._clients[(endpoint.chain, endpoint.url)]

    def breaker_for(self, endpoint: Endpoint) -> CircuitBreaker:
        return self._breakers[(endpoint.chain, endpoint.url)]

    # ── selection ───────────────────────────────────────────────

    def get_healthy_endpoint(self, chain: str) -> Endpoint:
        """Round-robin over endpoints that are reachable and whose breaker admits a call."""
        chain = Chain(chain)
        eps = self._endpoints.get(chain)
        if not eps:
            raise NoHealthyEndpointError(chain, "no endpoints configured")
        start = self._cursor.get(chain, 0)
        for i in range(len(eps)):
            idx = (start + i) % len(eps)
            ep = eps[idx]
            if ep.health == "unreachable":
                continue
            if not self.breaker_for(ep).allows_request():
                continue
            self._cursor[chain] = (idx + 1) % len(eps)
            return ep
        raise NoHealthyEndpointError(chain, f"all {len(eps)} endpoint(s) unreachable or circuit-open")

    # ── single mutation path ────────────────────────────────────

    def record_success(self, endpoint: Endpoint, latency_ms: float) -> None:
        endpoint.total_successes += 1
        endpoint.response_time_ms = latency_ms
        if endpoint.health == "unreachable":
            # only a health probe may bring an unreachable endpoint back
            return
        endpoint.consecutive_failures = 0
        endpoint.health = "healthy"
        endpoint.last_error = None

    def record_failure(self, endpoint: Endpoint, error: BaseException) -> None:
        endpoint.total_failures += 1
        endpoint.consecutive_failures += 1
        endpoint.last_error = f"{type(error).__name__}: {error}"
        previous = endpoint.health
        if endpoint.consecutive_failures >= self.failure_threshold:
            endpoint.health = "unreachable"
        elif endpoint.health == "healthy":
            endpoint.health = "degraded"
        if endpoint.health != previous:
            log.warning("endpoint %s %s -> %s (%d consecutive failures): %s",
                        endpoint.url, previous, endpoint.health,
                        endpoint.consecutive_failures, endpoint.last_error)

    def apply_probe(self, endpoint: Endpoint, ok: bool, latency_ms: float = 0.0,
                    error: BaseException | None = None) -> None:
        endpoint.last_checked = self._clock()
        if ok:
            if endpoint.health != "healthy":
                log.info("endpoint %s healthy again", endpoint.url)
            endpoint.health = "healthy"
            endpoint.consecutive_failures = 0
            endpoint.response_time_ms = latency_ms
            endpoint.last_error = None
        else:
            self.record_failure(endpoint, error or RuntimeError("health probe failed"))

    # ── health checks ───────────────────────────────────────────

    async def check_endpoint(self, endpoint: Endpoint) -> bool:
        client = self.client_for(endpoint)
        t0 = time.perf_counter()
        try:
            await asyncio.wait_for(client.latest_block(), timeout=self.probe_timeout)
        except Exception as e:
            self.apply_probe(endpoint, False, error=e)
            return False
        self.apply_probe(endpoint, True, (time.perf_counter() - t0) * 1000.0)
        return True

    async def check_chain(self, chain: str) -> bool:
        """Run one probe cycle for `chain`; returns False if a cycle was already running."""
        lock = self._check_locks.setdefault(Chain(chain), asyncio.Lock())
        if lock.locked():
            log.debug("health check for %s already running; skipped", chain)
            return False
        async with lock:
            eps = self.endpoints(chain)
            await asyncio.gather(*(self.check_endpoint(ep) for ep in eps))
        return True

    async def check_all(self) -> None:
        await asyncio.gather(*(self.check_chain(c) for c in self.chains()))

    async def _health_loop(self) -> None:
        while True:
            try:
                await self.check_all()
            except Exception:
                log.exception("health check cycle failed")
            await asyncio.sleep(self.health_check_interval)

    def start_health_checks(self) -> None:
        if self._health_task is not None and not self._health_task.done():
            return
        self._health_task = asyncio.get_running_loop().create_task(
            self._health_loop(), name="endpoint-health-checks")

    async def stop_health_checks(self) -> None:
        task, self._health_task = self._health_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    # ── snapshots ───────────────────────────────────────────────

    def get_state(self) -> dict[str, Any]:
        chains: dict[str, Any] = {}
        for chain, eps in self._endpoints.items():
            rows = []
            for ep in eps:
                row = ep.snapshot()
                row["circuit"] = self.breaker_for(ep).get_state()
                rows.append(row)
            usable = sum(
                1 for ep in eps
                if ep.health != "unreachable" and self.breaker_for(ep).state is not CircuitState.OPEN
            )
            chains[chain] = {"endpoints": rows, "healthy_count": usable, "total_count": len(eps)}
        return {"healthy": self.is_healthy(), "chains": chains}

    def is_healthy(self) -> bool:
        return all(
            any(ep.health != "unreachable" for ep in eps)
            for eps in self._endpoints.values()
        )

    async def aclose(self) -> None:
        await self.stop_health_checks()
        for client in self._clients.values():
            await client.aclose()
