import asyncio

import pytest

from contractscan.application.endpoint_pool import EndpointPool
from contractscan.domain.errors import ConfigError, NoHealthyEndpointError, RPCError

from fakes import FakeChain, FakeClock, FakeRPC, make_pool


class TestSelection:

    @pytest.fixture
    def setup(self):
        return make_pool(FakeChain(), 3, clock=FakeClock())

    def test_round_robin_over_all_endpoints(self, setup):
        pool, rpcs = setup
        urls = [pool.get_healthy_endpoint("ethereum").url for _ in range(6)]
        assert urls == [r.url for r in rpcs] * 2

    def test_unreachable_endpoint_is_never_selected(self, setup):
        pool, rpcs = setup
        bad = pool.endpoints("ethereum")[1]
        for _ in range(pool.failure_threshold):
            pool.record_failure(bad, RPCError("down"))
        assert bad.health == "unreachable"
        picked = {pool.get_healthy_endpoint("ethereum").url for _ in range(30)}
        assert bad.url not in picked
        assert picked == {rpcs[0].url, rpcs[2].url}

    def test_call_success_does_not_revive_unreachable(self, setup):
        pool, _ = setup
        ep = pool.endpoints("ethereum")[0]
        for _ in range(3):
            pool.record_failure(ep, RPCError("down"))
        pool.record_success(ep, 5.0)
        assert ep.health == "unreachable"

    def test_degraded_then_recovered_by_call(self, setup):
        pool, _ = setup
        ep = pool.endpoints("ethereum")[0]
        pool.record_failure(ep, RPCError("slow"))
        assert ep.health == "degraded"
        pool.record_success(ep, 12.0)
        assert ep.health == "healthy"
        assert ep.consecutive_failures == 0

    def test_open_circuit_is_skipped(self, setup):
        pool, rpcs = setup
        first = pool.endpoints("ethereum")[0]
        breaker = pool.breaker_for(first)
        for _ in range(breaker.threshold):
            breaker.on_failure()
        picked = {pool.get_healthy_endpoint("ethereum").url for _ in range(10)}
        assert first.url not in picked

    def test_all_unreachable_raises(self, setup):
        pool, _ = setup
        for ep in pool.endpoints("ethereum"):
            for _ in range(3):
                pool.record_failure(ep, RPCError("down"))
        with pytest.raises(NoHealthyEndpointError):
            pool.get_healthy_endpoint("ethereum")
        assert not pool.is_healthy()

    def test_unknown_chain_raises(self, setup):
        pool, _ = setup
        with pytest.raises(NoHealthyEndpointError):
            pool.get_healthy_endpoint("base")

    def test_initialize_is_idempotent_per_url(self, setup):
        pool, rpcs = setup
        pool.initialize_chain("ethereum", [rpcs[0].url])
        assert len(pool.endpoints("ethereum")) == 3


class TestHealthChecks:

    @pytest.mark.asyncio
    async def test_health_check_brings_endpoint_back(self):
        pool, rpcs = make_pool(FakeChain(), 3)
        ep = pool.endpoints("ethereum")[1]
        rpcs[1].down = True
        for _ in range(3):
            await pool.check_chain("ethereum")
        assert ep.health == "unreachable"
        assert all(pool.get_healthy_endpoint("ethereum").url != ep.url for _ in range(10))

        rpcs[1].down = False
        await pool.check_chain("ethereum")
        assert ep.health == "healthy"
        picked = {pool.get_healthy_endpoint("ethereum").url for _ in range(3)}
        assert ep.url in picked

    @pytest.mark.asyncio
    async def test_overlapping_cycle_is_skipped(self):
        chain = FakeChain()
        gate = asyncio.Event()

        class SlowRPC(FakeRPC):
            async def latest_block(self):
                await gate.wait()
                return await super().latest_block()

        pool = EndpointPool(lambda url: SlowRPC(url, chain))
        pool.initialize_chain("ethereum", ["https://slow.example"])
        first = asyncio.create_task(pool.check_chain("ethereum"))
        await asyncio.sleep(0)
        assert await pool.check_chain("ethereum") is False
        gate.set()
        assert await first is True

    @pytest.mark.asyncio
    async def test_health_check_timeout_counts_as_failure(self):
        chain = FakeChain()

        class HangingRPC(FakeRPC):
            async def latest_block(self):
                await asyncio.sleep(10)

        pool = EndpointPool(lambda url: HangingRPC(url, chain), probe_timeout=0.01)
        pool.initialize_chain("ethereum", ["https://hang.example"])
        await pool.check_all()
        ep = pool.endpoints("ethereum")[0]
        assert ep.health == "degraded"
        assert ep.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_background_loop_starts_and_stops(self):
        pool, rpcs = make_pool(FakeChain(), 2, health_check_interval=0.01)
        pool.start_health_checks()
        await asyncio.sleep(0.05)
        await pool.stop_health_checks()
        assert rpcs[0].calls.count("eth_blockNumber") >= 1

    def test_state_snapshot(self):
        pool, _ = make_pool(FakeChain(), 2)
        state = pool.get_state()
        chain = state["chains"]["ethereum"]
        assert state["healthy"] is True
        assert chain["total_count"] == 2 and chain["healthy_count"] == 2
        assert chain["endpoints"][0]["circuit"]["state"] == "CLOSED"


class TestEndpointSecurity:

    def test_plain_http_rejected_in_production(self):
        pool = EndpointPool(lambda url: FakeRPC(url, FakeChain()), production=True)
        with pytest.raises(ConfigError):
            pool.initialize_chain("ethereum", ["http://insecure.example"])

    def test_plain_http_allowed_outside_production(self):
        pool = EndpointPool(lambda url: FakeRPC(url, FakeChain()))
        assert len(pool.initialize_chain("ethereum", ["http://localhost:8545"])) == 1

    def test_garbage_url_rejected(self):
        pool = EndpointPool(lambda url: FakeRPC(url, FakeChain()))
        with pytest.raises(ConfigError):
            pool.initialize_chain("ethereum", ["not a url"])
