import pytest

from contractscan.adapters.storage_json import JsonFileStore
from contractscan.application.health import HealthMonitor
from contractscan.application.indexer_manager import build_indexer
from contractscan.config import IndexerConfig
from contractscan.domain.errors import RateLimitExceededError, ScanRejectedError
from contractscan.domain.models import ScanRequest
from contractscan.domain.value_types import JobStatus

from fakes import CONTRACT, FakeChain, FakeRPC, no_sleep

OTHER = "0x" + "cd" * 20


@pytest.fixture
def chain():
    c = FakeChain(deployed_at=50, latest=599)
    for b in (150, 250, 350, 450, 550):
        c.add_event(b)
    return c


def make_indexer(tmp_path, chain, n=2, **overrides):
    rpcs = {}

    def factory(url):
        rpcs[url] = FakeRPC(url, chain)
        return rpcs[url]

    settings = dict(
        data_dir=tmp_path / "data", chunk_size=100, max_concurrent_chunks=3,
        log_batch_span=100, min_split_span=50, retry_base_delay=0.0, retry_max_delay=0.0,
    )
    settings.update(overrides)
    urls = {"ethereum": [f"https://rpc{i}.example" for i in range(n)]}
    manager = build_indexer(IndexerConfig(**settings), urls, rpc_factory=factory, retry_sleep=no_sleep)
    return manager, list(rpcs.values())


class TestJobLifecycle:

    @pytest.mark.asyncio
    async def test_scan_from_deployment_completes(self, tmp_path, chain):
        manager, _ = make_indexer(tmp_path, chain)
        job = await manager.run_scan(ScanRequest("alice", CONTRACT, "ethereum", tier="enterprise"))

        assert job.status is JobStatus.COMPLETED
        assert job.deployment.block_number == 50
        assert (job.from_block, job.to_block) == (50, 599)
        assert job.percent == 100.0
        assert job.summary["total_events"] == 5
        assert job.completed_range.to_dict() == {"start": 50, "end": 599}

        events = manager.channel.buffered("alice")
        assert events[0].kind == "progress" and events[0].payload["percent"] == 0.0
        percents = [e.payload["percent"] for e in events if e.kind == "progress"]
        assert percents == sorted(percents)
        done = events[-1]
        assert done.kind == "completion"
        assert done.payload["result"]["deployment"]["block_number"] == 50
        assert manager.metrics.get_metrics()["chunks_processed"] == 6
        assert manager.active_jobs() == []

    @pytest.mark.asyncio
    async def test_contract_without_code_fails_without_partial_data(self, tmp_path):
        manager, _ = make_indexer(tmp_path, FakeChain(deployed_at=700, latest=1_000))
        job = await manager.run_scan(ScanRequest("alice", CONTRACT, "ethereum", to_block=599))
        assert job.status is JobStatus.FAILED
        assert job.error == "contract not found: no code at upper bound"
        assert not job.partial
        assert manager.channel.last_event(job.job_id).payload["partial"] is False

    @pytest.mark.asyncio
    async def test_failed_chunk_reports_partial_result(self, tmp_path, chain):
        manager, rpcs = make_indexer(
            tmp_path, chain, endpoint_failure_threshold=1_000, circuit_breaker_threshold=1_000)
        for r in rpcs:
            r.poison = 350
        job = await manager.run_scan(
            ScanRequest("alice", CONTRACT, "ethereum", from_block=100, to_block=599))

        assert job.status is JobStatus.FAILED
        assert job.partial
        assert job.completed_range.to_dict() == {"start": 100, "end": 299}
        last = manager.channel.last_event(job.job_id)
        assert last.kind == "error"
        assert last.payload["partial"] is True
        assert last.payload["completed_range"] == {"start": 100, "end": 299}
        cp = await manager.checkpoints.load_checkpoint(CONTRACT, "ethereum")
        assert cp.last_completed_block == 299
        assert manager.metrics.get_user_stats("alice").errors == 1

    @pytest.mark.asyncio
    async def test_retry_after_partial_failure_resumes(self, tmp_path, chain):
        manager, rpcs = make_indexer(
            tmp_path, chain, endpoint_failure_threshold=1_000, circuit_breaker_threshold=1_000)
        for r in rpcs:
            r.poison = 350
        req = ScanRequest("alice", CONTRACT, "ethereum", from_block=100, to_block=599)
        await manager.run_scan(req)
        for r in rpcs:
            r.poison = None
        job = await manager.run_scan(req)
        assert job.status is JobStatus.COMPLETED
        assert job.summary["total_events"] == 5

    @pytest.mark.asyncio
    async def test_cancel_before_dispatch(self, tmp_path, chain):
        manager, _ = make_indexer(tmp_path, chain)
        job = await manager.start_scan(ScanRequest("alice", CONTRACT, "ethereum", from_block=100, to_block=599))
        assert manager.cancel(job.job_id)
        await manager.wait(job.job_id)
        assert job.status is JobStatus.CANCELLED
        assert manager.channel.last_event(job.job_id).payload["cancelled"] is True
        assert not manager.cancel(job.job_id)
        assert not manager.cancel("no-such-job")

    @pytest.mark.asyncio
    async def test_finished_jobs_beyond_retention_are_evicted(self, tmp_path, chain):
        manager, _ = make_indexer(tmp_path, chain, job_retention=1)
        first = await manager.run_scan(ScanRequest("alice", CONTRACT, "ethereum", from_block=100, to_block=199))
        second = await manager.run_scan(ScanRequest("alice", CONTRACT, "ethereum", from_block=200, to_block=299))

        assert first.status is JobStatus.COMPLETED and second.status is JobStatus.COMPLETED
        assert manager.get_job(first.job_id) is None
        assert manager.get_job(second.job_id) is second
        assert manager.channel.last_event(first.job_id) is None
        assert manager.channel.last_event(second.job_id).kind == "completion"
        assert manager.get_state()["jobs_total"] == 1

    @pytest.mark.asyncio
    async def test_two_users_scanning_one_contract_share_the_dataset(self, tmp_path, chain):
        manager, _ = make_indexer(tmp_path, chain)
        alice = await manager.start_scan(ScanRequest("alice", CONTRACT, "ethereum", from_block=100, to_block=299))
        bob = await manager.start_scan(ScanRequest("bob", CONTRACT, "ethereum", from_block=300, to_block=599))
        await manager.wait(alice.job_id)
        await manager.wait(bob.job_id)

        assert alice.status is JobStatus.COMPLETED and bob.status is JobStatus.COMPLETED
        stored = await manager.checkpoints.load_result(CONTRACT, "ethereum")
        assert sorted(e.block_number for e in stored.events) == [150, 250, 350, 450, 550]
        cp = await manager.checkpoints.load_checkpoint(CONTRACT, "ethereum")
        assert cp.covered == ((100, 599),)


class TestAdmission:

    @pytest.mark.asyncio
    async def test_invalid_address_rejected(self, tmp_path, chain):
        manager, _ = make_indexer(tmp_path, chain)
        with pytest.raises(ScanRejectedError):
            await manager.start_scan(ScanRequest("alice", "0x1234", "ethereum"))

    @pytest.mark.asyncio
    async def test_duplicate_active_scan_rejected(self, tmp_path, chain):
        manager, _ = make_indexer(tmp_path, chain)
        req = ScanRequest("alice", CONTRACT, "ethereum", tier="enterprise", from_block=100, to_block=599)
        job = await manager.start_scan(req)
        with pytest.raises(ScanRejectedError):
            await manager.start_scan(req)
        # another user may scan the same contract
        other = await manager.start_scan(ScanRequest("bob", CONTRACT, "ethereum", tier="enterprise",
                                                     from_block=100, to_block=599))
        await manager.wait(job.job_id)
        await manager.wait(other.job_id)

    @pytest.mark.asyncio
    async def test_free_tier_concurrency_limit(self, tmp_path, chain):
        manager, _ = make_indexer(tmp_path, chain)
        first = await manager.start_scan(
            ScanRequest("alice", CONTRACT, "ethereum", from_block=100, to_block=599))
        with pytest.raises(RateLimitExceededError):
            await manager.start_scan(ScanRequest("alice", OTHER, "ethereum", from_block=100, to_block=599))
        await manager.wait(first.job_id)
        # the slot is released when the job ends
        second = await manager.start_scan(
            ScanRequest("alice", OTHER, "ethereum", from_block=100, to_block=599))
        await manager.wait(second.job_id)
        assert second.status is JobStatus.COMPLETED

    def test_history_floor_by_tier(self, tmp_path, chain):
        manager, _ = make_indexer(tmp_path, chain)
        assert manager._history_floor("ethereum", 1_000_000, "enterprise") == 0
        assert manager._history_floor("ethereum", 1_000_000, "free") == 1_000_000 - 7 * 7_200 + 1
        assert manager._history_floor("base", 1_000_000, "free") == 1_000_000 - 7 * 43_200 + 1
        assert manager._history_floor("ethereum", 100, "pro") == 0


class TestShutdown:

    @pytest.mark.asyncio
    async def test_shutdown_stops_jobs_and_refuses_new_ones(self, tmp_path, chain):
        manager, _ = make_indexer(tmp_path, chain)
        job = await manager.start_scan(ScanRequest("alice", CONTRACT, "ethereum", from_block=100, to_block=599))
        await manager.shutdown(timeout=5)
        assert job.status.terminal
        assert manager.active_jobs() == []
        assert manager.get_state()["shutting_down"]
        with pytest.raises(ScanRejectedError):
            await manager.start_scan(ScanRequest("bob", CONTRACT, "ethereum"))
        assert (await manager.limiter.provider.check("alice", "free")).allowed


class TestHealthMonitor:

    @pytest.mark.asyncio
    async def test_report_lists_components(self, tmp_path, chain):
        manager, _ = make_indexer(tmp_path, chain)
        monitor = HealthMonitor(manager.pool, JsonFileStore(tmp_path / "data"), manager, manager.channel)
        report = await monitor.perform_health_check()
        assert set(report["components"]) == {"rpc", "storage", "indexer", "progress"}
        assert report["components"]["rpc"]["healthy"]
        assert report["components"]["indexer"]["active_count"] == 0
        detailed = await monitor.get_detailed_health()
        assert detailed["history_size"] == 2
        assert "metrics" in detailed

    @pytest.mark.asyncio
    async def test_unreachable_endpoints_degrade_health(self, tmp_path, chain):
        manager, rpcs = make_indexer(tmp_path, chain, endpoint_failure_threshold=1)
        for r in rpcs:
            r.down = True
        await manager.pool.check_all()
        monitor = HealthMonitor(manager.pool, JsonFileStore(tmp_path / "data"), manager)
        report = await monitor.perform_health_check()
        assert report["overall"] == "degraded"
        assert "RPC endpoints unhealthy" in [a["message"] for a in monitor.alerts]
