from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any, Mapping, Sequence

from eth_utils import is_address

from ..adapters.quota_memory import InMemoryQuotaProvider
from ..adapters.rpc_httpx import HttpxRPC
from ..adapters.storage_json import JsonFileStore
from ..config import IndexerConfig, blocks_for_days
from ..domain.errors import ScanRejectedError, UnsupportedChainError
from ..domain.models import ScanJob, ScanRequest
from ..domain.tiers import tier_limits
from ..domain.value_types import JobStatus, normalize_address
from ..ports.quota import QuotaProvider
from ..ports.storage import EventSink, ManifestSink
from .checkpoints import CheckpointRepository
from .chunk_manager import ChunkCommit, ChunkManager, ChunkScanOutcome
from .deployment import DeploymentBlockFinder
from .endpoint_pool import EndpointPool, RPCFactory
from .fetcher import ContractFetcher
from .metrics import MetricsCollector
from .progress import ProgressChannel
from .resilience import RetryPolicy
from .security import AnomalyDetector, RequestEvent, SubscriptionLimiter
from .validation import CrossEndpointCheck, HorizontalValidator

log = logging.getLogger(__name__)

_DEFAULT_BLOCKS_PER_DAY = 86_400 // 12


class IndexerManager:
    """
    Owns scan jobs: PENDING -> RUNNING -> COMPLETED | FAILED | CANCELLED.

    Progress, completion and error events go to the progress channel under the
    requesting user's id. A failed job that committed at least one chunk keeps
    its data and is reported with `partial=True` and the completed range.
    """

    def __init__(
        self,
        config: IndexerConfig,
        pool: EndpointPool,
        fetcher: ContractFetcher,
        finder: DeploymentBlockFinder,
        chunk_manager: ChunkManager,
        limiter: SubscriptionLimiter,
        channel: ProgressChannel,
        *,
        anomaly_detector: AnomalyDetector | None = None,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.config = config
        self.pool = pool
        self.fetcher = fetcher
        self.finder = finder
        self.chunk_manager = chunk_manager
        self.limiter = limiter
        self.channel = channel
        self.anomaly_detector = anomaly_detector
        self.metrics = metrics or MetricsCollector()
        self._jobs: dict[str, ScanJob] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._shutting_down = False

    @property
    def checkpoints(self) -> CheckpointRepository:
        return self.chunk_manager.checkpoints

    # ── job lifecycle ───────────────────────────────────────────

    def _ensure_chain(self, chain: str) -> None:
        if chain not in self.pool.chains():
            self.pool.initialize_chain(chain, self.config.endpoints_for(chain))

    def _record(self, user_id: str, kind: Any) -> None:
        if self.anomaly_detector is not None:
            self.anomaly_detector.record(RequestEvent(user_id, kind))

    async def start_scan(self, request: ScanRequest) -> ScanJob:
        """Admit the request and schedule it; raises before any work if it cannot start."""
        if self._shutting_down:
            raise ScanRejectedError("indexer is shutting down, not accepting new scans")
        if not is_address(request.contract_address):
            raise ScanRejectedError(f"invalid contract address {request.contract_address!r}")
        addr = normalize_address(request.contract_address)
        for job in self.active_jobs():
            if (job.request.user_id == request.user_id
                    and normalize_address(job.request.contract_address) == addr
                    and job.request.chain == request.chain):
                raise ScanRejectedError(f"scan {job.job_id} for {addr} on {request.chain} is already running")
        self._ensure_chain(request.chain)

        self._record(request.user_id, "scan_requested")
        await self.limiter.admit(request.user_id, request.tier)

        job = ScanJob(job_id=uuid.uuid4().hex, request=request)
        self._jobs[job.job_id] = job
        task = asyncio.get_running_loop().create_task(self._run(job), name=f"scan-{job.job_id[:8]}")
        self._tasks[job.job_id] = task
        task.add_done_callback(lambda _t, jid=job.job_id: self._tasks.pop(jid, None))
        log.info("job %s queued: %s on %s for user %s", job.job_id, addr, request.chain, request.user_id)
        return job

    async def run_scan(self, request: ScanRequest) -> ScanJob:
        job = await self.start_scan(request)
        await self.wait(job.job_id)
        return job

    async def wait(self, job_id: str) -> ScanJob | None:
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait({task})
        return self._jobs.get(job_id)

    def cancel(self, job_id: str) -> bool:
        """Stop dispatching new chunks for `job_id`; chunks already in flight still commit."""
        job = self._jobs.get(job_id)
        if job is None or job.status.terminal:
            return False
        job.cancel_requested = True
        log.info("cancellation requested for job %s", job_id)
        return True

    def get_job(self, job_id: str) -> ScanJob | None:
        return self._jobs.get(job_id)

    def active_jobs(self) -> list[ScanJob]:
        return [j for j in self._jobs.values() if not j.status.terminal]

    # ── range resolution ────────────────────────────────────────

    def _history_floor(self, chain: str, to_block: int, tier: str) -> int:
        limits = tier_limits(tier)
        if limits is None or limits.historical_days < 0:
            return 0
        try:
            window = blocks_for_days(chain, limits.historical_days)
        except UnsupportedChainError:
            window = _DEFAULT_BLOCKS_PER_DAY * limits.historical_days
        return max(0, to_block - window + 1)

    async def _resolve_range(self, job: ScanJob) -> bool:
        req = job.request
        addr = normalize_address(req.contract_address)
        job.current_step = "resolving block range"
        to_block = req.to_block if req.to_block is not None else await self.fetcher.latest_block(req.chain)
        from_block = req.from_block
        if from_block is None:
            job.current_step = "finding deployment block"
            info = await self.finder.find(addr, req.chain, upper_bound=to_block)
            job.deployment = info
            if not info.found:
                job.error = f"contract not found: {info.reason}"
                return False
            from_block = info.block_number
        from_block = max(from_block, self._history_floor(req.chain, to_block, req.tier))
        if from_block > to_block:
            job.error = f"empty block range {from_block}-{to_block}"
            return False
        job.from_block, job.to_block = from_block, to_block
        job.blocks_total = to_block - from_block + 1
        return True

    # ── execution ───────────────────────────────────────────────

    def _on_chunk(self, job: ScanJob):
        def handle(commit: ChunkCommit) -> None:
            job.blocks_completed = max(job.blocks_completed, commit.blocks_covered)
            job.current_step = f"indexed blocks {commit.chunk.start_block}-{commit.chunk.end_block}"
            self.metrics.record_chunk(job.request.user_id, commit.chunk.span(), commit.elapsed_s)
            self.channel.emit_progress(
                job.request.user_id, job.job_id, job.percent, job.current_step,
                events=commit.events, transactions=commit.transactions,
            )
        return handle

    async def _run(self, job: ScanJob) -> None:
        user = job.request.user_id
        outcome: ChunkScanOutcome | None = None
        try:
            job.status = JobStatus.RUNNING
            self._record(user, "scan_started")
            self.channel.emit_progress(user, job.job_id, 0.0, "starting")
            if not await self._resolve_range(job):
                self._finish_failed(job, job.error or "range resolution failed")
                return
            self.channel.emit_progress(user, job.job_id, 0.0, f"scanning {job.from_block}-{job.to_block}")
            outcome = await self.chunk_manager.scan(
                job.request.contract_address, job.request.chain, job.from_block, job.to_block,
                on_chunk=self._on_chunk(job),
                should_continue=lambda: not job.cancel_requested,
                chunk_size=job.request.chunk_size,
            )
            self._absorb(job, outcome)
            if outcome.error is not None:
                self._finish_failed(job, str(outcome.error))
            elif outcome.cancelled:
                self._finish_cancelled(job)
            else:
                self._finish_completed(job, outcome)
        except asyncio.CancelledError:
            self._finish_cancelled(job)
            raise
        except Exception as e:
            log.exception("job %s failed", job.job_id)
            self._finish_failed(job, str(e))
        finally:
            job.finished_at = time.time()
            await self.limiter.release(user)
            self._evict_finished()

    def _evict_finished(self) -> None:
        """Drop the oldest finished jobs beyond `config.job_retention`."""
        finished = [jid for jid, j in self._jobs.items() if j.status.terminal]
        for jid in finished[: max(0, len(finished) - self.config.job_retention)]:
            del self._jobs[jid]
            self.channel.forget(jid)
            log.debug("evicted finished job %s", jid)

    def _absorb(self, job: ScanJob, outcome: ChunkScanOutcome) -> None:
        job.completed_range = outcome.completed_range
        job.blocks_completed = max(job.blocks_completed, outcome.blocks_completed)
        job.summary = outcome.result.summary()

    def _finish_completed(self, job: ScanJob, outcome: ChunkScanOutcome) -> None:
        job.status = JobStatus.COMPLETED
        job.current_step = "completed"
        self._record(job.request.user_id, "scan_completed")
        log.info("job %s completed: %s", job.job_id, job.summary)
        self.channel.emit_completion(job.request.user_id, job.job_id, {
            "summary": job.summary,
            "completed_range": job.completed_range.to_dict() if job.completed_range else None,
            "deployment": job.deployment.to_dict() if job.deployment else None,
        })

    def _finish_failed(self, job: ScanJob, message: str) -> None:
        job.status = JobStatus.FAILED
        job.error = message
        job.partial = job.completed_range is not None
        job.current_step = "failed"
        self._record(job.request.user_id, "scan_failed")
        self.metrics.record_error(job.request.user_id)
        log.error("job %s failed%s: %s", job.job_id, " (partial)" if job.partial else "", message)
        self.channel.emit_error(
            job.request.user_id, job.job_id, message,
            partial=job.partial,
            completed_range=job.completed_range.to_dict() if job.completed_range else None,
        )

    def _finish_cancelled(self, job: ScanJob) -> None:
        job.status = JobStatus.CANCELLED
        job.current_step = "cancelled"
        log.info("job %s cancelled at %.2f%%", job.job_id, job.percent)
        self.channel.emit_error(
            job.request.user_id, job.job_id, "scan cancelled",
            cancelled=True,
            completed_range=job.completed_range.to_dict() if job.completed_range else None,
        )

    # ── state / shutdown ────────────────────────────────────────

    def get_state(self) -> dict[str, Any]:
        return {
            "shutting_down": self._shutting_down,
            "active_jobs": [j.snapshot() for j in self.active_jobs()],
            "jobs_total": len(self._jobs),
            "endpoints": self.pool.get_state(),
            "metrics": self.metrics.get_metrics(),
            "flagged_users": self.anomaly_detector.flagged() if self.anomaly_detector else {},
        }

    async def shutdown(self, timeout: float = 30.0) -> None:
        """Stop accepting scans, let running chunks commit, then stop health checks."""
        self._shutting_down = True
        for job in self.active_jobs():
            job.cancel_requested = True
        tasks = list(self._tasks.values())
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=timeout)
            for t in pending:
                t.cancel()
            if pending:
                log.warning("%d job(s) did not stop within %.0fs and were cancelled", len(pending), timeout)
                await asyncio.gather(*pending, return_exceptions=True)
        await self.pool.stop_health_checks()


def build_indexer(
    config: IndexerConfig,
    urls: Mapping[str, Sequence[str]] | None = None,
    *,
    rpc_factory: RPCFactory | None = None,
    quota_provider: QuotaProvider | None = None,
    manifest: ManifestSink | None = None,
    event_sink: EventSink | None = None,
    retry_sleep: Any = None,
) -> IndexerManager:
    """Wire the full component graph from one config."""
    metrics = MetricsCollector()
    pool = EndpointPool(
        rpc_factory or (lambda url: HttpxRPC(url, timeout_s=config.rpc_timeout)),
        failure_threshold=config.endpoint_failure_threshold,
        breaker_threshold=config.circuit_breaker_threshold,
        breaker_cooldown=config.circuit_breaker_cooldown,
        health_check_interval=config.health_check_interval,
        probe_timeout=config.health_probe_timeout,
        production=config.production,
    )
    for chain, chain_urls in (urls or {}).items():
        pool.initialize_chain(chain, list(chain_urls))

    retry_kwargs: dict[str, Any] = {"jitter": config.retry_jitter}
    if retry_sleep is not None:
        retry_kwargs["sleep"] = retry_sleep
    retry = RetryPolicy(config.max_retries, config.retry_base_delay, config.retry_max_delay, **retry_kwargs)
    fetcher = ContractFetcher(
        pool, retry,
        call_timeout=config.rpc_timeout,
        log_batch_span=config.log_batch_span,
        min_split_span=config.min_split_span,
        tx_batch_size=config.tx_batch_size,
        direct_scan_max_blocks=config.direct_scan_max_blocks,
        metrics=metrics,
    )
    anomaly = AnomalyDetector()
    validator = HorizontalValidator(cross_check=CrossEndpointCheck(fetcher) if config.cross_check else None)
    chunk_manager = ChunkManager(
        fetcher, validator, CheckpointRepository(JsonFileStore(config.data_dir)),
        chunk_size=config.chunk_size,
        concurrency=config.max_concurrent_chunks,
        max_validation_retries=config.max_validation_retries,
        manifest=manifest,
        event_sink=event_sink,
        anomaly_detector=anomaly,
    )
    return IndexerManager(
        config, pool, fetcher, DeploymentBlockFinder(fetcher), chunk_manager,
        SubscriptionLimiter(quota_provider or InMemoryQuotaProvider(), anomaly),
        ProgressChannel(config.progress_buffer_size, max_tracked_jobs=config.job_retention),
        anomaly_detector=anomaly,
        metrics=metrics,
    )
