import asyncio, os
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.progress import (
    Progress, BarColumn, TextColumn, TimeElapsedColumn,
    TimeRemainingColumn, SpinnerColumn,
)

from ..adapters.manifest_jsonl import JSONLManifest
from ..adapters.parquet_sink import ParquetEventSink
from ..adapters.storage_json import JsonFileStore
from ..application.checkpoints import CheckpointRepository
from ..application.health import HealthMonitor
from ..application.indexer_manager import IndexerManager, build_indexer
from ..config import IndexerConfig
from ..domain.errors import ContractScanError
from ..domain.models import ScanRequest
from ..domain.value_types import normalize_address
from ..logging_setup import setup_logging

console = Console()
app = typer.Typer(help="contractscan: resumable contract indexer over JSON-RPC.", no_args_is_help=True)


def _now_ts_str() -> str:
    return datetime.now(timezone.utc).strftime("%Y_%m_%d_%H%M%S")


def _config(data_dir: Optional[Path], **overrides) -> IndexerConfig:
    overrides = {k: v for k, v in overrides.items() if v is not None}
    if data_dir is not None:
        overrides["data_dir"] = data_dir
    return IndexerConfig.from_env(**overrides)


def _urls(cfg: IndexerConfig, chain: str, rpc: Optional[list[str]]) -> dict[str, list[str]]:
    return {chain: list(rpc) if rpc else list(cfg.endpoints_for(chain))}


def _run(coro) -> None:
    try:
        asyncio.run(coro)
    except ContractScanError as e:
        console.print(f"[bold red]error[/]: {e}")
        raise typer.Exit(code=1)


@app.callback()
def main(log_level: str = typer.Option("", "--log-level", help="Overrides LOG_LEVEL")) -> None:
    setup_logging(log_level or os.environ.get("LOG_LEVEL", "INFO"), console=Console(stderr=True))


@app.command()
def scan(
    address: str = typer.Argument(..., help="Contract address"),
    chain: str = typer.Option("ethereum", help="Chain registry key"),
    rpc: Optional[list[str]] = typer.Option(None, "--rpc", help="RPC endpoint URL; repeat for failover"),
    from_block: Optional[int] = typer.Option(None, help="Defaults to the deployment block"),
    to_block: Optional[int] = typer.Option(None, help="Defaults to the chain head"),
    chunk_size: Optional[int] = typer.Option(None, help="Blocks per chunk"),
    concurrency: Optional[int] = typer.Option(None, help="Chunks fetched in parallel"),
    data_dir: Optional[Path] = typer.Option(None, help="Where records are stored"),
    tier: str = typer.Option("enterprise", help="Subscription tier used for quotas"),
    user: str = typer.Option("cli", help="User id for quotas and progress"),
    parquet: bool = typer.Option(False, "--parquet/--no-parquet", help="Also export events per chunk to Parquet"),
    cross_check: bool = typer.Option(False, "--cross-check/--no-cross-check",
                                     help="Re-read each chunk's logs from another endpoint"),
):
    """Index a contract's transactions and events with a live progress bar."""
    cfg = _config(data_dir, chunk_size=chunk_size, max_concurrent_chunks=concurrency,
                  cross_check=cross_check or None)
    addr = normalize_address(address)
    ts = _now_ts_str()
    manifest = JSONLManifest(os.path.join(cfg.data_dir, "manifests", f"run_{ts}_{chain}_{addr}.jsonl"))
    sink = ParquetEventSink(os.path.join(cfg.data_dir, "parquet"), chain, addr) if parquet else None

    async def run():
        manager = build_indexer(cfg, _urls(cfg, chain, rpc), manifest=manifest, event_sink=sink)
        try:
            events = manager.channel.connect(user)
            job = await manager.start_scan(ScanRequest(
                user_id=user, contract_address=addr, chain=chain, tier=tier,
                from_block=from_block, to_block=to_block,
            ))
            progress = Progress(SpinnerColumn(),
                                TextColumn("[bold]indexing[/]"),
                                BarColumn(),
                                TextColumn("{task.percentage:>5.1f}%"),
                                TextColumn("•"),
                                TimeElapsedColumn(),
                                TextColumn("→"),
                                TimeRemainingColumn(),
                                TextColumn(" • {task.description}"),
                                transient=False,
                                expand=True,
                                )
            last = None
            with progress:
                task = progress.add_task(description=addr, total=100)
                while True:
                    ev = await events.get()
                    if ev.job_id != job.job_id:
                        continue
                    if ev.kind == "progress":
                        progress.update(task, completed=ev.payload["percent"],
                                        description=ev.payload["current_step"])
                    else:
                        if ev.kind == "completion":
                            progress.update(task, completed=100)
                        last = ev
                        break
            await manager.wait(job.job_id)
            _print_outcome(manager, job.job_id, last)
        finally:
            await manager.pool.aclose()

    _run(run())


def _print_outcome(manager: IndexerManager, job_id: str, last) -> None:
    job = manager.get_job(job_id)
    snap = job.snapshot() if job else {}
    if last is not None and last.kind == "completion":
        s = last.payload["result"]["summary"] or {}
        console.print(Panel.fit(
            f"[green]completed[/] {snap.get('from_block')}-{snap.get('to_block')}\n"
            f"transactions={s.get('total_transactions')}  events={s.get('total_events')}  "
            f"accounts={s.get('unique_accounts')}  blocks={s.get('unique_blocks')}",
            title=snap.get("contract_address", ""),
        ))
        return
    rng = snap.get("completed_range")
    console.print(f"[bold red]{snap.get('status')}[/]: {snap.get('error') or 'cancelled'}")
    if rng:
        console.print(f"[yellow]completed range[/]: {rng['start']}-{rng['end']} (re-run to resume)")
    raise typer.Exit(code=1)


@app.command("find-deployment")
def find_deployment(
    address: str = typer.Argument(..., help="Contract address"),
    chain: str = typer.Option("ethereum", help="Chain registry key"),
    rpc: Optional[list[str]] = typer.Option(None, "--rpc", help="RPC endpoint URL; repeat for failover"),
    upper_bound: Optional[int] = typer.Option(None, help="Search at or below this block"),
):
    """Binary-search the block where a contract was deployed."""
    cfg = _config(None)

    async def run():
        manager = build_indexer(cfg, _urls(cfg, chain, rpc))
        try:
            info = await manager.finder.find(address, chain, upper_bound=upper_bound)
        finally:
            await manager.pool.aclose()
        console.print_json(data=info.to_dict())

    _run(run())


@app.command()
def status(
    address: str = typer.Argument(..., help="Contract address"),
    chain: str = typer.Option("ethereum", help="Chain registry key"),
    data_dir: Optional[Path] = typer.Option(None, help="Where records are stored"),
):
    """Show the stored checkpoint, with any unindexed gaps, and the dataset summary for a contract."""
    cfg = _config(data_dir)

    async def run():
        repo = CheckpointRepository(JsonFileStore(cfg.data_dir))
        cp = await repo.load_checkpoint(address, chain)
        result = await repo.load_result(address, chain)
        gaps = await repo.gaps(address, chain)
        console.print_json(data={
            "checkpoint": cp.to_dict() if cp else None,
            "gaps": [g.to_dict() for g in gaps],
            "summary": result.summary() if result else None,
        })

    _run(run())


@app.command()
def health(
    chain: str = typer.Option("ethereum", help="Chain registry key"),
    rpc: Optional[list[str]] = typer.Option(None, "--rpc", help="RPC endpoint URL; repeat for failover"),
    data_dir: Optional[Path] = typer.Option(None, help="Where records are stored"),
):
    """Probe every endpoint once and print the health roll-up."""
    cfg = _config(data_dir)

    async def run():
        manager = build_indexer(cfg, _urls(cfg, chain, rpc))
        try:
            await manager.pool.check_all()
            monitor = HealthMonitor(manager.pool, manager.checkpoints.store, manager, manager.channel)
            report = await monitor.get_detailed_health()
        finally:
            await manager.pool.aclose()
        console.print_json(data=report)

    _run(run())


if __name__ == "__main__":
    app()
