from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Mapping

from .domain.errors import ConfigError, UnsupportedChainError


@dataclass(frozen=True)
class ChainConfig:
    """Static description of a supported EVM chain."""

    chain_id: str
    name: str
    rpc_endpoints: tuple[str, ...]
    block_time: int = 12               # seconds
    start_block: int = 0

    @property
    def blocks_per_day(self) -> int:
        return 86_400 // self.block_time


CHAIN_CONFIGS: dict[str, ChainConfig] = {
    "ethereum": ChainConfig(
        chain_id="ethereum",
        name="Ethereum",
        rpc_endpoints=("https://eth.public-rpc.com", "https://ethereum.publicnode.com"),
    ),
    "lisk": ChainConfig(
        chain_id="lisk",
        name="Lisk",
        rpc_endpoints=("https://lisk.drpc.org", "https://lisk.gateway.tenderly.co"),
    ),
    "base": ChainConfig(
        chain_id="base",
        name="Base",
        rpc_endpoints=("https://mainnet.base.org", "https://base.publicnode.com"),
        block_time=2,
    ),
}


def get_chain_config(chain: str, environ: Mapping[str, str] | None = None) -> ChainConfig:
    """Return the chain config, with `<CHAIN>_RPC_URLS` (comma separated) overriding endpoints."""
    cfg = CHAIN_CONFIGS.get(chain.lower())
    if cfg is None:
        raise UnsupportedChainError(chain)
    env = os.environ if environ is None else environ
    override = env.get(f"{cfg.chain_id.upper()}_RPC_URLS", "").strip()
    if override:
        urls = tuple(u.strip() for u in override.split(",") if u.strip())
        cfg = replace(cfg, rpc_endpoints=urls)
    return cfg


def blocks_for_days(chain: str, days: int) -> int:
    return get_chain_config(chain).blocks_per_day * days


@dataclass(frozen=True)
class IndexerConfig:
    """Tunables for the indexing pipeline."""

    # chunk processing
    chunk_size: int = 200_000
    max_concurrent_chunks: int = 5
    max_validation_retries: int = 2
    # retry / resilience
    max_retries: int = 3               # attempts per network sub-call
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    retry_jitter: float = 0.0
    circuit_breaker_threshold: int = 5
    circuit_breaker_cooldown: float = 60.0
    # rpc
    rpc_timeout: float = 30.0
    log_batch_span: int = 10_000
    min_split_span: int = 2_000
    tx_batch_size: int = 15
    direct_scan_max_blocks: int = 50
    # endpoint health
    health_check_interval: float = 30.0
    health_probe_timeout: float = 5.0
    endpoint_failure_threshold: int = 3
    # storage / progress
    data_dir: Path = Path("./data")
    progress_buffer_size: int = 50
    job_retention: int = 1_000         # finished jobs kept for lookup
    # behaviour
    production: bool = False
    cross_check: bool = False
    log_level: str = "INFO"
    extra_chains: dict[str, tuple[str, ...]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.chunk_size <= 0:
            raise ConfigError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.max_concurrent_chunks <= 0:
            raise ConfigError(f"max_concurrent_chunks must be positive, got {self.max_concurrent_chunks}")
        if self.max_retries <= 0:
            raise ConfigError(f"max_retries must be positive, got {self.max_retries}")
        if self.retry_max_delay < self.retry_base_delay:
            raise ConfigError("retry_max_delay must be >= retry_base_delay")
        if self.job_retention < 1:
            raise ConfigError(f"job_retention must be >= 1, got {self.job_retention}")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, **overrides) -> "IndexerConfig":
        env = os.environ if environ is None else environ

        def _int(name: str, default: int) -> int:
            raw = env.get(name)
            if raw is None or raw == "":
                return default
            try:
                return int(raw)
            except ValueError:
                raise ConfigError(f"{name} must be an integer, got {raw!r}") from None

        def _secs(name: str, default: float) -> float:
            # the environment carries milliseconds
            raw = env.get(name)
            if raw is None or raw == "":
                return default
            try:
                return float(raw) / 1000.0
            except ValueError:
                raise ConfigError(f"{name} must be a number of milliseconds, got {raw!r}") from None

        values = dict(
            chunk_size=_int("CHUNK_SIZE", cls.chunk_size),
            max_concurrent_chunks=_int("MAX_CONCURRENT_CHUNKS", cls.max_concurrent_chunks),
            max_retries=_int("MAX_RETRIES", cls.max_retries),
            retry_base_delay=_secs("RETRY_DELAY_BASE", cls.retry_base_delay),
            rpc_timeout=_secs("RPC_TIMEOUT", cls.rpc_timeout),
            health_check_interval=_secs("HEALTH_CHECK_INTERVAL", cls.health_check_interval),
            circuit_breaker_threshold=_int("CIRCUIT_BREAKER_THRESHOLD", cls.circuit_breaker_threshold),
            circuit_breaker_cooldown=_secs("CIRCUIT_BREAKER_TIMEOUT", cls.circuit_breaker_cooldown),
            data_dir=Path(env.get("DATA_DIR") or cls.data_dir),
            production=env.get("ENVIRONMENT", "").lower() == "production",
            log_level=(env.get("LOG_LEVEL") or cls.log_level).upper(),
        )
        values.update(overrides)
        return cls(**values)

    def endpoints_for(self, chain: str) -> tuple[str, ...]:
        if chain in self.extra_chains:
            return self.extra_chains[chain]
        return get_chain_config(chain).rpc_endpoints
