from pathlib import Path

import pytest

from contractscan.application.metrics import MetricsCollector
from contractscan.config import IndexerConfig, blocks_for_days, get_chain_config
from contractscan.domain.errors import ConfigError, UnsupportedChainError


class TestIndexerConfig:

    def test_defaults(self):
        cfg = IndexerConfig.from_env({})
        assert cfg.chunk_size == 200_000
        assert cfg.max_concurrent_chunks == 5
        assert cfg.rpc_timeout == 30.0
        assert cfg.data_dir == Path("./data")
        assert not cfg.production

    def test_environment_overrides(self):
        cfg = IndexerConfig.from_env({
            "CHUNK_SIZE": "5000",
            "RPC_TIMEOUT": "1500",
            "CIRCUIT_BREAKER_TIMEOUT": "120000",
            "DATA_DIR": "/tmp/scans",
            "ENVIRONMENT": "Production",
            "LOG_LEVEL": "debug",
        })
        assert cfg.chunk_size == 5_000
        assert cfg.rpc_timeout == 1.5
        assert cfg.circuit_breaker_cooldown == 120.0
        assert cfg.data_dir == Path("/tmp/scans")
        assert cfg.production
        assert cfg.log_level == "DEBUG"

    def test_keyword_overrides_win(self):
        cfg = IndexerConfig.from_env({"CHUNK_SIZE": "5000"}, chunk_size=10)
        assert cfg.chunk_size == 10

    @pytest.mark.parametrize("env", [{"CHUNK_SIZE": "lots"}, {"RPC_TIMEOUT": "soon"}, {"CHUNK_SIZE": "0"}])
    def test_bad_values_raise(self, env):
        with pytest.raises(ConfigError):
            IndexerConfig.from_env(env)

    def test_job_retention_must_be_positive(self):
        with pytest.raises(ConfigError):
            IndexerConfig(job_retention=0)

    def test_extra_chains_take_precedence(self):
        cfg = IndexerConfig(extra_chains={"devnet": ("http://localhost:8545",)})
        assert cfg.endpoints_for("devnet") == ("http://localhost:8545",)
        assert cfg.endpoints_for("ethereum") == get_chain_config("ethereum").rpc_endpoints


class TestChainRegistry:

    def test_rpc_urls_from_environment(self):
        cfg = get_chain_config("base", {"BASE_RPC_URLS": "https://a.example, https://b.example"})
        assert cfg.rpc_endpoints == ("https://a.example", "https://b.example")

    def test_unknown_chain(self):
        with pytest.raises(UnsupportedChainError):
            get_chain_config("dogechain")

    def test_blocks_for_days(self):
        assert blocks_for_days("ethereum", 7) == 50_400
        assert blocks_for_days("base", 1) == 43_200


class TestMetrics:

    def test_rates_and_user_stats(self):
        m = MetricsCollector()
        m.record_rpc(True, 10.0)
        m.record_rpc(False, 30.0)
        m.record_chunk("alice", 100, 0.5)
        m.record_chunk("alice", 100, 1.5)
        m.record_error("bob")
        snap = m.get_metrics()
        assert snap["rpc_success_rate"] == 50.0
        assert snap["avg_rpc_latency_ms"] == 20.0
        assert snap["avg_chunk_seconds"] == 1.0
        assert snap["blocks_processed"] == 200
        assert m.get_user_stats("alice").chunks_processed == 2
        assert m.get_user_stats("bob").errors == 1
        assert m.get_user_stats("carol") is None

    def test_empty_collector(self):
        snap = MetricsCollector().get_metrics()
        assert snap["rpc_success_rate"] == 100.0
        assert snap["avg_chunk_seconds"] == 0.0
