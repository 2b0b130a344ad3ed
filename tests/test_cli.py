import asyncio
import json
import logging

import pytest
from typer.testing import CliRunner

from contractscan.adapters.storage_json import JsonFileStore
from contractscan.application.checkpoints import CheckpointRepository
from contractscan.domain.models import ScanResult
from contractscan.presentation.cli import app

from fakes import CONTRACT

runner = CliRunner()


@pytest.fixture(autouse=True)
def restore_package_logger():
    logger = logging.getLogger("contractscan")
    handlers, level, propagate = list(logger.handlers), logger.level, logger.propagate
    yield
    logger.handlers[:] = handlers
    logger.setLevel(level)
    logger.propagate = propagate


def test_help_lists_commands():
    result = runner.invoke(app, ["--help"])
    assert result.exit_code == 0
    for name in ("scan", "find-deployment", "status", "health"):
        assert name in result.output


def test_status_without_data(tmp_path):
    result = runner.invoke(app, ["status", CONTRACT, "--data-dir", str(tmp_path)])
    assert result.exit_code == 0
    assert json.loads(result.stdout) == {"checkpoint": None, "gaps": [], "summary": None}


def test_status_shows_checkpoint_and_summary(tmp_path):
    async def seed():
        repo = CheckpointRepository(JsonFileStore(tmp_path))
        await repo.save_result(CONTRACT, "ethereum", ScanResult())
        await repo.advance(CONTRACT, "ethereum", 0, 599)

    asyncio.run(seed())
    result = runner.invoke(app, ["status", CONTRACT, "--data-dir", str(tmp_path)])
    assert result.exit_code == 0
    out = json.loads(result.stdout)
    assert out["checkpoint"]["last_completed_block"] == 599
    assert out["checkpoint"]["covered"] == [[0, 599]]
    assert out["gaps"] == []
    assert out["summary"]["total_events"] == 0


def test_status_lists_unindexed_gaps(tmp_path):
    async def seed():
        repo = CheckpointRepository(JsonFileStore(tmp_path))
        await repo.advance(CONTRACT, "ethereum", 0, 99)
        await repo.advance(CONTRACT, "ethereum", 200, 299)

    asyncio.run(seed())
    result = runner.invoke(app, ["status", CONTRACT, "--data-dir", str(tmp_path)])
    assert result.exit_code == 0
    out = json.loads(result.stdout)
    assert out["checkpoint"]["last_completed_block"] == 99
    assert out["gaps"] == [{"start": 100, "end": 199}]
