"""Tests for application wiring and the CLI entry point."""
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from flywheel import __version__
from flywheel.__main__ import find_config_file, load_config, main, parse_args
from flywheel.app import FlywheelApp
from flywheel.core.config import ConfigManager
from flywheel.core.lifecycle import HealthStatus
from flywheel.core.retry import ValidationError
from flywheel.domain.operations import OperationType
from flywheel.integrations.chain import DryRunChainClient
from flywheel.services.jobs import TASK_NAMES


@pytest.fixture
def app_config(tmp_path):
    config = ConfigManager()
    config.set("database.path", str(tmp_path / "flywheel.db"))
    config.set("retry.fallback_dir", str(tmp_path / "fallback"))
    config.set("health.enabled", False)
    return config


def mock_http_clients():
    jupiter = AsyncMock()
    market_data = AsyncMock()
    return jupiter, market_data


class TestParseArgs:
    def test_defaults(self):
        args = parse_args([])

        assert args.command is None
        assert args.config is None
        assert args.dry_run is None
        assert args.log_level is None

    def test_mode_flags(self):
        assert parse_args(["--dry-run"]).dry_run is True
        assert parse_args(["--live"]).dry_run is False

    def test_mode_flags_are_exclusive(self):
        with pytest.raises(SystemExit):
            parse_args(["--dry-run", "--live"])

    def test_trigger_requires_known_task(self):
        args = parse_args(["trigger", "buyback"])

        assert args.command == "trigger"
        assert args.task == "buyback"
        with pytest.raises(SystemExit):
            parse_args(["trigger", "sell_everything"])

    def test_config_path(self):
        assert parse_args(["--config", "x.toml", "run"]).config == Path("x.toml")


class TestConfigLoading:
    def test_find_specified_config(self, tmp_path):
        path = tmp_path / "flywheel.toml"
        path.write_text("[flywheel]\ndry_run = false\n")

        assert find_config_file(path) == path

    def test_cli_flags_override_file(self, tmp_path):
        path = tmp_path / "flywheel.toml"
        path.write_text('[flywheel]\ndry_run = false\nlog_level = "INFO"\n')

        config, config_path = load_config(parse_args(["--config", str(path), "--dry-run", "--log-level", "DEBUG"]))

        assert config_path == path
        assert config.get_bool("flywheel.dry_run") is True
        assert config.get_str("flywheel.log_level") == "DEBUG"


class TestMain:
    def test_version(self, capsys):
        assert main(["version"]) == 0

        assert __version__ in capsys.readouterr().out


class TestFlywheelApp:
    """Tests for component wiring."""

    def test_dry_run_builds_simulated_chain(self, app_config):
        jupiter, market_data = mock_http_clients()

        app = FlywheelApp(app_config, jupiter=jupiter, market_data=market_data, configure_logging=False)

        assert app.dry_run is True
        assert isinstance(app.chain, DryRunChainClient)
        assert app.scheduler.job_names == list(TASK_NAMES)
        assert app.retry_queue.fallback.directory == Path(app_config.get_str("retry.fallback_dir"))

    def test_live_mode_requires_chain(self, app_config):
        app_config.set("flywheel.dry_run", False)

        with pytest.raises(ValidationError, match="chain client"):
            FlywheelApp(app_config, configure_logging=False)

    def test_live_mode_with_chain(self, app_config):
        app_config.set("flywheel.dry_run", False)
        chain = DryRunChainClient()
        jupiter, market_data = mock_http_clients()

        app = FlywheelApp(app_config, chain=chain, jupiter=jupiter, market_data=market_data, configure_logging=False)

        assert app.dry_run is False
        assert app.chain is chain

    def test_retry_handlers_registered(self, app_config):
        jupiter, market_data = mock_http_clients()

        app = FlywheelApp(app_config, jupiter=jupiter, market_data=market_data, configure_logging=False)

        for operation_type in OperationType:
            assert app.retry_queue.has_handler(operation_type)

    @pytest.mark.asyncio
    async def test_start_and_stop(self, app_config):
        jupiter, market_data = mock_http_clients()
        app = FlywheelApp(app_config, jupiter=jupiter, market_data=market_data, configure_logging=False)

        await app.start()
        try:
            assert app.store.is_connected
            assert app.scheduler.is_running
            health = await app.health_check()
            assert health.status == HealthStatus.HEALTHY
            assert health.details["dry_run"] is True
        finally:
            await app.stop()

        assert not app.store.is_connected
        assert not app.scheduler.is_running
        jupiter.connect.assert_awaited_once()
        market_data.close.assert_awaited_once()
