"""
Unit tests for scalper configuration loading
"""

import json

import pytest

from src.core.config import ScalperConfig, load_config, save_config


class TestDefaults:
    """Tuned defaults"""

    def test_run_budget(self):
        config = ScalperConfig()
        assert config.starting_bankroll == 100.0
        assert config.target_bankroll == 10000.0
        assert config.time_limit_hours == 48.0
        assert config.cycle_interval_seconds == 25.0
        assert config.max_open_positions == 4
        assert config.dry_run is False

    def test_lists_not_shared(self):
        """Mutable defaults are per-instance"""
        a, b = ScalperConfig(), ScalperConfig()
        a.series.append("KXDOGE15M")
        assert "KXDOGE15M" not in b.series


class TestLoadConfig:
    """Defaults, then JSON file, then environment"""

    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_config(str(tmp_path / "missing.json"), environ={})
        assert config.quant_min_edge == 0.05

    def test_file_overrides(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"quant_min_edge": 0.08, "max_open_positions": 2, "bogus": 1}))

        config = load_config(str(path), environ={})
        assert config.quant_min_edge == 0.08
        assert config.max_open_positions == 2
        assert not hasattr(config, "bogus")

    def test_environment_wins_over_file(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"starting_bankroll": 50}))

        config = load_config(str(path), environ={
            "STARTING_BANKROLL": "250",
            "MAX_SIMULTANEOUS_BETS": "6",
            "SCAN_INTERVAL_SECONDS": "10",
            "DRY_RUN": "true",
        })
        assert config.starting_bankroll == 250.0
        assert config.max_open_positions == 6
        assert isinstance(config.max_open_positions, int)
        assert config.cycle_interval_seconds == 10.0
        assert config.dry_run is True

    def test_bad_env_value_keeps_default(self, tmp_path):
        config = load_config(str(tmp_path / "missing.json"), environ={"MIN_EDGE": "lots"})
        assert config.quant_min_edge == 0.05

    def test_corrupt_file_keeps_defaults(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{oops")
        config = load_config(str(path), environ={})
        assert config.target_bankroll == 10000.0

    def test_save_then_load(self, tmp_path):
        path = str(tmp_path / "out" / "config.json")
        config = ScalperConfig(take_profit_cents=8, series=["KXBTC15M"])
        save_config(config, path)

        loaded = load_config(path, environ={})
        assert loaded.take_profit_cents == 8
        assert loaded.series == ["KXBTC15M"]
