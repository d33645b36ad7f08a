"""
Settings tests.

Covers:
- Defaults and environment parsing
- Minimums for speed, lag and tick interval
- Invalid numeric values are rejected
"""

import pytest

from config import DEFAULT_SYMBOLS, SimSettings


class TestSimSettings:

    def test_defaults(self):
        settings = SimSettings.from_env({})
        assert settings.sim_enabled is True
        assert settings.sim_speed == 1.0
        assert settings.sim_lag_ms == 900_000
        assert settings.sim_start_ts is None
        assert settings.sim_symbols == DEFAULT_SYMBOLS
        assert settings.per_session_seeds is True
        assert settings.use_candle_feed is False

    def test_env_values(self):
        settings = SimSettings.from_env({
            "SIM_SPEED": "4",
            "SIM_START_TS": "1700000000000",
            "SIM_FEED_MODE": " Candle ",
            "SIM_SESSION_SEED_MODE": "GLOBAL",
            "SIM_SYMBOLS": "btcusdt, ethusdt ,,",
            "SIM_HISTORY_TIMEFRAMES": "1m,1h",
            "QUICK_IMPORT_TIMEOUT_SECONDS": "0.5",
            "DATABASE_URL": "sqlite:///tmp.db",
        })
        assert settings.sim_speed == 4.0
        assert settings.sim_start_ts == 1_700_000_000_000
        assert settings.use_candle_feed is True
        assert settings.per_session_seeds is False
        assert settings.sim_symbols == ["btcusdt", "ethusdt"]
        assert settings.sim_history_timeframes == ["1m", "1h"]
        assert settings.quick_import_timeout_seconds == 0.5
        assert settings.database_url == "sqlite:///tmp.db"

    def test_disabled(self):
        assert SimSettings.from_env({"SIM_ENABLED": "0"}).sim_enabled is False
        assert SimSettings.from_env({"SIM_ENABLED": "1"}).sim_enabled is True

    def test_minimums(self):
        settings = SimSettings.from_env({"SIM_SPEED": "0.01", "SIM_LAG_MS": "10", "SIM_TICK_MS": "1"})
        assert settings.sim_speed == 0.1
        assert settings.sim_lag_ms == 60_000
        assert settings.sim_tick_ms == 250

    @pytest.mark.parametrize("name", ["SIM_SPEED", "SIM_LAG_MS", "SIM_SEED"])
    def test_invalid_numbers(self, name):
        with pytest.raises(ValueError):
            SimSettings.from_env({name: "fast"})

    def test_non_finite_rejected(self):
        with pytest.raises(ValueError):
            SimSettings.from_env({"SIM_SPEED": "inf"})

    def test_empty_values_ignored(self):
        assert SimSettings.from_env({"SIM_SPEED": "", "SIM_SYMBOLS": " , "}).sim_symbols == DEFAULT_SYMBOLS
