"""
Runtime configuration for the market simulation core.

All settings come from environment variables and are parsed once into a
SimSettings object, which is then passed to every service that needs it.

Usage:
    settings = SimSettings.from_env()
    configure_logging(settings.log_level)
"""

import logging
import math
import os
from typing import Dict, List, Mapping, Optional

from pydantic import BaseModel, Field, field_validator

DEFAULT_SYMBOLS = [
    "BTCUSDT", "ETHUSDT", "BNBUSDT", "SOLUSDT",
    "XRPUSDT", "DOGEUSDT", "ADAUSDT", "TRXUSDT",
]

DAY_MS = 24 * 60 * 60 * 1000


class SimSettings(BaseModel):
    """Settings for the clock, loader, simulator and backfill loop."""

    database_url: str = "sqlite:///./market_sim.db"
    log_level: str = "INFO"

    # Replay clock
    sim_enabled: bool = True
    sim_speed: float = 1.0
    sim_lag_ms: int = 900_000
    sim_start_ts: Optional[int] = None
    sim_lookback_ms: int = 7 * DAY_MS

    # Quote simulator
    sim_feed_mode: str = "synthetic"
    sim_feed_exchange: str = "binance_spot"
    sim_session_seed_mode: str = "session"
    sim_seed: int = 1
    sim_tick_ms: int = 1000
    sim_persist_interval_ms: int = 5000
    sim_vol_pct_per_min: float = 0.6
    sim_drift_pct_per_day: float = 0.0
    sim_symbols: List[str] = Field(default_factory=lambda: list(DEFAULT_SYMBOLS))
    sim_history_candles: int = 500

    # History backfill
    sim_history_loader_ms: int = 30_000
    sim_history_lookback_ms: int = DAY_MS
    sim_history_timeframes: List[str] = Field(default_factory=lambda: ["1m", "15m", "1h"])

    # Market data
    market_data_mode: str = "live"
    cryptocompare_api_key: str = ""
    calibration_ttl_seconds: float = 600.0
    quick_import_timeout_seconds: float = 3.0

    @field_validator("sim_speed")
    @classmethod
    def _min_speed(cls, value: float) -> float:
        return max(0.1, value)

    @field_validator("sim_lag_ms")
    @classmethod
    def _min_lag(cls, value: int) -> int:
        return max(60_000, value)

    @field_validator("sim_tick_ms")
    @classmethod
    def _min_tick(cls, value: int) -> int:
        return max(250, value)

    @field_validator("sim_feed_mode", "sim_session_seed_mode", "market_data_mode")
    @classmethod
    def _lower(cls, value: str) -> str:
        return value.strip().lower()

    @property
    def use_candle_feed(self) -> bool:
        return self.sim_feed_mode != "synthetic"

    @property
    def per_session_seeds(self) -> bool:
        return self.sim_session_seed_mode == "session"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "SimSettings":
        """
        Build settings from environment variables.

        Raises:
            ValueError: If a numeric variable does not parse
        """
        env = os.environ if environ is None else environ
        values: Dict = {}

        def _set_str(name: str, field: str):
            if env.get(name):
                values[field] = env[name]

        def _set_num(name: str, field: str, cast):
            raw = env.get(name)
            if raw is None or raw == "":
                return
            try:
                parsed = float(raw)
            except ValueError:
                raise ValueError(f"Invalid numeric environment value for {name}: {raw}")
            if not math.isfinite(parsed):
                raise ValueError(f"Invalid numeric environment value for {name}: {raw}")
            values[field] = cast(parsed)

        def _set_list(name: str, field: str):
            raw = env.get(name)
            if raw:
                parsed = [item.strip() for item in raw.split(",") if item.strip()]
                if parsed:
                    values[field] = parsed

        _set_str("DATABASE_URL", "database_url")
        _set_str("LOG_LEVEL", "log_level")
        values["sim_enabled"] = env.get("SIM_ENABLED", "1") != "0"
        _set_num("SIM_SPEED", "sim_speed", float)
        _set_num("SIM_LAG_MS", "sim_lag_ms", int)
        _set_num("SIM_START_TS", "sim_start_ts", int)
        _set_str("SIM_FEED_MODE", "sim_feed_mode")
        _set_str("SIM_FEED_EXCHANGE", "sim_feed_exchange")
        _set_str("SIM_SESSION_SEED_MODE", "sim_session_seed_mode")
        _set_num("SIM_SEED", "sim_seed", int)
        _set_num("SIM_TICK_MS", "sim_tick_ms", int)
        _set_num("SIM_PERSIST_INTERVAL_MS", "sim_persist_interval_ms", int)
        _set_num("SIM_VOL_PCT_PER_MIN", "sim_vol_pct_per_min", float)
        _set_num("SIM_DRIFT_PCT_PER_DAY", "sim_drift_pct_per_day", float)
        _set_list("SIM_SYMBOLS", "sim_symbols")
        _set_num("SIM_HISTORY_LOADER_MS", "sim_history_loader_ms", int)
        _set_num("SIM_HISTORY_LOOKBACK_MS", "sim_history_lookback_ms", int)
        _set_list("SIM_HISTORY_TIMEFRAMES", "sim_history_timeframes")
        _set_str("MARKET_DATA_MODE", "market_data_mode")
        _set_str("CRYPTOCOMPARE_API_KEY", "cryptocompare_api_key")
        _set_num("CALIBRATION_TTL_SECONDS", "calibration_ttl_seconds", float)
        _set_num("QUICK_IMPORT_TIMEOUT_SECONDS", "quick_import_timeout_seconds", float)

        return cls(**values)


_logging_configured = False


def configure_logging(level: str = "INFO"):
    """Configure root logging once per process."""
    global _logging_configured
    if _logging_configured:
        return
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    _logging_configured = True
