"""
Service wiring.

MarketContext builds every market component from one SimSettings object so
the app and tests share the same construction path.

Usage:
    context = MarketContext.from_settings(SimSettings.from_env())
    await context.start()
    ...
    await context.shutdown()
"""

import logging
from typing import Optional

from sqlalchemy.orm import sessionmaker

from calibration import CachedCalibrationProvider, StoreCalibrationProvider
from candle_loader import CandleLoader
from candle_store import CandleStore
from config import SimSettings
from database import init_db, make_engine
from history_loader import HistoryCandleLoader
from market_data_service import MarketDataService
from market_sim_service import MarketSimService
from replay_clock import ReplayClock
from session_runner import SessionRunner
from sim_event_store import SimEventStore
from sse_broadcaster import SSEBroadcaster
from sse_broadcaster import broadcaster as default_broadcaster

logger = logging.getLogger(__name__)


class MarketContext:
    def __init__(
        self,
        settings: SimSettings,
        session_factory,
        broadcaster: Optional[SSEBroadcaster] = None,
        sources=None,
    ):
        self.settings = settings
        self.broadcaster = broadcaster or default_broadcaster
        self.candle_store = CandleStore(session_factory)
        self.event_store = SimEventStore(session_factory)
        self.calibration = CachedCalibrationProvider(
            StoreCalibrationProvider(self.candle_store),
            ttl_seconds=settings.calibration_ttl_seconds,
        )
        self.clock = ReplayClock(settings, bounds_provider=self.candle_store.get_bounds)
        self.loader = CandleLoader(self.candle_store, settings, sources=sources)
        self.market_data = MarketDataService(
            self.candle_store, self.loader, settings, calibration=self.calibration
        )
        self.market_sim = MarketSimService(
            settings, self.clock, self.candle_store, loader=self.loader, broadcaster=self.broadcaster
        )
        self.runner = SessionRunner(
            self.event_store, self.loader, self.clock, broadcaster=self.broadcaster, market_sim=self.market_sim
        )
        self.history_loader = HistoryCandleLoader(settings, self.clock, self.candle_store, self.loader)

    @classmethod
    def from_settings(cls, settings: SimSettings, broadcaster: Optional[SSEBroadcaster] = None) -> "MarketContext":
        """Create an engine for settings.database_url and build the context on it."""
        engine = make_engine(settings.database_url)
        init_db(engine)
        factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
        return cls(settings, factory, broadcaster=broadcaster)

    async def start(self, with_history_loader: bool = True):
        """Start the quote simulator and, optionally, the backfill loop."""
        if not self.clock.is_enabled:
            logger.info("Simulation disabled (SIM_ENABLED=0); clock follows wall time")
            return
        await self.market_sim.ensure_started()
        if with_history_loader:
            await self.history_loader.ensure_started()

    async def shutdown(self):
        await self.runner.stop_all()
        await self.history_loader.stop()
        await self.market_sim.stop()
        await self.market_data.close()
        logger.info("Market context shut down")
