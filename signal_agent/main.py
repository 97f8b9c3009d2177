"""Entry point — starts the Signal Agent."""

import asyncio
import signal
import sys
from pathlib import Path

from loguru import logger

from signal_agent.config import settings
from signal_agent.db.database import Database
from signal_agent.engine.confluence import ConfluenceEngine
from signal_agent.engine.regime import MarketRegimeDetector
from signal_agent.engine.risk import MonteCarloRiskEngine
from signal_agent.engine.synthesizer import SignalSynthesizer
from signal_agent.engine.weights import AdaptiveWeightManager
from signal_agent.feedback import OutcomeTracker
from signal_agent.market_data import BinanceMarketData, CachedMarketData
from signal_agent.models.signal import CycleReport
from signal_agent.pipeline import SignalPipeline


def configure_logging():
    logger.remove()
    logger.add(
        sys.stderr,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level=settings.log_level,
    )
    Path(settings.log_file).parent.mkdir(parents=True, exist_ok=True)
    logger.add(
        settings.log_file,
        rotation="10 MB",
        retention="7 days",
        level="DEBUG",
    )


async def run():
    db = Database()
    await db.connect()

    binance = BinanceMarketData()
    await binance.connect()
    provider = CachedMarketData(binance)

    synthesizer = SignalSynthesizer(
        weights=AdaptiveWeightManager(settings.weights),
        regime_detector=MarketRegimeDetector(settings.regime),
        confluence=ConfluenceEngine(settings.synthesis),
        indicator_params=settings.indicators,
        config=settings.synthesis,
    )
    risk_engine = MonteCarloRiskEngine(settings.risk)
    pipeline = SignalPipeline(provider, synthesizer, risk_engine, store=db)
    tracker = OutcomeTracker(pipeline, settings.risk)

    await pipeline.restore_weights()

    async def after_cycle(report: CycleReport):
        tracker.track_all(pipeline.list_signals())
        await tracker.poll()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers; Ctrl+C raises KeyboardInterrupt instead
            pass

    try:
        await pipeline.run_forever(settings.cycle_interval_seconds, on_cycle=after_cycle, stop_event=stop)
    finally:
        risk_engine.close()
        await binance.disconnect()
        await db.disconnect()


def main():
    configure_logging()

    logger.info("=" * 60)
    logger.info("  Signal Agent: multi-timeframe crypto signal synthesis")
    logger.info("=" * 60)
    logger.info(f"Universe: {len(settings.symbols)} symbols x {len(settings.timeframes)} timeframes")
    logger.info(f"Market data: {settings.binance_base_url}")

    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
