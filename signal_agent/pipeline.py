"""Signal pipeline — schedules one synthesis cycle over the symbol/timeframe universe.

A cycle fetches every (symbol, timeframe) series, runs the indicator phase for
all timeframes of a symbol, hands each unit its peers' majority directions,
completes synthesis, then runs Monte Carlo risk for directional signals.
Readers only ever see the snapshot of the last *completed* cycle; the new
snapshot replaces it in one assignment when the join finishes.
"""

import asyncio
import time
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Awaitable, Callable, Iterable

from loguru import logger

from signal_agent.config import INDICATOR_NAMES, settings
from signal_agent.db.database import SignalStore
from signal_agent.engine.risk import MonteCarloRiskEngine, historical_returns
from signal_agent.engine.synthesizer import SignalSynthesizer, SynthesisUnit
from signal_agent.errors import (
    InsufficientDataError,
    InvalidInputError,
    NotFoundError,
    UpstreamUnavailableError,
)
from signal_agent.market_data import MarketDataProvider
from signal_agent.models.market import Direction, Pattern, PriceSeries
from signal_agent.models.signal import (
    CycleReport,
    RiskAssessment,
    Signal,
    UnitResult,
    UnitState,
)

PatternSource = Callable[[PriceSeries], Iterable[Pattern]]


class SignalPipeline:
    def __init__(
        self,
        provider: MarketDataProvider,
        synthesizer: SignalSynthesizer,
        risk_engine: MonteCarloRiskEngine,
        store: SignalStore | None = None,
        symbols: list[str] | None = None,
        timeframes: list[str] | None = None,
        history_bars: int | None = None,
        pattern_source: PatternSource | None = None,
        registry_size: int | None = None,
    ):
        self.provider = provider
        self.synthesizer = synthesizer
        self.risk_engine = risk_engine
        self.store = store
        self.symbols = list(symbols or settings.symbols)
        self.timeframes = list(timeframes or settings.timeframes)
        self.history_bars = history_bars or settings.history_bars
        self.pattern_source = pattern_source
        self.registry_size = registry_size or settings.signal_registry_size

        self._cycle_lock = asyncio.Lock()

        # Snapshot of the last completed cycle
        self._units: dict[tuple[str, str], UnitResult] = {}
        self._signals: dict[tuple[str, str], Signal] = {}
        self._risk: dict[tuple[str, str], RiskAssessment] = {}
        self._report: CycleReport | None = None

        # Recently emitted signals by id, for outcome feedback
        self._registry: OrderedDict[str, Signal] = OrderedDict()
        self.cycles_run = 0

    @property
    def weights(self):
        return self.synthesizer.weights

    @property
    def last_report(self) -> CycleReport | None:
        return self._report

    # --- Cycle ---

    async def run_cycle(self, timestamp: datetime | None = None) -> CycleReport:
        """Run one full cycle. A call made while a cycle is active waits for it to finish."""
        if self._cycle_lock.locked():
            logger.warning("Cycle already in progress; waiting for it to finish")
        async with self._cycle_lock:
            return await self._run_cycle(timestamp or datetime.now(timezone.utc))

    async def _run_cycle(self, timestamp: datetime) -> CycleReport:
        started = time.monotonic()
        per_symbol = await asyncio.gather(
            *(self._process_symbol(symbol, timestamp) for symbol in self.symbols)
        )

        units: list[SynthesisUnit] = []
        risk: dict[tuple[str, str], RiskAssessment] = {}
        for sym_units, sym_risk in per_symbol:
            units.extend(sym_units)
            risk.update(sym_risk)

        results = {
            u.key: UnitResult(
                symbol=u.symbol,
                timeframe=u.timeframe,
                state=u.state,
                signal=u.signal,
                reason=u.reason or u.error,
            )
            for u in units
        }
        signals = {u.key: u.signal for u in units if u.state is UnitState.READY}
        report = CycleReport(
            total=len(units),
            ready=sum(1 for u in units if u.state is UnitState.READY),
            insufficient_data=sum(1 for u in units if u.state is UnitState.INSUFFICIENT_DATA),
            errored=sum(1 for u in units if u.state is UnitState.ERROR),
            started_at=timestamp,
            duration_ms=int((time.monotonic() - started) * 1000),
        )

        for signal in signals.values():
            self._remember(signal)

        # Publish
        self._units, self._signals, self._risk, self._report = results, signals, risk, report
        self.cycles_run += 1

        directional = sum(1 for s in signals.values() if s.direction is not Direction.NEUTRAL)
        logger.info(
            f"Cycle complete: {report.ready}/{report.total} ready, "
            f"{report.insufficient_data} insufficient, {report.errored} errors, "
            f"{directional} directional, {report.duration_ms}ms"
        )
        return report

    async def _process_symbol(
        self, symbol: str, timestamp: datetime
    ) -> tuple[list[SynthesisUnit], dict[tuple[str, str], RiskAssessment]]:
        loop = asyncio.get_running_loop()
        units = [SynthesisUnit(symbol=symbol, timeframe=tf) for tf in self.timeframes]

        await asyncio.gather(*(self._fetch(u) for u in units))

        # Phase 1: indicators and votes for every timeframe of this symbol
        await asyncio.gather(*(
            loop.run_in_executor(None, self.synthesizer.prepare, u)
            for u in units if not u.is_terminal
        ))
        majorities = {u.timeframe: u.majority for u in units if u.state is UnitState.COMPUTING}

        # Phase 2: synthesis with peer timeframe directions
        await asyncio.gather(*(
            loop.run_in_executor(
                None,
                self.synthesizer.complete,
                u,
                timestamp,
                self._patterns_for(u),
                [d for tf, d in majorities.items() if tf != u.timeframe],
            )
            for u in units if not u.is_terminal
        ))

        risk: dict[tuple[str, str], RiskAssessment] = {}
        for u in units:
            if u.state is not UnitState.READY:
                continue
            assessment = await self._assess(u)
            if assessment is not None:
                risk[u.key] = assessment
            await self._persist(u.signal, assessment)
        return units, risk

    async def _fetch(self, unit: SynthesisUnit):
        unit.start()
        try:
            unit.series = await self.provider.get_price_series(
                unit.symbol, unit.timeframe, self.history_bars
            )
        except UpstreamUnavailableError as e:
            logger.error(f"{unit.symbol}/{unit.timeframe}: market data unavailable: {e}")
            unit.fail(e)
        except InvalidInputError as e:
            logger.warning(f"{unit.symbol}/{unit.timeframe}: rejected by provider: {e}")
            unit.fail(e)
        except Exception as e:
            logger.error(f"{unit.symbol}/{unit.timeframe}: fetch failed: {e}")
            unit.fail(e)

    def _patterns_for(self, unit: SynthesisUnit) -> list[Pattern]:
        if self.pattern_source is None or unit.series is None:
            return []
        try:
            return list(self.pattern_source(unit.series))
        except Exception as e:
            logger.warning(f"{unit.symbol}/{unit.timeframe}: pattern source failed, scoring without patterns: {e}")
            return []

    async def _assess(self, unit: SynthesisUnit) -> RiskAssessment | None:
        signal = unit.signal
        if signal is None or signal.direction is Direction.NEUTRAL:
            return None
        loop = asyncio.get_running_loop()
        try:
            returns = historical_returns(unit.series)
            return await loop.run_in_executor(None, self.risk_engine.assess, signal, returns)
        except InsufficientDataError as e:
            logger.debug(f"{unit.symbol}/{unit.timeframe}: no risk assessment: {e}")
        except Exception as e:
            logger.error(f"{unit.symbol}/{unit.timeframe}: risk assessment failed: {e}")
        return None

    async def _persist(self, signal: Signal, assessment: RiskAssessment | None):
        if self.store is None:
            return
        try:
            await self.store.save_signal(signal)
            if assessment is not None:
                await self.store.save_risk_assessment(assessment)
        except Exception as e:
            logger.error(f"Failed to persist signal {signal.id}: {e}")

    def _remember(self, signal: Signal):
        self._registry[signal.id] = signal
        self._registry.move_to_end(signal.id)
        while len(self._registry) > self.registry_size:
            self._registry.popitem(last=False)

    async def run_forever(
        self,
        interval: float | None = None,
        on_cycle: Callable[[CycleReport], Awaitable[None]] | None = None,
        stop_event: asyncio.Event | None = None,
    ):
        """Run cycles back to back, `interval` seconds apart.

        A cycle that overruns the interval is followed immediately by the next;
        cycles never overlap.
        """
        interval = interval or settings.cycle_interval_seconds
        stop_event = stop_event or asyncio.Event()
        logger.info(
            f"Pipeline started: {len(self.symbols)} symbols x {len(self.timeframes)} timeframes, "
            f"every {interval:.0f}s"
        )
        while not stop_event.is_set():
            started = time.monotonic()
            try:
                report = await self.run_cycle()
                if on_cycle is not None:
                    await on_cycle(report)
            except Exception as e:
                logger.error(f"Cycle failed: {e}")

            elapsed = time.monotonic() - started
            if elapsed >= interval:
                logger.warning(
                    f"Cycle took {elapsed:.1f}s, over the {interval:.0f}s interval; starting next cycle now"
                )
                continue
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval - elapsed)
            except asyncio.TimeoutError:
                pass
        logger.info("Pipeline stopped")

    # --- Read side ---

    def list_signals(self, symbol: str | None = None, timeframe: str | None = None) -> list[Signal]:
        """Signals from the last completed cycle, in universe order."""
        out = []
        for (sym, tf), signal in self._signals.items():
            if symbol is not None and sym != symbol:
                continue
            if timeframe is not None and tf != timeframe:
                continue
            out.append(signal)
        return out

    def get_risk_assessment(self, symbol: str, timeframe: str) -> RiskAssessment:
        assessment = self._risk.get((symbol, timeframe))
        if assessment is None:
            raise NotFoundError(f"No risk assessment for {symbol}/{timeframe} in the last cycle")
        return assessment

    def get_unit_result(self, symbol: str, timeframe: str) -> UnitResult:
        result = self._units.get((symbol, timeframe))
        if result is None:
            raise NotFoundError(f"{symbol}/{timeframe} was not part of the last cycle")
        return result

    def get_signal(self, signal_id: str) -> Signal:
        signal = self._registry.get(signal_id)
        if signal is None:
            raise NotFoundError(f"Unknown or expired signal id: {signal_id}")
        return signal

    # --- Feedback ---

    async def record_trade_outcome(self, signal_id: str, score: float) -> dict[str, float]:
        """Feed a realized outcome score in [0, 1] back to the indicators that voted.

        Votes aligned with the signal receive `score`, opposing votes `1 - score`,
        neutral votes nothing. Returns the per-indicator scores applied.
        """
        signal = self.get_signal(signal_id)
        if signal.direction is Direction.NEUTRAL:
            raise InvalidInputError(f"{signal_id}: NEUTRAL signals have no outcome to score")
        if not isinstance(score, (int, float)) or not 0.0 <= score <= 1.0:
            raise InvalidInputError(f"Outcome score must be in [0, 1], got {score!r}")

        applied: dict[str, float] = {}
        for vote in signal.votes:
            if vote.direction is Direction.NEUTRAL:
                continue
            s = float(score) if vote.direction is signal.direction else 1.0 - float(score)
            self.weights.record_outcome(vote.name, s)
            applied[vote.name] = s

        if self.store is not None:
            try:
                for name, s in applied.items():
                    await self.store.save_outcome(name, s, signal_id)
            except Exception as e:
                logger.error(f"Failed to persist outcome for {signal_id}: {e}")

        logger.info(f"Outcome {signal_id}: score={score:.2f} applied to {sorted(applied)}")
        return applied

    async def restore_weights(self, limit: int | None = None) -> int:
        """Replay stored outcomes (oldest first) into the weight manager."""
        if self.store is None:
            return 0
        limit = limit or settings.outcome_history_limit
        replayed = 0
        for name in INDICATOR_NAMES:
            outcomes = await self.store.load_recent_outcomes(name, limit)
            self.weights.restore(name, outcomes)
            replayed += len(outcomes)
        if replayed:
            logger.info(f"Restored indicator weights from {replayed} stored outcomes")
        return replayed
