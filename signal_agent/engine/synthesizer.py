"""Signal Synthesizer — turns one PriceSeries into one immutable Signal.

Each (symbol, timeframe) is a SynthesisUnit moving through
PENDING -> COMPUTING -> {READY, INSUFFICIENT_DATA, ERROR}. Work is split in
two phases so the pipeline can gather every timeframe's majority vote for a
symbol before confluence scoring:

    prepare(unit)    validate + indicators + votes
    complete(unit)   regime, weighting, confluence, levels, Signal

Any failure inside a unit is recorded on that unit and never propagates.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, localcontext
from typing import Iterable

from loguru import logger

from signal_agent.config import IndicatorParams, SynthesisConfig
from signal_agent.engine.confluence import ConfluenceEngine, indicator_votes, majority_direction
from signal_agent.engine.indicators import DECIMAL_CONTEXT, compute_indicator_set
from signal_agent.engine.regime import MarketRegimeDetector
from signal_agent.engine.weights import AdaptiveWeightManager
from signal_agent.errors import CalculationError, InsufficientDataError, InvalidInputError
from signal_agent.models.indicators import IndicatorSet
from signal_agent.models.market import Direction, Pattern, PriceSeries, validate_series
from signal_agent.models.signal import (
    ConfluenceScore,
    IndicatorVote,
    MarketRegime,
    Signal,
    UnitState,
)

_TRANSITIONS = {
    UnitState.PENDING: {UnitState.COMPUTING},
    UnitState.COMPUTING: {UnitState.READY, UnitState.INSUFFICIENT_DATA, UnitState.ERROR},
    UnitState.READY: set(),
    UnitState.INSUFFICIENT_DATA: set(),
    UnitState.ERROR: set(),
}


@dataclass
class SynthesisUnit:
    """Mutable work record for one (symbol, timeframe) in one cycle."""
    symbol: str
    timeframe: str
    state: UnitState = UnitState.PENDING
    series: PriceSeries | None = None
    indicators: IndicatorSet | None = None
    votes: list[IndicatorVote] = field(default_factory=list)
    majority: Direction = Direction.NEUTRAL
    signal: Signal | None = None
    reason: str = ""
    error: str = ""

    @property
    def key(self) -> tuple[str, str]:
        return (self.symbol, self.timeframe)

    @property
    def is_terminal(self) -> bool:
        return self.state in (UnitState.READY, UnitState.INSUFFICIENT_DATA, UnitState.ERROR)

    def transition(self, new_state: UnitState):
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Illegal transition {self.state.value} -> {new_state.value} for {self.symbol}/{self.timeframe}"
            )
        self.state = new_state

    def start(self):
        self.transition(UnitState.COMPUTING)

    def finish(self, signal: Signal):
        self.signal = signal
        self.transition(UnitState.READY)

    def insufficient(self, reason: str):
        self.reason = reason
        self.transition(UnitState.INSUFFICIENT_DATA)

    def fail(self, exc: BaseException):
        self.error = f"{type(exc).__name__}: {exc}"
        self.transition(UnitState.ERROR)


class SignalSynthesizer:
    def __init__(
        self,
        weights: AdaptiveWeightManager,
        regime_detector: MarketRegimeDetector | None = None,
        confluence: ConfluenceEngine | None = None,
        indicator_params: IndicatorParams | None = None,
        config: SynthesisConfig | None = None,
    ):
        self.config = config or SynthesisConfig()
        self.weights = weights
        self.regime_detector = regime_detector or MarketRegimeDetector()
        self.confluence = confluence or ConfluenceEngine(self.config)
        self.indicator_params = indicator_params or IndicatorParams()

    # --- Phase 1 ---

    def prepare(self, unit: SynthesisUnit) -> SynthesisUnit:
        """Compute indicators and votes. Leaves the unit COMPUTING on success."""
        if unit.state is UnitState.PENDING:
            unit.start()
        if unit.is_terminal:
            return unit
        try:
            if unit.series is None:
                raise CalculationError("no price series attached")
            validate_series(unit.series)
            ind = compute_indicator_set(unit.series, self.indicator_params)
            if ind.is_empty:
                raise InsufficientDataError(
                    f"{ind.bar_count} bars: no indicator computable", ind.missing
                )
            if ind.atr is None:
                raise InsufficientDataError(
                    f"ATR unavailable ({ind.missing.get('atr', 'unknown')}): cannot size stop/target",
                    ind.missing,
                )
            unit.indicators = ind
            unit.votes = indicator_votes(ind)
            unit.majority = majority_direction(unit.votes)
        except InsufficientDataError as e:
            logger.debug(f"{unit.symbol}/{unit.timeframe}: insufficient data: {e}")
            unit.insufficient(str(e))
        except InvalidInputError as e:
            logger.warning(f"{unit.symbol}/{unit.timeframe}: rejected input: {e}")
            unit.fail(e)
        except Exception as e:
            logger.error(f"{unit.symbol}/{unit.timeframe}: indicator phase failed: {e}")
            unit.fail(e)
        return unit

    # --- Phase 2 ---

    def complete(
        self,
        unit: SynthesisUnit,
        timestamp: datetime,
        patterns: Iterable[Pattern] = (),
        peer_directions: Iterable[Direction] = (),
    ) -> SynthesisUnit:
        if unit.is_terminal:
            return unit
        try:
            if unit.indicators is None:
                raise CalculationError("complete() called before prepare()")
            signal = self.build_signal(
                unit.indicators, unit.votes, list(patterns), list(peer_directions), timestamp
            )
            unit.finish(signal)
        except Exception as e:
            logger.error(f"{unit.symbol}/{unit.timeframe}: synthesis failed: {e}")
            unit.fail(e)
        return unit

    def synthesize(
        self,
        series: PriceSeries,
        timestamp: datetime,
        patterns: Iterable[Pattern] = (),
        peer_directions: Iterable[Direction] = (),
    ) -> SynthesisUnit:
        """Run both phases for a single unit."""
        unit = SynthesisUnit(symbol=series.symbol, timeframe=series.timeframe, series=series)
        self.prepare(unit)
        return self.complete(unit, timestamp, patterns, peer_directions)

    # --- Signal assembly ---

    def weighted_score(self, votes: list[IndicatorVote], regime: MarketRegime) -> float:
        """Σ w·vote / Σ w over available voting indicators, in [-1, 1].

        w = adaptive weight × regime multiplier; neutral votes add weight but no direction.
        """
        num = 0.0
        den = 0.0
        for v in votes:
            w = self.weights.get_weight(v.name) * regime.adjustment(v.name)
            num += w * v.direction.sign
            den += w
        if den <= 0:
            return 0.0
        return round(num / den, 6)

    def classify(self, score: float) -> Direction:
        if score > self.config.long_threshold:
            return Direction.LONG
        if score < self.config.short_threshold:
            return Direction.SHORT
        return Direction.NEUTRAL

    def price_levels(
        self, direction: Direction, entry: Decimal, atr: Decimal, timeframe: str
    ) -> tuple[Decimal, Decimal]:
        """(stop_loss, take_profit). SHORT puts the stop above entry and the target below.

        NEUTRAL gets the long-oriented bracket as a watch range.
        """
        stop_mult, target_mult = self.config.atr_multiple(timeframe)
        with localcontext(DECIMAL_CONTEXT):
            stop_dist = atr * Decimal(str(stop_mult))
            target_dist = atr * Decimal(str(target_mult))
            if direction is Direction.SHORT:
                stop, target = entry + stop_dist, entry - target_dist
            else:
                stop, target = entry - stop_dist, entry + target_dist
        if stop <= 0 or target <= 0:
            raise CalculationError(
                f"ATR {atr} too large for entry {entry}: stop={stop} target={target}"
            )
        return stop, target

    def _confidence(self, confluence: ConfluenceScore, regime: MarketRegime) -> float:
        raw = confluence.value * 0.8 + regime.confidence * 20.0
        return round(max(0.0, min(self.config.max_confidence, raw)), 2)

    def build_signal(
        self,
        ind: IndicatorSet,
        votes: list[IndicatorVote],
        patterns: list[Pattern],
        peer_directions: list[Direction],
        timestamp: datetime,
    ) -> Signal:
        regime = self.regime_detector.detect(ind)
        score = self.weighted_score(votes, regime)
        direction = self.classify(score)
        confluence = self.confluence.score(ind, patterns, regime, peer_directions, votes=votes)
        confidence = self._confidence(confluence, regime)

        reasoning = [v.reason for v in votes if v.direction is not Direction.NEUTRAL]
        if direction is Direction.LONG:
            reasoning.append(f"Strong bullish consensus (score: {score * 100:.1f})")
        elif direction is Direction.SHORT:
            reasoning.append(f"Strong bearish consensus (score: {score * 100:.1f})")
        else:
            reasoning.append(f"No directional consensus (score: {score * 100:.1f})")
        reasoning.append(
            f"Market regime: {regime.type.value} ({regime.confidence * 100:.0f}% confidence)"
        )
        reasoning.append(f"Confluence score: {confluence.value:.1f}/100")

        if direction is not Direction.NEUTRAL:
            if confluence.majority is not direction:
                reasoning.append(
                    f"Weighted score disagrees with indicator majority ({confluence.majority.value}); downgraded to NEUTRAL"
                )
                direction = Direction.NEUTRAL
                confidence = min(confidence, self.config.rejected_confidence)
            elif confluence.value < self.config.quality_threshold:
                reasoning.append(
                    f"Confluence {confluence.value:.1f} below quality threshold "
                    f"{self.config.quality_threshold:.0f}; downgraded to NEUTRAL"
                )
                direction = Direction.NEUTRAL
                confidence = min(confidence, self.config.rejected_confidence)

        if ind.data_quality < 1.0:
            reasoning.append(f"Data quality {ind.data_quality:.0%} (gaps in price history)")
        if ind.missing:
            reasoning.append(f"Unavailable indicators: {', '.join(sorted(ind.missing))}")

        entry = ind.close
        stop, target = self.price_levels(direction, entry, ind.atr, ind.timeframe)

        signal = Signal(
            id=f"{ind.symbol}:{ind.timeframe}:{int(timestamp.timestamp())}",
            symbol=ind.symbol,
            timeframe=ind.timeframe,
            direction=direction,
            confidence=confidence,
            entry_price=entry,
            stop_loss=stop,
            take_profit=target,
            atr=ind.atr,
            reasoning=tuple(reasoning),
            regime=regime,
            confluence=confluence,
            votes=tuple(votes),
            weighted_score=score,
            data_quality=ind.data_quality,
            timestamp=timestamp,
        )
        logger.debug(
            f"Signal {signal.symbol}/{signal.timeframe}: {direction.value} "
            f"conf={confidence:.1f} entry={entry} sl={stop} tp={target}"
        )
        return signal
