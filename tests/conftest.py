"""Shared builders and fakes for signal agent tests."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from signal_agent.config import TF_SECONDS, RiskConfig
from signal_agent.engine.risk import MonteCarloRiskEngine
from signal_agent.engine.synthesizer import SignalSynthesizer
from signal_agent.engine.weights import AdaptiveWeightManager
from signal_agent.errors import UpstreamUnavailableError
from signal_agent.models.market import Bar, Direction, PriceSeries, Quote
from signal_agent.models.signal import (
    ConfluenceComponents,
    ConfluenceScore,
    MarketRegime,
    RegimeType,
    Signal,
)
from signal_agent.pipeline import SignalPipeline

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
CYCLE_TS = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_series(
    closes,
    timeframe="4h",
    symbol="BTC/USDT",
    volumes=None,
    upper_wick="0",
    lower_wick="0.5",
    start=T0,
) -> PriceSeries:
    """Bars whose open is the previous close; wicks extend beyond the body."""
    step = timedelta(seconds=TF_SECONDS[timeframe])
    up = Decimal(upper_wick)
    down = Decimal(lower_wick)
    bars = []
    prev = None
    for i, c in enumerate(closes):
        close = Decimal(str(c))
        open_ = prev if prev is not None else close
        vol = Decimal(str(volumes[i])) if volumes is not None else Decimal(100)
        bars.append(Bar(
            timestamp=start + i * step,
            open=open_,
            high=max(open_, close) + up,
            low=min(open_, close) - down,
            close=close,
            volume=vol,
        ))
        prev = close
    return PriceSeries(symbol=symbol, timeframe=timeframe, bars=tuple(bars))


def uptrend_closes(start=100.0, flat=20, legs=20) -> list[float]:
    """Quiet range, then a zigzag climb (-1, +2) that ends on an up bar."""
    closes = [start]
    for i in range(flat - 1):
        closes.append(closes[-1] + (0.5 if i % 2 == 0 else -0.5))
    for _ in range(legs):
        closes.append(closes[-1] - 1)
        closes.append(closes[-1] + 2)
    return closes


def downtrend_closes(start=200.0, flat=20, legs=20) -> list[float]:
    """Mirror of uptrend_closes: zigzag decline (+1, -2) ending on a down bar."""
    closes = [start]
    for i in range(flat - 1):
        closes.append(closes[-1] + (0.5 if i % 2 == 0 else -0.5))
    for _ in range(legs):
        closes.append(closes[-1] + 1)
        closes.append(closes[-1] - 2)
    return closes


def surge_volumes(n, base=100, last=300) -> list[int]:
    return [base] * (n - 1) + [last]


def make_uptrend(timeframe="4h", symbol="BTC/USDT") -> PriceSeries:
    closes = uptrend_closes()
    return make_series(closes, timeframe=timeframe, symbol=symbol, volumes=surge_volumes(len(closes)))


def make_downtrend(timeframe="4h", symbol="BTC/USDT") -> PriceSeries:
    closes = downtrend_closes()
    return make_series(
        closes,
        timeframe=timeframe,
        symbol=symbol,
        volumes=surge_volumes(len(closes)),
        upper_wick="0.5",
        lower_wick="0",
    )


class FakeProvider:
    """In-memory MarketDataProvider. Unknown keys are reported as unavailable."""

    def __init__(self, series=None, quotes=None):
        self.series: dict[tuple[str, str], PriceSeries] = dict(series or {})
        self.quotes: dict[str, Decimal] = dict(quotes or {})
        self.failures: dict[tuple[str, str], list[Exception]] = {}
        self.calls: list[tuple[str, str]] = []

    def fail_next(self, symbol, timeframe, exc, times=1):
        self.failures.setdefault((symbol, timeframe), []).extend([exc] * times)

    async def get_price_series(self, symbol, timeframe, min_bars):
        self.calls.append((symbol, timeframe))
        pending = self.failures.get((symbol, timeframe))
        if pending:
            raise pending.pop(0)
        s = self.series.get((symbol, timeframe))
        if s is None:
            raise UpstreamUnavailableError(f"no data for {symbol}/{timeframe}")
        return s

    async def get_latest_quote(self, symbol):
        if symbol not in self.quotes:
            raise UpstreamUnavailableError(f"no quote for {symbol}")
        return Quote(symbol=symbol, price=self.quotes[symbol], timestamp=CYCLE_TS)


class MemoryStore:
    """SignalStore kept in lists."""

    def __init__(self):
        self.signals = []
        self.assessments = []
        self.outcomes: list[tuple[str, float, str | None]] = []

    async def save_signal(self, signal):
        self.signals.append(signal)

    async def save_risk_assessment(self, assessment):
        self.assessments.append(assessment)

    async def save_outcome(self, indicator, score, signal_id=None):
        self.outcomes.append((indicator, score, signal_id))

    async def load_recent_outcomes(self, indicator, limit):
        scores = [s for name, s, _ in self.outcomes if name == indicator]
        return scores[-limit:]


def make_pipeline(provider, symbols, timeframes, store=None, **kwargs) -> SignalPipeline:
    synthesizer = SignalSynthesizer(AdaptiveWeightManager())
    risk = MonteCarloRiskEngine(RiskConfig(iterations=1000, workers=2))
    return SignalPipeline(
        provider,
        synthesizer,
        risk,
        store=store,
        symbols=symbols,
        timeframes=timeframes,
        history_bars=200,
        **kwargs,
    )


@pytest.fixture
def uptrend():
    return make_uptrend()


@pytest.fixture
def downtrend():
    return make_downtrend()


@pytest.fixture
def risk_engine():
    engine = MonteCarloRiskEngine(RiskConfig(iterations=1000, workers=2))
    yield engine
    engine.close()


def make_signal(
    direction=Direction.LONG,
    entry="100",
    stop="95",
    target="110",
    timeframe="1h",
    symbol="BTC/USDT",
    timestamp=CYCLE_TS,
    votes=(),
) -> Signal:
    return Signal(
        id=f"{symbol}:{timeframe}:{int(timestamp.timestamp())}",
        symbol=symbol,
        timeframe=timeframe,
        direction=direction,
        confidence=70.0,
        entry_price=Decimal(entry),
        stop_loss=Decimal(stop),
        take_profit=Decimal(target),
        atr=Decimal("2.5"),
        regime=MarketRegime(type=RegimeType.SIDEWAYS, confidence=0.82),
        confluence=ConfluenceScore(
            value=70.0,
            components=ConfluenceComponents(
                indicator_agreement=1.0,
                pattern_strength=0.0,
                volume_confirmation=1.0,
                timeframe_consensus=0.5,
            ),
            majority=direction,
        ),
        votes=tuple(votes),
        timestamp=timestamp,
    )
