"""Outcome tracker — resolves emitted signals against live quotes.

Each directional signal is watched until price touches its take-profit
(score 1.0) or stop-loss (score 0.0), or its horizon expires. On expiry the
score is 0.5 plus half the signed progress toward the target, clamped to
[0, 1]. Resolved scores go back to the pipeline, which adapts the weights.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from typing import Awaitable, Callable, Iterable

from loguru import logger

from signal_agent.config import TF_SECONDS, RiskConfig
from signal_agent.errors import NotFoundError, UpstreamUnavailableError
from signal_agent.models.market import Direction, Quote
from signal_agent.models.signal import Signal

QuoteFn = Callable[[str], Awaitable[Quote]]


class ExitReason(str, Enum):
    TAKE_PROFIT = "TAKE_PROFIT"
    STOP_LOSS = "STOP_LOSS"
    TIMEOUT = "TIMEOUT"


@dataclass(frozen=True)
class TrackedSignal:
    signal: Signal
    expires_at: datetime


@dataclass(frozen=True)
class Resolution:
    signal_id: str
    reason: ExitReason
    score: float
    exit_price: Decimal


def resolve(tracked: TrackedSignal, price: Decimal, now: datetime) -> Resolution | None:
    """Score a tracked signal at `price`, or None while it is still open."""
    s = tracked.signal
    sign = s.direction.sign
    if sign * (price - s.take_profit) >= 0:
        return Resolution(s.id, ExitReason.TAKE_PROFIT, 1.0, price)
    if sign * (price - s.stop_loss) <= 0:
        return Resolution(s.id, ExitReason.STOP_LOSS, 0.0, price)
    if now >= tracked.expires_at:
        distance = abs(s.take_profit - s.entry_price)
        progress = float(sign * (price - s.entry_price) / distance) if distance else 0.0
        progress = max(-1.0, min(1.0, progress))
        return Resolution(s.id, ExitReason.TIMEOUT, round(0.5 + 0.5 * progress, 6), price)
    return None


class OutcomeTracker:
    def __init__(self, pipeline, risk_config: RiskConfig | None = None):
        self.pipeline = pipeline
        self.risk_config = risk_config or RiskConfig()
        self._open: dict[str, TrackedSignal] = {}

    @property
    def open_count(self) -> int:
        return len(self._open)

    def expiry_for(self, signal: Signal) -> datetime:
        bars = self.risk_config.horizon(signal.timeframe)
        return signal.timestamp + timedelta(seconds=bars * TF_SECONDS.get(signal.timeframe, 3600))

    def track(self, signal: Signal) -> bool:
        """Start watching a directional signal. One open signal per symbol/timeframe."""
        if signal.direction is Direction.NEUTRAL or signal.id in self._open:
            return False
        for t in self._open.values():
            if t.signal.symbol == signal.symbol and t.signal.timeframe == signal.timeframe:
                return False
        self._open[signal.id] = TrackedSignal(signal=signal, expires_at=self.expiry_for(signal))
        return True

    def track_all(self, signals: Iterable[Signal]) -> int:
        return sum(1 for s in signals if self.track(s))

    async def poll(self, quote_fn: QuoteFn | None = None, now: datetime | None = None) -> list[Resolution]:
        """Resolve open signals against the latest quote for each symbol."""
        if not self._open:
            return []
        quote_fn = quote_fn or self.pipeline.provider.get_latest_quote
        now = now or datetime.now(timezone.utc)

        by_symbol: dict[str, list[TrackedSignal]] = {}
        for t in self._open.values():
            by_symbol.setdefault(t.signal.symbol, []).append(t)

        resolved: list[Resolution] = []
        for symbol, tracked in by_symbol.items():
            try:
                quote = await quote_fn(symbol)
            except UpstreamUnavailableError as e:
                logger.warning(f"{symbol}: no quote for outcome tracking: {e}")
                continue
            for t in tracked:
                outcome = resolve(t, quote.price, now)
                if outcome is None:
                    continue
                del self._open[t.signal.id]
                try:
                    await self.pipeline.record_trade_outcome(outcome.signal_id, outcome.score)
                except NotFoundError:
                    logger.warning(f"{outcome.signal_id}: resolved after leaving the signal registry, outcome dropped")
                    continue
                logger.info(
                    f"{outcome.signal_id} closed by {outcome.reason.value} at {outcome.exit_price} "
                    f"(score {outcome.score:.2f})"
                )
                resolved.append(outcome)
        return resolved
