"""Market regime detection — classify an IndicatorSet as BULL, BEAR or SIDEWAYS.

Uses short/medium and medium/long EMA divergence for trend strength and
ATR-to-price for volatility. The result is a deterministic lookup, not a
learned model; every threshold lives in RegimeConfig.
"""

from decimal import Decimal, localcontext

from signal_agent.config import RegimeConfig
from signal_agent.engine.indicators import DECIMAL_CONTEXT
from signal_agent.models.indicators import IndicatorSet
from signal_agent.models.signal import MarketRegime, RegimeType


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def trend_strength(
    ema_short: Decimal, ema_medium: Decimal, ema_long: Decimal, saturation: float
) -> float:
    """Average signed EMA divergence scaled into [-1, 1]."""
    with localcontext(DECIMAL_CONTEXT):
        short_vs_medium = (ema_short - ema_medium) / ema_medium
        medium_vs_long = (ema_medium - ema_long) / ema_long
        avg = (short_vs_medium + medium_vs_long) / 2
    return round(_clamp(float(avg) / saturation, -1.0, 1.0), 6)


def normalized_volatility(atr: Decimal, price: Decimal, saturation: float) -> float:
    """ATR as a fraction of price, scaled into [0, 1]."""
    with localcontext(DECIMAL_CONTEXT):
        ratio = atr / price
    return round(_clamp(float(ratio) / saturation, 0.0, 1.0), 6)


def classify_regime(trend: float, volatility: float, config: RegimeConfig) -> RegimeType:
    """BULL/BEAR are evaluated before SIDEWAYS."""
    if trend > config.bull_threshold and volatility < config.max_volatility:
        return RegimeType.BULL
    if trend < config.bear_threshold and volatility < config.max_volatility:
        return RegimeType.BEAR
    return RegimeType.SIDEWAYS


class MarketRegimeDetector:
    def __init__(self, config: RegimeConfig | None = None):
        self.config = config or RegimeConfig()

    def _confidence(self, regime: RegimeType) -> float:
        return {
            RegimeType.BULL: self.config.bull_confidence,
            RegimeType.BEAR: self.config.bear_confidence,
            RegimeType.SIDEWAYS: self.config.sideways_confidence,
        }[regime]

    def adjustments_for(self, regime: RegimeType) -> dict[str, float]:
        return dict(self.config.adjustments.get(regime.value, {}))

    def detect(self, indicators: IndicatorSet) -> MarketRegime:
        """Classify the regime. Missing EMA/ATR inputs fall back to low-confidence SIDEWAYS."""
        ind = indicators
        if (
            ind.ema_short is None
            or ind.ema_medium is None
            or ind.ema_long is None
            or ind.atr is None
            or ind.close <= 0
        ):
            return MarketRegime(
                type=RegimeType.SIDEWAYS,
                confidence=self.config.fallback_confidence,
                adjustments=self.adjustments_for(RegimeType.SIDEWAYS),
            )

        trend = trend_strength(
            ind.ema_short, ind.ema_medium, ind.ema_long, self.config.trend_saturation
        )
        volatility = normalized_volatility(ind.atr, ind.close, self.config.volatility_saturation)
        regime = classify_regime(trend, volatility, self.config)

        return MarketRegime(
            type=regime,
            confidence=self._confidence(regime),
            trend_strength=trend,
            volatility=volatility,
            adjustments=self.adjustments_for(regime),
        )
