"""Decimal indicator engine.

Computes RSI, MACD, Bollinger Bands, ATR, Stochastic, SMA/EMA and a volume
profile from a PriceSeries. Every computation runs inside one fixed decimal
context so repeated recomputation over identical input yields identical output.
Indicators whose lookback exceeds the available history are omitted and
recorded in IndicatorSet.missing instead of being zero-filled.
"""

from decimal import ROUND_HALF_EVEN, Context, Decimal, localcontext
from typing import Callable

from loguru import logger

from signal_agent.config import IndicatorParams
from signal_agent.errors import CalculationError
from signal_agent.models.indicators import (
    BollingerValue,
    IndicatorSet,
    MACDValue,
    StochasticValue,
    VolumeProfile,
)
from signal_agent.models.market import PriceSeries, data_quality

DECIMAL_CONTEXT = Context(prec=28, rounding=ROUND_HALF_EVEN)

ZERO = Decimal(0)
ONE = Decimal(1)
TWO = Decimal(2)
FIFTY = Decimal(50)
HUNDRED = Decimal(100)


# --- Moving averages ---

def sma_series(values: list[Decimal], period: int) -> list[Decimal | None]:
    """Simple moving average; None until `period` values are available."""
    out: list[Decimal | None] = [None] * len(values)
    if period <= 0 or len(values) < period:
        return out
    with localcontext(DECIMAL_CONTEXT):
        window_sum = sum(values[:period], ZERO)
        out[period - 1] = window_sum / period
        for i in range(period, len(values)):
            window_sum += values[i] - values[i - period]
            out[i] = window_sum / period
    return out


def ema_series(values: list[Decimal], period: int) -> list[Decimal | None]:
    """Exponential moving average seeded with the SMA of the first `period` values."""
    out: list[Decimal | None] = [None] * len(values)
    if period <= 0 or len(values) < period:
        return out
    with localcontext(DECIMAL_CONTEXT):
        alpha = TWO / (period + 1)
        prev = sum(values[:period], ZERO) / period
        out[period - 1] = prev
        for i in range(period, len(values)):
            prev = prev + alpha * (values[i] - prev)
            out[i] = prev
    return out


def sma(values: list[Decimal], period: int) -> Decimal | None:
    return sma_series(values, period)[-1] if values else None


def ema(values: list[Decimal], period: int) -> Decimal | None:
    return ema_series(values, period)[-1] if values else None


# --- Oscillators ---

def rsi(closes: list[Decimal], period: int = 14) -> Decimal | None:
    """Wilder RSI in [0, 100]. Needs period + 1 closes.

    No movement at all → 50; gains with no losses → 100.
    """
    if len(closes) < period + 1:
        return None
    with localcontext(DECIMAL_CONTEXT):
        changes = [closes[i] - closes[i - 1] for i in range(1, len(closes))]
        gains = [c if c > 0 else ZERO for c in changes]
        losses = [-c if c < 0 else ZERO for c in changes]

        avg_gain = sum(gains[:period], ZERO) / period
        avg_loss = sum(losses[:period], ZERO) / period
        for i in range(period, len(changes)):
            avg_gain = (avg_gain * (period - 1) + gains[i]) / period
            avg_loss = (avg_loss * (period - 1) + losses[i]) / period

        if avg_loss == 0:
            return FIFTY if avg_gain == 0 else HUNDRED
        rs = avg_gain / avg_loss
        value = HUNDRED - HUNDRED / (ONE + rs)
    return min(HUNDRED, max(ZERO, value))


def macd(
    closes: list[Decimal], fast: int = 12, slow: int = 26, signal: int = 9
) -> MACDValue | None:
    """MACD line = EMA(fast) - EMA(slow); signal = EMA(signal) of the line."""
    if len(closes) < slow + signal - 1:
        return None
    fast_ema = ema_series(closes, fast)
    slow_ema = ema_series(closes, slow)
    with localcontext(DECIMAL_CONTEXT):
        line = [f - s for f, s in zip(fast_ema, slow_ema) if f is not None and s is not None]
        signal_line = ema_series(line, signal)
        if not signal_line or signal_line[-1] is None:
            return None
        hist = line[-1] - signal_line[-1]
    return MACDValue(line=line[-1], signal=signal_line[-1], histogram=hist)


def bollinger(
    closes: list[Decimal], period: int = 20, k: Decimal = TWO
) -> BollingerValue | None:
    """SMA(period) ± k * population standard deviation over the same window."""
    if len(closes) < period:
        return None
    window = closes[-period:]
    with localcontext(DECIMAL_CONTEXT):
        middle = sum(window, ZERO) / period
        variance = sum(((v - middle) ** 2 for v in window), ZERO) / period
        std = variance.sqrt()
        return BollingerValue(upper=middle + k * std, middle=middle, lower=middle - k * std)


def true_ranges(highs: list[Decimal], lows: list[Decimal], closes: list[Decimal]) -> list[Decimal]:
    """True range for bars 1..n-1 (bar 0 has no previous close)."""
    out = []
    for i in range(1, len(closes)):
        prev_close = closes[i - 1]
        out.append(max(
            highs[i] - lows[i],
            abs(highs[i] - prev_close),
            abs(lows[i] - prev_close),
        ))
    return out


def atr(
    highs: list[Decimal], lows: list[Decimal], closes: list[Decimal], period: int = 14
) -> Decimal | None:
    """Wilder-smoothed average true range. Needs period + 1 bars."""
    if len(closes) < period + 1:
        return None
    with localcontext(DECIMAL_CONTEXT):
        tr = true_ranges(highs, lows, closes)
        value = sum(tr[:period], ZERO) / period
        for i in range(period, len(tr)):
            value = (value * (period - 1) + tr[i]) / period
    return value


def stochastic(
    highs: list[Decimal],
    lows: list[Decimal],
    closes: list[Decimal],
    period: int = 14,
    smooth: int = 3,
) -> StochasticValue | None:
    """%K over `period` bars, %D = SMA(smooth) of %K. Flat range → %K = 50."""
    if len(closes) < period + smooth - 1:
        return None
    with localcontext(DECIMAL_CONTEXT):
        k_values: list[Decimal] = []
        for i in range(period - 1, len(closes)):
            hh = max(highs[i - period + 1 : i + 1])
            ll = min(lows[i - period + 1 : i + 1])
            if hh == ll:
                k_values.append(FIFTY)
            else:
                k_values.append((closes[i] - ll) / (hh - ll) * HUNDRED)
        d = sum(k_values[-smooth:], ZERO) / smooth
    return StochasticValue(k=k_values[-1], d=d)


def volume_profile(volumes: list[Decimal], period: int = 20) -> VolumeProfile | None:
    """Current volume against the average of the `period` bars before it."""
    if len(volumes) < period + 1:
        return None
    with localcontext(DECIMAL_CONTEXT):
        average = sum(volumes[-period - 1 : -1], ZERO) / period
        if average <= 0:
            return None
        current = volumes[-1]
        return VolumeProfile(current=current, average=average, ratio=current / average)


# --- IndicatorSet assembly ---

def _required_bars(p: IndicatorParams) -> dict[str, int]:
    return {
        "rsi": p.rsi_period + 1,
        "macd": p.macd_slow + p.macd_signal - 1,
        "bollinger": p.bollinger_period,
        "atr": p.atr_period + 1,
        "stochastic": p.stochastic_period + p.stochastic_smooth - 1,
        "sma": p.sma_period,
        "ema_short": p.ema_short,
        "ema_medium": p.ema_medium,
        "ema_long": p.ema_long,
        "volume": p.volume_period + 1,
    }


def compute_indicator_set(series: PriceSeries, params: IndicatorParams | None = None) -> IndicatorSet:
    """Compute a fresh IndicatorSet from the full series.

    Raises CalculationError on arithmetic faults; short history is not an
    error, it only shows up in `missing`.
    """
    p = params or IndicatorParams()
    if not series.bars:
        return IndicatorSet(
            symbol=series.symbol,
            timeframe=series.timeframe,
            bar_count=0,
            close=ZERO,
            missing={name: "no bars" for name in _required_bars(p)},
        )

    closes = series.closes
    highs = series.highs
    lows = series.lows
    volumes = series.volumes
    n = len(closes)

    dispatch: dict[str, Callable[[], object]] = {
        "rsi": lambda: rsi(closes, p.rsi_period),
        "macd": lambda: macd(closes, p.macd_fast, p.macd_slow, p.macd_signal),
        "bollinger": lambda: bollinger(closes, p.bollinger_period, p.bollinger_k),
        "atr": lambda: atr(highs, lows, closes, p.atr_period),
        "stochastic": lambda: stochastic(highs, lows, closes, p.stochastic_period, p.stochastic_smooth),
        "sma": lambda: sma(closes, p.sma_period),
        "ema_short": lambda: ema(closes, p.ema_short),
        "ema_medium": lambda: ema(closes, p.ema_medium),
        "ema_long": lambda: ema(closes, p.ema_long),
        "volume": lambda: volume_profile(volumes, p.volume_period),
    }

    values: dict[str, object] = {}
    missing: dict[str, str] = {}
    for name, required in _required_bars(p).items():
        if n < required:
            missing[name] = f"needs {required} bars, have {n}"
            continue
        try:
            result = dispatch[name]()
        except ArithmeticError as e:
            raise CalculationError(f"{name} failed for {series.symbol}/{series.timeframe}: {e}") from e
        if result is None:
            missing[name] = "not computable"
        elif name == "atr" and result <= 0:
            missing[name] = "zero true range"
        else:
            values[name] = result

    if missing:
        logger.debug(f"{series.symbol}/{series.timeframe}: missing indicators {sorted(missing)}")

    return IndicatorSet(
        symbol=series.symbol,
        timeframe=series.timeframe,
        bar_count=n,
        close=closes[-1],
        data_quality=data_quality(series),
        missing=missing,
        **values,
    )
