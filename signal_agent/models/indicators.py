"""Fixed-schema indicator records. An absent indicator is None plus a `missing` entry."""

from decimal import Decimal

from pydantic import BaseModel, ConfigDict


class MACDValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    line: Decimal
    signal: Decimal
    histogram: Decimal


class BollingerValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    upper: Decimal
    middle: Decimal
    lower: Decimal


class StochasticValue(BaseModel):
    model_config = ConfigDict(frozen=True)

    k: Decimal
    d: Decimal


class VolumeProfile(BaseModel):
    model_config = ConfigDict(frozen=True)

    current: Decimal
    average: Decimal
    ratio: Decimal


class IndicatorSet(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol: str
    timeframe: str
    bar_count: int
    close: Decimal
    data_quality: float = 1.0

    rsi: Decimal | None = None
    macd: MACDValue | None = None
    bollinger: BollingerValue | None = None
    atr: Decimal | None = None
    stochastic: StochasticValue | None = None
    sma: Decimal | None = None
    ema_short: Decimal | None = None
    ema_medium: Decimal | None = None
    ema_long: Decimal | None = None
    volume: VolumeProfile | None = None

    # indicator name -> reason it could not be computed
    missing: dict[str, str] = {}

    @property
    def available(self) -> list[str]:
        fields = {
            "rsi": self.rsi,
            "macd": self.macd,
            "bollinger": self.bollinger,
            "atr": self.atr,
            "stochastic": self.stochastic,
            "sma": self.sma,
            "ema_short": self.ema_short,
            "ema_medium": self.ema_medium,
            "ema_long": self.ema_long,
            "volume": self.volume,
        }
        return [name for name, val in fields.items() if val is not None]

    @property
    def is_empty(self) -> bool:
        return not self.available
