from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from signal_agent.config import TF_SECONDS
from signal_agent.errors import InvalidInputError


def to_decimal(value) -> Decimal:
    """Convert provider values to Decimal without binary float artefacts."""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(str(value))


class Direction(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"
    NEUTRAL = "NEUTRAL"

    @property
    def sign(self) -> int:
        if self is Direction.LONG:
            return 1
        if self is Direction.SHORT:
            return -1
        return 0


class Bar(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    open: Decimal
    high: Decimal
    low: Decimal
    close: Decimal
    volume: Decimal

    @field_validator("open", "high", "low", "close", "volume", mode="before")
    @classmethod
    def _as_decimal(cls, v):
        return to_decimal(v)


class PriceSeries(BaseModel):
    """Chronologically ordered OHLCV bars for one symbol/timeframe."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    timeframe: str
    bars: tuple[Bar, ...] = ()

    def __len__(self) -> int:
        return len(self.bars)

    @property
    def closes(self) -> list[Decimal]:
        return [b.close for b in self.bars]

    @property
    def highs(self) -> list[Decimal]:
        return [b.high for b in self.bars]

    @property
    def lows(self) -> list[Decimal]:
        return [b.low for b in self.bars]

    @property
    def volumes(self) -> list[Decimal]:
        return [b.volume for b in self.bars]

    def tail(self, n: int) -> "PriceSeries":
        return self.model_copy(update={"bars": self.bars[-n:]})


class Quote(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol: str
    price: Decimal
    timestamp: datetime

    @field_validator("price", mode="before")
    @classmethod
    def _as_decimal(cls, v):
        return to_decimal(v)


class Pattern(BaseModel):
    """Chart/candlestick pattern supplied by an external detector."""

    model_config = ConfigDict(frozen=True)

    type: str
    confidence: float = Field(ge=0.0, le=1.0)
    direction: Direction


def validate_series(series: PriceSeries) -> None:
    """Reject malformed series. Never clamps values into a plausible range."""
    prev: Bar | None = None
    for i, bar in enumerate(series.bars):
        if bar.open <= 0 or bar.high <= 0 or bar.low <= 0 or bar.close <= 0:
            raise InvalidInputError(
                f"{series.symbol}/{series.timeframe}: non-positive price at bar {i}"
            )
        if bar.volume < 0:
            raise InvalidInputError(
                f"{series.symbol}/{series.timeframe}: negative volume at bar {i}"
            )
        if bar.high < bar.low:
            raise InvalidInputError(
                f"{series.symbol}/{series.timeframe}: high < low at bar {i}"
            )
        if prev is not None and bar.timestamp <= prev.timestamp:
            raise InvalidInputError(
                f"{series.symbol}/{series.timeframe}: timestamps not strictly increasing at bar {i}"
            )
        prev = bar


def data_quality(series: PriceSeries) -> float:
    """Fraction of bar intervals that match the timeframe's expected spacing.

    Gaps larger than the interval lower the score; they never raise.
    """
    n = len(series.bars)
    if n < 2:
        return 1.0
    expected = TF_SECONDS.get(series.timeframe)
    if expected is None:
        return 1.0
    gaps = 0
    for prev, cur in zip(series.bars, series.bars[1:]):
        # 1.5x tolerance absorbs calendar-month length variation
        if (cur.timestamp - prev.timestamp).total_seconds() > expected * 1.5:
            gaps += 1
    return round(1.0 - gaps / (n - 1), 4)
