from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

from signal_agent.models.market import Direction


class RegimeType(str, Enum):
    BULL = "BULL"
    BEAR = "BEAR"
    SIDEWAYS = "SIDEWAYS"


class RiskLevel(str, Enum):
    VERY_LOW = "VERY_LOW"
    LOW = "LOW"
    MODERATE = "MODERATE"
    HIGH = "HIGH"
    VERY_HIGH = "VERY_HIGH"
    UNDEFINED = "UNDEFINED"


class UnitState(str, Enum):
    PENDING = "pending"
    COMPUTING = "computing"
    READY = "ready"
    INSUFFICIENT_DATA = "insufficient_data"
    ERROR = "error"


class MarketRegime(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: RegimeType
    confidence: float = Field(ge=0.0, le=1.0)
    trend_strength: float = Field(default=0.0, ge=-1.0, le=1.0)
    volatility: float = Field(default=0.0, ge=0.0, le=1.0)
    adjustments: dict[str, float] = {}

    def adjustment(self, name: str) -> float:
        return self.adjustments.get(name, 1.0)


class IndicatorVote(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    direction: Direction
    reason: str = ""


class ConfluenceComponents(BaseModel):
    model_config = ConfigDict(frozen=True)

    indicator_agreement: float = Field(ge=0.0, le=1.0)
    pattern_strength: float = Field(ge=0.0, le=1.0)
    volume_confirmation: float = Field(ge=0.0, le=1.0)
    timeframe_consensus: float = Field(ge=0.0, le=1.0)


class ConfluenceScore(BaseModel):
    model_config = ConfigDict(frozen=True)

    value: float = Field(ge=0.0, le=100.0)
    components: ConfluenceComponents
    majority: Direction = Direction.NEUTRAL


class Signal(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    symbol: str
    timeframe: str
    direction: Direction
    confidence: float = Field(ge=0.0, le=100.0)
    entry_price: Decimal
    stop_loss: Decimal
    take_profit: Decimal
    atr: Decimal
    reasoning: tuple[str, ...] = ()
    regime: MarketRegime
    confluence: ConfluenceScore
    votes: tuple[IndicatorVote, ...] = ()
    weighted_score: float = 0.0
    data_quality: float = 1.0
    timestamp: datetime


class RiskAssessment(BaseModel):
    model_config = ConfigDict(frozen=True)

    signal_id: str
    symbol: str
    timeframe: str
    expected_return: float
    value_at_risk_95: float
    sharpe_ratio: float | None = None  # None when outcome stddev is ~0
    max_drawdown: float
    win_probability: float = Field(ge=0.0, le=1.0)
    risk_level: RiskLevel
    confidence_interval: tuple[float, float]
    volatility: float = 0.0
    iterations: int
    horizon_bars: int
    seed: int


class CycleReport(BaseModel):
    total: int = 0
    ready: int = 0
    insufficient_data: int = 0
    errored: int = 0
    started_at: datetime | None = None
    duration_ms: int = 0


class UnitResult(BaseModel):
    """Outcome of one (symbol, timeframe) in the latest completed cycle."""

    model_config = ConfigDict(frozen=True)

    symbol: str
    timeframe: str
    state: UnitState
    signal: Signal | None = None
    reason: str = ""
