from decimal import Decimal

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Voting/weighted indicator names. "atr" and "volume" carry weights but cast no vote.
INDICATOR_NAMES = ("macd", "ema", "rsi", "bollinger", "stochastic", "sma", "atr", "volume")

TIMEFRAMES = ["1m", "5m", "15m", "30m", "1h", "4h", "1d", "3d", "1w", "1M"]

# Map timeframe strings to seconds for gap detection
TF_SECONDS = {
    "1m": 60,
    "5m": 300,
    "15m": 900,
    "30m": 1800,
    "1h": 3600,
    "4h": 14400,
    "1d": 86400,
    "3d": 259200,
    "1w": 604800,
    "1M": 2592000,
}

DEFAULT_SYMBOLS = [
    "BTC/USDT", "ETH/USDT", "BNB/USDT", "SOL/USDT", "XRP/USDT",
    "ADA/USDT", "AVAX/USDT", "DOGE/USDT", "DOT/USDT", "LINK/USDT",
    "MATIC/USDT", "LTC/USDT", "UNI/USDT", "ATOM/USDT", "FIL/USDT",
    "ICP/USDT", "TRX/USDT", "ETC/USDT", "XLM/USDT", "BCH/USDT",
    "NEAR/USDT", "APT/USDT", "ARB/USDT", "OP/USDT", "INJ/USDT",
    "AAVE/USDT", "ALGO/USDT", "VET/USDT", "HBAR/USDT", "SAND/USDT",
    "MANA/USDT", "AXS/USDT", "EGLD/USDT", "THETA/USDT", "XTZ/USDT",
    "EOS/USDT", "FTM/USDT", "GRT/USDT", "RUNE/USDT", "KAVA/USDT",
    "CRV/USDT", "MKR/USDT", "SNX/USDT", "COMP/USDT", "ZEC/USDT",
    "DASH/USDT", "NEO/USDT", "CHZ/USDT", "ENJ/USDT", "SUI/USDT",
]


class IndicatorParams(BaseModel):
    rsi_period: int = 14
    macd_fast: int = 12
    macd_slow: int = 26
    macd_signal: int = 9
    bollinger_period: int = 20
    bollinger_k: Decimal = Decimal("2")
    atr_period: int = 14
    stochastic_period: int = 14
    stochastic_smooth: int = 3
    sma_period: int = 50
    ema_short: int = 12
    ema_medium: int = 26
    ema_long: int = 50
    volume_period: int = 20


class RegimeConfig(BaseModel):
    """Thresholds for BULL/BEAR/SIDEWAYS classification.

    trend_saturation: average EMA divergence (fraction) that maps to |trend_strength| = 1.
    volatility_saturation: ATR/price ratio that maps to volatility = 1.
    """
    bull_threshold: float = 0.7
    bear_threshold: float = -0.7
    max_volatility: float = 0.3
    trend_saturation: float = 0.05
    volatility_saturation: float = 0.10
    bull_confidence: float = 0.87
    bear_confidence: float = 0.89
    sideways_confidence: float = 0.82
    fallback_confidence: float = 0.3
    adjustments: dict[str, dict[str, float]] = Field(default_factory=lambda: {
        "BULL": {
            "macd": 1.2, "ema": 1.15, "rsi": 0.9, "bollinger": 1.1,
            "stochastic": 0.8, "sma": 1.1, "atr": 1.0, "volume": 1.2,
        },
        "BEAR": {
            "macd": 1.2, "ema": 1.15, "rsi": 0.9, "bollinger": 1.1,
            "stochastic": 0.8, "sma": 1.1, "atr": 1.1, "volume": 1.1,
        },
        "SIDEWAYS": {
            "macd": 0.8, "ema": 0.8, "rsi": 1.3, "bollinger": 1.2,
            "stochastic": 1.4, "sma": 0.9, "atr": 1.0, "volume": 1.0,
        },
    })

    @field_validator("adjustments")
    @classmethod
    def _multipliers_positive(cls, v: dict[str, dict[str, float]]) -> dict[str, dict[str, float]]:
        for regime, table in v.items():
            for name, mult in table.items():
                if mult <= 0:
                    raise ValueError(f"Adjustment for {regime}/{name} must be > 0, got {mult}")
        return v


class WeightConfig(BaseModel):
    min_weight: float = 0.02
    max_weight: float = 0.35
    step_size: float = 0.05
    history_size: int = 10
    fallback_weight: float = 0.10
    # Research-based defaults; renormalized at consumption time
    defaults: dict[str, float] = Field(default_factory=lambda: {
        "macd": 0.24,
        "ema": 0.20,
        "rsi": 0.16,
        "bollinger": 0.14,
        "stochastic": 0.12,
        "sma": 0.08,
        "atr": 0.04,
        "volume": 0.02,
    })


class SynthesisConfig(BaseModel):
    long_threshold: float = 0.20
    short_threshold: float = -0.20
    quality_threshold: float = 60.0
    rejected_confidence: float = 25.0
    max_confidence: float = 95.0
    # (stop multiple, target multiple) of ATR per timeframe
    atr_multiples: dict[str, tuple[float, float]] = Field(default_factory=lambda: {
        "1m": (1.5, 3.0),
        "5m": (1.75, 3.5),
        "15m": (2.0, 4.0),
        "30m": (2.25, 4.5),
        "1h": (2.5, 5.0),
        "4h": (3.0, 6.0),
        "1d": (4.0, 8.0),
        "3d": (4.5, 9.0),
        "1w": (5.0, 10.0),
        "1M": (6.0, 12.0),
    })
    default_atr_multiple: tuple[float, float] = (2.0, 4.0)
    pattern_weights: dict[str, float] = Field(default_factory=lambda: {
        "trend_continuation": 0.28,
        "support_resistance_break": 0.26,
        "bollinger_breakout": 0.24,
        "engulfing_pattern": 0.22,
        "flag_pennant": 0.20,
        "doji_reversal": 0.18,
        "hammer_hanging_man": 0.16,
    })
    default_pattern_weight: float = 0.15
    # Pattern strength when no patterns were supplied for the unit
    baseline_pattern_strength: float = Field(default=0.1, ge=0.0, le=1.0)

    def atr_multiple(self, timeframe: str) -> tuple[float, float]:
        return self.atr_multiples.get(timeframe, self.default_atr_multiple)


class RiskConfig(BaseModel):
    iterations: int = Field(default=2000, ge=1000)
    chunk_size: int = 500
    workers: int = 4
    # Simulated bars per path
    horizon_bars: dict[str, int] = Field(default_factory=lambda: {
        "1m": 60,
        "5m": 48,
        "15m": 32,
        "30m": 48,
        "1h": 24,
        "4h": 30,
        "1d": 30,
        "3d": 20,
        "1w": 12,
        "1M": 6,
    })
    default_horizon_bars: int = 24
    # Upper bounds of max(horizon volatility, -VaR95), as fractions
    risk_cutoffs: dict[str, float] = Field(default_factory=lambda: {
        "VERY_LOW": 0.01,
        "LOW": 0.025,
        "MODERATE": 0.05,
        "HIGH": 0.10,
    })
    min_std: float = 1e-12

    def horizon(self, timeframe: str) -> int:
        return self.horizon_bars.get(timeframe, self.default_horizon_bars)


class Settings(BaseSettings):
    # Universe
    symbols: list[str] = Field(default_factory=lambda: list(DEFAULT_SYMBOLS))
    timeframes: list[str] = Field(default_factory=lambda: list(TIMEFRAMES))
    history_bars: int = 200

    # Scheduling
    cycle_interval_seconds: float = 240.0  # 4 minutes

    # Market data
    binance_base_url: str = "https://api.binance.com"
    fetch_concurrency: int = 8
    fetch_retries: int = 3
    fetch_backoff_seconds: float = 0.5
    # Longest single wait between retries; a longer Retry-After ends the retries
    fetch_max_backoff_seconds: float = 30.0
    fetch_timeout_seconds: float = 10.0
    cache_ttl_seconds: float = 60.0

    # Database
    db_path: str = "data/signal_agent.db"
    outcome_history_limit: int = 100

    # Logging
    log_level: str = "INFO"
    log_file: str = "data/signal_agent.log"

    # Feedback
    signal_registry_size: int = 5000

    indicators: IndicatorParams = Field(default_factory=IndicatorParams)
    regime: RegimeConfig = Field(default_factory=RegimeConfig)
    weights: WeightConfig = Field(default_factory=WeightConfig)
    synthesis: SynthesisConfig = Field(default_factory=SynthesisConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="SIGNAL_AGENT_",
        env_nested_delimiter="__",
        extra="ignore",
    )


settings = Settings()
