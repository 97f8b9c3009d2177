"""Monte Carlo risk engine — forward price-path simulation for a Signal.

Paths follow geometric Brownian motion parameterized by the mean and
volatility of historical log returns. Each path exits at the first touch of
stop or target, or at the horizon's terminal price. Simulation is seeded from
(symbol, timeframe, cycle timestamp): identical inputs reproduce identical
results, successive cycles differ.

Paths are split into chunks that run on a dedicated bounded thread pool; each
chunk draws from its own child SeedSequence, so the result does not depend on
scheduling order.
"""

import hashlib
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime

import numpy as np
import pandas as pd
from loguru import logger

from signal_agent.config import RiskConfig
from signal_agent.errors import InsufficientDataError, InvalidInputError
from signal_agent.models.market import Direction, PriceSeries
from signal_agent.models.signal import RiskAssessment, RiskLevel, Signal


def historical_returns(series: PriceSeries) -> np.ndarray:
    """Close-to-close simple returns, oldest first."""
    closes = pd.Series([float(c) for c in series.closes], dtype="float64")
    return closes.pct_change().dropna().to_numpy()


def cycle_seed(symbol: str, timeframe: str, timestamp: datetime) -> int:
    """Stable 64-bit seed (independent of PYTHONHASHSEED)."""
    key = f"{symbol}|{timeframe}|{timestamp.isoformat()}".encode()
    return int.from_bytes(hashlib.sha256(key).digest()[:8], "big")


@dataclass
class PathBatch:
    outcomes: np.ndarray   # direction-signed return at exit
    drawdowns: np.ndarray  # max peak-to-trough decline of position equity
    wins: np.ndarray       # target touched before stop


def simulate_paths(
    entry: float,
    stop: float,
    target: float,
    sign: int,
    mu: float,
    sigma: float,
    steps: int,
    n_paths: int,
    seed: np.random.SeedSequence | int,
) -> PathBatch:
    rng = np.random.default_rng(seed)
    z = rng.standard_normal((n_paths, steps))
    prices = entry * np.exp(np.cumsum(mu + sigma * z, axis=1))

    if sign > 0:
        hit_stop = prices <= stop
        hit_target = prices >= target
    else:
        hit_stop = prices >= stop
        hit_target = prices <= target

    stop_idx = np.where(hit_stop.any(axis=1), hit_stop.argmax(axis=1), steps)
    target_idx = np.where(hit_target.any(axis=1), hit_target.argmax(axis=1), steps)
    wins = target_idx < stop_idx
    losses = stop_idx < target_idx
    exit_idx = np.minimum(stop_idx, target_idx)

    exit_price = np.where(wins, target, np.where(losses, stop, prices[:, -1]))
    outcomes = sign * (exit_price - entry) / entry

    # Position equity per step, frozen at the exit level once a barrier is touched
    equity = 1.0 + sign * (prices - entry) / entry
    step_ids = np.arange(steps)[None, :]
    equity = np.where(step_ids >= exit_idx[:, None], (1.0 + outcomes)[:, None], equity)
    equity = np.maximum(equity, 0.0)
    equity = np.concatenate([np.ones((n_paths, 1)), equity], axis=1)
    peaks = np.maximum.accumulate(equity, axis=1)
    drawdowns = ((peaks - equity) / peaks).max(axis=1)

    return PathBatch(outcomes=outcomes, drawdowns=drawdowns, wins=wins)


def risk_level_for(volatility: float, var95: float, sharpe: float | None, cutoffs: dict[str, float]) -> RiskLevel:
    """Bucket by max(horizon volatility, loss at VaR95)."""
    if sharpe is None:
        return RiskLevel.UNDEFINED
    magnitude = max(volatility, -var95)
    for name in ("VERY_LOW", "LOW", "MODERATE", "HIGH"):
        if magnitude < cutoffs[name]:
            return RiskLevel(name)
    return RiskLevel.VERY_HIGH


class MonteCarloRiskEngine:
    def __init__(self, config: RiskConfig | None = None):
        self.config = config or RiskConfig()
        self._pool = ThreadPoolExecutor(
            max_workers=self.config.workers, thread_name_prefix="montecarlo"
        )

    def close(self):
        self._pool.shutdown(wait=True)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def assess(
        self,
        signal: Signal,
        returns: np.ndarray | list[float],
        seed: int | None = None,
    ) -> RiskAssessment:
        """Simulate `iterations` paths for a directional signal."""
        if signal.direction is Direction.NEUTRAL:
            raise InvalidInputError(f"{signal.id}: NEUTRAL signals carry no position to assess")

        r = np.asarray(returns, dtype="float64")
        if r.size < 2:
            raise InsufficientDataError(f"{signal.id}: need at least 2 historical returns, got {r.size}")
        if not np.all(np.isfinite(r)) or np.any(r <= -1.0):
            raise InvalidInputError(f"{signal.id}: historical returns contain invalid values")

        log_r = np.log1p(r)
        mu = float(log_r.mean())
        sigma = float(log_r.std(ddof=1))

        cfg = self.config
        steps = cfg.horizon(signal.timeframe)
        n = cfg.iterations
        if seed is None:
            seed = cycle_seed(signal.symbol, signal.timeframe, signal.timestamp)

        chunk = max(1, min(cfg.chunk_size, n))
        sizes = [chunk] * (n // chunk)
        if n % chunk:
            sizes.append(n % chunk)
        children = np.random.SeedSequence(seed).spawn(len(sizes))

        entry = float(signal.entry_price)
        stop = float(signal.stop_loss)
        target = float(signal.take_profit)
        sign = signal.direction.sign

        batches = list(self._pool.map(
            lambda args: simulate_paths(entry, stop, target, sign, mu, sigma, steps, args[0], args[1]),
            zip(sizes, children),
        ))

        outcomes = np.concatenate([b.outcomes for b in batches])
        drawdowns = np.concatenate([b.drawdowns for b in batches])
        wins = np.concatenate([b.wins for b in batches])

        expected = float(outcomes.mean())
        std = float(outcomes.std())
        var95 = float(np.percentile(outcomes, 5))
        sharpe = expected / std if std > cfg.min_std else None
        margin = 1.96 * std / math.sqrt(n)
        horizon_vol = sigma * math.sqrt(steps)
        level = risk_level_for(horizon_vol, var95, sharpe, cfg.risk_cutoffs)

        assessment = RiskAssessment(
            signal_id=signal.id,
            symbol=signal.symbol,
            timeframe=signal.timeframe,
            expected_return=round(expected, 6),
            value_at_risk_95=round(var95, 6),
            sharpe_ratio=round(sharpe, 6) if sharpe is not None else None,
            max_drawdown=round(float(drawdowns.mean()), 6),
            win_probability=round(float(wins.mean()), 6),
            risk_level=level,
            confidence_interval=(round(expected - margin, 6), round(expected + margin, 6)),
            volatility=round(horizon_vol, 6),
            iterations=n,
            horizon_bars=steps,
            seed=seed,
        )
        logger.debug(
            f"Risk {signal.symbol}/{signal.timeframe}: E[r]={expected:.4f} VaR95={var95:.4f} "
            f"win={assessment.win_probability:.2f} level={level.value}"
        )
        return assessment
