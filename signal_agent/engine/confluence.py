"""Confluence analysis — how strongly independent evidence agrees on direction.

score = 100 * (0.40 * indicator_agreement
             + 0.25 * pattern_strength
             + 0.20 * volume_confirmation
             + 0.15 * timeframe_consensus)

Every sub-score is a pure function of its inputs. There is no random term.
"""

from decimal import Decimal
from typing import Iterable, Mapping

from loguru import logger

from signal_agent.config import SynthesisConfig
from signal_agent.models.indicators import IndicatorSet
from signal_agent.models.market import Direction, Pattern
from signal_agent.models.signal import (
    ConfluenceComponents,
    ConfluenceScore,
    IndicatorVote,
    MarketRegime,
)

COMPONENT_WEIGHTS = {
    "indicator_agreement": 0.40,
    "pattern_strength": 0.25,
    "volume_confirmation": 0.20,
    "timeframe_consensus": 0.15,
}

RSI_OVERSOLD = Decimal(30)
RSI_OVERBOUGHT = Decimal(70)
STOCH_OVERSOLD = Decimal(20)
STOCH_OVERBOUGHT = Decimal(80)

NEUTRAL_SCORE = 0.5


# --- Directional votes ---

def indicator_votes(ind: IndicatorSet) -> list[IndicatorVote]:
    """One vote per available directional indicator (NEUTRAL when no clear signal)."""
    votes: list[IndicatorVote] = []
    close = ind.close

    if ind.rsi is not None:
        if ind.rsi <= RSI_OVERSOLD:
            votes.append(IndicatorVote(name="rsi", direction=Direction.LONG, reason=f"RSI oversold ({ind.rsi:.1f})"))
        elif ind.rsi >= RSI_OVERBOUGHT:
            votes.append(IndicatorVote(name="rsi", direction=Direction.SHORT, reason=f"RSI overbought ({ind.rsi:.1f})"))
        else:
            votes.append(IndicatorVote(name="rsi", direction=Direction.NEUTRAL, reason=f"RSI neutral ({ind.rsi:.1f})"))

    if ind.macd is not None:
        hist = ind.macd.histogram
        if hist > 0:
            votes.append(IndicatorVote(name="macd", direction=Direction.LONG, reason="MACD bullish: histogram positive"))
        elif hist < 0:
            votes.append(IndicatorVote(name="macd", direction=Direction.SHORT, reason="MACD bearish: histogram negative"))
        else:
            votes.append(IndicatorVote(name="macd", direction=Direction.NEUTRAL, reason="MACD flat"))

    if ind.bollinger is not None:
        bb = ind.bollinger
        if close > bb.upper:
            votes.append(IndicatorVote(name="bollinger", direction=Direction.LONG, reason="Price broke above upper Bollinger band"))
        elif close < bb.lower:
            votes.append(IndicatorVote(name="bollinger", direction=Direction.SHORT, reason="Price broke below lower Bollinger band"))
        else:
            votes.append(IndicatorVote(name="bollinger", direction=Direction.NEUTRAL, reason="Price inside Bollinger bands"))

    if ind.stochastic is not None:
        k, d = ind.stochastic.k, ind.stochastic.d
        if k <= STOCH_OVERSOLD and d <= STOCH_OVERSOLD and k > d:
            votes.append(IndicatorVote(name="stochastic", direction=Direction.LONG, reason=f"Stochastic bullish cross in oversold zone (%K {k:.1f})"))
        elif k >= STOCH_OVERBOUGHT and d >= STOCH_OVERBOUGHT and k < d:
            votes.append(IndicatorVote(name="stochastic", direction=Direction.SHORT, reason=f"Stochastic bearish cross in overbought zone (%K {k:.1f})"))
        else:
            votes.append(IndicatorVote(name="stochastic", direction=Direction.NEUTRAL, reason=f"Stochastic neutral (%K {k:.1f})"))

    if ind.sma is not None:
        if close > ind.sma:
            votes.append(IndicatorVote(name="sma", direction=Direction.LONG, reason="Price above SMA trend baseline"))
        elif close < ind.sma:
            votes.append(IndicatorVote(name="sma", direction=Direction.SHORT, reason="Price below SMA trend baseline"))
        else:
            votes.append(IndicatorVote(name="sma", direction=Direction.NEUTRAL, reason="Price at SMA trend baseline"))

    if ind.ema_short is not None and ind.ema_medium is not None:
        if ind.ema_short > ind.ema_medium:
            votes.append(IndicatorVote(name="ema", direction=Direction.LONG, reason="Fast EMA above slow EMA"))
        elif ind.ema_short < ind.ema_medium:
            votes.append(IndicatorVote(name="ema", direction=Direction.SHORT, reason="Fast EMA below slow EMA"))
        else:
            votes.append(IndicatorVote(name="ema", direction=Direction.NEUTRAL, reason="Fast and slow EMA converged"))

    return votes


def majority_direction(votes: Iterable[IndicatorVote]) -> Direction:
    """Direction with more non-neutral votes; ties and no votes are NEUTRAL."""
    longs = shorts = 0
    for v in votes:
        if v.direction is Direction.LONG:
            longs += 1
        elif v.direction is Direction.SHORT:
            shorts += 1
    if longs > shorts:
        return Direction.LONG
    if shorts > longs:
        return Direction.SHORT
    return Direction.NEUTRAL


# --- Sub-scores ---

def indicator_agreement(votes: list[IndicatorVote], majority: Direction) -> float:
    """Fraction of cast (non-neutral) votes matching the majority."""
    cast = [v for v in votes if v.direction is not Direction.NEUTRAL]
    if not cast:
        return 0.0
    if majority is Direction.NEUTRAL:
        return NEUTRAL_SCORE
    return sum(1 for v in cast if v.direction is majority) / len(cast)


def pattern_strength(
    patterns: list[Pattern],
    majority: Direction,
    type_weights: Mapping[str, float],
    default_weight: float,
    baseline: float = 0.1,
) -> float:
    """Type-weighted confidence of patterns that agree with the majority.

    No patterns at all scores `baseline`; a neutral majority scores 0.
    """
    if majority is Direction.NEUTRAL:
        return 0.0
    if not patterns:
        return baseline
    total = 0.0
    confirmed = 0.0
    for p in patterns:
        w = type_weights.get(p.type, default_weight)
        total += w
        if p.direction is majority:
            confirmed += w * p.confidence
    if total <= 0:
        return 0.0
    return min(1.0, confirmed / total)


def volume_confirmation(ind: IndicatorSet, majority: Direction) -> float:
    if ind.volume is None or majority is Direction.NEUTRAL:
        return NEUTRAL_SCORE
    ratio = ind.volume.ratio
    if ratio >= Decimal("1.5"):
        return 1.0
    if ratio >= Decimal("1.2"):
        return 0.8
    if ratio >= 1:
        return 0.6
    return 0.3


def timeframe_consensus(majority: Direction, peer_directions: Iterable[Direction]) -> float:
    """Fraction of other timeframes (same symbol, same cycle) agreeing with `majority`."""
    peers = list(peer_directions)
    if not peers or majority is Direction.NEUTRAL:
        return NEUTRAL_SCORE
    return sum(1 for d in peers if d is majority) / len(peers)


class ConfluenceEngine:
    def __init__(self, config: SynthesisConfig | None = None):
        self.config = config or SynthesisConfig()

    def score(
        self,
        indicators: IndicatorSet,
        patterns: list[Pattern],
        regime: MarketRegime,
        peer_directions: Iterable[Direction] = (),
        votes: list[IndicatorVote] | None = None,
    ) -> ConfluenceScore:
        if votes is None:
            votes = indicator_votes(indicators)
        majority = majority_direction(votes)

        components = ConfluenceComponents(
            indicator_agreement=indicator_agreement(votes, majority),
            pattern_strength=pattern_strength(
                patterns,
                majority,
                self.config.pattern_weights,
                self.config.default_pattern_weight,
                self.config.baseline_pattern_strength,
            ),
            volume_confirmation=volume_confirmation(indicators, majority),
            timeframe_consensus=timeframe_consensus(majority, peer_directions),
        )
        raw = sum(getattr(components, name) * w for name, w in COMPONENT_WEIGHTS.items())
        value = round(max(0.0, min(100.0, raw * 100)), 4)

        logger.debug(
            f"Confluence {indicators.symbol}/{indicators.timeframe}: {value:.1f} "
            f"(majority={majority.value}, regime={regime.type.value})"
        )
        return ConfluenceScore(value=value, components=components, majority=majority)
