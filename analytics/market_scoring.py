"""Per-instrument opportunity scoring.

Turns a raw ``InstrumentQuote`` into ``MarketSignals``: momentum, funding,
volume, liquidity and volatility classifications plus a signed composite
score in [-100, 100]. The thresholds are tuning values; what matters is that
the tiers stay monotonic and the outputs stay within their documented bounds.
"""
from typing import Optional, Sequence

import numpy as np

from strategy.models import (
    CompositeSignal,
    FundingSignal,
    InstrumentQuote,
    LiquiditySignal,
    MarketSignals,
    MarketSnapshot,
    MomentumSignal,
    TREND_DECREASING,
    TREND_INCREASING,
    TREND_STABLE,
    URGENCY_IMMEDIATE,
    URGENCY_SKIP,
    URGENCY_SOON,
    URGENCY_WAIT,
    VolatilitySignal,
    VolumeSignal,
)


MOMENTUM_WEIGHT = 0.5
BASE_CONFIDENCE = 55.0
MAX_CONFIDENCE = 95.0

STRONG_VOLUME_USD = 20_000_000
MODERATE_VOLUME_USD = 5_000_000
LOW_SLIPPAGE_VOLUME_USD = 30_000_000
MIN_TRADEABLE_VOLUME_USD = 500_000
MIN_TRADEABLE_OPEN_INTEREST_USD = 200_000

VOLATILITY_TREND_LOOKBACK = 5
VOLATILITY_TREND_THRESHOLD = 0.2
MOMENTUM_SHIFT_LOOKBACK = 5


def analyze_momentum(quote: InstrumentQuote) -> MomentumSignal:
    change = quote.change_pct_24h
    abs_change = abs(change)
    if change > 0.5:
        direction = 'bullish'
    elif change < -0.5:
        direction = 'bearish'
    else:
        direction = 'neutral'

    if abs_change > 4:
        acceleration = 'increasing'
    elif abs_change > 1.5:
        acceleration = 'stable'
    else:
        acceleration = 'decreasing'

    return MomentumSignal(direction=direction, strength=min(100.0, abs_change * 15), acceleration=acceleration)


def analyze_funding(quote: InstrumentQuote) -> FundingSignal:
    rate_pct = quote.funding_rate * 100
    abs_rate = abs(rate_pct)
    change = quote.change_pct_24h

    if rate_pct > 0.005:
        bias = 'long'
    elif rate_pct < -0.005:
        bias = 'short'
    else:
        bias = 'neutral'

    if abs_rate > 0.05:
        extremity = 'extreme'
    elif abs_rate > 0.02:
        extremity = 'elevated'
    else:
        extremity = 'normal'

    # Crowded longs paying while price falls (or the mirror) is a contrarian setup;
    # cheap carry with a strong move is trend-follow.
    if rate_pct > 0.03 and change < -1:
        opportunity = 'contrarian_short'
    elif rate_pct < -0.03 and change > 1:
        opportunity = 'contrarian_long'
    elif abs_rate < 0.025 and abs(change) > 2:
        opportunity = 'trend_follow'
    else:
        opportunity = 'none'

    return FundingSignal(bias=bias, extremity=extremity, opportunity=opportunity)


def analyze_volume(quote: InstrumentQuote) -> VolumeSignal:
    volume = quote.volume_24h
    if volume > STRONG_VOLUME_USD:
        tier = 'strong'
    elif volume > MODERATE_VOLUME_USD:
        tier = 'moderate'
    else:
        tier = 'weak'

    volume_to_oi = volume / quote.open_interest if quote.open_interest > 0 else 0.0
    if volume_to_oi > 1.5:
        trend = 'increasing'
    elif volume_to_oi < 0.5:
        trend = 'decreasing'
    else:
        trend = 'stable'

    conviction = min(100.0, (volume / 10_000_000) * 50 + volume_to_oi * 25)
    return VolumeSignal(tier=tier, trend=trend, conviction=conviction)


def analyze_liquidity(quote: InstrumentQuote) -> LiquiditySignal:
    oi_score = min(50.0, (quote.open_interest / 50_000_000) * 50)
    volume_score = min(50.0, (quote.volume_24h / 30_000_000) * 50)

    if quote.volume_24h > LOW_SLIPPAGE_VOLUME_USD:
        slippage = 'low'
    elif quote.volume_24h > MODERATE_VOLUME_USD:
        slippage = 'medium'
    else:
        slippage = 'high'

    tradeable = (
        quote.volume_24h > MIN_TRADEABLE_VOLUME_USD
        and quote.open_interest > MIN_TRADEABLE_OPEN_INTEREST_USD
    )
    return LiquiditySignal(score=oi_score + volume_score, slippage=slippage, tradeable=tradeable)


def analyze_volatility(quote: InstrumentQuote) -> VolatilitySignal:
    abs_change = abs(quote.change_pct_24h)
    if abs_change > 8:
        regime, hold = 'extreme', 30
    elif abs_change > 4:
        regime, hold = 'high', 60
    elif abs_change > 1.5:
        regime, hold = 'medium', 90
    else:
        regime, hold = 'low', 120
    return VolatilitySignal(regime=regime, implied_move=abs_change / 6, optimal_hold_minutes=hold)


def composite_label(score: float) -> str:
    if score > 60:
        return 'strong_long'
    if score > 35:
        return 'long'
    if score > 15:
        return 'weak_long'
    if score > -15:
        return 'neutral'
    if score > -35:
        return 'weak_short'
    if score > -60:
        return 'short'
    return 'strong_short'


def calculate_composite(
    momentum: MomentumSignal,
    funding: FundingSignal,
    volume: VolumeSignal,
    liquidity: LiquiditySignal,
    volatility: VolatilitySignal,
) -> CompositeSignal:
    score = 0.0
    confidence = BASE_CONFIDENCE

    if momentum.direction == 'bullish':
        score += momentum.strength * MOMENTUM_WEIGHT
    elif momentum.direction == 'bearish':
        score -= momentum.strength * MOMENTUM_WEIGHT

    if funding.opportunity == 'contrarian_long':
        score += 20
        confidence += 5
    elif funding.opportunity == 'contrarian_short':
        score -= 20
        confidence += 5
    elif funding.opportunity == 'trend_follow':
        score += 15 if momentum.direction == 'bullish' else -15
        confidence += 8

    if volume.tier == 'strong':
        score *= 1.15
        confidence += 10
    elif volume.tier == 'weak':
        score *= 0.85
        confidence -= 10

    if not liquidity.tradeable:
        score = 0.0
        confidence = 0.0
    elif liquidity.slippage == 'high':
        confidence -= 15

    if volatility.regime == 'extreme':
        confidence -= 10

    score = max(-100.0, min(100.0, score))
    confidence = max(0.0, min(MAX_CONFIDENCE, confidence))

    abs_score = abs(score)
    if not liquidity.tradeable or abs_score < 20:
        urgency = URGENCY_SKIP
    elif abs_score > 50 and confidence > 70:
        urgency = URGENCY_IMMEDIATE
    elif abs_score > 35 and confidence > 60:
        urgency = URGENCY_SOON
    else:
        urgency = URGENCY_WAIT

    return CompositeSignal(label=composite_label(score), score=score, confidence=confidence, urgency=urgency)


def score_market(quote: InstrumentQuote) -> MarketSignals:
    momentum = analyze_momentum(quote)
    funding = analyze_funding(quote)
    volume = analyze_volume(quote)
    liquidity = analyze_liquidity(quote)
    volatility = analyze_volatility(quote)
    composite = calculate_composite(momentum, funding, volume, liquidity, volatility)
    return MarketSignals(
        momentum=momentum,
        funding=funding,
        volume=volume,
        liquidity=liquidity,
        volatility=volatility,
        composite=composite,
    )


def return_volatility(prices: Sequence[float]) -> float:
    """Population standard deviation of simple returns."""
    if len(prices) < 2:
        return 0.0
    series = np.asarray(prices, dtype=float)
    returns = np.diff(series) / series[:-1]
    return float(np.std(returns))


def classify_volatility_trend(history: Sequence[MarketSnapshot]) -> str:
    lookback = VOLATILITY_TREND_LOOKBACK
    if len(history) < lookback * 2:
        return TREND_STABLE
    recent = [s.price for s in history[-lookback:]]
    older = [s.price for s in history[-lookback * 2:-lookback]]
    recent_vol = return_volatility(recent)
    older_vol = return_volatility(older)
    if older_vol == 0:
        return TREND_INCREASING if recent_vol > 0 else TREND_STABLE
    change = (recent_vol - older_vol) / older_vol
    if change > VOLATILITY_TREND_THRESHOLD:
        return TREND_INCREASING
    if change < -VOLATILITY_TREND_THRESHOLD:
        return TREND_DECREASING
    return TREND_STABLE


def detect_momentum_shift(quote: InstrumentQuote, history: Sequence[MarketSnapshot]) -> bool:
    if len(history) < MOMENTUM_SHIFT_LOOKBACK:
        return False
    reference: Optional[MarketSnapshot] = history[-MOMENTUM_SHIFT_LOOKBACK]
    current_direction = 1 if quote.change_pct_24h > 0 else -1
    previous_direction = 1 if reference.quote.change_pct_24h > 0 else -1
    return current_direction != previous_direction
