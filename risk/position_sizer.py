from dataclasses import replace
from typing import Optional, Tuple
import logging

from config.settings import OrchestratorConfig
from strategy.inference import InferenceResult
from strategy.models import LONG, OpenPosition, MarketSignals, TREND_DECREASING, TREND_INCREASING


logger = logging.getLogger(__name__)

CONFIDENCE_BOUNDS = (50.0, 95.0)
TAKE_PROFIT_BOUNDS_PCT = (1.5, 5.0)
STOP_LOSS_BOUNDS_PCT = (0.8, 2.5)
HOLD_BOUNDS_MINUTES = (15, 180)

TRAIL_ACTIVATION_PNL_PCT = 2.0
TRAIL_DISTANCE_FRACTION = 0.5


def _clamp(value: float, bounds: Tuple[float, float]) -> float:
    low, high = bounds
    return max(low, min(high, value))


class RiskManager:
    def __init__(self, config: OrchestratorConfig):
        self.total_capital = config.total_capital
        self.max_position_fraction = config.max_position_fraction
        self.max_concurrent_positions = config.max_concurrent_positions
        self.max_leverage = config.max_leverage

    def clamp_analysis(self, analysis: InferenceResult) -> InferenceResult:
        """Pull any trade idea, inferred or heuristic, into the tradable ranges."""
        return replace(
            analysis,
            confidence=_clamp(analysis.confidence, CONFIDENCE_BOUNDS),
            take_profit_pct=_clamp(analysis.take_profit_pct, TAKE_PROFIT_BOUNDS_PCT),
            stop_loss_pct=_clamp(analysis.stop_loss_pct, STOP_LOSS_BOUNDS_PCT),
            hold_minutes=_clamp(analysis.hold_minutes, HOLD_BOUNDS_MINUTES),
        )

    def calculate_position_size(self, confidence: float, signals: MarketSignals) -> float:
        size_pct = 0.15
        if confidence > 85:
            size_pct = 0.30
        elif confidence > 80:
            size_pct = 0.25
        elif confidence > 75:
            size_pct = 0.20

        if signals.liquidity.slippage == 'high':
            size_pct *= 0.7

        max_size = self.total_capital * min(size_pct, self.max_position_fraction)
        per_position_max = self.total_capital / self.max_concurrent_positions
        return round(min(max_size, per_position_max), 2)

    def calculate_leverage(self, confidence: float, volatility_regime: str,
                           venue_max: Optional[int] = None) -> int:
        leverage = 2
        if confidence > 85:
            leverage = 5
        elif confidence > 80:
            leverage = 4
        elif confidence > 75:
            leverage = 3

        if volatility_regime == 'extreme':
            leverage -= 2
        elif volatility_regime == 'high':
            leverage -= 1

        cap = self.max_leverage if venue_max is None else min(self.max_leverage, venue_max)
        return max(1, min(leverage, cap))

    def calculate_hold_minutes(self, base_minutes: float, volatility_trend: str,
                               confidence: float) -> int:
        low, high = HOLD_BOUNDS_MINUTES
        hold = _clamp(base_minutes, HOLD_BOUNDS_MINUTES)
        if volatility_trend == TREND_INCREASING:
            hold = max(low, hold * 0.7)
        elif volatility_trend == TREND_DECREASING:
            hold = min(high, hold * 1.3)
        if confidence > 85:
            hold = min(high, hold * 1.2)
        return int(round(hold))

    def calculate_targets(self, entry_price: float, direction: str,
                          take_profit_pct: float, stop_loss_pct: float) -> Tuple[float, float]:
        if direction == LONG:
            return (
                entry_price * (1 + take_profit_pct / 100),
                entry_price * (1 - stop_loss_pct / 100),
            )
        return (
            entry_price * (1 - take_profit_pct / 100),
            entry_price * (1 + stop_loss_pct / 100),
        )

    def update_trail_stop(self, position: OpenPosition) -> Optional[float]:
        """Return a tighter trailing stop for a position in profit, or ``None``.

        The distance is half the original stop distance and the stop only moves
        in the position's favour.
        """
        if position.unrealized_pnl_pct <= TRAIL_ACTIVATION_PNL_PCT:
            return None
        distance = abs(position.entry_price - position.stop_loss_price) * TRAIL_DISTANCE_FRACTION
        current = position.trailing_stop_price
        if position.side == LONG:
            candidate = position.current_price - distance
            if current is None or candidate > current:
                return candidate
        else:
            candidate = position.current_price + distance
            if current is None or candidate < current:
                return candidate
        return None
