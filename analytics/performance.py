"""Aggregate performance scoring for closed trades.

All P&L figures are leverage-adjusted return fractions as carried by
``ClosedTrade.pnl``; the composite score maps them onto 0-100.
"""
import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, Sequence

import numpy as np

from strategy.models import ClosedTrade


TRADING_DAYS = 365


@dataclass(frozen=True)
class PerformanceMetrics:
    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0
    total_pnl: float = 0.0
    avg_pnl: float = 0.0
    avg_win: float = 0.0
    avg_loss: float = 0.0
    profit_factor: float = 0.0
    sharpe_ratio: float = 0.0
    max_drawdown: float = 0.0
    score: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        if math.isinf(self.profit_factor):
            data['profit_factor'] = None
        return data


def sharpe_ratio(returns: np.ndarray) -> float:
    if returns.size < 2:
        return 0.0
    std = float(np.std(returns))
    if std == 0:
        return 0.0
    return float(np.mean(returns)) / std * math.sqrt(TRADING_DAYS)


def max_drawdown(returns: np.ndarray) -> float:
    """Largest peak-to-trough fall of the cumulative P&L curve, starting from zero."""
    if returns.size == 0:
        return 0.0
    equity = np.concatenate(([0.0], np.cumsum(returns)))
    peaks = np.maximum.accumulate(equity)
    return float(np.max(peaks - equity))


def composite_score(win_rate: float, profit_factor: float, sharpe: float,
                    drawdown: float, total_pnl: float) -> float:
    win_rate_score = min(win_rate * 50, 30.0)
    pf_score = min(profit_factor / 3 * 25, 25.0)
    sharpe_score = min(max(sharpe, 0.0) / 2 * 25, 25.0)
    drawdown_score = max(20.0 - drawdown * 100, 0.0)
    pnl_score = min(max(total_pnl, 0.0) * 100, 10.0)
    return min(win_rate_score + pf_score + sharpe_score + drawdown_score + pnl_score, 100.0)


def calculate_metrics(trades: Sequence[ClosedTrade]) -> PerformanceMetrics:
    if not trades:
        return PerformanceMetrics()

    returns = np.array([t.pnl for t in trades], dtype=float)
    wins = returns[returns > 0]
    losses = returns[returns < 0]

    total_wins = float(wins.sum())
    total_losses = float(abs(losses.sum()))
    if total_losses > 0:
        profit_factor = total_wins / total_losses
    else:
        profit_factor = math.inf if total_wins > 0 else 0.0

    win_rate = wins.size / returns.size
    total_pnl = float(returns.sum())
    sharpe = sharpe_ratio(returns)
    drawdown = max_drawdown(returns)

    return PerformanceMetrics(
        total_trades=int(returns.size),
        winning_trades=int(wins.size),
        losing_trades=int(losses.size),
        win_rate=win_rate,
        total_pnl=total_pnl,
        avg_pnl=float(returns.mean()),
        avg_win=float(wins.mean()) if wins.size else 0.0,
        avg_loss=float(abs(losses.mean())) if losses.size else 0.0,
        profit_factor=profit_factor,
        sharpe_ratio=sharpe,
        max_drawdown=drawdown,
        score=composite_score(win_rate, profit_factor, sharpe, drawdown, total_pnl),
    )


def grade(score: float) -> str:
    if score >= 80:
        return 'excellent'
    if score >= 60:
        return 'good'
    if score >= 40:
        return 'fair'
    return 'poor'


def format_report(metrics: PerformanceMetrics) -> str:
    pf = 'inf' if math.isinf(metrics.profit_factor) else f"{metrics.profit_factor:.2f}"
    return (
        f"trades={metrics.total_trades} (W{metrics.winning_trades}/L{metrics.losing_trades}) "
        f"win_rate={metrics.win_rate * 100:.1f}% total={metrics.total_pnl * 100:+.2f}% "
        f"avg={metrics.avg_pnl * 100:+.2f}% pf={pf} sharpe={metrics.sharpe_ratio:.2f} "
        f"max_dd={metrics.max_drawdown * 100:.2f}% score={metrics.score:.1f}/100 ({grade(metrics.score)})"
    )
