import math
import sys

sys.path.insert(0, '.')

from analytics.performance import calculate_metrics, format_report, grade, max_drawdown
from tests.fakes import make_trade

import numpy as np


def test_metrics_for_mixed_session():
    metrics = calculate_metrics([make_trade(0.09, 'X'), make_trade(-0.06, 'Y')])

    assert metrics.total_trades == 2
    assert metrics.winning_trades == 1
    assert metrics.losing_trades == 1
    assert metrics.win_rate == 0.5
    assert abs(metrics.total_pnl - 0.03) < 1e-9
    assert abs(metrics.profit_factor - 1.5) < 1e-9
    assert abs(metrics.max_drawdown - 0.06) < 1e-9
    assert abs(metrics.sharpe_ratio - 0.2 * math.sqrt(365)) < 1e-6
    assert abs(metrics.score - 79.5) < 1e-6
    assert grade(metrics.score) == 'good'


def test_all_winners_have_unbounded_profit_factor():
    metrics = calculate_metrics([make_trade(0.05), make_trade(0.05, trade_id='b')])
    assert math.isinf(metrics.profit_factor)
    assert metrics.sharpe_ratio == 0.0
    assert metrics.to_dict()['profit_factor'] is None
    assert 'pf=inf' in format_report(metrics)


def test_empty_session():
    metrics = calculate_metrics([])
    assert metrics.total_trades == 0
    assert metrics.score == 0.0
    assert grade(metrics.score) == 'poor'


def test_drawdown_counts_losses_from_start():
    assert abs(max_drawdown(np.array([-0.02, -0.03, 0.01])) - 0.05) < 1e-9
    assert max_drawdown(np.array([0.01, 0.02])) == 0.0
