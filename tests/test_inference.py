import sys

import pytest

sys.path.insert(0, '.')

from strategy.inference import (
    InferenceContext,
    InferenceError,
    build_prompt,
    momentum_fallback,
    parse_result,
)
from tests.fakes import make_quote, make_snapshot


def test_parse_result_extracts_json_from_prose():
    content = (
        'Here is my view:\n'
        '{"action": "SHORT", "confidence": 81, "urgency": "IMMEDIATE", '
        '"takeProfitPercent": 3.2, "stopLossPercent": 1.4, '
        '"reasoning": "Funding crowded long", "optimalHoldMinutes": 40}\n'
        'Good luck.'
    )
    result = parse_result(content)
    assert result.direction == 'short'
    assert result.confidence == 81.0
    assert result.urgency == 'immediate'
    assert result.take_profit_pct == 3.2
    assert result.stop_loss_pct == 1.4
    assert result.hold_minutes == 40.0
    assert result.rationale == 'Funding crowded long'


def test_parse_result_defaults_and_unknown_urgency():
    result = parse_result('{"action": "long", "confidence": "77", "urgency": "later", '
                          '"takeProfitPercent": 2, "stopLossPercent": 1}')
    assert result.urgency == 'soon'
    assert result.hold_minutes == 60.0
    assert result.rationale == 'Signal detected'


@pytest.mark.parametrize('content', [
    '',
    'no json here',
    '{"action": "HOLD", "confidence": 80, "takeProfitPercent": 2, "stopLossPercent": 1}',
    '{"action": "LONG", "takeProfitPercent": 2, "stopLossPercent": 1}',
    '{"action": "LONG", "confidence": "high", "takeProfitPercent": 2, "stopLossPercent": 1}',
    '{"action": "LONG", confidence: 80}',
])
def test_parse_result_rejects_unusable_completions(content):
    with pytest.raises(InferenceError):
        parse_result(content)


def test_momentum_fallback_tiers():
    cases = [
        (1.2, None),
        (1.8, ('long', 72.0, 'wait', 2.5, 1.5, 30)),
        (-2.2, ('short', 75.0, 'soon', 3.0, 1.8, 45)),
        (2.6, ('long', 78.0, 'soon', 3.0, 1.8, 45)),
        (-3.5, ('short', 82.0, 'immediate', 3.5, 2.0, 60)),
    ]
    for change, expected in cases:
        quote = make_quote(change=change)
        result = momentum_fallback(quote, make_snapshot(quote).signals)
        if expected is None:
            assert result is None
            continue
        actual = (result.direction, result.confidence, result.urgency,
                  result.take_profit_pct, result.stop_loss_pct, result.hold_minutes)
        assert actual == expected


def test_fallback_rationale_mentions_move_and_composite():
    quote = make_quote(change=-2.6)
    signals = make_snapshot(quote).signals
    result = momentum_fallback(quote, signals)
    assert result.rationale == f"SHORT signal: -2.6% momentum with {signals.composite.label} composite"


def test_prompt_includes_market_state():
    snapshot = make_snapshot(make_quote('SOL-USD', price=137.08, change=1.43),
                             price_history=[1.0, 2.0, 3.0, 4.0, 5.0, 6.0], momentum_shift=True)
    context = InferenceContext(
        quote=snapshot.quote,
        signals=snapshot.signals,
        recent_prices=snapshot.price_history,
        volatility_trend='increasing',
        momentum_shift=True,
        total_capital=5.0,
    )
    prompt = build_prompt(context)
    assert 'SOL-USD' in prompt
    assert '24h Change: 1.43%' in prompt
    assert 'Recent prices: 2.00 -> 3.00 -> 4.00 -> 5.00 -> 6.00' in prompt
    assert 'Momentum Shift Detected: YES' in prompt
    assert 'Volatility Trend: INCREASING' in prompt
