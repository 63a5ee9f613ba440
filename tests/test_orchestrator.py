import asyncio
import sys

import pytest

sys.path.insert(0, '.')

from config.settings import ConfigurationError, InferenceSettings
from main import TradingOrchestrator
from orchestration.persistence import TradeStore
from strategy.simulators.paper import OutcomeSimulation
from tests.fakes import (
    FakeFeed,
    FixedOutcome,
    RecordingAlerts,
    make_quote,
    make_settings,
    make_snapshot,
)


def _orchestrator(tmp_path, feed=None, outcome=None, alerts=None, **overrides):
    settings = make_settings(**overrides)
    return TradingOrchestrator(
        settings,
        market_source=feed or FakeFeed([make_quote()]),
        trade_store=TradeStore(tmp_path),
        outcome_simulator=outcome,
        alerts=alerts or RecordingAlerts(),
    )


def _seed_signal(system, quote, now):
    return asyncio.run(system.signal_generator.process_snapshot(make_snapshot(quote), now=now))


def test_signal_promoted_once_mature(tmp_path):
    system = _orchestrator(tmp_path, dry_run=False)
    signal = _seed_signal(system, make_quote('Y', price=50.0, change=2.6), now=1000.0)
    assert signal.confidence == 78
    assert signal.urgency == 'soon'

    assert system.check_mature_signals(now=1005.0) is None

    position = system.check_mature_signals(now=1012.0)
    assert position is not None
    assert position.position_id == signal.signal_id
    assert position.side == 'long'
    assert system.signal_generator.get_signal('Y', now=1012.0) is None
    assert system.check_mature_signals(now=1013.0) is None


def test_wait_urgency_needs_age_and_confidence(tmp_path):
    system = _orchestrator(tmp_path, dry_run=False)
    signal = _seed_signal(system, make_quote(change=1.8), now=1000.0)
    assert signal.urgency == 'wait'
    assert signal.confidence == 72

    assert system.check_mature_signals(now=1015.0) is None
    assert system.check_mature_signals(now=1045.0) is None
    assert not system.position_manager.has_position('X')


def test_cooldown_after_close(tmp_path):
    system = _orchestrator(tmp_path, dry_run=False, cooldown_s=20)
    _seed_signal(system, make_quote(change=2.6), now=1000.0)
    assert system.check_mature_signals(now=1012.0) is not None
    system.position_manager.close_position('X', 103.0, 'take-profit', now=1020.0)

    _seed_signal(system, make_quote(change=2.6), now=1020.0)
    assert system.check_mature_signals(now=1030.0) is None
    position = system.check_mature_signals(now=1041.0)
    assert position is not None
    assert position.entered_at == 1041.0


def test_one_promotion_per_tick_within_capacity(tmp_path):
    system = _orchestrator(tmp_path, dry_run=False, max_concurrent_positions=2)
    for name in ('A', 'B', 'C'):
        _seed_signal(system, make_quote(name, change=3.5), now=1000.0)

    first = system.check_mature_signals(now=1011.0)
    assert len(system.position_manager.get_open_positions()) == 1
    second = system.check_mature_signals(now=1011.0)
    assert {first.instrument, second.instrument} <= {'A', 'B', 'C'}
    assert first.instrument != second.instrument
    assert system.check_mature_signals(now=1011.0) is None
    assert len(system.position_manager.get_open_positions()) == 2


def test_missing_credentials_fail_before_start(tmp_path):
    feed = FakeFeed([make_quote()])
    system = _orchestrator(tmp_path, feed=feed, inference=InferenceSettings(enabled=True))

    with pytest.raises(ConfigurationError):
        asyncio.run(system.start(duration_s=1.0))

    assert feed.fetch_count == 0
    assert not system.running


def test_dry_run_exit_is_applied(tmp_path):
    outcome = FixedOutcome(OutcomeSimulation(103.0, 'take-profit', 600.0), delay=0.0)
    system = _orchestrator(tmp_path, outcome=outcome)
    _seed_signal(system, make_quote(change=2.6), now=1000.0)

    async def run():
        position = system.check_mature_signals(now=1012.0)
        await asyncio.sleep(0.01)
        return position

    position = asyncio.run(run())
    assert outcome.simulated[0].signal_id == position.position_id
    trades = system.position_manager.get_closed_trades()
    assert len(trades) == 1
    assert trades[0].exit_reason == 'take-profit'
    assert abs(trades[0].pnl - 0.09) < 1e-9
    assert system.promotion.last_close['X'] == trades[0].resolved_at


def test_stale_simulated_exit_is_dropped(tmp_path):
    outcome = FixedOutcome(OutcomeSimulation(103.0, 'take-profit', 600.0), delay=0.0)
    system = _orchestrator(tmp_path, outcome=outcome)
    _seed_signal(system, make_quote(change=2.6), now=1000.0)

    async def run():
        system.check_mature_signals(now=1012.0)
        system.generation += 1
        await asyncio.sleep(0.01)

    asyncio.run(run())
    assert system.position_manager.get_closed_trades() == []
    assert system.position_manager.has_position('X')


def test_short_session_end_to_end(tmp_path):
    feed = FakeFeed([make_quote('X', change=3.2), make_quote('Y', price=20.0, change=-3.5)])
    alerts = RecordingAlerts()
    system = _orchestrator(
        tmp_path,
        feed=feed,
        alerts=alerts,
        market_poll_interval_s=0.01,
        deep_scan_interval_s=0.02,
        position_check_interval_s=0.01,
        promotion_tick_s=0.01,
        status_interval_s=0.05,
        min_signal_age_s=0,
        dry_run_exit_delay_s=(0.0, 0.0),
    )

    asyncio.run(system.start(duration_s=0.5))

    assert not system.running
    assert feed.closed
    trades = system.position_manager.get_closed_trades()
    assert sorted(t.instrument for t in trades) == ['X', 'Y']
    report = system.final_report
    assert report['total_trades'] == 2
    assert set(report['pnl_by_instrument']) == {'X', 'Y'}
    assert sorted(a[1] for a in alerts.alerts if a[0] == 'trade_closed') == ['X', 'Y']
    assert (tmp_path / 'trades.csv').exists()
    assert (tmp_path / 'summary.json').exists()
    assert asyncio.run(system.stop()) is report
