import asyncio
import json
import sys

sys.path.insert(0, '.')

from orchestration.persistence import TradeStore
from risk.position_sizer import RiskManager
from strategy.models import PositionState
from strategy.position_manager import PositionManager
from tests.fakes import StaticObserver, make_quote, make_settings, make_signal, make_snapshot


def _manager(store=None, **overrides):
    settings = make_settings(**overrides)
    manager = PositionManager(settings, RiskManager(settings), store)
    observer = StaticObserver()
    manager.attach(observer)
    return manager, observer


def _mark(observer, price, instrument='X', momentum_shift=False):
    observer.set(make_snapshot(make_quote(instrument, price=price), momentum_shift=momentum_shift))


def test_take_profit_fills_at_level():
    manager, observer = _manager()
    manager.open_position(make_signal(), now=1000.0)
    _mark(observer, 103.2)

    closed = manager.check_positions(now=1010.0)

    assert len(closed) == 1
    trade = closed[0]
    assert trade.exit_reason == 'take-profit'
    assert trade.exit_price == 103.0
    assert abs(trade.pnl - 0.09) < 1e-9
    assert not manager.has_position('X')


def test_stop_loss_fills_at_level():
    manager, observer = _manager()
    manager.open_position(make_signal(), now=1000.0)
    _mark(observer, 97.5)

    trade = manager.check_positions(now=1010.0)[0]

    assert trade.exit_reason == 'stop-loss'
    assert abs(trade.pnl - (-0.06)) < 1e-9


def test_long_trailing_stop_only_tightens():
    manager, observer = _manager()
    manager.open_position(make_signal(), now=1000.0)
    position = manager.get_position('X')

    trail = []
    for price in (100.5, 102.5, 102.8, 102.0):
        _mark(observer, price)
        assert manager.check_positions(now=1010.0) == []
        trail.append(position.trailing_stop_price)

    assert trail[0] is None
    assert abs(trail[1] - 101.5) < 1e-9
    assert abs(trail[2] - 101.8) < 1e-9
    assert trail[3] == trail[2]

    _mark(observer, 101.7)
    trade = manager.check_positions(now=1020.0)[0]
    assert trade.exit_reason == 'trailing-stop'
    assert abs(trade.exit_price - 101.8) < 1e-9
    assert abs(trade.pnl - 0.054) < 1e-9


def test_short_trailing_stop_only_tightens():
    manager, observer = _manager()
    manager.open_position(make_signal(direction='short', take_profit=97.0, stop_loss=102.0), now=1000.0)
    position = manager.get_position('X')

    trail = []
    for price in (97.8, 97.5, 98.3):
        _mark(observer, price)
        assert manager.check_positions(now=1010.0) == []
        trail.append(position.trailing_stop_price)

    assert abs(trail[0] - 98.8) < 1e-9
    assert abs(trail[1] - 98.5) < 1e-9
    assert trail[2] == trail[1]

    _mark(observer, 98.6)
    trade = manager.check_positions(now=1020.0)[0]
    assert trade.exit_reason == 'trailing-stop'
    assert abs(trade.pnl - 0.045) < 1e-9


def test_time_exit_after_max_hold():
    manager, observer = _manager()
    manager.open_position(make_signal(hold_minutes=60), now=1000.0)
    _mark(observer, 100.5)

    assert manager.check_positions(now=4599.0) == []
    trade = manager.check_positions(now=4600.0)[0]

    assert trade.exit_reason == 'time-exit'
    assert trade.exit_price == 100.5
    assert trade.rationale == 'Exit: time-exit after 60.0min'


def test_momentum_shift_exit_needs_profit():
    manager, observer = _manager()
    manager.open_position(make_signal(), now=1000.0)

    _mark(observer, 99.9, momentum_shift=True)
    assert manager.check_positions(now=1010.0) == []

    _mark(observer, 100.4, momentum_shift=True)
    trade = manager.check_positions(now=1020.0)[0]
    assert trade.exit_reason == 'momentum-shift'
    assert trade.exit_price == 100.4


def test_missing_snapshot_skips_position():
    manager, observer = _manager()
    manager.open_position(make_signal(), now=1000.0)
    _mark(observer, 110.0, instrument='Y')

    assert manager.check_positions(now=999999.0) == []
    assert manager.has_position('X')
    assert manager.get_position('X').current_price == 100.0


def test_capacity_and_one_position_per_instrument():
    manager, _ = _manager(max_concurrent_positions=2)

    assert manager.open_position(make_signal('X'), now=1.0) is not None
    assert manager.open_position(make_signal('X', created_at=2.0), now=2.0) is None
    assert manager.open_position(make_signal('Y'), now=3.0) is not None
    assert not manager.can_open_position()
    assert manager.open_position(make_signal('Z'), now=4.0) is None
    assert [p.instrument for p in manager.get_open_positions()] == ['X', 'Y']


def test_stale_close_is_ignored():
    manager, _ = _manager()
    position = manager.open_position(make_signal(), now=1000.0)

    assert manager.close_position('X', 101.0, 'time-exit', position_id='X-1') is None
    assert manager.has_position('X')
    assert manager.close_position('Y', 101.0, 'time-exit') is None

    trade = manager.close_position('X', 101.0, 'time-exit', position_id=position.position_id, now=1060.0)
    assert trade.trade_id == position.position_id
    assert position.state is PositionState.CLOSED
    assert manager.close_position('X', 101.0, 'time-exit', position_id=position.position_id) is None


def test_closed_event_and_trade_fields():
    manager, _ = _manager()
    opened, closed = [], []
    manager.subscribe('position_opened', opened.append)
    manager.subscribe('position_closed', closed.append)

    signal = make_signal()
    position = manager.open_position(signal, now=1000.0)
    trade = manager.close_position('X', 103.0, 'take-profit', now=1120.0)

    assert opened == [position]
    assert closed == [{'position': position, 'trade': trade, 'reason': 'take-profit'}]
    composite = signal.snapshot.signals.composite.confidence
    assert abs(trade.confidence - composite / 100) < 1e-9
    assert abs(trade.risk_score - (100 - composite) / 100) < 1e-9
    assert abs(trade.expected_return - 1.03) < 1e-9
    assert abs(trade.size - 0.2) < 1e-9
    assert trade.entered_at == 1000.0
    assert trade.resolved_at == 1120.0


def test_stats_and_persistence(tmp_path):
    store = TradeStore(tmp_path)
    manager, _ = _manager(store)

    manager.open_position(make_signal('X'), now=1000.0)
    manager.open_position(make_signal('Y'), now=1000.0)
    manager.close_position('X', 103.0, 'take-profit', now=1100.0)
    manager.close_position('Y', 98.0, 'stop-loss', now=1100.0)

    stats = manager.get_stats()
    assert stats['open_count'] == 0
    assert stats['closed_count'] == 2
    assert stats['win_rate'] == 0.5
    assert abs(stats['total_pnl'] - 0.03) < 1e-9
    assert abs(stats['capital_pnl'] - 0.03) < 1e-9

    assert [t.instrument for t in store.load_trades()] == ['X', 'Y']
    summary = manager.export_results()
    assert (tmp_path / 'trades.csv').read_text().count('\n') == 3
    saved = json.loads((tmp_path / 'summary.json').read_text())
    assert saved['stats']['closed_count'] == 2
    assert summary['performance']['total_trades'] == 2


def test_check_loop_closes_positions():
    settings = make_settings(position_check_interval_s=0.01)
    manager = PositionManager(settings, RiskManager(settings))
    observer = StaticObserver()
    closed = []
    manager.subscribe('position_closed', closed.append)

    async def run():
        await manager.start(observer)
        manager.open_position(make_signal())
        _mark(observer, 104.0)
        await asyncio.sleep(0.05)
        await manager.stop()

    asyncio.run(run())
    assert [event['reason'] for event in closed] == ['take-profit']
    assert manager.get_open_positions() == []
