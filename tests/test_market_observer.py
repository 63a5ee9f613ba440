import asyncio
import sys

sys.path.insert(0, '.')

from ingest.market_observer import MarketObserver
from strategy.models import InstrumentQuote
from tests.fakes import FakeFeed, GatedFeed, RecordingAlerts, make_quote, make_settings


def _observer(feed, **overrides):
    settings = make_settings(**overrides)
    return MarketObserver(settings, feed, alerts=RecordingAlerts())


def test_opportunity_published_for_strong_move():
    feed = FakeFeed([make_quote('X', change=3.2), make_quote('Q', change=0.2)])
    observer = _observer(feed)
    updated, opportunities, cycles = [], [], []
    observer.subscribe('updated', updated.append)
    observer.subscribe('opportunity', opportunities.append)
    observer.subscribe('cycle_complete', cycles.append)

    snapshots = asyncio.run(observer.poll_once(now=10.0))

    assert [s.instrument for s in updated] == ['X', 'Q']
    assert [s.instrument for s in opportunities] == ['X']
    assert len(cycles) == 1 and len(cycles[0]) == 2
    assert snapshots[0].timestamp == 10.0
    assert observer.get_snapshot('X').signals.composite.score > 40


def test_history_is_bounded_and_price_history_excludes_current():
    prices = [100.0 + i for i in range(15)]
    feed = FakeFeed(*[[make_quote('X', price=p)] for p in prices])
    observer = _observer(feed, history_window=10)

    async def run():
        for i in range(15):
            await observer.poll_once(now=float(i))

    asyncio.run(run())

    history = observer.get_history('X')
    assert len(history) == 10
    assert history[0].price == prices[5]
    latest = observer.get_snapshot('X')
    assert latest.price == prices[-1]
    assert prices[-1] not in latest.price_history
    assert latest.price_history[-1] == prices[-2]
    assert len(latest.price_history) == 10


def test_fetch_failure_emits_error_and_recovers():
    feed = FakeFeed([make_quote('X')], failures=3)
    alerts = RecordingAlerts()
    observer = MarketObserver(make_settings(), feed, alerts=alerts)
    errors = []
    observer.subscribe('error', errors.append)

    async def run():
        results = []
        for _ in range(4):
            results.append(await observer.poll_once())
        return results

    results = asyncio.run(run())

    assert results[:3] == [[], [], []]
    assert len(results[3]) == 1
    assert len(errors) == 3
    assert all(isinstance(e, ConnectionError) for e in errors)
    assert observer.consecutive_failures == 0
    assert alerts.alerts and alerts.alerts[0][0] == 'market_data'


def test_one_bad_instrument_does_not_affect_others():
    broken = InstrumentQuote('BAD', 1.0, 2.0, 1_000_000, 0.0, None)
    feed = FakeFeed([make_quote('X'), broken, make_quote('Z', change=-2.0)])
    observer = _observer(feed)

    snapshots = asyncio.run(observer.poll_once())

    assert [s.instrument for s in snapshots] == ['X', 'Z']
    assert observer.get_snapshot('BAD') is None
    assert observer.get_history('BAD') == []


def test_failing_subscriber_is_isolated():
    feed = FakeFeed([make_quote('X'), make_quote('Z')])
    observer = _observer(feed)
    seen = []

    def explode(snapshot):
        raise ValueError('subscriber bug')

    observer.subscribe('updated', explode)
    observer.subscribe('updated', seen.append)

    asyncio.run(observer.poll_once())
    assert [s.instrument for s in seen] == ['X', 'Z']


def test_results_fetched_after_stop_are_discarded():
    feed = GatedFeed([make_quote('X')])
    observer = _observer(feed)
    updates = []
    observer.subscribe('updated', updates.append)

    async def run():
        pending = asyncio.create_task(observer.poll_once())
        await asyncio.sleep(0)
        await observer.stop()
        feed.release.set()
        return await pending

    assert asyncio.run(run()) == []
    assert updates == []
    assert observer.get_snapshot('X') is None


def test_start_and_stop_poll_loop():
    feed = FakeFeed([make_quote('X')])
    observer = _observer(feed, market_poll_interval_s=0.01)

    async def run():
        await observer.start()
        await asyncio.sleep(0.05)
        await observer.stop()

    asyncio.run(run())
    assert feed.fetch_count >= 2
    assert feed.closed
    assert not observer.running
    assert len(observer.get_all_latest()) == 1


def test_fetch_latency_excludes_scoring_and_subscribers(monkeypatch):
    import time
    from ingest import market_observer

    recorded = []
    monkeypatch.setattr(
        market_observer.metrics,
        'record_market_cycle',
        lambda latency, instruments: recorded.append((latency, instruments)),
    )
    observer = _observer(FakeFeed([make_quote('X'), make_quote('Y')]))
    observer.subscribe('updated', lambda snapshot: time.sleep(0.05))

    asyncio.run(observer.poll_once())

    assert len(recorded) == 1
    latency, instruments = recorded[0]
    assert latency < 0.05
    assert instruments == 2
