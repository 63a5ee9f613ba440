import asyncio
import sys
from contextlib import asynccontextmanager

sys.path.insert(0, '.')

from config.settings import DatabaseSettings
from orchestration.db_persister import TradeDBPersister
from tests.fakes import make_trade


class FakeConnection:
    def __init__(self, fail=False, during=None):
        self.fail = fail
        self.during = during
        self.batches = []

    async def executemany(self, sql, rows):
        await asyncio.sleep(0)
        if self.during is not None:
            self.during()
        if self.fail:
            raise OSError('connection reset')
        self.batches.append(list(rows))


class FakePool:
    def __init__(self, conn):
        self.conn = conn
        self.closed = False

    @asynccontextmanager
    async def acquire(self):
        yield self.conn

    async def close(self):
        self.closed = True


def test_flush_writes_buffered_trades():
    persister = TradeDBPersister(DatabaseSettings(enabled=True))
    conn = FakeConnection()
    persister.pool = FakePool(conn)
    persister.buffer_trade(make_trade(0.09, 'X'))
    persister.buffer_trade(make_trade(-0.06, 'Y'))

    asyncio.run(persister.flush())

    assert persister.buffer == []
    rows = conn.batches[0]
    assert [r[1] for r in rows] == ['X', 'Y']
    assert rows[0][9].timestamp() == 1940.0
    assert rows[0][10].timestamp() == 2000.0


def test_failed_flush_keeps_rows():
    persister = TradeDBPersister(DatabaseSettings(enabled=True))
    persister.pool = FakePool(FakeConnection(fail=True))
    persister.buffer_trade(make_trade(0.01))

    asyncio.run(persister.flush())

    assert len(persister.buffer) == 1


def test_buffer_drops_oldest_when_full():
    persister = TradeDBPersister(DatabaseSettings(enabled=True), max_buffer_size=2)
    for i in range(3):
        persister.buffer_trade(make_trade(0.01, trade_id=f"t{i}"))
    assert [t.trade_id for t in persister.buffer] == ['t1', 't2']


def test_stop_flushes_and_closes_pool():
    persister = TradeDBPersister(DatabaseSettings(enabled=True))
    conn = FakeConnection()
    pool = FakePool(conn)
    persister.pool = pool
    persister.buffer_trade(make_trade(0.01))

    asyncio.run(persister.stop())

    assert pool.closed
    assert persister.pool is None
    assert len(conn.batches) == 1


def test_trades_buffered_during_flush_are_kept():
    persister = TradeDBPersister(DatabaseSettings(enabled=True))
    late = make_trade(0.02, trade_id='late')
    conn = FakeConnection(during=lambda: persister.buffer_trade(late))
    persister.pool = FakePool(conn)
    persister.buffer_trade(make_trade(0.01, trade_id='first'))

    asyncio.run(persister.flush())

    assert [r[0] for r in conn.batches[0]] == ['first']
    assert persister.buffer == [late]


def test_failed_flush_requeues_ahead_of_new_trades():
    persister = TradeDBPersister(DatabaseSettings(enabled=True), max_buffer_size=5)
    persister.pool = FakePool(FakeConnection(
        fail=True,
        during=lambda: [persister.buffer_trade(make_trade(0.02, trade_id=f"late{i}")) for i in range(2)],
    ))
    persister.buffer_trade(make_trade(0.01, trade_id='first'))

    asyncio.run(persister.flush())

    assert [t.trade_id for t in persister.buffer] == ['first', 'late0', 'late1']
