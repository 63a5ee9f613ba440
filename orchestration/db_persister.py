import asyncio
import logging
from datetime import datetime, timezone
from typing import List, Optional

import asyncpg

from config.settings import DatabaseSettings
from strategy.models import ClosedTrade


logger = logging.getLogger(__name__)

CREATE_TABLE_SQL = '''
CREATE TABLE IF NOT EXISTS closed_trades (
    trade_id TEXT PRIMARY KEY,
    instrument TEXT NOT NULL,
    side TEXT NOT NULL,
    entry_price DOUBLE PRECISION NOT NULL,
    exit_price DOUBLE PRECISION NOT NULL,
    size DOUBLE PRECISION NOT NULL,
    confidence DOUBLE PRECISION NOT NULL,
    expected_return DOUBLE PRECISION NOT NULL,
    risk_score DOUBLE PRECISION NOT NULL,
    entered_at TIMESTAMPTZ NOT NULL,
    resolved_at TIMESTAMPTZ NOT NULL,
    exit_reason TEXT NOT NULL,
    pnl DOUBLE PRECISION NOT NULL,
    rationale TEXT
)
'''

INSERT_SQL = '''INSERT INTO closed_trades (
        trade_id, instrument, side, entry_price, exit_price, size, confidence,
        expected_return, risk_score, entered_at, resolved_at, exit_reason, pnl, rationale)
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
    ON CONFLICT (trade_id) DO NOTHING'''


def _ts(epoch_seconds: float) -> datetime:
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc)


class TradeDBPersister:
    """Buffers closed trades and mirrors them into Postgres in batches."""

    def __init__(self, settings: DatabaseSettings, flush_interval: float = 5.0,
                 max_buffer_size: int = 5000):
        self.settings = settings
        self.pool: Optional[asyncpg.Pool] = None
        self.buffer: List[ClosedTrade] = []
        self.flush_interval = flush_interval
        self.max_buffer_size = max_buffer_size
        self.running = False
        self._auto_task: Optional[asyncio.Task] = None

    async def initialize(self):
        self.pool = await asyncpg.create_pool(
            host=self.settings.host,
            port=self.settings.port,
            database=self.settings.database,
            user=self.settings.user,
            password=self.settings.password,
            min_size=1,
            max_size=5,
        )
        async with self.pool.acquire() as conn:
            await conn.execute(CREATE_TABLE_SQL)

    def buffer_trade(self, trade: ClosedTrade) -> None:
        self.buffer.append(trade)
        self._trim_buffer()

    def _trim_buffer(self) -> None:
        if len(self.buffer) > self.max_buffer_size:
            drop_n = len(self.buffer) - self.max_buffer_size
            del self.buffer[:drop_n]
            logger.warning("Trade mirror buffer full; dropped %d oldest rows", drop_n)

    async def flush(self):
        if not self.buffer or self.pool is None:
            return
        batch, self.buffer = self.buffer, []
        try:
            async with self.pool.acquire() as conn:
                await conn.executemany(
                    INSERT_SQL,
                    [
                        (
                            t.trade_id,
                            t.instrument,
                            t.side,
                            t.entry_price,
                            t.exit_price,
                            t.size,
                            t.confidence,
                            t.expected_return,
                            t.risk_score,
                            _ts(t.entered_at),
                            _ts(t.resolved_at),
                            t.exit_reason,
                            t.pnl,
                            t.rationale,
                        )
                        for t in batch
                    ],
                )
        except asyncio.CancelledError:
            self.buffer = batch + self.buffer
            raise
        except (asyncpg.PostgresError, OSError) as exc:
            logger.error("Closed trade flush failed, keeping %d rows buffered: %s", len(batch), exc)
            self.buffer = batch + self.buffer
            self._trim_buffer()

    async def auto_flush_loop(self):
        try:
            while self.running:
                try:
                    await asyncio.sleep(self.flush_interval)
                except asyncio.CancelledError:
                    break
                await self.flush()
        finally:
            await self.flush()

    async def start(self):
        await self.initialize()
        self.running = True
        if self._auto_task is None:
            self._auto_task = asyncio.create_task(self.auto_flush_loop())

    async def stop(self):
        self.running = False
        if self._auto_task is not None:
            self._auto_task.cancel()
            await asyncio.gather(self._auto_task, return_exceptions=True)
            self._auto_task = None
        if self.pool is not None:
            await self.flush()
            await self.pool.close()
            self.pool = None
