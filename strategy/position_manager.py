import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from analytics.performance import calculate_metrics, format_report
from api.metrics import metrics
from config.settings import OrchestratorConfig
from monitoring.async_utils import cancel_tasks
from orchestration.db_persister import TradeDBPersister
from orchestration.persistence import TradeStore
from risk.position_sizer import RiskManager
from strategy.events import EventDispatcher
from strategy.models import (
    LONG,
    ClosedTrade,
    MarketSnapshot,
    OpenPosition,
    PositionState,
    TradingSignal,
)


logger = logging.getLogger(__name__)

MOMENTUM_EXIT_MIN_PNL_PCT = 0.5


class PositionManager:
    """Owns open positions and the closed-trade history.

    Events:
        position_opened   OpenPosition
        position_closed   dict with ``position``, ``trade`` and ``reason``
    """

    EVENTS = ('position_opened', 'position_closed')

    def __init__(self, config: OrchestratorConfig, risk_manager: RiskManager,
                 trade_store: Optional[TradeStore] = None,
                 db_persister: Optional[TradeDBPersister] = None):
        self.config = config
        self.risk = risk_manager
        self.trade_store = trade_store
        self.db_persister = db_persister
        self.mode = 'dry_run' if config.dry_run else 'live'
        self.running = False
        self.generation = 0
        self._positions: Dict[str, OpenPosition] = {}
        self._closed: List[ClosedTrade] = []
        self._events = EventDispatcher('PositionManager', self.EVENTS)
        self._observer = None
        self._task: Optional[asyncio.Task] = None

    def subscribe(self, event: str, handler: Callable[[Any], Any]) -> None:
        self._events.subscribe(event, handler)

    def attach(self, observer) -> None:
        self._observer = observer

    async def start(self, observer):
        if self.running:
            return
        self.attach(observer)
        self.running = True
        self.generation += 1
        self._task = asyncio.create_task(self._check_loop(self.generation))
        logger.info(
            "Position manager started (%s, check every %.1fs, max %d open)",
            self.mode,
            self.config.position_check_interval_s,
            self.config.max_concurrent_positions,
        )

    async def stop(self):
        self.running = False
        self.generation += 1
        task, self._task = self._task, None
        await cancel_tasks([task])
        await self._events.drain()
        logger.info(
            "Position manager stopped: %d open, %d closed",
            len(self._positions),
            len(self._closed),
        )

    async def _check_loop(self, generation: int):
        while self.running and generation == self.generation:
            try:
                await asyncio.sleep(self.config.position_check_interval_s)
            except asyncio.CancelledError:
                break
            try:
                self.check_positions()
            except Exception as exc:
                logger.warning("Position check failed: %s", exc)

    def can_open_position(self) -> bool:
        return len(self._positions) < self.config.max_concurrent_positions

    def has_position(self, instrument: str) -> bool:
        return instrument in self._positions

    def open_position(self, signal: TradingSignal, now: Optional[float] = None) -> Optional[OpenPosition]:
        if not self.can_open_position():
            logger.debug("Max positions reached (%d)", self.config.max_concurrent_positions)
            return None
        if signal.instrument in self._positions:
            logger.debug("Already holding %s", signal.instrument)
            return None

        position = OpenPosition(
            position_id=signal.signal_id,
            instrument=signal.instrument,
            side=signal.direction,
            entry_price=signal.entry_price,
            current_price=signal.entry_price,
            size=signal.position_size,
            leverage=signal.leverage,
            take_profit_price=signal.take_profit_price,
            stop_loss_price=signal.stop_loss_price,
            max_hold_seconds=signal.hold_minutes * 60.0,
            snapshot=signal.snapshot,
            confidence=signal.confidence,
            entered_at=time.time() if now is None else now,
        )
        self._positions[signal.instrument] = position
        metrics.record_position_opened(self.mode)
        metrics.update_open_positions(len(self._positions))
        logger.info(
            "Opened %s %s: size %.2f x%d entry %.6g TP %.6g SL %.6g max hold %dmin",
            position.side.upper(),
            position.instrument,
            position.size,
            position.leverage,
            position.entry_price,
            position.take_profit_price,
            position.stop_loss_price,
            signal.hold_minutes,
        )
        self._events.emit('position_opened', position)
        return position

    def check_positions(self, now: Optional[float] = None) -> List[ClosedTrade]:
        """Mark every open position to its latest snapshot and close those that hit an exit."""
        now = time.time() if now is None else now
        closed: List[ClosedTrade] = []
        if self._observer is None:
            return closed
        for position in list(self._positions.values()):
            try:
                trade = self._check_position(position, now)
            except Exception as exc:
                logger.warning("Checking %s failed: %s", position.instrument, exc)
                continue
            if trade is not None:
                closed.append(trade)
        return closed

    def _check_position(self, position: OpenPosition, now: float) -> Optional[ClosedTrade]:
        snapshot = self._observer.get_snapshot(position.instrument)
        if snapshot is None:
            return None
        position.mark(snapshot.price)
        trail = self.risk.update_trail_stop(position)
        if trail is not None:
            position.trailing_stop_price = trail
            logger.debug("Trailing stop for %s moved to %.6g", position.instrument, trail)
        exit_decision = self.evaluate_exit(position, snapshot, now)
        if exit_decision is None:
            return None
        reason, exit_price = exit_decision
        return self.close_position(position.instrument, exit_price, reason, now=now)

    @staticmethod
    def evaluate_exit(position: OpenPosition, snapshot: MarketSnapshot,
                      now: float) -> Optional[Tuple[str, float]]:
        """Return ``(reason, fill_price)`` for the first exit condition that holds.

        Price-level exits fill at their level; time and momentum exits fill at
        the snapshot price.
        """
        price = snapshot.price
        is_long = position.side == LONG
        tp, sl, trail = position.take_profit_price, position.stop_loss_price, position.trailing_stop_price
        conditions = (
            ('take-profit', price >= tp if is_long else price <= tp, tp),
            ('stop-loss', price <= sl if is_long else price >= sl, sl),
            ('trailing-stop',
             trail is not None and (price <= trail if is_long else price >= trail),
             trail),
            ('time-exit', position.elapsed(now) >= position.max_hold_seconds, price),
            ('momentum-shift',
             snapshot.momentum_shift and position.unrealized_pnl_pct > MOMENTUM_EXIT_MIN_PNL_PCT,
             price),
        )
        for reason, hit, fill in conditions:
            if hit:
                return reason, fill
        return None

    def close_position(self, instrument: str, exit_price: float, reason: str,
                       position_id: Optional[str] = None,
                       now: Optional[float] = None) -> Optional[ClosedTrade]:
        position = self._positions.get(instrument)
        if position is None:
            return None
        if position_id is not None and position.position_id != position_id:
            logger.debug("Ignoring close for stale position %s on %s", position_id, instrument)
            return None

        now = time.time() if now is None else now
        position.mark(exit_price)
        position.state = PositionState.CLOSED
        position.exit_reason = reason
        trade = self._build_trade(position, exit_price, reason, now)

        del self._positions[instrument]
        self._closed.append(trade)
        self._persist(trade)

        capital_pnl = position.size * trade.pnl
        metrics.record_position_closed(reason, trade.pnl, capital_pnl)
        metrics.update_open_positions(len(self._positions))
        logger.info(
            "Closed %s %s (%s): %.6g -> %.6g pnl %+.2f%% (%+.4f) after %.1fmin",
            position.side.upper(),
            instrument,
            reason,
            position.entry_price,
            exit_price,
            trade.pnl * 100,
            capital_pnl,
            (now - position.entered_at) / 60,
        )
        self._events.emit('position_closed', {'position': position, 'trade': trade, 'reason': reason})
        return trade

    def _build_trade(self, position: OpenPosition, exit_price: float, reason: str,
                     now: float) -> ClosedTrade:
        composite_confidence = position.snapshot.signals.composite.confidence
        hold_minutes = (now - position.entered_at) / 60
        return ClosedTrade(
            trade_id=position.position_id,
            instrument=position.instrument,
            side=position.side,
            entry_price=position.entry_price,
            exit_price=exit_price,
            size=position.size / self.config.total_capital,
            confidence=composite_confidence / 100,
            expected_return=1 + abs(position.take_profit_price - position.entry_price) / position.entry_price,
            risk_score=(100 - composite_confidence) / 100,
            entered_at=position.entered_at,
            exit_reason=reason,
            pnl=position.pnl_at(exit_price),
            resolved_at=now,
            rationale=f"Exit: {reason} after {hold_minutes:.1f}min",
        )

    def _persist(self, trade: ClosedTrade) -> None:
        if self.trade_store is not None:
            try:
                self.trade_store.save_trade(trade)
            except OSError as exc:
                logger.error("Saving trade %s failed: %s", trade.trade_id, exc)
        if self.db_persister is not None:
            self.db_persister.buffer_trade(trade)

    def get_position(self, instrument: str) -> Optional[OpenPosition]:
        return self._positions.get(instrument)

    def get_open_positions(self) -> List[OpenPosition]:
        return list(self._positions.values())

    def get_closed_trades(self) -> List[ClosedTrade]:
        return list(self._closed)

    def get_stats(self) -> Dict[str, Any]:
        closed = self._closed
        wins = sum(1 for t in closed if t.is_win)
        return {
            'open_count': len(self._positions),
            'closed_count': len(closed),
            'total_pnl': sum(t.pnl for t in closed),
            'capital_pnl': sum(t.size * self.config.total_capital * t.pnl for t in closed),
            'win_rate': wins / len(closed) if closed else 0.0,
        }

    def export_results(self) -> Dict[str, Any]:
        performance = calculate_metrics(self._closed)
        summary = {'stats': self.get_stats(), 'performance': performance.to_dict()}
        if self._closed:
            logger.info("Performance: %s", format_report(performance))
        if self.trade_store is not None:
            try:
                self.trade_store.export_to_csv()
                self.trade_store.export_summary(summary)
            except OSError as exc:
                logger.error("Exporting results failed: %s", exc)
        return summary
