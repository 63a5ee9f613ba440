import asyncio
import logging
import time
from collections import defaultdict
from typing import Any, Dict, Optional, Set, TYPE_CHECKING

from analytics.performance import calculate_metrics
from api.metrics import metrics
from strategy.models import URGENCY_WAIT, TradingSignal

if TYPE_CHECKING:
    from main import TradingOrchestrator


logger = logging.getLogger(__name__)

WAIT_MIN_AGE_S = 30.0
WAIT_MIN_CONFIDENCE = 75.0


class PromotionService:
    """Picks at most one mature, eligible signal per tick and tracks per-instrument cooldowns."""

    def __init__(self, system: 'TradingOrchestrator'):
        self.system = system
        self.settings = system.settings
        self.consumed: Set[str] = set()
        self.last_close: Dict[str, float] = {}

    def on_position_closed(self, event: Dict[str, Any]) -> None:
        trade = event['trade']
        self.last_close[trade.instrument] = trade.resolved_at

    def _forget_stale_cooldowns(self, now: float) -> None:
        horizon = self.settings.cooldown_s * 2
        for instrument in [i for i, ts in self.last_close.items() if now - ts > horizon]:
            del self.last_close[instrument]

    def in_cooldown(self, instrument: str, now: float) -> bool:
        last = self.last_close.get(instrument)
        return last is not None and now - last < self.settings.cooldown_s

    def skip_reason(self, signal: TradingSignal, now: float) -> Optional[str]:
        age = signal.age(now)
        if age < self.settings.min_signal_age_s:
            return 'too_young'
        if signal.urgency == URGENCY_WAIT and (age < WAIT_MIN_AGE_S or signal.confidence < WAIT_MIN_CONFIDENCE):
            return 'wait_urgency'
        if self.system.position_manager.has_position(signal.instrument):
            return 'open_position'
        if signal.signal_id in self.consumed:
            return 'consumed'
        if self.in_cooldown(signal.instrument, now):
            return 'cooldown'
        return None

    def check_mature_signals(self, now: Optional[float] = None) -> Optional[TradingSignal]:
        """Return the first eligible signal, already marked consumed, or ``None``."""
        if not self.system.position_manager.can_open_position():
            return None
        now = time.time() if now is None else now
        self._forget_stale_cooldowns(now)

        for signal in self.system.signal_generator.get_active_signals(now):
            reason = self.skip_reason(signal, now)
            if reason is not None:
                metrics.record_promotion_skip(reason)
                logger.debug("Skipping %s (%s)", signal.signal_id, reason)
                continue
            self.consumed.add(signal.signal_id)
            logger.info(
                "Promoting %s %s (confidence %.0f, %s, age %.0fs)",
                signal.direction.upper(),
                signal.instrument,
                signal.confidence,
                signal.urgency,
                signal.age(now),
            )
            return signal
        return None


class StatusReporter:
    def __init__(self, system: 'TradingOrchestrator'):
        self.system = system
        self.interval = system.settings.status_interval_s

    async def run(self, generation: int):
        system = self.system
        while system.running and generation == system.generation:
            try:
                await asyncio.sleep(self.interval)
            except asyncio.CancelledError:
                break
            try:
                self.log_status()
            except Exception as exc:
                logger.warning("Status report failed: %s", exc)

    def log_status(self, now: Optional[float] = None):
        now = time.time() if now is None else now
        system = self.system
        signals = system.signal_generator.get_active_signals(now)
        positions = system.position_manager.get_open_positions()
        stats = system.position_manager.get_stats()

        logger.info(
            "Status: %d active signals, %d/%d open positions, %d trades, win rate %.0f%%, pnl %+.2f%%",
            len(signals),
            len(positions),
            system.settings.max_concurrent_positions,
            stats['closed_count'],
            stats['win_rate'] * 100,
            stats['total_pnl'] * 100,
        )
        for signal in signals[:3]:
            logger.info(
                "  signal %s %s | %.0f%% | %s | age %.0fs",
                signal.direction.upper(),
                signal.instrument,
                signal.confidence,
                signal.urgency,
                signal.age(now),
            )
        for position in positions:
            logger.info(
                "  position %s %s | %+.2f%% | entry %.6g",
                position.side.upper(),
                position.instrument,
                position.unrealized_pnl_pct,
                position.entry_price,
            )

    def final_report(self) -> Dict[str, Any]:
        system = self.system
        trades = system.position_manager.get_closed_trades()
        stats = system.position_manager.get_stats()
        capital = system.settings.total_capital

        per_instrument: Dict[str, float] = defaultdict(float)
        for trade in trades:
            per_instrument[trade.instrument] += trade.pnl

        report: Dict[str, Any] = {
            'total_trades': stats['closed_count'],
            'win_rate': stats['win_rate'],
            'total_pnl': stats['total_pnl'],
            'pnl_by_instrument': dict(per_instrument),
            'capital_pnl': sum(t.size * capital * t.pnl for t in trades),
            'open_positions': stats['open_count'],
            'best_trade': None,
            'worst_trade': None,
            'performance': calculate_metrics(trades).to_dict(),
        }
        if trades:
            ranked = sorted(trades, key=lambda t: t.pnl, reverse=True)
            report['best_trade'] = {'instrument': ranked[0].instrument, 'pnl': ranked[0].pnl}
            report['worst_trade'] = {'instrument': ranked[-1].instrument, 'pnl': ranked[-1].pnl}
        return report

    def log_final_report(self, report: Dict[str, Any]):
        logger.info(
            "Session complete: %d trades, win rate %.1f%%, total pnl %+.2f%%, capital pnl %+.4f",
            report['total_trades'],
            report['win_rate'] * 100,
            report['total_pnl'] * 100,
            report['capital_pnl'],
        )
        for instrument, pnl in sorted(report['pnl_by_instrument'].items()):
            logger.info("  %s: %+.2f%%", instrument, pnl * 100)
        if report['best_trade']:
            logger.info(
                "  best %s %+.2f%% | worst %s %+.2f%%",
                report['best_trade']['instrument'],
                report['best_trade']['pnl'] * 100,
                report['worst_trade']['instrument'],
                report['worst_trade']['pnl'] * 100,
            )
        if report['open_positions']:
            logger.info("  %d positions were still open at shutdown", report['open_positions'])
