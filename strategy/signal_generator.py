import asyncio
import itertools
import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from api.metrics import metrics
from config.settings import OrchestratorConfig
from monitoring.async_utils import cancel_tasks
from risk.position_sizer import RiskManager
from strategy.events import EventDispatcher
from strategy.inference import (
    InferenceClient,
    InferenceContext,
    InferenceError,
    InferenceResult,
    momentum_fallback,
)
from strategy.models import SHORT, MarketSnapshot, OpenPosition, TradingSignal


logger = logging.getLogger(__name__)

DEEP_SCAN_TOP_N = 5
DEEP_SCAN_MIN_SCORE = 25.0
FLIP_THRESHOLD_PCT = 1.5


class SignalGenerator:
    """Turns market snapshots into at most one live trading signal per instrument.

    Opportunity events and the periodic deep scan both feed one queue that a
    single worker task drains, so snapshots for the same instrument are never
    processed concurrently and the observer is never blocked on inference.
    The queue holds instrument names; each name is queued at most once and the
    worker always picks up the newest pending snapshot for it.

    Events:
        signal_created    TradingSignal newly stored for an instrument
        signal_replaced   TradingSignal that replaced a contradicted one
        scan_complete     dict summary of a deep scan
    """

    EVENTS = ('signal_created', 'signal_replaced', 'scan_complete')

    def __init__(self, config: OrchestratorConfig, risk_manager: RiskManager,
                 inference_client: Optional[InferenceClient] = None):
        self.config = config
        self.risk = risk_manager
        self.inference = inference_client
        self.running = False
        self.generation = 0
        self._signals: Dict[str, TradingSignal] = {}
        self._events = EventDispatcher('SignalGenerator', self.EVENTS)
        self._queue: Optional[asyncio.Queue] = None
        self._pending: Dict[str, MarketSnapshot] = {}
        self._tasks: List[asyncio.Task] = []
        self._observer = None
        self._ids = itertools.count(1)

    def subscribe(self, event: str, handler: Callable[[Any], Any]) -> None:
        self._events.subscribe(event, handler)

    async def start(self, observer):
        if self.running:
            return
        if self._observer is not observer:
            observer.subscribe('opportunity', self.enqueue)
            self._observer = observer
        self.running = True
        self.generation += 1
        self._queue = asyncio.Queue()
        self._pending = {}
        self._tasks = [
            asyncio.create_task(self._worker(self.generation, self._queue)),
            asyncio.create_task(self._deep_scan_loop(self.generation)),
        ]
        logger.info(
            "Signal generator started (deep scan every %.1fs, inference %s)",
            self.config.deep_scan_interval_s,
            'on' if self.inference is not None else 'off',
        )

    async def stop(self):
        self.running = False
        self.generation += 1
        tasks, self._tasks = self._tasks, []
        await cancel_tasks(tasks)
        self._queue = None
        self._pending.clear()
        await self._events.drain()
        if self.inference is not None:
            await self.inference.close()
        logger.info("Signal generator stopped with %d stored signals", len(self._signals))

    def enqueue(self, snapshot: MarketSnapshot) -> None:
        if not self.running or self._queue is None:
            return
        instrument = snapshot.instrument
        queued = instrument in self._pending
        self._pending[instrument] = snapshot
        if not queued:
            self._queue.put_nowait(instrument)

    async def _worker(self, generation: int, queue: asyncio.Queue):
        while self.running and generation == self.generation:
            try:
                instrument = await queue.get()
            except asyncio.CancelledError:
                break
            snapshot = self._pending.pop(instrument, None)
            try:
                if snapshot is None:
                    continue
                await self.process_snapshot(snapshot, generation=generation)
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.warning("Signal processing for %s failed: %s", instrument, exc)
            finally:
                queue.task_done()

    async def _deep_scan_loop(self, generation: int):
        while self.running and generation == self.generation:
            try:
                await asyncio.sleep(self.config.deep_scan_interval_s)
            except asyncio.CancelledError:
                break
            try:
                self.run_deep_scan(self._observer)
            except Exception as exc:
                logger.warning("Deep scan failed: %s", exc)

    def run_deep_scan(self, observer, now: Optional[float] = None) -> Dict[str, int]:
        latest = sorted(observer.get_all_latest(), key=lambda s: abs(s.score), reverse=True)
        queued = 0
        for snapshot in latest[:DEEP_SCAN_TOP_N]:
            if abs(snapshot.score) > DEEP_SCAN_MIN_SCORE:
                self.enqueue(snapshot)
                queued += 1
        purged = self.purge_expired(now)
        summary = {
            'total_markets': len(latest),
            'queued': queued,
            'purged': purged,
            'active_signals': len(self._signals),
        }
        logger.debug("Deep scan: %s", summary)
        self._events.emit('scan_complete', summary)
        return summary

    async def process_snapshot(self, snapshot: MarketSnapshot, now: Optional[float] = None,
                               generation: Optional[int] = None) -> Optional[TradingSignal]:
        """Create, refresh or replace the signal for the snapshot's instrument."""
        generation = self.generation if generation is None else generation
        instrument = snapshot.instrument
        check_time = time.time() if now is None else now
        existing = self._signals.get(instrument)

        if existing is not None and not existing.is_expired(check_time):
            existing.snapshot = snapshot
            if not self._direction_contradicted(existing, snapshot):
                return existing
            replacement = await self.generate_signal(snapshot, now)
            if generation != self.generation:
                logger.debug("Discarding late replacement for %s", instrument)
                return None
            if self._signals.get(instrument) is not existing:
                return self._signals.get(instrument)
            if replacement is None:
                del self._signals[instrument]
                logger.info(
                    "Dropped %s %s signal: 24h change %.2f%% contradicts it",
                    instrument,
                    existing.direction,
                    snapshot.quote.change_pct_24h,
                )
                metrics.update_active_signals(len(self._signals))
                return None
            self._signals[instrument] = replacement
            metrics.record_signal_replaced()
            metrics.update_active_signals(len(self._signals))
            logger.info(
                "Replaced %s %s signal with %s (confidence %.0f)",
                instrument,
                existing.direction,
                replacement.direction,
                replacement.confidence,
            )
            self._events.emit('signal_replaced', replacement)
            return replacement

        signal = await self.generate_signal(snapshot, now)
        if generation != self.generation:
            logger.debug("Discarding late signal for %s", instrument)
            return None
        if signal is None:
            return None
        self._signals[instrument] = signal
        metrics.record_signal_created(signal.source)
        metrics.update_active_signals(len(self._signals))
        logger.info(
            "New %s signal %s: %s confidence %.0f urgency %s size %.2f x%d",
            signal.source,
            signal.signal_id,
            signal.direction,
            signal.confidence,
            signal.urgency,
            signal.position_size,
            signal.leverage,
        )
        self._events.emit('signal_created', signal)
        return signal

    @staticmethod
    def _direction_contradicted(signal: TradingSignal, snapshot: MarketSnapshot) -> bool:
        change = snapshot.quote.change_pct_24h
        if signal.direction == SHORT:
            return change > FLIP_THRESHOLD_PCT
        return change < -FLIP_THRESHOLD_PCT

    async def _infer(self, snapshot: MarketSnapshot) -> Tuple[Optional[InferenceResult], str]:
        if self.inference is None:
            return None, 'disabled'
        context = InferenceContext(
            quote=snapshot.quote,
            signals=snapshot.signals,
            recent_prices=snapshot.price_history,
            volatility_trend=snapshot.volatility_trend,
            momentum_shift=snapshot.momentum_shift,
            total_capital=self.config.total_capital,
        )
        try:
            result = await self.inference.analyze(context)
        except asyncio.CancelledError:
            raise
        except InferenceError as exc:
            logger.warning("Inference for %s unusable: %s", snapshot.instrument, exc)
            return None, 'malformed'
        except Exception as exc:
            logger.warning("Inference for %s failed: %s", snapshot.instrument, exc)
            return None, 'error'
        if not isinstance(result, InferenceResult):
            logger.warning("Inference for %s returned %r", snapshot.instrument, type(result).__name__)
            return None, 'malformed'
        result = self.risk.clamp_analysis(result)
        if result.confidence < self.config.min_confidence:
            logger.debug(
                "Inference confidence %.0f for %s below %.0f",
                result.confidence,
                snapshot.instrument,
                self.config.min_confidence,
            )
            return None, 'low_confidence'
        return result, 'ok'

    async def generate_signal(self, snapshot: MarketSnapshot,
                              now: Optional[float] = None) -> Optional[TradingSignal]:
        """Build a sized, bounded signal from inference or the momentum fallback."""
        analysis, outcome = await self._infer(snapshot)
        source = 'inference'
        if analysis is None:
            metrics.record_inference_fallback(outcome)
            source = 'fallback'
            analysis = momentum_fallback(snapshot.quote, snapshot.signals)
            if analysis is None:
                return None
            analysis = self.risk.clamp_analysis(analysis)
        if analysis.confidence < self.config.min_confidence:
            return None

        quote, signals = snapshot.quote, snapshot.signals
        take_profit, stop_loss = self.risk.calculate_targets(
            quote.price, analysis.direction, analysis.take_profit_pct, analysis.stop_loss_pct
        )
        created_at = time.time() if now is None else now
        return TradingSignal(
            signal_id=f"{quote.instrument}-{int(created_at * 1000)}-{next(self._ids)}",
            instrument=quote.instrument,
            direction=analysis.direction,
            confidence=analysis.confidence,
            urgency=analysis.urgency,
            entry_price=quote.price,
            take_profit_price=take_profit,
            stop_loss_price=stop_loss,
            position_size=self.risk.calculate_position_size(analysis.confidence, signals),
            leverage=self.risk.calculate_leverage(
                analysis.confidence, signals.volatility.regime, quote.max_leverage
            ),
            hold_minutes=self.risk.calculate_hold_minutes(
                analysis.hold_minutes, snapshot.volatility_trend, analysis.confidence
            ),
            rationale=analysis.rationale,
            snapshot=snapshot,
            source=source,
            created_at=created_at,
            expires_at=created_at + self.config.signal_expiry_s,
        )

    def on_position_opened(self, position: OpenPosition) -> None:
        signal = self._signals.get(position.instrument)
        if signal is not None and signal.signal_id == position.position_id:
            del self._signals[position.instrument]
            metrics.update_active_signals(len(self._signals))

    def purge_expired(self, now: Optional[float] = None) -> int:
        now = time.time() if now is None else now
        expired = [name for name, signal in self._signals.items() if signal.is_expired(now)]
        for name in expired:
            del self._signals[name]
        if expired:
            metrics.record_signals_expired(len(expired))
            metrics.update_active_signals(len(self._signals))
            logger.debug("Purged %d expired signals", len(expired))
        return len(expired)

    def get_active_signals(self, now: Optional[float] = None) -> List[TradingSignal]:
        now = time.time() if now is None else now
        active = [s for s in self._signals.values() if not s.is_expired(now)]
        return sorted(active, key=lambda s: s.confidence, reverse=True)

    def get_signal(self, instrument: str, now: Optional[float] = None) -> Optional[TradingSignal]:
        signal = self._signals.get(instrument)
        if signal is not None and not signal.is_expired(now):
            return signal
        return None
