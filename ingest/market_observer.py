import asyncio
import logging
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

from analytics.market_scoring import (
    classify_volatility_trend,
    detect_momentum_shift,
    score_market,
)
from api.alerts import AlertWebhook, alert_webhook
from api.metrics import metrics
from config.settings import OrchestratorConfig
from monitoring.async_utils import cancel_tasks
from ingest.market_client import MarketDataSource
from strategy.events import EventDispatcher
from strategy.models import InstrumentQuote, MarketSnapshot


logger = logging.getLogger(__name__)

OPPORTUNITY_SCORE = 40.0


class MarketObserver:
    """Polls the market source, scores every instrument and keeps a bounded history.

    Events:
        updated          MarketSnapshot, once per instrument per cycle
        opportunity      MarketSnapshot, when |score| and confidence clear the bar
        cycle_complete   list of the cycle's snapshots
        error            the exception raised by the fetch
    """

    EVENTS = ('updated', 'opportunity', 'cycle_complete', 'error')

    def __init__(self, config: OrchestratorConfig, source: MarketDataSource,
                 alerts: Optional[AlertWebhook] = None):
        self.config = config
        self.source = source
        self.alerts = alerts or alert_webhook
        self.running = False
        self.generation = 0
        self.cycles = 0
        self.consecutive_failures = 0
        self._history: Dict[str, Deque[MarketSnapshot]] = {}
        self._events = EventDispatcher('MarketObserver', self.EVENTS)
        self._task: Optional[asyncio.Task] = None

    def subscribe(self, event: str, handler: Callable[[Any], Any]) -> None:
        self._events.subscribe(event, handler)

    async def start(self):
        if self.running:
            return
        self.running = True
        self.generation += 1
        self._task = asyncio.create_task(self._poll_loop(self.generation))
        logger.info(
            "Market observer started (poll every %.1fs, window %d)",
            self.config.market_poll_interval_s,
            self.config.history_window,
        )

    async def stop(self):
        self.running = False
        self.generation += 1
        task, self._task = self._task, None
        await cancel_tasks([task])
        await self._events.drain()
        await self.source.close()
        logger.info("Market observer stopped after %d cycles", self.cycles)

    async def _poll_loop(self, generation: int):
        while self.running and generation == self.generation:
            try:
                await self.poll_once(generation=generation)
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.warning("Market poll cycle failed: %s", exc)
            try:
                await asyncio.sleep(self.config.market_poll_interval_s)
            except asyncio.CancelledError:
                break

    async def poll_once(self, now: Optional[float] = None,
                        generation: Optional[int] = None) -> List[MarketSnapshot]:
        """Run one fetch-and-score cycle and return the snapshots it produced."""
        generation = self.generation if generation is None else generation
        started = time.monotonic()
        try:
            quotes = await self.source.fetch_instruments()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if generation != self.generation:
                return []
            await self._handle_fetch_failure(exc)
            return []
        fetch_latency = time.monotonic() - started

        if generation != self.generation:
            logger.debug("Discarding market data fetched by a stopped observer")
            return []

        self.consecutive_failures = 0
        now = time.time() if now is None else now
        snapshots: List[MarketSnapshot] = []
        for quote in quotes:
            try:
                snapshot = self._observe(quote, now)
            except Exception as exc:
                logger.warning("Scoring %s failed: %s", getattr(quote, 'instrument', quote), exc)
                continue
            snapshots.append(snapshot)
            self._events.emit('updated', snapshot)
            if self.is_opportunity(snapshot):
                metrics.record_opportunity()
                composite = snapshot.signals.composite
                logger.info(
                    "Opportunity %s: score %.1f confidence %.0f (%s)",
                    snapshot.instrument,
                    composite.score,
                    composite.confidence,
                    composite.label,
                )
                self._events.emit('opportunity', snapshot)

        self.cycles += 1
        metrics.record_market_cycle(fetch_latency, len(self._history))
        self._events.emit('cycle_complete', snapshots)
        return snapshots

    async def _handle_fetch_failure(self, exc: Exception):
        self.consecutive_failures += 1
        metrics.record_fetch_failure()
        logger.warning(
            "Market fetch failed (%d consecutive): %s",
            self.consecutive_failures,
            exc,
        )
        self._events.emit('error', exc)
        if self.consecutive_failures == self.config.monitoring.fetch_failure_alert_threshold:
            await self.alerts.fetch_failure_alert(self.consecutive_failures, str(exc))

    def _observe(self, quote: InstrumentQuote, now: float) -> MarketSnapshot:
        history = self._history.get(quote.instrument)
        previous = list(history) if history else []
        snapshot = MarketSnapshot(
            quote=quote,
            timestamp=now,
            signals=score_market(quote),
            price_history=tuple(s.price for s in previous),
            volatility_trend=classify_volatility_trend(previous),
            momentum_shift=detect_momentum_shift(quote, previous),
        )
        if history is None:
            history = deque(maxlen=self.config.history_window)
            self._history[quote.instrument] = history
        history.append(snapshot)
        return snapshot

    def is_opportunity(self, snapshot: MarketSnapshot) -> bool:
        composite = snapshot.signals.composite
        return (
            abs(composite.score) > OPPORTUNITY_SCORE
            and composite.confidence >= self.config.min_confidence
        )

    def get_snapshot(self, instrument: str) -> Optional[MarketSnapshot]:
        history = self._history.get(instrument)
        return history[-1] if history else None

    def get_history(self, instrument: str) -> List[MarketSnapshot]:
        return list(self._history.get(instrument, ()))

    def get_all_latest(self) -> List[MarketSnapshot]:
        return [h[-1] for h in self._history.values() if h]
