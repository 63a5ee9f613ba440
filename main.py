import asyncio
import logging
import time
from typing import Any, Dict, List, Optional, Set

from api.alerts import AlertWebhook, alert_webhook
from api.metrics import start_metrics_server
from config import ConfigurationError, OrchestratorConfig, load_settings
from ingest.market_client import MarketDataClient, MarketDataSource
from ingest.market_observer import MarketObserver
from ingest.simulated_feed import SimulatedMarketFeed
from monitoring.async_utils import cancel_tasks
from monitoring.logging_utils import setup_logging
from orchestration.db_persister import TradeDBPersister
from orchestration.persistence import TradeStore
from orchestration.services import PromotionService, StatusReporter
from risk.position_sizer import RiskManager
from strategy.inference import GroqInferenceClient, InferenceClient
from strategy.models import OpenPosition, TradingSignal
from strategy.position_manager import PositionManager
from strategy.signal_generator import SignalGenerator
from strategy.simulators.paper import OutcomeSimulation, OutcomeSimulator, PaperOutcomeSimulator


logger = logging.getLogger(__name__)


def build_market_source(settings: OrchestratorConfig) -> MarketDataSource:
    if settings.market_data.source == 'rest':
        return MarketDataClient(settings.market_data)
    return SimulatedMarketFeed(seed=settings.market_data.simulated_seed)


def build_inference_client(settings: OrchestratorConfig) -> Optional[InferenceClient]:
    if not settings.inference.enabled:
        return None
    return GroqInferenceClient(settings.inference)


class TradingOrchestrator:
    """Wire observer, signal generator and position manager, then sequence promotion."""

    def __init__(
        self,
        settings: OrchestratorConfig,
        market_source: Optional[MarketDataSource] = None,
        inference_client: Optional[InferenceClient] = None,
        trade_store: Optional[TradeStore] = None,
        outcome_simulator: Optional[OutcomeSimulator] = None,
        db_persister: Optional[TradeDBPersister] = None,
        alerts: Optional[AlertWebhook] = None,
    ):
        self.settings = settings
        self.market_source = market_source or build_market_source(settings)
        self.inference_client = inference_client if inference_client is not None else build_inference_client(settings)
        self.trade_store = trade_store or TradeStore(settings.persistence.results_dir)
        if db_persister is None and settings.persistence.database.enabled:
            db_persister = TradeDBPersister(settings.persistence.database)
        self.db_persister = db_persister
        self.outcome_simulator = outcome_simulator or PaperOutcomeSimulator(
            settings.dry_run_exit_delay_s, seed=settings.market_data.simulated_seed
        )
        self.alerts = alerts or alert_webhook

        self.risk_manager = RiskManager(settings)
        self.observer = MarketObserver(settings, self.market_source, self.alerts)
        self.signal_generator = SignalGenerator(settings, self.risk_manager, self.inference_client)
        self.position_manager = PositionManager(
            settings, self.risk_manager, self.trade_store, self.db_persister
        )
        self.promotion = PromotionService(self)
        self.status = StatusReporter(self)

        self.running = False
        self.generation = 0
        self.final_report: Optional[Dict[str, Any]] = None
        self._tasks: List[asyncio.Task] = []
        self._exit_tasks: Set[asyncio.Task] = set()
        self._stop_event: Optional[asyncio.Event] = None
        self._wake: Optional[asyncio.Event] = None

        self._wire_events()

    def _wire_events(self):
        self.signal_generator.subscribe('signal_created', self._on_signal)
        self.signal_generator.subscribe('signal_replaced', self._on_signal)
        self.position_manager.subscribe('position_opened', self.signal_generator.on_position_opened)
        self.position_manager.subscribe('position_closed', self.promotion.on_position_closed)
        self.position_manager.subscribe('position_closed', self._alert_trade_closed)

    def _on_signal(self, signal: TradingSignal):
        if self._wake is not None:
            self._wake.set()

    async def _alert_trade_closed(self, event: Dict[str, Any]):
        await self.alerts.trade_closed_alert(event['trade'].to_dict())

    async def start(self, duration_s: Optional[float] = None):
        """Run until ``duration_s`` (or the configured run duration) elapses or ``stop()`` is called."""
        if self.running:
            return
        self.settings.validate_credentials()

        self.running = True
        self.generation += 1
        generation = self.generation
        self._stop_event = asyncio.Event()
        self._wake = asyncio.Event()
        duration = duration_s if duration_s is not None else self.settings.run_duration_s

        logger.info(
            "Orchestrator starting: capital %.2f, max %d positions, min confidence %.0f, %s, %s",
            self.settings.total_capital,
            self.settings.max_concurrent_positions,
            self.settings.min_confidence,
            'dry run' if self.settings.dry_run else 'LIVE',
            f"{duration:.0f}s" if duration else 'until stopped',
        )

        if self.settings.monitoring.prometheus_port:
            start_metrics_server(self.settings.monitoring.prometheus_port)

        try:
            if self.db_persister is not None:
                await self.db_persister.start()
            await self.observer.start()
            await self.signal_generator.start(self.observer)
            await self.position_manager.start(self.observer)
            self._tasks = [
                asyncio.create_task(self._promotion_loop(generation)),
                asyncio.create_task(self.status.run(generation)),
            ]
            if duration:
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=duration)
                except asyncio.TimeoutError:
                    pass
            else:
                await self._stop_event.wait()
        finally:
            await self.stop()

    async def stop(self) -> Optional[Dict[str, Any]]:
        if not self.running:
            return self.final_report
        self.running = False
        self.generation += 1
        if self._stop_event is not None:
            self._stop_event.set()

        tasks = self._tasks + list(self._exit_tasks)
        self._tasks = []
        self._exit_tasks.clear()
        await cancel_tasks(tasks)

        await self.signal_generator.stop()
        await self.position_manager.stop()
        await self.observer.stop()
        if self.db_persister is not None:
            await self.db_persister.stop()

        self.final_report = self.status.final_report()
        self.status.log_final_report(self.final_report)
        self.position_manager.export_results()
        return self.final_report

    async def _promotion_loop(self, generation: int):
        while self.running and generation == self.generation:
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.settings.promotion_tick_s)
            except asyncio.TimeoutError:
                pass
            except asyncio.CancelledError:
                break
            self._wake.clear()
            if not self.running or generation != self.generation:
                break
            try:
                self.check_mature_signals()
            except Exception as exc:
                logger.warning("Promotion tick failed: %s", exc)

    def check_mature_signals(self, now: Optional[float] = None) -> Optional[OpenPosition]:
        signal = self.promotion.check_mature_signals(now)
        if signal is None:
            return None
        return self.execute_signal(signal, now)

    def execute_signal(self, signal: TradingSignal, now: Optional[float] = None) -> Optional[OpenPosition]:
        position = self.position_manager.open_position(signal, now=now)
        if position is None or not self.settings.dry_run:
            return position
        outcome = self.outcome_simulator.simulate_outcome(signal)
        delay = self.outcome_simulator.exit_delay()
        task = asyncio.get_running_loop().create_task(
            self._apply_simulated_exit(position, outcome, delay, self.generation)
        )
        self._exit_tasks.add(task)
        task.add_done_callback(self._exit_tasks.discard)
        logger.debug(
            "Simulated %s exit for %s at %.6g in %.1fs",
            outcome.exit_reason,
            position.instrument,
            outcome.exit_price,
            delay,
        )
        return position

    async def _apply_simulated_exit(self, position: OpenPosition, outcome: OutcomeSimulation,
                                    delay: float, generation: int):
        try:
            await asyncio.sleep(delay)
        except asyncio.CancelledError:
            return
        if generation != self.generation:
            return
        self.position_manager.close_position(
            position.instrument,
            outcome.exit_price,
            outcome.exit_reason,
            position_id=position.position_id,
        )


async def main():
    try:
        settings = load_settings()
    except ConfigurationError as exc:
        logger.error("Configuration error: %s", exc)
        raise SystemExit(2) from exc
    logging.getLogger().setLevel(settings.monitoring.log_level.upper())
    orchestrator = TradingOrchestrator(settings)
    started = time.monotonic()
    try:
        await orchestrator.start()
    except ConfigurationError as exc:
        logger.error("Configuration error: %s", exc)
        raise SystemExit(2) from exc
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.info("Orchestrator shutting down on interrupt")
        await orchestrator.stop()
    logger.info("Ran for %.0fs", time.monotonic() - started)

if __name__ == "__main__":
    setup_logging()
    asyncio.run(main())
