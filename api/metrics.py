import errno
import logging
from typing import Optional

from prometheus_client import Counter, Gauge, Histogram, start_http_server


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None


class MetricsCollector:
    def __init__(self):
        self.market_cycles = Counter('market_poll_cycles_total', 'Completed market poll cycles')
        self.market_fetch_failures = Counter('market_fetch_failures_total', 'Market poll cycles skipped after a fetch failure')
        self.market_fetch_latency = Histogram('market_fetch_latency_seconds', 'Latency of the market listing fetch')
        self.instruments_tracked = Gauge('instruments_tracked', 'Instruments with at least one snapshot')
        self.opportunities = Counter('opportunities_detected_total', 'Opportunity notifications published')

        self.signals_created = Counter('signals_created_total', 'Trading signals created', ['source'])
        self.signals_replaced = Counter('signals_replaced_total', 'Signals replaced after a direction flip')
        self.signals_expired = Counter('signals_expired_total', 'Signals purged after expiry')
        self.active_signals = Gauge('active_signals', 'Non-expired signals held by the generator')
        self.inference_fallbacks = Counter('inference_fallbacks_total', 'Signals that used the momentum fallback', ['reason'])
        self.inference_latency = Histogram('inference_latency_seconds', 'Latency of inference requests')

        self.promotion_skips = Counter('promotion_skips_total', 'Signals skipped by the promotion scan', ['reason'])
        self.positions_opened = Counter('positions_opened_total', 'Positions opened', ['mode'])
        self.positions_closed = Counter('positions_closed_total', 'Positions closed', ['reason'])
        self.open_positions = Gauge('open_positions', 'Currently open positions')
        self.pnl_realized = Gauge('pnl_realized_total', 'Sum of leverage-adjusted realized returns')
        self.capital_pnl = Gauge('capital_pnl_total', 'Realized P&L in capital units')

    def record_market_cycle(self, fetch_latency_seconds: Optional[float] = None, instruments: Optional[int] = None):
        self.market_cycles.inc()
        if fetch_latency_seconds is not None:
            self.market_fetch_latency.observe(fetch_latency_seconds)
        if instruments is not None:
            self.instruments_tracked.set(instruments)

    def record_fetch_failure(self):
        self.market_fetch_failures.inc()

    def record_opportunity(self):
        self.opportunities.inc()

    def record_signal_created(self, source: str):
        self.signals_created.labels(source=source).inc()

    def record_signal_replaced(self):
        self.signals_replaced.inc()

    def record_signals_expired(self, count: int):
        if count > 0:
            self.signals_expired.inc(count)

    def update_active_signals(self, count: int):
        self.active_signals.set(count)

    def record_inference_fallback(self, reason: str):
        self.inference_fallbacks.labels(reason=reason).inc()

    def record_inference_latency(self, latency_seconds: float):
        self.inference_latency.observe(latency_seconds)

    def record_promotion_skip(self, reason: str):
        self.promotion_skips.labels(reason=reason).inc()

    def record_position_opened(self, mode: str):
        self.positions_opened.labels(mode=mode).inc()

    def record_position_closed(self, reason: str, pnl: float, capital_pnl: float):
        self.positions_closed.labels(reason=reason).inc()
        if pnl >= 0:
            self.pnl_realized.inc(pnl)
        else:
            self.pnl_realized.dec(abs(pnl))
        if capital_pnl >= 0:
            self.capital_pnl.inc(capital_pnl)
        else:
            self.capital_pnl.dec(abs(capital_pnl))

    def update_open_positions(self, count: int):
        self.open_positions.set(count)


def start_metrics_server(port: int = 9090, port_scan_limit: int = 0):
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED:
        return
    last_error: Optional[OSError] = None
    for offset in range(max(0, port_scan_limit) + 1):
        candidate = port + offset
        try:
            start_http_server(candidate)
        except OSError as exc:
            last_error = exc
            if exc.errno == errno.EADDRINUSE:
                logger.warning(
                    "Prometheus metrics server port %s already in use; trying next candidate",
                    candidate,
                )
                continue
            raise
        _METRICS_SERVER_STARTED = True
        _METRICS_PORT = candidate
        logger.info("Prometheus metrics server started on port %s", candidate)
        return
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error

metrics = MetricsCollector()
