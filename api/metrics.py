import errno
import logging
from pathlib import Path
from prometheus_client import Counter, Gauge, start_http_server
from typing import Optional


logger = logging.getLogger(__name__)

_METRICS_SERVER_STARTED = False
_METRICS_PORT: Optional[int] = None

CONNECTION_STATE_CODES = {
    'disconnected': 0,
    'connecting': 1,
    'connected': 2,
    'reconnect_scheduled': 3,
    'abandoned': 4,
}


def _write_port_file(port_file: Optional[str], port: int) -> None:
    if not port_file:
        return
    path = Path(port_file)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(str(port))
    except OSError as exc:
        logger.warning("Failed to persist metrics port file %s: %s", path, exc)


class MetricsCollector:
    def __init__(self):
        self.trade_count = Counter('flow_trades_processed_total', 'Total trades forwarded to the window aggregator', ['symbol'])
        self.dropped_messages = Counter('flow_dropped_messages_total', 'Inbound stream messages dropped', ['reason'])

        self.decisions = Counter('flow_decisions_total', 'Signal evaluations by outcome (allowed, suppressed, denied)', ['outcome'])
        self.blocked_decisions = Counter('flow_blocked_decisions_total', 'Denied evaluations by stage', ['stage'])
        self.cooldown_blocks = Counter('flow_cooldown_blocks_total', 'Allowed decisions blocked by cooldown')
        self.pending_suppressed = Counter('flow_pending_suppressed_total', 'Allowed decisions suppressed by a pending alert')

        self.alerts_scheduled = Counter('flow_alerts_scheduled_total', 'Alerts scheduled for dispatch', ['direction'])
        self.alerts_sent = Counter('flow_alerts_sent_total', 'Alerts delivered to the notification sink')
        self.alerts_failed = Counter('flow_alerts_failed_total', 'Alert deliveries that failed')
        self.pending_alerts = Gauge('flow_pending_alerts', 'Alerts waiting for the next minute boundary')

        self.reconnect_count = Counter('flow_websocket_reconnects_total', 'WebSocket reconnect attempts', ['symbol'])
        self.abandoned_streams = Counter('flow_websocket_abandoned_total', 'Streams abandoned after max reconnects', ['symbol'])
        self.connection_state = Gauge('flow_websocket_state', 'Connection state code per symbol', ['symbol'])

        self.filter_paused = Gauge('flow_filter_paused', 'Global filter pause flag', ['filter'])
        self.stop_events = Counter('flow_stop_events_total', 'Reported stop-loss events')
        self.reference_price = Gauge('flow_reference_price', 'Last polled reference instrument price')
        self.reference_failures = Counter('flow_reference_poll_failures_total', 'Failed reference price polls')
        self.volatility_alerts = Counter('flow_volatility_alerts_total', 'Market volatility kill-switch activations')

    def record_trade(self, symbol: str):
        self.trade_count.labels(symbol=symbol).inc()

    def record_drop(self, reason: str):
        self.dropped_messages.labels(reason=reason).inc()

    def record_decision(self, outcome: str, stage: Optional[str] = None):
        self.decisions.labels(outcome=outcome).inc()
        if outcome == 'denied':
            self.blocked_decisions.labels(stage=stage).inc()

    def record_cooldown_block(self):
        self.cooldown_blocks.inc()

    def record_pending_suppressed(self):
        self.pending_suppressed.inc()

    def record_alert_scheduled(self, direction: str):
        self.alerts_scheduled.labels(direction=direction).inc()

    def record_alert_sent(self):
        self.alerts_sent.inc()

    def record_alert_failed(self):
        self.alerts_failed.inc()

    def update_pending_alerts(self, count: int):
        self.pending_alerts.set(count)

    def record_reconnect(self, symbol: str):
        self.reconnect_count.labels(symbol=symbol).inc()

    def record_abandoned(self, symbol: str):
        self.abandoned_streams.labels(symbol=symbol).inc()

    def update_connection_state(self, symbol: str, state: str):
        self.connection_state.labels(symbol=symbol).set(CONNECTION_STATE_CODES.get(state, -1))

    def update_filter_pause(self, name: str, paused: bool):
        self.filter_paused.labels(filter=name).set(1 if paused else 0)

    def record_stop_event(self):
        self.stop_events.inc()

    def update_reference_price(self, price: float):
        self.reference_price.set(price)

    def record_reference_failure(self):
        self.reference_failures.inc()

    def record_volatility_alert(self):
        self.volatility_alerts.inc()


def start_metrics_server(port: int = 9090, port_scan_limit: int = 0, port_file: Optional[str] = None):
    global _METRICS_SERVER_STARTED, _METRICS_PORT
    if _METRICS_SERVER_STARTED:
        return _METRICS_PORT
    port_scan_limit = max(0, int(port_scan_limit))
    last_error: Optional[OSError] = None
    for offset in range(port_scan_limit + 1):
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
        _write_port_file(port_file, candidate)
        logger.info("Prometheus metrics server started on port %s", candidate)
        return candidate
    if last_error and last_error.errno == errno.EADDRINUSE:
        raise RuntimeError(
            f"Unable to bind Prometheus metrics server on ports {port}-{port + port_scan_limit}"
        ) from last_error
    if last_error:
        raise last_error
    return None

metrics = MetricsCollector()
