import asyncio
import logging
import signal
import sys
import time
from typing import Any, Callable, Dict, List, Optional

from analytics.window import WindowAggregator
from api.alerts import AlertDispatcher
from api.metrics import metrics, start_metrics_server
from api.notifier import NotificationError, TelegramNotifier, format_startup
from config import Config, ConfigError, RuntimeConfig, load_config
from ingest.binance_rest import BinanceRESTClient
from ingest.reference_poller import ReferencePricePoller
from ingest.trade_stream import TradeStreamSupervisor
from monitoring.async_utils import cancel_tasks, run_tasks_with_cleanup
from monitoring.logging_utils import setup_logging
from strategy.cooldown import CooldownManager
from strategy.filters.stack import FilterStack
from strategy.signal_engine import SignalEngine
from strategy.signal_processor import SignalProcessor


logger = logging.getLogger(__name__)


class FlowMonitor:
    """Wire configuration, streams, filters, decisions and alert delivery together."""

    def __init__(self, config_obj: Optional[Config] = None, notifier=None, supervisor_kwargs: Optional[Dict] = None,
                 rest_client: Optional[BinanceRESTClient] = None, clock: Callable[[], float] = time.time):
        self.config = config_obj if config_obj is not None else load_config()
        self.monitor_cfg = self.config.get('monitor', {}) or {}
        self.monitoring_cfg = self.config.get('monitoring', {}) or {}
        self.clock = clock

        self.runtime_config = RuntimeConfig.from_config(self.config)
        self.window_seconds = float(self.monitor_cfg.get('window_seconds', 180))
        self.stats_log_interval_s = float(self.monitor_cfg.get('stats_log_interval_s', 60))

        self.aggregator = WindowAggregator(self.window_seconds)
        self.filters = FilterStack.default(self.runtime_config, clock=clock)
        self.engine = SignalEngine(self.runtime_config, self.filters, clock=clock)
        self.cooldown = CooldownManager(self.runtime_config, clock=clock)

        self.notifier = notifier or TelegramNotifier.from_config(self.config.get('telegram', {}))
        self.dispatcher = AlertDispatcher(self.notifier, clock=clock)
        self.processor = SignalProcessor(
            self.aggregator,
            self.engine,
            self.filters,
            self.cooldown,
            self.dispatcher,
            clock=clock,
        )

        self.symbols = self.runtime_config.enabled_symbols()
        self.supervisor = TradeStreamSupervisor.from_config(
            self.config,
            self.symbols,
            self.aggregator,
            **(supervisor_kwargs or {}),
        )
        self.supervisor.register_handler('trade', self.processor.handle_trade)

        exchange_cfg = self.config.get('exchange', {}) or {}
        self.reference_poller = ReferencePricePoller(
            self.filters.market_volatility,
            rest=rest_client or BinanceRESTClient(exchange_cfg.get('rest_base_url')),
            alert_handler=self.dispatcher.send_volatility_alert,
        )

        self.running = False
        self._tasks: List[asyncio.Task] = []
        self._last_trade_count = 0

    def record_stop_loss(self, symbol: Optional[str] = None) -> bool:
        stop_filter = self.filters.stop_cluster
        metrics.record_stop_event()
        paused = stop_filter.record_stop(symbol)
        metrics.update_filter_pause(stop_filter.name, stop_filter.is_paused())
        return paused

    def status(self) -> Dict[str, Any]:
        now = self.clock()
        return {
            'running': self.running,
            'filters': self.filters.status(now),
            'alerts_sent': self.dispatcher.alert_count,
            'alerts_failed': self.dispatcher.failed_count,
            'pending_alerts': self.dispatcher.pending_count(),
            'connections': self.supervisor.status(),
            'window': {
                'active_symbols': self.aggregator.active_count(),
                'trades': self.aggregator.total_trades(),
            },
        }

    def _log_banner(self):
        logger.info("=" * 70)
        logger.info("AGGRESSIVE FLOW MONITOR")
        logger.info("Symbols: %s | Window: %.0fs", len(self.symbols), self.window_seconds)
        for symbol in self.symbols:
            cfg = self.runtime_config.get(symbol)
            logger.info(
                "  %s: Vol=$%.1fM | Dom=%s%% | Chg=%s%%",
                symbol,
                cfg.min_volume_usd / 1e6,
                cfg.min_dominance,
                cfg.min_price_change,
            )
        for name, settings in self.runtime_config.describe()['filters'].items():
            logger.info("  Filter %s: %s", name, 'ON' if settings.get('enabled') else 'OFF')
        logger.info("=" * 70)

    async def _log_stats(self):
        while self.running:
            try:
                await asyncio.sleep(self.stats_log_interval_s)
            except asyncio.CancelledError:
                break
            trades = self.supervisor.trade_count
            rate = (trades - self._last_trade_count) / max(self.stats_log_interval_s, 1e-9)
            self._last_trade_count = trades
            logger.info(
                "[STATS] Connected: %s/%s | Active: %s | Trades: %s | Alerts: %s | Pending: %s | Rate: %.0f/s",
                self.supervisor.connected_count(),
                len(self.symbols),
                self.aggregator.active_count(),
                self.aggregator.total_trades(),
                self.dispatcher.alert_count,
                self.dispatcher.pending_count(),
                rate,
            )

    async def announce_startup(self):
        """Send the startup notification; failure here is fatal to the process."""
        await self.notifier.send_message(format_startup(self.symbols, self.runtime_config))
        logger.info("[NOTIFY] Startup notification sent")

    async def start(self):
        self.running = True
        self._log_banner()
        await self.announce_startup()

        if str(self.monitoring_cfg.get('enable_metrics', False)).lower() == 'true':
            start_metrics_server(
                int(self.monitoring_cfg.get('prometheus_port', 9090)),
                port_scan_limit=int(self.monitoring_cfg.get('prometheus_port_scan', 0)),
                port_file=self.monitoring_cfg.get('metrics_port_file'),
            )

        self._tasks = [
            asyncio.create_task(self.supervisor.start()),
            asyncio.create_task(self.reference_poller.start()),
            asyncio.create_task(self._log_stats()),
        ]

        async def _cleanup():
            await self.stop()

        await run_tasks_with_cleanup(self._tasks, cleanup=_cleanup)

    async def stop(self):
        if not self.running:
            return
        self.running = False
        logger.info("[SHUTDOWN] Stopping...")
        await self.supervisor.stop()
        await self.reference_poller.stop()
        await cancel_tasks(self._tasks)
        self._tasks = []
        cancelled = await self.dispatcher.cancel_pending()
        if cancelled:
            logger.info("[SHUTDOWN] Cancelled %s pending alerts", cancelled)
        try:
            await self.notifier.send_message("⛔ Aggressive Flow Monitor Stopped")
        except Exception as e:
            logger.warning("[SHUTDOWN] Stop notification failed: %s", e)
        await self.notifier.close()


async def main() -> int:
    try:
        monitor = FlowMonitor(load_config())
    except ConfigError as e:
        logger.error("[FATAL] Invalid configuration: %s", e)
        return 1

    loop = asyncio.get_running_loop()
    main_task = asyncio.current_task()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, main_task.cancel)
        except NotImplementedError:
            pass

    try:
        await monitor.start()
    except asyncio.CancelledError:
        logger.info("System shutting down on signal")
        await monitor.stop()
    except NotificationError as e:
        logger.error("[FATAL] Startup notification failed: %s", e)
        await monitor.stop()
        return 1
    except Exception:
        logger.exception("[FATAL] Monitor failed")
        await monitor.stop()
        return 1
    return 0


def run():
    setup_logging()
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
