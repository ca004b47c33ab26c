import asyncio
import logging
from typing import Awaitable, Callable, Optional

from api.metrics import metrics
from strategy.filters.market_volatility import MarketVolatilityFilter, VolatilityAlert
from .binance_rest import BinanceRESTClient


logger = logging.getLogger(__name__)

AlertHandler = Callable[[VolatilityAlert], Awaitable[object]]


class ReferencePricePoller:
    """Periodically poll the reference instrument and feed the volatility kill-switch.

    The interval and reference symbol are re-read from the filter settings on
    every cycle. A failed poll is logged and skipped; pause state is kept.
    """

    def __init__(self, volatility_filter: MarketVolatilityFilter, rest: Optional[BinanceRESTClient] = None,
                 alert_handler: Optional[AlertHandler] = None, sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.volatility_filter = volatility_filter
        self._rest = rest or BinanceRESTClient()
        self.alert_handler = alert_handler
        self._sleep = sleep
        self.running = False
        self.fail_count = 0

    def register_alert_handler(self, handler: AlertHandler):
        self.alert_handler = handler

    async def poll_once(self) -> Optional[VolatilityAlert]:
        if not self.volatility_filter.enabled:
            return None

        symbol = self.volatility_filter.reference_symbol
        try:
            price = await self._rest.get_ticker_price(symbol)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.fail_count += 1
            metrics.record_reference_failure()
            logger.error(
                "[VOLATILITY] %s price fetch failed (%s consecutive): %s",
                symbol,
                self.fail_count,
                e,
            )
            return None

        self.fail_count = 0
        metrics.update_reference_price(price)
        alert = self.volatility_filter.observe(price)
        metrics.update_filter_pause(self.volatility_filter.name, self.volatility_filter.is_paused())
        if alert is not None:
            metrics.record_volatility_alert()
            if self.alert_handler:
                try:
                    await self.alert_handler(alert)
                except Exception as e:
                    logger.error("[VOLATILITY] alert handler failed: %s", e)
        return alert

    def interval_s(self) -> float:
        return float(self.volatility_filter.settings['check_interval_minutes']) * 60

    async def poll_reference_price(self):
        logger.info(
            "[VOLATILITY] Monitoring %s every %.0fs",
            self.volatility_filter.reference_symbol,
            self.interval_s(),
        )
        try:
            while self.running:
                try:
                    await self.poll_once()
                    await self._sleep(self.interval_s())
                except asyncio.CancelledError:
                    break
        finally:
            self.running = False

    async def start(self):
        self.running = True
        try:
            await self.poll_reference_price()
        finally:
            await self._rest.close()

    async def stop(self):
        self.running = False
        await self._rest.close()
