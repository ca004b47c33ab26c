import asyncio
import logging
import math
import time
from dataclasses import dataclass, asdict
from typing import Callable, Dict, Optional, Tuple

from analytics.window import WindowSnapshot
from api.metrics import metrics
from strategy.signal_engine import Interpretation


logger = logging.getLogger(__name__)

AlertKey = Tuple[str, str]


@dataclass(frozen=True)
class Alert:
    symbol: str
    side: str
    signal_type: str
    label: str
    direction: str
    volume: float
    buy_volume: float
    sell_volume: float
    dominance: float
    price_change: float
    last_price: float
    duration_seconds: float
    timestamp: float

    @property
    def key(self) -> AlertKey:
        return (self.symbol, self.side)

    @classmethod
    def build(cls, symbol: str, snapshot: WindowSnapshot, interpretation: Interpretation,
              timestamp: float) -> 'Alert':
        return cls(
            symbol=symbol,
            side=snapshot.dominant_side,
            signal_type=interpretation.type,
            label=interpretation.label,
            direction=interpretation.direction,
            volume=snapshot.total_volume,
            buy_volume=snapshot.buy_volume,
            sell_volume=snapshot.sell_volume,
            dominance=snapshot.dominance,
            price_change=snapshot.price_change,
            last_price=snapshot.last_price,
            duration_seconds=snapshot.duration_seconds,
            timestamp=timestamp,
        )

    def to_dict(self) -> Dict:
        return asdict(self)


def seconds_to_next_minute(now: float) -> float:
    return math.ceil(now / 60) * 60 - now


class AlertDispatcher:
    """Deliver alerts at the start of the next wall-clock minute.

    At most one alert per (symbol, side) is pending at a time; ``schedule``
    returns False instead of queueing a second one. Delivery failures are
    logged and never roll back the caller's cooldown state.
    """

    def __init__(self, notifier, clock: Callable[[], float] = time.time, defer_to_minute: bool = True):
        self.notifier = notifier
        self.clock = clock
        self.defer_to_minute = defer_to_minute
        self.pending: Dict[AlertKey, asyncio.Task] = {}
        self.alert_count = 0
        self.failed_count = 0
        self.accepting = True

    def is_pending(self, symbol: str, side: str) -> bool:
        return (symbol, side) in self.pending

    def pending_count(self) -> int:
        return len(self.pending)

    def schedule(self, alert: Alert) -> bool:
        if not self.accepting:
            logger.info("[ALERT] %s dropped; dispatcher is shutting down", alert.symbol)
            return False
        key = alert.key
        if key in self.pending:
            return False

        delay = seconds_to_next_minute(self.clock()) if self.defer_to_minute else 0.0
        logger.info(
            "[ALERT] %s %s - waiting %.1fs until next minute",
            alert.symbol,
            alert.label,
            delay,
        )
        task = asyncio.get_running_loop().create_task(self._deliver_later(key, alert, delay))
        self.pending[key] = task
        metrics.record_alert_scheduled(alert.direction)
        metrics.update_pending_alerts(len(self.pending))
        return True

    async def _deliver_later(self, key: AlertKey, alert: Alert, delay: float) -> None:
        try:
            if delay > 0:
                await asyncio.sleep(delay)
            await self.notifier.send_alert(alert)
            self.alert_count += 1
            metrics.record_alert_sent()
            logger.info("[ALERT] %s sent (%s total)", alert.symbol, self.alert_count)
        except asyncio.CancelledError:
            logger.info("[ALERT] %s %s cancelled before delivery", alert.symbol, alert.direction)
            raise
        except Exception as exc:
            self.failed_count += 1
            metrics.record_alert_failed()
            logger.error("[ALERT] %s delivery failed: %s", alert.symbol, exc)
        finally:
            if self.pending.get(key) is asyncio.current_task():
                del self.pending[key]
            metrics.update_pending_alerts(len(self.pending))

    async def cancel_pending(self) -> int:
        """Stop accepting alerts and cancel every delayed delivery; returns how many were cancelled."""
        self.accepting = False
        tasks = list(self.pending.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.pending.clear()
        metrics.update_pending_alerts(0)
        return len(tasks)

    async def send_volatility_alert(self, alert) -> bool:
        try:
            await self.notifier.send_volatility_alert(alert)
            return True
        except Exception as exc:
            logger.error("[VOLATILITY] notification failed: %s", exc)
            return False
