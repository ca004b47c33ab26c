import logging
import time
from collections import deque
from dataclasses import dataclass, asdict
from typing import Callable, Deque, Dict, List, Optional, Tuple

from .base import EntryFilter, FilterContext, FilterResult, remaining_minutes

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VolatilityAlert:
    symbol: str
    timestamp: float
    price: float
    change_percent: float
    abs_change_percent: float
    timeframe_minutes: float
    pause_minutes: float

    @property
    def direction(self) -> str:
        return 'UP' if self.change_percent > 0 else 'DOWN'

    @property
    def resume_at(self) -> float:
        return self.timestamp + self.pause_minutes * 60

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['direction'] = self.direction
        data['resume_at'] = self.resume_at
        return data


class MarketVolatilityFilter(EntryFilter):
    """Market-wide kill-switch driven by a polled reference instrument.

    ``observe`` is fed by the reference-price poller, not by the trade
    stream. A breach arms a global pause and yields exactly one
    ``VolatilityAlert``; further breaches while paused are silent.
    """

    name = 'market_volatility'
    label = 'Market Volatility Kill-Switch'

    def __init__(self, runtime_config, clock: Callable[[], float] = time.time):
        super().__init__(runtime_config)
        self.clock = clock
        self.price_history: Deque[Tuple[float, float]] = deque()
        self.paused_until = 0.0
        self.last_price: Optional[float] = None
        self.last_alert_time = 0.0
        self.alerts: List[VolatilityAlert] = []
        self._tracked_symbol: Optional[str] = None

    @property
    def reference_symbol(self) -> str:
        return self.settings['reference_symbol']

    def observe(self, price: float, timestamp: Optional[float] = None) -> Optional[VolatilityAlert]:
        settings = self.settings
        if not settings['enabled']:
            return None

        symbol = settings['reference_symbol']
        if symbol != self._tracked_symbol:
            # Prices of a previous reference instrument are not comparable
            self.price_history.clear()
            self._tracked_symbol = symbol

        now = self.clock() if timestamp is None else timestamp
        self.last_price = price
        self.price_history.append((now, price))

        cutoff = now - float(settings['timeframe_minutes']) * 60
        while self.price_history and self.price_history[0][0] < cutoff:
            self.price_history.popleft()

        if len(self.price_history) < 2:
            return None

        oldest_price = self.price_history[0][1]
        change = (price - oldest_price) / oldest_price * 100
        if abs(change) < float(settings['threshold_percent']):
            return None
        if now < self.paused_until:
            return None

        return self._trigger(now, price, change, settings)

    def _trigger(self, now: float, price: float, change: float, settings: Dict) -> VolatilityAlert:
        pause_minutes = float(settings['pause_minutes'])
        self.paused_until = now + pause_minutes * 60
        alert = VolatilityAlert(
            symbol=settings['reference_symbol'],
            timestamp=now,
            price=price,
            change_percent=change,
            abs_change_percent=abs(change),
            timeframe_minutes=float(settings['timeframe_minutes']),
            pause_minutes=pause_minutes,
        )
        self.alerts.append(alert)
        self.last_alert_time = now
        logger.warning(
            "[VOLATILITY] %s moved %+.2f%% in %sm at %.2f; pausing signals for %s min",
            alert.symbol,
            change,
            settings['timeframe_minutes'],
            price,
            settings['pause_minutes'],
        )
        return alert

    def current_volatility(self) -> float:
        if len(self.price_history) < 2:
            return 0.0
        oldest = self.price_history[0][1]
        newest = self.price_history[-1][1]
        return abs((newest - oldest) / oldest) * 100

    def evaluate(self, context: FilterContext) -> FilterResult:
        if not self.enabled:
            return FilterResult(True, 'Volatility filter disabled')
        if context.now < self.paused_until:
            minutes = remaining_minutes(self.paused_until, context.now)
            return FilterResult(
                False,
                f"Market volatility pause ({minutes} min remaining)",
                {'last_alert': self.last_alert_time},
            )
        return FilterResult(True, 'Market volatility normal', {'reference_price': self.last_price})

    def is_paused(self, now: Optional[float] = None) -> bool:
        now = self.clock() if now is None else now
        return now < self.paused_until

    def recent_alerts(self, count: int = 5) -> List[VolatilityAlert]:
        return list(reversed(self.alerts[-count:])) if count > 0 else []

    def status(self, now: Optional[float] = None) -> Dict:
        now = self.clock() if now is None else now
        settings = self.settings
        return {
            'enabled': settings['enabled'],
            'reference_symbol': settings['reference_symbol'],
            'paused': now < self.paused_until,
            'remaining_minutes': remaining_minutes(self.paused_until, now),
            'current_volatility': round(self.current_volatility(), 2),
            'threshold': settings['threshold_percent'],
            'reference_price': self.last_price,
            'alert_count': len(self.alerts),
            'last_alert_time': self.last_alert_time or None,
        }
