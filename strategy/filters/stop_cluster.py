import logging
import time
from collections import deque
from typing import Callable, Deque, Dict, Optional, Tuple

from .base import EntryFilter, FilterContext, FilterResult, remaining_minutes

logger = logging.getLogger(__name__)


class StopClusterFilter(EntryFilter):
    """Global pause after a burst of externally reported stop-loss events."""

    name = 'stop_cluster'
    label = 'Stop Cluster Protection'

    def __init__(self, runtime_config, clock: Callable[[], float] = time.time):
        super().__init__(runtime_config)
        self.clock = clock
        self.events: Deque[Tuple[float, Optional[str]]] = deque()
        self.paused_until = 0.0

    def record_stop(self, symbol: Optional[str] = None, timestamp: Optional[float] = None) -> bool:
        """Log a stop-loss event; returns True when it (re)arms the pause."""
        settings = self.settings
        if not settings['enabled']:
            return False

        now = self.clock() if timestamp is None else timestamp
        self.events.append((now, symbol))

        cutoff = now - float(settings['time_window_minutes']) * 60
        while self.events and self.events[0][0] < cutoff:
            self.events.popleft()

        if len(self.events) >= int(settings['max_stops']):
            self.paused_until = now + float(settings['pause_minutes']) * 60
            logger.warning(
                "[STOP-CLUSTER] %s stop-losses within %s min; pausing for %s min",
                len(self.events),
                settings['time_window_minutes'],
                settings['pause_minutes'],
            )
            return True
        return False

    def evaluate(self, context: FilterContext) -> FilterResult:
        if not self.enabled:
            return FilterResult(True, 'Stop cluster protection disabled')
        if context.now < self.paused_until:
            minutes = remaining_minutes(self.paused_until, context.now)
            return FilterResult(
                False,
                f"Stop cluster pause active ({minutes} min remaining)",
                {'stop_count': len(self.events)},
            )
        return FilterResult(True, 'No stop cluster detected', {'stop_count': len(self.events)})

    def is_paused(self, now: Optional[float] = None) -> bool:
        now = self.clock() if now is None else now
        return now < self.paused_until

    def status(self, now: Optional[float] = None) -> Dict:
        now = self.clock() if now is None else now
        settings = self.settings
        cutoff = now - float(settings['time_window_minutes']) * 60
        return {
            'enabled': settings['enabled'],
            'paused': now < self.paused_until,
            'remaining_minutes': remaining_minutes(self.paused_until, now),
            'recent_stops': sum(1 for ts, _ in self.events if ts >= cutoff),
            'threshold': settings['max_stops'],
        }
