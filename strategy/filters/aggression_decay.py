from collections import deque
from typing import Deque, Dict, Tuple

from analytics.window import WindowSnapshot
from .base import EntryFilter, FilterContext, FilterResult


def normalized_aggression(buy_volume: float, sell_volume: float, price_range: float) -> float:
    dominant = max(buy_volume, sell_volume)
    return dominant / price_range if price_range > 0 else dominant


class AggressionDecayFilter(EntryFilter):
    """Admit only once dominant-side aggression has faded below its recent average.

    Readings are recorded when an alert fires, never on evaluation, so the
    history describes the build-ups that already produced alerts.
    """

    name = 'aggression_decay'
    label = 'Aggression Decay'

    def __init__(self, runtime_config):
        super().__init__(runtime_config)
        self.history: Dict[str, Deque[Tuple[float, float]]] = {}

    def record(self, symbol: str, timestamp: float, snapshot: WindowSnapshot) -> None:
        if snapshot.buy_volume + snapshot.sell_volume <= 0:
            return
        reading = normalized_aggression(snapshot.buy_volume, snapshot.sell_volume, snapshot.price_range)
        history = self.history.setdefault(symbol, deque())
        history.append((timestamp, reading))

        cutoff = timestamp - float(self.settings['lookback_minutes']) * 60
        while history and history[0][0] < cutoff:
            history.popleft()

    def evaluate(self, context: FilterContext) -> FilterResult:
        settings = self.settings
        if not settings['enabled']:
            return FilterResult(True, 'Aggression decay filter disabled')

        history = self.history.get(context.symbol)
        if not history or len(history) < int(settings['min_history']):
            return FilterResult(True, 'Insufficient aggression history')

        snapshot = context.snapshot
        if snapshot.buy_volume + snapshot.sell_volume <= 0:
            return FilterResult(False, 'No volume')

        current = normalized_aggression(snapshot.buy_volume, snapshot.sell_volume, snapshot.price_range)
        average = sum(reading for _, reading in history) / len(history)
        ratio = current / average if average > 0 else 1.0
        threshold = float(settings['decay_threshold'])

        if ratio < threshold:
            reason = f"Aggression decaying: {ratio * 100:.1f}% of avg"
            return FilterResult(True, reason, {'ratio': round(ratio, 3)})
        reason = f"Aggression still high: {ratio * 100:.1f}% of avg (need <{threshold * 100:.0f}%)"
        return FilterResult(False, reason, {'ratio': round(ratio, 3)})

    def reset(self, symbol: str) -> None:
        self.history.pop(symbol, None)

    def status(self, now=None) -> Dict:
        return {
            'enabled': self.enabled,
            'tracked_symbols': len(self.history),
            'history_lengths': {symbol: len(h) for symbol, h in self.history.items()},
        }
