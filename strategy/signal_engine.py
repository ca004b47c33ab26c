import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from analytics.window import BUY, WindowSnapshot
from config.runtime import RuntimeConfig
from strategy.filters.base import FilterContext
from strategy.filters.stack import FilterStack


@dataclass(frozen=True)
class Interpretation:
    type: str
    label: str
    direction: str
    description: str


SHORT_SQUEEZE = Interpretation(
    type='SHORT_SQUEEZE',
    label='SHORT SQUEEZE',
    direction='BUY',
    description='Aggressive buying pressure pushing shorts out',
)

LONG_LIQUIDATION = Interpretation(
    type='LONG_LIQUIDATION',
    label='LONG LIQUIDATION',
    direction='SELL',
    description='Aggressive selling pressure liquidating longs',
)


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str
    stage: str
    interpretation: Optional[Interpretation] = None
    details: Dict[str, Any] = field(default_factory=dict)


def interpret(snapshot: WindowSnapshot) -> Interpretation:
    return SHORT_SQUEEZE if snapshot.dominant_side == BUY else LONG_LIQUIDATION


class SignalEngine:
    """Admit or deny a window snapshot against instrument thresholds and the filter stack.

    ``decide`` reads configuration and filter state but never mutates either;
    identical inputs (including ``now``) give identical decisions.
    """

    def __init__(self, runtime_config: RuntimeConfig, filters: FilterStack,
                 clock: Callable[[], float] = time.time):
        self.runtime_config = runtime_config
        self.filters = filters
        self.clock = clock

    def decide(self, symbol: str, snapshot: Optional[WindowSnapshot], now: Optional[float] = None) -> Decision:
        if snapshot is None:
            return Decision(False, 'No stats', 'snapshot')

        config = self.runtime_config.get(symbol)
        if config is None or not config.enabled:
            return Decision(False, 'Symbol disabled', 'instrument')

        if snapshot.total_volume < config.min_volume_usd:
            return Decision(
                False,
                f"Volume too low: ${snapshot.total_volume / 1e6:.2f}M < ${config.min_volume_usd / 1e6:.2f}M",
                'volume',
            )

        if snapshot.dominance < config.min_dominance:
            return Decision(
                False,
                f"Dominance too low: {snapshot.dominance:.1f}% < {config.min_dominance}%",
                'dominance',
            )

        if abs(snapshot.price_change) < config.min_price_change:
            return Decision(
                False,
                f"Price change too small: {abs(snapshot.price_change):.2f}% < {config.min_price_change}%",
                'price_change',
            )

        if snapshot.dominant_side == BUY and snapshot.price_change < 0:
            return Decision(False, 'Buy dominance but price down', 'direction')
        if snapshot.dominant_side != BUY and snapshot.price_change > 0:
            return Decision(False, 'Sell dominance but price up', 'direction')

        context = FilterContext(symbol=symbol, snapshot=snapshot, now=self.clock() if now is None else now)
        denied_by, result, passed = self.filters.evaluate(context)
        if denied_by is not None:
            reason = result.reason
            if denied_by.name == 'aggression_decay':
                reason = f"Aggression: {reason}"
            return Decision(False, reason, denied_by.name, details=dict(result.details))

        details = {name: {'reason': r.reason, **r.details} for name, r in passed.items()}
        return Decision(True, result.reason, 'allowed', interpretation=interpret(snapshot), details=details)
