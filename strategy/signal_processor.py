import logging
import time
from typing import Callable, Dict, Optional

from analytics.window import WindowAggregator
from api.alerts import Alert, AlertDispatcher
from api.metrics import metrics
from strategy.cooldown import CooldownManager
from strategy.filters.stack import FilterStack
from strategy.signal_engine import Decision, SignalEngine

logger = logging.getLogger(__name__)

QUIET_REASONS = ('No stats', 'Symbol disabled')


class SignalProcessor:
    """Run the decision pipeline for an instrument at most once per wall-clock minute.

    On an admitted, cooldown-eligible decision the alert is handed to the
    dispatcher, the cooldown is stamped, the aggression reading is recorded
    and the instrument's window is cleared so the same build-up cannot fire
    twice.
    """

    def __init__(self, aggregator: WindowAggregator, engine: SignalEngine, filters: FilterStack,
                 cooldown: CooldownManager, dispatcher: AlertDispatcher,
                 clock: Callable[[], float] = time.time):
        self.aggregator = aggregator
        self.engine = engine
        self.filters = filters
        self.cooldown = cooldown
        self.dispatcher = dispatcher
        self.clock = clock
        self._last_evaluated_minute: Dict[str, int] = {}

    def evaluation_due(self, symbol: str, now: Optional[float] = None) -> bool:
        now = self.clock() if now is None else now
        minute = int(now // 60)
        if self._last_evaluated_minute.get(symbol) == minute:
            return False
        self._last_evaluated_minute[symbol] = minute
        return True

    async def handle_trade(self, trade) -> Optional[Decision]:
        now = self.clock()
        if not self.evaluation_due(trade.symbol, now):
            return None
        return self.evaluate(trade.symbol, now)

    def evaluate(self, symbol: str, now: Optional[float] = None) -> Decision:
        now = self.clock() if now is None else now
        snapshot = self.aggregator.snapshot(symbol)
        decision = self.engine.decide(symbol, snapshot, now=now)
        if not decision.allowed:
            metrics.record_decision('denied', decision.stage)
            if decision.reason not in QUIET_REASONS:
                logger.debug("[SIGNAL] %s blocked: %s", symbol, decision.reason)
            return decision

        side = snapshot.dominant_side
        if not self.cooldown.is_eligible(symbol, side):
            metrics.record_cooldown_block()
            metrics.record_decision('suppressed')
            logger.info(
                "[SIGNAL] %s blocked by cooldown (%ss remaining)",
                symbol,
                self.cooldown.remaining_seconds(symbol, side),
            )
            return decision

        if self.dispatcher.is_pending(symbol, side):
            metrics.record_pending_suppressed()
            metrics.record_decision('suppressed')
            logger.info("[SIGNAL] %s %s suppressed; alert already pending", symbol, side)
            return decision

        alert = Alert.build(symbol, snapshot, decision.interpretation, timestamp=now)
        if not self.dispatcher.schedule(alert):
            metrics.record_decision('suppressed')
            return decision

        metrics.record_decision('allowed')
        logger.info("[SIGNAL] %s %s admitted: %s", symbol, decision.interpretation.label, decision.details)
        decay = self.filters.aggression_decay
        if decay is not None:
            decay.record(symbol, now, snapshot)
        self.cooldown.record_alert(symbol, side)
        self.aggregator.reset(symbol)
        return decision
