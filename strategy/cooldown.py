import math
import threading
import time
from typing import Callable, Dict, Tuple

from config.runtime import RuntimeConfig


class CooldownManager:
    """Refractory period per (symbol, side).

    The cooldown length is read from the live configuration on every check,
    so a changed ``cooldown_minutes`` also applies to a cooldown already
    running. Records are never swept; a stale record simply stops blocking.
    """

    def __init__(self, runtime_config: RuntimeConfig, clock: Callable[[], float] = time.time):
        self.runtime_config = runtime_config
        self.clock = clock
        self.last_alerts: Dict[Tuple[str, str], float] = {}
        self._lock = threading.Lock()

    def _cooldown_seconds(self, symbol: str) -> float:
        config = self.runtime_config.get(symbol)
        if config is None:
            return 0.0
        return float(config.cooldown_minutes) * 60

    def is_eligible(self, symbol: str, side: str) -> bool:
        if self.runtime_config.get(symbol) is None:
            return False
        with self._lock:
            last = self.last_alerts.get((symbol, side))
        if last is None:
            return True
        return self.clock() - last >= self._cooldown_seconds(symbol)

    def record_alert(self, symbol: str, side: str) -> None:
        with self._lock:
            self.last_alerts[(symbol, side)] = self.clock()

    def remaining_seconds(self, symbol: str, side: str) -> int:
        with self._lock:
            last = self.last_alerts.get((symbol, side))
        if last is None:
            return 0
        remaining = self._cooldown_seconds(symbol) - (self.clock() - last)
        return max(0, math.ceil(remaining))
