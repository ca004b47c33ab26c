from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from analytics.window import WindowSnapshot
from config.runtime import RuntimeConfig


@dataclass(frozen=True)
class FilterContext:
    symbol: str
    snapshot: WindowSnapshot
    now: float


@dataclass(frozen=True)
class FilterResult:
    allowed: bool
    reason: str
    details: Dict[str, Any] = field(default_factory=dict)


class EntryFilter(ABC):
    """One stateful admission policy; the signal engine only sees ``evaluate``."""

    name: str = ''
    label: str = ''

    def __init__(self, runtime_config: RuntimeConfig):
        self.runtime_config = runtime_config

    @property
    def settings(self) -> Dict[str, Any]:
        return self.runtime_config.get_filter(self.name)

    @property
    def enabled(self) -> bool:
        return bool(self.settings.get('enabled', False))

    @abstractmethod
    def evaluate(self, context: FilterContext) -> FilterResult:
        pass

    def status(self, now: Optional[float] = None) -> Dict[str, Any]:
        return {'enabled': self.enabled}


def remaining_minutes(paused_until: float, now: float) -> int:
    if now >= paused_until:
        return 0
    remaining = paused_until - now
    minutes = int(remaining // 60)
    return minutes + 1 if remaining % 60 else minutes
