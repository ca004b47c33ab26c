import time
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from config.runtime import RuntimeConfig
from .aggression_decay import AggressionDecayFilter
from .base import EntryFilter, FilterContext, FilterResult
from .market_volatility import MarketVolatilityFilter
from .stop_cluster import StopClusterFilter
from .time_window import TimeBasedFilter


class FilterStack:
    """Ordered filters evaluated uniformly; the first denial wins."""

    def __init__(self, filters: Sequence[EntryFilter]):
        names = [f.name for f in filters]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate filter names: {names}")
        self.filters: List[EntryFilter] = list(filters)
        self._by_name: Dict[str, EntryFilter] = {f.name: f for f in self.filters}

    @classmethod
    def default(cls, runtime_config: RuntimeConfig, clock: Callable[[], float] = time.time) -> 'FilterStack':
        return cls([
            AggressionDecayFilter(runtime_config),
            StopClusterFilter(runtime_config, clock=clock),
            TimeBasedFilter(runtime_config),
            MarketVolatilityFilter(runtime_config, clock=clock),
        ])

    def __iter__(self) -> Iterator[EntryFilter]:
        return iter(self.filters)

    def get(self, name: str) -> Optional[EntryFilter]:
        return self._by_name.get(name)

    @property
    def aggression_decay(self) -> Optional[AggressionDecayFilter]:
        return self._by_name.get(AggressionDecayFilter.name)

    @property
    def stop_cluster(self) -> Optional[StopClusterFilter]:
        return self._by_name.get(StopClusterFilter.name)

    @property
    def time_based(self) -> Optional[TimeBasedFilter]:
        return self._by_name.get(TimeBasedFilter.name)

    @property
    def market_volatility(self) -> Optional[MarketVolatilityFilter]:
        return self._by_name.get(MarketVolatilityFilter.name)

    def evaluate(self, context: FilterContext) -> Tuple[Optional[EntryFilter], FilterResult, Dict[str, FilterResult]]:
        """Return ``(denying_filter, result, passed)``; ``denying_filter`` is None when all pass."""
        passed: Dict[str, FilterResult] = {}
        for entry_filter in self.filters:
            result = entry_filter.evaluate(context)
            if not result.allowed:
                return entry_filter, result, passed
            passed[entry_filter.name] = result
        return None, FilterResult(True, 'All filters passed'), passed

    def status(self, now: Optional[float] = None) -> Dict[str, Dict]:
        return {f.name: f.status(now) for f in self.filters}
