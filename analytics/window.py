from collections import deque
from dataclasses import dataclass, asdict
from typing import Deque, Dict, Optional


BUY = 'buy'
SELL = 'sell'


@dataclass(frozen=True)
class WindowTrade:
    timestamp: int
    price: float
    buy_volume: float
    sell_volume: float


@dataclass(frozen=True)
class WindowSnapshot:
    buy_volume: float
    sell_volume: float
    total_volume: float
    dominant_side: str
    dominance: float
    price_change: float
    price_range: float
    trade_count: int
    duration_seconds: float
    last_price: float
    high_price: float
    low_price: float

    def to_dict(self) -> Dict:
        return asdict(self)


class SymbolWindow:
    """Exact set of trades inside a trailing window, clocked by the latest trade timestamp."""

    def __init__(self, symbol: str, window_seconds: float):
        self.symbol = symbol
        self.window_ms = int(window_seconds * 1000)
        self.trades: Deque[WindowTrade] = deque()
        self.latest_ts: Optional[int] = None
        self.high_price: Optional[float] = None
        self.low_price: Optional[float] = None

    def add_trade(self, timestamp: int, price: float, quantity: float, is_maker_sell: bool) -> None:
        notional = price * quantity
        trade = WindowTrade(
            timestamp=timestamp,
            price=price,
            buy_volume=0.0 if is_maker_sell else notional,
            sell_volume=notional if is_maker_sell else 0.0,
        )
        if self.trades and timestamp < self.trades[-1].timestamp:
            # Late arrival (reconnect burst): slot it behind any newer trades
            index = len(self.trades)
            while index > 0 and self.trades[index - 1].timestamp > timestamp:
                index -= 1
            self.trades.insert(index, trade)
        else:
            self.trades.append(trade)
        if self.high_price is None or price > self.high_price:
            self.high_price = price
        if self.low_price is None or price < self.low_price:
            self.low_price = price
        if self.latest_ts is None or timestamp > self.latest_ts:
            self.latest_ts = timestamp
        self._evict()

    def _evict(self) -> None:
        # Trades stay ordered by timestamp, so everything stale sits at the head.
        cutoff = self.latest_ts - self.window_ms
        evicted_extreme = False
        while self.trades and self.trades[0].timestamp < cutoff:
            old = self.trades.popleft()
            if old.price == self.high_price or old.price == self.low_price:
                evicted_extreme = True
        if evicted_extreme:
            self._recompute_extremes()

    def _recompute_extremes(self) -> None:
        if not self.trades:
            self.high_price = None
            self.low_price = None
            return
        prices = [t.price for t in self.trades]
        self.high_price = max(prices)
        self.low_price = min(prices)

    def get_stats(self) -> Optional[WindowSnapshot]:
        if not self.trades:
            return None

        buy_volume = 0.0
        sell_volume = 0.0
        for trade in self.trades:
            buy_volume += trade.buy_volume
            sell_volume += trade.sell_volume

        total_volume = buy_volume + sell_volume
        if total_volume <= 0:
            return None

        dominant_side = BUY if buy_volume > sell_volume else SELL
        dominance = max(buy_volume, sell_volume) / total_volume * 100

        first = self.trades[0]
        last = self.trades[-1]
        price_change = (last.price - first.price) / first.price * 100
        price_range = (self.high_price - self.low_price) if self.high_price is not None else 0.0
        duration = (last.timestamp - first.timestamp) / 1000

        return WindowSnapshot(
            buy_volume=buy_volume,
            sell_volume=sell_volume,
            total_volume=total_volume,
            dominant_side=dominant_side,
            dominance=dominance,
            price_change=price_change,
            price_range=price_range,
            trade_count=len(self.trades),
            duration_seconds=duration,
            last_price=last.price,
            high_price=self.high_price,
            low_price=self.low_price,
        )

    def reset(self) -> None:
        self.trades.clear()
        self.high_price = None
        self.low_price = None


class WindowAggregator:
    """Per-instrument rolling buy/sell notional and price extremes."""

    def __init__(self, window_seconds: float = 180):
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self.window_seconds = window_seconds
        self.states: Dict[str, SymbolWindow] = {}

    def record(self, symbol: str, timestamp: int, price: float, quantity: float, is_maker_sell: bool) -> None:
        state = self.states.get(symbol)
        if state is None:
            state = SymbolWindow(symbol, self.window_seconds)
            self.states[symbol] = state
        state.add_trade(int(timestamp), float(price), float(quantity), bool(is_maker_sell))

    def snapshot(self, symbol: str) -> Optional[WindowSnapshot]:
        state = self.states.get(symbol)
        return state.get_stats() if state else None

    def reset(self, symbol: str) -> None:
        state = self.states.get(symbol)
        if state:
            state.reset()

    def active_count(self) -> int:
        return sum(1 for state in self.states.values() if state.trades)

    def total_trades(self) -> int:
        return sum(len(state.trades) for state in self.states.values())
