import asyncio
import copy
import json
from datetime import datetime, timezone
from typing import Dict, List, Optional

from analytics.window import BUY, SELL, WindowSnapshot
from api.notifier import NotificationError
from config.runtime import RuntimeConfig

# Wednesday 2024-01-03 12:00:00 UTC
WEDNESDAY_NOON = datetime(2024, 1, 3, 12, 0, tzinfo=timezone.utc).timestamp()

INSTRUMENT = {
    'min_volume_usd': 1_000_000,
    'min_dominance': 65,
    'min_price_change': 0.6,
    'cooldown_minutes': 5,
}

ALL_FILTERS_OFF = {
    'aggression_decay': {'enabled': False},
    'stop_cluster': {'enabled': False},
    'time_based': {'enabled': False},
    'market_volatility': {'enabled': False},
}


class FakeClock:
    def __init__(self, now: float = WEDNESDAY_NOON):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


def make_runtime(symbols=('ADAUSDT',), filters: Optional[Dict] = None, **instrument) -> RuntimeConfig:
    params = dict(INSTRUMENT, **instrument)
    bags = copy.deepcopy(ALL_FILTERS_OFF)
    for name, values in (filters or {}).items():
        bags.setdefault(name, {}).update(values)
    return RuntimeConfig({symbol: dict(params) for symbol in symbols}, bags)


def make_config_data(filters: Optional[Dict] = None) -> Dict:
    bags = copy.deepcopy(ALL_FILTERS_OFF)
    for name, values in (filters or {}).items():
        bags[name].update(values)
    return {
        'monitor': {'window_seconds': 180, 'stats_log_interval_s': 60},
        'exchange': {'ws_base_url': 'wss://example.test/ws', 'rest_base_url': 'https://example.test'},
        'websocket': {'max_reconnects': 2, 'reconnect_delay_s': 0, 'connect_stagger_s': 0, 'stream_stale_s': 0},
        'instruments': {
            'ADAUSDT': dict(INSTRUMENT),
            'DOGEUSDT': dict(INSTRUMENT, min_volume_usd=5_000_000, min_dominance=70),
        },
        'filters': bags,
        'telegram': {'bot_token': '', 'chat_id': ''},
        'monitoring': {'enable_metrics': False},
    }


def make_snapshot(buy_volume: float, sell_volume: float, price_change: float,
                  price_range: float = 0.01, last_price: float = 1.0) -> WindowSnapshot:
    total = buy_volume + sell_volume
    return WindowSnapshot(
        buy_volume=buy_volume,
        sell_volume=sell_volume,
        total_volume=total,
        dominant_side=BUY if buy_volume > sell_volume else SELL,
        dominance=max(buy_volume, sell_volume) / total * 100,
        price_change=price_change,
        price_range=price_range,
        trade_count=10,
        duration_seconds=60.0,
        last_price=last_price,
        high_price=last_price,
        low_price=last_price - price_range,
    )


def feed_build_up(aggregator, symbol: str, start_ms: int, side: str = BUY) -> None:
    """Ten dominant-side prints moving price 0.9% in the dominant direction, plus two opposing prints."""
    step = 0.001 if side == BUY else -0.001
    for i in range(10):
        price = 1.0 + step * i
        aggregator.record(symbol, start_ms + i * 1000, price, 200_000, side == SELL)
        if i in (3, 6):
            aggregator.record(symbol, start_ms + i * 1000, price, 200_000, side == BUY)


class FakeNotifier:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.messages: List[str] = []
        self.alerts = []
        self.volatility_alerts = []
        self.closed = False

    async def send_message(self, text: str) -> None:
        if self.fail:
            raise NotificationError("sink unavailable")
        self.messages.append(text)

    async def send_alert(self, alert) -> None:
        if self.fail:
            raise NotificationError("sink unavailable")
        self.alerts.append(alert)

    async def send_volatility_alert(self, alert) -> None:
        if self.fail:
            raise NotificationError("sink unavailable")
        self.volatility_alerts.append(alert)

    async def close(self) -> None:
        self.closed = True


class FakeRest:
    """Scripted ticker prices; an Exception item is raised instead of returned."""

    def __init__(self, prices):
        self.prices = list(prices)
        self.requested: List[str] = []
        self.closed = False

    async def get_ticker_price(self, symbol: str) -> float:
        self.requested.append(symbol)
        item = self.prices.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    async def close(self):
        self.closed = True


def agg_trade(price: float, qty: float, ts: int, maker_sell: bool = False) -> str:
    return json.dumps({'e': 'aggTrade', 'p': str(price), 'q': str(qty), 'T': ts, 'm': maker_sell})


class FakeWebSocket:
    def __init__(self, messages):
        self.messages = list(messages)

    async def recv(self):
        await asyncio.sleep(0)
        if not self.messages:
            raise ConnectionError("connection closed")
        return self.messages.pop(0)


class _FakeSession:
    def __init__(self, script_item):
        self.script_item = script_item

    async def __aenter__(self):
        if isinstance(self.script_item, Exception):
            raise self.script_item
        return FakeWebSocket(self.script_item)

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeConnector:
    """Each connect() consumes one script item: an Exception fails the handshake,
    a list of messages is served and then the socket drops."""

    def __init__(self, script):
        self.script = list(script)
        self.urls: List[str] = []

    def __call__(self, url: str):
        self.urls.append(url)
        item = self.script.pop(0) if self.script else ConnectionError("refused")
        return _FakeSession(item)


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)
        await asyncio.sleep(0)
