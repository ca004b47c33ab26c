import asyncio
import json
import logging
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

import websockets

from analytics.window import WindowAggregator
from api.metrics import metrics
from monitoring.async_utils import cancel_tasks, run_tasks_with_cleanup


logger = logging.getLogger(__name__)

TradeHandler = Callable[['TradeEvent'], Awaitable[Any]]


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECT_SCHEDULED = "reconnect_scheduled"
    ABANDONED = "abandoned"


class MalformedTradeError(ValueError):
    pass


@dataclass(frozen=True)
class TradeEvent:
    symbol: str
    timestamp: int
    price: float
    quantity: float
    is_maker_sell: bool


@dataclass
class StreamConnection:
    symbol: str
    state: ConnectionState = ConnectionState.DISCONNECTED
    attempts: int = 0
    last_open_time: Optional[float] = None
    opened_count: int = 0
    messages: int = 0
    dropped: int = 0
    task: Optional[asyncio.Task] = None

    def to_dict(self) -> Dict:
        return {
            'state': self.state.value,
            'attempts': self.attempts,
            'last_open_time': self.last_open_time,
            'opened_count': self.opened_count,
            'messages': self.messages,
            'dropped': self.dropped,
        }


def _positive(name: str, value: Any) -> float:
    if isinstance(value, bool):
        raise MalformedTradeError(f"{name} must be numeric, got {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise MalformedTradeError(f"{name} must be numeric, got {value!r}") from None
    if not math.isfinite(number) or number <= 0:
        raise MalformedTradeError(f"{name} must be positive, got {value!r}")
    return number


def decode_trade(symbol: str, raw: Any) -> TradeEvent:
    """Decode one aggTrade payload: ``{p: str, q: str, T: int, m: bool}``."""
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode('utf-8', errors='replace')
    if isinstance(raw, str):
        try:
            data = json.loads(raw)
        except ValueError as exc:
            raise MalformedTradeError(f"invalid JSON: {exc}") from None
    else:
        data = raw
    if isinstance(data, dict) and isinstance(data.get('data'), dict):
        data = data['data']
    if not isinstance(data, dict):
        raise MalformedTradeError(f"expected an object, got {type(data).__name__}")

    event_type = data.get('e')
    if event_type is not None and event_type != 'aggTrade':
        raise MalformedTradeError(f"unexpected event type {event_type!r}")

    price = _positive('price', data.get('p'))
    quantity = _positive('quantity', data.get('q'))

    raw_ts = data.get('T', data.get('E'))
    if isinstance(raw_ts, bool) or not isinstance(raw_ts, (int, float)) or raw_ts < 0:
        raise MalformedTradeError(f"event time must be a non-negative integer, got {raw_ts!r}")

    is_maker_sell = data.get('m')
    if not isinstance(is_maker_sell, bool):
        raise MalformedTradeError(f"maker flag must be boolean, got {is_maker_sell!r}")

    return TradeEvent(
        symbol=symbol,
        timestamp=int(raw_ts),
        price=price,
        quantity=quantity,
        is_maker_sell=is_maker_sell,
    )


def _default_connect(url: str):
    return websockets.connect(url, ping_interval=None, close_timeout=5)


class TradeStreamSupervisor:
    """One aggTrade subscription per instrument, each with its own reconnect state.

    Every decoded trade is recorded in the window aggregator in arrival order
    and then handed to the registered ``trade`` handler. A dropped connection
    is retried after ``reconnect_delay_s * attempt`` seconds; once
    ``max_reconnects`` retries have failed the instrument is abandoned for
    the rest of the process lifetime.
    """

    def __init__(
        self,
        symbols: Iterable[str],
        aggregator: WindowAggregator,
        ws_base_url: str = 'wss://fstream.binance.com/ws',
        max_reconnects: int = 10,
        reconnect_delay_s: float = 5.0,
        connect_stagger_s: float = 0.2,
        stream_stale_s: float = 0.0,
        reset_window_on_reconnect: bool = False,
        connect: Optional[Callable[[str], Any]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.symbols = list(symbols)
        self.aggregator = aggregator
        self.ws_base_url = ws_base_url.rstrip('/')
        self.max_reconnects = int(max_reconnects)
        self.reconnect_delay_s = float(reconnect_delay_s)
        self.connect_stagger_s = float(connect_stagger_s)
        self.stream_stale_s = float(stream_stale_s)
        self.reset_window_on_reconnect = bool(reset_window_on_reconnect)
        self._connect = connect or _default_connect
        self._sleep = sleep
        self.clock = clock

        self.handlers: Dict[str, TradeHandler] = {}
        self.connections: Dict[str, StreamConnection] = {
            symbol: StreamConnection(symbol) for symbol in self.symbols
        }
        self.running = False
        self.trade_count = 0

    @classmethod
    def from_config(cls, config, symbols: Iterable[str], aggregator: WindowAggregator, **kwargs) -> 'TradeStreamSupervisor':
        ws_cfg = config.get('websocket', {}) or {}
        exchange_cfg = config.get('exchange', {}) or {}
        return cls(
            symbols,
            aggregator,
            ws_base_url=exchange_cfg.get('ws_base_url', 'wss://fstream.binance.com/ws'),
            max_reconnects=int(ws_cfg.get('max_reconnects', 10)),
            reconnect_delay_s=float(ws_cfg.get('reconnect_delay_s', 5)),
            connect_stagger_s=float(ws_cfg.get('connect_stagger_s', 0.2)),
            stream_stale_s=float(ws_cfg.get('stream_stale_s', 0)),
            reset_window_on_reconnect=str(ws_cfg.get('reset_window_on_reconnect', False)).lower() == 'true',
            **kwargs,
        )

    def register_handler(self, stream_type: str, handler: TradeHandler):
        self.handlers[stream_type] = handler

    def stream_url(self, symbol: str) -> str:
        return f"{self.ws_base_url}/{symbol.lower()}@aggTrade"

    def _set_state(self, conn: StreamConnection, state: ConnectionState):
        conn.state = state
        metrics.update_connection_state(conn.symbol, state.value)

    def _on_open(self, conn: StreamConnection):
        if self.reset_window_on_reconnect and conn.opened_count > 0:
            self.aggregator.reset(conn.symbol)
        conn.attempts = 0
        conn.opened_count += 1
        conn.last_open_time = self.clock()
        self._set_state(conn, ConnectionState.CONNECTED)
        logger.info("[WS] %s connected", conn.symbol)

    async def _recv(self, ws):
        if self.stream_stale_s > 0:
            try:
                return await asyncio.wait_for(ws.recv(), timeout=self.stream_stale_s)
            except asyncio.TimeoutError:
                raise ConnectionError(f"no message for {self.stream_stale_s:.0f}s") from None
        return await ws.recv()

    async def _handle_message(self, conn: StreamConnection, raw: Any):
        try:
            trade = decode_trade(conn.symbol, raw)
        except MalformedTradeError as e:
            conn.dropped += 1
            metrics.record_drop('malformed')
            logger.warning("[WS] %s dropped malformed message: %s", conn.symbol, e)
            return

        self.aggregator.record(trade.symbol, trade.timestamp, trade.price, trade.quantity, trade.is_maker_sell)
        conn.messages += 1
        self.trade_count += 1
        metrics.record_trade(conn.symbol)

        handler = self.handlers.get('trade')
        if handler:
            try:
                await handler(trade)
            except Exception:
                logger.exception("Trade handler failed for %s", conn.symbol)

    async def _run_symbol(self, conn: StreamConnection, initial_delay: float = 0.0):
        url = self.stream_url(conn.symbol)
        try:
            if initial_delay > 0:
                await self._sleep(initial_delay)

            while self.running:
                self._set_state(conn, ConnectionState.CONNECTING)
                try:
                    async with self._connect(url) as ws:
                        self._on_open(conn)
                        while self.running:
                            raw = await self._recv(ws)
                            await self._handle_message(conn, raw)
                except asyncio.CancelledError:
                    break
                except Exception as e:
                    logger.warning("[WS] %s stream error: %s", conn.symbol, e)

                if not self.running:
                    break

                if conn.attempts >= self.max_reconnects:
                    self._set_state(conn, ConnectionState.ABANDONED)
                    metrics.record_abandoned(conn.symbol)
                    logger.error("[WS] %s max reconnects (%s) reached; abandoning stream", conn.symbol, self.max_reconnects)
                    return

                conn.attempts += 1
                delay = self.reconnect_delay_s * conn.attempts
                self._set_state(conn, ConnectionState.RECONNECT_SCHEDULED)
                metrics.record_reconnect(conn.symbol)
                logger.info(
                    "[WS] %s reconnecting in %.1fs (%s/%s)",
                    conn.symbol,
                    delay,
                    conn.attempts,
                    self.max_reconnects,
                )
                await self._sleep(delay)
        except asyncio.CancelledError:
            pass
        finally:
            if conn.state != ConnectionState.ABANDONED:
                self._set_state(conn, ConnectionState.DISCONNECTED)

    async def start(self):
        self.running = True
        logger.info("[WS] Connecting to %s symbols...", len(self.symbols))
        tasks = []
        for i, symbol in enumerate(self.symbols):
            conn = self.connections[symbol]
            conn.task = asyncio.create_task(self._run_symbol(conn, i * self.connect_stagger_s))
            tasks.append(conn.task)
        await run_tasks_with_cleanup(tasks)

    async def stop(self):
        self.running = False
        await cancel_tasks(conn.task for conn in self.connections.values())

    def connected_count(self) -> int:
        return sum(1 for conn in self.connections.values() if conn.state == ConnectionState.CONNECTED)

    def status(self) -> Dict[str, Dict]:
        return {symbol: conn.to_dict() for symbol, conn in self.connections.items()}
