import asyncio
import html
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional, TYPE_CHECKING

import aiohttp

if TYPE_CHECKING:
    from api.alerts import Alert
    from strategy.filters.market_volatility import VolatilityAlert


logger = logging.getLogger(__name__)

TELEGRAM_API = 'https://api.telegram.org'


class NotificationError(Exception):
    pass


def fmt_volume(num: float, decimals: int = 2) -> str:
    if num >= 1_000_000:
        return f"{num / 1_000_000:.{decimals}f}M"
    if num >= 1_000:
        return f"{num / 1_000:.0f}K"
    return f"{num:.0f}"


def format_structured_alert(alert: 'Alert') -> str:
    payload = {
        'timestamp': int(alert.timestamp * 1000),
        'symbol': alert.symbol,
        'signal': alert.signal_type,
        'direction': alert.direction,
        'volume': alert.volume,
        'dominance': alert.dominance,
        'priceChange': alert.price_change,
        'lastPrice': alert.last_price,
        'duration': alert.duration_seconds,
    }
    emoji = '🟢' if alert.direction == 'BUY' else '🔴'
    lines = [
        f"{emoji} <b>{html.escape(alert.label)}</b>",
        "<code>───────────────────</code>",
        f"<b>Symbol:</b> <code>{html.escape(alert.symbol)}</code>",
        f"<b>Direction:</b> <code>{alert.direction}</code>",
        f"<b>Volume:</b> ${fmt_volume(alert.volume)} in {alert.duration_seconds:.0f}s",
        f"<b>Dominance:</b> {alert.dominance:.1f}%",
        f"<b>Price Δ:</b> {alert.price_change:+.2f}%",
        f"<b>Last Price:</b> ${alert.last_price:.4f}",
        "<code>───────────────────</code>",
        f"<code>{html.escape(json.dumps(payload))}</code>",
    ]
    return '\n'.join(lines)


def format_human_alert(alert: 'Alert') -> str:
    emoji = '🟢' if alert.direction == 'BUY' else '🔴'
    base = alert.symbol[:-4] if alert.symbol.endswith('USDT') else alert.symbol
    lines = [
        f"{emoji} {html.escape(alert.label)}",
        f"💰 Volume: ${fmt_volume(alert.volume)} in {alert.duration_seconds:.0f}s",
        f"📊 Dominance: {alert.dominance:.1f}% {alert.direction}",
        '━━━━━━━━━━━━━━━━━',
        f"🎯 {html.escape(alert.symbol)} #{html.escape(base)}",
        f"📈 Price Δ: {alert.price_change:+.2f}%",
        f"💵 Last: ${alert.last_price:.4f}",
        '━━━━━━━━━━━━━━━━━',
        f"🟢 Aggressive Buy: ${fmt_volume(alert.buy_volume)}",
        f"🔴 Aggressive Sell: ${fmt_volume(alert.sell_volume)}",
    ]
    return '\n'.join(lines)


def format_volatility_alert(alert: 'VolatilityAlert') -> str:
    up = alert.direction == 'UP'
    resume = datetime.fromtimestamp(alert.resume_at, tz=timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
    return (
        f"{'⬆️🔥' if up else '⬇️❄️'} <b>MARKET VOLATILITY ALERT</b>\n\n"
        f"⚠️ <b>{html.escape(alert.symbol)} {'Pump' if up else 'Dump'} Detected</b>\n"
        "━━━━━━━━━━━━━━━━━\n"
        f"💰 Price: ${alert.price:.2f}\n"
        f"📊 Change: {alert.change_percent:+.2f}% in {alert.timeframe_minutes:g}m\n"
        f"📈 Magnitude: {alert.abs_change_percent:.2f}%\n"
        "━━━━━━━━━━━━━━━━━\n"
        f"🛑 <b>All signals PAUSED for {alert.pause_minutes:g} minutes</b>\n"
        f"⏰ Resume at: {resume}"
    )


def format_startup(symbols: Iterable[str], runtime_config) -> str:
    lines = []
    for symbol in symbols:
        cfg = runtime_config.get(symbol)
        lines.append(
            f"• {symbol}: ${cfg.min_volume_usd / 1e6:.1f}M | {cfg.min_dominance}% | {cfg.min_price_change}%"
        )
    filters = runtime_config.describe()['filters']
    flags = '\n'.join(
        f"• {name}: {'✅' if settings.get('enabled') else '❌'}" for name, settings in filters.items()
    )
    return (
        "🚀 <b>Aggressive Flow Monitor Started</b>\n\n"
        f"<b>📊 Monitoring {len(lines)} symbols:</b>\n" + '\n'.join(lines) + "\n\n"
        f"<b>🎯 Filters:</b>\n{flags}"
    )


class TelegramNotifier:
    """Alert sink posting HTML messages through the Telegram Bot API.

    Without a bot token or chat id the notifier runs in log-only mode.
    """

    def __init__(self, bot_token: Optional[str] = None, chat_id: Optional[str] = None,
                 alert_format: str = 'structured', base_url: str = TELEGRAM_API, timeout_s: float = 10.0):
        self.bot_token = bot_token or None
        self.chat_id = str(chat_id) if chat_id else None
        self.alert_format = alert_format
        self.base_url = base_url.rstrip('/')
        self.timeout_s = timeout_s
        self.enabled = bool(self.bot_token and self.chat_id)
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, section) -> 'TelegramNotifier':
        section = section or {}
        return cls(
            bot_token=section.get('bot_token'),
            chat_id=section.get('chat_id'),
            alert_format=section.get('alert_format', 'structured'),
        )

    async def _get_session(self) -> aiohttp.ClientSession:
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = aiohttp.ClientSession()
            return self._session

    async def close(self):
        async with self._lock:
            if self._session and not self._session.closed:
                await self._session.close()
                self._session = None

    async def send_message(self, text: str) -> None:
        if not self.enabled:
            logger.warning("[Notify] %s", text)
            return

        payload: Dict[str, Any] = {
            'chat_id': self.chat_id,
            'text': text,
            'parse_mode': 'HTML',
            'disable_web_page_preview': True,
        }
        url = f"{self.base_url}/bot{self.bot_token}/sendMessage"
        session = await self._get_session()
        try:
            async with session.post(
                url,
                json=payload,
                timeout=aiohttp.ClientTimeout(total=self.timeout_s),
            ) as response:
                if response.status != 200:
                    body = await response.text()
                    raise NotificationError(f"Telegram sendMessage failed with status {response.status}: {body[:200]}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise NotificationError(f"Telegram sendMessage error: {exc}") from exc

    async def send_alert(self, alert: 'Alert') -> None:
        if self.alert_format == 'human':
            text = format_human_alert(alert)
        else:
            text = format_structured_alert(alert)
        await self.send_message(text)

    async def send_volatility_alert(self, alert: 'VolatilityAlert') -> None:
        await self.send_message(format_volatility_alert(alert))
