import asyncio
import json
from typing import Any, Dict, Optional

import aiohttp


class BinanceAPIError(Exception):
    def __init__(self, status: int, code: Optional[int], msg: Optional[str], body: str):
        self.status = status
        self.code = code
        self.msg = msg
        self.body = body
        text = f"Binance API error (status={status}, code={code}, msg={msg})"
        super().__init__(text)


class BinanceRESTClient:
    """Public (unsigned) USDⓈ-M futures REST endpoints."""

    def __init__(self, base_url: Optional[str] = None, timeout_s: float = 5.0):
        self.base_url = (base_url or "https://fapi.binance.com").rstrip("/")
        self.timeout_s = timeout_s
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()

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

    async def get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        session = await self._get_session()
        url = f"{self.base_url}{path}"

        async with session.get(
            url,
            params=dict(params or {}),
            timeout=aiohttp.ClientTimeout(total=self.timeout_s),
        ) as resp:
            text = await resp.text()
            content_type = resp.headers.get("Content-Type", "")
            payload: Any
            if "application/json" in content_type:
                try:
                    payload = json.loads(text)
                except ValueError:
                    payload = text
            else:
                payload = text

            if resp.status >= 400:
                code = None
                msg = None
                if isinstance(payload, dict):
                    code = payload.get("code")
                    msg = payload.get("msg")
                raise BinanceAPIError(resp.status, code, msg, text)

            return payload

    async def get_ticker_price(self, symbol: str) -> float:
        payload = await self.get("/fapi/v1/ticker/price", params={"symbol": symbol})
        if not isinstance(payload, dict) or "price" not in payload:
            raise BinanceAPIError(200, None, "Missing price in ticker response", str(payload))
        price = float(payload["price"])
        if price <= 0:
            raise BinanceAPIError(200, None, f"Non-positive price {price}", str(payload))
        return price
