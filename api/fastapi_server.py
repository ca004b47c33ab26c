import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import Response
from pydantic import BaseModel

from config import ConfigError, load_config
from monitoring.logging_utils import setup_logging


class ValueUpdate(BaseModel):
    value: Any


class StopReport(BaseModel):
    symbol: Optional[str] = None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def create_app(monitor=None) -> FastAPI:
    """Build the HTTP surface around a FlowMonitor.

    When no monitor is passed, one is created and run for the lifetime of the app.
    """
    state = {'monitor': monitor}

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if state['monitor'] is not None:
            yield
            return
        from main import FlowMonitor
        state['monitor'] = FlowMonitor()
        task = asyncio.create_task(state['monitor'].start())
        try:
            yield
        finally:
            await state['monitor'].stop()
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    app = FastAPI(title="Aggressive Flow Monitor API", version="1.0.0", lifespan=lifespan)

    def _monitor():
        if state['monitor'] is None:
            raise HTTPException(status_code=503, detail="Monitor not initialized")
        return state['monitor']

    def _require_symbol(symbol: str):
        monitor = _monitor()
        if monitor.runtime_config.get(symbol) is None:
            raise HTTPException(status_code=404, detail=f"Symbol {symbol} not found")
        return monitor

    def _require_filter(name: str):
        monitor = _monitor()
        if name not in monitor.runtime_config.filter_names():
            raise HTTPException(status_code=404, detail=f"Filter {name} not found")
        return monitor

    @app.get("/")
    async def root():
        monitor = state['monitor']
        return {
            "service": "Aggressive Flow Monitor",
            "version": "1.0.0",
            "status": "running" if monitor and monitor.running else "stopped",
        }

    @app.get("/favicon.ico")
    async def favicon():
        return Response(content=b"", media_type="image/x-icon")

    @app.get("/health")
    async def health():
        monitor = state['monitor']
        return {
            "status": "healthy",
            "timestamp": _now_iso(),
            "system_running": monitor.running if monitor else False,
        }

    @app.get("/api/status")
    async def get_status():
        status = _monitor().status()
        status['timestamp'] = _now_iso()
        return status

    @app.get("/api/config")
    async def get_config():
        return _monitor().runtime_config.describe()

    @app.get("/api/config/{symbol}")
    async def get_symbol_config(symbol: str):
        monitor = _require_symbol(symbol)
        return monitor.runtime_config.get(symbol).to_dict()

    @app.put("/api/config/{symbol}/enabled")
    async def set_symbol_enabled(symbol: str, update: ValueUpdate):
        monitor = _require_symbol(symbol)
        try:
            old_value, new_value = monitor.runtime_config.set_enabled(symbol, update.value)
        except ConfigError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"symbol": symbol, "param": "enabled", "old_value": old_value, "new_value": new_value}

    @app.put("/api/config/{symbol}/{param}")
    async def set_symbol_param(symbol: str, param: str, update: ValueUpdate):
        monitor = _require_symbol(symbol)
        try:
            old_value, new_value = monitor.runtime_config.set_instrument_param(symbol, param, update.value)
        except ConfigError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"symbol": symbol, "param": param, "old_value": old_value, "new_value": new_value}

    @app.get("/api/filters")
    async def get_filters():
        monitor = _monitor()
        return {
            "settings": monitor.runtime_config.describe()['filters'],
            "status": monitor.filters.status(monitor.clock()),
        }

    @app.put("/api/filters/{name}/{param}")
    async def set_filter_param(name: str, param: str, update: ValueUpdate):
        monitor = _require_filter(name)
        try:
            old_value, new_value = monitor.runtime_config.set_filter_param(name, param, update.value)
        except ConfigError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return {"filter": name, "param": param, "old_value": old_value, "new_value": new_value}

    @app.get("/api/volatility/alerts")
    async def get_volatility_alerts(count: int = 5):
        volatility = _monitor().filters.market_volatility
        alerts = [alert.to_dict() for alert in volatility.recent_alerts(count)]
        return {"alerts": alerts, "count": len(alerts), "timestamp": _now_iso()}

    @app.post("/api/stops")
    async def report_stop(report: StopReport):
        monitor = _monitor()
        paused = monitor.record_stop_loss(report.symbol)
        return {
            "paused": paused,
            "stop_cluster": monitor.filters.stop_cluster.status(monitor.clock()),
        }

    return app


if __name__ == "__main__":
    import uvicorn
    setup_logging()
    api_cfg = load_config().get('api', {}) or {}
    uvicorn.run(
        create_app(),
        host=api_cfg.get('host', '0.0.0.0'),
        port=int(api_cfg.get('port', 8000)),
        log_level="info"
    )
