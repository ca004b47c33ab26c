import asyncio
import sys

sys.path.insert(0, '.')

from ingest.binance_rest import BinanceAPIError
from ingest.reference_poller import ReferencePricePoller
from strategy.filters.market_volatility import MarketVolatilityFilter
from tests.flow_fixtures import FakeClock, FakeRest, make_runtime


def _poller(prices, clock, **settings):
    volatility_settings = {'enabled': True, 'threshold_percent': 2.0, 'timeframe_minutes': 10}
    volatility_settings.update(settings)
    runtime = make_runtime(filters={'market_volatility': volatility_settings})
    volatility = MarketVolatilityFilter(runtime, clock=clock)
    rest = FakeRest(prices)
    return ReferencePricePoller(volatility, rest=rest), volatility, rest


def test_breach_is_reported_once_per_pause():
    async def _run():
        clock = FakeClock(10_000.0)
        poller, volatility, rest = _poller([100.0, 100.0, 103.0, 103.5], clock)
        seen = []

        async def on_alert(alert):
            seen.append(alert)

        poller.register_alert_handler(on_alert)
        for _ in range(4):
            await poller.poll_once()
            clock.advance(60)

        assert len(seen) == 1
        assert seen[0].symbol == 'BTCUSDT'
        assert rest.requested == ['BTCUSDT'] * 4
        assert volatility.is_paused()

    asyncio.run(_run())


def test_failed_poll_keeps_pause_state():
    async def _run():
        clock = FakeClock(10_000.0)
        poller, volatility, _ = _poller(
            [100.0, 103.0, BinanceAPIError(503, None, 'unavailable', ''), 101.0],
            clock,
        )
        await poller.poll_once()
        clock.advance(60)
        assert await poller.poll_once() is not None
        paused_until = volatility.paused_until

        clock.advance(60)
        assert await poller.poll_once() is None
        assert poller.fail_count == 1
        assert volatility.paused_until == paused_until
        assert len(volatility.price_history) == 2

        clock.advance(60)
        await poller.poll_once()
        assert poller.fail_count == 0
        assert volatility.last_price == 101.0

    asyncio.run(_run())


def test_disabled_filter_is_not_polled():
    async def _run():
        poller, volatility, rest = _poller([100.0], FakeClock(), enabled=False)
        assert await poller.poll_once() is None
        assert rest.requested == []

    asyncio.run(_run())


def test_reference_symbol_change_applies_next_cycle():
    async def _run():
        clock = FakeClock()
        poller, volatility, rest = _poller([100.0, 3000.0], clock)
        await poller.poll_once()
        volatility.runtime_config.set_filter_param('market_volatility', 'reference_symbol', 'ETHUSDT')
        await poller.poll_once()
        assert rest.requested == ['BTCUSDT', 'ETHUSDT']
        assert volatility.alerts == []
        assert list(volatility.price_history) == [(clock(), 3000.0)]
        assert poller.interval_s() == 60.0

    asyncio.run(_run())


def test_alert_handler_errors_are_contained():
    async def _run():
        clock = FakeClock()
        poller, _, _ = _poller([100.0, 110.0], clock)

        async def broken(alert):
            raise RuntimeError("sink down")

        poller.register_alert_handler(broken)
        await poller.poll_once()
        clock.advance(30)
        assert await poller.poll_once() is not None

    asyncio.run(_run())


def test_loop_stops_and_closes_client():
    async def _run():
        poller, _, rest = _poller([100.0] * 10, FakeClock())
        sleeps = []

        async def fake_sleep(delay):
            sleeps.append(delay)
            if len(sleeps) == 3:
                poller.running = False

        poller._sleep = fake_sleep
        await poller.start()
        assert len(rest.requested) == 3
        assert sleeps == [60.0, 60.0, 60.0]
        assert rest.closed

    asyncio.run(_run())
