import asyncio
import json
import sys

sys.path.insert(0, '.')

import pytest

from analytics.window import WindowAggregator
from ingest.trade_stream import (
    ConnectionState,
    MalformedTradeError,
    TradeStreamSupervisor,
    decode_trade,
)
from tests.flow_fixtures import FakeConnector, RecordingSleep, agg_trade


def test_decode_agg_trade():
    trade = decode_trade('ADAUSDT', agg_trade(0.5, 1000, 1_700_000_000_000, maker_sell=True))
    assert trade.symbol == 'ADAUSDT'
    assert trade.price == pytest.approx(0.5)
    assert trade.quantity == pytest.approx(1000)
    assert trade.timestamp == 1_700_000_000_000
    assert trade.is_maker_sell is True

    wrapped = json.dumps({'stream': 'adausdt@aggTrade', 'data': json.loads(agg_trade(0.5, 10, 5))})
    assert decode_trade('ADAUSDT', wrapped.encode()).quantity == pytest.approx(10)


@pytest.mark.parametrize('raw', [
    'not json',
    '[1, 2]',
    json.dumps({'e': 'trade', 'p': '1', 'q': '1', 'T': 1, 'm': False}),
    json.dumps({'p': 'abc', 'q': '1', 'T': 1, 'm': False}),
    json.dumps({'p': '0', 'q': '1', 'T': 1, 'm': False}),
    json.dumps({'p': '1', 'q': '-2', 'T': 1, 'm': False}),
    json.dumps({'p': '1', 'q': 'NaN', 'T': 1, 'm': False}),
    json.dumps({'p': '1', 'q': '1', 'm': False}),
    json.dumps({'p': '1', 'q': '1', 'T': -5, 'm': False}),
    json.dumps({'p': '1', 'q': '1', 'T': 1, 'm': 'yes'}),
])
def test_decode_rejects_malformed(raw):
    with pytest.raises(MalformedTradeError):
        decode_trade('ADAUSDT', raw)


def _supervisor(script, symbols=('ADAUSDT',), **kwargs):
    connector = FakeConnector(script)
    sleep = RecordingSleep()
    supervisor = TradeStreamSupervisor(
        symbols,
        WindowAggregator(window_seconds=180),
        ws_base_url='wss://example.test/ws/',
        reconnect_delay_s=5,
        connect_stagger_s=0,
        connect=connector,
        sleep=sleep,
        **kwargs,
    )
    return supervisor, connector, sleep


def test_successful_open_resets_attempts_and_backoff_is_linear():
    supervisor, connector, sleep = _supervisor([
        ConnectionError("refused"),
        ConnectionError("refused"),
        [agg_trade(1.0, 10, 1_000)],
    ], max_reconnects=3)

    asyncio.run(supervisor.start())

    conn = supervisor.connections['ADAUSDT']
    assert conn.state == ConnectionState.ABANDONED
    assert conn.opened_count == 1
    assert conn.messages == 1
    assert sleep.delays == [5, 10, 5, 10, 15]
    assert connector.urls[0] == 'wss://example.test/ws/adausdt@aggTrade'
    assert len(connector.urls) == 6


def test_abandoned_instrument_does_not_affect_others():
    script = [ConnectionError("refused")] * 2
    supervisor, connector, sleep = _supervisor(script, symbols=('ADAUSDT', 'DOGEUSDT'), max_reconnects=0)

    asyncio.run(supervisor.start())

    states = {symbol: conn['state'] for symbol, conn in supervisor.status().items()}
    assert states == {'ADAUSDT': 'abandoned', 'DOGEUSDT': 'abandoned'}
    assert sleep.delays == []
    assert supervisor.connected_count() == 0


def test_malformed_message_is_dropped_and_stream_continues():
    received = []

    async def handler(trade):
        received.append(trade)

    supervisor, _, _ = _supervisor([[
        agg_trade(1.0, 10, 1_000),
        b'{"p": "oops"}',
        agg_trade(1.1, 20, 2_000, maker_sell=True),
    ]], max_reconnects=0)
    supervisor.register_handler('trade', handler)

    asyncio.run(supervisor.start())

    conn = supervisor.connections['ADAUSDT']
    assert conn.dropped == 1
    assert conn.messages == 2
    assert [t.price for t in received] == [1.0, 1.1]
    snapshot = supervisor.aggregator.snapshot('ADAUSDT')
    assert snapshot.total_volume == pytest.approx(32.0)
    assert supervisor.trade_count == 2


def test_handler_failure_does_not_drop_the_connection():
    async def handler(trade):
        raise RuntimeError("boom")

    supervisor, _, _ = _supervisor([[agg_trade(1.0, 10, 1_000), agg_trade(1.0, 10, 2_000)]], max_reconnects=0)
    supervisor.register_handler('trade', handler)
    asyncio.run(supervisor.start())
    assert supervisor.connections['ADAUSDT'].messages == 2


@pytest.mark.parametrize('reset_window, expected_trades', [(False, 2), (True, 1)])
def test_window_reset_on_reconnect_is_optional(reset_window, expected_trades):
    supervisor, _, _ = _supervisor(
        [[agg_trade(1.0, 10, 1_000)], [agg_trade(1.0, 10, 2_000)]],
        max_reconnects=1,
        reset_window_on_reconnect=reset_window,
    )
    asyncio.run(supervisor.start())
    assert supervisor.connections['ADAUSDT'].opened_count == 2
    assert supervisor.aggregator.total_trades() == expected_trades


def test_stale_stream_triggers_reconnect():
    class SilentSocket:
        async def recv(self):
            await asyncio.sleep(10)

    class SilentSession:
        async def __aenter__(self):
            return SilentSocket()

        async def __aexit__(self, *exc):
            return False

    sleep = RecordingSleep()
    supervisor = TradeStreamSupervisor(
        ['ADAUSDT'],
        WindowAggregator(),
        max_reconnects=0,
        stream_stale_s=0.01,
        connect=lambda url: SilentSession(),
        sleep=sleep,
    )
    asyncio.run(supervisor.start())
    assert supervisor.connections['ADAUSDT'].state == ConnectionState.ABANDONED
    assert supervisor.connections['ADAUSDT'].opened_count == 1


def test_stop_cancels_running_streams():
    class EndlessSocket:
        async def recv(self):
            await asyncio.sleep(0.01)
            return agg_trade(1.0, 1, 1_000)

    class EndlessSession:
        async def __aenter__(self):
            return EndlessSocket()

        async def __aexit__(self, *exc):
            return False

    async def _run():
        supervisor = TradeStreamSupervisor(['ADAUSDT'], WindowAggregator(), connect=lambda url: EndlessSession())
        task = asyncio.create_task(supervisor.start())
        await asyncio.sleep(0.05)
        assert supervisor.connected_count() == 1
        await supervisor.stop()
        await asyncio.wait_for(task, timeout=1)
        return supervisor

    supervisor = asyncio.run(_run())
    assert supervisor.connections['ADAUSDT'].state == ConnectionState.DISCONNECTED


def test_from_config_reads_websocket_section():
    config = {
        'exchange': {'ws_base_url': 'wss://example.test/ws'},
        'websocket': {'max_reconnects': '4', 'reconnect_delay_s': 2, 'connect_stagger_s': 0.5,
                      'stream_stale_s': 30, 'reset_window_on_reconnect': 'true'},
    }
    supervisor = TradeStreamSupervisor.from_config(config, ['ADAUSDT'], WindowAggregator())
    assert supervisor.max_reconnects == 4
    assert supervisor.reconnect_delay_s == 2.0
    assert supervisor.reset_window_on_reconnect is True
    assert supervisor.stream_url('ADAUSDT') == 'wss://example.test/ws/adausdt@aggTrade'
