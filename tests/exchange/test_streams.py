from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, List, Tuple

import pytest
import websockets

from binance_streams.exchange import normalizers
from binance_streams.exchange.socket import SocketOptions
from binance_streams.exchange.streams import MarketStreams
from binance_streams.exchange.topics import Channel, MarketSegment, Topic, symbol_topics
from binance_streams.utils.exceptions import ParameterError

DEPTH_UPDATE = {
    "e": "depthUpdate",
    "E": 1508612956950,
    "s": "ETHBTC",
    "U": 157,
    "u": 160,
    "b": [["0.0024", "10"]],
    "a": [["0.0026", "100"]],
}

TRADE = {
    "e": "trade",
    "E": 1508614495052,
    "s": "BTCUSDT",
    "t": 12345,
    "p": "0.001",
    "q": "100",
    "b": 88,
    "a": 50,
    "T": 1508614495050,
    "m": True,
    "M": True,
}


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout=timeout)


def serve_frames(frames_by_path: dict, paths: List[str]):
    async def handler(connection):
        path = connection.request.path
        paths.append(path)
        for frame in frames_by_path.get(path, []):
            await connection.send(frame if isinstance(frame, str) else json.dumps(frame))
        await connection.wait_closed()

    return handler


def test_depth_delivers_normalized_and_raw_payloads(fast_options: SocketOptions) -> None:
    normalized: List[Any] = []
    raw: List[Any] = []
    paths: List[str] = []

    async def scenario() -> None:
        handler = serve_frames({"/ws/ethbtc@depth": [DEPTH_UPDATE]}, paths)
        async with websockets.serve(handler, "127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
            streams = MarketStreams(MarketSegment.SPOT, f"ws://127.0.0.1:{port}", options=fast_options)

            first = streams.depth("ETHBTC", normalized.append)
            second = streams.depth("ETHBTC", raw.append, transform=False)
            await wait_until(lambda: normalized and raw)

            first()
            second()
            await first.socket.wait_closed()
            await second.socket.wait_closed()

    asyncio.run(scenario())

    assert paths == ["/ws/ethbtc@depth", "/ws/ethbtc@depth"]
    assert normalized == [normalizers.depth(DEPTH_UPDATE)]
    assert normalized[0]["bidDepth"] == [{"price": "0.0024", "quantity": "10"}]
    assert raw == [DEPTH_UPDATE]


def test_multiple_symbols_share_one_combined_socket(fast_options: SocketOptions) -> None:
    received: List[Any] = []
    paths: List[str] = []
    bnb_trade = dict(TRADE, s="BNBBTC", t=2)
    eth_trade = dict(TRADE, s="ETHBTC", t=1)
    combined_path = "/stream?streams=ethbtc@trade/bnbbtc@trade"

    async def scenario() -> None:
        frames = {
            combined_path: [
                {"stream": "bnbbtc@trade", "data": bnb_trade},
                {"stream": "unknown@trade", "data": TRADE},
                {"stream": "ethbtc@trade", "data": eth_trade},
            ]
        }
        async with websockets.serve(serve_frames(frames, paths), "127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
            streams = MarketStreams(MarketSegment.SPOT, f"ws://127.0.0.1:{port}", options=fast_options)

            subscription = streams.trades(["ETHBTC", "BNBBTC"], received.append)
            assert subscription.streams == ["ethbtc@trade", "bnbbtc@trade"]
            await wait_until(lambda: len(received) == 2)
            subscription()
            await subscription.socket.wait_closed()

    asyncio.run(scenario())

    assert paths == [combined_path]
    assert [event["symbol"] for event in received] == ["BNBBTC", "ETHBTC"]
    assert received[0]["buyerOrderId"] == 88


def test_malformed_frame_is_skipped(fast_options: SocketOptions) -> None:
    received: List[Any] = []
    paths: List[str] = []

    async def scenario() -> None:
        frames = {"/ws/btcusdt@trade": ["{not json", TRADE]}
        async with websockets.serve(serve_frames(frames, paths), "127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
            streams = MarketStreams(MarketSegment.SPOT, f"ws://127.0.0.1:{port}", options=fast_options)

            subscription = streams.trades("BTCUSDT", received.append)
            await wait_until(lambda: len(received) == 1)
            subscription()
            await subscription.socket.wait_closed()

    asyncio.run(scenario())

    assert received[0]["tradeId"] == 12345


def test_callback_errors_do_not_stop_delivery(fast_options: SocketOptions) -> None:
    received: List[Any] = []
    paths: List[str] = []

    def flaky(event: Any) -> None:
        received.append(event)
        if len(received) == 1:
            raise RuntimeError("consumer failure")

    async def scenario() -> None:
        frames = {"/ws/btcusdt@trade": [TRADE, dict(TRADE, t=2)]}
        async with websockets.serve(serve_frames(frames, paths), "127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
            streams = MarketStreams(MarketSegment.SPOT, f"ws://127.0.0.1:{port}", options=fast_options)

            subscription = streams.trades("BTCUSDT", flaky)
            await wait_until(lambda: len(received) == 2)
            subscription()
            await subscription.socket.wait_closed()

    asyncio.run(scenario())

    assert [event["tradeId"] for event in received] == [12345, 2]


def test_all_tickers_deliver_lists_and_partial_depth_carries_topic(fast_options: SocketOptions) -> None:
    tickers: List[Any] = []
    books: List[Any] = []
    paths: List[str] = []

    async def scenario() -> None:
        frames = {
            "/ws/!miniTicker@arr": [[{"e": "24hrMiniTicker", "s": "BTCUSDT"}, {"e": "24hrMiniTicker", "s": "ETHUSDT"}]],
            "/ws/ethbtc@depth10@100ms": [{"lastUpdateId": 160, "bids": [["0.0024", "10"]], "asks": []}],
        }
        async with websockets.serve(serve_frames(frames, paths), "127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
            streams = MarketStreams(MarketSegment.SPOT, f"ws://127.0.0.1:{port}", options=fast_options)

            all_minis = streams.all_mini_tickers(tickers.append)
            partial = streams.partial_depth({"symbol": "ETHBTC@100ms", "level": 10}, books.append)
            await wait_until(lambda: tickers and books)
            all_minis()
            partial()
            await all_minis.socket.wait_closed()
            await partial.socket.wait_closed()

    asyncio.run(scenario())

    assert [item["symbol"] for item in tickers[0]] == ["BTCUSDT", "ETHUSDT"]
    assert books == [
        {
            "symbol": "ETHBTC",
            "level": 10,
            "lastUpdateId": 160,
            "bids": [{"price": "0.0024", "quantity": "10"}],
            "asks": [],
        }
    ]


def test_cleanup_is_idempotent(fast_options: SocketOptions) -> None:
    paths: List[str] = []

    async def scenario() -> None:
        async with websockets.serve(serve_frames({}, paths), "127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
            streams = MarketStreams(MarketSegment.FUTURES, f"ws://127.0.0.1:{port}", options=fast_options)

            subscription = streams.mark_price("BTCUSDT@1s", lambda _: None)
            await subscription.socket.wait_open()
            assert subscription.socket.owner_count == 1

            subscription.cleanup()
            subscription.cleanup()
            await subscription.socket.wait_closed()

            assert subscription.socket.owner_count == 0
            assert subscription.socket.is_closed
            assert not subscription.active

    asyncio.run(scenario())

    assert paths == ["/ws/btcusdt@markPrice@1s"]


@pytest.mark.parametrize(
    "call",
    [
        lambda streams: streams.candles("ETHBTC", None, lambda _: None),
        lambda streams: streams.candles("ETHBTC", "5m", None),
        lambda streams: streams.trades([], lambda _: None),
        lambda streams: streams.depth("ETHBTC", "not-callable"),
        lambda streams: streams.mark_price("BTCUSDT", lambda _: None),
        lambda streams: streams.partial_depth({"symbol": "ETHBTC", "level": 3}, lambda _: None),
        lambda streams: streams.custom_sub_stream([], lambda _: None),
        lambda streams: streams.subscribe([], lambda _: None),
        lambda streams: streams.ticker(None, lambda _: None),
        lambda streams: streams.trades(42, lambda _: None),
        lambda streams: streams.partial_depth(None, lambda _: None),
        lambda streams: streams.partial_depth([{"symbol": "ETHBTC", "level": "deep"}], lambda _: None),
        lambda streams: streams.rpi_depth("BTCUSDT", lambda _: None),
    ],
)
def test_invalid_parameters_raise_synchronously(call, fast_options: SocketOptions) -> None:
    streams = MarketStreams(MarketSegment.SPOT, "ws://127.0.0.1:1", options=fast_options)

    with pytest.raises(ParameterError):
        call(streams)


def test_urls_for_single_and_combined_topics(fast_options: SocketOptions) -> None:
    streams = MarketStreams(MarketSegment.DELIVERY, "wss://dstream.binance.com/", options=fast_options)
    topics = symbol_topics(Channel.KLINE, ["BTCUSD_PERP", "ETHUSD_PERP"], interval="1m")

    assert streams.url_for(topics[:1]) == "wss://dstream.binance.com/ws/btcusd_perp@kline_1m"
    assert (
        streams.url_for(topics)
        == "wss://dstream.binance.com/stream?streams=btcusd_perp@kline_1m/ethusd_perp@kline_1m"
    )
    assert streams.url_for([Topic(Channel.ALL_LIQUIDATIONS)]) == "wss://dstream.binance.com/ws/!forceOrder@arr"


def test_multiplexer_reference_counts_and_resubscribes(fast_options: SocketOptions) -> None:
    sent: List[Tuple[int, Any]] = []
    first_events: List[Any] = []
    second_events: List[Any] = []
    depth_events: List[Any] = []

    async def scenario() -> None:
        connections: List[Any] = []

        async def handler(connection):
            connections.append(connection)
            number = len(connections)
            async for raw in connection:
                message = json.loads(raw)
                sent.append((number, message))
                await connection.send(json.dumps({"result": None, "id": message["id"]}))
                if message["method"] == "SUBSCRIBE" and "btcusdt@trade" in message["params"]:
                    await connection.send(json.dumps({"stream": "btcusdt@trade", "data": TRADE}))

        async with websockets.serve(handler, "127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
            streams = MarketStreams(MarketSegment.SPOT, f"ws://127.0.0.1:{port}", options=fast_options)
            multiplexer = streams.multiplexer()

            first = multiplexer.attach(symbol_topics(Channel.TRADE, "BTCUSDT"), first_events.append)
            await wait_until(lambda: len(first_events) == 1)

            second = multiplexer.attach(symbol_topics(Channel.TRADE, "BTCUSDT"), second_events.append)
            depth = multiplexer.attach(symbol_topics(Channel.DEPTH, "ETHUSDT"), depth_events.append)
            await wait_until(lambda: len(sent) == 2)

            first()
            first()
            second()
            await wait_until(lambda: len(sent) == 3)
            assert multiplexer.active_streams == ["ethusdt@depth"]

            socket = multiplexer.socket
            assert socket is not None
            socket.reconnect()
            await wait_until(lambda: len(sent) == 4)

            depth()
            await socket.wait_closed()
            assert socket.is_closed

    asyncio.run(scenario())

    assert first_events == [normalizers.trade(TRADE)]
    assert second_events == []
    assert depth_events == []
    assert sent == [
        (1, {"method": "SUBSCRIBE", "params": ["btcusdt@trade"], "id": 1}),
        (1, {"method": "SUBSCRIBE", "params": ["ethusdt@depth"], "id": 2}),
        (1, {"method": "UNSUBSCRIBE", "params": ["btcusdt@trade"], "id": 3}),
        (2, {"method": "SUBSCRIBE", "params": ["ethusdt@depth"], "id": 4}),
    ]


def test_ticker_for_three_symbols_tags_each_event(fast_options: SocketOptions) -> None:
    normalized: List[Any] = []
    raw: List[Any] = []
    paths: List[str] = []
    symbols = ["ETHBTC", "BTCUSDT", "BNBBTC"]
    streams_query = "/".join(f"{symbol.lower()}@ticker" for symbol in symbols)
    frames = [
        {"stream": f"{symbol.lower()}@ticker", "data": {"e": "24hrTicker", "E": index, "s": symbol, "c": "1"}}
        for index, symbol in enumerate(symbols)
    ]

    async def scenario() -> None:
        path = f"/stream?streams={streams_query}"
        async with websockets.serve(serve_frames({path: frames}, paths), "127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
            streams = MarketStreams(MarketSegment.SPOT, f"ws://127.0.0.1:{port}", options=fast_options)

            transformed = streams.ticker(symbols, normalized.append)
            untransformed = streams.ticker(symbols, raw.append, transform=False)
            await wait_until(lambda: len(normalized) == 3 and len(raw) == 3)
            transformed()
            untransformed()
            await transformed.socket.wait_closed()
            await untransformed.socket.wait_closed()

    asyncio.run(scenario())

    assert {event["symbol"] for event in normalized} == set(symbols)
    assert all("eventType" in event and "e" not in event for event in normalized)
    assert all("e" in event and "eventType" not in event for event in raw)
    assert {event["s"] for event in raw} == set(symbols)


def test_cleanup_without_keep_closed_reconnects_until_final_cleanup(fast_options: SocketOptions) -> None:
    paths: List[str] = []

    async def scenario() -> None:
        async with websockets.serve(serve_frames({}, paths), "127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
            streams = MarketStreams(MarketSegment.SPOT, f"ws://127.0.0.1:{port}", options=fast_options)

            subscription = streams.trades("BTCUSDT", lambda _: None)
            socket = subscription.socket
            await socket.wait_open()

            subscription.cleanup(keep_closed=False)
            await wait_until(lambda: socket.open_count == 2)
            assert subscription.active
            assert socket.owner_count == 1

            subscription.cleanup()
            subscription.cleanup()
            await asyncio.wait_for(socket.wait_closed(), timeout=2)
            await asyncio.sleep(0.2)

            assert socket.is_closed
            assert socket.owner_count == 0
            assert socket.open_count == 2
            assert not subscription.active

    asyncio.run(scenario())

    assert paths == ["/ws/btcusdt@trade", "/ws/btcusdt@trade"]


def test_rpi_depth_and_deprecated_all_tickers(fast_options: SocketOptions) -> None:
    received: List[Any] = []
    paths: List[str] = []
    rpi_update = dict(DEPTH_UPDATE, s="BTCUSDT", T=1508612956940, pu=156)

    async def scenario() -> None:
        frames = {"/futures/ws/btcusdt@rpiDepth@500ms": [rpi_update]}
        async with websockets.serve(serve_frames(frames, paths), "127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
            futures = MarketStreams(MarketSegment.FUTURES, f"ws://127.0.0.1:{port}/futures", options=fast_options)
            spot = MarketStreams(MarketSegment.SPOT, f"ws://127.0.0.1:{port}/spot", options=fast_options)

            rpi = futures.rpi_depth("BTCUSDT", received.append)
            with pytest.warns(DeprecationWarning):
                tickers = spot.all_tickers_deprecated(lambda _: None)

            await wait_until(lambda: len(received) == 1)
            await tickers.socket.wait_open()
            rpi()
            tickers()
            await rpi.socket.wait_closed()
            await tickers.socket.wait_closed()

    asyncio.run(scenario())

    assert sorted(paths) == ["/futures/ws/btcusdt@rpiDepth@500ms", "/spot/ws/!ticker@arr"]
    assert received[0]["eventType"] == "depthUpdate"
    assert received[0]["prevFinalUpdateId"] == 156
    assert received[0]["bidDepth"] == [{"price": "0.0024", "quantity": "10"}]
