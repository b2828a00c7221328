from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, List

import pytest
import websockets

from binance_streams.exchange.rest_client import ListenToken
from binance_streams.exchange.socket import SocketOptions
from binance_streams.exchange.user_streams import StreamState
from binance_streams.exchange.ws_api_streams import (
    SUBSCRIBE_LISTEN_TOKEN,
    SUBSCRIBE_SIGNATURE,
    UNSUBSCRIBE,
    ListenTokenCredential,
    SignatureCredential,
    WsApiUserStream,
)
from binance_streams.utils.exceptions import ExchangeError, WebSocketError
from binance_streams.utils.signature import create_hmac_signature

BALANCE_UPDATE = {"e": "balanceUpdate", "E": 1573200697110, "a": "BTC", "d": "100.00000000", "T": 1573200697068}


async def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> None:
    async def poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout=timeout)


def test_signature_credential_signs_sorted_params() -> None:
    credential = SignatureCredential("api-key", "api-secret", clock=lambda: 1499827319.559)

    request = asyncio.run(credential.subscribe_request())

    assert request.method == SUBSCRIBE_SIGNATURE
    assert request.expires_at is None
    params = dict(request.params)
    signature = params.pop("signature")
    assert params == {"apiKey": "api-key", "timestamp": 1499827319559}
    assert signature == create_hmac_signature("apiKey=api-key&timestamp=1499827319559", "api-secret")


def test_signature_credential_requires_keys() -> None:
    with pytest.raises(ExchangeError):
        asyncio.run(SignatureCredential("api-key", None).subscribe_request())


def test_listen_token_credential_uses_rest_client() -> None:
    calls: List[Dict[str, Any]] = []

    class TokenClient:
        def create_listen_token(self, **kwargs: Any) -> ListenToken:
            calls.append(kwargs)
            return ListenToken("tok-1", 1758792204196)

    credential = ListenTokenCredential(TokenClient(), symbol="BTCUSDT", validity=3600000)  # type: ignore[arg-type]

    request = asyncio.run(credential.subscribe_request())

    assert request.method == SUBSCRIBE_LISTEN_TOKEN
    assert request.params == {"listenToken": "tok-1"}
    assert request.expires_at == 1758792204196
    assert calls == [{"symbol": "BTCUSDT", "validity": 3600000}]


def test_subscribe_delivers_events_and_unsubscribes_on_close(
    fast_options, fake_credential_factory, ws_api_server_factory
) -> None:
    received: List[Any] = []
    server_state = ws_api_server_factory(events=[BALANCE_UPDATE])
    credential = fake_credential_factory(["token-1"])

    async def scenario() -> None:
        async with websockets.serve(server_state.handler, "127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
            stream = WsApiUserStream(
                credential, f"ws://127.0.0.1:{port}/ws-api/v3", received.append, options=fast_options
            )

            cleanup = await stream.connect()
            assert stream.state is StreamState.OPEN
            assert stream.subscription_id == 0

            await wait_until(lambda: len(received) == 1)
            cleanup()
            cleanup()
            await stream.wait_closed()

            assert stream.state is StreamState.CLOSED
            assert stream.socket is not None and stream.socket.is_closed

    asyncio.run(scenario())

    assert server_state.paths == ["/ws-api/v3"]
    assert server_state.methods == [SUBSCRIBE_LISTEN_TOKEN, UNSUBSCRIBE]
    assert server_state.requests[0]["params"] == {"listenToken": "token-1"}
    assert server_state.requests[1]["params"] == {"subscriptionId": 0}
    assert received[0]["eventType"] == "balanceUpdate"
    assert received[0]["balanceDelta"] == "100.00000000"


def test_raw_events_keep_payload_without_envelope(
    fast_options, fake_credential_factory, ws_api_server_factory
) -> None:
    received: List[Any] = []
    server_state = ws_api_server_factory(events=[BALANCE_UPDATE])

    async def scenario() -> None:
        async with websockets.serve(server_state.handler, "127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
            stream = WsApiUserStream(
                fake_credential_factory(),
                f"ws://127.0.0.1:{port}/ws-api/v3",
                received.append,
                transform=False,
                options=fast_options,
            )
            cleanup = await stream.connect()
            await wait_until(lambda: len(received) == 1)
            cleanup()
            await stream.wait_closed()

    asyncio.run(scenario())

    assert received == [BALANCE_UPDATE]


def test_token_is_renewed_before_expiration(fast_options, fake_credential_factory, ws_api_server_factory) -> None:
    server_state = ws_api_server_factory()
    credential = fake_credential_factory(["token-1", "token-2"], lifetime=0.3)

    async def scenario() -> None:
        async with websockets.serve(server_state.handler, "127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
            stream = WsApiUserStream(
                credential,
                f"ws://127.0.0.1:{port}/ws-api/v3",
                lambda _: None,
                options=fast_options,
                refresh_margin=0.2,
            )
            cleanup = await stream.connect()
            assert stream.expires_at is not None

            await wait_until(lambda: UNSUBSCRIBE in server_state.methods)
            assert stream.subscription_id != 0
            cleanup()
            await stream.wait_closed()

    asyncio.run(scenario())

    assert server_state.methods[:3] == [SUBSCRIBE_LISTEN_TOKEN, SUBSCRIBE_LISTEN_TOKEN, UNSUBSCRIBE]
    assert server_state.requests[1]["params"] == {"listenToken": "token-2"}
    assert server_state.requests[2]["params"] == {"subscriptionId": 0}
    assert credential.issued[:2] == ["token-1", "token-2"]


def test_error_response_raises_exchange_error(fast_options, fake_credential_factory, ws_api_server_factory) -> None:
    server_state = ws_api_server_factory(error={"code": -1022, "msg": "Signature for this request is not valid."})

    async def scenario() -> None:
        async with websockets.serve(server_state.handler, "127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
            stream = WsApiUserStream(
                fake_credential_factory(), f"ws://127.0.0.1:{port}/ws-api/v3", lambda _: None, options=fast_options
            )

            with pytest.raises(ExchangeError) as exc:
                await stream.connect()

            assert exc.value.code == -1022
            assert stream.state is StreamState.CLOSED
            await stream.wait_closed()
            assert stream.socket is not None and stream.socket.is_closed

    asyncio.run(scenario())

    assert server_state.methods == [SUBSCRIBE_LISTEN_TOKEN]


def test_subscribe_without_response_times_out(fake_credential_factory, ws_api_server_factory) -> None:
    server_state = ws_api_server_factory(silent=True)
    options = SocketOptions(connection_timeout=0.3, min_reconnection_delay=0.01, max_reconnection_delay=0.02)

    async def scenario() -> None:
        async with websockets.serve(server_state.handler, "127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
            stream = WsApiUserStream(
                fake_credential_factory(), f"ws://127.0.0.1:{port}/ws-api/v3", lambda _: None, options=options
            )

            with pytest.raises(WebSocketError):
                await stream.connect()

            assert stream.state is StreamState.CLOSED
            await stream.wait_closed()

    asyncio.run(scenario())


def test_credential_failure_closes_stream(fast_options, fake_credential_factory) -> None:
    credential = fake_credential_factory(fail=True)

    async def scenario() -> None:
        stream = WsApiUserStream(credential, "ws://127.0.0.1:9/ws-api/v3", lambda _: None, options=fast_options)

        with pytest.raises(ExchangeError) as exc:
            await stream.connect()

        assert exc.value.code == -3008
        assert stream.state is StreamState.CLOSED
        assert stream.socket is None

    asyncio.run(scenario())


def test_resubscribes_after_reconnect(fast_options, fake_credential_factory, ws_api_server_factory) -> None:
    server_state = ws_api_server_factory()
    credential = fake_credential_factory(["token-1"])

    async def scenario() -> None:
        async with websockets.serve(server_state.handler, "127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
            stream = WsApiUserStream(
                credential, f"ws://127.0.0.1:{port}/ws-api/v3", lambda _: None, options=fast_options
            )
            cleanup = await stream.connect()

            # 서버가 연결을 끊는 경우
            await server_state.connections[0].close()
            await wait_until(lambda: stream.subscription_id == 1)

            # 호출자가 현재 연결만 끊는 경우
            cleanup(keep_closed=False)
            await wait_until(lambda: stream.subscription_id == 2)
            assert stream.state is StreamState.OPEN
            assert stream.socket is not None and stream.socket.owner_count == 1

            cleanup()
            await stream.wait_closed()

    asyncio.run(scenario())

    assert len(server_state.paths) == 3
    assert server_state.methods == [
        SUBSCRIBE_LISTEN_TOKEN,
        SUBSCRIBE_LISTEN_TOKEN,
        SUBSCRIBE_LISTEN_TOKEN,
        UNSUBSCRIBE,
    ]
    assert server_state.requests[-1]["params"] == {"subscriptionId": 2}


def test_event_stream_terminated_triggers_resubscribe(
    fast_options, fake_credential_factory, ws_api_server_factory
) -> None:
    received: List[Any] = []
    server_state = ws_api_server_factory(events=[{"e": "eventStreamTerminated", "E": 1728973001334}])

    async def scenario() -> None:
        async with websockets.serve(server_state.handler, "127.0.0.1", 0) as server:
            port = server.sockets[0].getsockname()[1]
            stream = WsApiUserStream(
                fake_credential_factory(), f"ws://127.0.0.1:{port}/ws-api/v3", received.append, options=fast_options
            )
            cleanup = await stream.connect()

            await wait_until(lambda: server_state.methods.count(SUBSCRIBE_LISTEN_TOKEN) == 2)
            await wait_until(lambda: stream.subscription_id == 1)
            cleanup()
            await stream.wait_closed()

    asyncio.run(scenario())

    assert received[0]["type"] == "eventStreamTerminated"
    assert server_state.paths == ["/ws-api/v3"]
