from __future__ import annotations

import asyncio
import json
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
import websockets

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from binance_streams.exchange.socket import SocketOptions  # noqa: E402
from binance_streams.exchange.ws_api_streams import SUBSCRIBE_LISTEN_TOKEN, SubscribeRequest  # noqa: E402
from binance_streams.utils.exceptions import ExchangeError  # noqa: E402


class FakeListenKeyProvider:
    """REST 없이 listen key 발급/연장/폐기 호출을 기록하는 제공자."""

    def __init__(
        self,
        keys: Optional[List[str]] = None,
        *,
        acquire_delay: float = 0.0,
        fail_acquire: bool = False,
        fail_keep_alive: bool = False,
        fail_release: bool = False,
    ) -> None:
        self._keys = list(keys or ["listen-key-1"])
        self.acquire_delay = acquire_delay
        self.fail_acquire = fail_acquire
        self.fail_keep_alive = fail_keep_alive
        self.fail_release = fail_release
        self.acquired: List[str] = []
        self.kept_alive: List[str] = []
        self.released: List[str] = []

    async def acquire(self) -> str:
        if self.acquire_delay:
            await asyncio.sleep(self.acquire_delay)
        if self.fail_acquire:
            raise ExchangeError("listen key 발급 실패", code=-1022)
        key = self._keys.pop(0) if len(self._keys) > 1 else self._keys[0]
        self.acquired.append(key)
        return key

    async def keep_alive(self, listen_key: str) -> None:
        self.kept_alive.append(listen_key)
        if self.fail_keep_alive:
            raise ExchangeError("listen key 연장 실패", code=-1125)

    async def release(self, listen_key: str) -> None:
        self.released.append(listen_key)
        if self.fail_release:
            raise ExchangeError("listen key 폐기 실패", code=-1125)


@pytest.fixture()
def fast_options() -> SocketOptions:
    return SocketOptions(
        connection_timeout=2.0,
        min_reconnection_delay=0.01,
        max_reconnection_delay=0.05,
        close_timeout=0.5,
    )


@pytest.fixture()
def fake_provider_factory():
    return FakeListenKeyProvider


class FakeWsApiCredential:
    """listen token을 순서대로 내주는 WebSocket API 자격 증명."""

    def __init__(
        self,
        tokens: Optional[List[str]] = None,
        *,
        lifetime: Optional[float] = None,
        fail: bool = False,
    ) -> None:
        self._tokens = list(tokens or ["token-1"])
        self.lifetime = lifetime
        self.fail = fail
        self.issued: List[str] = []

    async def subscribe_request(self) -> SubscribeRequest:
        if self.fail:
            raise ExchangeError("listen token 발급 실패", code=-3008)
        token = self._tokens.pop(0) if len(self._tokens) > 1 else self._tokens[0]
        self.issued.append(token)
        expires_at = int((time.time() + self.lifetime) * 1000) if self.lifetime is not None else None
        return SubscribeRequest(SUBSCRIBE_LISTEN_TOKEN, {"listenToken": token}, expires_at)


class FakeWsApiServer:
    """``userDataStream.*`` 요청에 응답하는 WebSocket API 서버 흉내."""

    def __init__(
        self,
        *,
        events: Optional[List[Dict[str, Any]]] = None,
        error: Optional[Dict[str, Any]] = None,
        silent: bool = False,
    ) -> None:
        self.events = list(events or [])
        self.error = error
        self.silent = silent
        self.paths: List[str] = []
        self.requests: List[Dict[str, Any]] = []
        self.connections: List[Any] = []
        self._next_subscription = 0

    @property
    def methods(self) -> List[str]:
        return [request["method"] for request in self.requests]

    async def handler(self, connection) -> None:
        self.paths.append(connection.request.path)
        self.connections.append(connection)
        try:
            async for raw in connection:
                request = json.loads(raw)
                self.requests.append(request)
                if self.silent:
                    continue
                if self.error is not None:
                    await connection.send(json.dumps({"id": request["id"], "status": 400, "error": self.error}))
                    continue
                if not request["method"].startswith("userDataStream.subscribe"):
                    await connection.send(json.dumps({"id": request["id"], "status": 200, "result": {}}))
                    continue
                subscription_id = self._next_subscription
                self._next_subscription += 1
                await connection.send(
                    json.dumps({"id": request["id"], "status": 200, "result": {"subscriptionId": subscription_id}})
                )
                # 이벤트는 첫 구독에만 보낸다
                events, self.events = self.events, []
                for event in events:
                    await connection.send(json.dumps({"subscriptionId": subscription_id, "event": event}))
        except websockets.ConnectionClosed:
            pass


@pytest.fixture()
def fake_credential_factory():
    return FakeWsApiCredential


@pytest.fixture()
def ws_api_server_factory():
    return FakeWsApiServer
