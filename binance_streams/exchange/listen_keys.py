"""user data stream 세션 자격 증명(listen key) 제공자."""

from __future__ import annotations

import asyncio
from typing import Optional, Protocol

from .rest_client import BinanceClient
from .topics import MarketSegment


class ListenKeyProvider(Protocol):
    """listen key 발급/연장/폐기를 비동기로 수행하는 객체."""

    async def acquire(self) -> str: ...

    async def keep_alive(self, listen_key: str) -> None: ...

    async def release(self, listen_key: str) -> None: ...


class RestListenKeyProvider:
    """``BinanceClient``를 이벤트 루프 밖에서 호출하는 listen key 제공자."""

    def __init__(self, client: BinanceClient, segment: MarketSegment, *, symbol: Optional[str] = None) -> None:
        self._client = client
        self._segment = segment
        self._symbol = symbol

    @property
    def segment(self) -> MarketSegment:
        return self._segment

    @property
    def symbol(self) -> Optional[str]:
        return self._symbol

    async def acquire(self) -> str:
        return await asyncio.to_thread(self._client.create_listen_key, self._segment, symbol=self._symbol)

    async def keep_alive(self, listen_key: str) -> None:
        await asyncio.to_thread(self._client.keep_alive_listen_key, self._segment, listen_key, symbol=self._symbol)

    async def release(self, listen_key: str) -> None:
        await asyncio.to_thread(self._client.close_listen_key, self._segment, listen_key, symbol=self._symbol)


__all__ = ["ListenKeyProvider", "RestListenKeyProvider"]
