"""바이낸스 WebSocket 통합 클라이언트."""

from __future__ import annotations

from typing import Any, Callable, Iterable, Mapping, Optional, Sequence, Union

from ..config import get_settings
from ..utils.exceptions import ParameterError
from .listen_keys import ListenKeyProvider, RestListenKeyProvider
from .rest_client import BinanceClient
from .socket import SocketFactory, SocketOptions
from .streams import Callback, MarketStreams, StreamMultiplexer, Subscription
from .topics import MarketSegment, SymbolsLike
from .user_streams import USER_NORMALIZERS, UserDataStream, create_user_stream
from .ws_api_streams import ListenTokenCredential, SignatureCredential, WsApiCredential, WsApiUserStream

PartialDepthLike = Union[Mapping[str, Any], Iterable[Mapping[str, Any]]]
ProviderFactory = Callable[[MarketSegment, Optional[str]], ListenKeyProvider]
CredentialFactory = Callable[[MarketSegment, Optional[str]], WsApiCredential]

WS_API_SEGMENTS = frozenset({MarketSegment.SPOT, MarketSegment.MARGIN, MarketSegment.ISOLATED_MARGIN})


class BinanceWebSocketClient:
    """현물/선물/코인 마진 시장 스트림과 user data stream을 한곳에서 연다."""

    def __init__(
        self,
        *,
        rest_client: Optional[BinanceClient] = None,
        spot_ws_base_url: Optional[str] = None,
        futures_ws_base_url: Optional[str] = None,
        delivery_ws_base_url: Optional[str] = None,
        ws_api_url: Optional[str] = None,
        options: Optional[SocketOptions] = None,
        factory: Optional[SocketFactory] = None,
        provider_factory: Optional[ProviderFactory] = None,
        credential_factory: Optional[CredentialFactory] = None,
        keepalive_interval: Optional[float] = None,
        close_on_keepalive_failure: Optional[bool] = None,
    ) -> None:
        """
        Args:
            rest_client: listen key 관리에 쓸 REST 클라이언트. 없으면 처음 필요할 때 만든다.
            options: 소켓 재연결/타임아웃 옵션. 없으면 환경 설정 값을 쓴다.
            factory: 소켓 생성 함수 (테스트용 주입 지점).
            provider_factory: ``(segment, symbol)``로 listen key 제공자를 만드는 함수.
            credential_factory: ``(segment, symbol)``로 WebSocket API 구독 자격 증명을 만드는 함수.
        """
        settings = get_settings().binance
        self._options = options or SocketOptions.from_settings()
        self._factory = factory
        self._rest_client = rest_client
        self._owns_rest_client = rest_client is None
        self._provider_factory = provider_factory
        self._credential_factory = credential_factory
        self._ws_api_url = ws_api_url or settings.ws_api_url
        self._keepalive_interval = keepalive_interval
        self._close_on_keepalive_failure = close_on_keepalive_failure
        self._ws_bases: dict[MarketSegment, str] = {
            MarketSegment.SPOT: spot_ws_base_url or settings.spot_ws_base_url,
            MarketSegment.MARGIN: spot_ws_base_url or settings.spot_ws_base_url,
            MarketSegment.ISOLATED_MARGIN: spot_ws_base_url or settings.spot_ws_base_url,
            MarketSegment.FUTURES: futures_ws_base_url or settings.futures_ws_base_url,
            MarketSegment.DELIVERY: delivery_ws_base_url or settings.delivery_ws_base_url,
        }

        self.spot = MarketStreams(MarketSegment.SPOT, self._ws_bases[MarketSegment.SPOT], options=self._options, factory=factory)
        self.futures = MarketStreams(
            MarketSegment.FUTURES, self._ws_bases[MarketSegment.FUTURES], options=self._options, factory=factory
        )
        self.delivery = MarketStreams(
            MarketSegment.DELIVERY, self._ws_bases[MarketSegment.DELIVERY], options=self._options, factory=factory
        )

    @property
    def rest_client(self) -> BinanceClient:
        if self._rest_client is None:
            self._rest_client = BinanceClient()
        return self._rest_client

    def close(self) -> None:
        """직접 만든 REST 클라이언트 세션을 닫는다. 열린 구독은 각자 정리해야 한다."""
        if self._rest_client is not None and self._owns_rest_client:
            self._rest_client.close()

    def multiplexer(self, segment: MarketSegment = MarketSegment.SPOT) -> StreamMultiplexer:
        return self._market(segment).multiplexer()

    def _market(self, segment: MarketSegment) -> MarketStreams:
        if segment is MarketSegment.FUTURES:
            return self.futures
        if segment is MarketSegment.DELIVERY:
            return self.delivery
        return self.spot

    # ------------------------------------------------------------------
    # 현물
    # ------------------------------------------------------------------
    def depth(self, symbols: SymbolsLike, callback: Callback, transform: bool = True) -> Subscription:
        return self.spot.depth(symbols, callback, transform)

    def partial_depth(self, payload: PartialDepthLike, callback: Callback, transform: bool = True) -> Subscription:
        return self.spot.partial_depth(payload, callback, transform)

    def candles(self, symbols: SymbolsLike, interval: str, callback: Callback, transform: bool = True) -> Subscription:
        return self.spot.candles(symbols, interval, callback, transform)

    def trades(self, symbols: SymbolsLike, callback: Callback, transform: bool = True) -> Subscription:
        return self.spot.trades(symbols, callback, transform)

    def agg_trades(self, symbols: SymbolsLike, callback: Callback, transform: bool = True) -> Subscription:
        return self.spot.agg_trades(symbols, callback, transform)

    def book_ticker(self, symbols: SymbolsLike, callback: Callback, transform: bool = True) -> Subscription:
        return self.spot.book_ticker(symbols, callback, transform)

    def ticker(self, symbols: SymbolsLike, callback: Callback, transform: bool = True) -> Subscription:
        return self.spot.ticker(symbols, callback, transform)

    def all_tickers(self, callback: Callback, transform: bool = True) -> Subscription:
        return self.spot.all_tickers(callback, transform)

    def all_tickers_deprecated(self, callback: Callback, transform: bool = True) -> Subscription:
        return self.spot.all_tickers_deprecated(callback, transform)

    def mini_ticker(self, symbols: SymbolsLike, callback: Callback, transform: bool = True) -> Subscription:
        return self.spot.mini_ticker(symbols, callback, transform)

    def all_mini_tickers(self, callback: Callback, transform: bool = True) -> Subscription:
        return self.spot.all_mini_tickers(callback, transform)

    def custom_sub_stream(self, streams: Union[str, Sequence[str]], callback: Callback) -> Subscription:
        return self.spot.custom_sub_stream(streams, callback)

    # ------------------------------------------------------------------
    # USDⓈ-M 선물
    # ------------------------------------------------------------------
    def futures_depth(self, symbols: SymbolsLike, callback: Callback, transform: bool = True) -> Subscription:
        return self.futures.depth(symbols, callback, transform)

    def futures_rpi_depth(self, symbols: SymbolsLike, callback: Callback, transform: bool = True) -> Subscription:
        return self.futures.rpi_depth(symbols, callback, transform)

    def futures_partial_depth(self, payload: PartialDepthLike, callback: Callback, transform: bool = True) -> Subscription:
        return self.futures.partial_depth(payload, callback, transform)

    def futures_candles(
        self, symbols: SymbolsLike, interval: str, callback: Callback, transform: bool = True
    ) -> Subscription:
        return self.futures.candles(symbols, interval, callback, transform)

    def futures_agg_trades(self, symbols: SymbolsLike, callback: Callback, transform: bool = True) -> Subscription:
        return self.futures.agg_trades(symbols, callback, transform)

    def futures_book_ticker(self, symbols: SymbolsLike, callback: Callback, transform: bool = True) -> Subscription:
        return self.futures.book_ticker(symbols, callback, transform)

    def futures_ticker(self, symbols: SymbolsLike, callback: Callback, transform: bool = True) -> Subscription:
        return self.futures.ticker(symbols, callback, transform)

    def futures_all_tickers(self, callback: Callback, transform: bool = True) -> Subscription:
        return self.futures.all_tickers(callback, transform)

    def futures_mini_ticker(self, symbols: SymbolsLike, callback: Callback, transform: bool = True) -> Subscription:
        return self.futures.mini_ticker(symbols, callback, transform)

    def futures_all_mini_tickers(self, callback: Callback, transform: bool = True) -> Subscription:
        return self.futures.all_mini_tickers(callback, transform)

    def futures_mark_price(self, symbols: SymbolsLike, callback: Callback, transform: bool = True) -> Subscription:
        return self.futures.mark_price(symbols, callback, transform)

    def futures_all_mark_prices(
        self, callback: Callback, transform: bool = True, update_speed: Optional[str] = None
    ) -> Subscription:
        return self.futures.all_mark_prices(callback, transform, update_speed)

    def futures_liquidations(self, symbols: SymbolsLike, callback: Callback, transform: bool = True) -> Subscription:
        return self.futures.liquidations(symbols, callback, transform)

    def futures_all_liquidations(self, callback: Callback, transform: bool = True) -> Subscription:
        return self.futures.all_liquidations(callback, transform)

    def futures_custom_sub_stream(self, streams: Union[str, Sequence[str]], callback: Callback) -> Subscription:
        return self.futures.custom_sub_stream(streams, callback)

    # ------------------------------------------------------------------
    # COIN-M 선물
    # ------------------------------------------------------------------
    def delivery_depth(self, symbols: SymbolsLike, callback: Callback, transform: bool = True) -> Subscription:
        return self.delivery.depth(symbols, callback, transform)

    def delivery_partial_depth(
        self, payload: PartialDepthLike, callback: Callback, transform: bool = True
    ) -> Subscription:
        return self.delivery.partial_depth(payload, callback, transform)

    def delivery_candles(
        self, symbols: SymbolsLike, interval: str, callback: Callback, transform: bool = True
    ) -> Subscription:
        return self.delivery.candles(symbols, interval, callback, transform)

    def delivery_agg_trades(self, symbols: SymbolsLike, callback: Callback, transform: bool = True) -> Subscription:
        return self.delivery.agg_trades(symbols, callback, transform)

    def delivery_book_ticker(self, symbols: SymbolsLike, callback: Callback, transform: bool = True) -> Subscription:
        return self.delivery.book_ticker(symbols, callback, transform)

    def delivery_ticker(self, symbols: SymbolsLike, callback: Callback, transform: bool = True) -> Subscription:
        return self.delivery.ticker(symbols, callback, transform)

    def delivery_all_tickers(self, callback: Callback, transform: bool = True) -> Subscription:
        return self.delivery.all_tickers(callback, transform)

    def delivery_mini_ticker(self, symbols: SymbolsLike, callback: Callback, transform: bool = True) -> Subscription:
        return self.delivery.mini_ticker(symbols, callback, transform)

    def delivery_all_mini_tickers(self, callback: Callback, transform: bool = True) -> Subscription:
        return self.delivery.all_mini_tickers(callback, transform)

    def delivery_mark_price(self, symbols: SymbolsLike, callback: Callback, transform: bool = True) -> Subscription:
        return self.delivery.mark_price(symbols, callback, transform)

    def delivery_all_mark_prices(
        self, callback: Callback, transform: bool = True, update_speed: Optional[str] = None
    ) -> Subscription:
        return self.delivery.all_mark_prices(callback, transform, update_speed)

    def delivery_liquidations(self, symbols: SymbolsLike, callback: Callback, transform: bool = True) -> Subscription:
        return self.delivery.liquidations(symbols, callback, transform)

    def delivery_all_liquidations(self, callback: Callback, transform: bool = True) -> Subscription:
        return self.delivery.all_liquidations(callback, transform)

    def delivery_custom_sub_stream(self, streams: Union[str, Sequence[str]], callback: Callback) -> Subscription:
        return self.delivery.custom_sub_stream(streams, callback)

    # ------------------------------------------------------------------
    # user data stream
    # ------------------------------------------------------------------
    def user_stream(
        self,
        segment: MarketSegment,
        callback: Callback,
        *,
        symbol: Optional[str] = None,
        transform: bool = True,
    ) -> UserDataStream:
        """연결 전 상태의 ``UserDataStream``을 만든다."""
        return create_user_stream(
            self._provider(segment, symbol),
            segment,
            self._ws_bases[segment],
            callback,
            transform=transform,
            options=self._options,
            factory=self._factory,
            keepalive_interval=self._keepalive_interval,
            close_on_keepalive_failure=self._close_on_keepalive_failure,
        )

    def ws_api_user_stream(
        self,
        segment: MarketSegment,
        callback: Callback,
        *,
        symbol: Optional[str] = None,
        transform: bool = True,
    ) -> WsApiUserStream:
        """WebSocket API로 구독하는 연결 전 상태의 user data stream을 만든다.

        현물은 API 키 서명, 마진과 격리 마진은 listen token으로 구독한다.
        """
        if segment not in WS_API_SEGMENTS:
            raise ParameterError(f"WebSocket API user data stream을 지원하지 않는 시장입니다: {segment.value}")
        if segment is MarketSegment.ISOLATED_MARGIN and not symbol:
            raise ParameterError("격리 마진 user data stream에는 심볼이 필요합니다.")
        return WsApiUserStream(
            self._credential(segment, symbol),
            self._ws_api_url,
            callback,
            normalizer=USER_NORMALIZERS[segment],
            transform=transform,
            options=self._options,
            factory=self._factory,
        )

    async def user(self, callback: Callback, transform: bool = True) -> Callable[..., None]:
        return await self.ws_api_user_stream(MarketSegment.SPOT, callback, transform=transform).connect()

    async def margin_user(self, callback: Callback, transform: bool = True) -> Callable[..., None]:
        return await self.ws_api_user_stream(MarketSegment.MARGIN, callback, transform=transform).connect()

    async def isolated_margin_user(self, symbol: str, callback: Callback, transform: bool = True) -> Callable[..., None]:
        return await self.ws_api_user_stream(
            MarketSegment.ISOLATED_MARGIN, callback, symbol=symbol, transform=transform
        ).connect()

    async def futures_user(self, callback: Callback, transform: bool = True) -> Callable[..., None]:
        return await self.user_stream(MarketSegment.FUTURES, callback, transform=transform).connect()

    async def delivery_user(self, callback: Callback, transform: bool = True) -> Callable[..., None]:
        return await self.user_stream(MarketSegment.DELIVERY, callback, transform=transform).connect()

    def _provider(self, segment: MarketSegment, symbol: Optional[str]) -> ListenKeyProvider:
        if self._provider_factory is not None:
            return self._provider_factory(segment, symbol)
        return RestListenKeyProvider(self.rest_client, segment, symbol=symbol)

    def _credential(self, segment: MarketSegment, symbol: Optional[str]) -> WsApiCredential:
        if self._credential_factory is not None:
            return self._credential_factory(segment, symbol)
        if segment is MarketSegment.SPOT:
            credentials = self.rest_client.credentials
            return SignatureCredential(credentials.api_key, credentials.api_secret)
        return ListenTokenCredential(self.rest_client, symbol=symbol)


__all__ = [
    "BinanceWebSocketClient",
    "CredentialFactory",
    "PartialDepthLike",
    "ProviderFactory",
    "WS_API_SEGMENTS",
]
