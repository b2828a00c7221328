"""시장 데이터 스트림 구독 빌더."""

from __future__ import annotations

import asyncio
import itertools
import json
import warnings
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional, Sequence, Union

from ..utils.exceptions import ParameterError
from ..utils.logger import get_logger
from . import normalizers
from .socket import Frame, ReconnectingWebSocket, SocketFactory, SocketOptions
from .topics import (
    Channel,
    MarketSegment,
    SymbolsLike,
    Topic,
    as_symbol_list,
    partial_depth_topics,
    symbol_topics,
)

logger = get_logger(__name__)

Callback = Callable[[Any], Any]
Transformer = Callable[[Any], Any]
TopicsLike = Union[Topic, Sequence[Topic]]

# 시장별 채널 정규화 함수. 없는 채널은 해당 시장에서 지원하지 않는다.
SEGMENT_NORMALIZERS: dict[MarketSegment, dict[Channel, Transformer]] = {
    MarketSegment.SPOT: {
        Channel.TICKER: normalizers.ticker,
        Channel.MINI_TICKER: normalizers.mini_ticker,
        Channel.DEPTH: normalizers.depth,
        Channel.KLINE: normalizers.candle,
        Channel.TRADE: normalizers.trade,
        Channel.AGG_TRADE: normalizers.agg_trade,
        Channel.BOOK_TICKER: normalizers.book_ticker,
        Channel.ALL_TICKERS: normalizers.each(normalizers.ticker),
        Channel.ALL_MINI_TICKERS: normalizers.each(normalizers.mini_ticker),
    },
    MarketSegment.FUTURES: {
        Channel.TICKER: normalizers.futures_ticker,
        Channel.MINI_TICKER: normalizers.mini_ticker,
        Channel.DEPTH: normalizers.futures_depth,
        Channel.RPI_DEPTH: normalizers.futures_depth,
        Channel.KLINE: normalizers.candle,
        Channel.AGG_TRADE: normalizers.futures_agg_trade,
        Channel.BOOK_TICKER: normalizers.book_ticker,
        Channel.MARK_PRICE: normalizers.mark_price,
        Channel.LIQUIDATION: normalizers.liquidation,
        Channel.ALL_TICKERS: normalizers.each(normalizers.futures_ticker),
        Channel.ALL_MINI_TICKERS: normalizers.each(normalizers.mini_ticker),
        Channel.ALL_MARK_PRICES: normalizers.each(normalizers.mark_price),
        Channel.ALL_LIQUIDATIONS: normalizers.liquidation,
    },
    MarketSegment.DELIVERY: {
        Channel.TICKER: normalizers.delivery_ticker,
        Channel.MINI_TICKER: normalizers.delivery_mini_ticker,
        Channel.DEPTH: normalizers.delivery_depth,
        Channel.KLINE: normalizers.delivery_candle,
        Channel.AGG_TRADE: normalizers.futures_agg_trade,
        Channel.BOOK_TICKER: normalizers.book_ticker,
        Channel.MARK_PRICE: normalizers.mark_price,
        Channel.LIQUIDATION: normalizers.liquidation,
        Channel.ALL_TICKERS: normalizers.each(normalizers.delivery_ticker),
        Channel.ALL_MINI_TICKERS: normalizers.each(normalizers.delivery_mini_ticker),
        Channel.ALL_MARK_PRICES: normalizers.each(normalizers.mark_price),
        Channel.ALL_LIQUIDATIONS: normalizers.liquidation,
    },
}


def _identity(payload: Any) -> Any:
    return payload


def _partial_depth_transformer(segment: MarketSegment, topic: Topic) -> Transformer:
    # 현물 부분 호가 페이로드에는 심볼이 없어서 구독 정보를 함께 넘긴다
    if segment is MarketSegment.SPOT:
        return lambda payload: normalizers.partial_depth(payload, symbol=topic.symbol, level=topic.level)
    if segment is MarketSegment.DELIVERY:
        return lambda payload: normalizers.delivery_partial_depth(payload, level=topic.level)
    return lambda payload: normalizers.futures_partial_depth(payload, level=topic.level)


def _is_ack(message: Any) -> bool:
    return isinstance(message, Mapping) and "id" in message and "result" in message


class Subscription:
    """구독 하나의 콜백 경로와 소켓 소유권. 호출하면 구독을 정리한다."""

    def __init__(
        self,
        socket: ReconnectingWebSocket,
        routes: Mapping[str, Transformer],
        callback: Callback,
        *,
        combined: bool,
    ) -> None:
        self._socket = socket
        self._routes = dict(routes)
        self._callback = callback
        self._combined = combined
        self._active = False

    @property
    def socket(self) -> ReconnectingWebSocket:
        return self._socket

    @property
    def streams(self) -> list[str]:
        return list(self._routes)

    @property
    def active(self) -> bool:
        return self._active

    def start(self) -> "Subscription":
        self._socket.start()
        self._socket.add_listener(self._on_frame)
        self._socket.acquire()
        self._active = True
        return self

    def cleanup(self, *, keep_closed: bool = True) -> None:
        """리스너를 해제하고 소켓 참조를 한 번만 반납한다.

        ``keep_closed=False``면 현재 연결만 끊어 다시 연결하게 하고 구독은 유지한다.
        이후 ``cleanup()``을 호출해야 재연결이 멈춘다.
        """
        if not self._active:
            return
        if not keep_closed:
            self._socket.reconnect()
            return
        self._active = False
        self._socket.remove_listener(self._on_frame)
        self._socket.release()
        logger.debug("구독 해제: %s", ",".join(self._routes))

    __call__ = cleanup

    def _on_frame(self, frame: Frame) -> None:
        try:
            message = json.loads(frame)
            if self._combined:
                if not isinstance(message, Mapping) or "stream" not in message:
                    logger.debug("스트림 이름이 없는 프레임을 무시합니다: %s", frame)
                    return
                transform = self._routes.get(message["stream"])
                if transform is None:
                    logger.debug("구독하지 않은 스트림 프레임을 무시합니다: %s", message["stream"])
                    return
                payload = message.get("data")
            else:
                transform = next(iter(self._routes.values()))
                payload = message
            self._callback(transform(payload))
        except Exception:
            logger.exception("스트림 프레임 처리 실패: %s", self._socket.url)


class MarketStreams:
    """시장 구분(현물/선물/코인 마진) 하나에 대한 스트림 구독 빌더."""

    def __init__(
        self,
        segment: MarketSegment,
        base_url: str,
        *,
        options: Optional[SocketOptions] = None,
        factory: Optional[SocketFactory] = None,
    ) -> None:
        if segment not in SEGMENT_NORMALIZERS:
            raise ParameterError(f"시장 스트림을 지원하지 않는 시장 구분입니다: {segment.value}")
        base = base_url.rstrip("/")
        self._segment = segment
        self._ws_base = f"{base}/ws"
        self._combined_base = f"{base}/stream"
        self._options = options
        self._factory = factory

    @property
    def segment(self) -> MarketSegment:
        return self._segment

    @property
    def ws_base(self) -> str:
        return self._ws_base

    @property
    def combined_base(self) -> str:
        return self._combined_base

    def new_socket(self, url: str) -> ReconnectingWebSocket:
        return ReconnectingWebSocket(url, options=self._options, factory=self._factory)

    def url_for(self, topics: Sequence[Topic]) -> str:
        """토픽이 하나면 단일 스트림 주소, 여러 개면 결합 스트림 주소."""
        names = [topic.stream_name for topic in topics]
        if len(names) == 1:
            return f"{self._ws_base}/{names[0]}"
        return f"{self._combined_base}?streams={'/'.join(names)}"

    def transformer(self, topic: Topic, transform: bool = True) -> Transformer:
        channel = topic.channel
        if channel is Channel.CUSTOM or not transform:
            return _identity
        if channel is Channel.PARTIAL_DEPTH:
            return _partial_depth_transformer(self._segment, topic)
        return SEGMENT_NORMALIZERS[self._segment][channel]

    def validate(self, topics: TopicsLike, callback: Callback) -> list[Topic]:
        items = [topics] if isinstance(topics, Topic) else list(topics or [])
        if not items:
            raise ParameterError("구독할 스트림이 없습니다.")
        if not callable(callback):
            raise ParameterError("콜백은 호출 가능한 객체여야 합니다.")
        supported = SEGMENT_NORMALIZERS[self._segment]
        for topic in items:
            if not isinstance(topic, Topic):
                raise ParameterError(f"Topic 객체가 아닙니다: {topic!r}")
            if topic.channel in (Channel.CUSTOM, Channel.PARTIAL_DEPTH):
                continue
            if topic.channel not in supported:
                raise ParameterError(f"{self._segment.value} 시장은 '{topic.channel.value}' 채널을 지원하지 않습니다.")
        return items

    def subscribe(self, topics: TopicsLike, callback: Callback, transform: bool = True) -> Subscription:
        """토픽을 구독하고 정리 함수 역할을 하는 ``Subscription``을 돌려준다.

        실행 중인 이벤트 루프 안에서 호출해야 한다. 인자 검증은 동기적으로 이뤄지며
        잘못된 인자는 ``ParameterError``를 던진다.
        """
        items = self.validate(topics, callback)
        routes = {topic.stream_name: self.transformer(topic, transform) for topic in items}
        socket = self.new_socket(self.url_for(items))
        subscription = Subscription(socket, routes, callback, combined=len(items) > 1)
        subscription.start()
        logger.info("%s 스트림 구독: %s", self._segment.value, socket.url)
        return subscription

    def multiplexer(self) -> "StreamMultiplexer":
        """하나의 결합 소켓을 공유하는 구독 관리자를 만든다."""
        return StreamMultiplexer(self)

    # ------------------------------------------------------------------
    # 채널별 편의 메서드
    # ------------------------------------------------------------------
    def depth(self, symbols: SymbolsLike, callback: Callback, transform: bool = True) -> Subscription:
        return self.subscribe(symbol_topics(Channel.DEPTH, symbols), callback, transform)

    def rpi_depth(self, symbols: SymbolsLike, callback: Callback, transform: bool = True) -> Subscription:
        """선물 RPI(Retail Price Improvement) 주문을 포함한 호가 증분."""
        return self.subscribe(symbol_topics(Channel.RPI_DEPTH, symbols), callback, transform)

    def partial_depth(
        self,
        payload: Union[Mapping[str, Any], Iterable[Mapping[str, Any]]],
        callback: Callback,
        transform: bool = True,
    ) -> Subscription:
        """``{"symbol": "ETHBTC", "level": 10}`` 또는 그 목록으로 부분 호가를 구독한다."""
        return self.subscribe(partial_depth_topics(payload), callback, transform)

    def candles(
        self,
        symbols: SymbolsLike,
        interval: Optional[str],
        callback: Callback,
        transform: bool = True,
    ) -> Subscription:
        if not symbols or not interval or not callable(callback):
            raise ParameterError("심볼, 인터벌, 콜백을 모두 전달해야 합니다.")
        return self.subscribe(symbol_topics(Channel.KLINE, symbols, interval=interval), callback, transform)

    def trades(self, symbols: SymbolsLike, callback: Callback, transform: bool = True) -> Subscription:
        return self.subscribe(symbol_topics(Channel.TRADE, symbols), callback, transform)

    def agg_trades(self, symbols: SymbolsLike, callback: Callback, transform: bool = True) -> Subscription:
        return self.subscribe(symbol_topics(Channel.AGG_TRADE, symbols), callback, transform)

    def book_ticker(self, symbols: SymbolsLike, callback: Callback, transform: bool = True) -> Subscription:
        return self.subscribe(symbol_topics(Channel.BOOK_TICKER, symbols), callback, transform)

    def ticker(self, symbols: SymbolsLike, callback: Callback, transform: bool = True) -> Subscription:
        return self.subscribe(symbol_topics(Channel.TICKER, symbols), callback, transform)

    def all_tickers(self, callback: Callback, transform: bool = True) -> Subscription:
        return self.subscribe(Topic(Channel.ALL_TICKERS), callback, transform)

    def all_tickers_deprecated(self, callback: Callback, transform: bool = True) -> Subscription:
        """이전 이름으로 남겨 둔 전 종목 ticker 구독. ``all_tickers``와 같은 스트림을 연다."""
        warnings.warn(
            "all_tickers_deprecated는 더 이상 권장되지 않습니다. all_tickers를 사용하세요.",
            DeprecationWarning,
            stacklevel=2,
        )
        return self.all_tickers(callback, transform)

    def mini_ticker(self, symbols: SymbolsLike, callback: Callback, transform: bool = True) -> Subscription:
        return self.subscribe(symbol_topics(Channel.MINI_TICKER, symbols), callback, transform)

    def all_mini_tickers(self, callback: Callback, transform: bool = True) -> Subscription:
        return self.subscribe(Topic(Channel.ALL_MINI_TICKERS), callback, transform)

    def mark_price(self, symbols: SymbolsLike, callback: Callback, transform: bool = True) -> Subscription:
        """``"BTCUSDT@1s"`` 형태로 업데이트 주기를 지정할 수 있다."""
        return self.subscribe(symbol_topics(Channel.MARK_PRICE, symbols), callback, transform)

    def all_mark_prices(
        self,
        callback: Callback,
        transform: bool = True,
        update_speed: Optional[str] = None,
    ) -> Subscription:
        return self.subscribe(Topic(Channel.ALL_MARK_PRICES, update_speed=update_speed), callback, transform)

    def liquidations(self, symbols: SymbolsLike, callback: Callback, transform: bool = True) -> Subscription:
        return self.subscribe(symbol_topics(Channel.LIQUIDATION, symbols), callback, transform)

    def all_liquidations(self, callback: Callback, transform: bool = True) -> Subscription:
        return self.subscribe(Topic(Channel.ALL_LIQUIDATIONS), callback, transform)

    def custom_sub_stream(self, streams: Union[str, Sequence[str]], callback: Callback) -> Subscription:
        """임의의 스트림 이름을 그대로 구독한다. 페이로드는 변환하지 않는다."""
        names = [name.strip() for name in as_symbol_list(streams) if isinstance(name, str) and name.strip()]
        if not names:
            raise ParameterError("커스텀 스트림 이름이 비어 있습니다.")
        return self.subscribe([Topic(Channel.CUSTOM, stream=name) for name in names], callback, transform=False)


class Attachment:
    """``StreamMultiplexer.attach``가 돌려주는 정리 함수."""

    def __init__(self, multiplexer: "StreamMultiplexer", routes: Mapping[str, Transformer], callback: Callback) -> None:
        self._multiplexer = multiplexer
        self._routes = dict(routes)
        self._callback = callback
        self._active = True

    @property
    def streams(self) -> list[str]:
        return list(self._routes)

    @property
    def active(self) -> bool:
        return self._active

    def deliver(self, stream: str, payload: Any) -> None:
        transform = self._routes.get(stream)
        if transform is None or not self._active:
            return
        try:
            self._callback(transform(payload))
        except Exception:
            logger.exception("스트림 프레임 처리 실패: %s", stream)

    def cleanup(self, *, keep_closed: bool = True) -> None:
        """구독을 해제한다. ``keep_closed=False``면 공유 연결만 끊고 구독은 유지한다."""
        if not self._active:
            return
        if not keep_closed:
            self._multiplexer.drop_connection()
            return
        self._active = False
        self._multiplexer.detach(self)

    __call__ = cleanup


class StreamMultiplexer:
    """하나의 결합 소켓 위에서 SUBSCRIBE/UNSUBSCRIBE로 토픽을 공유한다.

    스트림 이름별 참조 수를 세어 첫 구독자에서 SUBSCRIBE, 마지막 구독자에서
    UNSUBSCRIBE를 보낸다. 재연결될 때마다 붙어 있는 모든 스트림을 다시 구독한다.
    """

    def __init__(self, streams: MarketStreams) -> None:
        self._streams = streams
        self._socket: Optional[ReconnectingWebSocket] = None
        self._attachments: list[Attachment] = []
        self._refs: dict[str, int] = {}
        self._ids = itertools.count(1)
        self._pending: set[asyncio.Task[Any]] = set()

    @property
    def socket(self) -> Optional[ReconnectingWebSocket]:
        return self._socket

    @property
    def active_streams(self) -> list[str]:
        return list(self._refs)

    def attach(self, topics: TopicsLike, callback: Callback, transform: bool = True) -> Attachment:
        items = self._streams.validate(topics, callback)
        routes = {topic.stream_name: self._streams.transformer(topic, transform) for topic in items}
        socket = self._ensure_socket()
        socket.acquire()

        attachment = Attachment(self, routes, callback)
        self._attachments.append(attachment)
        added = []
        for name in routes:
            count = self._refs.get(name, 0)
            self._refs[name] = count + 1
            if count == 0:
                added.append(name)
        if added and socket.is_open:
            self._send("SUBSCRIBE", added)
        return attachment

    def detach(self, attachment: Attachment) -> None:
        if attachment in self._attachments:
            self._attachments.remove(attachment)
        removed = []
        for name in attachment.streams:
            count = self._refs.get(name, 0) - 1
            if count <= 0:
                self._refs.pop(name, None)
                removed.append(name)
            else:
                self._refs[name] = count
        socket = self._socket
        if socket is None:
            return
        if removed and socket.is_open and socket.owner_count > 1:
            self._send("UNSUBSCRIBE", removed)
        socket.release()

    def drop_connection(self) -> None:
        """공유 연결을 끊는다. 소켓은 다시 연결되며 열리면 모든 스트림을 재구독한다."""
        if self._socket is not None:
            self._socket.reconnect()

    def _ensure_socket(self) -> ReconnectingWebSocket:
        if self._socket is None or self._socket.is_closed:
            socket = self._streams.new_socket(self._streams.combined_base)
            socket.add_listener(self._on_frame)
            socket.add_open_listener(self._on_open)
            socket.start()
            self._socket = socket
        return self._socket

    def _send(self, method: str, names: list[str]) -> None:
        socket = self._socket
        if socket is None:
            return
        payload = {"method": method, "params": names, "id": next(self._ids)}
        logger.debug("%s 전송: %s", method, names)
        self._spawn(socket.send_json(payload))

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _on_open(self) -> None:
        if self._refs:
            self._send("SUBSCRIBE", list(self._refs))

    def _on_frame(self, frame: Frame) -> None:
        try:
            message = json.loads(frame)
        except ValueError:
            logger.exception("스트림 프레임 JSON 파싱 실패")
            return
        if _is_ack(message):
            logger.debug("구독 요청 응답: %s", message)
            return
        if not isinstance(message, Mapping) or "stream" not in message:
            logger.debug("스트림 이름이 없는 프레임을 무시합니다: %s", frame)
            return
        stream = message["stream"]
        for attachment in list(self._attachments):
            attachment.deliver(stream, message.get("data"))


__all__ = [
    "Attachment",
    "Callback",
    "MarketStreams",
    "SEGMENT_NORMALIZERS",
    "StreamMultiplexer",
    "Subscription",
    "TopicsLike",
]
