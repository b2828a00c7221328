"""WebSocket API(``ws-api/v3``) 기반 user data stream 구독.

현물 계정은 API 키 서명으로, 마진 계정은 REST로 발급받은 listen token으로
``userDataStream.subscribe.*`` 요청을 보낸다. 이벤트는
``{"subscriptionId": n, "event": {...}}`` 봉투에 담겨 온다.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, Protocol
from urllib.parse import urlencode

from ..utils.exceptions import AppError, ExchangeError, ParameterError, WebSocketError
from ..utils.logger import get_logger
from ..utils.signature import Signer, create_hmac_signature
from .normalizers import normalize_user_event
from .rest_client import BinanceClient
from .socket import Frame, ReconnectingWebSocket, SocketFactory, SocketOptions
from .user_streams import Callback, StreamState, UserNormalizer, unwrap_envelope

logger = get_logger(__name__)

SUBSCRIBE_SIGNATURE = "userDataStream.subscribe.signature"
SUBSCRIBE_LISTEN_TOKEN = "userDataStream.subscribe.listenToken"
UNSUBSCRIBE = "userDataStream.unsubscribe"
EVENT_STREAM_TERMINATED = "eventStreamTerminated"


@dataclass(frozen=True)
class SubscribeRequest:
    """구독 요청 한 건. ``expires_at``은 자격 증명 만료 시각(ms)이다."""

    method: str
    params: dict[str, Any] = field(default_factory=dict)
    expires_at: Optional[int] = None


class WsApiCredential(Protocol):
    """매 구독마다 새 구독 요청을 만들어 주는 자격 증명."""

    async def subscribe_request(self) -> SubscribeRequest: ...


class SignatureCredential:
    """API 키와 HMAC 서명으로 현물 계정 이벤트를 구독한다."""

    def __init__(
        self,
        api_key: Optional[str],
        api_secret: Optional[str],
        *,
        signer: Signer = create_hmac_signature,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._api_key = api_key
        self._api_secret = api_secret
        self._signer = signer
        self._clock = clock

    async def subscribe_request(self) -> SubscribeRequest:
        if not self._api_key or not self._api_secret:
            raise ExchangeError("WebSocket API 구독에는 API 키와 시크릿이 필요합니다.")
        params: dict[str, Any] = {"apiKey": self._api_key, "timestamp": int(self._clock() * 1000)}
        # WebSocket API는 파라미터를 이름순으로 정렬해 서명한다
        params["signature"] = self._signer(urlencode(sorted(params.items())), self._api_secret)
        return SubscribeRequest(SUBSCRIBE_SIGNATURE, params)


class ListenTokenCredential:
    """REST로 발급받은 listen token으로 (격리) 마진 계정 이벤트를 구독한다."""

    def __init__(self, client: BinanceClient, *, symbol: Optional[str] = None, validity: Optional[int] = None) -> None:
        self._client = client
        self._symbol = symbol
        self._validity = validity

    @property
    def symbol(self) -> Optional[str]:
        return self._symbol

    async def subscribe_request(self) -> SubscribeRequest:
        token = await asyncio.to_thread(self._client.create_listen_token, symbol=self._symbol, validity=self._validity)
        return SubscribeRequest(SUBSCRIBE_LISTEN_TOKEN, {"listenToken": token.token}, token.expiration_time)


class WsApiUserStream:
    """WebSocket API 연결 하나 위에서 user data stream 구독을 유지한다.

    - ``connect()``: 자격 증명 준비, 연결, 구독 응답까지 ``connection_timeout`` 안에 끝나야 한다.
    - 자격 증명에 만료 시각이 있으면 ``refresh_margin``초 전에 새 자격 증명으로 다시
      구독하고, 구독 ID가 바뀌면 이전 구독을 해제한다.
    - 재연결되면 새 연결에서 다시 구독한다.
    - ``close()``: 구독 해제 요청을 보낸 뒤 소켓을 닫는다.
    """

    def __init__(
        self,
        credential: WsApiCredential,
        ws_api_url: str,
        callback: Callback,
        *,
        normalizer: UserNormalizer = normalize_user_event,
        transform: bool = True,
        options: Optional[SocketOptions] = None,
        factory: Optional[SocketFactory] = None,
        refresh_margin: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if not callable(callback):
            raise ParameterError("콜백은 호출 가능한 객체여야 합니다.")
        self._credential = credential
        self._url = ws_api_url
        self._callback = callback
        self._normalizer = normalizer
        self._transform = transform
        self._options = options or SocketOptions.from_settings()
        self._factory = factory
        self._refresh_margin = refresh_margin
        self._clock = clock
        self._state = StreamState.IDLE
        self._socket: Optional[ReconnectingWebSocket] = None
        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._subscription_id: Optional[int] = None
        self._retired: set[int] = set()
        self._expires_at: Optional[int] = None
        self._refresh_task: Optional[asyncio.Task[None]] = None
        self._resubscribe_task: Optional[asyncio.Task[None]] = None
        self._resubscribe_pending = False
        self._shutdown_task: Optional[asyncio.Task[None]] = None

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def subscription_id(self) -> Optional[int]:
        return self._subscription_id

    @property
    def expires_at(self) -> Optional[int]:
        return self._expires_at

    @property
    def socket(self) -> Optional[ReconnectingWebSocket]:
        return self._socket

    async def connect(self) -> Callable[..., None]:
        if self._state is not StreamState.IDLE:
            raise WebSocketError(f"이미 시작된 user data stream입니다 (상태: {self._state.value}).")
        timeout = self._options.connection_timeout
        try:
            await asyncio.wait_for(self._handshake(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            self.close()
            raise WebSocketError(f"{timeout}초 안에 WebSocket API 구독이 끝나지 않았습니다.") from exc
        except BaseException:
            self.close()
            raise
        if self._state is StreamState.CLOSED:
            raise WebSocketError("연결 중에 user data stream이 종료되었습니다.")

        self._state = StreamState.OPEN
        self._refresh_task = asyncio.create_task(self._refresh_loop())
        if self._resubscribe_pending:
            # 구독 응답 직후 종료 이벤트가 먼저 처리된 경우
            self._schedule_resubscribe()
        logger.info("WebSocket API user data stream 구독 완료 (subscriptionId=%s)", self._subscription_id)
        return self.close

    async def _handshake(self) -> None:
        self._state = StreamState.ACQUIRING_CREDENTIAL
        request = await self._credential.subscribe_request()

        self._state = StreamState.CONNECTING
        socket = ReconnectingWebSocket(self._url, options=self._options, factory=self._factory)
        socket.add_listener(self._on_frame)
        socket.add_open_listener(self._on_open)
        socket.start()
        socket.acquire()
        self._socket = socket
        await socket.wait_open()
        await self._subscribe(request)

    def close(self, *, keep_closed: bool = True) -> None:
        """구독을 정리한다. ``keep_closed=False``면 연결만 끊고 다시 연결해 재구독한다."""
        if self._state is StreamState.CLOSED:
            return
        if not keep_closed:
            if self._socket is not None:
                self._socket.reconnect()
            return

        self._state = StreamState.CLOSED
        current = _current_task()
        for task in (self._refresh_task, self._resubscribe_task):
            if task is not None and not task.done() and task is not current:
                task.cancel()

        socket = self._socket
        if socket is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("이벤트 루프가 없어 구독 해제 요청 없이 소켓을 닫습니다.")
            self._detach(socket)
            return
        self._shutdown_task = loop.create_task(self._shutdown(socket, self._subscription_id))
        logger.info("WebSocket API user data stream 종료")

    __call__ = close

    async def wait_closed(self) -> None:
        if self._shutdown_task is not None:
            await asyncio.gather(self._shutdown_task, return_exceptions=True)
        if self._socket is not None:
            await self._socket.wait_closed()

    # ------------------------------------------------------------------
    # 요청/응답
    # ------------------------------------------------------------------
    async def _call(self, method: str, params: Optional[Mapping[str, Any]] = None) -> Any:
        socket = self._socket
        if socket is None:
            raise WebSocketError("연결되지 않은 WebSocket API입니다.")
        request_id = next(self._ids)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        payload: dict[str, Any] = {"id": request_id, "method": method}
        if params is not None:
            payload["params"] = dict(params)
        try:
            if not await socket.send_json(payload):
                raise WebSocketError(f"요청을 보내지 못했습니다: {method}")
            return await future
        finally:
            self._pending.pop(request_id, None)

    async def _subscribe(self, request: SubscribeRequest) -> None:
        result = await self._call(request.method, request.params)
        subscription_id = result.get("subscriptionId") if isinstance(result, Mapping) else None
        expires_at = request.expires_at
        if expires_at is None and isinstance(result, Mapping):
            expires_at = result.get("expirationTime")
        self._subscription_id = subscription_id
        self._expires_at = expires_at
        logger.debug("구독 응답: subscriptionId=%s, expirationTime=%s", subscription_id, expires_at)

    def _resolve(self, message: Mapping[str, Any]) -> None:
        future = self._pending.get(message.get("id"))  # type: ignore[arg-type]
        if future is None or future.done():
            return
        status = message.get("status")
        if status == 200:
            future.set_result(message.get("result"))
            return
        error = message.get("error")
        error = error if isinstance(error, Mapping) else {}
        code = error.get("code")
        future.set_exception(
            ExchangeError(
                f"WebSocket API 요청 실패 (status={status}): {error.get('msg', '')}",
                code=code if isinstance(code, int) else None,
            )
        )

    def _fail_pending(self, reason: str) -> None:
        for future in list(self._pending.values()):
            if not future.done():
                future.set_exception(WebSocketError(reason))

    # ------------------------------------------------------------------
    # 소켓 이벤트
    # ------------------------------------------------------------------
    def _on_frame(self, frame: Frame) -> None:
        try:
            message = json.loads(frame)
        except ValueError:
            logger.warning("JSON이 아닌 프레임을 무시합니다.")
            return
        if isinstance(message, Mapping) and "id" in message and "status" in message:
            self._resolve(message)
            return

        subscription_id = message.get("subscriptionId") if isinstance(message, Mapping) else None
        if subscription_id in self._retired:
            # 갱신으로 교체된 이전 구독의 중복 이벤트
            return
        event = unwrap_envelope(message)
        try:
            payload = self._normalizer(event) if self._transform else event
            self._callback(payload)
        except Exception:
            logger.exception("user data stream 프레임 처리 실패")
        if isinstance(event, Mapping) and event.get("e") == EVENT_STREAM_TERMINATED:
            logger.info("서버가 구독을 종료했습니다. 다시 구독합니다.")
            self._subscription_id = None
            self._schedule_resubscribe()

    def _on_open(self) -> None:
        self._fail_pending("응답을 받기 전에 연결이 끊어졌습니다.")
        if self._state is not StreamState.OPEN:
            return
        # 새 연결에는 구독이 없다
        self._subscription_id = None
        self._retired.clear()
        self._schedule_resubscribe()

    def _schedule_resubscribe(self) -> None:
        self._resubscribe_pending = True
        if self._state is not StreamState.OPEN:
            return
        if self._resubscribe_task is not None and not self._resubscribe_task.done():
            return
        self._resubscribe_task = asyncio.ensure_future(self._resubscribe())

    async def _resubscribe(self) -> None:
        self._resubscribe_pending = False
        while self._state is StreamState.OPEN:
            try:
                request = await self._credential.subscribe_request()
                await asyncio.wait_for(self._subscribe(request), timeout=self._options.connection_timeout)
            except (AppError, asyncio.TimeoutError) as exc:
                logger.warning("WebSocket API 재구독 실패: %s", exc)
                await asyncio.sleep(self._options.min_reconnection_delay)
            else:
                logger.info("WebSocket API 재구독 완료 (subscriptionId=%s)", self._subscription_id)
                return

    async def _refresh_loop(self) -> None:
        while self._state is StreamState.OPEN:
            expires_at = self._expires_at
            if expires_at is None:
                return
            await asyncio.sleep(max(expires_at / 1000 - self._clock() - self._refresh_margin, 0))
            if self._state is not StreamState.OPEN:
                return
            try:
                await self._renew()
            except (AppError, asyncio.TimeoutError) as exc:
                logger.warning("listen token 갱신 실패: %s", exc)
                await asyncio.sleep(self._options.min_reconnection_delay)

    async def _renew(self) -> None:
        """만료 전에 새 자격 증명으로 다시 구독하고 이전 구독을 해제한다."""
        previous = self._subscription_id
        request = await self._credential.subscribe_request()
        timeout = self._options.connection_timeout
        await asyncio.wait_for(self._subscribe(request), timeout=timeout)
        if previous is not None and previous != self._subscription_id:
            self._retired.add(previous)
            await asyncio.wait_for(self._call(UNSUBSCRIBE, {"subscriptionId": previous}), timeout=timeout)
        logger.info("listen token 갱신 완료 (subscriptionId=%s)", self._subscription_id)

    async def _shutdown(self, socket: ReconnectingWebSocket, subscription_id: Optional[int]) -> None:
        try:
            if subscription_id is not None and socket.is_open:
                try:
                    await asyncio.wait_for(
                        self._call(UNSUBSCRIBE, {"subscriptionId": subscription_id}),
                        timeout=self._options.close_timeout,
                    )
                except (AppError, asyncio.TimeoutError) as exc:
                    logger.warning("구독 해제 실패 (무시): %s", exc)
        finally:
            self._detach(socket)

    def _detach(self, socket: ReconnectingWebSocket) -> None:
        self._fail_pending("user data stream이 종료되었습니다.")
        socket.remove_listener(self._on_frame)
        socket.remove_open_listener(self._on_open)
        socket.release()


def _current_task() -> Optional[asyncio.Task[Any]]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


__all__ = [
    "EVENT_STREAM_TERMINATED",
    "ListenTokenCredential",
    "SUBSCRIBE_LISTEN_TOKEN",
    "SUBSCRIBE_SIGNATURE",
    "SignatureCredential",
    "SubscribeRequest",
    "UNSUBSCRIBE",
    "WsApiCredential",
    "WsApiUserStream",
]
