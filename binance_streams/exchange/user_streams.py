"""listen key 기반 user data stream 세션 관리."""

from __future__ import annotations

import asyncio
import json
from enum import Enum
from typing import Any, Callable, Mapping, Optional

from ..config import get_settings
from ..utils.exceptions import ParameterError, WebSocketError
from ..utils.logger import get_logger
from .listen_keys import ListenKeyProvider
from .normalizers import normalize_futures_user_event, normalize_user_event
from .socket import Frame, ReconnectingWebSocket, SocketFactory, SocketOptions
from .topics import MarketSegment

logger = get_logger(__name__)

Callback = Callable[[Any], Any]
UserNormalizer = Callable[[Mapping[str, Any]], Any]

USER_NORMALIZERS: dict[MarketSegment, UserNormalizer] = {
    MarketSegment.SPOT: normalize_user_event,
    MarketSegment.MARGIN: normalize_user_event,
    MarketSegment.ISOLATED_MARGIN: normalize_user_event,
    MarketSegment.FUTURES: normalize_futures_user_event,
    MarketSegment.DELIVERY: normalize_futures_user_event,
}

LISTEN_KEY_EXPIRED = "listenKeyExpired"


class StreamState(str, Enum):
    """user data stream 상태."""

    IDLE = "idle"
    ACQUIRING_CREDENTIAL = "acquiring_credential"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


def unwrap_envelope(message: Any) -> Any:
    """``{"subscriptionId": n, "event": {...}}`` 봉투를 벗긴다."""

    if isinstance(message, Mapping) and "subscriptionId" in message and "event" in message:
        return message["event"]
    return message


class UserDataStream:
    """listen key 발급, 소켓 연결, 주기적 연장, 정리를 묶은 세션.

    ``connect()``는 소켓이 열린 뒤 정리 함수(``close``)를 돌려준다. 발급부터
    연결까지 전체 과정은 ``connection_timeout`` 안에 끝나야 한다.
    """

    def __init__(
        self,
        provider: ListenKeyProvider,
        ws_base_url: str,
        callback: Callback,
        *,
        normalizer: UserNormalizer = normalize_user_event,
        transform: bool = True,
        options: Optional[SocketOptions] = None,
        factory: Optional[SocketFactory] = None,
        keepalive_interval: Optional[float] = None,
        close_on_keepalive_failure: Optional[bool] = None,
    ) -> None:
        if not callable(callback):
            raise ParameterError("콜백은 호출 가능한 객체여야 합니다.")
        stream_settings = get_settings().stream
        self._provider = provider
        self._ws_base = f"{ws_base_url.rstrip('/')}/ws"
        self._callback = callback
        self._normalizer = normalizer
        self._transform = transform
        self._options = options or SocketOptions.from_settings()
        self._factory = factory
        self._keepalive_interval = (
            keepalive_interval if keepalive_interval is not None else stream_settings.keepalive_interval
        )
        self._close_on_keepalive_failure = (
            close_on_keepalive_failure
            if close_on_keepalive_failure is not None
            else stream_settings.close_on_keepalive_failure
        )
        self._state = StreamState.IDLE
        self._listen_key: Optional[str] = None
        self._socket: Optional[ReconnectingWebSocket] = None
        self._keepalive_task: Optional[asyncio.Task[None]] = None
        self._refresh_task: Optional[asyncio.Task[None]] = None
        self._acquire_task: Optional[asyncio.Future[str]] = None
        self._releases: set[asyncio.Task[None]] = set()

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def listen_key(self) -> Optional[str]:
        return self._listen_key

    @property
    def socket(self) -> Optional[ReconnectingWebSocket]:
        return self._socket

    def url_for(self, listen_key: str) -> str:
        return f"{self._ws_base}/{listen_key}"

    async def connect(self) -> Callable[..., None]:
        """listen key를 발급받고 소켓이 열릴 때까지 기다린다."""
        if self._state is not StreamState.IDLE:
            raise WebSocketError(f"이미 시작된 user data stream입니다 (상태: {self._state.value}).")
        timeout = self._options.connection_timeout
        try:
            await asyncio.wait_for(self._handshake(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            self.close()
            raise WebSocketError(f"{timeout}초 안에 user data stream 연결이 열리지 않았습니다.") from exc
        except BaseException:
            self.close()
            raise
        if self._state is StreamState.CLOSED:
            raise WebSocketError("연결 중에 user data stream이 종료되었습니다.")

        self._state = StreamState.OPEN
        self._keepalive_task = asyncio.create_task(self._keepalive_loop())
        logger.info("user data stream 연결 완료: %s", self._ws_base)
        return self.close

    async def _handshake(self) -> None:
        self._state = StreamState.ACQUIRING_CREDENTIAL
        # 타임아웃으로 취소되어도 발급 요청은 끝까지 진행되고, 늦게 받은 키는 close()가 폐기한다
        self._acquire_task = asyncio.ensure_future(self._provider.acquire())
        listen_key = await asyncio.shield(self._acquire_task)
        if self._state is StreamState.CLOSED:
            return
        self._acquire_task = None
        self._listen_key = listen_key

        self._state = StreamState.CONNECTING
        socket = ReconnectingWebSocket(self.url_for(listen_key), options=self._options, factory=self._factory)
        socket.add_listener(self._on_frame)
        socket.start()
        socket.acquire()
        self._socket = socket
        await socket.wait_open()

    def close(self, *, keep_closed: bool = True) -> None:
        """세션을 정리한다. 여러 번 호출해도 한 번만 동작한다.

        ``keep_closed=False``면 현재 연결만 끊어 같은 listen key로 다시 연결한다.
        """
        if self._state is StreamState.CLOSED:
            return
        if not keep_closed:
            if self._socket is not None:
                self._socket.close(keep_closed=False)
            return

        self._state = StreamState.CLOSED
        current = _current_task()
        for task in (self._keepalive_task, self._refresh_task):
            if task is not None and not task.done() and task is not current:
                task.cancel()

        if self._socket is not None:
            self._socket.remove_listener(self._on_frame)
            self._socket.release()

        self._abandon_acquire()
        if self._listen_key:
            self._schedule_release(self._listen_key)
        logger.info("user data stream 종료")

    __call__ = close

    async def wait_closed(self) -> None:
        """백그라운드 listen key 폐기와 소켓 종료를 기다린다."""
        if self._releases:
            await asyncio.gather(*self._releases, return_exceptions=True)
        if self._socket is not None:
            await self._socket.wait_closed()

    # ------------------------------------------------------------------
    # 내부 구현
    # ------------------------------------------------------------------
    def _abandon_acquire(self) -> None:
        task = self._acquire_task
        self._acquire_task = None
        if task is None:
            return
        if task.done():
            self._release_orphan(task)
        else:
            task.add_done_callback(self._release_orphan)

    def _release_orphan(self, task: "asyncio.Future[str]") -> None:
        if task.cancelled() or task.exception() is not None:
            return
        listen_key = task.result()
        if listen_key and listen_key != self._listen_key:
            logger.info("연결 중단 이후 발급된 listen key를 폐기합니다.")
            self._schedule_release(listen_key)

    def _schedule_release(self, listen_key: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("이벤트 루프가 없어 listen key 폐기를 건너뜁니다.")
            return
        task = loop.create_task(self._release(listen_key))
        self._releases.add(task)
        task.add_done_callback(self._releases.discard)

    async def _release(self, listen_key: str) -> None:
        try:
            await self._provider.release(listen_key)
        except Exception as exc:
            logger.warning("listen key 폐기 실패 (무시): %s", exc)

    async def _keepalive_loop(self) -> None:
        while self._state is not StreamState.CLOSED:
            await asyncio.sleep(self._keepalive_interval)
            listen_key = self._listen_key
            if self._state is StreamState.CLOSED or not listen_key:
                break
            try:
                await self._provider.keep_alive(listen_key)
            except Exception as exc:
                logger.warning("listen key 연장 실패: %s", exc)
                if self._close_on_keepalive_failure:
                    self.close()
                    return
            else:
                logger.debug("listen key 연장 완료")

    def _on_frame(self, frame: Frame) -> None:
        event: Any = None
        try:
            event = unwrap_envelope(json.loads(frame))
            payload = self._normalizer(event) if self._transform else event
            self._callback(payload)
        except Exception:
            logger.exception("user data stream 프레임 처리 실패")
        if isinstance(event, Mapping) and event.get("e") == LISTEN_KEY_EXPIRED:
            self._schedule_refresh()

    def _schedule_refresh(self) -> None:
        if self._state is not StreamState.OPEN:
            return
        if self._refresh_task is not None and not self._refresh_task.done():
            return
        self._refresh_task = asyncio.ensure_future(self._refresh_listen_key())

    async def _refresh_listen_key(self) -> None:
        """만료된 listen key를 새로 발급받아 소켓을 새 주소로 다시 연결한다."""
        logger.info("listen key가 만료되어 다시 발급합니다.")
        self._state = StreamState.ACQUIRING_CREDENTIAL
        try:
            listen_key = await self._provider.acquire()
        except Exception as exc:
            logger.warning("listen key 재발급 실패: %s", exc)
            if self._state is not StreamState.CLOSED:
                self._state = StreamState.OPEN
            return
        if self._state is StreamState.CLOSED:
            await self._release(listen_key)
            return
        self._listen_key = listen_key
        self._state = StreamState.CONNECTING
        if self._socket is not None:
            self._socket.reconnect(self.url_for(listen_key))
        self._state = StreamState.OPEN


def _current_task() -> Optional[asyncio.Task[Any]]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


def create_user_stream(
    provider: ListenKeyProvider,
    segment: MarketSegment,
    ws_base_url: str,
    callback: Callback,
    *,
    transform: bool = True,
    options: Optional[SocketOptions] = None,
    factory: Optional[SocketFactory] = None,
    keepalive_interval: Optional[float] = None,
    close_on_keepalive_failure: Optional[bool] = None,
) -> UserDataStream:
    """시장 구분에 맞는 정규화 함수로 ``UserDataStream``을 만든다."""

    return UserDataStream(
        provider,
        ws_base_url,
        callback,
        normalizer=USER_NORMALIZERS[segment],
        transform=transform,
        options=options,
        factory=factory,
        keepalive_interval=keepalive_interval,
        close_on_keepalive_failure=close_on_keepalive_failure,
    )


__all__ = [
    "LISTEN_KEY_EXPIRED",
    "StreamState",
    "USER_NORMALIZERS",
    "UserDataStream",
    "create_user_stream",
    "unwrap_envelope",
]
