"""자동 재연결을 지원하는 WebSocket 연결 래퍼."""

from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable, Optional, Protocol, Union

import websockets
from pydantic import BaseModel, ConfigDict, Field
from websockets.exceptions import ConnectionClosed, WebSocketException

from ..config import get_settings
from ..utils.exceptions import WebSocketError
from ..utils.logger import get_logger

logger = get_logger(__name__)

Frame = Union[str, bytes]
FrameListener = Callable[[Frame], None]
OpenListener = Callable[[], None]


class SocketOptions(BaseModel):
    """재연결 백오프와 연결 타임아웃 설정."""

    model_config = ConfigDict(frozen=True)

    connection_timeout: float = Field(default=4.0, gt=0)
    min_reconnection_delay: float = Field(default=4.0, ge=0)
    max_reconnection_delay: float = Field(default=10.0, ge=0)
    reconnection_delay_grow_factor: float = Field(default=1.3, ge=1.0)
    max_retries: Optional[int] = Field(default=None, ge=0)
    close_timeout: float = Field(default=5.0, gt=0)
    proxy: Optional[str] = Field(default=None)

    @classmethod
    def from_settings(cls, **overrides: Any) -> "SocketOptions":
        """전역 설정 값에 명시적 인자를 덮어써서 옵션을 만든다."""
        settings = get_settings()
        values: dict[str, Any] = {
            "connection_timeout": settings.stream.connection_timeout,
            "min_reconnection_delay": settings.stream.min_reconnection_delay,
            "max_reconnection_delay": settings.stream.max_reconnection_delay,
            "proxy": settings.binance.proxy,
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)

    def reconnection_delay(self, failures: int) -> float:
        """연속 실패 횟수에 대한 재연결 대기 시간(초)."""
        if failures <= 0:
            return 0.0
        delay = self.min_reconnection_delay * (self.reconnection_delay_grow_factor ** (failures - 1))
        return min(self.max_reconnection_delay, delay)


class WebSocketConnection(Protocol):
    """소켓 팩토리가 돌려주는 연결 객체."""

    async def recv(self) -> Frame: ...

    async def send(self, message: Frame) -> None: ...

    async def close(self) -> None: ...


SocketFactory = Callable[[str, SocketOptions], Awaitable[WebSocketConnection]]


async def default_socket_factory(url: str, options: SocketOptions) -> WebSocketConnection:
    """``websockets`` 라이브러리로 연결한다. ping 응답은 라이브러리가 처리한다.

    프록시가 없으면 환경변수 프록시도 쓰지 않는다.
    """
    return await websockets.connect(
        url,
        open_timeout=options.connection_timeout,
        close_timeout=options.close_timeout,
        ping_interval=None,
        proxy=options.proxy,
    )


class ReconnectingWebSocket:
    """끊어지면 백오프 후 다시 연결하는 단일 논리 WebSocket."""

    def __init__(
        self,
        url: str,
        *,
        options: Optional[SocketOptions] = None,
        factory: Optional[SocketFactory] = None,
    ) -> None:
        self._url = url
        self._options = options or SocketOptions.from_settings()
        self._factory: SocketFactory = factory or default_socket_factory
        self._listeners: list[FrameListener] = []
        self._open_listeners: list[OpenListener] = []
        self._ws: Optional[WebSocketConnection] = None
        self._task: Optional[asyncio.Task[None]] = None
        self._background: set[asyncio.Task[Any]] = set()
        self._opened = asyncio.Event()
        self._closed = False
        self._owners = 0
        self._open_count = 0
        self._logger = logger

    @property
    def url(self) -> str:
        return self._url

    @property
    def options(self) -> SocketOptions:
        return self._options

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._closed

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def open_count(self) -> int:
        """성공한 연결 횟수 (최초 연결 + 재연결)."""
        return self._open_count

    @property
    def owner_count(self) -> int:
        return self._owners

    # ------------------------------------------------------------------
    # 훅 등록
    # ------------------------------------------------------------------
    def add_listener(self, listener: FrameListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: FrameListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def add_open_listener(self, listener: OpenListener) -> None:
        self._open_listeners.append(listener)

    def remove_open_listener(self, listener: OpenListener) -> None:
        if listener in self._open_listeners:
            self._open_listeners.remove(listener)

    # ------------------------------------------------------------------
    # 참조 카운트
    # ------------------------------------------------------------------
    def acquire(self) -> int:
        """소유자를 하나 늘린다."""
        if self._closed:
            raise WebSocketError(f"이미 종료된 WebSocket입니다: {self._url}")
        self._owners += 1
        return self._owners

    def release(self) -> int:
        """소유자를 하나 줄이고, 마지막 소유자였다면 재연결을 멈추고 소켓을 닫는다."""
        if self._owners == 0:
            return 0
        self._owners -= 1
        if self._owners == 0:
            self.close()
        return self._owners

    # ------------------------------------------------------------------
    # 수명 주기
    # ------------------------------------------------------------------
    def start(self) -> None:
        """실행 중인 이벤트 루프에 연결 루프를 예약한다."""
        if self._task is not None or self._closed:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as exc:
            raise WebSocketError("실행 중인 이벤트 루프 안에서 구독해야 합니다.") from exc
        self._task = loop.create_task(self._run())

    async def wait_open(self, timeout: Optional[float] = None) -> None:
        """최초 연결이 열릴 때까지 기다린다."""
        limit = self._options.connection_timeout if timeout is None else timeout
        try:
            await asyncio.wait_for(self._opened.wait(), timeout=limit)
        except asyncio.TimeoutError as exc:
            raise WebSocketError(f"{limit}초 안에 WebSocket 연결이 열리지 않았습니다: {self._url}") from exc

    async def wait_closed(self) -> None:
        """연결 루프가 끝날 때까지 기다린다."""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    def close(self, *, keep_closed: bool = True) -> None:
        """재연결을 멈추고 연결을 해제한다. ``keep_closed=False``면 현재 연결만 끊는다."""
        if self._closed:
            return
        if not keep_closed:
            self.reconnect()
            return
        self._closed = True
        task = self._task
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if current is task:
            # 프레임 처리 중에 닫힌 경우, 루프가 처리 직후 스스로 종료한다
            return
        task.cancel()

    def reconnect(self, url: Optional[str] = None) -> None:
        """현재 연결을 끊고 (필요하면 새 URL로) 다시 연결하게 한다."""
        if url:
            self._url = url
        ws = self._ws
        if ws is not None and not self._closed:
            self._spawn(self._close_transport(ws))

    async def send_json(self, payload: Any) -> bool:
        """JSON 텍스트 프레임을 보낸다. 연결이 없으면 보내지 않는다."""
        ws = self._ws
        if ws is None or self._closed:
            return False
        try:
            await ws.send(json.dumps(payload))
        except ConnectionClosed as exc:
            self._logger.warning("메시지 전송 중 연결이 끊어졌습니다: %s", exc)
            return False
        return True

    # ------------------------------------------------------------------
    # 내부 구현
    # ------------------------------------------------------------------
    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _close_transport(self, ws: WebSocketConnection) -> None:
        try:
            await ws.close()
        except (OSError, WebSocketException) as exc:
            self._logger.debug("WebSocket 종료 중 오류를 무시합니다: %s", exc)

    async def _connect_once(self) -> WebSocketConnection:
        return await asyncio.wait_for(
            self._factory(self._url, self._options),
            timeout=self._options.connection_timeout,
        )

    async def _run(self) -> None:
        failures = 0
        try:
            while not self._closed:
                if failures:
                    max_retries = self._options.max_retries
                    if max_retries is not None and failures > max_retries:
                        self._logger.error("최대 재연결 시도 횟수 초과: %s", self._url)
                        break
                    await asyncio.sleep(self._options.reconnection_delay(failures))
                    if self._closed:
                        break

                try:
                    ws = await self._connect_once()
                except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
                    failures += 1
                    self._logger.warning("WebSocket 연결 실패 (%s, %d회째): %s", self._url, failures, exc)
                    continue

                self._ws = ws
                failures = 0
                self._open_count += 1
                self._logger.info("WebSocket 연결 성공: %s", self._url)
                self._opened.set()
                self._notify_open()
                try:
                    await self._receive(ws)
                finally:
                    self._ws = None
                    await self._close_transport(ws)

                if not self._closed:
                    failures = 1
                    self._logger.info("WebSocket 연결이 끊어졌습니다. 재연결합니다: %s", self._url)
        finally:
            self._ws = None
            self._closed = True
            self._logger.info("WebSocket 종료: %s", self._url)

    async def _receive(self, ws: WebSocketConnection) -> None:
        while not self._closed:
            try:
                message = await ws.recv()
            except ConnectionClosed as exc:
                self._logger.debug("수신 중 연결 종료: %s", exc)
                return
            self._dispatch(message)

    def _dispatch(self, message: Frame) -> None:
        for listener in list(self._listeners):
            try:
                listener(message)
            except Exception:
                self._logger.exception("프레임 리스너 실행 실패")

    def _notify_open(self) -> None:
        for listener in list(self._open_listeners):
            try:
                listener()
            except Exception:
                self._logger.exception("open 리스너 실행 실패")


__all__ = [
    "Frame",
    "FrameListener",
    "OpenListener",
    "ReconnectingWebSocket",
    "SocketFactory",
    "SocketOptions",
    "WebSocketConnection",
    "default_socket_factory",
]
