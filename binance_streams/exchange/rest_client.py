"""바이낸스 REST 클라이언트 (user data stream listen key 관리용)."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, MutableMapping, Optional, Sequence, Tuple, Union
from urllib.parse import urlencode

import requests
from requests import Response, Session

from ..config import get_settings
from ..utils.exceptions import ExchangeError
from ..utils.signature import Signer, create_hmac_signature
from .topics import MarketSegment

JsonMapping = Mapping[str, Any]
MutableJsonMapping = MutableMapping[str, Any]
Headers = Mapping[str, str]
Timeout = Union[float, Tuple[float, float]]

DEFAULT_USER_AGENT = "binance-streams/0.1"
DEFAULT_TIMEOUT: Timeout = 10
DEFAULT_RECV_WINDOW = 5000
DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_FACTOR = 0.5
RETRY_STATUS_CODES: Tuple[int, ...] = (429, 500, 502, 503, 504)


class HttpMethod(str, Enum):
    """지원하는 HTTP 메서드."""

    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    DELETE = "DELETE"


class BinanceEndpoint(str, Enum):
    """user data stream 관련 REST 엔드포인트."""

    SPOT_LISTEN_KEY = "/api/v3/userDataStream"
    MARGIN_LISTEN_KEY = "/sapi/v1/userDataStream"
    ISOLATED_MARGIN_LISTEN_KEY = "/sapi/v1/userDataStream/isolated"
    FUTURES_LISTEN_KEY = "/fapi/v1/listenKey"
    DELIVERY_LISTEN_KEY = "/dapi/v1/listenKey"
    MARGIN_LISTEN_TOKEN = "/sapi/v1/userListenToken"


LISTEN_KEY_ENDPOINTS: dict[MarketSegment, BinanceEndpoint] = {
    MarketSegment.SPOT: BinanceEndpoint.SPOT_LISTEN_KEY,
    MarketSegment.MARGIN: BinanceEndpoint.MARGIN_LISTEN_KEY,
    MarketSegment.ISOLATED_MARGIN: BinanceEndpoint.ISOLATED_MARGIN_LISTEN_KEY,
    MarketSegment.FUTURES: BinanceEndpoint.FUTURES_LISTEN_KEY,
    MarketSegment.DELIVERY: BinanceEndpoint.DELIVERY_LISTEN_KEY,
}


@dataclass(frozen=True)
class ListenToken:
    """WebSocket API 마진 user data stream 구독용 토큰."""

    token: str
    expiration_time: Optional[int]


@dataclass(frozen=True)
class ClientCredentials:
    """바이낸스 API 인증 정보를 담는 데이터 구조."""

    api_key: Optional[str]
    api_secret: Optional[str]


class BinanceClient:
    """서명된 REST 호출을 담당하는 기본 클라이언트."""

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        session: Optional[Session] = None,
        timeout: Timeout = DEFAULT_TIMEOUT,
        user_agent: str = DEFAULT_USER_AGENT,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        proxy: Optional[str] = None,
        signer: Signer = create_hmac_signature,
        recv_window: int = DEFAULT_RECV_WINDOW,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_factor: float = DEFAULT_BACKOFF_FACTOR,
        retry_statuses: Sequence[int] = RETRY_STATUS_CODES,
    ) -> None:
        settings = get_settings()
        binance_settings = settings.binance

        self._base_urls: dict[MarketSegment, str] = {
            MarketSegment.SPOT: binance_settings.spot_rest_base_url,
            MarketSegment.MARGIN: binance_settings.spot_rest_base_url,
            MarketSegment.ISOLATED_MARGIN: binance_settings.spot_rest_base_url,
            MarketSegment.FUTURES: binance_settings.futures_rest_base_url,
            MarketSegment.DELIVERY: binance_settings.delivery_rest_base_url,
        }
        if base_url:
            self._base_urls = {segment: base_url for segment in self._base_urls}
        self._base_urls = {segment: url.rstrip("/") for segment, url in self._base_urls.items()}

        self._timeout: Timeout = timeout
        self._session: Session = session or requests.Session()
        self._owns_session = session is None
        self._default_headers: dict[str, str] = {
            "Accept": "application/json",
            "User-Agent": user_agent,
        }
        resolved_proxy = proxy or binance_settings.proxy
        if resolved_proxy and self._owns_session:
            self._session.proxies.update({"http": resolved_proxy, "https": resolved_proxy})
        self._signer = signer
        self._recv_window = recv_window
        self._max_retries = max(0, max_retries)
        self._backoff_factor = max(0.0, backoff_factor)
        self._retry_statuses = tuple(set(int(code) for code in retry_statuses))
        self._logger = logging.getLogger(__name__)
        self._sleep = time.sleep

        resolved_api_key = api_key or (binance_settings.api_key.get_secret_value() if binance_settings.api_key else None)
        resolved_api_secret = api_secret or (
            binance_settings.api_secret.get_secret_value() if binance_settings.api_secret else None
        )
        self._credentials = ClientCredentials(resolved_api_key, resolved_api_secret)

    @property
    def timeout(self) -> Timeout:
        """요청 기본 타임아웃."""

        return self._timeout

    @property
    def credentials(self) -> ClientCredentials:
        """설정된 인증 정보."""

        return self._credentials

    def base_url(self, segment: MarketSegment = MarketSegment.SPOT) -> str:
        """시장 구분별 REST 기본 URL."""

        return self._base_urls[segment]

    def close(self) -> None:
        """세션을 종료한다."""

        if self._owns_session:
            self._session.close()

    def __enter__(self) -> "BinanceClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # pragma: no cover - 컨텍스트 관리자 편의 기능
        self.close()

    # ------------------------------------------------------------------
    # 내부 유틸리티
    # ------------------------------------------------------------------
    def _merge_headers(self, extra_headers: Optional[Headers]) -> dict[str, str]:
        merged = dict(self._default_headers)
        if extra_headers:
            merged.update(extra_headers)
        return merged

    def _timestamp(self) -> int:
        return int(time.time() * 1000)

    def _sign_params(self, params: MutableJsonMapping) -> MutableJsonMapping:
        if not self._credentials.api_key or not self._credentials.api_secret:
            raise ExchangeError("바이낸스 API 키/시크릿을 설정한 뒤 호출해야 합니다.")
        signed: MutableJsonMapping = dict(params)
        signed["timestamp"] = self._timestamp()
        signed.setdefault("recvWindow", self._recv_window)
        signed["signature"] = self._signer(urlencode(signed), self._credentials.api_secret)
        return signed

    def _sleep_backoff(self, attempt: int) -> None:
        if self._backoff_factor <= 0:
            return
        delay = self._backoff_factor * (2 ** attempt)
        self._sleep(delay)

    def _is_retryable_status(self, status_code: int) -> bool:
        return status_code in self._retry_statuses

    def _raise_for_api_error(self, payload: Any, status_code: Optional[int] = None) -> None:
        if not isinstance(payload, Mapping):
            return
        code = payload.get("code")
        if not isinstance(code, int) or code >= 0:
            return
        message = payload.get("msg") or "알 수 없는 오류가 발생했습니다."
        prefix = f"HTTP {status_code} " if status_code else ""
        raise ExchangeError(f"바이낸스 API 오류({prefix}{code}): {message}", code=code)

    # ------------------------------------------------------------------
    # 공개 메서드
    # ------------------------------------------------------------------
    def request(
        self,
        method: Union[HttpMethod, str],
        path: Union[BinanceEndpoint, str],
        *,
        segment: MarketSegment = MarketSegment.SPOT,
        params: Optional[JsonMapping] = None,
        headers: Optional[Headers] = None,
        timeout: Optional[Timeout] = None,
        signed: bool = False,
    ) -> Any:
        method_value = method.value if isinstance(method, HttpMethod) else str(method).upper()
        path_value = path.value if isinstance(path, BinanceEndpoint) else str(path)
        if not path_value.startswith("/"):
            path_value = f"/{path_value}"
        url = f"{self._base_urls[segment]}{path_value}"

        request_params: MutableJsonMapping = dict(params or {})
        merged_headers = self._merge_headers(headers)
        if self._credentials.api_key:
            merged_headers["X-MBX-APIKEY"] = self._credentials.api_key

        for attempt in range(self._max_retries + 1):
            # 재시도마다 타임스탬프가 갱신되어야 recvWindow를 벗어나지 않는다
            query = self._sign_params(request_params) if signed else request_params
            try:
                response = self._session.request(
                    method=method_value,
                    url=url,
                    params=query or None,
                    headers=merged_headers,
                    timeout=timeout or self._timeout,
                )
            except requests.RequestException as exc:
                if attempt >= self._max_retries:
                    raise ExchangeError(f"바이낸스 API 호출 중 네트워크 오류가 발생했습니다: {exc}") from exc
                self._sleep_backoff(attempt)
                continue

            if self._is_retryable_status(response.status_code) and attempt < self._max_retries:
                self._logger.warning("HTTP %s 응답, 재시도합니다 (%s %s)", response.status_code, method_value, path_value)
                self._sleep_backoff(attempt)
                continue

            return self._handle_response(response)

        raise ExchangeError("재시도 한도를 초과했습니다.")

    def _handle_response(self, response: Response) -> Any:
        try:
            response.raise_for_status()
        except requests.HTTPError as exc:
            status_code = response.status_code
            try:
                payload = response.json()
            except ValueError:
                payload = None
            self._raise_for_api_error(payload, status_code)
            raise ExchangeError(f"바이낸스 API 호출 실패: HTTP {status_code} - {response.text}") from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise ExchangeError("바이낸스 API 응답 JSON 디코딩 실패") from exc
        self._raise_for_api_error(payload)
        return payload

    # ------------------------------------------------------------------
    # listen key 헬퍼
    # ------------------------------------------------------------------
    def _listen_key_params(self, listen_key: Optional[str], symbol: Optional[str]) -> MutableJsonMapping:
        params: MutableJsonMapping = {}
        if listen_key:
            params["listenKey"] = listen_key
        if symbol:
            params["symbol"] = symbol.upper()
        return params

    def create_listen_key(self, segment: MarketSegment, *, symbol: Optional[str] = None) -> str:
        """listen key를 새로 발급받는다."""

        if segment is MarketSegment.ISOLATED_MARGIN and not symbol:
            raise ExchangeError("격리 마진 listen key 발급에는 심볼이 필요합니다.")
        payload = self.request(
            HttpMethod.POST,
            LISTEN_KEY_ENDPOINTS[segment],
            segment=segment,
            params=self._listen_key_params(None, symbol),
            signed=True,
        )
        listen_key = payload.get("listenKey") if isinstance(payload, Mapping) else None
        if not listen_key:
            raise ExchangeError("listen key 응답에 listenKey가 없습니다.")
        return str(listen_key)

    def keep_alive_listen_key(self, segment: MarketSegment, listen_key: str, *, symbol: Optional[str] = None) -> None:
        """listen key 만료 시간을 연장한다."""

        self.request(
            HttpMethod.PUT,
            LISTEN_KEY_ENDPOINTS[segment],
            segment=segment,
            params=self._listen_key_params(listen_key, symbol),
            signed=True,
        )

    def close_listen_key(self, segment: MarketSegment, listen_key: str, *, symbol: Optional[str] = None) -> None:
        """listen key를 폐기한다."""

        self.request(
            HttpMethod.DELETE,
            LISTEN_KEY_ENDPOINTS[segment],
            segment=segment,
            params=self._listen_key_params(listen_key, symbol),
            signed=True,
        )


    # ------------------------------------------------------------------
    # listen token (WebSocket API)
    # ------------------------------------------------------------------
    def create_listen_token(self, *, symbol: Optional[str] = None, validity: Optional[int] = None) -> ListenToken:
        """마진 user data stream용 listen token을 발급받는다.

        심볼을 주면 격리 마진 토큰이 된다. ``validity``는 밀리초 단위 유효 기간이다.
        """

        params: MutableJsonMapping = {}
        if symbol:
            params["isIsolated"] = "TRUE"
            params["symbol"] = symbol.upper()
        if validity is not None:
            params["validity"] = int(validity)
        payload = self.request(
            HttpMethod.POST,
            BinanceEndpoint.MARGIN_LISTEN_TOKEN,
            segment=MarketSegment.ISOLATED_MARGIN if symbol else MarketSegment.MARGIN,
            params=params,
            signed=True,
        )
        token = payload.get("token") if isinstance(payload, Mapping) else None
        if not token:
            raise ExchangeError("listen token 응답에 token이 없습니다.")
        expiration = payload.get("expirationTime")
        return ListenToken(str(token), int(expiration) if isinstance(expiration, (int, float)) else None)


__all__ = [
    "BinanceClient",
    "BinanceEndpoint",
    "ClientCredentials",
    "DEFAULT_TIMEOUT",
    "DEFAULT_USER_AGENT",
    "HttpMethod",
    "LISTEN_KEY_ENDPOINTS",
    "ListenToken",
]
