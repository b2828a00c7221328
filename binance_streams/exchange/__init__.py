"""바이낸스 WebSocket 스트림과 listen key 관리를 담당하는 패키지."""

from .listen_keys import ListenKeyProvider, RestListenKeyProvider
from .rest_client import (
    BinanceClient,
    BinanceEndpoint,
    ClientCredentials,
    DEFAULT_TIMEOUT,
    DEFAULT_USER_AGENT,
    HttpMethod,
    LISTEN_KEY_ENDPOINTS,
    ListenToken,
)
from .socket import ReconnectingWebSocket, SocketFactory, SocketOptions
from .streams import MarketStreams, StreamMultiplexer, Subscription
from .topics import Channel, MarketSegment, Topic
from .user_streams import StreamState, UserDataStream, create_user_stream
from .ws_api_streams import (
    ListenTokenCredential,
    SignatureCredential,
    SubscribeRequest,
    WsApiCredential,
    WsApiUserStream,
)
from .websocket_client import BinanceWebSocketClient

__all__ = [
    "BinanceClient",
    "BinanceEndpoint",
    "BinanceWebSocketClient",
    "Channel",
    "ClientCredentials",
    "DEFAULT_TIMEOUT",
    "DEFAULT_USER_AGENT",
    "HttpMethod",
    "LISTEN_KEY_ENDPOINTS",
    "ListenKeyProvider",
    "ListenToken",
    "ListenTokenCredential",
    "MarketSegment",
    "MarketStreams",
    "ReconnectingWebSocket",
    "RestListenKeyProvider",
    "SignatureCredential",
    "SocketFactory",
    "SocketOptions",
    "StreamMultiplexer",
    "StreamState",
    "SubscribeRequest",
    "Subscription",
    "Topic",
    "UserDataStream",
    "WsApiCredential",
    "WsApiUserStream",
    "create_user_stream",
]
