"""바이낸스 스트리밍 API 클라이언트 패키지."""

from .exchange import BinanceWebSocketClient, MarketSegment

__version__ = "0.1.0"

__all__ = ["BinanceWebSocketClient", "MarketSegment", "__version__"]
