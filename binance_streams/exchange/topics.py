"""스트림 구독 대상(Topic)과 시장 구분 정의."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Mapping, Optional, Sequence, Union

from ..utils.exceptions import ParameterError


class MarketSegment(str, Enum):
    """바이낸스 시장 구분."""

    SPOT = "spot"
    MARGIN = "margin"
    ISOLATED_MARGIN = "isolated_margin"
    FUTURES = "futures"
    DELIVERY = "delivery"


class Channel(str, Enum):
    """구독 가능한 채널 종류."""

    TICKER = "ticker"
    MINI_TICKER = "miniTicker"
    DEPTH = "depth"
    RPI_DEPTH = "rpiDepth"
    PARTIAL_DEPTH = "partialDepth"
    KLINE = "kline"
    TRADE = "trade"
    AGG_TRADE = "aggTrade"
    BOOK_TICKER = "bookTicker"
    MARK_PRICE = "markPrice"
    LIQUIDATION = "forceOrder"
    CUSTOM = "custom"

    ALL_TICKERS = "allTickers"
    ALL_MINI_TICKERS = "allMiniTickers"
    ALL_MARK_PRICES = "allMarkPrices"
    ALL_LIQUIDATIONS = "allForceOrders"


SYMBOL_CHANNELS = frozenset(
    {
        Channel.TICKER,
        Channel.MINI_TICKER,
        Channel.DEPTH,
        Channel.RPI_DEPTH,
        Channel.PARTIAL_DEPTH,
        Channel.KLINE,
        Channel.TRADE,
        Channel.AGG_TRADE,
        Channel.BOOK_TICKER,
        Channel.MARK_PRICE,
        Channel.LIQUIDATION,
    }
)

# 프레임 하나에 전 종목 배열이 오는 채널
ARRAY_CHANNELS = frozenset({Channel.ALL_TICKERS, Channel.ALL_MINI_TICKERS, Channel.ALL_MARK_PRICES})

PARTIAL_DEPTH_LEVELS = (5, 10, 20)

# RPI 호가는 500ms 주기만 제공된다
RPI_DEPTH_SPEED = "500ms"


def split_update_speed(symbol: str) -> tuple[str, Optional[str]]:
    """``"ETHBTC@100ms"`` 형태를 심볼과 업데이트 속도로 나눈다."""

    cleaned = symbol.strip()
    if "@" not in cleaned:
        return cleaned, None
    base, speed = cleaned.split("@", 1)
    return base, speed or None


@dataclass(frozen=True)
class Topic:
    """하나의 논리적 구독 대상. 생성 후 변경되지 않는다."""

    channel: Channel
    symbol: Optional[str] = None
    interval: Optional[str] = None
    level: Optional[int] = None
    update_speed: Optional[str] = None
    stream: Optional[str] = None

    def __post_init__(self) -> None:
        if self.channel in SYMBOL_CHANNELS and not self.symbol:
            raise ParameterError(f"'{self.channel.value}' 구독에는 심볼이 필요합니다.")
        if self.channel is Channel.KLINE and not self.interval:
            raise ParameterError("심볼, 인터벌, 콜백을 모두 전달해야 합니다.")
        if self.channel is Channel.PARTIAL_DEPTH and self.level not in PARTIAL_DEPTH_LEVELS:
            raise ParameterError(f"부분 호가 레벨은 {PARTIAL_DEPTH_LEVELS} 중 하나여야 합니다: {self.level}")
        if self.channel is Channel.CUSTOM and not self.stream:
            raise ParameterError("커스텀 구독에는 스트림 이름이 필요합니다.")

    @property
    def stream_name(self) -> str:
        """바이낸스 스트림 식별자."""

        channel = self.channel
        if channel is Channel.CUSTOM:
            assert self.stream is not None
            return self.stream
        if channel is Channel.ALL_TICKERS:
            return "!ticker@arr"
        if channel is Channel.ALL_MINI_TICKERS:
            return "!miniTicker@arr"
        if channel is Channel.ALL_MARK_PRICES:
            return self._with_speed("!markPrice@arr")
        if channel is Channel.ALL_LIQUIDATIONS:
            return "!forceOrder@arr"

        assert self.symbol is not None
        prefix = self.symbol.lower()
        if channel is Channel.KLINE:
            return f"{prefix}@kline_{self.interval}"
        if channel is Channel.PARTIAL_DEPTH:
            return self._with_speed(f"{prefix}@depth{self.level}")
        if channel is Channel.RPI_DEPTH:
            return f"{prefix}@rpiDepth@{self.update_speed or RPI_DEPTH_SPEED}"
        return self._with_speed(f"{prefix}@{channel.value}")

    def _with_speed(self, name: str) -> str:
        if self.update_speed:
            return f"{name}@{self.update_speed}"
        return name


SymbolsLike = Union[str, Sequence[str]]


def as_symbol_list(symbols: SymbolsLike) -> list[str]:
    """단일 심볼 또는 심볼 목록을 리스트로 맞춘다."""

    if isinstance(symbols, str):
        return [symbols]
    if not isinstance(symbols, Sequence):
        raise ParameterError(f"심볼은 문자열 또는 문자열 목록이어야 합니다: {symbols!r}")
    return list(symbols)


def symbol_topics(
    channel: Channel,
    symbols: SymbolsLike,
    *,
    interval: Optional[str] = None,
) -> list[Topic]:
    """심볼 목록으로 같은 채널의 Topic들을 만든다. 입력 순서를 유지한다."""

    topics = []
    for raw in as_symbol_list(symbols):
        if not isinstance(raw, str) or not raw.strip():
            raise ParameterError("심볼이 비어 있습니다.")
        symbol, speed = split_update_speed(raw)
        topics.append(Topic(channel, symbol=symbol.upper(), interval=interval, update_speed=speed))
    return topics


def partial_depth_topics(payload: Union[Mapping[str, object], Iterable[Mapping[str, object]]]) -> list[Topic]:
    """``{"symbol": ..., "level": ...}`` 목록을 부분 호가 Topic으로 변환한다."""

    if isinstance(payload, Mapping):
        items = [payload]
    elif isinstance(payload, Sequence) and not isinstance(payload, str):
        items = list(payload)
    else:
        raise ParameterError(f"부분 호가 구독 인자가 잘못되었습니다: {payload!r}")
    topics = []
    for item in items:
        if not isinstance(item, Mapping):
            raise ParameterError(f"부분 호가 구독 항목은 객체여야 합니다: {item!r}")
        raw_symbol = item.get("symbol")
        if not isinstance(raw_symbol, str) or not raw_symbol:
            raise ParameterError("부분 호가 구독에는 심볼이 필요합니다.")
        symbol, speed = split_update_speed(raw_symbol)
        level = item.get("level")
        try:
            parsed_level = int(level) if level is not None else None  # type: ignore[arg-type]
        except (TypeError, ValueError) as exc:
            raise ParameterError(f"부분 호가 레벨이 숫자가 아닙니다: {level!r}") from exc
        topics.append(
            Topic(
                Channel.PARTIAL_DEPTH,
                symbol=symbol.upper(),
                level=parsed_level,
                update_speed=speed,
            )
        )
    return topics


__all__ = [
    "ARRAY_CHANNELS",
    "Channel",
    "MarketSegment",
    "PARTIAL_DEPTH_LEVELS",
    "RPI_DEPTH_SPEED",
    "SymbolsLike",
    "Topic",
    "as_symbol_list",
    "partial_depth_topics",
    "split_update_speed",
    "symbol_topics",
]
