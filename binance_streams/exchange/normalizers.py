"""바이낸스 원시 이벤트를 설명적인 필드명으로 바꾸는 정규화 함수 모음.

모든 함수는 입력을 변경하지 않는 순수 함수이며, 유효한 JSON 객체에 대해서는
예외를 던지지 않는다. 누락된 선택 필드는 ``None``으로 채운다. 값의 타입은
거래소가 보낸 그대로 유지한다 (문자열 가격은 문자열로, 숫자 시각은 숫자로).
"""

from __future__ import annotations

from typing import Any, Callable, Mapping, Optional

JsonMapping = Mapping[str, Any]
NormalizedEvent = dict[str, Any]
Normalizer = Callable[[JsonMapping], Any]


def _items(value: Any) -> list[Any]:
    return list(value) if isinstance(value, (list, tuple)) else []


def _records(value: Any) -> list[JsonMapping]:
    """객체 배열에서 객체가 아닌 원소를 걸러낸다."""

    return [item for item in _items(value) if isinstance(item, Mapping)]


def _levels(levels: Any) -> list[dict[str, Any]]:
    """``[[price, qty], ...]`` 호가 배열을 ``{price, quantity}`` 목록으로 바꾼다."""

    result = []
    for level in _items(levels):
        if not isinstance(level, (list, tuple)):
            continue
        price = level[0] if len(level) > 0 else None
        quantity = level[1] if len(level) > 1 else None
        result.append({"price": price, "quantity": quantity})
    return result


def _nested(m: JsonMapping, key: str) -> JsonMapping:
    value = m.get(key)
    return value if isinstance(value, Mapping) else {}


# ----------------------------------------------------------------------
# 시세 (ticker)
# ----------------------------------------------------------------------
def ticker(m: JsonMapping) -> NormalizedEvent:
    """현물 24시간 ticker (``24hrTicker``)."""

    return {
        "eventType": m.get("e"),
        "eventTime": m.get("E"),
        "symbol": m.get("s"),
        "priceChange": m.get("p"),
        "priceChangePercent": m.get("P"),
        "weightedAvg": m.get("w"),
        "prevDayClose": m.get("x"),
        "curDayClose": m.get("c"),
        "closeTradeQuantity": m.get("Q"),
        "bestBid": m.get("b"),
        "bestBidQnt": m.get("B"),
        "bestAsk": m.get("a"),
        "bestAskQnt": m.get("A"),
        "open": m.get("o"),
        "high": m.get("h"),
        "low": m.get("l"),
        "volume": m.get("v"),
        "volumeQuote": m.get("q"),
        "openTime": m.get("O"),
        "closeTime": m.get("C"),
        "firstTradeId": m.get("F"),
        "lastTradeId": m.get("L"),
        "totalTrades": m.get("n"),
    }


def futures_ticker(m: JsonMapping) -> NormalizedEvent:
    """선물 ticker. 전일 종가와 최우선 호가 필드가 없다."""

    return {
        "eventType": m.get("e"),
        "eventTime": m.get("E"),
        "symbol": m.get("s"),
        "priceChange": m.get("p"),
        "priceChangePercent": m.get("P"),
        "weightedAvg": m.get("w"),
        "curDayClose": m.get("c"),
        "closeTradeQuantity": m.get("Q"),
        "open": m.get("o"),
        "high": m.get("h"),
        "low": m.get("l"),
        "volume": m.get("v"),
        "volumeQuote": m.get("q"),
        "openTime": m.get("O"),
        "closeTime": m.get("C"),
        "firstTradeId": m.get("F"),
        "lastTradeId": m.get("L"),
        "totalTrades": m.get("n"),
    }


def delivery_ticker(m: JsonMapping) -> NormalizedEvent:
    """코인 마진 선물 ticker. ``q``는 기준 자산 거래량이다."""

    return {
        "eventType": m.get("e"),
        "eventTime": m.get("E"),
        "symbol": m.get("s"),
        "pair": m.get("ps"),
        "priceChange": m.get("p"),
        "priceChangePercent": m.get("P"),
        "weightedAvg": m.get("w"),
        "curDayClose": m.get("c"),
        "closeTradeQuantity": m.get("Q"),
        "open": m.get("o"),
        "high": m.get("h"),
        "low": m.get("l"),
        "volume": m.get("v"),
        "volumeBase": m.get("q"),
        "openTime": m.get("O"),
        "closeTime": m.get("C"),
        "firstTradeId": m.get("F"),
        "lastTradeId": m.get("L"),
        "totalTrades": m.get("n"),
    }


def mini_ticker(m: JsonMapping) -> NormalizedEvent:
    return {
        "eventType": m.get("e"),
        "eventTime": m.get("E"),
        "symbol": m.get("s"),
        "curDayClose": m.get("c"),
        "open": m.get("o"),
        "high": m.get("h"),
        "low": m.get("l"),
        "volume": m.get("v"),
        "volumeQuote": m.get("q"),
    }


def delivery_mini_ticker(m: JsonMapping) -> NormalizedEvent:
    return {
        "eventType": m.get("e"),
        "eventTime": m.get("E"),
        "symbol": m.get("s"),
        "pair": m.get("ps"),
        "curDayClose": m.get("c"),
        "open": m.get("o"),
        "high": m.get("h"),
        "low": m.get("l"),
        "volume": m.get("v"),
        "volumeBase": m.get("q"),
    }


def book_ticker(m: JsonMapping) -> NormalizedEvent:
    return {
        "updateId": m.get("u"),
        "symbol": m.get("s"),
        "bestBid": m.get("b"),
        "bestBidQnt": m.get("B"),
        "bestAsk": m.get("a"),
        "bestAskQnt": m.get("A"),
    }


# ----------------------------------------------------------------------
# 호가 (depth)
# ----------------------------------------------------------------------
def depth(m: JsonMapping) -> NormalizedEvent:
    """현물 호가 증분 (``depthUpdate``)."""

    return {
        "eventType": m.get("e"),
        "eventTime": m.get("E"),
        "symbol": m.get("s"),
        "firstUpdateId": m.get("U"),
        "finalUpdateId": m.get("u"),
        "bidDepth": _levels(m.get("b")),
        "askDepth": _levels(m.get("a")),
    }


def futures_depth(m: JsonMapping) -> NormalizedEvent:
    return {
        "eventType": m.get("e"),
        "eventTime": m.get("E"),
        "transactionTime": m.get("T"),
        "symbol": m.get("s"),
        "firstUpdateId": m.get("U"),
        "finalUpdateId": m.get("u"),
        "prevFinalUpdateId": m.get("pu"),
        "bidDepth": _levels(m.get("b")),
        "askDepth": _levels(m.get("a")),
    }


def delivery_depth(m: JsonMapping) -> NormalizedEvent:
    normalized = futures_depth(m)
    normalized["pair"] = m.get("ps")
    return normalized


def partial_depth(m: JsonMapping, *, symbol: Optional[str] = None, level: Optional[int] = None) -> NormalizedEvent:
    """현물 부분 호가 스냅샷. 페이로드에 심볼이 없어 구독 정보로 채운다."""

    return {
        "symbol": symbol,
        "level": level,
        "lastUpdateId": m.get("lastUpdateId"),
        "bids": _levels(m.get("bids")),
        "asks": _levels(m.get("asks")),
    }


def futures_partial_depth(m: JsonMapping, *, level: Optional[int] = None) -> NormalizedEvent:
    normalized = futures_depth(m)
    normalized["level"] = level
    return normalized


def delivery_partial_depth(m: JsonMapping, *, level: Optional[int] = None) -> NormalizedEvent:
    normalized = delivery_depth(m)
    normalized["level"] = level
    return normalized


# ----------------------------------------------------------------------
# 캔들 / 체결
# ----------------------------------------------------------------------
def candle(m: JsonMapping) -> NormalizedEvent:
    """``kline`` 이벤트. 캔들 필드는 ``k`` 객체 안에 있다."""

    k = _nested(m, "k")
    return {
        "eventType": m.get("e"),
        "eventTime": m.get("E"),
        "symbol": m.get("s"),
        "startTime": k.get("t"),
        "closeTime": k.get("T"),
        "firstTradeId": k.get("f"),
        "lastTradeId": k.get("L"),
        "open": k.get("o"),
        "high": k.get("h"),
        "low": k.get("l"),
        "close": k.get("c"),
        "volume": k.get("v"),
        "trades": k.get("n"),
        "interval": k.get("i"),
        "isFinal": k.get("x"),
        "quoteVolume": k.get("q"),
        "buyVolume": k.get("V"),
        "quoteBuyVolume": k.get("Q"),
    }


def delivery_candle(m: JsonMapping) -> NormalizedEvent:
    """코인 마진 캔들. ``q``/``Q``가 기준 자산 거래량이다."""

    normalized = candle(m)
    k = _nested(m, "k")
    del normalized["quoteVolume"]
    del normalized["quoteBuyVolume"]
    normalized["baseVolume"] = k.get("q")
    normalized["baseBuyVolume"] = k.get("Q")
    return normalized


def trade(m: JsonMapping) -> NormalizedEvent:
    return {
        "eventType": m.get("e"),
        "eventTime": m.get("E"),
        "tradeTime": m.get("T"),
        "symbol": m.get("s"),
        "price": m.get("p"),
        "quantity": m.get("q"),
        "isBuyerMaker": m.get("m"),
        "maker": m.get("M"),
        "tradeId": m.get("t"),
        "buyerOrderId": m.get("b"),
        "sellerOrderId": m.get("a"),
    }


def agg_trade(m: JsonMapping) -> NormalizedEvent:
    return {
        "eventType": m.get("e"),
        "eventTime": m.get("E"),
        "timestamp": m.get("T"),
        "symbol": m.get("s"),
        "price": m.get("p"),
        "quantity": m.get("q"),
        "isBuyerMaker": m.get("m"),
        "wasBestPrice": m.get("M"),
        "aggId": m.get("a"),
        "firstId": m.get("f"),
        "lastId": m.get("l"),
    }


def futures_agg_trade(m: JsonMapping) -> NormalizedEvent:
    return {
        "eventType": m.get("e"),
        "eventTime": m.get("E"),
        "symbol": m.get("s"),
        "aggId": m.get("a"),
        "price": m.get("p"),
        "quantity": m.get("q"),
        "firstId": m.get("f"),
        "lastId": m.get("l"),
        "timestamp": m.get("T"),
        "isBuyerMaker": m.get("m"),
    }


# ----------------------------------------------------------------------
# 선물 전용
# ----------------------------------------------------------------------
def mark_price(m: JsonMapping) -> NormalizedEvent:
    """``markPriceUpdate``. ``T``는 기존 소비자 호환을 위해 ``nextFundingRate``로 노출한다."""

    return {
        "eventType": m.get("e"),
        "eventTime": m.get("E"),
        "symbol": m.get("s"),
        "markPrice": m.get("p"),
        "indexPrice": m.get("i"),
        "settlePrice": m.get("P"),
        "fundingRate": m.get("r"),
        "nextFundingRate": m.get("T"),
    }


def liquidation(m: JsonMapping) -> NormalizedEvent:
    """``forceOrder`` 강제 청산 주문. 필드는 ``o`` 객체 안에 있다."""

    o = _nested(m, "o")
    return {
        "symbol": o.get("s"),
        "price": o.get("p"),
        "origQty": o.get("q"),
        "lastFilledQty": o.get("l"),
        "accumulatedQty": o.get("z"),
        "averagePrice": o.get("ap"),
        "status": o.get("X"),
        "timeInForce": o.get("f"),
        "type": o.get("o"),
        "side": o.get("S"),
        "time": o.get("T"),
    }


def each(normalizer: Normalizer) -> Callable[[Any], list[Any]]:
    """배열 프레임(전 종목 스트림)의 각 원소에 정규화 함수를 적용한다."""

    def apply(items: Any) -> list[Any]:
        return [normalizer(item) for item in _records(items)]

    return apply


# ----------------------------------------------------------------------
# 현물/마진 user data 이벤트
# ----------------------------------------------------------------------
def outbound_account_info(m: JsonMapping) -> NormalizedEvent:
    """구형 계정 이벤트. 잔고 배열을 자산 심볼 키의 맵으로 바꾼다."""

    balances: dict[str, dict[str, Any]] = {}
    for balance in _records(m.get("B")):
        asset = balance.get("a")
        if not isinstance(asset, str):
            continue
        balances[asset] = {"available": balance.get("f"), "locked": balance.get("l")}
    return {
        "eventType": "account",
        "eventTime": m.get("E"),
        "makerCommissionRate": m.get("m"),
        "takerCommissionRate": m.get("t"),
        "buyerCommissionRate": m.get("b"),
        "sellerCommissionRate": m.get("s"),
        "canTrade": m.get("T"),
        "canWithdraw": m.get("W"),
        "canDeposit": m.get("D"),
        "lastAccountUpdate": m.get("u"),
        "balances": balances,
    }


def outbound_account_position(m: JsonMapping) -> NormalizedEvent:
    """계정 포지션 이벤트. ``outboundAccountInfo``와 달리 잔고를 배열로 유지한다."""

    return {
        "eventType": "outboundAccountPosition",
        "eventTime": m.get("E"),
        "lastAccountUpdate": m.get("u"),
        "balances": [
            {"asset": balance.get("a"), "free": balance.get("f"), "locked": balance.get("l")}
            for balance in _records(m.get("B"))
        ],
    }


def execution_report(m: JsonMapping) -> NormalizedEvent:
    return {
        "eventType": "executionReport",
        "eventTime": m.get("E"),
        "symbol": m.get("s"),
        "newClientOrderId": m.get("c"),
        "originalClientOrderId": m.get("C"),
        "side": m.get("S"),
        "orderType": m.get("o"),
        "timeInForce": m.get("f"),
        "quantity": m.get("q"),
        "price": m.get("p"),
        "stopPrice": m.get("P"),
        "executionType": m.get("x"),
        "icebergQuantity": m.get("F"),
        "orderStatus": m.get("X"),
        "orderRejectReason": m.get("r"),
        "orderId": m.get("i"),
        "orderTime": m.get("T"),
        "lastTradeQuantity": m.get("l"),
        "totalTradeQuantity": m.get("z"),
        "priceLastTrade": m.get("L"),
        "commission": m.get("n"),
        "commissionAsset": m.get("N"),
        "tradeId": m.get("t"),
        "isOrderWorking": m.get("w"),
        "isBuyerMaker": m.get("m"),
        "creationTime": m.get("O"),
        "totalQuoteTradeQuantity": m.get("Z"),
        "orderListId": m.get("g"),
        "quoteOrderQuantity": m.get("Q"),
        "lastQuoteTransacted": m.get("Y"),
        "trailingDelta": m.get("d"),
        "trailingTime": m.get("D"),
    }


def list_status(m: JsonMapping) -> NormalizedEvent:
    return {
        "eventType": "listStatus",
        "eventTime": m.get("E"),
        "symbol": m.get("s"),
        "orderListId": m.get("g"),
        "contingencyType": m.get("c"),
        "listStatusType": m.get("l"),
        "listOrderStatus": m.get("L"),
        "listRejectReason": m.get("r"),
        "listClientOrderId": m.get("C"),
        "transactionTime": m.get("T"),
        "orders": [
            {"symbol": order.get("s"), "orderId": order.get("i"), "clientOrderId": order.get("c")}
            for order in _records(m.get("O"))
        ],
    }


def balance_update(m: JsonMapping) -> NormalizedEvent:
    return {
        "eventType": "balanceUpdate",
        "eventTime": m.get("E"),
        "asset": m.get("a"),
        "balanceDelta": m.get("d"),
        "clearTime": m.get("T"),
    }


def unknown_event(m: JsonMapping, tag_field: str = "e") -> NormalizedEvent:
    """알 수 없는 이벤트는 태그를 ``type``으로 옮기고 나머지 필드를 보존한다."""

    fallback: NormalizedEvent = {"type": m.get(tag_field)}
    fallback.update({key: value for key, value in m.items() if key != tag_field})
    return fallback


def normalize_user_event(m: JsonMapping) -> NormalizedEvent:
    """현물/마진 user data 이벤트를 태그별로 정규화한다."""

    event_type = m.get("e")
    if event_type == "outboundAccountInfo":
        return outbound_account_info(m)
    elif event_type == "outboundAccountPosition":
        return outbound_account_position(m)
    elif event_type == "executionReport":
        return execution_report(m)
    elif event_type == "listStatus":
        return list_status(m)
    elif event_type == "balanceUpdate":
        return balance_update(m)
    return unknown_event(m)


# ----------------------------------------------------------------------
# 선물/코인 마진 user data 이벤트
# ----------------------------------------------------------------------
def margin_call(m: JsonMapping) -> NormalizedEvent:
    positions: dict[str, dict[str, Any]] = {}
    for position in _records(m.get("p")):
        symbol = position.get("s")
        if not isinstance(symbol, str):
            continue
        positions[symbol] = {
            "symbol": position.get("s"),
            "positionSide": position.get("ps"),
            "positionAmount": position.get("pa"),
            "marginType": position.get("mt"),
            "isolatedWallet": position.get("iw"),
            "markPrice": position.get("mp"),
            "unrealizedPnL": position.get("up"),
            "maintenanceMarginRequired": position.get("mm"),
        }
    return {
        "eventType": "MARGIN_CALL",
        "eventTime": m.get("E"),
        "crossWalletBalance": m.get("cw"),
        "positions": positions,
    }


def account_update(m: JsonMapping) -> NormalizedEvent:
    a = _nested(m, "a")
    return {
        "eventType": "ACCOUNT_UPDATE",
        "eventTime": m.get("E"),
        "transactionTime": m.get("T"),
        "eventReasonType": a.get("m"),
        "balances": [
            {
                "asset": balance.get("a"),
                "walletBalance": balance.get("wb"),
                "crossWalletBalance": balance.get("cw"),
                "balanceChange": balance.get("bc"),
            }
            for balance in _records(a.get("B"))
        ],
        "positions": [
            {
                "symbol": position.get("s"),
                "positionAmount": position.get("pa"),
                "entryPrice": position.get("ep"),
                "accumulatedRealized": position.get("cr"),
                "unrealizedPnL": position.get("up"),
                "marginType": position.get("mt"),
                "isolatedWallet": position.get("iw"),
                "positionSide": position.get("ps"),
            }
            for position in _records(a.get("P"))
        ],
    }


def order_trade_update(m: JsonMapping) -> NormalizedEvent:
    o = _nested(m, "o")
    return {
        "eventType": "ORDER_TRADE_UPDATE",
        "eventTime": m.get("E"),
        "transactionTime": m.get("T"),
        "symbol": o.get("s"),
        "clientOrderId": o.get("c"),
        "side": o.get("S"),
        "orderType": o.get("o"),
        "timeInForce": o.get("f"),
        "quantity": o.get("q"),
        "price": o.get("p"),
        "averagePrice": o.get("ap"),
        "stopPrice": o.get("sp"),
        "executionType": o.get("x"),
        "orderStatus": o.get("X"),
        "orderId": o.get("i"),
        "lastTradeQuantity": o.get("l"),
        "totalTradeQuantity": o.get("z"),
        "priceLastTrade": o.get("L"),
        "commissionAsset": o.get("N"),
        "commission": o.get("n"),
        "orderTime": o.get("T"),
        "tradeId": o.get("t"),
        "bidsNotional": o.get("b"),
        "asksNotional": o.get("a"),
        "isMaker": o.get("m"),
        "isReduceOnly": o.get("R"),
        "workingType": o.get("wt"),
        "originalOrderType": o.get("ot"),
        "positionSide": o.get("ps"),
        "closePosition": o.get("cp"),
        "activationPrice": o.get("AP"),
        "callbackRate": o.get("cr"),
        "realizedProfit": o.get("rp"),
    }


def account_config_update(m: JsonMapping) -> NormalizedEvent:
    """레버리지 변경(``ac``) 또는 멀티 자산 모드 변경(``ai``)."""

    normalized: NormalizedEvent = {
        "eventType": "ACCOUNT_CONFIG_UPDATE",
        "eventTime": m.get("E"),
        "transactionTime": m.get("T"),
    }
    leverage = m.get("ac")
    if isinstance(leverage, Mapping):
        normalized["type"] = "ACCOUNT_CONFIG"
        normalized["symbol"] = leverage.get("s")
        normalized["leverage"] = leverage.get("l")
    else:
        normalized["type"] = "MULTI_ASSETS"
        normalized["multiAssets"] = _nested(m, "ai").get("j")
    return normalized


def normalize_futures_user_event(m: JsonMapping) -> NormalizedEvent:
    """선물/코인 마진 user data 이벤트를 태그별로 정규화한다."""

    event_type = m.get("e")
    if event_type == "MARGIN_CALL":
        return margin_call(m)
    elif event_type == "ACCOUNT_UPDATE":
        return account_update(m)
    elif event_type == "ORDER_TRADE_UPDATE":
        return order_trade_update(m)
    elif event_type == "ACCOUNT_CONFIG_UPDATE":
        return account_config_update(m)
    return unknown_event(m)


__all__ = [
    "NormalizedEvent",
    "Normalizer",
    "account_config_update",
    "account_update",
    "agg_trade",
    "balance_update",
    "book_ticker",
    "candle",
    "delivery_candle",
    "delivery_depth",
    "delivery_mini_ticker",
    "delivery_partial_depth",
    "delivery_ticker",
    "depth",
    "each",
    "execution_report",
    "futures_agg_trade",
    "futures_depth",
    "futures_partial_depth",
    "futures_ticker",
    "liquidation",
    "list_status",
    "margin_call",
    "mark_price",
    "mini_ticker",
    "normalize_futures_user_event",
    "normalize_user_event",
    "order_trade_update",
    "outbound_account_info",
    "outbound_account_position",
    "partial_depth",
    "ticker",
    "trade",
    "unknown_event",
]
