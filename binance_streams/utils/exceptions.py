"""라이브러리 공통 예외 계층."""

from __future__ import annotations

from typing import Optional


class AppError(Exception):
    """프로젝트 전반에서 사용하는 기본 예외 클래스."""


class ConfigurationError(AppError):
    """환경 설정이나 필수 값이 누락된 경우 발생."""


class ParameterError(AppError, ValueError):
    """스트림 구독 호출 인자가 잘못된 경우 발생한다. 재시도 대상이 아니다."""


class ExchangeError(AppError):
    """거래소 API 호출 중 발생한 예외."""

    def __init__(self, message: str, *, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.code = code


class WebSocketError(ExchangeError):
    """WebSocket 통신 중 발생하는 예외."""


__all__ = [
    "AppError",
    "ConfigurationError",
    "ExchangeError",
    "ParameterError",
    "WebSocketError",
]
