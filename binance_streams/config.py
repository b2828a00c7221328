"""환경변수 기반 라이브러리 설정 로더."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, ConfigDict, Field, SecretStr

# 라이브러리 설치 위치가 아니라 실행 위치의 .env를 읽는다
load_dotenv(find_dotenv(usecwd=True))


def _to_bool(value: str | bool | None, default: bool = False) -> bool:
    """문자열 값을 불리언으로 변환한다."""
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized in {"1", "true", "yes", "on"}


def _to_float(value: str | float | None, default: float) -> float:
    """문자열 값을 실수로 변환한다."""
    if isinstance(value, (int, float)):
        return float(value)
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


class LoggingSettings(BaseModel):
    """로깅 관련 설정."""

    model_config = ConfigDict(populate_by_name=True)

    level: str = Field(default="INFO")
    log_dir: Path = Field(default=Path("logs"))
    file_name: str = Field(default="binance_streams.log")
    rotation_when: str = Field(default="midnight")
    rotation_interval: int = Field(default=1, ge=1)
    backup_count: int = Field(default=7, ge=0)
    file_enabled: bool = Field(default=True)

    @classmethod
    def from_env(cls) -> "LoggingSettings":
        """환경변수에서 로깅 설정을 생성한다."""
        log_dir_value = os.getenv("LOG_DIR", "logs")
        return cls(
            level=os.getenv("LOG_LEVEL", "INFO"),
            log_dir=Path(log_dir_value).expanduser(),
            file_name=os.getenv("LOG_FILE_NAME", "binance_streams.log"),
            rotation_when=os.getenv("LOG_ROTATION_WHEN", "midnight"),
            rotation_interval=int(_to_float(os.getenv("LOG_ROTATION_INTERVAL"), 1)),
            backup_count=int(_to_float(os.getenv("LOG_BACKUP_COUNT"), 7)),
            file_enabled=_to_bool(os.getenv("LOG_TO_FILE"), True),
        )

    @property
    def normalized_level(self) -> str:
        """대문자로 정규화된 로그 레벨."""
        return self.level.upper()

    def resolve_log_dir(self, root_dir: Path) -> Path:
        """루트 경로 기준 로그 디렉터리를 반환한다."""
        if self.log_dir.is_absolute():
            return self.log_dir
        return (root_dir / self.log_dir).resolve()

    def resolve_log_path(self, root_dir: Path) -> Path:
        """루트 경로 기준 로그 파일 전체 경로."""
        return self.resolve_log_dir(root_dir) / self.file_name


class BinanceSettings(BaseModel):
    """바이낸스 REST/WebSocket 엔드포인트와 인증 정보."""

    model_config = ConfigDict(populate_by_name=True)

    api_key: Optional[SecretStr] = Field(default=None)
    api_secret: Optional[SecretStr] = Field(default=None)
    testnet: bool = Field(default=False)
    proxy: Optional[str] = Field(default=None)

    spot_rest_base_url: str = Field(default="https://api.binance.com")
    futures_rest_base_url: str = Field(default="https://fapi.binance.com")
    delivery_rest_base_url: str = Field(default="https://dapi.binance.com")

    spot_ws_base_url: str = Field(default="wss://stream.binance.com:9443")
    futures_ws_base_url: str = Field(default="wss://fstream.binance.com")
    delivery_ws_base_url: str = Field(default="wss://dstream.binance.com")
    ws_api_url: str = Field(default="wss://ws-api.binance.com:443/ws-api/v3")

    @classmethod
    def from_env(cls) -> "BinanceSettings":
        """환경변수에서 바이낸스 설정을 생성한다. 테스트넷이면 기본 URL이 바뀐다."""
        api_key = os.getenv("BINANCE_API_KEY")
        api_secret = os.getenv("BINANCE_API_SECRET")
        testnet = _to_bool(os.getenv("BINANCE_TESTNET"), False)
        defaults = TESTNET_URLS if testnet else MAINNET_URLS
        return cls(
            api_key=SecretStr(api_key) if api_key else None,
            api_secret=SecretStr(api_secret) if api_secret else None,
            testnet=testnet,
            proxy=os.getenv("BINANCE_PROXY") or None,
            **{
                field: os.getenv(f"BINANCE_{field.upper()}", default)
                for field, default in defaults.items()
            },
        )


MAINNET_URLS: dict[str, str] = {
    "spot_rest_base_url": "https://api.binance.com",
    "futures_rest_base_url": "https://fapi.binance.com",
    "delivery_rest_base_url": "https://dapi.binance.com",
    "spot_ws_base_url": "wss://stream.binance.com:9443",
    "futures_ws_base_url": "wss://fstream.binance.com",
    "delivery_ws_base_url": "wss://dstream.binance.com",
    "ws_api_url": "wss://ws-api.binance.com:443/ws-api/v3",
}

TESTNET_URLS: dict[str, str] = {
    "spot_rest_base_url": "https://testnet.binance.vision",
    "futures_rest_base_url": "https://testnet.binancefuture.com",
    "delivery_rest_base_url": "https://testnet.binancefuture.com",
    "spot_ws_base_url": "wss://stream.testnet.binance.vision",
    "futures_ws_base_url": "wss://stream.binancefuture.com",
    "delivery_ws_base_url": "wss://dstream.binancefuture.com",
    "ws_api_url": "wss://testnet.binance.vision/ws-api/v3",
}


class StreamSettings(BaseModel):
    """재연결, 타임아웃, listen key 갱신 주기 설정."""

    model_config = ConfigDict(populate_by_name=True)

    connection_timeout: float = Field(default=4.0, gt=0)
    min_reconnection_delay: float = Field(default=4.0, ge=0)
    max_reconnection_delay: float = Field(default=10.0, ge=0)
    keepalive_interval: float = Field(default=50.0, gt=0)
    close_on_keepalive_failure: bool = Field(default=False)

    @classmethod
    def from_env(cls) -> "StreamSettings":
        """환경변수에서 스트림 설정을 생성한다."""
        return cls(
            connection_timeout=_to_float(os.getenv("STREAM_CONNECTION_TIMEOUT"), 4.0),
            min_reconnection_delay=_to_float(os.getenv("STREAM_MIN_RECONNECT_DELAY"), 4.0),
            max_reconnection_delay=_to_float(os.getenv("STREAM_MAX_RECONNECT_DELAY"), 10.0),
            keepalive_interval=_to_float(os.getenv("STREAM_KEEPALIVE_INTERVAL"), 50.0),
            close_on_keepalive_failure=_to_bool(os.getenv("STREAM_CLOSE_ON_KEEPALIVE_FAILURE"), False),
        )


class AppSettings(BaseModel):
    """라이브러리 전반에 사용되는 설정 묶음."""

    environment: str = Field(default="development")
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    binance: BinanceSettings = Field(default_factory=BinanceSettings)
    stream: StreamSettings = Field(default_factory=StreamSettings)

    @classmethod
    def load(cls) -> "AppSettings":
        """환경변수 및 기본값을 반영하여 설정 인스턴스를 생성한다."""
        return cls(
            environment=os.getenv("APP_ENV", "development"),
            logging=LoggingSettings.from_env(),
            binance=BinanceSettings.from_env(),
            stream=StreamSettings.from_env(),
        )


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    """전역 설정을 캐시하여 반환한다."""
    return AppSettings.load()


__all__ = [
    "AppSettings",
    "BinanceSettings",
    "LoggingSettings",
    "MAINNET_URLS",
    "StreamSettings",
    "TESTNET_URLS",
    "get_settings",
]
