"""라이브러리 로거와 선택적 로깅 설정.

라이브러리를 import하는 것만으로는 핸들러를 붙이거나 파일을 만들지 않는다.
애플리케이션이 ``configure_logging()``을 호출했을 때만 콘솔/파일 핸들러를 설정한다.
"""

from __future__ import annotations

import logging
from logging import Logger
from logging.config import dictConfig
from pathlib import Path
from typing import Any, Dict, Optional

from ..config import LoggingSettings, get_settings

PACKAGE_LOGGER = "binance_streams"

logging.getLogger(PACKAGE_LOGGER).addHandler(logging.NullHandler())

_LOG_CONFIGURED = False


def _build_logging_config(settings: LoggingSettings, root_dir: Path) -> Dict[str, Any]:
    """dictConfig에 사용할 로깅 설정을 생성한다."""
    level = settings.normalized_level
    handlers: Dict[str, Any] = {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
            "level": level,
        },
    }
    if settings.file_enabled:
        log_path = settings.resolve_log_path(root_dir)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers["file"] = {
            "class": "logging.handlers.TimedRotatingFileHandler",
            "formatter": "standard",
            "level": level,
            "filename": str(log_path),
            "when": settings.rotation_when,
            "interval": settings.rotation_interval,
            "backupCount": settings.backup_count,
            "encoding": "utf-8",
        }

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {
                "format": "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            }
        },
        "handlers": handlers,
        "loggers": {
            PACKAGE_LOGGER: {
                "level": level,
                "handlers": list(handlers),
                "propagate": False,
            },
            # 프레임 단위 디버그 로그는 너무 많다
            "websockets": {"level": "WARNING"},
        },
    }


def configure_logging(
    settings: Optional[LoggingSettings] = None,
    *,
    root_dir: Optional[Path] = None,
    force: bool = False,
) -> None:
    """콘솔/회전 파일 핸들러를 설정한다. 상대 로그 경로는 ``root_dir``(기본: 현재 디렉터리) 기준이다."""
    global _LOG_CONFIGURED
    if _LOG_CONFIGURED and not force:
        return
    logging_settings = settings or get_settings().logging
    dictConfig(_build_logging_config(logging_settings, root_dir or Path.cwd()))
    _LOG_CONFIGURED = True


def get_logger(name: str) -> Logger:
    """지정된 이름의 로거를 반환한다. 핸들러 구성은 애플리케이션의 몫이다."""
    return logging.getLogger(name)


__all__ = ["PACKAGE_LOGGER", "configure_logging", "get_logger"]
