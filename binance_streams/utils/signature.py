"""REST 요청 서명 헬퍼."""

from __future__ import annotations

import hashlib
import hmac
from typing import Protocol


class Signer(Protocol):
    """메시지와 시크릿으로 서명 문자열을 만드는 객체."""

    def __call__(self, message: str, secret: str) -> str: ...


def create_hmac_signature(message: str, secret: str) -> str:
    """HMAC-SHA256 서명을 16진수 문자열로 반환한다."""

    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha256).hexdigest()


__all__ = ["Signer", "create_hmac_signature"]
