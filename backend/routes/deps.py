"""라우터 공유 의존성.

REST와 WebSocket 모두 ACCESS_PASSWORD 하나로 보호됩니다. 비밀번호가 비어
있으면 인증을 생략합니다 (로컬 개발). 시그널링 연결의 사용자 정보는 호스트
앱이 쿼리로 넘기며, 허브에 등록하기 전에 여기서 정규화합니다.
"""

import hmac
import os
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, HTTPException, Query

MAX_DISPLAY_NAME = 64
ANONYMOUS = "Anonymous"


def _access_password() -> str:
    # Read on every call so .env loading order and test overrides both apply
    return os.getenv("ACCESS_PASSWORD", "")


def _token_matches(token: Optional[str]) -> bool:
    password = _access_password()
    if not password:
        return True
    if not token:
        return False
    return hmac.compare_digest(token.encode(), password.encode())


async def verify_auth_header(authorization: Optional[str] = Header(None)) -> bool:
    """`Authorization: Bearer <password>` 헤더를 검증합니다.

    Raises:
        HTTPException: 401, 헤더가 없거나 형식/비밀번호가 틀린 경우
    """
    if not _access_password():
        return True
    if not authorization:
        raise HTTPException(status_code=401, detail="Authorization header required")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Invalid authorization format")
    if not _token_matches(token.strip()):
        raise HTTPException(status_code=401, detail="Invalid password")
    return True


def verify_ws_token(token: Optional[str]) -> bool:
    """WebSocket 쿼리 토큰 검증 (accept 전에 호출)."""
    return _token_matches(token)


@dataclass(frozen=True)
class CallerIdentity:
    """시그널링 연결을 연 사용자."""
    user_id: str
    display_name: str


def resolve_identity(
    user_id: str = Query(""),
    display_name: str = Query(""),
) -> CallerIdentity:
    """쿼리의 사용자 정보를 정규화합니다.

    앞뒤 공백을 제거하고 표시 이름은 MAX_DISPLAY_NAME자로 자릅니다.
    표시 이름이 비어 있으면 "Anonymous"를 사용합니다.
    """
    name = " ".join(display_name.split())[:MAX_DISPLAY_NAME]
    return CallerIdentity(user_id=user_id.strip(), display_name=name or ANONYMOUS)
