"""Health Check API 라우터.

시그널링 허브 상태 확인을 위한 엔드포인트들을 제공합니다.
"""

from fastapi import APIRouter, Depends

from .deps import verify_auth_header
from .signaling import get_hub

router = APIRouter(prefix="/api/health", tags=["health"])


@router.get("")
async def health_check():
    """허브 상태와 연결/룸 합계를 반환합니다.

    Returns:
        dict: {"status": "ok" | "not_initialized", "hub": {connections, rooms, participants}}
    """
    hub = get_hub()
    if hub is None:
        return {"status": "not_initialized", "hub": None}
    return {"status": "ok", "hub": hub.stats()}


@router.get("/rooms", dependencies=[Depends(verify_auth_header)])
async def room_list():
    """활성 작업지시 룸 목록을 반환합니다."""
    hub = get_hub()
    if hub is None:
        return {"rooms": []}
    return {"rooms": hub.rooms.get_room_list()}
