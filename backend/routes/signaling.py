"""시그널링 WebSocket 라우터.

FastAPI WebSocket을 SignalingHub에 연결합니다. 룸 참가/퇴장, offer/answer,
ICE candidate 중계 로직은 fleetcall.hub.SignalingHub가 담당합니다.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, Query

from fleetcall.hub import SignalingHub
from .deps import CallerIdentity, resolve_identity, verify_ws_token

logger = logging.getLogger(__name__)

router = APIRouter()

# 글로벌 허브 참조 (app.py에서 설정됨)
_hub: Optional[SignalingHub] = None


def init_hub(hub: SignalingHub):
    """허브 인스턴스를 설정합니다.

    app.py에서 호출하여 글로벌 허브 참조를 설정합니다.
    """
    global _hub
    _hub = hub
    logger.info("[Hub] 시그널링 라우터 허브 초기화 완료")


def get_hub() -> Optional[SignalingHub]:
    return _hub


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None),
    identity: CallerIdentity = Depends(resolve_identity),
):
    """작업지시 룸 시그널링을 위한 WebSocket 엔드포인트.

    연결 직후 connection:ready {connectionId}를 보내고, 이후 수신한 JSON
    메시지를 허브로 전달합니다.

    Args:
        websocket: FastAPI WebSocket 연결 객체
        token: 인증 토큰 (쿼리 파라미터)
        identity: 쿼리 user_id/display_name을 정규화한 사용자 정보
    """
    if _hub is None:
        logger.error("[Hub] 허브가 초기화되지 않음")
        await websocket.close(code=1011, reason="Server not ready")
        return

    # 연결 수락 전 토큰 검증
    if not verify_ws_token(token):
        await websocket.close(code=4001, reason="Unauthorized")
        return

    await websocket.accept()
    connection_id = await _hub.connect(websocket, identity.user_id, identity.display_name)

    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                await websocket.send_json({"type": "error", "data": {"message": "Invalid JSON"}})
                continue
            await _hub.handle_message(connection_id, message)

    except WebSocketDisconnect:
        logger.info(f"[Hub] 연결 {connection_id[:8]} 끊김")
    except Exception as e:
        logger.error(f"[Hub] 연결 {connection_id[:8]} WebSocket 오류: {e}", exc_info=True)
    finally:
        await _hub.disconnect(connection_id)
