"""시그널링 모듈.

시그널링 허브 WebSocket 채널과 룸 참가자 추적을 제공합니다.

Classes:
    SignalingTransport: 재접속하는 허브 WebSocket 클라이언트
    EventDispatcher: 이벤트 핸들러 디스패처
    RoomMembershipTracker: 참가자 목록/통화 활성 상태 추적
"""

from . import events
from .events import Participant
from .transport import SignalingTransport, EventDispatcher
from .membership import RoomMembershipTracker

__all__ = [
    "events",
    "Participant",
    "SignalingTransport",
    "EventDispatcher",
    "RoomMembershipTracker",
]
