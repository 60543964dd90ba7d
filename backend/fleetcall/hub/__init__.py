"""서버 측 시그널링 허브.

Classes:
    SignalingHub: 룸 참가 추적 및 signal:* 중계
    RoomManager: 작업지시 룸/참가자 관리
"""

from .room_manager import RoomManager, HubParticipant
from .signaling_hub import SignalingHub, HubConnection

__all__ = ["SignalingHub", "HubConnection", "RoomManager", "HubParticipant"]
