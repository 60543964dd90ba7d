"""룸 참가자 추적 모듈.

시그널링 이벤트를 받아 작업지시 룸의 실시간 참가자 목록과 통화 활성 상태를
유지하고, 참가자 입퇴장에 맞춰 PeerSession을 생성/정리합니다.

협상 시작 규칙:
    - 새로 들어온 쪽(newcomer)은 room:state로 받은 기존 참가자마다 세션을 만들되
      offer는 보내지 않고 기다림 (passive)
    - 기존 참가자는 peer:joined를 받으면 세션을 만들고 offer를 보냄
    - 이 비대칭 규칙으로 참가자 쌍마다 offer가 하나만 생성됨
"""

import logging
from typing import Dict, Optional, TYPE_CHECKING

from . import events
from .events import Participant

if TYPE_CHECKING:
    from ..coordinator import CallContext
    from ..webrtc.peer_manager import PeerSessionManager

logger = logging.getLogger(__name__)


class RoomMembershipTracker:
    """룸 참가자 목록과 통화 활성 카운터를 관리하는 클래스.

    Attributes:
        transport: 시그널링 전송 채널
        peers (PeerSessionManager): 피어 세션 관리자
        context (Optional[CallContext]): 포커스 피어 정리용 통화 컨텍스트
        room_key (Optional[str]): 참가 중인 룸 (작업지시 ID)
        roster (Dict[str, Participant]): connectionId → 원격 참가자 (본인 제외)
        participant_count (int): 허브가 알려준 룸 인원
        call_active (bool): participant_count > 0
        joined (bool): 현재 룸에 참가 중인지 여부
    """

    def __init__(self, transport, peers: "PeerSessionManager", context: Optional["CallContext"] = None):
        self.transport = transport
        self.peers = peers
        self.context = context
        self.room_key: Optional[str] = None
        self.roster: Dict[str, Participant] = {}
        self.participant_count = 0
        self.call_active = False
        self.joined = False

        transport.on(events.CONNECT, self._on_connect)
        transport.on(events.ROOM_STATE, self._on_room_state)
        transport.on(events.ROOM_STATUS, self._on_room_status)
        transport.on(events.ROOM_COUNT, self._on_room_count)
        transport.on(events.PEER_JOINED, self._on_peer_joined)
        transport.on(events.PEER_LEFT, self._on_peer_left)
        transport.on(events.SIGNAL_OFFER, peers.handle_offer)
        transport.on(events.SIGNAL_ANSWER, peers.handle_answer)
        transport.on(events.SIGNAL_ICE_CANDIDATE, peers.handle_ice_candidate)

    @property
    def self_connection_id(self) -> Optional[str]:
        return self.transport.connection_id

    async def query_status(self, room_key: str):
        """룸 인원 조회를 요청합니다 (참가하지 않고도 가능)."""
        self.room_key = room_key
        await self.transport.send(events.ROOM_STATUS, {"roomKey": room_key})

    async def join(self, room_key: str):
        """룸 참가를 알리고 인원 조회를 요청합니다."""
        self.room_key = room_key
        self.joined = True
        await self.transport.send(events.ROOM_JOIN, {"roomKey": room_key})
        await self.transport.send(events.ROOM_STATUS, {"roomKey": room_key})
        logger.info(f"[Signaling] 룸 '{room_key}' 참가 요청")

    async def leave(self, room_key: Optional[str] = None):
        """룸 퇴장을 알리고 모든 피어 세션을 닫습니다. 참가 중이 아니면 무시합니다."""
        room_key = room_key or self.room_key
        if not self.joined:
            return
        self.joined = False
        await self.peers.close_all()
        self.roster.clear()
        if room_key:
            await self.transport.send(events.ROOM_LEAVE, {"roomKey": room_key})
            logger.info(f"[Signaling] 룸 '{room_key}' 퇴장")

    async def _on_connect(self, payload: dict):
        if not self.room_key:
            return
        await self.transport.send(events.ROOM_STATUS, {"roomKey": self.room_key})
        if self.joined:
            # Reconnected with a new connectionId: old sessions belong to the previous connection
            logger.info(f"[Signaling] 재접속 - 룸 '{self.room_key}' 재참가")
            await self.peers.close_all()
            self.roster.clear()
            await self.transport.send(events.ROOM_JOIN, {"roomKey": self.room_key})

    async def _on_room_state(self, payload: dict):
        state = events.RoomStatePayload.model_validate(payload)
        for participant in state.participants:
            if participant.connection_id == self.self_connection_id:
                continue
            self.roster[participant.connection_id] = participant
            self.peers.ensure_session(
                participant.connection_id, participant.user_id, participant.display_name
            )
        logger.info(f"[Signaling] 룸 스냅샷 수신: 기존 참가자 {len(self.roster)}명")

    def _on_room_status(self, payload: dict):
        status = events.RoomStatusPayload.model_validate(payload)
        self.participant_count = status.count
        self.call_active = status.is_active

    def _on_room_count(self, payload: dict):
        count = events.RoomCountPayload.model_validate(payload)
        self.participant_count = count.count
        self.call_active = count.count > 0

    async def _on_peer_joined(self, payload: dict):
        participant = Participant.model_validate(payload)
        if participant.connection_id == self.self_connection_id or not self.joined:
            return
        self.roster[participant.connection_id] = participant
        logger.info(f"[Signaling] 참가자 입장: {participant.display_name} ({participant.connection_id[:8]})")
        self.peers.ensure_session(
            participant.connection_id, participant.user_id, participant.display_name
        )
        await self.peers.initiate(participant.connection_id)

    async def _on_peer_left(self, payload: dict):
        left = events.PeerLeftPayload.model_validate(payload)
        participant = self.roster.pop(left.connection_id, None)
        await self.peers.remove_session(left.connection_id)
        if self.context and self.context.focused_peer_id == left.connection_id:
            self.context.focused_peer_id = None
        if participant:
            logger.info(f"[Signaling] 참가자 퇴장: {participant.display_name} ({left.connection_id[:8]})")
