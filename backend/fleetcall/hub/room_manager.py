"""작업지시 룸 관리 모듈.

시그널링 허브가 작업지시(룸)별 참가자를 추적하는 데 사용합니다.

Architecture:
    - rooms: Dict[str, Dict[str, HubParticipant]] - 작업지시 ID → 참가자 맵
    - connection_to_room: Dict[str, str] - connectionId → 작업지시 ID (빠른 조회용)

Examples:
    >>> manager = RoomManager()
    >>> manager.join_room("WO-1042", HubParticipant("conn-a", "u-1", "Inspector", socket))
    >>> manager.get_room_count("WO-1042")
    1
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..signaling.events import Participant

logger = logging.getLogger(__name__)


@dataclass
class HubParticipant:
    """룸에 참가한 연결 하나.

    Attributes:
        connection_id (str): 허브가 부여한 연결 ID (UUID)
        user_id (str): 호스트 앱의 사용자 ID
        display_name (str): 표시 이름
        socket (Any): send_json(dict)을 제공하는 소켓
    """
    connection_id: str
    user_id: str
    display_name: str
    socket: Any

    def to_participant(self) -> Participant:
        return Participant(
            connection_id=self.connection_id,
            user_id=self.user_id,
            display_name=self.display_name,
        )


class RoomManager:
    """작업지시 룸과 참가자를 관리하는 클래스.

    Note:
        - 첫 참가 시 룸 자동 생성, 마지막 참가자 퇴장 시 자동 삭제
        - 한 연결은 동시에 하나의 룸에만 참가 가능
    """

    def __init__(self):
        # room_key -> {connection_id: HubParticipant}
        self.rooms: Dict[str, Dict[str, HubParticipant]] = {}
        # connection_id -> room_key
        self.connection_to_room: Dict[str, str] = {}

    def join_room(self, room_key: str, participant: HubParticipant) -> Optional[str]:
        """참가자를 룸에 추가합니다.

        다른 룸에 이미 참가 중이면 먼저 그 룸에서 제거합니다.

        Returns:
            Optional[str]: 이전에 참가하던 다른 룸. 없으면 None
        """
        previous = self.connection_to_room.get(participant.connection_id)
        if previous == room_key:
            previous = None
        elif previous is not None:
            self.leave_room(participant.connection_id)

        if room_key not in self.rooms:
            self.rooms[room_key] = {}
            logger.info(f"[Hub] 룸 '{room_key}' 생성")

        self.rooms[room_key][participant.connection_id] = participant
        self.connection_to_room[participant.connection_id] = room_key
        logger.info(
            f"[Hub] '{participant.display_name}' ({participant.connection_id[:8]}) 룸 '{room_key}' 참가. "
            f"현재 {len(self.rooms[room_key])}명"
        )
        return previous

    def leave_room(self, connection_id: str) -> Optional[str]:
        """참가자를 현재 룸에서 제거합니다.

        Returns:
            Optional[str]: 참가자가 속해있던 룸. 어떤 룸에도 없었으면 None
        """
        room_key = self.connection_to_room.pop(connection_id, None)
        if room_key is None:
            return None

        room = self.rooms.get(room_key, {})
        participant = room.pop(connection_id, None)
        if not room:
            self.rooms.pop(room_key, None)
            logger.info(f"[Hub] 룸 '{room_key}' 삭제 (비어있음)")
        elif participant:
            logger.info(
                f"[Hub] '{participant.display_name}' ({connection_id[:8]}) 룸 '{room_key}' 퇴장. "
                f"현재 {len(room)}명"
            )
        return room_key

    def get_room_of(self, connection_id: str) -> Optional[str]:
        return self.connection_to_room.get(connection_id)

    def get_participant(self, connection_id: str) -> Optional[HubParticipant]:
        room_key = self.connection_to_room.get(connection_id)
        if room_key is None:
            return None
        return self.rooms.get(room_key, {}).get(connection_id)

    def get_room_participants(self, room_key: str) -> List[HubParticipant]:
        return list(self.rooms.get(room_key, {}).values())

    def get_other_participants(self, room_key: str, exclude_connection_id: str) -> List[HubParticipant]:
        return [
            p for p in self.rooms.get(room_key, {}).values()
            if p.connection_id != exclude_connection_id
        ]

    def get_room_count(self, room_key: str) -> int:
        return len(self.rooms.get(room_key, {}))

    def get_room_list(self) -> List[dict]:
        """활성 룸 목록을 반환합니다.

        Returns:
            List[dict]: [{"room_key": str, "participant_count": int, "participants": [display_name, ...]}]
        """
        return [
            {
                "room_key": room_key,
                "participant_count": len(room),
                "participants": [p.display_name for p in room.values()],
            }
            for room_key, room in self.rooms.items()
        ]
