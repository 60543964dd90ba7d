"""시그널링 허브 모듈.

웹 프레임워크와 무관한 서버 측 시그널링 로직입니다. 연결마다 connectionId를
부여하고, 작업지시 룸 참가/퇴장을 추적하며, signal:* 메시지를 대상 연결로
중계합니다. FastAPI 라우터(routes/signaling.py)는 WebSocket을 이 클래스에
연결하는 역할만 합니다.

처리하는 메시지 타입:
    - room:join: 룸 참가 → 참가자에게 room:state, 나머지에게 peer:joined
    - room:leave: 룸 퇴장 → 나머지에게 peer:left
    - room:status: 인원 응답 + 이후 room:count 변경 구독
    - signal:offer / signal:answer / signal:ice-candidate: 대상 연결로 중계
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from pydantic import ValidationError

from ..signaling import events
from ..signaling.events import RoomKeyPayload, SignalPayload
from .room_manager import HubParticipant, RoomManager

logger = logging.getLogger(__name__)


@dataclass
class HubConnection:
    """허브에 연결된 소켓 하나."""

    connection_id: str
    user_id: str
    display_name: str
    socket: Any
    watching: Set[str] = field(default_factory=set)


class SignalingHub:
    """작업지시 룸 시그널링 허브.

    Attributes:
        rooms (RoomManager): 룸/참가자 관리
        connections (Dict[str, HubConnection]): connectionId → 연결
        watchers (Dict[str, Set[str]]): 작업지시 ID → room:count 구독 connectionId

    Examples:
        >>> hub = SignalingHub()
        >>> connection_id = await hub.connect(socket, "u-1", "Inspector")
        >>> await hub.handle_message(connection_id, {"type": "room:join", "data": {"roomKey": "WO-1"}})
        >>> await hub.disconnect(connection_id)
    """

    def __init__(self, rooms: Optional[RoomManager] = None):
        self.rooms = rooms or RoomManager()
        self.connections: Dict[str, HubConnection] = {}
        self.watchers: Dict[str, Set[str]] = {}

    # ------------------------------------------------------------------
    # 연결 수명
    # ------------------------------------------------------------------

    async def connect(self, socket, user_id: str = "", display_name: str = "") -> str:
        """새 연결을 등록하고 connection:ready를 보냅니다.

        Returns:
            str: 부여된 connectionId
        """
        connection_id = str(uuid.uuid4())
        self.connections[connection_id] = HubConnection(
            connection_id=connection_id,
            user_id=user_id,
            display_name=display_name or "Anonymous",
            socket=socket,
        )
        logger.info(f"[Hub] 연결 {connection_id[:8]} 수락 (user={user_id})")
        await self._send(connection_id, events.CONNECTION_READY, {"connectionId": connection_id})
        return connection_id

    async def disconnect(self, connection_id: str):
        """연결을 정리합니다. 참가 중이던 룸에는 peer:left를 알립니다."""
        connection = self.connections.pop(connection_id, None)
        if connection is None:
            return
        for room_key in connection.watching:
            room_watchers = self.watchers.get(room_key)
            if room_watchers is not None:
                room_watchers.discard(connection_id)
                if not room_watchers:
                    self.watchers.pop(room_key, None)
        await self._leave(connection_id)
        logger.info(f"[Hub] 연결 {connection_id[:8]} 정리 완료")

    # ------------------------------------------------------------------
    # 메시지 처리
    # ------------------------------------------------------------------

    async def handle_message(self, connection_id: str, message: Any):
        """클라이언트 메시지 하나를 처리합니다."""
        if connection_id not in self.connections:
            return
        if not isinstance(message, dict) or not isinstance(message.get("type"), str):
            await self._send_error(connection_id, "Malformed message")
            return

        event = message["type"]
        payload = message.get("data") or {}
        try:
            if event == events.ROOM_JOIN:
                await self._handle_join(connection_id, RoomKeyPayload.model_validate(payload))
            elif event == events.ROOM_LEAVE:
                await self._leave(connection_id)
            elif event == events.ROOM_STATUS:
                await self._handle_status(connection_id, RoomKeyPayload.model_validate(payload))
            elif event in events.SIGNAL_EVENTS:
                await self._relay(connection_id, event, SignalPayload.model_validate(payload))
            else:
                logger.warning(f"[Hub] 알 수 없는 메시지 타입: {event}")
                await self._send_error(connection_id, f"Unknown message type: {event}")
        except ValidationError as e:
            logger.warning(f"[Hub] {event} payload 검증 실패 ({connection_id[:8]}): {e.error_count()}개 오류")
            await self._send_error(connection_id, f"Invalid payload for {event}")

    async def _handle_join(self, connection_id: str, payload: RoomKeyPayload):
        connection = self.connections[connection_id]
        room_key = payload.room_key

        if self.rooms.get_room_of(connection_id) not in (None, room_key):
            await self._leave(connection_id)

        others = self.rooms.get_other_participants(room_key, connection_id)
        self.rooms.join_room(room_key, HubParticipant(
            connection_id=connection_id,
            user_id=connection.user_id,
            display_name=connection.display_name,
            socket=connection.socket,
        ))

        await self._send(connection_id, events.ROOM_STATE, {
            "participants": [p.to_participant().to_wire() for p in others],
        })
        joined = self.rooms.get_participant(connection_id).to_participant().to_wire()
        await self._broadcast(
            [p.connection_id for p in others], events.PEER_JOINED, joined
        )
        await self._broadcast_count(room_key)

    async def _handle_status(self, connection_id: str, payload: RoomKeyPayload):
        room_key = payload.room_key
        self.watchers.setdefault(room_key, set()).add(connection_id)
        self.connections[connection_id].watching.add(room_key)
        count = self.rooms.get_room_count(room_key)
        await self._send(connection_id, events.ROOM_STATUS, {"count": count, "isActive": count > 0})

    async def _leave(self, connection_id: str):
        room_key = self.rooms.leave_room(connection_id)
        if room_key is None:
            return
        remaining = [p.connection_id for p in self.rooms.get_room_participants(room_key)]
        await self._broadcast(remaining, events.PEER_LEFT, {"connectionId": connection_id})
        await self._broadcast_count(room_key)

    async def _relay(self, connection_id: str, event: str, payload: SignalPayload):
        target_id = payload.target_connection_id
        room_key = self.rooms.get_room_of(connection_id)
        if not target_id or room_key is None or self.rooms.get_room_of(target_id) != room_key:
            logger.warning(f"[Hub] {event} 대상 없음 - 폐기 ({connection_id[:8]} → {(target_id or '')[:8]})")
            return

        update = {"target_connection_id": None, "from_connection_id": connection_id}
        if event == events.SIGNAL_OFFER:
            sender = self.connections[connection_id]
            update.update(user_id=sender.user_id, display_name=sender.display_name)
        relayed = payload.model_copy(update=update)
        await self._send(target_id, event, relayed.to_wire())

    # ------------------------------------------------------------------
    # 전송
    # ------------------------------------------------------------------

    async def _send(self, connection_id: str, event: str, payload: dict) -> bool:
        connection = self.connections.get(connection_id)
        if connection is None:
            return False
        try:
            await connection.socket.send_json(events.envelope(event, payload))
            return True
        except Exception as e:
            logger.error(f"[Hub] {connection_id[:8]}에 {event} 전송 중 오류: {e}")
            return False

    async def _send_error(self, connection_id: str, message: str):
        await self._send(connection_id, events.ERROR, {"message": message})

    async def _broadcast(self, connection_ids: List[str], event: str, payload: dict):
        disconnected = []
        for connection_id in connection_ids:
            if not await self._send(connection_id, event, payload):
                disconnected.append(connection_id)
        # 연결 끊긴 소켓 정리
        for connection_id in disconnected:
            await self.disconnect(connection_id)

    async def _broadcast_count(self, room_key: str):
        recipients = set(self.watchers.get(room_key, set()))
        recipients.update(p.connection_id for p in self.rooms.get_room_participants(room_key))
        await self._broadcast(
            sorted(recipients), events.ROOM_COUNT, {"count": self.rooms.get_room_count(room_key)}
        )

    # ------------------------------------------------------------------
    # 조회
    # ------------------------------------------------------------------

    def stats(self) -> dict:
        return {
            "connections": len(self.connections),
            "rooms": len(self.rooms.rooms),
            "participants": sum(len(room) for room in self.rooms.rooms.values()),
        }
