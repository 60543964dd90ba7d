"""시그널링 와이어 이벤트 정의.

모든 메시지는 {"type": <event>, "data": <payload>} 형태의 JSON으로 전송되며,
payload 필드는 camelCase를 사용합니다.
"""

from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

# client → hub
ROOM_JOIN = "room:join"
ROOM_LEAVE = "room:leave"
ROOM_STATUS = "room:status"

# hub → client
CONNECTION_READY = "connection:ready"
ROOM_STATE = "room:state"
ROOM_COUNT = "room:count"
PEER_JOINED = "peer:joined"
PEER_LEFT = "peer:left"
ERROR = "error"

# both directions
SIGNAL_OFFER = "signal:offer"
SIGNAL_ANSWER = "signal:answer"
SIGNAL_ICE_CANDIDATE = "signal:ice-candidate"

SIGNAL_EVENTS = (SIGNAL_OFFER, SIGNAL_ANSWER, SIGNAL_ICE_CANDIDATE)

# Transport-local lifecycle events (never on the wire)
CONNECT = "connect"
DISCONNECT = "disconnect"


class WireModel(BaseModel):
    """camelCase 별칭을 사용하는 payload 기본 모델."""

    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class Participant(WireModel):
    """룸 참가자."""

    connection_id: str = Field(alias="connectionId", description="전송 계층이 부여한 연결 ID")
    user_id: str = Field(default="", alias="userId", description="사용자 ID")
    display_name: str = Field(default="", alias="displayName", description="표시 이름")


class RoomKeyPayload(WireModel):
    room_key: str = Field(alias="roomKey", description="작업지시 ID")


class RoomStatePayload(WireModel):
    participants: List[Participant] = Field(default_factory=list)


class RoomStatusPayload(WireModel):
    count: int = 0
    is_active: bool = Field(default=False, alias="isActive")


class RoomCountPayload(WireModel):
    count: int = 0


class ConnectionReadyPayload(WireModel):
    connection_id: str = Field(alias="connectionId")


class PeerLeftPayload(WireModel):
    connection_id: str = Field(alias="connectionId")


class SessionDescription(WireModel):
    type: str
    sdp: str


class SignalPayload(WireModel):
    """signal:* 공통 payload.

    클라이언트 → 허브는 targetConnectionId, 허브 → 클라이언트는
    fromConnectionId를 사용합니다.
    """

    target_connection_id: Optional[str] = Field(default=None, alias="targetConnectionId")
    from_connection_id: Optional[str] = Field(default=None, alias="fromConnectionId")
    user_id: Optional[str] = Field(default=None, alias="userId")
    display_name: Optional[str] = Field(default=None, alias="displayName")
    offer: Optional[SessionDescription] = None
    answer: Optional[SessionDescription] = None
    candidate: Optional[dict] = None


class ErrorPayload(WireModel):
    message: str


def envelope(event: str, payload: Optional[dict] = None) -> dict:
    """와이어 메시지 봉투를 생성합니다."""
    return {"type": event, "data": payload or {}}
