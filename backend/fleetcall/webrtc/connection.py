"""피어 연결 어댑터 모듈.

PeerSessionManager가 사용하는 피어 연결 인터페이스를 aiortc RTCPeerConnection
위에 구현합니다. SDP와 ICE candidate는 브라우저와 같은 dict 형태로 주고받습니다.

    - description: {"type": "offer" | "answer", "sdp": "..."}
    - candidate: {"candidate": "candidate:...", "sdpMid": "0", "sdpMLineIndex": 0}

Note:
    aiortc는 setLocalDescription({"type": "rollback"})을 지원하지 않습니다.
    rollback()은 내부 RTCPeerConnection을 새로 만들고 로컬 트랙을 다시 붙여
    대기 중인 offer를 비우는 방식으로 동작합니다.
"""

import logging
from typing import Callable, Awaitable, List, Optional

from aiortc import (
    RTCConfiguration,
    RTCPeerConnection,
    RTCSessionDescription,
    MediaStreamTrack,
)
from aiortc.exceptions import InvalidAccessError, InvalidStateError
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from ..errors import NegotiationError
from .config import ice_config

logger = logging.getLogger(__name__)

TrackCallback = Callable[[MediaStreamTrack], Awaitable[None]]
CandidateCallback = Callable[[dict], Awaitable[None]]


def description_to_dict(description: Optional[RTCSessionDescription]) -> Optional[dict]:
    """RTCSessionDescription을 시그널링 전송용 dict로 변환."""
    if description is None:
        return None
    return {"type": description.type, "sdp": description.sdp}


def parse_candidate(candidate_data: dict):
    """브라우저 형식 ICE candidate dict를 aiortc RTCIceCandidate로 변환합니다.

    Raises:
        ValueError: candidate 문자열이 비어 있거나 형식이 잘못된 경우
    """
    candidate_str = candidate_data.get("candidate", "")
    if not candidate_str:
        raise ValueError("empty candidate")
    if candidate_str.startswith("candidate:"):
        candidate_str = candidate_str[10:]
    # foundation component protocol priority ip port "typ" type
    if len(candidate_str.split()) < 8:
        raise ValueError(f"incomplete candidate: {candidate_str!r}")

    ice_candidate = candidate_from_sdp(candidate_str)
    ice_candidate.sdpMid = candidate_data.get("sdpMid")
    ice_candidate.sdpMLineIndex = candidate_data.get("sdpMLineIndex")
    return ice_candidate


class AiortcPeerConnection:
    """aiortc 기반 피어 연결.

    Attributes:
        peer_id (str): 원격 피어의 connectionId (로그용)
        on_track (Optional[TrackCallback]): 원격 트랙 수신 시 호출
        on_ice_candidate (Optional[CandidateCallback]): 로컬 ICE candidate 생성 시 호출

    Note:
        - aiortc는 candidate를 trickle하지 않고 setLocalDescription 이후의
          local_description SDP에 포함하므로 on_ice_candidate는 거의 호출되지 않음.
          create_offer()/create_answer() 결과에는 candidate가 없으므로 전송에는
          반드시 local_description을 사용
        - 수신 전용 트랜시버를 보장하여 로컬 트랙이 없어도 원격 오디오/비디오 수신
    """

    def __init__(self, peer_id: str, configuration: Optional[RTCConfiguration] = None):
        self.peer_id = peer_id
        self.configuration = configuration or ice_config.build_rtc_configuration()
        self.on_track: Optional[TrackCallback] = None
        self.on_ice_candidate: Optional[CandidateCallback] = None
        self._pc = self._create_inner()

    def _create_inner(self) -> RTCPeerConnection:
        pc = RTCPeerConnection(configuration=self.configuration)
        peer_id = self.peer_id

        @pc.on("icecandidate")
        async def on_ice_candidate(candidate):
            if candidate and self.on_ice_candidate and pc is self._pc:
                await self.on_ice_candidate({
                    "candidate": f"candidate:{candidate_to_sdp(candidate)}",
                    "sdpMid": candidate.sdpMid,
                    "sdpMLineIndex": candidate.sdpMLineIndex,
                })

        @pc.on("iceconnectionstatechange")
        async def on_ice_connection_state_change():
            logger.info(f"[WebRTC] 피어 {peer_id[:8]} ICE 상태: {pc.iceConnectionState}")

        @pc.on("track")
        async def on_track(track: MediaStreamTrack):
            logger.info(f"[WebRTC] 피어 {peer_id[:8]} {track.kind} 트랙 수신")
            if self.on_track and pc is self._pc:
                await self.on_track(track)

        return pc

    @property
    def signaling_state(self) -> str:
        return self._pc.signalingState

    @property
    def remote_description(self) -> Optional[dict]:
        return description_to_dict(self._pc.remoteDescription)

    @property
    def local_description(self) -> Optional[dict]:
        """setLocalDescription 이후의 로컬 SDP (수집된 candidate 포함)."""
        return description_to_dict(self._pc.localDescription)

    @property
    def connection_state(self) -> str:
        return self._pc.connectionState

    def _ensure_receive_transceivers(self):
        """오디오/비디오 수신 의사를 offer에 포함시킵니다."""
        kinds = {t.kind for t in self._pc.getTransceivers()}
        for kind in ("audio", "video"):
            if kind not in kinds:
                self._pc.addTransceiver(kind, direction="recvonly")

    async def create_offer(self) -> dict:
        self._ensure_receive_transceivers()
        offer = await self._pc.createOffer()
        return description_to_dict(offer)

    async def create_answer(self) -> dict:
        answer = await self._pc.createAnswer()
        return description_to_dict(answer)

    async def set_local_description(self, description: dict):
        try:
            await self._pc.setLocalDescription(
                RTCSessionDescription(sdp=description["sdp"], type=description["type"])
            )
        except (InvalidStateError, ValueError) as e:
            raise NegotiationError(self.peer_id, "setLocalDescription", e) from e

    async def set_remote_description(self, description: dict):
        try:
            await self._pc.setRemoteDescription(
                RTCSessionDescription(sdp=description["sdp"], type=description["type"])
            )
        except (InvalidStateError, InvalidAccessError, ValueError) as e:
            raise NegotiationError(self.peer_id, "setRemoteDescription", e) from e

    async def rollback(self):
        """대기 중인 로컬 offer를 폐기하고 stable 상태로 되돌립니다."""
        tracks = [s.track for s in self._pc.getSenders() if s.track is not None]
        old = self._pc
        self._pc = self._create_inner()
        for track in tracks:
            self._pc.addTrack(track)
        await old.close()
        logger.info(f"[WebRTC] 피어 {self.peer_id[:8]} rollback: 로컬 트랙 {len(tracks)}개 재연결")

    async def add_ice_candidate(self, candidate: dict):
        try:
            ice_candidate = parse_candidate(candidate)
        except ValueError as e:
            raise NegotiationError(self.peer_id, "addIceCandidate", e) from e
        await self._pc.addIceCandidate(ice_candidate)

    def add_track(self, track: MediaStreamTrack):
        self._pc.addTrack(track)

    def get_senders(self) -> List:
        return self._pc.getSenders()

    def replace_sender_track(self, kind: str, track: MediaStreamTrack) -> bool:
        """같은 종류의 트랙을 보내는 sender가 있으면 트랙을 교체합니다.

        Returns:
            bool: 교체했으면 True, 해당 sender가 없으면 False
        """
        for sender in self._pc.getSenders():
            if sender.track is not None and sender.track.kind == kind:
                sender.replaceTrack(track)
                return True
        return False

    async def close(self):
        await self._pc.close()


def create_aiortc_connection(peer_id: str) -> AiortcPeerConnection:
    """기본 피어 연결 팩토리."""
    return AiortcPeerConnection(peer_id)
