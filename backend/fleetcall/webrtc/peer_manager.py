"""WebRTC 피어 세션 관리 모듈.

이 모듈은 같은 작업지시(work order) 룸의 원격 참가자마다 하나씩 연결 수립
상태 머신(PeerSession)을 유지하고, 시그널링 채널을 통해 offer/answer/ICE
교환을 진행합니다. 토폴로지는 풀 메시(full mesh)이며 서버 릴레이는 없습니다.

주요 기능:
    - 원격 connectionId 당 정확히 하나의 PeerSession 유지
    - offer/answer 교환 및 상태 전이 관리
    - remote description 적용 전 도착한 ICE candidate 버퍼링 및 순서 보장 flush
    - glare(양쪽 동시 offer) 처리: 항상 들어온 offer에 양보 (rollback)
    - 양쪽이 모두 양보한 경우 연결을 새로 만들고 connectionId가 작은 쪽이 다시 offer
    - 수신 트랙을 피어별 원격 스트림에 누적 (MediaRelay로 캡처 피드와 공유)
    - 화면 공유 전환 시 비디오 트랙 교체 또는 추가 후 재협상

State Machine:
    New ──(이쪽이 시작)──────────────> HaveLocalOffer ──(answer 수신)──> Stable
    New ──(offer 수신)──> HaveRemoteOffer ──(answer 전송)──────────────> Stable
    HaveLocalOffer ──(offer 수신, glare)──> rollback → HaveRemoteOffer → Stable
    Stable ──(양보 후 늦은 answer 수신)──> 연결 재생성 → New ──(작은 id 쪽)──> HaveLocalOffer
    any ──(peer:left / leave)──> Closed

Concurrency:
    - 단일 이벤트 루프. 피어별 asyncio.Lock으로 한 피어의 시그널링 메시지는
      도착 순서대로 처리되며, 서로 다른 피어 간 순서는 보장하지 않음
    - 모든 await 이후 세션이 여전히 유효한지 다시 확인 (협상 중 퇴장 대비)
    - offer/answer 생성 실패는 재접속 경합에서 예상되는 상황이므로 로그만 남김

Examples:
    >>> manager = PeerSessionManager(transport, media)
    >>> session = manager.ensure_session("conn-b", "user-b", "Inspector B")
    >>> await manager.initiate("conn-b")
    >>> await manager.handle_answer({"fromConnectionId": "conn-b", "answer": {...}})

See Also:
    signaling/membership.py: 참가자 입퇴장 → 세션 생성/정리
    webrtc/connection.py: aiortc 피어 연결 어댑터
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaRelay

from ..signaling import events
from .connection import create_aiortc_connection
from .tracks import FrameTapTrack

logger = logging.getLogger(__name__)

# 세션이 없는 발신자에게서 받은 candidate 보관 한도 (발신자당)
MAX_EARLY_CANDIDATES = 32


class SignalingState(str, Enum):
    """PeerSession 시그널링 상태."""

    NEW = "new"
    HAVE_LOCAL_OFFER = "have-local-offer"
    HAVE_REMOTE_OFFER = "have-remote-offer"
    STABLE = "stable"
    CLOSED = "closed"


class RemoteMediaStream:
    """원격 피어의 트랙을 누적하는 스트림.

    오디오와 비디오는 별도 이벤트로 도착하므로 트랙은 추가만 되고
    개별적으로 제거되지 않습니다.
    """

    def __init__(self):
        self._tracks: List[MediaStreamTrack] = []

    def add_track(self, track: MediaStreamTrack):
        if track not in self._tracks:
            self._tracks.append(track)

    def get_tracks(self) -> List[MediaStreamTrack]:
        return list(self._tracks)

    def get_video_tracks(self) -> List[MediaStreamTrack]:
        return [t for t in self._tracks if t.kind == "video"]

    def get_audio_tracks(self) -> List[MediaStreamTrack]:
        return [t for t in self._tracks if t.kind == "audio"]


@dataclass
class PeerSession:
    """원격 참가자 한 명과의 연결 수립 상태.

    Attributes:
        connection_id (str): 원격 참가자의 connectionId
        user_id (str): 원격 사용자 ID
        display_name (str): 원격 사용자 표시 이름
        connection: 피어 연결 (이 세션이 단독 소유, 정리 시 close)
        signaling_state (SignalingState): 현재 상태
        pending_ice_candidates (List[dict]): remote description 적용 전 도착한 candidate
        remote_stream (RemoteMediaStream): 수신 트랙 누적 스트림 (렌더링용 relay 구독)
        remote_sources (List[MediaStreamTrack]): 연결에서 받은 원본 트랙
        video_feed (Optional[FrameTapTrack]): 캡처용 원격 비디오 피드
        yielded_offer (bool): glare로 로컬 offer를 rollback한 뒤 아직 새 offer를 보내지 않음
        state_history (List[SignalingState]): 상태 전이 기록
    """
    connection_id: str
    user_id: str
    display_name: str
    connection: object
    signaling_state: SignalingState = SignalingState.NEW
    pending_ice_candidates: List[dict] = field(default_factory=list)
    remote_stream: RemoteMediaStream = field(default_factory=RemoteMediaStream)
    remote_sources: List[MediaStreamTrack] = field(default_factory=list)
    video_feed: Optional[FrameTapTrack] = None
    yielded_offer: bool = False
    state_history: List[SignalingState] = field(default_factory=lambda: [SignalingState.NEW])
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def has_remote_description(self) -> bool:
        return self.connection.remote_description is not None

    @property
    def is_closed(self) -> bool:
        return self.signaling_state == SignalingState.CLOSED


class PeerSessionManager:
    """원격 참가자별 PeerSession을 관리하는 클래스.

    Attributes:
        transport: 시그널링 전송 채널 (send(event, payload) 제공)
        media: LocalMediaController (로컬 트랙 공유)
        connection_factory (Callable[[str], object]): 피어 연결 생성 함수
        sessions (Dict[str, PeerSession]): connectionId → PeerSession
        on_remote_stream (Optional[Callable]): 원격 트랙 추가 시 호출
            (connection_id, RemoteMediaStream)
        offers_sent (int): 전송한 offer 수
        answers_sent (int): 전송한 answer 수
        relay (MediaRelay): 원격 트랙을 렌더링과 캡처 피드에 나눠주는 릴레이

    Note:
        aiortc 트랙은 소비자가 하나뿐인 큐이므로 원격 트랙을 직접 두 곳에서
        recv()하면 프레임이 나뉩니다. 원격 스트림과 캡처 피드는 각각
        relay.subscribe()로 받은 프록시를 사용합니다.
    """

    def __init__(self, transport, media=None, connection_factory: Callable = None):
        self.transport = transport
        self.media = media
        self.connection_factory = connection_factory or create_aiortc_connection
        self.sessions: Dict[str, PeerSession] = {}
        self.on_remote_stream: Optional[Callable[[str, RemoteMediaStream], None]] = None
        self.offers_sent = 0
        self.answers_sent = 0
        self.relay = MediaRelay()

        # Candidates that arrived before any session existed for the sender
        self._early_candidates: Dict[str, List[dict]] = {}
        self._departed: Set[str] = set()

    # ------------------------------------------------------------------
    # 세션 생성/조회/정리
    # ------------------------------------------------------------------

    def get_session(self, connection_id: str) -> Optional[PeerSession]:
        """connectionId의 세션을 반환합니다."""
        return self.sessions.get(connection_id)

    def ensure_session(self, connection_id: str, user_id: str = "", display_name: str = "") -> PeerSession:
        """원격 참가자의 세션을 반환하거나 새로 생성합니다.

        닫힌 세션은 재사용하지 않으며, 새 연결에는 로컬 트랙을 모두 붙입니다.

        Args:
            connection_id (str): 원격 참가자의 connectionId
            user_id (str): 원격 사용자 ID
            display_name (str): 원격 사용자 표시 이름

        Returns:
            PeerSession: 해당 참가자의 세션
        """
        existing = self.sessions.get(connection_id)
        if existing and not existing.is_closed:
            return existing

        session = PeerSession(
            connection_id=connection_id,
            user_id=user_id,
            display_name=display_name,
            connection=self.connection_factory(connection_id),
        )
        self._departed.discard(connection_id)
        session.pending_ice_candidates.extend(self._early_candidates.pop(connection_id, []))
        self._wire_connection(session)

        self.sessions[connection_id] = session
        logger.info(f"[WebRTC] 피어 세션 생성: peer={connection_id[:8]} ({display_name}), 총 {len(self.sessions)}개")
        return session

    def _wire_connection(self, session: PeerSession):
        """세션의 현재 연결에 로컬 트랙과 콜백을 붙입니다."""
        connection = session.connection
        connection_id = session.connection_id

        if self.media and self.media.stream:
            for track in self.media.stream.get_tracks():
                connection.add_track(self.media.share(track))

        async def on_track(track: MediaStreamTrack):
            if session.connection is connection:
                self._attach_remote_track(session, track)

        async def on_ice_candidate(candidate: dict):
            if self.sessions.get(connection_id) is not session or session.connection is not connection:
                return
            await self.transport.send(events.SIGNAL_ICE_CANDIDATE, {
                "targetConnectionId": connection_id,
                "candidate": candidate,
            })

        connection.on_track = on_track
        connection.on_ice_candidate = on_ice_candidate

    async def remove_session(self, connection_id: str) -> bool:
        """세션을 닫고 폐기합니다.

        Returns:
            bool: 세션이 있었으면 True
        """
        self._early_candidates.pop(connection_id, None)
        self._departed.add(connection_id)
        session = self.sessions.pop(connection_id, None)
        if session is None:
            return False
        await self._close_session(session)
        logger.info(f"[WebRTC] 피어 세션 종료: peer={connection_id[:8]}, 남은 {len(self.sessions)}개")
        return True

    async def close_all(self):
        """모든 세션을 닫습니다 (통화 종료/언마운트)."""
        sessions = list(self.sessions.values())
        self.sessions.clear()
        self._early_candidates.clear()
        self._departed.clear()
        for session in sessions:
            await self._close_session(session)

    async def _close_session(self, session: PeerSession):
        self._set_state(session, SignalingState.CLOSED)
        session.pending_ice_candidates.clear()
        self._drop_remote_media(session)
        await self._close_connection(session.connection_id, session.connection)

    async def _close_connection(self, connection_id: str, connection):
        try:
            await connection.close()
        except Exception as e:
            logger.debug(f"[WebRTC] 피어 {connection_id[:8]} 연결 종료 중 오류 무시: {e}")

    def _drop_remote_media(self, session: PeerSession):
        if session.video_feed:
            session.video_feed.stop()
            session.video_feed.track.stop()
            session.video_feed = None
        for track in session.remote_stream.get_tracks():
            if track not in session.remote_sources:
                track.stop()

    def _is_current(self, session: PeerSession) -> bool:
        """await 이후 세션이 아직 유효한지 확인합니다."""
        return self.sessions.get(session.connection_id) is session and not session.is_closed

    def _set_state(self, session: PeerSession, state: SignalingState):
        if session.signaling_state == state:
            return
        logger.debug(f"[WebRTC] 피어 {session.connection_id[:8]} 상태: {session.signaling_state.value} -> {state.value}")
        session.signaling_state = state
        session.state_history.append(state)

    # ------------------------------------------------------------------
    # offer / answer
    # ------------------------------------------------------------------

    async def initiate(self, connection_id: str) -> bool:
        """이쪽에서 offer를 만들어 전송합니다.

        Returns:
            bool: offer를 전송했으면 True
        """
        session = self.sessions.get(connection_id)
        if session is None or session.is_closed:
            return False
        async with session.lock:
            return await self._send_offer(session)

    async def _send_offer(self, session: PeerSession) -> bool:
        try:
            offer = await session.connection.create_offer()
            if not self._is_current(session):
                return False
            await session.connection.set_local_description(offer)
            if not self._is_current(session):
                return False
            # Gathered candidates only appear in the applied description
            offer = session.connection.local_description or offer
            self._set_state(session, SignalingState.HAVE_LOCAL_OFFER)
            session.yielded_offer = False
            await self.transport.send(events.SIGNAL_OFFER, {
                "targetConnectionId": session.connection_id,
                "offer": offer,
            })
            self.offers_sent += 1
            logger.info(f"[WebRTC] 피어 {session.connection_id[:8]}에게 offer 전송")
            return True
        except Exception as e:
            # Expected during rapid join/leave churn
            logger.debug(f"[WebRTC] 피어 {session.connection_id[:8]} offer 생성 실패 무시: {type(e).__name__}: {e}")
            return False

    async def handle_offer(self, payload: dict):
        """원격 offer를 적용하고 answer를 전송합니다.

        이쪽도 offer를 보낸 상태(glare)라면 로컬 offer를 rollback하고
        들어온 offer를 처리합니다.

        Args:
            payload (dict): {fromConnectionId, userId, displayName, offer}
        """
        from_id = payload.get("fromConnectionId")
        offer = payload.get("offer")
        if not from_id or not offer:
            logger.warning("[WebRTC] 잘못된 offer 메시지 무시")
            return

        session = self.ensure_session(from_id, payload.get("userId", ""), payload.get("displayName", ""))
        async with session.lock:
            if not self._is_current(session):
                return
            pc = session.connection
            try:
                if session.signaling_state == SignalingState.HAVE_LOCAL_OFFER or pc.signaling_state != "stable":
                    logger.info(f"[WebRTC] 피어 {from_id[:8]} glare 감지 - 로컬 offer rollback")
                    await pc.rollback()
                    if not self._is_current(session):
                        return
                    session.yielded_offer = True
                    self._set_state(session, SignalingState.NEW)

                await pc.set_remote_description(offer)
                if not self._is_current(session):
                    return
                self._set_state(session, SignalingState.HAVE_REMOTE_OFFER)
                await self._flush_pending_candidates(session)

                answer = await pc.create_answer()
                if not self._is_current(session):
                    return
                await pc.set_local_description(answer)
                if not self._is_current(session):
                    return
                answer = pc.local_description or answer

                await self.transport.send(events.SIGNAL_ANSWER, {
                    "targetConnectionId": from_id,
                    "answer": answer,
                })
                self.answers_sent += 1
                self._set_state(session, SignalingState.STABLE)
                logger.info(f"[WebRTC] 피어 {from_id[:8]}에게 answer 전송")
            except Exception as e:
                # Stale offer during reconnect races
                logger.debug(f"[WebRTC] 피어 {from_id[:8]} offer 처리 실패 무시: {type(e).__name__}: {e}")

    async def handle_answer(self, payload: dict):
        """원격 answer를 적용합니다. 로컬 offer 대기 중이 아니면 무시합니다.

        glare로 양보한 뒤 rollback된 offer에 대한 answer가 도착하면 상대도
        양보한 것이므로 현재 연결 쌍은 서로 버려진 연결을 가리킵니다. 이 경우
        연결을 새로 만들고 협상을 다시 시작합니다.

        Args:
            payload (dict): {fromConnectionId, answer}
        """
        from_id = payload.get("fromConnectionId")
        answer = payload.get("answer")
        session = self.sessions.get(from_id) if from_id else None
        if session is None or not answer:
            return

        async with session.lock:
            if not self._is_current(session):
                return
            if (session.signaling_state != SignalingState.HAVE_LOCAL_OFFER
                    or session.connection.signaling_state != "have-local-offer"):
                if session.yielded_offer and session.signaling_state == SignalingState.STABLE:
                    logger.info(f"[WebRTC] 피어 {from_id[:8]} 양쪽 모두 rollback - 연결 재생성")
                    await self._restart_negotiation(session)
                    return
                logger.debug(f"[WebRTC] 피어 {from_id[:8]} 대기 중인 offer 없음 - answer 무시")
                return
            try:
                await session.connection.set_remote_description(answer)
                if not self._is_current(session):
                    return
                await self._flush_pending_candidates(session)
                self._set_state(session, SignalingState.STABLE)
                logger.info(f"[WebRTC] 피어 {from_id[:8]} answer 적용 완료")
            except Exception as e:
                # Stale answer during reconnect races
                logger.debug(f"[WebRTC] 피어 {from_id[:8]} answer 적용 실패 무시: {type(e).__name__}: {e}")

    async def _restart_negotiation(self, session: PeerSession):
        """세션의 연결을 새로 만들고 connectionId가 작은 쪽만 다시 offer합니다.

        양쪽이 같은 순간에 재생성하므로 한쪽만 offer해야 glare가 반복되지 않습니다.
        호출자는 session.lock을 잡고 있어야 합니다.
        """
        old = session.connection
        self._drop_remote_media(session)
        session.remote_stream = RemoteMediaStream()
        session.remote_sources = []
        session.pending_ice_candidates = []
        session.yielded_offer = False
        session.connection = self.connection_factory(session.connection_id)
        self._wire_connection(session)
        self._set_state(session, SignalingState.NEW)
        await self._close_connection(session.connection_id, old)
        if not self._is_current(session):
            return

        local_id = getattr(self.transport, "connection_id", None)
        if local_id is not None and local_id < session.connection_id:
            await self._send_offer(session)
        else:
            logger.info(f"[WebRTC] 피어 {session.connection_id[:8]}의 새 offer 대기")

    # ------------------------------------------------------------------
    # ICE candidate
    # ------------------------------------------------------------------

    async def handle_ice_candidate(self, payload: dict):
        """원격 ICE candidate를 적용하거나 버퍼에 보관합니다.

        Args:
            payload (dict): {fromConnectionId, candidate}
        """
        from_id = payload.get("fromConnectionId")
        candidate = payload.get("candidate")
        if not from_id or not candidate:
            return

        session = self.sessions.get(from_id)
        if session is None:
            if from_id in self._departed:
                logger.debug(f"[WebRTC] 퇴장한 피어 {from_id[:8]}의 ICE candidate 무시")
                return
            early = self._early_candidates.setdefault(from_id, [])
            if len(early) >= MAX_EARLY_CANDIDATES:
                logger.debug(f"[WebRTC] 피어 {from_id[:8]} 조기 candidate 한도 초과 - 무시")
                return
            early.append(candidate)
            return

        async with session.lock:
            if not self._is_current(session):
                return
            if session.has_remote_description:
                await self._apply_candidate(session, candidate)
            else:
                session.pending_ice_candidates.append(candidate)
                logger.debug(f"[WebRTC] 피어 {from_id[:8]} ICE candidate 버퍼링 ({len(session.pending_ice_candidates)}개)")

    async def _flush_pending_candidates(self, session: PeerSession):
        queued = session.pending_ice_candidates
        session.pending_ice_candidates = []
        if queued:
            logger.info(f"[WebRTC] 피어 {session.connection_id[:8]} 버퍼된 ICE candidate {len(queued)}개 적용")
        for candidate in queued:
            await self._apply_candidate(session, candidate)

    async def _apply_candidate(self, session: PeerSession, candidate: dict):
        try:
            await session.connection.add_ice_candidate(candidate)
        except Exception as e:
            logger.debug(f"[WebRTC] 피어 {session.connection_id[:8]} ICE candidate 적용 실패, 건너뜀: {e}")

    # ------------------------------------------------------------------
    # 트랙
    # ------------------------------------------------------------------

    def _attach_remote_track(self, session: PeerSession, track: MediaStreamTrack):
        if not self._is_current(session) or track in session.remote_sources:
            return
        session.remote_sources.append(track)
        session.remote_stream.add_track(self.relay.subscribe(track))
        if track.kind == "video":
            if session.video_feed:
                session.video_feed.stop()
                session.video_feed.track.stop()
            # Capture only needs the newest frame
            feed_source = self.relay.subscribe(track, buffered=False)
            session.video_feed = FrameTapTrack(feed_source, name=session.connection_id[:8])
            session.video_feed.start()
        logger.info(f"[WebRTC] 피어 {session.connection_id[:8]} 원격 스트림에 {track.kind} 추가 "
                    f"(총 {len(session.remote_stream.get_tracks())}개)")
        if self.on_remote_stream:
            self.on_remote_stream(session.connection_id, session.remote_stream)

    async def replace_or_add_video_track(self, track: MediaStreamTrack) -> Dict[str, str]:
        """모든 피어 연결의 비디오 송신 트랙을 교체하거나 추가합니다.

        비디오 sender가 있으면 재협상 없이 트랙만 교체하고, 없으면 트랙을 추가한 뒤
        해당 피어에게만 새 offer를 보냅니다.

        Args:
            track (MediaStreamTrack): 새 로컬 비디오 트랙

        Returns:
            Dict[str, str]: connectionId → "replaced" | "renegotiated" | "failed"
        """
        results: Dict[str, str] = {}
        for connection_id, session in list(self.sessions.items()):
            if session.is_closed:
                continue
            shared = self.media.share(track) if self.media else track
            try:
                if session.connection.replace_sender_track("video", shared):
                    results[connection_id] = "replaced"
                    continue
                session.connection.add_track(shared)
                async with session.lock:
                    sent = await self._send_offer(session)
                results[connection_id] = "renegotiated" if sent else "failed"
            except Exception as e:
                logger.debug(f"[WebRTC] 피어 {connection_id[:8]} 비디오 트랙 교체 실패 무시: {e}")
                results[connection_id] = "failed"
        logger.info(f"[WebRTC] 비디오 트랙 교체 결과: {results}")
        return results

    def get_video_feed(self, connection_id: str) -> Optional[FrameTapTrack]:
        """캡처용 원격 비디오 피드를 반환합니다."""
        session = self.sessions.get(connection_id)
        return session.video_feed if session else None
