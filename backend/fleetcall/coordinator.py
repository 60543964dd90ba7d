"""다자간 통화 코디네이터 모듈.

작업지시 하나에 대한 통화 참가/퇴장, 로컬 미디어, 피어 세션, 스크린샷 캡처를
하나로 묶습니다. 호스트 애플리케이션은 이 클래스만 사용합니다.

Control Flow:
    1. join_call(): 로컬 미디어 획득 (fallback) → room:join 전송
    2. 허브가 room:state(기존 참가자)와 peer:joined/left 이벤트 전달
    3. RoomMembershipTracker가 PeerSession 생성/정리, 협상은 PeerSessionManager가 담당
    4. take_screenshot(): 포커스 피어(없으면 로컬) 피드에서 정지 이미지 캡처

Examples:
    >>> identity = Identity(user_id="u-1", display_name="Inspector Kim", token=token)
    >>> async with CallCoordinator("WO-1042", identity) as call:
    ...     if not await call.join_call():
    ...         await call.join_with_screen_share()
    ...     call.set_focused_peer(peer_connection_id)
    ...     image = call.take_screenshot()
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from .errors import CaptureDeviceError
from .signaling.membership import RoomMembershipTracker
from .signaling.transport import SignalingTransport
from .webrtc.capture import FrameCaptureService, LOCAL_TARGET
from .webrtc.media import LocalMediaController, MediaAcquisition, DeviceAvailability
from .webrtc.peer_manager import PeerSessionManager
from .webrtc.tracks import LocalTrack

logger = logging.getLogger(__name__)


@dataclass
class Identity:
    """호스트 앱이 제공하는 인증된 사용자 정보."""

    user_id: str
    display_name: str
    token: Optional[str] = None


@dataclass
class CallContext:
    """통화 UI 상태를 명시적으로 전달하는 컨텍스트.

    Attributes:
        work_order_id (str): 통화 중인 작업지시 ID
        focused_peer_id (Optional[str]): "local", 피어 connectionId, 또는 None
        on_screenshot (Optional[Callable]): 기본 캡처 결과 콜백
        screenshot_target_entry_id (Optional[str]): 캡처를 첨부할 폼 항목 ID
        screenshot_callback (Optional[Callable]): 항목별 캡처 콜백 (기본 콜백보다 우선)
        in_call (bool): 통화 참가 여부
        no_camera_prompt_screen_share (bool): 화면 공유 참가 안내가 필요한지 여부
        join_error (str): 마지막 참가 실패 메시지
    """
    work_order_id: str
    focused_peer_id: Optional[str] = None
    on_screenshot: Optional[Callable[[str], None]] = None
    screenshot_target_entry_id: Optional[str] = None
    screenshot_callback: Optional[Callable[[str], None]] = None
    in_call: bool = False
    no_camera_prompt_screen_share: bool = False
    join_error: str = ""

    def set_screenshot_target(self, entry_id: Optional[str], callback: Optional[Callable[[str], None]]):
        self.screenshot_target_entry_id = entry_id
        self.screenshot_callback = callback

    def deliver_screenshot(self, data_url: str):
        callback = self.screenshot_callback or self.on_screenshot
        if callback:
            callback(data_url)

    def reset(self):
        self.focused_peer_id = None
        self.in_call = False
        self.screenshot_target_entry_id = None
        self.screenshot_callback = None


class CallCoordinator:
    """작업지시 통화 하나를 관리하는 코디네이터.

    Attributes:
        context (CallContext): 포커스/캡처 콜백 컨텍스트
        transport (SignalingTransport): 허브 연결
        media (LocalMediaController): 로컬 미디어
        peers (PeerSessionManager): 피어 세션 관리
        membership (RoomMembershipTracker): 참가자 목록 추적
        capture (FrameCaptureService): 스크린샷
        devices (DeviceAvailability): 참가 전 장치 감지 결과

    Note:
        - async with 블록을 벗어나면(예외 포함) 미디어 해제와 연결 종료가 보장됨
        - leave_call()은 여러 번 호출해도 안전함
    """

    def __init__(
        self,
        work_order_id: str,
        identity: Identity,
        *,
        transport=None,
        media_devices=None,
        connection_factory: Callable = None,
        context: Optional[CallContext] = None,
    ):
        self.identity = identity
        self.context = context or CallContext(work_order_id=work_order_id)
        self.transport = transport or SignalingTransport(
            user_id=identity.user_id, display_name=identity.display_name
        )
        self.media = LocalMediaController(media_devices)
        self.peers = PeerSessionManager(self.transport, self.media, connection_factory)
        self.membership = RoomMembershipTracker(self.transport, self.peers, self.context)
        self.capture = FrameCaptureService(self.context, self.media, self.peers)
        self.devices = DeviceAvailability()
        self.joining = False

        self.media.on_display_ended = self._on_display_ended
        self._display_task: Optional[asyncio.Task] = None

    @property
    def work_order_id(self) -> str:
        return self.context.work_order_id

    @property
    def is_joined(self) -> bool:
        return self.membership.joined

    @property
    def screen_sharing(self) -> bool:
        return bool(self.media.session and self.media.session.screen_sharing)

    # ------------------------------------------------------------------
    # 연결 수명
    # ------------------------------------------------------------------

    async def open(self):
        """장치를 감지하고 허브에 연결한 뒤 룸 인원을 조회합니다."""
        self.devices = await self.media.detect_devices()
        await self.transport.connect(self.work_order_id, self.identity.token)
        await self.membership.query_status(self.work_order_id)

    async def close(self):
        """통화를 종료하고 허브 연결을 닫습니다 (언마운트)."""
        try:
            await self.leave_call()
        finally:
            self.media.release()
            await self.transport.disconnect()

    async def __aenter__(self) -> "CallCoordinator":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    # ------------------------------------------------------------------
    # 참가 / 퇴장
    # ------------------------------------------------------------------

    async def join_call(self) -> bool:
        """로컬 미디어를 획득하고 룸에 참가합니다.

        Returns:
            bool: 참가했으면 True. 캡처 장치가 하나도 없으면 False이며
                context.no_camera_prompt_screen_share가 설정됨
        """
        if self.is_joined:
            return True
        self.joining = True
        self.context.join_error = ""
        self.context.no_camera_prompt_screen_share = False
        try:
            session = await self.media.acquire()
            if session is None:
                self.context.no_camera_prompt_screen_share = True
                return False
            await self._enter_room()
            return True
        finally:
            self.joining = False

    async def join_with_screen_share(self) -> bool:
        """카메라/마이크 없이 화면 공유로 참가합니다.

        Returns:
            bool: 참가했으면 True. 화면 공유가 취소되면 False (context.join_error 설정)
        """
        if self.is_joined:
            return True
        self.joining = True
        self.context.join_error = ""
        try:
            await self.media.acquire_display()
        except CaptureDeviceError as e:
            logger.info(f"[Media] 화면 공유 참가 취소: {e}")
            self.context.join_error = "Screen sharing was cancelled."
            return False
        finally:
            self.joining = False
        self.context.no_camera_prompt_screen_share = False
        await self._enter_room()
        return True

    async def _enter_room(self):
        await self.membership.join(self.work_order_id)
        self.context.in_call = True
        logger.info(f"[WebRTC] 작업지시 '{self.work_order_id}' 통화 참가 ({self.media.status.value})")

    async def leave_call(self):
        """모든 피어 연결을 닫고 로컬 미디어를 해제한 뒤 퇴장을 알립니다."""
        was_joined = self.is_joined
        await self.membership.leave(self.work_order_id)
        await self.peers.close_all()
        self.media.release()
        self.context.reset()
        if was_joined:
            logger.info(f"[WebRTC] 작업지시 '{self.work_order_id}' 통화 종료")

    def _on_display_ended(self, joined_via_display: bool):
        if joined_via_display:
            self._display_task = asyncio.ensure_future(self.leave_call())
        else:
            self._display_task = asyncio.ensure_future(self._revert_to_camera())

    # ------------------------------------------------------------------
    # 미디어 제어
    # ------------------------------------------------------------------

    def toggle_video(self) -> bool:
        return self.media.toggle_video()

    def toggle_audio(self) -> bool:
        return self.media.toggle_audio()

    async def toggle_screen_share(self) -> bool:
        """화면 공유를 켜거나 끕니다.

        Returns:
            bool: 전환 후 화면 공유 상태
        """
        if not self.media.session:
            return False
        if self.screen_sharing:
            await self._revert_to_camera()
            return self.screen_sharing

        try:
            track = await self.media.open_display_track(on_ended=self._on_share_track_ended)
        except CaptureDeviceError as e:
            logger.info(f"[Media] 화면 공유 시작 취소: {e}")
            return False
        await self.peers.replace_or_add_video_track(track)
        self.media.commit_video_track(track, screen_sharing=True)
        logger.info("[Media] 화면 공유 시작")
        return True

    def _on_share_track_ended(self, track: LocalTrack):
        if self.screen_sharing:
            self._display_task = asyncio.ensure_future(self._revert_to_camera())

    async def _revert_to_camera(self):
        if not self.media.session or not self.screen_sharing:
            return
        camera = await self.media.open_camera_track()
        if camera is None:
            return
        await self.peers.replace_or_add_video_track(camera)
        self.media.commit_video_track(camera, screen_sharing=False)
        logger.info("[Media] 화면 공유 종료, 카메라로 전환")

    # ------------------------------------------------------------------
    # 포커스 / 스크린샷
    # ------------------------------------------------------------------

    def set_focused_peer(self, peer_id: Optional[str]):
        self.context.focused_peer_id = peer_id

    def take_screenshot(self) -> Optional[str]:
        """포커스된 피드(없으면 로컬)를 캡처하여 컨텍스트 콜백으로 전달합니다."""
        return self.capture.take_screenshot()

    def screenshot_peer(self, connection_id: str) -> Optional[str]:
        return self.capture.take_screenshot(connection_id)

    def screenshot_local(self) -> Optional[str]:
        return self.capture.take_screenshot(LOCAL_TARGET)

    @property
    def acquisition(self) -> Optional[MediaAcquisition]:
        return self.media.status
