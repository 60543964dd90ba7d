"""로컬 미디어 캡처 관리 모듈.

카메라/마이크/화면 캡처 스트림의 획득과 해제를 담당합니다.

주요 기능:
    - 순서가 정해진 fallback 정책으로 로컬 스트림 획득
      (카메라+마이크 → 카메라만 → 마이크만 → 캡처 장치 없음)
    - 화면 공유로만 참가하는 별도 경로 (화면 + best-effort 마이크)
    - 재협상 없는 음소거/비디오 off 토글
    - 화면 공유 ↔ 카메라 비디오 트랙 교체
    - 모든 트랙의 보장된 해제 (중복 호출 안전)

Architecture:
    - MediaDevices: 캡처 장치 인터페이스 (PlayerMediaDevices가 aiortc MediaPlayer로 구현)
    - LocalMediaController: 로컬 스트림의 단독 소유자
    - MediaRelay: 같은 로컬 트랙을 여러 피어 연결과 캡처 피드에 독립적으로 공유

Examples:
    >>> controller = LocalMediaController()
    >>> session = await controller.acquire()
    >>> if session is None:
    ...     print(controller.status)  # MediaAcquisition.NO_CAPTURE_DEVICE_AVAILABLE
    >>> controller.toggle_audio()
    >>> controller.release()
"""

import glob
import logging
import sys
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaPlayer, MediaRelay

from ..errors import CaptureDeviceError
from .config import media_config, MediaConfig
from .tracks import LocalTrack, FrameTapTrack

logger = logging.getLogger(__name__)


class MediaAcquisition(str, Enum):
    """로컬 스트림 획득 결과."""

    CAMERA_AND_MICROPHONE = "camera_and_microphone"
    CAMERA_ONLY = "camera_only"
    MICROPHONE_ONLY = "microphone_only"
    DISPLAY = "display"
    NO_CAPTURE_DEVICE_AVAILABLE = "no_capture_device_available"


@dataclass
class DeviceAvailability:
    """참가 전 장치 감지 결과."""

    has_camera: bool = True
    has_mic: bool = True
    checked: bool = False


class LocalMediaStream:
    """로컬 캡처 트랙 묶음 (브라우저 MediaStream에 해당)."""

    def __init__(self, tracks: Optional[List[MediaStreamTrack]] = None):
        self._tracks: List[MediaStreamTrack] = list(tracks or [])

    def get_tracks(self) -> List[MediaStreamTrack]:
        return list(self._tracks)

    def get_video_tracks(self) -> List[MediaStreamTrack]:
        return [t for t in self._tracks if t.kind == "video"]

    def get_audio_tracks(self) -> List[MediaStreamTrack]:
        return [t for t in self._tracks if t.kind == "audio"]

    def add_track(self, track: MediaStreamTrack):
        if track not in self._tracks:
            self._tracks.append(track)


@dataclass
class LocalMediaSession:
    """로컬 캡처 상태.

    Attributes:
        stream (LocalMediaStream): LocalMediaController가 단독 소유하는 스트림
        video_enabled (bool): 비디오 송출 여부
        audio_enabled (bool): 오디오 송출 여부
        screen_sharing (bool): 비디오 트랙이 화면 캡처인지 여부
        source (MediaAcquisition): 어떤 fallback 단계로 획득했는지
    """
    stream: LocalMediaStream
    video_enabled: bool
    audio_enabled: bool
    screen_sharing: bool = False
    source: MediaAcquisition = MediaAcquisition.CAMERA_AND_MICROPHONE


class PlayerMediaDevices:
    """aiortc MediaPlayer 기반 캡처 장치 구현.

    Linux는 v4l2/pulse/x11grab, macOS는 avfoundation, Windows는 dshow/gdigrab을
    사용합니다. 장치 이름과 포맷은 MediaConfig(환경변수)로 재정의할 수 있습니다.
    """

    def __init__(self, config: MediaConfig = media_config):
        self.config = config

    async def enumerate_devices(self) -> DeviceAvailability:
        """카메라/마이크 존재 여부를 확인합니다.

        Note:
            - Linux에서만 /dev/video* 로 카메라를 감지
            - 감지할 수 없는 플랫폼은 둘 다 있다고 가정 (실제 획득 시 fallback)
        """
        try:
            if sys.platform.startswith("linux"):
                has_camera = bool(glob.glob("/dev/video*"))
                has_mic = bool(glob.glob("/dev/snd/pcmC*c"))
                return DeviceAvailability(has_camera=has_camera, has_mic=has_mic, checked=True)
        except OSError as e:
            logger.warning(f"[Media] 장치 목록 조회 실패: {e}")
        return DeviceAvailability(has_camera=True, has_mic=True, checked=True)

    def _open(self, device: str, fmt: str, options: Optional[dict] = None) -> MediaPlayer:
        try:
            return MediaPlayer(device, format=fmt, options=options or {})
        except Exception as e:
            raise CaptureDeviceError(f"{fmt}:{device} 열기 실패: {e}") from e

    async def get_user_media(self, video: bool, audio: bool) -> LocalMediaStream:
        """카메라/마이크 트랙을 요청한 조합 그대로 획득합니다.

        요청한 종류 중 하나라도 얻지 못하면 이미 연 장치를 닫고 실패합니다.

        Raises:
            CaptureDeviceError: 요청한 장치를 열 수 없는 경우
        """
        tracks: List[MediaStreamTrack] = []
        try:
            if video:
                camera = self._open(self.config.CAMERA_DEVICE, self.config.CAMERA_FORMAT,
                                    self.config.camera_options())
                if camera.video is None:
                    raise CaptureDeviceError("카메라 비디오 트랙 없음")
                tracks.append(camera.video)
            if audio:
                microphone = self._open(self.config.MICROPHONE_DEVICE, self.config.MICROPHONE_FORMAT)
                if microphone.audio is None:
                    raise CaptureDeviceError("마이크 오디오 트랙 없음")
                tracks.append(microphone.audio)
        except CaptureDeviceError:
            for track in tracks:
                track.stop()
            raise
        return LocalMediaStream(tracks)

    async def get_display_media(self) -> LocalMediaStream:
        """화면 캡처 비디오 트랙을 획득합니다 (오디오 없음).

        Raises:
            CaptureDeviceError: 화면 캡처를 시작할 수 없는 경우
        """
        display = self._open(self.config.DISPLAY_DEVICE, self.config.DISPLAY_FORMAT,
                             self.config.display_options())
        if display.video is None:
            raise CaptureDeviceError("화면 캡처 비디오 트랙 없음")
        return LocalMediaStream([display.video])


class LocalMediaController:
    """로컬 캡처 스트림의 단독 소유자.

    모든 PeerSession은 share()로 얻은 릴레이 트랙을 자기 연결에 붙이며,
    원본 트랙을 정지할 수 있는 것은 이 컨트롤러뿐입니다.

    Attributes:
        devices: 캡처 장치 구현 (기본: PlayerMediaDevices)
        session (Optional[LocalMediaSession]): 현재 로컬 캡처 상태
        status (Optional[MediaAcquisition]): 마지막 획득 결과
        relay (MediaRelay): 로컬 트랙 공유용 릴레이
        on_display_ended (Optional[Callable]): 화면 캡처가 원본에서 종료되었을 때 호출
            (인자: 화면 공유로 참가했는지 여부)
    """

    def __init__(self, devices=None, config: MediaConfig = media_config):
        self.devices = devices or PlayerMediaDevices(config)
        self.config = config
        self.session: Optional[LocalMediaSession] = None
        self.status: Optional[MediaAcquisition] = None
        self.relay = MediaRelay()
        self.local_feed: Optional[FrameTapTrack] = None
        self.on_display_ended: Optional[Callable[[bool], None]] = None
        self._owned: List[LocalTrack] = []
        self._joined_via_display = False

    @property
    def stream(self) -> Optional[LocalMediaStream]:
        return self.session.stream if self.session else None

    async def detect_devices(self) -> DeviceAvailability:
        """참가 전 장치 감지. 실패하면 둘 다 있다고 가정합니다."""
        try:
            return await self.devices.enumerate_devices()
        except Exception as e:
            logger.warning(f"[Media] 장치 감지 실패, 기본값 사용: {e}")
            return DeviceAvailability(has_camera=True, has_mic=True, checked=True)

    def _wrap(self, stream: LocalMediaStream, label_for: Callable[[MediaStreamTrack], str]) -> List[LocalTrack]:
        wrapped = []
        for track in stream.get_tracks():
            local = LocalTrack(track, label=label_for(track))
            self._owned.append(local)
            wrapped.append(local)
        return wrapped

    async def acquire(self) -> Optional[LocalMediaSession]:
        """fallback 순서대로 로컬 스트림을 획득합니다.

        Returns:
            Optional[LocalMediaSession]: 획득한 세션.
                세 단계 모두 실패하면 None (status = NO_CAPTURE_DEVICE_AVAILABLE)
        """
        attempts = [
            (True, True, MediaAcquisition.CAMERA_AND_MICROPHONE),
            (True, False, MediaAcquisition.CAMERA_ONLY),
            (False, True, MediaAcquisition.MICROPHONE_ONLY),
        ]
        for video, audio, outcome in attempts:
            try:
                raw = await self.devices.get_user_media(video=video, audio=audio)
            except Exception as e:
                logger.info(f"[Media] 캡처 시도 실패 ({outcome.value}): {e}")
                continue

            tracks = self._wrap(raw, lambda t: "camera" if t.kind == "video" else "microphone")
            stream = LocalMediaStream(tracks)
            self.session = LocalMediaSession(
                stream=stream,
                video_enabled=bool(stream.get_video_tracks()),
                audio_enabled=bool(stream.get_audio_tracks()),
                source=outcome,
            )
            self.status = outcome
            self._joined_via_display = False
            self._start_local_feed()
            logger.info(f"[Media] 로컬 스트림 획득: {outcome.value}")
            return self.session

        self.status = MediaAcquisition.NO_CAPTURE_DEVICE_AVAILABLE
        logger.warning("[Media] 사용 가능한 캡처 장치 없음 - 화면 공유 참가 경로 필요")
        return None

    async def acquire_display(self) -> LocalMediaSession:
        """화면 공유로만 참가하는 경로: 화면 캡처 + best-effort 마이크.

        Raises:
            CaptureDeviceError: 화면 캡처가 취소/실패한 경우
        """
        display = await self.devices.get_display_media()

        microphone = None
        try:
            microphone = await self.devices.get_user_media(video=False, audio=True)
        except Exception as e:
            logger.info(f"[Media] 화면 공유 참가: 마이크 없음 ({e})")

        tracks = self._wrap(display, lambda t: "display")
        display_track = tracks[0]
        display_track.on_ended = self._handle_display_ended
        if microphone:
            tracks.extend(self._wrap(
                LocalMediaStream(microphone.get_audio_tracks()), lambda t: "microphone"
            ))

        self.session = LocalMediaSession(
            stream=LocalMediaStream(tracks),
            video_enabled=True,
            audio_enabled=microphone is not None,
            screen_sharing=True,
            source=MediaAcquisition.DISPLAY,
        )
        self.status = MediaAcquisition.DISPLAY
        self._joined_via_display = True
        self._start_local_feed()
        logger.info(f"[Media] 화면 공유로 로컬 스트림 획득 (마이크: {microphone is not None})")
        return self.session

    def _handle_display_ended(self, track: LocalTrack):
        logger.info(f"[Media] 사용자가 화면 공유를 중지함 (화면 공유 참가: {self._joined_via_display})")
        if self.on_display_ended:
            self.on_display_ended(self._joined_via_display)

    def _start_local_feed(self):
        """로컬 비디오 미리보기 피드를 (재)시작합니다."""
        if self.local_feed:
            self.local_feed.stop()
            self.local_feed = None
        videos = self.stream.get_video_tracks() if self.stream else []
        if videos:
            self.local_feed = FrameTapTrack(self.relay.subscribe(videos[0]), name="local")
            self.local_feed.start()

    def share(self, track: MediaStreamTrack) -> MediaStreamTrack:
        """피어 연결에 붙일 독립 릴레이 트랙을 반환합니다."""
        return self.relay.subscribe(track)

    def local_feeds(self) -> List[FrameTapTrack]:
        return [self.local_feed] if self.local_feed else []

    def toggle_video(self) -> bool:
        """비디오 송출을 토글합니다. 비디오 트랙이 없으면 아무것도 하지 않습니다.

        Returns:
            bool: 토글 후 비디오 활성 상태
        """
        if not self.session:
            return False
        videos = self.session.stream.get_video_tracks()
        if not videos:
            return False
        track = videos[0]
        track.enabled = not track.enabled
        self.session.video_enabled = track.enabled
        logger.info(f"[Media] 비디오 {'켜짐' if track.enabled else '꺼짐'}")
        return track.enabled

    def toggle_audio(self) -> bool:
        """오디오 송출을 토글합니다. 오디오 트랙이 없으면 아무것도 하지 않습니다."""
        if not self.session:
            return False
        audios = self.session.stream.get_audio_tracks()
        if not audios:
            return False
        track = audios[0]
        track.enabled = not track.enabled
        self.session.audio_enabled = track.enabled
        logger.info(f"[Media] 오디오 {'켜짐' if track.enabled else '꺼짐'}")
        return track.enabled

    async def open_display_track(self, on_ended: Callable[[LocalTrack], None]) -> LocalTrack:
        """화면 공유 전환용 화면 캡처 트랙을 엽니다.

        Raises:
            CaptureDeviceError: 화면 캡처가 취소/실패한 경우
        """
        display = await self.devices.get_display_media()
        track = self._wrap(display, lambda t: "display")[0]
        track.on_ended = on_ended
        return track

    async def open_camera_track(self) -> Optional[LocalTrack]:
        """카메라로 돌아가기 위한 카메라 비디오 트랙을 엽니다.

        Returns:
            Optional[LocalTrack]: 카메라 트랙. 카메라를 열 수 없으면 None
        """
        try:
            camera = await self.devices.get_user_media(video=True, audio=False)
        except Exception as e:
            logger.warning(f"[Media] 카메라 재획득 실패: {e}")
            return None
        return self._wrap(camera, lambda t: "camera")[0]

    def commit_video_track(self, track: LocalTrack, screen_sharing: bool):
        """로컬 스트림의 비디오 트랙을 교체하고 이전 비디오 트랙을 정지합니다."""
        if not self.session:
            track.stop()
            return
        for old in self.session.stream.get_video_tracks():
            old.stop()
        audios = self.session.stream.get_audio_tracks()
        self.session.stream = LocalMediaStream([track, *audios])
        self.session.screen_sharing = screen_sharing
        self.session.video_enabled = track.enabled
        self._owned = [t for t in self._owned if t.readyState != "ended"]
        if screen_sharing is False:
            self._joined_via_display = False
        self._start_local_feed()

    def release(self):
        """획득한 모든 트랙을 정지합니다. 여러 번 호출해도 안전합니다."""
        if self.local_feed:
            self.local_feed.stop()
            self.local_feed = None
        stopped = 0
        for track in self._owned:
            if track.readyState != "ended":
                track.stop()
                stopped += 1
        self._owned = []
        if self.session:
            logger.info(f"[Media] 로컬 스트림 해제: 트랙 {stopped}개 정지")
        self.session = None
        self._joined_via_display = False
