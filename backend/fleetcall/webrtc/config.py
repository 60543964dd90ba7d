"""WebRTC 모듈 설정.

STUN/TURN 서버, 로컬 미디어 캡처 제약, 스크린샷 캡처, 시그널링 재접속 등
통화 코디네이터 관련 상수와 환경변수 기반 설정.
"""

import os
import sys
import logging
from pathlib import Path
from dataclasses import dataclass
from typing import Optional

from aiortc import RTCConfiguration, RTCIceServer
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

_env_path = Path(__file__).parent.parent.parent / "config" / ".env"
load_dotenv(_env_path)


def _parse_bool(value: Optional[str], default: bool = True) -> bool:
    """문자열을 bool로 변환."""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


# ============================================================
# ICE Server 설정
# ============================================================

@dataclass(frozen=True)
class ICEServerConfig:
    """ICE 서버 설정."""

    # TURN 서버
    TURN_SERVER_URL: Optional[str] = os.getenv("TURN_SERVER_URL")
    TURN_USERNAME: Optional[str] = os.getenv("TURN_USERNAME")
    TURN_CREDENTIAL: Optional[str] = os.getenv("TURN_CREDENTIAL")

    # STUN 서버
    STUN_SERVER_URL: Optional[str] = os.getenv("STUN_SERVER_URL")

    # 기본 공개 STUN 서버 (fallback)
    DEFAULT_STUN_SERVERS: tuple = (
        "stun:stun.l.google.com:19302",
        "stun:stun1.l.google.com:19302",
    )

    @property
    def has_turn_server(self) -> bool:
        """TURN 서버 설정 완료 여부."""
        return all([self.TURN_SERVER_URL, self.TURN_USERNAME, self.TURN_CREDENTIAL])

    def build_rtc_configuration(self) -> RTCConfiguration:
        """aiortc RTCConfiguration을 생성합니다.

        사용자 지정 STUN → 기본 공개 STUN → TURN 순서로 ICE 서버를 구성합니다.

        Returns:
            RTCConfiguration: RTCPeerConnection 생성에 사용할 설정
        """
        ice_servers = []

        if self.STUN_SERVER_URL:
            ice_servers.append(RTCIceServer(urls=[self.STUN_SERVER_URL]))

        for stun_url in self.DEFAULT_STUN_SERVERS:
            ice_servers.append(RTCIceServer(urls=[stun_url]))

        if self.has_turn_server:
            ice_servers.append(RTCIceServer(
                urls=[self.TURN_SERVER_URL],
                username=self.TURN_USERNAME,
                credential=self.TURN_CREDENTIAL
            ))

        return RTCConfiguration(iceServers=ice_servers)


# ============================================================
# 로컬 미디어 캡처 설정
# ============================================================

def _default_camera_device() -> str:
    if sys.platform == "darwin":
        return "default:none"
    if sys.platform.startswith("win"):
        return "video=Integrated Camera"
    return "/dev/video0"


def _default_microphone_device() -> str:
    if sys.platform == "darwin":
        return "none:default"
    if sys.platform.startswith("win"):
        return "audio=Microphone"
    return "default"


def _default_capture_format(kind: str) -> str:
    if sys.platform == "darwin":
        return "avfoundation"
    if sys.platform.startswith("win"):
        return "gdigrab" if kind == "display" else "dshow"
    return {"video": "v4l2", "audio": "pulse", "display": "x11grab"}[kind]


@dataclass(frozen=True)
class MediaConfig:
    """카메라/마이크/화면 공유 캡처 제약 설정."""

    # 카메라 해상도 (min / ideal / max)
    VIDEO_MIN_WIDTH: int = 1280
    VIDEO_IDEAL_WIDTH: int = 1920
    VIDEO_MAX_WIDTH: int = 2560
    VIDEO_MIN_HEIGHT: int = 720
    VIDEO_IDEAL_HEIGHT: int = 1080
    VIDEO_MAX_HEIGHT: int = 1440

    # 카메라 프레임레이트 (min / ideal / max)
    VIDEO_MIN_FRAME_RATE: int = 15
    VIDEO_IDEAL_FRAME_RATE: int = 30
    VIDEO_MAX_FRAME_RATE: int = 30

    # 오디오 처리 (브라우저 getUserMedia 제약과 동일한 의미)
    ECHO_CANCELLATION: bool = _parse_bool(os.getenv("MEDIA_ECHO_CANCELLATION"), default=True)
    NOISE_SUPPRESSION: bool = _parse_bool(os.getenv("MEDIA_NOISE_SUPPRESSION"), default=True)
    AUTO_GAIN_CONTROL: bool = _parse_bool(os.getenv("MEDIA_AUTO_GAIN_CONTROL"), default=True)

    # 화면 공유 프레임레이트 (ideal / max)
    DISPLAY_IDEAL_FRAME_RATE: int = 15
    DISPLAY_MAX_FRAME_RATE: int = 30

    # 장치 이름 (플랫폼별 기본값, 환경변수로 재정의)
    CAMERA_DEVICE: str = os.getenv("CAMERA_DEVICE", _default_camera_device())
    CAMERA_FORMAT: str = os.getenv("CAMERA_FORMAT", _default_capture_format("video"))
    MICROPHONE_DEVICE: str = os.getenv("MICROPHONE_DEVICE", _default_microphone_device())
    MICROPHONE_FORMAT: str = os.getenv("MICROPHONE_FORMAT", _default_capture_format("audio"))
    DISPLAY_DEVICE: str = os.getenv("DISPLAY_DEVICE", os.getenv("DISPLAY", ":0.0"))
    DISPLAY_FORMAT: str = os.getenv("DISPLAY_FORMAT", _default_capture_format("display"))

    def camera_options(self) -> dict:
        """카메라 MediaPlayer 옵션 (ideal 해상도/프레임레이트)."""
        return {
            "video_size": f"{self.VIDEO_IDEAL_WIDTH}x{self.VIDEO_IDEAL_HEIGHT}",
            "framerate": str(self.VIDEO_IDEAL_FRAME_RATE),
        }

    def display_options(self) -> dict:
        """화면 캡처 MediaPlayer 옵션."""
        return {"framerate": str(self.DISPLAY_IDEAL_FRAME_RATE)}


# ============================================================
# 스크린샷 캡처 설정
# ============================================================

@dataclass(frozen=True)
class CaptureConfig:
    """정지 프레임 캡처 설정."""

    # 인코딩 전 최대 가로 크기 (비율 유지 축소)
    MAX_CAPTURE_WIDTH: int = int(os.getenv("MAX_CAPTURE_WIDTH", "1280"))

    # JPEG 품질 (0-100)
    JPEG_QUALITY: int = int(os.getenv("CAPTURE_JPEG_QUALITY", "75"))


# ============================================================
# 시그널링 연결 설정
# ============================================================

@dataclass(frozen=True)
class SignalingConfig:
    """시그널링 허브 연결 설정."""

    # 허브 WebSocket URL
    HUB_URL: str = os.getenv("SIGNALING_HUB_URL", "ws://localhost:8000/ws")

    # 재접속 대기 (초, 지수 백오프)
    RECONNECT_INITIAL_DELAY: float = 0.5
    RECONNECT_MAX_DELAY: float = 10.0

    # WebSocket keepalive
    PING_INTERVAL: float = 20.0
    PING_TIMEOUT: float = 30.0


# ============================================================
# 싱글톤 인스턴스
# ============================================================

ice_config = ICEServerConfig()
media_config = MediaConfig()
capture_config = CaptureConfig()
signaling_config = SignalingConfig()


# ============================================================
# 설정 로드 확인 로그
# ============================================================

logger.info(f"[WebRTC Config] .env 경로: {_env_path} (존재: {_env_path.exists()})")
logger.info(f"[WebRTC Config] TURN 서버 설정 완료: {ice_config.has_turn_server}")
if ice_config.STUN_SERVER_URL:
    logger.info(f"[WebRTC Config] STUN URL: {ice_config.STUN_SERVER_URL}")
else:
    logger.info(f"[WebRTC Config] STUN URL: 기본 Google STUN 사용")
logger.info(f"[WebRTC Config] 시그널링 허브: {signaling_config.HUB_URL}")
logger.info(f"[WebRTC Config] 캡처 최대 가로: {capture_config.MAX_CAPTURE_WIDTH}px")
