"""WebRTC 모듈.

피어 세션 관리, 로컬 미디어 캡처, 정지 프레임 캡처 기능을 제공합니다.

Classes:
    PeerSessionManager: 원격 참가자별 연결 수립 상태 머신 관리
    PeerSession: 원격 참가자 한 명과의 연결 상태
    LocalMediaController: 로컬 카메라/마이크/화면 캡처 관리
    FrameCaptureService: 비디오 피드 스크린샷
    LocalTrack: 음소거 가능한 로컬 트랙
    FrameTapTrack: 최신 프레임 보관 트랙

Config:
    ice_config: ICE 서버 설정
    media_config: 로컬 캡처 제약 설정
    capture_config: 스크린샷 설정
    signaling_config: 시그널링 허브 연결 설정
"""

from .tracks import LocalTrack, FrameTapTrack
from .connection import AiortcPeerConnection, create_aiortc_connection
from .media import (
    LocalMediaController,
    LocalMediaSession,
    LocalMediaStream,
    MediaAcquisition,
    DeviceAvailability,
    PlayerMediaDevices,
)
from .peer_manager import PeerSessionManager, PeerSession, SignalingState, RemoteMediaStream
from .capture import FrameCaptureService
from .config import (
    ice_config,
    media_config,
    capture_config,
    signaling_config,
    ICEServerConfig,
    MediaConfig,
    CaptureConfig,
    SignalingConfig,
)

__all__ = [
    # Classes
    "LocalTrack",
    "FrameTapTrack",
    "AiortcPeerConnection",
    "create_aiortc_connection",
    "LocalMediaController",
    "LocalMediaSession",
    "LocalMediaStream",
    "MediaAcquisition",
    "DeviceAvailability",
    "PlayerMediaDevices",
    "PeerSessionManager",
    "PeerSession",
    "SignalingState",
    "RemoteMediaStream",
    "FrameCaptureService",
    # Config
    "ice_config",
    "media_config",
    "capture_config",
    "signaling_config",
    "ICEServerConfig",
    "MediaConfig",
    "CaptureConfig",
    "SignalingConfig",
]
