"""FleetCall 다자간 현장 통화 모듈.

작업지시 단위 룸에서 참가자 간 풀메시 WebRTC 연결을 조정하고, 임의 참가자의
비디오 피드에서 정지 이미지를 캡처합니다.

Modules:
    coordinator: 통화 참가/퇴장 및 미디어 제어 진입점
    signaling: 시그널링 허브 클라이언트와 참가자 추적
    webrtc: 피어 세션, 로컬 미디어, 프레임 캡처
    hub: 서버 측 시그널링 허브 (룸 관리, 메시지 중계)
"""

from .coordinator import CallCoordinator, CallContext, Identity
from .errors import FleetCallError, CaptureDeviceError, SignalingError, NegotiationError

__all__ = [
    "CallCoordinator",
    "CallContext",
    "Identity",
    "FleetCallError",
    "CaptureDeviceError",
    "SignalingError",
    "NegotiationError",
]
