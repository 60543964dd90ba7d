"""통화 코디네이터 예외 정의."""


class FleetCallError(Exception):
    """통화 코디네이터 기본 예외."""


class CaptureDeviceError(FleetCallError):
    """카메라/마이크/화면 캡처 장치를 열 수 없음."""


class SignalingError(FleetCallError):
    """시그널링 채널이 연결되지 않았거나 전송에 실패함."""


class NegotiationError(FleetCallError):
    """offer/answer/ICE 협상 단계 실패."""

    def __init__(self, connection_id: str, step: str, cause: Exception = None):
        self.connection_id = connection_id
        self.step = step
        self.cause = cause
        super().__init__(f"{step} 실패 (peer={connection_id[:8]}): {cause}")
