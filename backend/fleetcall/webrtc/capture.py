"""정지 프레임 캡처 모듈.

현재 디코딩 중인 비디오 피드(로컬 또는 원격 피어)에서 정지 이미지를 추출하여
점검 증빙 첨부용 JPEG data URL로 인코딩합니다.
"""

import base64
import io
import logging
from typing import Optional, TYPE_CHECKING

from PIL import Image

from .config import capture_config, CaptureConfig

if TYPE_CHECKING:
    from ..coordinator import CallContext
    from .media import LocalMediaController
    from .peer_manager import PeerSessionManager
    from .tracks import FrameTapTrack

logger = logging.getLogger(__name__)

LOCAL_TARGET = "local"


class FrameCaptureService:
    """비디오 피드에서 크기가 제한된 정지 이미지를 추출하는 서비스.

    피드 선택 순서:
        1. 주(primary) 피드: 포커스된 피어의 피드, 없으면 로컬 피드
        2. 요청한 대상의 피드
        3. 프레임이 1개 이상 디코딩된 아무 로컬 피드

    Attributes:
        context (CallContext): 포커스 피어와 캡처 콜백을 담은 통화 컨텍스트
        media (LocalMediaController): 로컬 피드 제공
        peers (PeerSessionManager): 원격 피어 피드 제공
        config (CaptureConfig): 최대 가로 크기, JPEG 품질

    Note:
        - 아직 프레임이 없으면 None 반환 (오류 아님, 잠시 후 재시도 의미)
        - 재시도/백오프 없음. 버튼 입력이나 콜백 훅에서 호출
    """

    def __init__(
        self,
        context: "CallContext",
        media: "LocalMediaController",
        peers: "PeerSessionManager",
        config: CaptureConfig = capture_config,
    ):
        self.context = context
        self.media = media
        self.peers = peers
        self.config = config

    def _feed_for(self, target: Optional[str]) -> Optional["FrameTapTrack"]:
        if target is None:
            return None
        if target == LOCAL_TARGET:
            feeds = self.media.local_feeds()
            return feeds[0] if feeds else None
        return self.peers.get_video_feed(target)

    def _primary_feed(self) -> Optional["FrameTapTrack"]:
        focused = self.context.focused_peer_id
        feed = self._feed_for(focused) if focused else None
        if feed is None:
            feed = self._feed_for(LOCAL_TARGET)
        return feed

    def resolve_feed(self, target: Optional[str]) -> Optional["FrameTapTrack"]:
        """캡처할 피드를 선택합니다. 프레임이 있는 피드만 반환합니다."""
        primary = self._primary_feed()
        if primary is not None and primary.has_frame:
            return primary

        requested = self._feed_for(target)
        if requested is not None and requested.has_frame:
            return requested

        for feed in self.media.local_feeds():
            if feed.has_frame:
                return feed
        return None

    def capture_from(self, target: str = LOCAL_TARGET) -> Optional[str]:
        """대상 피드에서 정지 이미지를 캡처합니다.

        Args:
            target (str): "local" 또는 원격 피어 connectionId

        Returns:
            Optional[str]: "data:image/jpeg;base64,..." 형식 이미지.
                아직 디코딩된 프레임이 없으면 None
        """
        feed = self.resolve_feed(target)
        if feed is None:
            logger.debug(f"[Capture] 캡처 가능한 피드 없음 (target={target})")
            return None
        return self.encode_frame(feed.last_frame)

    def encode_frame(self, frame) -> str:
        """프레임을 최대 가로 크기 이하로 축소한 뒤 JPEG data URL로 인코딩합니다."""
        image = frame.to_image()
        width, height = image.size
        if width > self.config.MAX_CAPTURE_WIDTH:
            scale = self.config.MAX_CAPTURE_WIDTH / width
            image = image.resize(
                (self.config.MAX_CAPTURE_WIDTH, max(1, round(height * scale))),
                Image.Resampling.LANCZOS,
            )

        buffer = io.BytesIO()
        image.convert("RGB").save(buffer, format="JPEG", quality=self.config.JPEG_QUALITY)
        encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
        logger.info(f"[Capture] 프레임 캡처: {width}x{height} -> {image.width}x{image.height}, {len(encoded)} bytes")
        return f"data:image/jpeg;base64,{encoded}"

    def take_screenshot(self, target: Optional[str] = None) -> Optional[str]:
        """캡처 후 컨텍스트의 콜백으로 전달합니다.

        대상이 없으면 포커스된 피어(없으면 로컬)를 캡처합니다. 항목별
        screenshot_callback이 있으면 기본 on_screenshot보다 우선합니다.
        """
        target = target or self.context.focused_peer_id or LOCAL_TARGET
        data_url = self.capture_from(target)
        if data_url is not None:
            self.context.deliver_screenshot(data_url)
        return data_url
