"""미디어 트랙 릴레이 모듈.

로컬 캡처 트랙의 음소거(enabled) 처리와, 원격/로컬 비디오 피드의 최신 프레임을
보관하여 스크린샷 캡처가 가능하도록 하는 트랙 래퍼를 제공합니다.
"""

import asyncio
import logging
from typing import Callable, Optional

import av
import numpy as np
from aiortc import MediaStreamTrack
from aiortc.mediastreams import MediaStreamError

logger = logging.getLogger(__name__)


def _blank_video_frame(frame: av.VideoFrame) -> av.VideoFrame:
    """같은 크기의 검은 프레임을 생성합니다 (비디오 off 상태)."""
    black = np.zeros((frame.height, frame.width, 3), dtype=np.uint8)
    out = av.VideoFrame.from_ndarray(black, format="rgb24")
    out.pts = frame.pts
    out.time_base = frame.time_base
    return out


def _silent_audio_frame(frame: av.AudioFrame) -> av.AudioFrame:
    """같은 포맷의 무음 프레임을 생성합니다 (마이크 off 상태)."""
    out = av.AudioFrame(
        format=frame.format.name,
        layout=frame.layout.name,
        samples=frame.samples,
    )
    for plane in out.planes:
        plane.update(bytes(plane.buffer_size))
    out.sample_rate = frame.sample_rate
    out.pts = frame.pts
    out.time_base = frame.time_base
    return out


class LocalTrack(MediaStreamTrack):
    """로컬 캡처 장치의 프레임을 릴레이하는 트랙.

    브라우저 MediaStreamTrack.enabled와 같은 의미의 음소거 플래그를 제공합니다.
    비활성화 상태에서는 재협상 없이 검은 화면/무음 프레임을 전달합니다.

    Attributes:
        kind (str): 트랙 종류 ("audio" 또는 "video")
        source (MediaStreamTrack): 캡처 장치의 원본 트랙
        label (str): 트랙 출처 ("camera", "microphone", "display")
        enabled (bool): False면 검은 화면/무음 전달
        frames_decoded (int): 수신한 프레임 수
        last_frame: 마지막으로 전달한 비디오 프레임
        on_ended (Optional[Callable]): 원본이 스스로 종료되었을 때 호출
            (예: 사용자가 OS의 "공유 중지" 버튼을 누름)

    Note:
        - stop()은 명시적 해제이므로 on_ended를 호출하지 않음
        - 원본 recv()에서 MediaStreamError가 발생하면 on_ended를 1회 호출
    """

    def __init__(
        self,
        source: MediaStreamTrack,
        label: str,
        on_ended: Optional[Callable[["LocalTrack"], None]] = None,
    ):
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.label = label
        self.enabled = True
        self.on_ended = on_ended
        self.frames_decoded = 0
        self.last_frame = None
        self._ended_notified = False

    async def recv(self):
        try:
            frame = await self.source.recv()
        except MediaStreamError:
            self._notify_source_ended()
            raise

        if not self.enabled:
            if self.kind == "video":
                frame = _blank_video_frame(frame)
            else:
                frame = _silent_audio_frame(frame)

        self.frames_decoded += 1
        if self.kind == "video":
            self.last_frame = frame
        return frame

    def stop(self):
        """트랙과 원본 캡처 장치를 정지합니다. 여러 번 호출해도 안전합니다."""
        if self.readyState == "ended":
            return
        super().stop()
        self._ended_notified = True
        self.source.stop()
        logger.info(f"[Media] {self.label} {self.kind} 트랙 정지")

    def _notify_source_ended(self):
        if self._ended_notified:
            return
        self._ended_notified = True
        logger.info(f"[Media] {self.label} {self.kind} 트랙이 원본에서 종료됨")
        super().stop()
        if self.on_ended:
            self.on_ended(self)


class FrameTapTrack(MediaStreamTrack):
    """비디오 피드의 최신 프레임을 보관하는 트랙.

    캡처용 피드(로컬 미리보기, 원격 피어 영상)를 consume하면서 마지막 프레임을
    저장합니다. 브라우저의 재생 중인 <video> 요소에 해당합니다.

    Attributes:
        kind (str): 트랙 종류 ("video")
        track (MediaStreamTrack): 원본 비디오 트랙
        frames_decoded (int): 디코딩된 프레임 수 (0이면 아직 캡처 불가)
        last_frame: 마지막 프레임
    """
    kind = "video"

    def __init__(self, track: MediaStreamTrack, name: str = ""):
        super().__init__()
        self.track = track
        self.name = name
        self.frames_decoded = 0
        self.last_frame = None
        self._consumer: Optional[asyncio.Task] = None

    async def recv(self):
        frame = await self.track.recv()
        self.frames_decoded += 1
        self.last_frame = frame
        return frame

    @property
    def has_frame(self) -> bool:
        """캡처 가능한 프레임이 1개 이상 있는지 여부."""
        return self.frames_decoded > 0 and self.last_frame is not None

    def start(self) -> asyncio.Task:
        """프레임 consume 태스크를 시작합니다."""
        if self._consumer is None or self._consumer.done():
            self._consumer = asyncio.create_task(self._consume())
        return self._consumer

    def stop(self):
        if self._consumer and not self._consumer.done():
            self._consumer.cancel()
        super().stop()

    async def _consume(self):
        """피드가 끝날 때까지 프레임을 계속 수신합니다."""
        logger.info(f"[Capture] 피드 {self.name} 컨슈머 시작")
        try:
            while True:
                await self.recv()
                if self.frames_decoded == 1:
                    logger.info(f"[Capture] 피드 {self.name} 첫 프레임 수신")
        except asyncio.CancelledError:
            logger.debug(f"[Capture] 피드 {self.name} 컨슈머 태스크 취소됨")
        except MediaStreamError:
            logger.info(f"[Capture] 피드 {self.name} 종료")
        except Exception as e:
            logger.error(f"[Capture] 피드 {self.name} 컨슈머 오류: {type(e).__name__}: {e}", exc_info=True)
        finally:
            logger.info(f"[Capture] 피드 {self.name} 컨슈머 종료. 총 프레임: {self.frames_decoded}")
