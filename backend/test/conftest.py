"""테스트 공용 픽스처.

실제 카메라/네트워크 없이 통화 흐름을 재현하기 위한 대역(double)을 제공합니다.

    - FakePeerConnection: 브라우저 signalingState 규칙을 따르는 피어 연결
    - SyntheticVideoTrack / SyntheticAudioTrack: av 프레임을 생성하는 트랙
    - FakeMediaDevices: 장치 유무를 지정할 수 있는 캡처 장치
    - LoopbackSocket / hub_connector: 실제 SignalingHub에 메모리로 붙는 WebSocket
"""

import asyncio
import fractions
import json
import sys
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import parse_qs, urlsplit

import av
import numpy as np
import pytest
from aiortc import MediaStreamTrack
from aiortc.mediastreams import MediaStreamError
from websockets.exceptions import ConnectionClosedError

# Add backend to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from fleetcall.coordinator import CallCoordinator, Identity  # noqa: E402
from fleetcall.errors import CaptureDeviceError  # noqa: E402
from fleetcall.hub import SignalingHub  # noqa: E402
from fleetcall.signaling.transport import SignalingTransport  # noqa: E402
from fleetcall.webrtc.config import SignalingConfig  # noqa: E402
from fleetcall.webrtc.media import DeviceAvailability, LocalMediaStream  # noqa: E402

VIDEO_TIME_BASE = fractions.Fraction(1, 90000)
AUDIO_TIME_BASE = fractions.Fraction(1, 48000)


# ============================================================
# 합성 미디어 트랙
# ============================================================

class SyntheticVideoTrack(MediaStreamTrack):
    """단색 rgb24 프레임을 주기적으로 생성하는 비디오 트랙."""

    kind = "video"

    def __init__(self, width: int = 640, height: int = 480, color=(200, 40, 40), interval: float = 0.005):
        super().__init__()
        self.width = width
        self.height = height
        self.color = color
        self.interval = interval
        self.ended_by_source = False
        self._pts = 0

    def end(self):
        """사용자가 OS에서 캡처를 중지한 상황을 흉내냅니다."""
        self.ended_by_source = True

    async def recv(self):
        if self.readyState != "live" or self.ended_by_source:
            raise MediaStreamError
        await asyncio.sleep(self.interval)
        if self.readyState != "live" or self.ended_by_source:
            raise MediaStreamError
        pixels = np.empty((self.height, self.width, 3), dtype=np.uint8)
        pixels[:, :] = self.color
        frame = av.VideoFrame.from_ndarray(pixels, format="rgb24")
        frame.pts = self._pts
        frame.time_base = VIDEO_TIME_BASE
        self._pts += 3000
        return frame


class SyntheticAudioTrack(MediaStreamTrack):
    """20ms 단위 s16 mono 프레임을 생성하는 오디오 트랙."""

    kind = "audio"

    def __init__(self, samples: int = 960):
        super().__init__()
        self.samples = samples
        self._pts = 0

    async def recv(self):
        if self.readyState != "live":
            raise MediaStreamError
        await asyncio.sleep(0.005)
        frame = av.AudioFrame(format="s16", layout="mono", samples=self.samples)
        for plane in frame.planes:
            plane.update(b"\x01" * plane.buffer_size)
        frame.sample_rate = 48000
        frame.pts = self._pts
        frame.time_base = AUDIO_TIME_BASE
        self._pts += self.samples
        return frame


# ============================================================
# 피어 연결 대역
# ============================================================

class FakeSender:
    def __init__(self, track: MediaStreamTrack):
        self.track = track


class FakePeerConnection:
    """브라우저 RTCPeerConnection의 signalingState 규칙을 따르는 대역.

    - have-local-offer 상태에서 원격 offer 적용은 실패 (rollback 필요)
    - have-local-offer가 아닌 상태에서 원격 answer 적용은 실패
    - remote description 없이 candidate 적용은 실패
    """

    def __init__(self, peer_id: str, owner: str = ""):
        self.peer_id = peer_id
        self.owner = owner
        self.signaling_state = "stable"
        self.local_description: Optional[dict] = None
        self.remote_description: Optional[dict] = None
        self.on_track = None
        self.on_ice_candidate = None
        self.senders: List[FakeSender] = []
        self.added_candidates: List[dict] = []
        self.rollbacks = 0
        self.closed = False
        self._offers = 0

    async def create_offer(self) -> dict:
        await asyncio.sleep(0)
        self._offers += 1
        return {"type": "offer", "sdp": f"offer:{self.owner}->{self.peer_id}:{self._offers}"}

    async def create_answer(self) -> dict:
        await asyncio.sleep(0)
        if self.signaling_state != "have-remote-offer":
            raise RuntimeError("createAnswer requires a remote offer")
        return {"type": "answer", "sdp": f"answer:{self.owner}->{self.peer_id}"}

    async def set_local_description(self, description: dict):
        await asyncio.sleep(0)
        if self.closed:
            raise RuntimeError("connection closed")
        if description["type"] == "offer":
            self.signaling_state = "have-local-offer"
        else:
            self.signaling_state = "stable"
        self.local_description = description

    async def set_remote_description(self, description: dict):
        await asyncio.sleep(0)
        if self.closed:
            raise RuntimeError("connection closed")
        if description["type"] == "offer":
            if self.signaling_state == "have-local-offer":
                raise RuntimeError("offer collision: rollback required")
            self.signaling_state = "have-remote-offer"
        else:
            if self.signaling_state != "have-local-offer":
                raise RuntimeError("answer without pending offer")
            self.signaling_state = "stable"
        self.remote_description = description

    async def rollback(self):
        await asyncio.sleep(0)
        self.rollbacks += 1
        self.signaling_state = "stable"
        self.local_description = None

    async def add_ice_candidate(self, candidate: dict):
        await asyncio.sleep(0)
        if self.remote_description is None:
            raise RuntimeError("no remote description")
        if candidate.get("candidate") == "malformed":
            raise ValueError("malformed candidate")
        self.added_candidates.append(candidate)

    def add_track(self, track: MediaStreamTrack):
        self.senders.append(FakeSender(track))

    def get_senders(self) -> List[FakeSender]:
        return list(self.senders)

    def replace_sender_track(self, kind: str, track: MediaStreamTrack) -> bool:
        for sender in self.senders:
            if sender.track is not None and sender.track.kind == kind:
                sender.track = track
                return True
        return False

    async def close(self):
        self.closed = True
        self.signaling_state = "closed"

    # test helpers
    async def fire_track(self, track: MediaStreamTrack):
        await self.on_track(track)

    async def emit_candidate(self, candidate: dict):
        await self.on_ice_candidate(candidate)


class ConnectionFactory:
    """생성한 FakePeerConnection을 기록하는 팩토리."""

    def __init__(self, owner: str = ""):
        self.owner = owner
        self.created: Dict[str, List[FakePeerConnection]] = {}

    def __call__(self, peer_id: str) -> FakePeerConnection:
        pc = FakePeerConnection(peer_id, self.owner)
        self.created.setdefault(peer_id, []).append(pc)
        return pc

    def latest(self, peer_id: str) -> Optional[FakePeerConnection]:
        pcs = self.created.get(peer_id)
        return pcs[-1] if pcs else None


# ============================================================
# 캡처 장치 대역
# ============================================================

class FakeMediaDevices:
    """카메라/마이크/화면 캡처 가능 여부를 지정할 수 있는 장치 대역."""

    def __init__(self, has_camera: bool = True, has_mic: bool = True, display_allowed: bool = True):
        self.has_camera = has_camera
        self.has_mic = has_mic
        self.display_allowed = display_allowed
        self.requests: List[tuple] = []
        self.opened: List[MediaStreamTrack] = []
        self.displays: List[SyntheticVideoTrack] = []

    async def enumerate_devices(self) -> DeviceAvailability:
        return DeviceAvailability(has_camera=self.has_camera, has_mic=self.has_mic, checked=True)

    async def get_user_media(self, video: bool, audio: bool) -> LocalMediaStream:
        self.requests.append((video, audio))
        if video and not self.has_camera:
            raise CaptureDeviceError("camera not found")
        if audio and not self.has_mic:
            raise CaptureDeviceError("microphone not found")
        tracks = []
        if video:
            tracks.append(SyntheticVideoTrack(640, 480))
        if audio:
            tracks.append(SyntheticAudioTrack())
        self.opened.extend(tracks)
        return LocalMediaStream(tracks)

    async def get_display_media(self) -> LocalMediaStream:
        self.requests.append(("display",))
        if not self.display_allowed:
            raise CaptureDeviceError("screen sharing cancelled")
        display = SyntheticVideoTrack(1920, 1080, color=(20, 20, 200))
        self.displays.append(display)
        self.opened.append(display)
        return LocalMediaStream([display])


# ============================================================
# 메모리 시그널링 허브 연결
# ============================================================

class LoopbackSocket:
    """SignalingTransport가 websockets 연결 대신 사용하는 메모리 소켓.

    클라이언트가 보낸 텍스트는 허브의 handle_message로, 허브가 send_json으로
    보낸 메시지는 수신 큐로 전달됩니다.
    """

    def __init__(self, hub: SignalingHub):
        self.hub = hub
        self.connection_id: Optional[str] = None
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.closed = False

    # hub side
    async def send_json(self, message: dict):
        if self.closed:
            raise RuntimeError("socket closed")
        self.incoming.put_nowait(json.dumps(message))

    # client side
    async def send(self, text: str):
        if self.closed:
            raise ConnectionClosedError(None, None)
        await self.hub.handle_message(self.connection_id, json.loads(text))

    def __aiter__(self):
        return self

    async def __anext__(self):
        message = await self.incoming.get()
        if message is None:
            raise StopAsyncIteration
        return message

    async def close(self):
        await self.drop()

    async def drop(self):
        """네트워크 단절: 허브에서 연결을 정리하고 수신 루프를 끝냅니다."""
        if self.closed:
            return
        self.closed = True
        self.incoming.put_nowait(None)
        await self.hub.disconnect(self.connection_id)


class HubConnector:
    """SignalingTransport(connect=...)에 주입하는 연결 함수."""

    def __init__(self, hub: SignalingHub):
        self.hub = hub
        self.sockets: List[LoopbackSocket] = []
        self.urls: List[str] = []
        self.refuse = False

    async def __call__(self, url: str, **kwargs) -> LoopbackSocket:
        self.urls.append(url)
        if self.refuse:
            raise OSError("connection refused")
        query = parse_qs(urlsplit(url).query)
        socket = LoopbackSocket(self.hub)
        socket.connection_id = await self.hub.connect(
            socket,
            query.get("user_id", [""])[0],
            query.get("display_name", [""])[0],
        )
        self.sockets.append(socket)
        return socket

    @property
    def current(self) -> Optional[LoopbackSocket]:
        return self.sockets[-1] if self.sockets else None


FAST_SIGNALING = SignalingConfig(
    HUB_URL="ws://hub.test/ws",
    RECONNECT_INITIAL_DELAY=0.01,
    RECONNECT_MAX_DELAY=0.05,
)


async def wait_for(condition, timeout: float = 2.0, interval: float = 0.005) -> bool:
    """조건이 참이 될 때까지 기다립니다."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            return False
        await asyncio.sleep(interval)
    return True


async def settle(*transports, timeout: float = 2.0):
    """모든 소켓 큐와 핸들러 태스크가 빌 때까지 기다립니다."""
    def idle():
        for transport in transports:
            ws = transport._ws
            if ws is not None and not ws.incoming.empty():
                return False
            if transport._tasks:
                return False
        return True

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    quiet = 0
    while quiet < 3 and loop.time() < deadline:
        await asyncio.sleep(0.002)
        quiet = quiet + 1 if idle() else 0


# ============================================================
# 픽스처
# ============================================================

@pytest.fixture
def hub() -> SignalingHub:
    return SignalingHub()


@pytest.fixture
def connector(hub) -> HubConnector:
    return HubConnector(hub)


@pytest.fixture
def make_transport(connector):
    def _make(user_id: str = "u-1", display_name: str = "Inspector") -> SignalingTransport:
        return SignalingTransport(
            user_id=user_id,
            display_name=display_name,
            config=FAST_SIGNALING,
            connect=connector,
        )
    return _make


@pytest.fixture
async def make_call(make_transport):
    """작업지시 통화 참가자를 만드는 팩토리. 테스트 종료 시 모두 close."""
    calls: List[CallCoordinator] = []

    async def _make(
        name: str,
        work_order_id: str = "WO-1042",
        devices: Optional[FakeMediaDevices] = None,
        open_call: bool = True,
    ) -> CallCoordinator:
        factory = ConnectionFactory(owner=name)
        call = CallCoordinator(
            work_order_id,
            Identity(user_id=f"user-{name}", display_name=name),
            transport=make_transport(f"user-{name}", name),
            media_devices=devices or FakeMediaDevices(),
            connection_factory=factory,
        )
        call.factory = factory
        calls.append(call)
        if open_call:
            await call.open()
            await wait_for(lambda: call.transport.connected)
        return call

    yield _make

    for call in calls:
        await call.close()
