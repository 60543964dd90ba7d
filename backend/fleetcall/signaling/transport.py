"""시그널링 전송 채널 모듈.

룸 단위 시그널링 허브와의 인증된 양방향 WebSocket 채널을 제공합니다.
타입이 지정된 메시지를 이벤트 핸들러로 전달하며, 연결이 끊기면 지수 백오프로
투명하게 재접속합니다.

Delivery:
    - 물리 연결 단위 at-most-once. 개별 이벤트는 재전송하지 않음
    - 재접속 시 허브가 connection:ready를 다시 보내면 "connect" 핸들러가 다시 호출되며,
      호출 측은 여기서 room:join/room:status를 재전송하여 참가자 목록을 복구함
"""

import asyncio
import inspect
import json
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Set
from urllib.parse import urlencode

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from . import events
from .events import envelope
from ..errors import SignalingError
from ..webrtc.config import signaling_config, SignalingConfig

logger = logging.getLogger(__name__)

Handler = Callable[[dict], Any]


class EventDispatcher:
    """이벤트 이름 → 핸들러 목록 디스패처.

    코루틴 핸들러는 메시지 도착 순서대로 태스크로 실행되며, 핸들러 예외는
    로그만 남기고 전파하지 않습니다.
    """

    def __init__(self):
        self._handlers: Dict[str, List[Handler]] = defaultdict(list)
        self._tasks: Set[asyncio.Task] = set()

    def on(self, event: str, handler: Handler):
        """이벤트 핸들러를 등록합니다."""
        self._handlers[event].append(handler)

    def off(self, event: str, handler: Optional[Handler] = None):
        """이벤트 핸들러를 해제합니다. handler가 없으면 전부 해제합니다."""
        if handler is None:
            self._handlers.pop(event, None)
        elif handler in self._handlers.get(event, []):
            self._handlers[event].remove(handler)

    def _dispatch(self, event: str, payload: dict):
        handlers = list(self._handlers.get(event, []))
        if not handlers:
            logger.debug(f"[Signaling] 핸들러 없는 이벤트: {event}")
        for handler in handlers:
            try:
                result = handler(payload)
            except Exception as e:
                logger.error(f"[Signaling] {event} 핸들러 오류: {e}", exc_info=True)
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(self._run(event, result))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)

    async def _run(self, event: str, awaitable):
        try:
            await awaitable
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[Signaling] {event} 핸들러 오류: {e}", exc_info=True)

    async def wait_idle(self):
        """실행 중인 핸들러 태스크가 모두 끝날 때까지 기다립니다."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class SignalingTransport(EventDispatcher):
    """시그널링 허브 WebSocket 클라이언트.

    Attributes:
        url (str): 허브 WebSocket URL
        user_id (str): 호스트 앱이 제공한 사용자 ID
        display_name (str): 호스트 앱이 제공한 표시 이름
        room_key (Optional[str]): 연결한 룸 (작업지시 ID)
        connection_id (Optional[str]): 허브가 부여한 이 연결의 ID

    Examples:
        >>> transport = SignalingTransport(user_id="u-1", display_name="Inspector")
        >>> transport.on("peer:joined", handle_peer_joined)
        >>> await transport.connect("WO-1042", token)
        >>> await transport.send("room:join", {"roomKey": "WO-1042"})
        >>> await transport.disconnect()
    """

    def __init__(
        self,
        url: Optional[str] = None,
        user_id: str = "",
        display_name: str = "",
        config: SignalingConfig = signaling_config,
        connect: Callable = None,
    ):
        super().__init__()
        self.url = url or config.HUB_URL
        self.user_id = user_id
        self.display_name = display_name
        self.config = config
        self.room_key: Optional[str] = None
        self.connection_id: Optional[str] = None
        self._connect = connect or websockets.connect
        self._token: Optional[str] = None
        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._ws is not None and self.connection_id is not None

    def _build_url(self) -> str:
        query = urlencode({
            "token": self._token or "",
            "room_key": self.room_key or "",
            "user_id": self.user_id,
            "display_name": self.display_name,
        })
        separator = "&" if "?" in self.url else "?"
        return f"{self.url}{separator}{query}"

    async def connect(self, room_key: str, auth_token: Optional[str]) -> "SignalingTransport":
        """허브에 연결하고 수신 루프를 시작합니다.

        Raises:
            SignalingError: 최초 연결 실패
        """
        self.room_key = room_key
        self._token = auth_token
        self._closing = False
        try:
            await self._open()
        except (OSError, WebSocketException) as e:
            raise SignalingError(f"허브 연결 실패: {self.url}: {e}") from e
        self._reader = asyncio.create_task(self._read_loop())
        return self

    async def _open(self):
        self._ws = await self._connect(
            self._build_url(),
            ping_interval=self.config.PING_INTERVAL,
            ping_timeout=self.config.PING_TIMEOUT,
        )
        logger.info(f"[Signaling] 허브 연결됨: {self.url} (room={self.room_key})")

    async def _read_loop(self):
        delay = self.config.RECONNECT_INITIAL_DELAY
        while not self._closing:
            try:
                async for raw in self._ws:
                    self._handle_raw(raw)
            except ConnectionClosed as e:
                logger.warning(f"[Signaling] 허브 연결 끊김: {e}")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"[Signaling] 수신 루프 오류: {type(e).__name__}: {e}", exc_info=True)

            self.connection_id = None
            self._dispatch(events.DISCONNECT, {})
            if self._closing:
                break

            while not self._closing:
                logger.info(f"[Signaling] {delay:.1f}초 후 재접속 시도")
                await asyncio.sleep(delay)
                try:
                    await self._open()
                    delay = self.config.RECONNECT_INITIAL_DELAY
                    break
                except (OSError, WebSocketException) as e:
                    logger.warning(f"[Signaling] 재접속 실패: {e}")
                    delay = min(delay * 2, self.config.RECONNECT_MAX_DELAY)

    def _handle_raw(self, raw):
        try:
            message = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning(f"[Signaling] JSON 파싱 실패: {e}")
            return

        event = message.get("type")
        payload = message.get("data") or {}
        if event == events.CONNECTION_READY:
            self.connection_id = payload.get("connectionId")
            logger.info(f"[Signaling] connectionId 할당: {(self.connection_id or '')[:8]}")
            self._dispatch(events.CONNECT, payload)
            return
        if event == events.ERROR:
            logger.warning(f"[Signaling] 허브 오류: {payload.get('message')}")
        self._dispatch(event, payload)

    async def send(self, event: str, payload: Optional[dict] = None) -> bool:
        """이벤트를 허브로 전송합니다. 연결되어 있지 않으면 버립니다.

        Returns:
            bool: 전송했으면 True
        """
        if self._ws is None:
            logger.warning(f"[Signaling] 연결 없음 - {event} 전송 생략")
            return False
        try:
            await self._ws.send(json.dumps(envelope(event, payload)))
            return True
        except ConnectionClosed as e:
            logger.warning(f"[Signaling] {event} 전송 실패 (연결 끊김): {e}")
            return False

    async def disconnect(self):
        """연결을 종료합니다. 여러 번 호출해도 안전합니다."""
        self._closing = True
        ws, self._ws = self._ws, None
        reader, self._reader = self._reader, None
        self.connection_id = None

        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug(f"[Signaling] 연결 종료 중 오류 무시: {e}")
        if reader is not None and not reader.done():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        if ws is not None:
            logger.info("[Signaling] 허브 연결 종료")
