"""SignalingHub / RoomManager 테스트.

룸 참가 시 스냅샷과 입장 알림, 인원 변경 구독, signal:* 중계, 잘못된 메시지
처리를 소켓 대역으로 검증합니다.
"""

import pytest

from fleetcall.hub import HubParticipant, RoomManager, SignalingHub
from fleetcall.signaling import events


class RecordingSocket:
    def __init__(self):
        self.messages = []
        self.broken = False

    async def send_json(self, message):
        if self.broken:
            raise RuntimeError("socket closed")
        self.messages.append(message)

    def of(self, event):
        return [m["data"] for m in self.messages if m["type"] == event]

    def clear(self):
        self.messages.clear()


@pytest.fixture
def hub():
    return SignalingHub()


async def connect(hub, name):
    socket = RecordingSocket()
    connection_id = await hub.connect(socket, f"user-{name}", name)
    return connection_id, socket


async def join(hub, connection_id, room="WO-1042"):
    await hub.handle_message(connection_id, {"type": events.ROOM_JOIN, "data": {"roomKey": room}})


# ============================================================
# RoomManager
# ============================================================

def test_room_created_and_deleted_with_participants():
    rooms = RoomManager()
    rooms.join_room("WO-1", HubParticipant("conn-a", "u-a", "A", None))
    rooms.join_room("WO-1", HubParticipant("conn-b", "u-b", "B", None))

    assert rooms.get_room_count("WO-1") == 2
    assert [p.connection_id for p in rooms.get_other_participants("WO-1", "conn-a")] == ["conn-b"]
    assert rooms.get_room_list() == [{"room_key": "WO-1", "participant_count": 2, "participants": ["A", "B"]}]

    assert rooms.leave_room("conn-a") == "WO-1"
    assert rooms.leave_room("conn-b") == "WO-1"
    assert rooms.rooms == {}
    assert rooms.leave_room("conn-b") is None


def test_joining_another_room_leaves_previous():
    rooms = RoomManager()
    rooms.join_room("WO-1", HubParticipant("conn-a", "u-a", "A", None))

    previous = rooms.join_room("WO-2", HubParticipant("conn-a", "u-a", "A", None))

    assert previous == "WO-1"
    assert rooms.get_room_of("conn-a") == "WO-2"
    assert "WO-1" not in rooms.rooms


# ============================================================
# SignalingHub
# ============================================================

async def test_connect_sends_connection_ready(hub):
    connection_id, socket = await connect(hub, "A")

    assert socket.messages == [{"type": events.CONNECTION_READY, "data": {"connectionId": connection_id}}]


async def test_join_sends_snapshot_and_announces(hub):
    conn_a, socket_a = await connect(hub, "A")
    conn_b, socket_b = await connect(hub, "B")
    await join(hub, conn_a)
    socket_a.clear()

    await join(hub, conn_b)

    assert socket_b.of(events.ROOM_STATE) == [{
        "participants": [{"connectionId": conn_a, "userId": "user-A", "displayName": "A"}],
    }]
    assert socket_a.of(events.PEER_JOINED) == [{"connectionId": conn_b, "userId": "user-B", "displayName": "B"}]
    assert socket_a.of(events.ROOM_COUNT) == [{"count": 2}]
    assert socket_b.of(events.ROOM_COUNT) == [{"count": 2}]
    assert socket_b.of(events.PEER_JOINED) == []


async def test_first_joiner_gets_empty_snapshot(hub):
    conn_a, socket_a = await connect(hub, "A")

    await join(hub, conn_a)

    assert socket_a.of(events.ROOM_STATE) == [{"participants": []}]


async def test_status_subscribes_to_count_updates(hub):
    watcher, watcher_socket = await connect(hub, "W")
    conn_a, _ = await connect(hub, "A")

    await hub.handle_message(watcher, {"type": events.ROOM_STATUS, "data": {"roomKey": "WO-1042"}})
    assert watcher_socket.of(events.ROOM_STATUS) == [{"count": 0, "isActive": False}]

    await join(hub, conn_a)
    await hub.handle_message(conn_a, {"type": events.ROOM_LEAVE, "data": {"roomKey": "WO-1042"}})

    assert watcher_socket.of(events.ROOM_COUNT) == [{"count": 1}, {"count": 0}]
    assert watcher_socket.of(events.PEER_JOINED) == []


async def test_leave_and_disconnect_announce_peer_left(hub):
    conn_a, socket_a = await connect(hub, "A")
    conn_b, _ = await connect(hub, "B")
    conn_c, _ = await connect(hub, "C")
    for conn in (conn_a, conn_b, conn_c):
        await join(hub, conn)
    socket_a.clear()

    await hub.handle_message(conn_b, {"type": events.ROOM_LEAVE, "data": {"roomKey": "WO-1042"}})
    await hub.disconnect(conn_c)

    assert socket_a.of(events.PEER_LEFT) == [{"connectionId": conn_b}, {"connectionId": conn_c}]
    assert hub.rooms.get_room_count("WO-1042") == 1
    assert conn_c not in hub.connections


async def test_offer_relayed_with_sender_identity(hub):
    conn_a, _ = await connect(hub, "A")
    conn_b, socket_b = await connect(hub, "B")
    await join(hub, conn_a)
    await join(hub, conn_b)
    socket_b.clear()

    await hub.handle_message(conn_a, {
        "type": events.SIGNAL_OFFER,
        "data": {"targetConnectionId": conn_b, "offer": {"type": "offer", "sdp": "v=0"}},
    })

    assert socket_b.messages == [{
        "type": events.SIGNAL_OFFER,
        "data": {
            "fromConnectionId": conn_a,
            "userId": "user-A",
            "displayName": "A",
            "offer": {"type": "offer", "sdp": "v=0"},
        },
    }]


async def test_candidate_relayed_to_target_only(hub):
    conn_a, socket_a = await connect(hub, "A")
    conn_b, socket_b = await connect(hub, "B")
    conn_c, socket_c = await connect(hub, "C")
    for conn in (conn_a, conn_b, conn_c):
        await join(hub, conn)
    for socket in (socket_a, socket_b, socket_c):
        socket.clear()
    ice = {"candidate": "candidate:1 1 udp 1 10.0.0.1 5000 typ host", "sdpMid": "0", "sdpMLineIndex": 0}

    await hub.handle_message(conn_b, {
        "type": events.SIGNAL_ICE_CANDIDATE,
        "data": {"targetConnectionId": conn_c, "candidate": ice},
    })

    assert socket_c.of(events.SIGNAL_ICE_CANDIDATE) == [{"fromConnectionId": conn_b, "candidate": ice}]
    assert socket_a.messages == []
    assert socket_b.messages == []


async def test_signal_to_unknown_target_is_dropped(hub):
    conn_a, socket_a = await connect(hub, "A")
    await join(hub, conn_a)
    socket_a.clear()

    await hub.handle_message(conn_a, {
        "type": events.SIGNAL_ANSWER,
        "data": {"targetConnectionId": "nobody", "answer": {"type": "answer", "sdp": "v=0"}},
    })

    assert socket_a.messages == []


async def test_signal_across_rooms_is_dropped(hub):
    conn_a, _ = await connect(hub, "A")
    conn_b, socket_b = await connect(hub, "B")
    await join(hub, conn_a, "WO-1")
    await join(hub, conn_b, "WO-2")
    socket_b.clear()

    await hub.handle_message(conn_a, {
        "type": events.SIGNAL_OFFER,
        "data": {"targetConnectionId": conn_b, "offer": {"type": "offer", "sdp": "v=0"}},
    })

    assert socket_b.messages == []


@pytest.mark.parametrize(
    "message, expected",
    [
        ("not a dict", "Malformed message"),
        ({"data": {}}, "Malformed message"),
        ({"type": "room:explode", "data": {}}, "Unknown message type: room:explode"),
        ({"type": events.ROOM_JOIN, "data": {}}, "Invalid payload for room:join"),
    ],
)
async def test_bad_messages_get_error_reply(hub, message, expected):
    conn_a, socket_a = await connect(hub, "A")
    socket_a.clear()

    await hub.handle_message(conn_a, message)

    assert socket_a.of(events.ERROR) == [{"message": expected}]


async def test_broken_socket_is_cleaned_up_on_broadcast(hub):
    conn_a, socket_a = await connect(hub, "A")
    conn_b, socket_b = await connect(hub, "B")
    await join(hub, conn_a)
    await join(hub, conn_b)
    socket_a.broken = True
    conn_c, _ = await connect(hub, "C")

    await join(hub, conn_c)

    assert conn_a not in hub.connections
    assert {p.connection_id for p in hub.rooms.get_room_participants("WO-1042")} == {conn_b, conn_c}
    assert {"connectionId": conn_a} in socket_b.of(events.PEER_LEFT)


async def test_stats(hub):
    conn_a, _ = await connect(hub, "A")
    await connect(hub, "B")
    await join(hub, conn_a)

    assert hub.stats() == {"connections": 2, "rooms": 1, "participants": 1}
