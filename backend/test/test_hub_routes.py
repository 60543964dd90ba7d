"""허브 FastAPI 엔드포인트 테스트.

TestClient로 /ws WebSocket 인증, 참가 흐름, 상태 확인 API를 검증합니다.
"""

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

import app as hub_app
from fleetcall.hub import SignalingHub
from fleetcall.signaling import events
from routes import init_signaling_hub
from routes.deps import MAX_DISPLAY_NAME, resolve_identity


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setenv("ACCESS_PASSWORD", "")
    hub = SignalingHub()
    init_signaling_hub(hub)
    with TestClient(hub_app.app) as test_client:
        test_client.hub = hub
        yield test_client
    init_signaling_hub(hub_app.hub)


def test_root(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_health_reports_room_totals(client):
    with client.websocket_connect("/ws?user_id=u-a&display_name=A") as ws:
        ws.receive_json()
        ws.send_json({"type": events.ROOM_JOIN, "data": {"roomKey": "WO-1042"}})
        ws.receive_json()  # room:state
        ws.receive_json()  # room:count

        response = client.get("/api/health")
        rooms = client.get("/api/health/rooms")

    assert response.json() == {"status": "ok", "hub": {"connections": 1, "rooms": 1, "participants": 1}}
    assert rooms.json()["rooms"][0]["room_key"] == "WO-1042"


def test_unauthorized_socket_closed_with_4001(client, monkeypatch):
    monkeypatch.setenv("ACCESS_PASSWORD", "s3cret")

    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect("/ws?token=wrong") as ws:
            ws.receive_json()

    assert exc_info.value.code == 4001


def test_authorized_socket_receives_connection_id(client, monkeypatch):
    monkeypatch.setenv("ACCESS_PASSWORD", "s3cret")

    with client.websocket_connect("/ws?token=s3cret&user_id=u-a&display_name=A") as ws:
        ready = ws.receive_json()

    assert ready["type"] == events.CONNECTION_READY
    assert ready["data"]["connectionId"]


def test_two_clients_exchange_offer(client):
    with client.websocket_connect("/ws?user_id=u-a&display_name=A") as ws_a:
        conn_a = ws_a.receive_json()["data"]["connectionId"]
        ws_a.send_json({"type": events.ROOM_JOIN, "data": {"roomKey": "WO-1042"}})
        assert ws_a.receive_json() == {"type": events.ROOM_STATE, "data": {"participants": []}}
        assert ws_a.receive_json() == {"type": events.ROOM_COUNT, "data": {"count": 1}}

        with client.websocket_connect("/ws?user_id=u-b&display_name=B") as ws_b:
            conn_b = ws_b.receive_json()["data"]["connectionId"]
            ws_b.send_json({"type": events.ROOM_JOIN, "data": {"roomKey": "WO-1042"}})
            state = ws_b.receive_json()
            assert state["data"]["participants"] == [
                {"connectionId": conn_a, "userId": "u-a", "displayName": "A"},
            ]

            joined = ws_a.receive_json()
            assert joined == {
                "type": events.PEER_JOINED,
                "data": {"connectionId": conn_b, "userId": "u-b", "displayName": "B"},
            }
            assert ws_a.receive_json()["type"] == events.ROOM_COUNT

            ws_a.send_json({
                "type": events.SIGNAL_OFFER,
                "data": {"targetConnectionId": conn_b, "offer": {"type": "offer", "sdp": "v=0"}},
            })
            assert ws_b.receive_json()["type"] == events.ROOM_COUNT
            offer = ws_b.receive_json()
            assert offer["type"] == events.SIGNAL_OFFER
            assert offer["data"]["fromConnectionId"] == conn_a
            assert offer["data"]["displayName"] == "A"

        left = ws_a.receive_json()
        assert left == {"type": events.PEER_LEFT, "data": {"connectionId": conn_b}}


def test_invalid_json_gets_error(client):
    with client.websocket_connect("/ws") as ws:
        ws.receive_json()
        ws.send_text("{not json")
        error = ws.receive_json()

    assert error == {"type": "error", "data": {"message": "Invalid JSON"}}


def test_room_list_requires_bearer_password(client, monkeypatch):
    monkeypatch.setenv("ACCESS_PASSWORD", "s3cret")

    assert client.get("/api/health/rooms").status_code == 401
    assert client.get("/api/health/rooms", headers={"Authorization": "Basic s3cret"}).status_code == 401
    assert client.get("/api/health/rooms", headers={"Authorization": "Bearer wrong"}).status_code == 401
    response = client.get("/api/health/rooms", headers={"Authorization": "Bearer s3cret"})
    assert response.status_code == 200
    assert response.json() == {"rooms": []}
    # Plain health stays open for load balancer checks
    assert client.get("/api/health").status_code == 200


def test_resolve_identity_normalizes_query_values():
    assert resolve_identity("  u-a ", "  Kim   Inspector ") == resolve_identity("u-a", "Kim Inspector")
    assert resolve_identity("u-a", "   ").display_name == "Anonymous"
    assert len(resolve_identity("u-a", "x" * 200).display_name) == MAX_DISPLAY_NAME


def test_socket_display_name_is_normalized_before_join(client):
    with client.websocket_connect("/ws?user_id=%20u-a%20&display_name=%20%20") as ws_a:
        conn_a = ws_a.receive_json()["data"]["connectionId"]
        ws_a.send_json({"type": events.ROOM_JOIN, "data": {"roomKey": "WO-7"}})
        ws_a.receive_json()  # room:state
        ws_a.receive_json()  # room:count

        with client.websocket_connect("/ws?user_id=u-b&display_name=B") as ws_b:
            ws_b.receive_json()
            ws_b.send_json({"type": events.ROOM_JOIN, "data": {"roomKey": "WO-7"}})
            state = ws_b.receive_json()

    assert state["data"]["participants"] == [
        {"connectionId": conn_a, "userId": "u-a", "displayName": "Anonymous"},
    ]
