"""
Unit tests for the signaling server - /ws protocol and REST routes
"""
import pytest
from fastapi.testclient import TestClient

from main import create_app


def receive_event(ws, event: str, predicate=None) -> dict:
    """Read messages until the named event arrives, skipping broadcasts."""
    for _ in range(50):
        message = ws.receive_json()
        if message["event"] == event and (predicate is None or predicate(message["data"])):
            return message["data"]
    raise AssertionError(f"No {event} event received")


def register(ws, name: str) -> str:
    ws.send_json({"event": "register", "data": {"name": name}})
    return receive_event(ws, "registered")["device_id"]


def offer(source: str, target: str, payload=None) -> dict:
    return {
        "event": "signal",
        "data": {
            "kind": "offer",
            "payload": payload if payload is not None else {"session": "abc", "role": "offer"},
            "source_device_id": source,
            "target_device_id": target,
        },
    }


@pytest.fixture
def client():
    with TestClient(create_app()) as test_client:
        yield test_client


class TestRest:
    """Tests for the /api routes"""

    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.json()["app_id"] == "peerdrop-v1"

    def test_empty_registry(self, client):
        assert client.get("/api/devices").json() == {"devices": []}
        assert client.get("/api/devices/online").json() == {"devices": []}

    def test_unknown_device_is_404(self, client):
        assert client.get("/api/devices/missing").status_code == 404

    def test_registered_device_is_listed(self, client):
        with client.websocket_connect("/ws") as ws:
            device_id = register(ws, "Laptop")
            devices = client.get("/api/devices").json()["devices"]
            assert devices == [{"id": device_id, "name": "Laptop", "status": "online"}]
            detail = client.get(f"/api/devices/{device_id}").json()
            assert detail["display_name"] == "Laptop"

    def test_apps_keep_separate_registries(self):
        first, second = create_app(), create_app()
        with TestClient(first) as c1, TestClient(second) as c2:
            with c1.websocket_connect("/ws") as ws:
                device_id = register(ws, "A")
                assert [d["id"] for d in c1.get("/api/devices").json()["devices"]] == [device_id]
                assert c2.get("/api/devices").json() == {"devices": []}
                assert c2.get(f"/api/devices/{device_id}").status_code == 404
                assert c1.get("/api/health").json()["clients"] == 1
                assert c2.get("/api/health").json()["clients"] == 0


class TestRegistration:
    """Tests for the register and get_devices events"""

    def test_register_returns_identity(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"event": "register", "data": {"name": "Phone"}})
            registered = receive_event(ws, "registered")
            assert registered["name"] == "Phone"
            assert registered["device_id"]

    def test_blank_name_gets_default(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"event": "register", "data": {}})
            registered = receive_event(ws, "registered")
            assert registered["name"] == f"Device-{registered['device_id'][:8]}"

    def test_membership_is_broadcast(self, client):
        with client.websocket_connect("/ws") as a:
            a_id = register(a, "A")
            with client.websocket_connect("/ws") as b:
                b_id = register(b, "B")
                update = receive_event(a, "devices_updated", lambda d: len(d["devices"]) == 2)
                assert {d["id"] for d in update["devices"]} == {a_id, b_id}
                assert all(d["status"] == "online" for d in update["devices"])

            # B's socket closed: A sees it leave
            update = receive_event(a, "devices_updated", lambda d: len(d["devices"]) == 1)
            assert update["devices"][0]["id"] == a_id

    def test_get_devices(self, client):
        with client.websocket_connect("/ws") as ws:
            device_id = register(ws, "Desk")
            ws.send_json({"event": "get_devices", "data": {}})
            data = receive_event(ws, "devices_updated")
            assert [d["id"] for d in data["devices"]] == [device_id]

    def test_reregister_replaces_identity(self, client):
        with client.websocket_connect("/ws") as ws:
            first = register(ws, "Old")
            second = register(ws, "New")
            assert first != second
            devices = client.get("/api/devices").json()["devices"]
            assert [d["id"] for d in devices] == [second]

    def test_heartbeat_for_unknown_device_is_ignored(self, client):
        with client.websocket_connect("/ws") as ws:
            device_id = register(ws, "A")
            ws.send_json({"event": "heartbeat", "data": {"device_id": "nobody"}})
            ws.send_json({"event": "heartbeat", "data": {"device_id": device_id}})
            ws.send_json({"event": "get_devices", "data": {}})
            data = receive_event(ws, "devices_updated")
            assert len(data["devices"]) == 1


class TestSignalRelay:
    """Tests for the signal event"""

    def test_signal_reaches_target_unchanged(self, client):
        with client.websocket_connect("/ws") as a, client.websocket_connect("/ws") as b:
            a_id = register(a, "A")
            b_id = register(b, "B")
            payload = {"session": "s-1", "role": "offer", "extra": [1, {"x": None}]}
            a.send_json(offer(a_id, b_id, payload))

            signal = receive_event(b, "signal")
            assert signal == {
                "kind": "offer",
                "payload": payload,
                "source_device_id": a_id,
                "target_device_id": b_id,
            }

    def test_signals_keep_their_order(self, client):
        with client.websocket_connect("/ws") as a, client.websocket_connect("/ws") as b:
            a_id = register(a, "A")
            b_id = register(b, "B")
            for port in range(10):
                a.send_json({"event": "signal", "data": {
                    "kind": "candidate",
                    "payload": {"host": "10.0.0.1", "port": port},
                    "source_device_id": a_id,
                    "target_device_id": b_id,
                }})
            ports = [receive_event(b, "signal")["payload"]["port"] for _ in range(10)]
            assert ports == list(range(10))

    def test_unknown_target(self, client):
        with client.websocket_connect("/ws") as ws:
            device_id = register(ws, "A")
            ws.send_json(offer(device_id, "ghost"))
            error = receive_event(ws, "error")
            assert error["category"] == "target_not_found"
            assert error["target_device_id"] == "ghost"

    def test_spoofed_source_is_rejected(self, client):
        with client.websocket_connect("/ws") as a, client.websocket_connect("/ws") as b:
            register(a, "A")
            b_id = register(b, "B")
            a.send_json(offer(b_id, b_id))
            error = receive_event(a, "error")
            assert error["category"] == "bad_request"

    def test_signal_before_register(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json(offer("me", "you"))
            assert receive_event(ws, "error")["category"] == "bad_request"


class TestMalformedInput:
    """Bad messages get an error event and the socket stays usable"""

    @pytest.mark.parametrize("raw", [
        "not json",
        '{"event": "dance", "data": {}}',
        '{"event": "heartbeat", "data": {}}',
        '{"event": "signal", "data": {"kind": "hello", "source_device_id": "a", "target_device_id": "b"}}',
    ])
    def test_bad_request(self, client, raw):
        with client.websocket_connect("/ws") as ws:
            ws.send_text(raw)
            assert receive_event(ws, "error")["category"] == "bad_request"
            # Still serving
            register(ws, "After")
