import asyncio
import json
import threading

import pytest

import config.settings as settings
from broker.events import EventKind
from common.errors import DeliveryFailure
from gateway.web import close_app, create_app


class RecordingSink:
    def __init__(self):
        self.received = []

    async def deliver(self, message, qos):
        self.received.append(message)


@pytest.fixture
def listener(context):
    """A session subscribed to every topic on the context's router."""
    sink = RecordingSink()

    async def setup():
        await context.router.attach("listener", sink)
        await context.router.subscribe("listener", "#", qos=1)

    asyncio.run_coroutine_threadsafe(setup(), context.loop).result(2)
    return sink


def test_health(client):
    rv = client.get("/health")
    assert rv.status_code == 200
    assert rv.get_json() == {
        "ok": True,
        "transportPath": "/mqtt",
        "transportPort": settings.WS_PORT,
        "topics": {"status": "devices/status", "command": "devices/command"},
    }


def test_plain_http_on_transport_path(client):
    rv = client.get("/mqtt")
    assert rv.status_code == 426
    assert b"WebSocket" in rv.data


def test_register_and_list_devices(client):
    rv = client.post("/devices", json={"username": "alice", "employeeId": "E-1"})
    assert rv.status_code == 201
    body = rv.get_json()
    assert body["ok"] is True
    assert body["item"]["username"] == "alice"
    assert body["item"]["employeeId"] == "E-1"
    assert body["redirect"] == "/menu"

    client.post("/devices", json={"username": "bob", "empId": "E-2"})
    items = client.get("/devices").get_json()["items"]
    assert [i["employeeId"] for i in items] == ["E-1", "E-2"]


@pytest.mark.parametrize("payload", [
    {},
    {"username": "alice"},
    {"employeeId": "E-1"},
    {"username": "", "employeeId": "E-1"},
])
def test_register_missing_fields(client, payload):
    rv = client.post("/devices", json=payload)
    assert rv.status_code == 400
    assert rv.get_json()["ok"] is False


def test_register_non_json_body(client):
    rv = client.post("/devices", data="username=alice", content_type="text/plain")
    assert rv.status_code == 400


def test_duplicate_employee_id_conflicts(client):
    first = client.post("/devices", json={"username": "alice", "employeeId": "E-1"}).get_json()
    rv = client.post("/devices", json={"username": "carol", "employeeId": "E-1"})
    assert rv.status_code == 409
    body = rv.get_json()
    assert body["ok"] is False
    assert body["existing"] == first["item"]


def test_username_case_conflicts(client):
    client.post("/devices", json={"username": "Alice", "employeeId": "E-1"})
    rv = client.post("/devices", json={"username": "alice", "employeeId": "E-2"})
    assert rv.status_code == 409
    assert rv.get_json()["existing"]["username"] == "Alice"


def test_concurrent_registration_one_wins(app):
    workers = 8
    barrier = threading.Barrier(workers)
    codes = []
    lock = threading.Lock()

    def attempt(i):
        http = app.test_client()
        barrier.wait()
        rv = http.post("/devices", json={"username": f"user{i}", "employeeId": "E-9"})
        with lock:
            codes.append(rv.status_code)

    threads = [threading.Thread(target=attempt, args=(i,)) for i in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(codes) == [201] + [409] * (workers - 1)


def test_order_is_published_to_status_topic(client, context, listener):
    rv = client.post("/orders", json={
        "name": "Alice", "employeeId": "E-1", "orderList": [{"item": "tea", "qty": 2}],
    })
    assert rv.status_code == 200
    assert rv.get_json() == {"ok": True}

    [msg] = listener.received
    assert msg.topic == "devices/status"
    assert msg.qos == 1 and msg.retain is False
    envelope = json.loads(msg.payload)
    assert envelope["name"] == "Alice"
    assert envelope["employeeId"] == "E-1"
    assert envelope["orderList"] == [{"item": "tea", "qty": 2}]
    assert isinstance(envelope["ts"], int)
    assert context.events.history[-1].kind == EventKind.PUBLISHED


def test_order_accepts_legacy_field_names(client, listener):
    rv = client.post("/orders", json={"name": "Bob", "emp_id": "E-2", "order_list": []})
    assert rv.status_code == 200
    assert json.loads(listener.received[0].payload)["employeeId"] == "E-2"


@pytest.mark.parametrize("payload", [
    {"name": "Alice", "employeeId": "E-1"},
    {"name": "Alice", "employeeId": "E-1", "orderList": "tea"},
    {"employeeId": "E-1", "orderList": []},
    {"name": "Alice", "orderList": []},
])
def test_invalid_order_is_rejected_without_publish(client, context, listener, payload):
    rv = client.post("/orders", json=payload)
    assert rv.status_code == 400
    assert listener.received == []
    assert not any(e.kind == EventKind.PUBLISHED for e in context.events.history)


def test_command_is_published_with_timestamp(client, listener):
    rv = client.post("/command", json={"action": "reboot", "target": "dev-7"})
    assert rv.status_code == 200

    [msg] = listener.received
    assert msg.topic == "devices/command"
    envelope = json.loads(msg.payload)
    assert envelope["action"] == "reboot"
    assert envelope["target"] == "dev-7"
    assert "ts" in envelope


def test_command_without_body(client, listener):
    assert client.post("/command").status_code == 200
    assert list(json.loads(listener.received[0].payload)) == ["ts"]


def test_publish_failure_maps_to_500(client, context, monkeypatch):
    def failing(topic, payload):
        raise DeliveryFailure("broker unavailable")

    monkeypatch.setattr(context, "publish", failing)
    rv = client.post("/orders", json={"name": "A", "employeeId": "E-1", "orderList": []})
    assert rv.status_code == 500
    assert rv.get_json() == {"ok": False, "error": "MQTT publish failed"}

    rv = client.post("/command", json={})
    assert rv.status_code == 500
    assert rv.get_json()["error"] == "Command publish failed"


def test_publish_timeout_maps_to_500(client, context, monkeypatch):
    async def stuck(message):
        await asyncio.sleep(5)

    context.publish_timeout = 0.1
    monkeypatch.setattr(context.router, "publish", stuck)
    rv = client.post("/command", json={"action": "noop"})
    assert rv.status_code == 500


def test_live_event_feed(app, context):
    context.events.emit(EventKind.CONNECTED, "s1", "dev-1")

    socketio = app.extensions["socketio"]
    ws = socketio.test_client(app, namespace="/events")
    received = ws.get_received("/events")
    history = [m for m in received if m["name"] == "history"]
    assert history and history[0]["args"][0][0]["clientId"] == "dev-1"

    context.events.emit(EventKind.SUBSCRIBED, "s1", "dev-1", topics=["devices/#"])
    received = ws.get_received("/events")
    assert any(m["name"] == "broker_event" and m["args"][0]["kind"] == "subscribed"
               for m in received)
    ws.disconnect(namespace="/events")


def test_cross_origin_requests_are_allowed(client):
    origin = "http://kiosk.example"
    rv = client.get("/devices", headers={"Origin": origin})
    assert rv.headers["Access-Control-Allow-Origin"] in ("*", origin)

    rv = client.options("/orders", headers={
        "Origin": origin,
        "Access-Control-Request-Method": "POST",
        "Access-Control-Request-Headers": "Content-Type",
    })
    assert rv.headers["Access-Control-Allow-Origin"] in ("*", origin)
    assert "POST" in rv.headers["Access-Control-Allow-Methods"]


def test_closed_app_stops_forwarding_events(context):
    before = context.events.listeners
    apps = [create_app(context) for _ in range(3)]
    assert len(context.events.listeners) == len(before) + 3

    for app in apps:
        close_app(app)
        close_app(app)
    assert context.events.listeners == before
