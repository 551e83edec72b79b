import asyncio
import time

import pytest
from fastapi.testclient import TestClient

from salvo.main import app
from salvo.routers import room_router
from salvo.schemas import FLEET_SIZES
from salvo.services.persistence import MemoryRepository
from salvo.services.room import RoomStore, Subscriber


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr(room_router, "store", RoomStore(MemoryRepository()))
    return TestClient(app)


def new_room(client):
    res = client.post("/v1/rooms/")
    assert res.status_code == 200
    return res.json()["room_code"]


def place_body(token, player, row, size, cid=None):
    return {
        "session_token": token,
        "client_action_id": cid,
        "action": {"type": "place", "player": player, "start": {"r": row, "c": 0}, "size": size, "orientation": "H"},
    }


def test_healthz(client):
    assert client.get("/healthz").json() == {"status": "ok"}


def test_create_join_and_state(client):
    code = new_room(client)
    a = client.post(f"/v1/rooms/{code}/join", json={"display_name": "Alice"}).json()
    b = client.post(f"/v1/rooms/{code}/join", json={}).json()
    assert (a["player"], b["player"]) == (1, 2)
    full = client.post(f"/v1/rooms/{code}/join", json={})
    assert full.status_code == 409
    watcher = client.post(f"/v1/rooms/{code}/join", json={"role": "spectator"}).json()
    assert watcher["session_token"] is None
    state = client.get(f"/v1/rooms/{code}/state").json()
    assert state["phase"] == "BOTH_PLACE"
    assert state["names"] == {"1": "Alice"}


def test_unknown_and_invalid_room(client):
    assert client.get("/v1/rooms/QQQQQQ/state").status_code == 404
    assert client.get("/v1/rooms/QQQQQQ/events").status_code == 404
    assert client.post("/v1/rooms/x/join", json={}).status_code == 400


def test_actions_over_http(client):
    code = new_room(client)
    token = client.post(f"/v1/rooms/{code}/join", json={}).json()["session_token"]
    res = client.post(f"/v1/rooms/{code}/actions", json=place_body(token, 1, 0, 5, cid="c1")).json()
    assert res["accepted"] is True
    assert res["state"]["p1_place_index"] == 1
    dup = client.post(f"/v1/rooms/{code}/actions", json=place_body(token, 1, 0, 5, cid="c1")).json()
    assert dup["duplicate"] is True
    bad = client.post(f"/v1/rooms/{code}/actions", json=place_body(token, 1, 1, 5)).json()
    assert bad["accepted"] is False and bad["reason"] == "WRONG_SHIP_SIZE"
    wrong = client.post(f"/v1/rooms/{code}/actions", json=place_body(token, 2, 1, 5)).json()
    assert wrong["reason"] == "INVALID_PLAYER"
    unknown = client.post(f"/v1/rooms/{code}/actions", json={"session_token": token, "action": {"type": "teleport", "player": 1}})
    assert unknown.status_code == 422


def test_websocket_protocol(client):
    code = new_room(client)
    with client.websocket_connect(f"/v1/rooms/{code}/ws") as ws:
        ws.send_json({"type": "ping"})
        assert ws.receive_json() == {"type": "pong"}

        ws.send_text("not json")
        assert ws.receive_json()["code"] == "BAD_MESSAGE"

        ws.send_json({"type": "join", "display_name": "Alice"})
        joined = ws.receive_json()
        assert joined["type"] == "joined"
        assert joined["player"] == 1

        ws.send_json({"type": "action", "client_action_id": "w1",
                      "action": {"type": "place", "player": 1, "start": {"r": 0, "c": 0}, "size": FLEET_SIZES[0]}})
        frames = [ws.receive_json(), ws.receive_json()]
        by_type = {f["type"]: f for f in frames}
        assert set(by_type) == {"ack", "state"}
        assert by_type["ack"]["accepted"] is True
        assert by_type["ack"]["client_action_id"] == "w1"
        assert by_type["state"]["state"]["p1_place_index"] == 1

        ws.send_json({"type": "action", "action": {"type": "fire", "player": 1, "target": {"r": 0, "c": 0}}})
        ack = ws.receive_json()
        assert ack["type"] == "ack"
        assert ack["reason"] == "NOT_READY"

        ws.send_json({"type": "action", "action": {"type": "bogus"}})
        assert ws.receive_json()["code"] == "BAD_MESSAGE"


def test_websocket_room_full(client):
    code = new_room(client)
    client.post(f"/v1/rooms/{code}/join", json={})
    client.post(f"/v1/rooms/{code}/join", json={})
    with client.websocket_connect(f"/v1/rooms/{code}/ws") as ws:
        ws.send_json({"type": "join"})
        assert ws.receive_json() == {"type": "error", "code": "ROOM_FULL"}


def test_computer_opponent(monkeypatch):
    monkeypatch.setattr(room_router, "store", RoomStore(MemoryRepository()))
    with TestClient(app) as client:
        code = new_room(client)
        client.post(f"/v1/rooms/{code}/join", json={})
        res = client.post(f"/v1/rooms/{code}/computer", json={"difficulty": "hard", "rand_seed": 3})
        assert res.status_code == 200
        assert res.json()["player"] == 2
        deadline = time.time() + 5
        state = None
        while time.time() < deadline:
            state = client.get(f"/v1/rooms/{code}/state").json()
            if state["p2_ready"]:
                break
            time.sleep(0.05)
        assert state["p2_ready"] is True
        assert len(state["p2"]["fleet"]) == len(FLEET_SIZES)


def test_ai_endpoints(client):
    every = [f"{r},{c}" for r in range(10) for c in range(10)]
    res = client.post("/v1/ai/shot", json={"shots": every[1:], "difficulty": "easy"}).json()
    assert res["target"] == {"r": 0, "c": 0}
    assert client.post("/v1/ai/shot", json={"shots": every}).status_code == 409

    mem = client.post("/v1/ai/memory", json={
        "memory": {"target_queue": [], "cluster": [], "parity": 0},
        "difficulty": "hard",
        "target": {"r": 3, "c": 3},
        "result": {"hit": True},
        "shots_after": ["3,3"],
    }).json()
    assert mem["cluster"] == ["3,3"]
    assert set(mem["target_queue"]) == {"2,3", "4,3", "3,2", "3,4"}


def test_second_computer_is_rejected_and_released_on_reap(monkeypatch):
    monkeypatch.setattr(room_router, "store", RoomStore(MemoryRepository()))
    with TestClient(app) as client:
        code = new_room(client)
        first = client.post(f"/v1/rooms/{code}/computer", json={"rand_seed": 1})
        assert first.json()["player"] == 1
        again = client.post(f"/v1/rooms/{code}/computer", json={"rand_seed": 2})
        assert again.status_code == 409
        # the free slot is still there for a human
        assert client.post(f"/v1/rooms/{code}/join", json={}).json()["player"] == 2

        assert room_router.store.reap(now=time.time() + 10 ** 6) == [code]
        deadline = time.time() + 5
        while code in room_router._computers and time.time() < deadline:
            time.sleep(0.05)
        assert code not in room_router._computers
        assert client.get(f"/v1/rooms/{code}/state").status_code == 404


class _BrokenSocket:
    def __init__(self):
        self.sent = []

    async def send_text(self, data):
        raise RuntimeError("websocket is closed")

    async def send_json(self, data):
        self.sent.append(data)


def test_pump_stops_quietly_when_send_fails():
    async def scenario():
        sub = Subscriber(queue=asyncio.Queue(maxsize=10), loop=asyncio.get_running_loop())
        sub.queue.put_nowait('{"type": "state"}')
        await asyncio.wait_for(room_router._pump(_BrokenSocket(), sub), timeout=1)
        return sub

    assert asyncio.run(scenario()).alive is False


def test_pump_reports_reaped_room():
    async def scenario():
        ws = _BrokenSocket()
        sub = Subscriber(queue=asyncio.Queue(maxsize=10), loop=asyncio.get_running_loop())
        sub.queue.put_nowait(None)
        await asyncio.wait_for(room_router._pump(ws, sub), timeout=1)
        return ws

    assert asyncio.run(scenario()).sent == [{"type": "error", "code": "ROOM_NOT_FOUND"}]
