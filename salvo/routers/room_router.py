import asyncio
import json
from typing import Optional

from fastapi import APIRouter, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from salvo.schemas import (
    ActionRequest,
    ActionResponse,
    ComputerRequest,
    JoinRequest,
    JoinResponse,
    RoomCreateResponse,
    StatePayload,
)
from salvo.services.computer import ComputerPlayer
from salvo.services.room import RoomError, RoomNotFound, Subscriber, _dbg, store
from salvo.utils.roomcode import normalize_room_code


router = APIRouter()

# running computer opponents by room code
_computers: dict[str, ComputerPlayer] = {}
_computer_tasks: set[asyncio.Task] = set()


def _http_error(e: RoomError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.code)


@router.post("/", response_model=RoomCreateResponse)
def create_room() -> RoomCreateResponse:
    return store.create_room()


@router.post("/{code}/join", response_model=JoinResponse)
def join_room(code: str, req: JoinRequest) -> JoinResponse:
    try:
        return store.join(code, req)
    except RoomError as e:
        raise _http_error(e)


@router.post("/{code}/actions", response_model=ActionResponse)
def post_action(code: str, req: ActionRequest) -> ActionResponse:
    try:
        return store.apply(code, req)
    except RoomError as e:
        raise _http_error(e)


@router.get("/{code}/state", response_model=StatePayload)
def get_state(code: str) -> StatePayload:
    try:
        return store.state(code)
    except RoomError as e:
        raise _http_error(e)


@router.get("/{code}/events")
async def stream_events(code: str, token: Optional[str] = None):
    """Server-sent events; the first frame is the current snapshot."""
    try:
        sub = store.subscribe(code, token)
        first = store.snapshot(code)
    except RoomError as e:
        raise _http_error(e)

    async def gen():
        try:
            yield f"data: {json.dumps(first, ensure_ascii=False)}\n\n"
            while sub.alive:
                data = await sub.queue.get()
                if data is None:
                    break
                yield f"data: {data}\n\n"
        finally:
            store.unsubscribe(code, sub)

    return StreamingResponse(gen(), media_type="text/event-stream")


# ---------- WebSocket ----------

async def _error(ws: WebSocket, code: str, message: Optional[str] = None) -> None:
    frame = {"type": "error", "code": code}
    if message:
        frame["message"] = message
    await ws.send_json(frame)


async def _pump(ws: WebSocket, sub: Subscriber) -> None:
    try:
        while True:
            data = await sub.queue.get()
            if data is None:
                # room was reaped
                await _error(ws, RoomNotFound.code)
                break
            await ws.send_text(data)
    except (WebSocketDisconnect, RuntimeError, OSError) as e:
        _dbg(f"websocket send failed: {e!r}")
        sub.alive = False


@router.websocket("/{code}/ws")
async def room_socket(websocket: WebSocket, code: str) -> None:
    await websocket.accept()
    sub: Optional[Subscriber] = None
    pump: Optional[asyncio.Task] = None
    token: Optional[str] = None
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except ValueError:
                await _error(websocket, "BAD_MESSAGE", "invalid json")
                continue
            kind = message.get("type") if isinstance(message, dict) else None

            if kind == "ping":
                await websocket.send_json({"type": "pong"})

            elif kind == "join":
                try:
                    req = JoinRequest.model_validate({k: v for k, v in message.items() if k != "type"})
                    res = await run_in_threadpool(store.join, code, req)
                except ValidationError as e:
                    await _error(websocket, "BAD_MESSAGE", str(e))
                    continue
                except RoomError as e:
                    await _error(websocket, e.code)
                    continue
                token = res.session_token or token
                await websocket.send_json({"type": "joined", **res.model_dump(mode="json")})
                if sub is None:
                    sub = store.subscribe(res.room_code, token)
                    pump = asyncio.create_task(_pump(websocket, sub))

            elif kind == "action":
                cid = message.get("client_action_id")
                try:
                    req = ActionRequest.model_validate({
                        "session_token": message.get("session_token") or token or "",
                        "action": message.get("action"),
                        "client_action_id": cid,
                    })
                    res = await run_in_threadpool(store.apply, code, req)
                except ValidationError as e:
                    await _error(websocket, "BAD_MESSAGE", str(e))
                    continue
                except RoomError as e:
                    await _error(websocket, e.code)
                    continue
                await websocket.send_json({"type": "ack", "client_action_id": cid, **res.model_dump(mode="json")})

            else:
                await _error(websocket, "BAD_MESSAGE", f"unknown message type: {kind}")
    except WebSocketDisconnect:
        _dbg(f"room {code}: websocket closed")
    finally:
        if pump is not None:
            pump.cancel()
        if sub is not None:
            store.unsubscribe(code, sub)


# ---------- computer opponent ----------

@router.post("/{code}/computer", response_model=JoinResponse)
async def add_computer(code: str, req: ComputerRequest) -> JoinResponse:
    if normalize_room_code(code) in _computers:
        raise HTTPException(status_code=409, detail="COMPUTER_RUNNING")
    cpu = ComputerPlayer(store, code, difficulty=req.difficulty, seed=req.rand_seed, display_name=req.display_name)
    try:
        res = cpu.join()
    except RoomError as e:
        raise _http_error(e)
    _computers[res.room_code] = cpu
    task = asyncio.create_task(cpu.run())
    _computer_tasks.add(task)
    task.add_done_callback(_forget_computer(res.room_code, cpu))
    return res


def _forget_computer(room_code: str, cpu: ComputerPlayer):
    def done(task: asyncio.Task) -> None:
        _computer_tasks.discard(task)
        if _computers.get(room_code) is cpu:
            del _computers[room_code]
    return done


def stop_computers() -> None:
    for cpu in list(_computers.values()):
        cpu.stop()
    _computers.clear()
