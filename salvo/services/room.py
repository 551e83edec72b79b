import asyncio
import json
import os
import sys
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from threading import Lock, RLock
from typing import Callable, Dict, Optional

from salvo.schemas import (
    RECENT_ACTION_LIMIT,
    ActionRequest,
    ActionResponse,
    JoinRequest,
    JoinResponse,
    RoomCreateResponse,
    RoomRecord,
    SessionRecord,
    SetNameAction,
    StatePayload,
)
from salvo.services.game_state import GameState, apply_action, from_payload, initial_state, to_payload, validate_action
from salvo.services.persistence import RoomRepository, default_repository
from salvo.utils.audit import audit_write
from salvo.utils.roomcode import format_room_code, generate_room_code, is_valid_room_code, normalize_room_code

# Debug flag: enable when running tests or when env var SALVO_DEBUG is set
DEBUG = bool(os.getenv('SALVO_DEBUG')) or ('unittest' in sys.modules) or ('PYTEST_CURRENT_TEST' in os.environ)


def _dbg(*args, **kwargs):
    if DEBUG:
        print(*args, **kwargs)


def _env_seconds(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except ValueError:
        return default


class RoomError(Exception):
    status_code = 400
    code = "ROOM_ERROR"


class RoomNotFound(RoomError):
    status_code = 404
    code = "ROOM_NOT_FOUND"


class RoomFull(RoomError):
    status_code = 409
    code = "ROOM_FULL"


class InvalidRoomCode(RoomError):
    status_code = 400
    code = "INVALID_ROOM_CODE"


@dataclass
class Subscriber:
    """One live stream (SSE or WebSocket) attached to a room."""
    queue: asyncio.Queue
    loop: asyncio.AbstractEventLoop
    token: Optional[str] = None
    alive: bool = True

    def offer(self, data: str) -> None:
        # called from worker threads; the queue belongs to the subscriber's loop
        try:
            self.loop.call_soon_threadsafe(self._put, data)
        except RuntimeError:
            # event loop closed
            self.alive = False

    def _put(self, data: str) -> None:
        try:
            self.queue.put_nowait(data)
        except asyncio.QueueFull:
            self.alive = False

    def close(self) -> None:
        """End the stream: the owner reads a None sentinel from its queue."""
        self.alive = False
        try:
            self.loop.call_soon_threadsafe(self._put_sentinel)
        except RuntimeError:
            # loop already closed, nobody is reading
            _dbg("subscriber loop closed before sentinel")

    def _put_sentinel(self) -> None:
        while self.queue.full():
            self.queue.get_nowait()
        self.queue.put_nowait(None)


@dataclass
class SessionSlot:
    token: str
    last_seen: float


@dataclass
class Room:
    code: str
    state: GameState = field(default_factory=initial_state)
    slots: Dict[int, SessionSlot] = field(default_factory=dict)
    recent_action_ids: deque = field(default_factory=lambda: deque(maxlen=RECENT_ACTION_LIMIT))
    updated_at: float = field(default_factory=time.time)
    lock: RLock = field(default_factory=RLock, repr=False)
    subscribers: list[Subscriber] = field(default_factory=list, repr=False)

    def player_for_token(self, token: Optional[str]) -> Optional[int]:
        if not token:
            return None
        for player, slot in self.slots.items():
            if slot.token == token:
                return player
        return None

    def expire_sessions(self, now: float, timeout: float) -> list[int]:
        expired = [p for p, slot in self.slots.items() if now - slot.last_seen > timeout]
        for p in expired:
            del self.slots[p]
        return expired

    def build_message(self) -> dict:
        return {
            "type": "state",
            "room": self.code,
            "state": to_payload(self.state).model_dump(mode="json"),
        }

    def _broadcast_state(self) -> None:
        if not self.subscribers:
            return
        data = json.dumps(self.build_message(), ensure_ascii=False)
        for sub in list(self.subscribers):
            if sub.alive:
                sub.offer(data)
            if not sub.alive:
                _dbg(f"room {self.code}: dropping dead subscriber")
                self.subscribers.remove(sub)

    def to_record(self) -> RoomRecord:
        return RoomRecord(
            code=self.code,
            state=to_payload(self.state),
            sessions={p: SessionRecord(token=s.token, last_seen=s.last_seen) for p, s in self.slots.items()},
            recent_action_ids=list(self.recent_action_ids),
            updated_at=self.updated_at,
        )

    @staticmethod
    def from_record(record: RoomRecord) -> 'Room':
        return Room(
            code=record.code,
            state=from_payload(record.state),
            slots={p: SessionSlot(token=s.token, last_seen=s.last_seen) for p, s in record.sessions.items()},
            recent_action_ids=deque(record.recent_action_ids, maxlen=RECENT_ACTION_LIMIT),
            updated_at=record.updated_at,
        )


class RoomStore:
    def __init__(self, repository: Optional[RoomRepository] = None, clock: Callable[[], float] = time.time) -> None:
        self._rooms: Dict[str, Room] = {}
        self._lock = Lock()
        self.repository = repository if repository is not None else default_repository()
        self.clock = clock
        self.session_timeout = _env_seconds("SALVO_SESSION_TIMEOUT", 600)
        self.room_idle_ttl = _env_seconds("SALVO_ROOM_IDLE_TTL", 86400)
        self.finished_ttl = _env_seconds("SALVO_FINISHED_TTL", 3600)

    # ---------- lookup ----------

    @staticmethod
    def _code(raw: str) -> str:
        code = normalize_room_code(raw)
        if not is_valid_room_code(code):
            raise InvalidRoomCode(raw)
        return code

    def _get(self, raw: str, create: bool = False) -> Room:
        code = self._code(raw)
        with self._lock:
            room = self._rooms.get(code)
            if room is not None:
                return room
            record = self.repository.load(code)
            if record is not None:
                room = Room.from_record(record)
                audit_write(code, {"event": "room_restored", "phase": room.state.phase})
                _dbg(f"room {code}: restored from repository")
            elif create:
                room = Room(code=code, updated_at=self.clock())
                self.repository.save(room.to_record())
                audit_write(code, {"event": "room_created"})
            else:
                raise RoomNotFound(code)
            self._rooms[code] = room
            return room

    def create_room(self) -> RoomCreateResponse:
        while True:
            code = generate_room_code()
            with self._lock:
                taken = code in self._rooms or self.repository.load(code) is not None
            if not taken:
                break
        room = self._get(code, create=True)
        return RoomCreateResponse(room_code=room.code, display_code=format_room_code(room.code))

    # ---------- sessions ----------

    def join(self, raw: str, req: JoinRequest) -> JoinResponse:
        room = self._get(raw, create=True)
        with room.lock:
            now = self.clock()
            for p in room.expire_sessions(now, self.session_timeout):
                audit_write(room.code, {"event": "session_expired", "player": p})

            if req.role == "spectator":
                return JoinResponse(room_code=room.code, role="spectator", state=to_payload(room.state))

            player = room.player_for_token(req.session_token)
            if player is not None:
                room.slots[player].last_seen = now
                token = room.slots[player].token
            else:
                free = [p for p in (1, 2) if p not in room.slots]
                if not free:
                    audit_write(room.code, {"event": "join_rejected", "reason": RoomFull.code})
                    raise RoomFull(room.code)
                player = free[0]
                token = str(uuid.uuid4())
                room.slots[player] = SessionSlot(token=token, last_seen=now)

            if req.display_name:
                named = SetNameAction(player=player, name=req.display_name)
                room.state = apply_action(room.state, named)
            room.updated_at = now
            self.repository.save(room.to_record())
            audit_write(room.code, {"event": "join", "player": player})
            room._broadcast_state()
            return JoinResponse(
                room_code=room.code,
                role="player",
                player=player,
                session_token=token,
                state=to_payload(room.state),
            )

    # ---------- actions ----------

    def apply(self, raw: str, req: ActionRequest) -> ActionResponse:
        room = self._get(raw)
        action = req.action
        with room.lock:
            slot_player = room.player_for_token(req.session_token)
            reason: Optional[str] = None
            if slot_player is None:
                reason = "INVALID_SESSION"
            elif slot_player != action.player:
                reason = "INVALID_PLAYER"
            if reason:
                audit_write(room.code, {"event": "action_rejected", "type": action.type, "player": action.player, "reason": reason})
                return ActionResponse(accepted=False, reason=reason, state=to_payload(room.state))

            now = self.clock()
            room.slots[slot_player].last_seen = now

            cid = req.client_action_id
            if cid and cid in room.recent_action_ids:
                audit_write(room.code, {"event": "action_duplicate", "type": action.type, "player": action.player, "client_action_id": cid})
                return ActionResponse(accepted=True, duplicate=True, state=to_payload(room.state))

            reason = validate_action(room.state, action)
            if reason:
                _dbg(f"room {room.code}: {action.type} by P{action.player} rejected: {reason}")
                audit_write(room.code, {"event": "action_rejected", "type": action.type, "player": action.player, "reason": reason})
                return ActionResponse(accepted=False, reason=reason, state=to_payload(room.state))

            room.state = apply_action(room.state, action)
            if cid:
                room.recent_action_ids.append(cid)
            room.updated_at = now
            self.repository.save(room.to_record())
            audit_write(room.code, {"event": "action", "type": action.type, "player": action.player, "phase": room.state.phase})
            room._broadcast_state()
            return ActionResponse(accepted=True, state=to_payload(room.state))

    def state(self, raw: str) -> StatePayload:
        room = self._get(raw)
        with room.lock:
            return to_payload(room.state)

    # --- SSE / WebSocket subscribe and broadcast ---

    def snapshot(self, raw: str) -> dict:
        """ first frame for a new stream """
        room = self._get(raw)
        with room.lock:
            return room.build_message()

    def subscribe(
        self,
        raw: str,
        token: Optional[str] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> Subscriber:
        """ start stream session """
        room = self._get(raw)
        sub = Subscriber(queue=asyncio.Queue(maxsize=100), loop=loop or asyncio.get_running_loop(), token=token)
        with room.lock:
            room.subscribers.append(sub)
        return sub

    def unsubscribe(self, raw: str, sub: Subscriber) -> None:
        """ end of stream session """
        sub.alive = False
        with self._lock:
            room = self._rooms.get(normalize_room_code(raw))
        if room is None:
            return
        with room.lock:
            if sub in room.subscribers:
                room.subscribers.remove(sub)

    # ---------- housekeeping ----------

    def _expired(self, phase: str, updated_at: float, now: float) -> bool:
        idle = now - updated_at
        if phase == "GAME_OVER" and idle > self.finished_ttl:
            return True
        return idle > self.room_idle_ttl

    def reap(self, now: Optional[float] = None) -> list[str]:
        """Forget rooms that finished or went idle; returns their codes."""
        now = self.clock() if now is None else now
        reaped: list[str] = []
        with self._lock:
            codes = set(self._rooms.keys()) | set(self.repository.codes())
            for code in sorted(codes):
                room = self._rooms.get(code)
                if room is not None:
                    with room.lock:
                        expired = self._expired(room.state.phase, room.updated_at, now)
                else:
                    record = self.repository.load(code)
                    if record is None:
                        continue
                    expired = self._expired(record.state.phase, record.updated_at, now)
                if not expired:
                    continue
                if room is not None:
                    with room.lock:
                        for sub in room.subscribers:
                            sub.close()
                        room.subscribers.clear()
                self._rooms.pop(code, None)
                self.repository.delete(code)
                audit_write(code, {"event": "room_reaped"})
                reaped.append(code)
        if reaped:
            _dbg(f"reaped rooms: {reaped}")
        return reaped


store = RoomStore()
