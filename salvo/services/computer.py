"""Server-side computer opponent that plays a room like any other client."""
import asyncio
import random
import uuid
from typing import TYPE_CHECKING, Optional

from salvo.schemas import (
    Action,
    ActionRequest,
    ActionResponse,
    Difficulty,
    DonePlacementAction,
    FireAction,
    JoinRequest,
    JoinResponse,
    PlaceAction,
    StatePayload,
)
from salvo.services.ai import AIMemory, choose_next_shot, empty_memory, update_memory
from salvo.services.engine import ShotResult, orientation_of, random_fleet
from salvo.services.game_state import from_payload, last_fire_entry, side_of, target_of, turn_phase
from salvo.services.room import RoomNotFound, _dbg

if TYPE_CHECKING:
    from salvo.services.room import RoomStore


class ComputerPlayer:
    def __init__(
        self,
        store: 'RoomStore',
        room_code: str,
        difficulty: Difficulty = "medium",
        seed: Optional[int] = None,
        display_name: Optional[str] = None,
    ):
        self.store = store
        self.room_code = room_code
        self.difficulty: Difficulty = difficulty
        self.name = display_name or f"Computer ({difficulty})"
        self.rng = random.Random(seed)
        self.memory: AIMemory = empty_memory(self.rng)
        self.player: Optional[int] = None
        self.token: Optional[str] = None
        self._stopped = False
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self._sub = None

    def join(self) -> JoinResponse:
        res = self.store.join(self.room_code, JoinRequest(display_name=self.name))
        self.room_code = res.room_code
        self.player = res.player
        self.token = res.session_token
        return res

    def _act(self, action: Action) -> ActionResponse:
        req = ActionRequest(session_token=self.token, action=action, client_action_id=uuid.uuid4().hex)
        return self.store.apply(self.room_code, req)

    def on_state(self, payload: Optional[StatePayload] = None) -> list[ActionResponse]:
        """React to the room's current state.

        *payload* only signals that something changed; the decision is always
        made on a fresh read so stale broadcasts cannot cause repeated moves.
        """
        if self.player is None:
            return []
        current = self.store.state(self.room_code)
        if current.phase == "BOTH_PLACE":
            return self._place_fleet(current)
        if current.phase == turn_phase(self.player):
            return [self._fire(current)]
        return []

    def _place_fleet(self, payload: StatePayload) -> list[ActionResponse]:
        ready = payload.p1_ready if self.player == 1 else payload.p2_ready
        if ready:
            return []
        # new game, or the room was reset
        self.memory = empty_memory(self.rng)
        placed = side_of(from_payload(payload), self.player).fleet
        out: list[ActionResponse] = []
        for ship in random_fleet(self.rng, placed)[len(placed):]:
            res = self._act(PlaceAction(
                player=self.player,
                start=ship.coords[0],
                size=ship.size,
                orientation=orientation_of(ship),
            ))
            out.append(res)
            if not res.accepted:
                _dbg(f"computer P{self.player}: placement rejected: {res.reason}")
                return out
        out.append(self._act(DonePlacementAction(player=self.player)))
        return out

    def _fire(self, payload: StatePayload) -> ActionResponse:
        shots = frozenset(side_of(from_payload(payload), self.player).shots)
        target = choose_next_shot(shots, self.memory, self.difficulty, self.rng)
        res = self._act(FireAction(player=self.player, target=target))
        if not res.accepted:
            _dbg(f"computer P{self.player}: shot {target.key} rejected: {res.reason}")
            return res
        entry = last_fire_entry(res.state, self.player)
        if entry is not None:
            result = ShotResult(hit=entry["hit"], sunk=entry.get("sunk"), win=entry.get("win", False))
            shots_after = frozenset(side_of(from_payload(res.state), self.player).shots)
            self.memory = update_memory(self.memory, self.difficulty, target_of(entry), result, shots_after)
        return res

    # ---------- async driver ----------

    def stop(self) -> None:
        self._stopped = True
        if self._sub is not None:
            self._sub.close()

    async def run(self) -> None:
        self.loop = asyncio.get_running_loop()
        if self.token is None:
            self.join()
        self._sub = self.store.subscribe(self.room_code, self.token, self.loop)
        try:
            self.on_state()
            while not self._stopped:
                data = await self._sub.queue.get()
                if data is None:
                    break
                # collapse a burst of broadcasts into one look at the board
                while not self._sub.queue.empty():
                    if self._sub.queue.get_nowait() is None:
                        self._stopped = True
                if self._stopped:
                    break
                self.on_state()
        except RoomNotFound:
            _dbg(f"computer: room {self.room_code} is gone")
        finally:
            self.store.unsubscribe(self.room_code, self._sub)
