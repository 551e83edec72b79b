"""
Authoritative per-room game state and its transitions.

``validate_action`` and ``apply_action`` are separate on purpose: the room
always runs the validator first and only hands legal actions to the reducer.
The reducer does not re-check rules beyond what the engine already does.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Optional

from salvo.schemas import (
    FLEET_SIZES,
    LOG_TAIL,
    Action,
    Coord,
    DonePlacementAction,
    FireAction,
    Phase,
    PlaceAction,
    ResetAction,
    SetNameAction,
    SetOrientationAction,
    ShipPayload,
    SidePayload,
    StatePayload,
    UndoAction,
)
from salvo.services.engine import Ship, Side, can_place, fire, in_bounds, key_of, place_ship


@dataclass(frozen=True)
class GameState:
    phase: Phase = "BOTH_PLACE"
    p1: Side = field(default_factory=Side)
    p2: Side = field(default_factory=Side)
    p1_place_index: int = 0
    p2_place_index: int = 0
    p1_ready: bool = False
    p2_ready: bool = False
    p1_orientation: str = "H"
    p2_orientation: str = "H"
    winner: Optional[int] = None
    names: dict[int, str] = field(default_factory=dict)
    log: tuple[dict, ...] = ()


def initial_state() -> GameState:
    return GameState()


# ---------- per-player accessors ----------

def other(player: int) -> int:
    return 2 if player == 1 else 1


def turn_phase(player: int) -> Phase:
    return "P1_TURN" if player == 1 else "P2_TURN"


def side_of(state: GameState, player: int) -> Side:
    return state.p1 if player == 1 else state.p2


def place_index_of(state: GameState, player: int) -> int:
    return state.p1_place_index if player == 1 else state.p2_place_index


def is_ready(state: GameState, player: int) -> bool:
    return state.p1_ready if player == 1 else state.p2_ready


def next_ship_size(state: GameState, player: int) -> Optional[int]:
    ix = place_index_of(state, player)
    return FLEET_SIZES[ix] if ix < len(FLEET_SIZES) else None


def orientation_for(state: GameState, action: PlaceAction) -> str:
    if action.orientation is not None:
        return action.orientation
    return state.p1_orientation if action.player == 1 else state.p2_orientation


def _with_player(state: GameState, player: int, **changes) -> GameState:
    """replace(state, side=..., place_index=...) for the given player's fields"""
    prefix = "p1" if player == 1 else "p2"
    mapped = {}
    for name, value in changes.items():
        mapped[prefix if name == "side" else f"{prefix}_{name}"] = value
    return replace(state, **mapped)


# ---------- validation ----------

def validate_action(state: GameState, action: Action) -> Optional[str]:
    """Return a reason code when *action* is not allowed, else None."""
    player = action.player
    if state.phase == "GAME_OVER" and not isinstance(action, (ResetAction, SetNameAction)):
        return "GAME_OVER"

    match action:
        case PlaceAction():
            if state.phase != "BOTH_PLACE":
                return "INVALID_PHASE"
            if is_ready(state, player):
                return "ALREADY_READY"
            size = next_ship_size(state, player)
            if size is None:
                return "PLACEMENT_COMPLETE"
            if action.size != size:
                return "WRONG_SHIP_SIZE"
            orientation = orientation_for(state, action)
            if orientation not in ("H", "V"):
                return "INVALID_ORIENTATION"
            if not can_place(side_of(state, player).fleet, action.start, action.size, orientation):
                return "INVALID_PLACEMENT"
            return None
        case DonePlacementAction():
            if state.phase != "BOTH_PLACE":
                return "INVALID_PHASE"
            if is_ready(state, player):
                return "ALREADY_READY"
            if place_index_of(state, player) < len(FLEET_SIZES):
                return "INCOMPLETE_FLEET"
            return None
        case FireAction():
            if not (state.p1_ready and state.p2_ready):
                return "NOT_READY"
            if state.phase != turn_phase(player):
                return "NOT_YOUR_TURN"
            if not in_bounds(action.target):
                return "OUT_OF_BOUNDS"
            if key_of(action.target) in side_of(state, player).shots:
                return "DUPLICATE_SHOT"
            return None
        case UndoAction():
            if state.phase != "BOTH_PLACE":
                return "INVALID_PHASE"
            if is_ready(state, player):
                return "ALREADY_READY"
            if place_index_of(state, player) <= 0:
                return "NOTHING_TO_UNDO"
            return None
        case SetOrientationAction():
            if state.phase != "BOTH_PLACE":
                return "INVALID_PHASE"
            if is_ready(state, player):
                return "ALREADY_READY"
            if action.orientation not in ("H", "V"):
                return "INVALID_ORIENTATION"
            return None
        case SetNameAction() | ResetAction():
            return None
    return "UNKNOWN_ACTION"


# ---------- reducer ----------

def apply_action(state: GameState, action: Action) -> GameState:
    """Next state for a validated action."""
    player = action.player
    match action:
        case PlaceAction():
            side = side_of(state, player)
            fleet = place_ship(side.fleet, action.start, action.size, orientation_for(state, action))
            if fleet is side.fleet:
                return state
            # placements are never logged, the log is visible to the opponent
            return _with_player(
                state, player,
                side=replace(side, fleet=fleet),
                place_index=place_index_of(state, player) + 1,
            )

        case DonePlacementAction():
            nxt = _with_player(state, player, ready=True)
            if nxt.p1_ready and nxt.p2_ready:
                nxt = replace(nxt, phase="P1_TURN")
            entry = {"type": "playerReady", "player": player, "message": f"Player {player} is ready!"}
            return replace(nxt, log=nxt.log + (entry,))

        case FireAction():
            attacker = side_of(state, player)
            defender = side_of(state, other(player))
            shots, fleet, result = fire(attacker.shots, defender.fleet, action.target)
            nxt = _with_player(state, player, side=replace(attacker, shots=shots))
            nxt = _with_player(nxt, other(player), side=replace(defender, fleet=fleet))
            entry = {
                "type": "fire",
                "player": player,
                "target": {"r": action.target.r, "c": action.target.c},
                "hit": result.hit,
                "sunk": result.sunk,
                "win": result.win,
            }
            nxt = replace(nxt, log=nxt.log + (entry,))
            if result.win:
                return replace(nxt, phase="GAME_OVER", winner=player)
            return replace(nxt, phase=turn_phase(other(player)))

        case UndoAction():
            side = side_of(state, player)
            return _with_player(
                state, player,
                side=replace(side, fleet=side.fleet[:-1]),
                place_index=max(0, place_index_of(state, player) - 1),
            )

        case SetOrientationAction():
            return _with_player(state, player, orientation=action.orientation)

        case SetNameAction():
            return replace(state, names={**state.names, player: action.name})

        case ResetAction():
            return initial_state()

    return state


# ---------- snapshot boundary ----------

def _ship_payload(ship: Ship) -> ShipPayload:
    return ShipPayload(id=ship.id, size=ship.size, coords=list(ship.coords), hits=sorted(ship.hits))


def _side_payload(side: Side) -> SidePayload:
    return SidePayload(fleet=[_ship_payload(s) for s in side.fleet], shots=sorted(side.shots))


def _ship_from(payload: ShipPayload) -> Ship:
    return Ship(id=payload.id, size=payload.size, coords=tuple(payload.coords), hits=frozenset(payload.hits))


def _side_from(payload: SidePayload) -> Side:
    return Side(fleet=tuple(_ship_from(s) for s in payload.fleet), shots=frozenset(payload.shots))


def to_payload(state: GameState) -> StatePayload:
    """Wire form: sets become sorted lists, the log is cut to its tail."""
    return StatePayload(
        phase=state.phase,
        p1=_side_payload(state.p1),
        p2=_side_payload(state.p2),
        p1_place_index=state.p1_place_index,
        p2_place_index=state.p2_place_index,
        p1_ready=state.p1_ready,
        p2_ready=state.p2_ready,
        p1_orientation=state.p1_orientation,
        p2_orientation=state.p2_orientation,
        winner=state.winner,
        names=dict(state.names),
        log=list(state.log[-LOG_TAIL:]),
    )


def from_payload(payload: StatePayload) -> GameState:
    return GameState(
        phase=payload.phase,
        p1=_side_from(payload.p1),
        p2=_side_from(payload.p2),
        p1_place_index=payload.p1_place_index,
        p2_place_index=payload.p2_place_index,
        p1_ready=payload.p1_ready,
        p2_ready=payload.p2_ready,
        p1_orientation=payload.p1_orientation,
        p2_orientation=payload.p2_orientation,
        winner=payload.winner,
        names=dict(payload.names),
        log=tuple(payload.log),
    )


def last_fire_entry(payload: StatePayload, player: int) -> Optional[dict]:
    for entry in reversed(payload.log):
        if entry.get("type") == "fire" and entry.get("player") == player:
            return entry
    return None


def target_of(entry: dict) -> Coord:
    return Coord(r=entry["target"]["r"], c=entry["target"]["c"])
