from typing import Annotated, Dict, List, Optional, Literal, Union
from pydantic import BaseModel, Field

BOARD_SIZE: int = 10
# placement order; two 3s and two 2s
FLEET_SIZES: tuple[int, ...] = (5, 4, 3, 3, 2, 2)
LOG_TAIL = 50
RECENT_ACTION_LIMIT = 100

Orientation = Literal["H", "V"]
Phase = Literal["BOTH_PLACE", "P1_TURN", "P2_TURN", "GAME_OVER"]
Difficulty = Literal["easy", "medium", "hard"]
Role = Literal["player", "spectator"]


class Coord(BaseModel, frozen=True):

    r: int
    c: int

    def __hash__(self):
        return hash((self.r, self.c))

    def __eq__(self, other):
        if isinstance(other, Coord):
            return self.r == other.r and self.c == other.c
        return False

    def __lt__(self, other):
        if not isinstance(other, Coord):
            return NotImplemented
        return (self.r, self.c) < (other.r, other.c)

    @property
    def key(self) -> str:
        return f"{self.r},{self.c}"

    @staticmethod
    def from_key(key: str) -> 'Coord':
        r, c = key.split(",")
        return Coord(r=int(r), c=int(c))

    @staticmethod
    def new(p1: 'int|tuple[int,int]|Coord', p2: int | None = None) -> 'Coord':
        if isinstance(p1, Coord):
            return Coord(r=p1.r, c=p1.c)
        elif isinstance(p1, (tuple, list)) and len(p1) == 2:
            return Coord(r=p1[0], c=p1[1])
        elif isinstance(p1, int) and isinstance(p2, int):
            return Coord(r=p1, c=p2)
        else:
            raise TypeError(f"invalid parameters to Coord.new {p1}, {p2}")

    def in_bounds(self, size: int = BOARD_SIZE) -> bool:
        return 0 <= self.r < size and 0 <= self.c < size

    def neighbors(self):
        """orthogonal neighbours, board edges not filtered"""
        for dr, dc in ((-1, 0), (1, 0), (0, -1), (0, 1)):
            yield Coord(r=self.r + dr, c=self.c + dc)


# === Actions ===
# orientation/size/target stay loosely typed so that bad values reach the
# validator and come back as a reason code instead of a 422.

class PlaceAction(BaseModel):
    type: Literal["place"] = "place"
    player: int
    start: Coord
    size: int
    orientation: Optional[str] = None  # None: use the player's stored preference


class DonePlacementAction(BaseModel):
    type: Literal["donePlacement"] = "donePlacement"
    player: int


class FireAction(BaseModel):
    type: Literal["fire"] = "fire"
    player: int
    target: Coord


class UndoAction(BaseModel):
    type: Literal["undo"] = "undo"
    player: int


class SetOrientationAction(BaseModel):
    type: Literal["setOrientation"] = "setOrientation"
    player: int
    orientation: str


class SetNameAction(BaseModel):
    type: Literal["setName"] = "setName"
    player: int
    name: str = Field(max_length=40)


class ResetAction(BaseModel):
    type: Literal["reset"] = "reset"
    player: int


Action = Annotated[
    Union[
        PlaceAction,
        DonePlacementAction,
        FireAction,
        UndoAction,
        SetOrientationAction,
        SetNameAction,
        ResetAction,
    ],
    Field(discriminator="type"),
]


# === Snapshot (wire form of the game state) ===

class ShipPayload(BaseModel):
    id: str
    size: int
    coords: List[Coord]
    hits: List[str] = []


class SidePayload(BaseModel):
    fleet: List[ShipPayload] = []
    shots: List[str] = []


class StatePayload(BaseModel):
    phase: Phase = "BOTH_PLACE"
    p1: SidePayload = SidePayload()
    p2: SidePayload = SidePayload()
    p1_place_index: int = 0
    p2_place_index: int = 0
    p1_ready: bool = False
    p2_ready: bool = False
    p1_orientation: Orientation = "H"
    p2_orientation: Orientation = "H"
    winner: Optional[int] = None
    names: Dict[int, str] = {}
    log: List[dict] = []


# === Rooms ===

class RoomCreateResponse(BaseModel):
    room_code: str
    display_code: str


class JoinRequest(BaseModel):
    session_token: Optional[str] = None
    role: Role = "player"
    display_name: Optional[str] = Field(default=None, max_length=40)


class JoinResponse(BaseModel):
    room_code: str
    role: Role
    player: Optional[int] = None
    session_token: Optional[str] = None
    state: StatePayload


class ActionRequest(BaseModel):
    session_token: str
    action: Action
    client_action_id: Optional[str] = None


class ActionResponse(BaseModel):
    accepted: bool
    duplicate: bool = False
    reason: Optional[str] = None
    state: StatePayload


# === AI ===

class ShotResultPayload(BaseModel):
    hit: bool
    sunk: Optional[str] = None
    win: bool = False


class AIMemoryPayload(BaseModel):
    target_queue: List[str] = []
    cluster: List[str] = []
    parity: Literal[0, 1] = 0
    sizes_left: List[int] = list(FLEET_SIZES)


class ShotPlanRequest(BaseModel):
    shots: List[str] = []
    memory: Optional[AIMemoryPayload] = None
    difficulty: Difficulty = "medium"
    rand_seed: Optional[int] = None


class ShotPlanResponse(BaseModel):
    target: Coord


class MemoryUpdateRequest(BaseModel):
    memory: AIMemoryPayload
    difficulty: Difficulty = "medium"
    target: Coord
    result: ShotResultPayload
    shots_after: List[str] = []


class ComputerRequest(BaseModel):
    difficulty: Difficulty = "medium"
    display_name: Optional[str] = None
    rand_seed: Optional[int] = None


# === Persistence ===

class SessionRecord(BaseModel):
    token: str
    last_seen: float


class RoomRecord(BaseModel):
    code: str
    state: StatePayload
    sessions: Dict[int, SessionRecord] = {}
    recent_action_ids: List[str] = []
    updated_at: float = 0.0
