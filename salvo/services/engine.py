"""
Battle engine: placement legality, shot resolution, sink/win detection.

Every function here is pure. Fleets are tuples of frozen ``Ship`` values and
shot/hit sets are frozensets, so a result never aliases mutable state of its
inputs and older snapshots stay valid after a move.
"""
from __future__ import annotations

import random
from dataclasses import dataclass, field, replace
from typing import Optional

from salvo.schemas import BOARD_SIZE, FLEET_SIZES, Coord


@dataclass(frozen=True)
class Ship:
    id: str
    size: int
    coords: tuple[Coord, ...]
    hits: frozenset[str] = frozenset()


@dataclass(frozen=True)
class Side:
    """one player's fleet plus the cells that player has fired at"""
    fleet: tuple[Ship, ...] = ()
    shots: frozenset[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class ShotResult:
    hit: bool
    sunk: Optional[str] = None
    win: bool = False


Fleet = tuple[Ship, ...]


def key_of(coord: Coord) -> str:
    return f"{coord.r},{coord.c}"


def in_bounds(coord: Coord) -> bool:
    return 0 <= coord.r < BOARD_SIZE and 0 <= coord.c < BOARD_SIZE


def coords_for(start: Coord, size: int, orientation: str) -> list[Coord]:
    """H grows along the row (columns increase), V grows down the column."""
    if orientation == "H":
        return [Coord(r=start.r, c=start.c + i) for i in range(size)]
    return [Coord(r=start.r + i, c=start.c) for i in range(size)]


def orientation_of(ship: Ship) -> str:
    if len(ship.coords) < 2 or ship.coords[0].r == ship.coords[1].r:
        return "H"
    return "V"


def fleet_has_at(fleet: Fleet, target: Coord) -> Optional[Ship]:
    k = key_of(target)
    for ship in fleet:
        if any(key_of(c) == k for c in ship.coords):
            return ship
    return None


def can_place(fleet: Fleet, start: Coord, size: int, orientation: str) -> bool:
    coords = coords_for(start, size, orientation)
    if not all(in_bounds(c) for c in coords):
        return False
    for c in coords:
        if fleet_has_at(fleet, c) is not None:
            return False
    return True


def place_ship(fleet: Fleet, start: Coord, size: int, orientation: str) -> Fleet:
    """Append a ship; an illegal placement returns *fleet* itself."""
    if not can_place(fleet, start, size, orientation):
        return fleet
    ship = Ship(
        id=f"S{len(fleet) + 1}",
        size=size,
        coords=tuple(coords_for(start, size, orientation)),
    )
    return tuple(fleet) + (ship,)


def is_sunk(ship: Ship) -> bool:
    return all(key_of(c) in ship.hits for c in ship.coords)


def all_sunk(fleet: Fleet) -> bool:
    return len(fleet) > 0 and all(is_sunk(s) for s in fleet)


def fire(
    attacker_shots: frozenset[str],
    defender_fleet: Fleet,
    target: Coord,
) -> tuple[frozenset[str], Fleet, ShotResult]:
    """Resolve one shot.

    A repeat shot is a no-op: copies of the inputs come back with ``hit``
    describing the board and neither ``sunk`` nor ``win`` set. Callers are
    expected to reject repeats before getting here.
    """
    k = key_of(target)
    if k in attacker_shots:
        return (
            frozenset(attacker_shots),
            tuple(defender_fleet),
            ShotResult(hit=fleet_has_at(defender_fleet, target) is not None),
        )

    shots = frozenset(attacker_shots) | {k}
    hit = False
    sunk: Optional[str] = None
    next_fleet: list[Ship] = []
    for ship in defender_fleet:
        if not hit and any(key_of(c) == k for c in ship.coords):
            hit = True
            ship = replace(ship, hits=ship.hits | {k})
            if is_sunk(ship):
                sunk = ship.id
        next_fleet.append(ship)
    fleet = tuple(next_fleet)
    return shots, fleet, ShotResult(hit=hit, sunk=sunk, win=all_sunk(fleet))


def random_fleet(rng: Optional[random.Random] = None, fleet: Fleet = ()) -> Fleet:
    """A legal fleet for FLEET_SIZES, in placement order.

    A partially placed *fleet* is completed with the sizes still missing.
    """
    rng = rng or random.Random()
    base = tuple(fleet)
    fleet = base
    for size in FLEET_SIZES[len(base):]:
        placed = False
        for _ in range(1000):
            start = Coord(r=rng.randrange(BOARD_SIZE), c=rng.randrange(BOARD_SIZE))
            orientation = "H" if rng.random() < 0.5 else "V"
            if can_place(fleet, start, size, orientation):
                fleet = place_ship(fleet, start, size, orientation)
                placed = True
                break
        if not placed:
            # practically unreachable on a 10x10 board; start over
            return random_fleet(rng, base)
    return fleet
