"""
Opponent targeting.

Only the AI's own shot history and its memory of earlier results are
consulted; the defender's fleet is never an input. ``choose_next_shot`` and
``update_memory`` are pure, the memory value is threaded through by the
caller (see ``salvo.services.computer``).
"""
from __future__ import annotations

import random
from dataclasses import dataclass, replace
from typing import Iterable, Optional

from salvo.schemas import BOARD_SIZE, FLEET_SIZES, AIMemoryPayload, Coord, Difficulty
from salvo.services.engine import ShotResult, in_bounds, key_of


@dataclass(frozen=True)
class AIMemory:
    target_queue: tuple[str, ...] = ()
    cluster: tuple[str, ...] = ()  # hits on the ship currently being chased
    parity: int = 0
    sizes_left: tuple[int, ...] = FLEET_SIZES


def empty_memory(rng: Optional[random.Random] = None) -> AIMemory:
    rng = rng or random.Random()
    return AIMemory(parity=rng.randrange(2), sizes_left=tuple(FLEET_SIZES))


def memory_to_payload(mem: AIMemory) -> AIMemoryPayload:
    return AIMemoryPayload(
        target_queue=list(mem.target_queue),
        cluster=list(mem.cluster),
        parity=mem.parity,
        sizes_left=list(mem.sizes_left),
    )


def memory_from_payload(payload: AIMemoryPayload) -> AIMemory:
    return AIMemory(
        target_queue=tuple(payload.target_queue),
        cluster=tuple(payload.cluster),
        parity=payload.parity,
        sizes_left=tuple(payload.sizes_left),
    )


# ---------- helpers ----------

def neighbors(c: Coord) -> list[Coord]:
    return [n for n in c.neighbors() if in_bounds(n)]


def _unshot(cells: Iterable[Coord], shots: frozenset[str] | set[str]) -> list[Coord]:
    return [c for c in cells if key_of(c) not in shots]


def random_next_shot(shots, rng: random.Random) -> Coord:
    remaining = [
        Coord(r=r, c=c)
        for r in range(BOARD_SIZE)
        for c in range(BOARD_SIZE)
        if f"{r},{c}" not in shots
    ]
    if not remaining:
        raise ValueError("every cell has already been shot")
    return rng.choice(remaining)


def next_hunt_parity(shots, parity: int, rng: random.Random) -> Optional[Coord]:
    """Random unshot cell of the chosen checkerboard colour."""
    cand = [
        Coord(r=r, c=c)
        for r in range(BOARD_SIZE)
        for c in range(BOARD_SIZE)
        if (r + c) % 2 == parity and f"{r},{c}" not in shots
    ]
    if not cand:
        return None
    return rng.choice(cand)


def _open_run(start: Coord, dr: int, dc: int, shots) -> int:
    """unshot in-bounds cells beyond *start* walking (dr, dc)"""
    run = 0
    r, c = start.r + dr, start.c + dc
    while 0 <= r < BOARD_SIZE and 0 <= c < BOARD_SIZE and f"{r},{c}" not in shots:
        run += 1
        r, c = r + dr, c + dc
    return run


def targets_from_cluster(shots, cluster: Iterable[str], sizes_left: Iterable[int] = ()) -> list[str]:
    """Follow-up targets for the hits of one unsunk ship."""
    coords = [Coord.from_key(k) for k in cluster]
    if not coords:
        return []
    if len(coords) == 1:
        return [key_of(n) for n in _unshot(neighbors(coords[0]), shots)]

    same_row = all(c.r == coords[0].r for c in coords)
    same_col = all(c.c == coords[0].c for c in coords)
    if not (same_row or same_col):
        # hits from more than one ship; probe around the latest one
        return [key_of(n) for n in _unshot(neighbors(coords[-1]), shots)]

    line = sorted(coords, key=lambda p: p.c if same_row else p.r)
    first, last = line[0], line[-1]
    if same_row:
        ends = [(Coord(r=first.r, c=first.c - 1), 0, -1), (Coord(r=last.r, c=last.c + 1), 0, 1)]
    else:
        ends = [(Coord(r=first.r - 1, c=first.c), -1, 0), (Coord(r=last.r + 1, c=last.c), 1, 0)]
    candidates = [(p, dr, dc) for p, dr, dc in ends if in_bounds(p) and key_of(p) not in shots]

    if not candidates:
        # both ends closed but nothing sunk: two ships side by side
        out: list[str] = []
        for p in line:
            for n in _unshot(neighbors(p), shots):
                if key_of(n) not in out:
                    out.append(key_of(n))
        return out

    sizes = [s for s in sizes_left if s >= len(line)]
    if not sizes:
        return [key_of(p) for p, _, _ in candidates]
    kept = []
    for p, dr, dc in candidates:
        run = _open_run(p, dr, dc, shots)
        if any(s - len(line) <= 1 + run for s in sizes):
            kept.append(key_of(p))
    return kept or [key_of(p) for p, _, _ in candidates]


# ---------- policy ----------

def choose_next_shot(shots, mem: AIMemory, difficulty: Difficulty, rng: Optional[random.Random] = None) -> Coord:
    rng = rng or random.Random()
    if difficulty == "easy":
        return random_next_shot(shots, rng)

    if difficulty == "medium":
        if mem.cluster:
            opts = _unshot(neighbors(Coord.from_key(mem.cluster[-1])), shots)
            if opts:
                return rng.choice(opts)
        return next_hunt_parity(shots, mem.parity, rng) or random_next_shot(shots, rng)

    # hard: queued targets first; entries already shot are skipped, which is
    # how the queue drains from one call to the next
    for k in mem.target_queue:
        if k not in shots:
            return Coord.from_key(k)
    if mem.cluster:
        cand = targets_from_cluster(shots, mem.cluster, mem.sizes_left)
        if cand:
            return Coord.from_key(cand[0])
    return next_hunt_parity(shots, mem.parity, rng) or random_next_shot(shots, rng)


def update_memory(
    mem: AIMemory,
    difficulty: Difficulty,
    target: Coord,
    result: ShotResult,
    shots_after,
) -> AIMemory:
    """Fold the result of one resolved shot into the memory. Call once per shot."""
    if difficulty == "easy":
        return mem

    queue = tuple(k for k in mem.target_queue if k not in shots_after)
    if result.win:
        return replace(mem, target_queue=(), cluster=())
    if not result.hit:
        return replace(mem, target_queue=queue)

    k = key_of(target)
    cluster = mem.cluster + (k,)
    if result.sunk:
        sizes = list(mem.sizes_left)
        if len(cluster) in sizes:
            sizes.remove(len(cluster))
        # fresh hunt; nothing from this ship carries over to the next one
        return replace(mem, target_queue=(), cluster=(), sizes_left=tuple(sizes))

    if difficulty == "medium":
        return replace(mem, target_queue=queue, cluster=cluster)

    found = targets_from_cluster(shots_after, cluster, mem.sizes_left)
    coords = [Coord.from_key(c) for c in cluster]
    straight = len(coords) > 1 and (
        all(c.r == coords[0].r for c in coords) or all(c.c == coords[0].c for c in coords)
    )
    if straight:
        # the axis is known, leftover side probes are no longer useful
        queue = tuple(found)
    else:
        queue = queue + tuple(x for x in found if x not in queue)
    return replace(mem, target_queue=queue, cluster=cluster)
