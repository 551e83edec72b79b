import random

from fastapi import APIRouter, HTTPException

from salvo.schemas import AIMemoryPayload, MemoryUpdateRequest, ShotPlanRequest, ShotPlanResponse
from salvo.services.ai import choose_next_shot, empty_memory, memory_from_payload, memory_to_payload, update_memory
from salvo.services.engine import ShotResult


router = APIRouter()


@router.post("/shot", response_model=ShotPlanResponse)
def post_shot(req: ShotPlanRequest) -> ShotPlanResponse:
    rng = random.Random(req.rand_seed)
    mem = memory_from_payload(req.memory) if req.memory else empty_memory(rng)
    try:
        target = choose_next_shot(frozenset(req.shots), mem, req.difficulty, rng)
    except ValueError:
        raise HTTPException(status_code=409, detail="no cells left to shoot")
    return ShotPlanResponse(target=target)


@router.post("/memory", response_model=AIMemoryPayload)
def post_memory(req: MemoryUpdateRequest) -> AIMemoryPayload:
    result = ShotResult(hit=req.result.hit, sunk=req.result.sunk, win=req.result.win)
    mem = update_memory(
        memory_from_payload(req.memory),
        req.difficulty,
        req.target,
        result,
        frozenset(req.shots_after),
    )
    return memory_to_payload(mem)
