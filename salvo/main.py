import asyncio
import os
import sys
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
import uvicorn

# Resolve project root (two levels up from this file: salvo/main.py -> project root)
PROJECT_ROOT = Path(__file__).resolve().parent.parent
# Ensure project root on sys.path so `import salvo.*` works when running as a script
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from salvo.routers import room_router  # noqa: E402
from salvo.routers.ai import router as ai_router  # noqa: E402
from salvo.services.room import _dbg  # noqa: E402


async def _reaper(interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        reaped = room_router.store.reap()
        if reaped:
            _dbg(f"housekeeping removed {len(reaped)} room(s)")


@asynccontextmanager
async def lifespan(app: FastAPI):
    interval = float(os.getenv("SALVO_REAP_INTERVAL", "600"))
    task = asyncio.create_task(_reaper(interval))
    try:
        yield
    finally:
        task.cancel()
        room_router.stop_computers()


app = FastAPI(title="salvo", lifespan=lifespan)


# Health check
@app.get("/healthz")
def healthz():
    return {"status": "ok"}


app.include_router(room_router.router, prefix="/v1/rooms", tags=["rooms"])
app.include_router(ai_router, prefix="/v1/ai", tags=["ai"])


if __name__ == "__main__":
    uvicorn.run(app, host=os.getenv("SALVO_HOST", "0.0.0.0"), port=int(os.getenv("SALVO_PORT", "8000")))
