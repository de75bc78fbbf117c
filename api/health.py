import time

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

router = APIRouter()

_start_time = time.time()


@router.get("/healthz")
async def liveness():
    return {"status": "alive"}


@router.get("/ready")
def readiness(request: Request):
    gateway = request.app.state.gateway
    if gateway.ping():
        return {"status": "ready", "uptime_seconds": round(time.time() - _start_time, 1)}

    return JSONResponse(
        status_code=503,
        content={"status": "not_ready", "reason": "container runtime unreachable"},
    )
