"""Health endpoints over the worker's state snapshot."""
from fastapi import APIRouter, HTTPException, Request

router = APIRouter(prefix="/health", tags=["health"])


def overall_status(snapshot: dict) -> str:
    if snapshot["status"] != "running":
        return "unhealthy"
    if snapshot["is_shutting_down"]:
        return "degraded"
    return "healthy"


@router.get("")
async def health_check(request: Request):
    """
    Current worker health.

    Returns the worker snapshot (current job, counters, memory) with an
    overall status: unhealthy when stopped, degraded while shutting down.
    """
    snapshot = request.app.state.context.health_snapshot()
    return {"status": overall_status(snapshot), "worker": snapshot}


@router.get("/jobs")
async def job_stats(request: Request):
    """Job counts per status."""
    try:
        stats = await request.app.state.persistence.get_job_stats()
    except Exception as e:
        raise HTTPException(status_code=503, detail=f"Job stats unavailable: {e}")
    return {"stats": [stat.model_dump() for stat in stats]}
