from fastapi import APIRouter, Depends, HTTPException

from app.api.deps import get_container
from app.core.container import Container

router = APIRouter()


@router.get("/rate-limiter/stats")
async def rate_limiter_stats(container: Container = Depends(get_container)) -> dict:
    return container.limiters.stats()


@router.get("/rate-limiter/stats/{limiter_type}")
async def rate_limiter_stats_for(limiter_type: str, container: Container = Depends(get_container)) -> dict:
    try:
        return container.limiters.get(limiter_type).stats()
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown rate limiter type: {limiter_type}")
