from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Response

from app.api.deps import get_container
from app.core.container import Container
from app.core.security import CurrentUser, get_current_user
from app.schemas.generation import (
    GenerationCreate,
    GenerationListResponse,
    GenerationResponse,
    GenerationRunResponse,
    GenerationStatsResponse,
)
from app.services.generation_library import GenerationAccessError, GenerationNotFoundError
from app.services.orchestrator import GenerationState
from app.services.pricing import is_valid_generation_type
from app.services.providers.client import ProviderNotConfiguredError
from app.services.storage import StorageNotConfiguredError

logger = logging.getLogger(__name__)

router = APIRouter()

IMAGE_INPUT_KINDS = {"image_to_image", "image_to_video"}


def _validate_inputs(kind: str, body: GenerationCreate) -> None:
    if not is_valid_generation_type(kind):
        raise HTTPException(status_code=400, detail=f"Invalid generation type: {kind}")
    if kind in IMAGE_INPUT_KINDS and not (body.image or "").strip():
        raise HTTPException(status_code=400, detail="An input image is required")
    if kind not in IMAGE_INPUT_KINDS and not (body.prompt or "").strip():
        raise HTTPException(status_code=400, detail="Prompt is required")


@router.post("/generations/{kind}", response_model=GenerationRunResponse)
async def create_generation(
    kind: str,
    body: GenerationCreate,
    prepaid: bool = Query(False),
    current_user: CurrentUser = Depends(get_current_user),
    container: Container = Depends(get_container),
) -> GenerationRunResponse:
    _validate_inputs(kind, body)
    if prepaid and current_user.role != "admin":
        raise HTTPException(status_code=403, detail="Admin access required")

    try:
        outcome = await container.orchestrator.run(
            current_user.id,
            kind,
            body.model_dump(exclude_none=True),
            charge_upfront=prepaid,
        )
    except (ProviderNotConfiguredError, StorageNotConfiguredError) as e:
        logger.error("generations.not_configured kind=%s error=%s", kind, e)
        raise HTTPException(status_code=503, detail=str(e))

    if outcome.state is GenerationState.INSUFFICIENT_CREDITS:
        info = outcome.insufficient
        raise HTTPException(
            status_code=402,
            detail={
                "error": "Insufficient credits",
                "message": outcome.message,
                "details": {
                    "required": info.required if info else None,
                    "current": info.current if info else None,
                    "shortfall": info.shortfall if info else None,
                    "generation_type": kind,
                },
            },
        )
    if outcome.state is GenerationState.FAILED:
        raise HTTPException(
            status_code=502,
            detail={
                "error": "Generation failed",
                "message": outcome.message,
                "refunded": outcome.refunded,
            },
        )

    return GenerationRunResponse(
        success=True,
        generation=(GenerationResponse.model_validate(outcome.generation) if outcome.generation else None),
        credits_charged=outcome.credits_charged,
        balance_after=outcome.balance_after,
        billing_pending=outcome.billing_pending,
        message=outcome.message,
    )


@router.get("/generations", response_model=GenerationListResponse)
async def list_generations(
    type: str | None = Query(None),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    order_by: str = Query("created_at"),
    order: str = Query("desc"),
    current_user: CurrentUser = Depends(get_current_user),
    container: Container = Depends(get_container),
) -> GenerationListResponse:
    if type is not None and not is_valid_generation_type(type):
        raise HTTPException(status_code=400, detail=f"Invalid generation type: {type}")
    rows = await container.generations.list_for_user(
        current_user.id,
        generation_type=type,
        limit=limit,
        offset=offset,
        order_by=order_by,
        descending=(order.lower() != "asc"),
    )
    return GenerationListResponse(
        items=[GenerationResponse.model_validate(r) for r in rows],
        limit=limit,
        offset=offset,
    )


@router.get("/generations/stats", response_model=GenerationStatsResponse)
async def generation_stats(
    current_user: CurrentUser = Depends(get_current_user),
    container: Container = Depends(get_container),
) -> GenerationStatsResponse:
    return GenerationStatsResponse(**(await container.generations.stats(current_user.id)))


@router.get("/generations/{generation_id}", response_model=GenerationResponse)
async def get_generation(
    generation_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    container: Container = Depends(get_container),
) -> GenerationResponse:
    try:
        record = await container.generations.get_for_user(current_user.id, generation_id)
    except GenerationNotFoundError:
        raise HTTPException(status_code=404, detail="Generation not found")
    except GenerationAccessError:
        raise HTTPException(status_code=403, detail="Access denied")
    return GenerationResponse.model_validate(record)


@router.delete("/generations/{generation_id}", status_code=204)
async def delete_generation(
    generation_id: str,
    current_user: CurrentUser = Depends(get_current_user),
    container: Container = Depends(get_container),
) -> Response:
    try:
        await container.generations.delete(current_user.id, generation_id)
    except GenerationNotFoundError:
        raise HTTPException(status_code=404, detail="Generation not found")
    except GenerationAccessError:
        raise HTTPException(status_code=403, detail="Access denied")
    return Response(status_code=204)
