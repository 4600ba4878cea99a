from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query

from app.api.deps import get_container
from app.core.container import Container
from app.core.security import CurrentUser, get_current_user
from app.schemas.credits import (
    CreditBalanceResponse,
    CreditCostResponse,
    CreditTransactionListResponse,
    CreditTransactionResponse,
)
from app.services.credit_ledger import TRANSACTION_TYPES
from app.services.pricing import cost_table

router = APIRouter()


@router.get("/credits", response_model=CreditBalanceResponse)
async def get_credits(
    current_user: CurrentUser = Depends(get_current_user),
    container: Container = Depends(get_container),
) -> CreditBalanceResponse:
    account = await container.ledger.get_or_create(current_user.id)
    return CreditBalanceResponse.model_validate(account)


@router.get("/credits/transactions", response_model=CreditTransactionListResponse)
async def list_credit_transactions(
    type: str | None = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    current_user: CurrentUser = Depends(get_current_user),
    container: Container = Depends(get_container),
) -> CreditTransactionListResponse:
    if type is not None and type not in TRANSACTION_TYPES:
        raise HTTPException(status_code=400, detail=f"Invalid transaction type: {type}")
    rows = await container.ledger.list_transactions(current_user.id, limit=limit, offset=offset, tx_type=type)
    return CreditTransactionListResponse(
        items=[CreditTransactionResponse.model_validate(r) for r in rows],
        limit=limit,
        offset=offset,
    )


@router.get("/credits/costs", response_model=List[CreditCostResponse])
async def get_credit_costs(container: Container = Depends(get_container)) -> List[CreditCostResponse]:
    return [CreditCostResponse(**row) for row in cost_table(container.settings.credit_cost_overrides)]
