from pydantic import BaseModel
from typing import List, Optional
from datetime import datetime


class CreditBalanceResponse(BaseModel):
    user_id: str
    balance: int
    lifetime_earned: int
    lifetime_spent: int

    class Config:
        from_attributes = True


class CreditTransactionResponse(BaseModel):
    id: int
    type: str
    amount: int
    balance_after: int
    description: Optional[str] = None
    reference_id: Optional[str] = None
    reference_type: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CreditTransactionListResponse(BaseModel):
    items: List[CreditTransactionResponse]
    limit: int
    offset: int


class CreditCostResponse(BaseModel):
    type: str
    name: str
    credits: int
