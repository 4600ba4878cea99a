from pydantic import BaseModel
from typing import Any, Dict, List, Optional
from datetime import datetime


class GenerationCreate(BaseModel):
    prompt: Optional[str] = None
    image: Optional[str] = None
    audio: Optional[str] = None
    negative_prompt: Optional[str] = None
    duration: Optional[int] = None
    seed: Optional[int] = None
    size: Optional[str] = None
    resolution: Optional[str] = None

    class Config:
        extra = "allow"


class GenerationResponse(BaseModel):
    id: str
    generation_type: str
    status: str
    credits_used: Optional[int] = None
    storage_url: Optional[str] = None
    file_size: Optional[int] = None
    content_type: Optional[str] = None
    prompt: Optional[str] = None
    settings: Optional[Dict[str, Any]] = None
    provider_job_id: Optional[str] = None
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class GenerationRunResponse(BaseModel):
    success: bool
    generation: Optional[GenerationResponse] = None
    credits_charged: int = 0
    balance_after: Optional[int] = None
    billing_pending: bool = False
    message: Optional[str] = None


class GenerationListResponse(BaseModel):
    items: List[GenerationResponse]
    limit: int
    offset: int


class GenerationStatsResponse(BaseModel):
    total: int
    completed: int
    failed: int
    pending: int
    total_credits_used: int
    by_type: Dict[str, int]
