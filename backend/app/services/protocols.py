"""
Storage and transport interfaces used by the generation and credit services.

Each protocol has exactly one production adapter (SQLAlchemy, boto3 or httpx);
tests substitute in-memory fakes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Protocol, runtime_checkable


@dataclass(frozen=True)
class CreditAccountView:
    user_id: str
    balance: int
    lifetime_earned: int
    lifetime_spent: int


@dataclass(frozen=True)
class LedgerRow:
    id: int
    user_id: str
    type: str
    amount: int
    balance_after: int
    description: str | None = None
    reference_id: str | None = None
    reference_type: str | None = None
    created_at: datetime | None = None


@dataclass
class GenerationRecord:
    id: str
    user_id: str
    generation_type: str
    status: str
    credits_used: int | None = None
    storage_key: str | None = None
    storage_url: str | None = None
    file_size: int | None = None
    content_type: str | None = None
    prompt: str | None = None
    settings: dict[str, Any] | None = None
    provider_job_id: str | None = None
    error_message: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass
class ExpirationLot:
    id: str
    user_id: str
    amount: int
    consumed_amount: int
    expires_at: datetime
    reason: str = "upgrade_bonus"
    status: str = "scheduled"
    metadata: dict[str, Any] | None = None
    error_message: str | None = None
    processed_at: datetime | None = None


@dataclass
class UsageRecord:
    user_id: str
    endpoint: str
    generation_type: str | None = None
    generation_id: str | None = None
    credits_used: int = 0
    status: str | None = None
    processing_time_ms: int | None = None
    request_size_bytes: int | None = None
    extra: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class CreditLedgerStore(Protocol):
    """Durable balance storage. `apply` is the single atomic mutation primitive."""

    async def get_or_create_account(self, user_id: str) -> CreditAccountView:
        ...

    async def apply(
        self,
        user_id: str,
        amount: int,
        tx_type: str,
        description: str,
        reference_id: Optional[str],
        reference_type: Optional[str],
    ) -> LedgerRow:
        """
        Atomically validate sufficiency (for spends), move the balance and append the
        transaction row.

        Raises:
            InsufficientCreditsError: balance is lower than `amount` for a spend
            DuplicateReferenceError: a spent/refund row with the same reference already exists
        """
        ...

    async def find_transaction(
        self, user_id: str, reference_id: str, tx_type: Optional[str] = None
    ) -> Optional[LedgerRow]:
        ...

    async def list_transactions(
        self, user_id: str, *, limit: int = 50, offset: int = 0, tx_type: Optional[str] = None
    ) -> list[LedgerRow]:
        ...


@runtime_checkable
class GenerationStore(Protocol):
    async def create(self, record: GenerationRecord) -> GenerationRecord:
        ...

    async def get(self, generation_id: str) -> Optional[GenerationRecord]:
        ...

    async def update(self, generation_id: str, **fields: Any) -> Optional[GenerationRecord]:
        ...

    async def list_for_user(
        self,
        user_id: str,
        *,
        generation_type: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
        order_by: str = "created_at",
        descending: bool = True,
    ) -> list[GenerationRecord]:
        ...

    async def stats_for_user(self, user_id: str) -> dict[str, Any]:
        ...

    async def delete(self, generation_id: str, user_id: str) -> bool:
        ...


@runtime_checkable
class ExpirationLotStore(Protocol):
    async def create(self, lot: ExpirationLot) -> ExpirationLot:
        ...

    async def list_due(self, now: datetime) -> list[ExpirationLot]:
        """Lots with expires_at <= now and status in (scheduled, pending)."""
        ...

    async def mark_completed(self, lot_id: str, *, consumed_amount: int, processed_at: datetime) -> None:
        ...

    async def mark_failed(self, lot_id: str, *, error_message: str, processed_at: datetime) -> None:
        ...


@runtime_checkable
class UsageStore(Protocol):
    async def record(self, usage: UsageRecord) -> None:
        ...


@runtime_checkable
class ArtifactStore(Protocol):
    async def put(self, key: str, body: bytes, content_type: str) -> None:
        ...

    async def signed_url(self, key: str, ttl_s: int) -> str:
        ...

    async def delete(self, key: str) -> None:
        ...
