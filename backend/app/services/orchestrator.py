"""
Generation orchestration: credit pre-check, provider submit and poll, artifact
persistence, then the ledger debit keyed by the generation id.

Default mode charges only after the artifact is stored, so a failure before
finalizing never touches the ledger. Prepaid mode (`charge_upfront=True`)
debits a pending generation first and refunds it once if the job fails.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Mapping
from uuid import uuid4

import httpx

from app.services.artifacts import ArtifactPersistError, ArtifactPersister, PersistedArtifact
from app.services.credit_ledger import TX_SPENT, CreditLedger, InsufficientCreditsError, LedgerResult
from app.services.generation_library import GenerationNotFoundError
from app.services.pricing import (
    GENERATION_CATEGORY,
    generation_type_name,
    get_credit_cost,
    insufficient_credits_message,
    is_valid_generation_type,
)
from app.services.protocols import GenerationRecord, GenerationStore, UsageRecord
from app.services.providers.client import ProviderError, ProviderJob, ProviderJobClient, ProviderNotConfiguredError
from app.services.usage import UsageNotifier

logger = logging.getLogger(__name__)


class GenerationState(str, enum.Enum):
    CHECKING = "checking"
    SUBMITTING = "submitting"
    POLLING = "polling"
    PERSISTING = "persisting"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    INSUFFICIENT_CREDITS = "insufficient_credits"


class GenerationFailed(RuntimeError):
    def __init__(self, stage: GenerationState, reason: str) -> None:
        self.stage = stage
        self.reason = reason
        super().__init__(reason)


@dataclass(frozen=True)
class InsufficientCredits:
    required: int
    current: int
    shortfall: int


@dataclass(frozen=True)
class GenerationOutcome:
    state: GenerationState
    generation: GenerationRecord | None = None
    credits_charged: int = 0
    balance_after: int | None = None
    billing_pending: bool = False
    refunded: bool = False
    message: str | None = None
    failed_stage: GenerationState | None = None
    insufficient: InsufficientCredits | None = None


def failure_message(reason: str) -> str:
    reason = (reason or "Unknown error").strip().rstrip(".")
    return f"Generation failed: {reason}. Please try again."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _stored_settings(payload: Mapping[str, Any]) -> dict[str, Any]:
    # Inline media can be megabytes of base64; keep only scalar knobs.
    return {k: v for k, v in payload.items() if k not in ("prompt", "image", "audio")}


def _request_size(payload: Mapping[str, Any]) -> int:
    return len(json.dumps(payload, default=str).encode("utf-8"))


class GenerationOrchestrator:
    def __init__(
        self,
        *,
        ledger: CreditLedger,
        generations: GenerationStore,
        providers: Mapping[str, ProviderJobClient],
        artifacts: ArtifactPersister,
        usage: UsageNotifier | None = None,
        cost_overrides: Mapping[str, int] | None = None,
        poll_max_attempts: int = 40,
        poll_interval_s: float = 6.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._ledger = ledger
        self._generations = generations
        self._providers = dict(providers)
        self._artifacts = artifacts
        self._usage = usage
        self._cost_overrides = dict(cost_overrides or {})
        self._poll_max_attempts = poll_max_attempts
        self._poll_interval_s = poll_interval_s
        self._clock = clock

    def cost_of(self, kind: str) -> int:
        return get_credit_cost(kind, self._cost_overrides)

    def _provider(self, kind: str) -> ProviderJobClient:
        provider = self._providers.get(kind)
        if provider is None:
            raise ProviderNotConfiguredError(f"No provider configured for {kind}")
        return provider

    async def run(
        self,
        user_id: str,
        kind: str,
        payload: Mapping[str, Any],
        *,
        charge_upfront: bool = False,
        cancel: asyncio.Event | None = None,
    ) -> GenerationOutcome:
        if not is_valid_generation_type(kind):
            raise ValueError(f"Unknown generation type: {kind}")
        payload = dict(payload or {})
        started = time.monotonic()

        cost = self.cost_of(kind)
        check = await self._ledger.check_sufficient(user_id, cost)
        if not check.has_enough:
            logger.info(
                "orchestrator.insufficient_credits user_id=%s kind=%s required=%s current=%s",
                user_id,
                kind,
                check.required,
                check.current,
            )
            return self._insufficient(kind, check.required, check.current)

        provider = self._provider(kind)
        if charge_upfront:
            outcome = await self._run_prepaid(user_id, kind, payload, cost, provider, cancel)
        else:
            outcome = await self._run_postpaid(user_id, kind, payload, cost, provider, cancel)

        self._notify_usage(user_id, kind, payload, outcome, started)
        return outcome

    def _insufficient(self, kind: str, required: int, current: int) -> GenerationOutcome:
        shortfall = max(0, required - current)
        return GenerationOutcome(
            state=GenerationState.INSUFFICIENT_CREDITS,
            balance_after=current,
            message=insufficient_credits_message(kind, required, current),
            insufficient=InsufficientCredits(required=required, current=current, shortfall=shortfall),
        )

    async def _execute(
        self,
        user_id: str,
        kind: str,
        payload: dict[str, Any],
        provider: ProviderJobClient,
        cancel: asyncio.Event | None,
    ) -> tuple[ProviderJob, PersistedArtifact]:
        try:
            job = await provider.create_job(payload)
        except ProviderNotConfiguredError:
            raise
        except (ProviderError, httpx.HTTPError) as e:
            raise GenerationFailed(GenerationState.SUBMITTING, str(e) or e.__class__.__name__) from e

        poll = await provider.poll_result(
            job.poll_handle,
            max_attempts=self._poll_max_attempts,
            interval_s=self._poll_interval_s,
            cancel=cancel,
        )
        if not poll.succeeded:
            raise GenerationFailed(GenerationState.POLLING, poll.error or poll.state.value)
        if not poll.output_url:
            raise GenerationFailed(GenerationState.POLLING, "Provider returned no output")

        try:
            artifact = await self._artifacts.persist(poll.output_url, user_id, GENERATION_CATEGORY[kind])
        except ArtifactPersistError as e:
            raise GenerationFailed(GenerationState.PERSISTING, str(e)) from e
        return job, artifact

    def _failed(self, user_id: str, kind: str, err: GenerationFailed, **extra: Any) -> GenerationOutcome:
        logger.warning(
            "orchestrator.failed user_id=%s kind=%s stage=%s reason=%s",
            user_id,
            kind,
            err.stage.value,
            err.reason,
        )
        return GenerationOutcome(
            state=GenerationState.FAILED,
            message=failure_message(err.reason),
            failed_stage=err.stage,
            **extra,
        )

    async def _charge(self, user_id: str, kind: str, cost: int, generation_id: str) -> LedgerResult:
        if cost <= 0:
            # Free kinds leave no ledger row.
            balance = await self._ledger.get_balance(user_id)
            return LedgerResult(balance_after=balance, amount=0, idempotent=False, transaction_id=None)
        return await self._ledger.debit(
            user_id,
            cost,
            f"{generation_type_name(kind)} generation",
            reference_id=generation_id,
            reference_type="generation",
        )

    async def _run_postpaid(
        self,
        user_id: str,
        kind: str,
        payload: dict[str, Any],
        cost: int,
        provider: ProviderJobClient,
        cancel: asyncio.Event | None,
    ) -> GenerationOutcome:
        try:
            job, artifact = await self._execute(user_id, kind, payload, provider, cancel)
        except GenerationFailed as e:
            return self._failed(user_id, kind, e)

        record = await self._generations.create(
            GenerationRecord(
                id=str(uuid4()),
                user_id=user_id,
                generation_type=kind,
                status="completed",
                storage_key=artifact.storage_key,
                storage_url=artifact.storage_url,
                file_size=artifact.size_bytes,
                content_type=artifact.content_type,
                prompt=payload.get("prompt"),
                settings=_stored_settings(payload),
                provider_job_id=job.provider_id,
                completed_at=self._clock(),
            )
        )

        try:
            charge = await self._charge(user_id, kind, cost, record.id)
        except Exception as e:
            # The artifact is real; billing is reconciled later from generations with no credits_used.
            logger.error(
                "orchestrator.billing_pending user_id=%s generation_id=%s cost=%s error=%s",
                user_id,
                record.id,
                cost,
                e,
            )
            return GenerationOutcome(
                state=GenerationState.COMPLETED,
                generation=record,
                billing_pending=True,
            )

        record = await self._generations.update(record.id, credits_used=cost) or record
        logger.info(
            "orchestrator.completed user_id=%s kind=%s generation_id=%s credits=%s balance_after=%s",
            user_id,
            kind,
            record.id,
            cost,
            charge.balance_after,
        )
        return GenerationOutcome(
            state=GenerationState.COMPLETED,
            generation=record,
            credits_charged=cost,
            balance_after=charge.balance_after,
        )

    async def _run_prepaid(
        self,
        user_id: str,
        kind: str,
        payload: dict[str, Any],
        cost: int,
        provider: ProviderJobClient,
        cancel: asyncio.Event | None,
    ) -> GenerationOutcome:
        record = await self._generations.create(
            GenerationRecord(
                id=str(uuid4()),
                user_id=user_id,
                generation_type=kind,
                status="pending",
                prompt=payload.get("prompt"),
                settings=_stored_settings(payload),
            )
        )

        try:
            charge = await self._charge(user_id, kind, cost, record.id)
        except InsufficientCreditsError as e:
            await self._generations.update(record.id, status="failed", error_message="Insufficient credits")
            return self._insufficient(kind, e.required, e.current)
        record = await self._generations.update(record.id, credits_used=cost) or record

        try:
            job, artifact = await self._execute(user_id, kind, payload, provider, cancel)
        except GenerationFailed as e:
            refund = await self.handle_generation_failure(user_id, record.id, e.reason)
            failed = await self._generations.get(record.id)
            return self._failed(
                user_id,
                kind,
                e,
                generation=failed,
                balance_after=(refund.balance_after if refund else charge.balance_after),
                refunded=refund is not None,
            )
        except Exception as e:
            await self.handle_generation_failure(user_id, record.id, str(e) or e.__class__.__name__)
            raise

        record = await self._generations.update(
            record.id,
            status="completed",
            storage_key=artifact.storage_key,
            storage_url=artifact.storage_url,
            file_size=artifact.size_bytes,
            content_type=artifact.content_type,
            provider_job_id=job.provider_id,
            completed_at=self._clock(),
        ) or record
        logger.info(
            "orchestrator.completed user_id=%s kind=%s generation_id=%s credits=%s balance_after=%s prepaid=true",
            user_id,
            kind,
            record.id,
            cost,
            charge.balance_after,
        )
        return GenerationOutcome(
            state=GenerationState.COMPLETED,
            generation=record,
            credits_charged=cost,
            balance_after=charge.balance_after,
        )

    async def handle_generation_failure(self, user_id: str, generation_id: str, reason: str) -> LedgerResult | None:
        """Mark the generation failed and refund its spend, if any. Safe to call repeatedly."""
        record = await self._generations.get(generation_id)
        if record is None or record.user_id != user_id:
            raise GenerationNotFoundError(f"Generation {generation_id} not found")

        await self._generations.update(generation_id, status="failed", error_message=reason)

        spent = await self._ledger.find_transaction(user_id, generation_id, TX_SPENT)
        if spent is None:
            return None

        refund = await self._ledger.refund(
            user_id,
            spent.amount,
            f"{generation_type_name(record.generation_type)} generation",
            generation_id,
            reason,
        )
        logger.info(
            "orchestrator.refunded user_id=%s generation_id=%s amount=%s idempotent=%s",
            user_id,
            generation_id,
            spent.amount,
            refund.idempotent,
        )
        return refund

    def _notify_usage(
        self,
        user_id: str,
        kind: str,
        payload: dict[str, Any],
        outcome: GenerationOutcome,
        started: float,
    ) -> None:
        if self._usage is None:
            return
        self._usage.notify(
            UsageRecord(
                user_id=user_id,
                endpoint=f"/api/generations/{kind}",
                generation_type=kind,
                generation_id=(outcome.generation.id if outcome.generation else None),
                credits_used=outcome.credits_charged,
                status=outcome.state.value,
                processing_time_ms=int((time.monotonic() - started) * 1000),
                request_size_bytes=_request_size(payload),
            )
        )
