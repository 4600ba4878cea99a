from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.orm import sessionmaker

from app.core.database import SessionLocal
from app.core.settings import Settings, settings
from app.services.artifacts import ArtifactPersister
from app.services.credit_ledger import CreditLedger
from app.services.expiration import ExpirationSweeper, build_expiration_scheduler
from app.services.generation_library import GenerationLibrary
from app.services.orchestrator import GenerationOrchestrator
from app.services.payment_events import PaymentEventHandler
from app.services.protocols import ArtifactStore
from app.services.providers.client import ProviderJobClient, build_provider_clients
from app.services.rate_limiter import RateLimiterRegistry
from app.services.storage import S3ArtifactStore
from app.services.usage import UsageNotifier
from app.stores.expiration_store import SqlExpirationLotStore
from app.stores.generation_store import SqlGenerationStore
from app.stores.ledger_store import SqlCreditLedgerStore
from app.stores.usage_store import SqlUsageStore

logger = logging.getLogger(__name__)


@dataclass
class Container:
    settings: Settings
    http_client: httpx.AsyncClient
    limiters: RateLimiterRegistry
    providers: dict[str, ProviderJobClient]
    ledger: CreditLedger
    artifacts: ArtifactPersister
    generations: GenerationLibrary
    orchestrator: GenerationOrchestrator
    sweeper: ExpirationSweeper
    payments: PaymentEventHandler
    usage: UsageNotifier
    scheduler: AsyncIOScheduler | None = None

    def start_scheduler(self) -> None:
        if self.scheduler is None or self.scheduler.running:
            return
        self.scheduler.start()
        logger.info(
            "container.scheduler_started hour=%s minute=%s",
            self.settings.expiration_sweep_hour,
            self.settings.expiration_sweep_minute,
        )

    async def aclose(self) -> None:
        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        await self.usage.drain()
        await self.http_client.aclose()


def build_container(
    cfg: Settings = settings,
    *,
    session_factory: sessionmaker | None = None,
    http_client: httpx.AsyncClient | None = None,
    artifact_store: ArtifactStore | None = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Container:
    """Construct every long-lived service once. Tests pass fakes for the outer edges."""
    session_factory = session_factory or SessionLocal
    http_client = http_client or httpx.AsyncClient()

    limiters = RateLimiterRegistry.from_settings(cfg, clock=clock, sleep=sleep)
    providers = build_provider_clients(cfg, limiters, http_client, sleep=sleep)
    for kind in cfg.missing_provider_config():
        logger.warning("container.provider_not_configured kind=%s", kind)

    ledger = CreditLedger(SqlCreditLedgerStore(session_factory))
    generation_store = SqlGenerationStore(session_factory)
    artifacts = ArtifactPersister(
        artifact_store or S3ArtifactStore.from_settings(cfg),
        http_client,
        download_timeout_s=cfg.artifact_download_timeout_s,
        max_bytes=cfg.artifact_max_bytes,
        signed_url_ttl_s=cfg.signed_url_ttl_s,
    )
    usage = UsageNotifier(SqlUsageStore(session_factory))
    orchestrator = GenerationOrchestrator(
        ledger=ledger,
        generations=generation_store,
        providers=providers,
        artifacts=artifacts,
        usage=usage,
        cost_overrides=cfg.credit_cost_overrides,
        poll_max_attempts=cfg.poll_max_attempts,
        poll_interval_s=cfg.poll_interval_s,
    )
    sweeper = ExpirationSweeper(ledger, SqlExpirationLotStore(session_factory))
    payments = PaymentEventHandler(
        ledger,
        sweeper,
        plan_credits=cfg.plan_credits,
        upgrade_bonus_expiry_days=cfg.upgrade_bonus_expiry_days,
    )

    scheduler = None
    if cfg.expiration_sweep_enabled:
        scheduler = build_expiration_scheduler(
            sweeper,
            hour=cfg.expiration_sweep_hour,
            minute=cfg.expiration_sweep_minute,
        )

    return Container(
        settings=cfg,
        http_client=http_client,
        limiters=limiters,
        providers=providers,
        ledger=ledger,
        artifacts=artifacts,
        generations=GenerationLibrary(generation_store, artifacts),
        orchestrator=orchestrator,
        sweeper=sweeper,
        payments=payments,
        usage=usage,
        scheduler=scheduler,
    )
