from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from app.api.endpoints import billing, credits, generations, monitoring
from app.core.container import Container, build_container
from app.core.database import engine, Base
from app.core.settings import settings
from app.models import credit_account, credit_expiration, credit_transaction, generation, usage_event  # noqa: F401
import logging
import sys
import asyncio

if sys.platform.startswith("win"):
    try:
        asyncio.set_event_loop_policy(asyncio.WindowsProactorEventLoopPolicy())
    except Exception:
        pass

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(container: Container | None = None) -> FastAPI:
    app = FastAPI(title="Generation Credits API")
    app.state.container = container

    origins = settings.resolved_cors_origins()
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    @app.on_event("startup")
    async def startup() -> None:
        if app.state.container is None:
            if settings.db_auto_create:
                Base.metadata.create_all(bind=engine)
            app.state.container = build_container(settings)
        app.state.container.start_scheduler()
        missing = settings.missing_provider_config()
        if missing:
            logger.warning("startup.providers_missing kinds=%s", ",".join(missing))

    @app.on_event("shutdown")
    async def shutdown() -> None:
        if app.state.container is not None:
            await app.state.container.aclose()

    app.include_router(generations.router, prefix="/api", tags=["generations"])
    app.include_router(credits.router, prefix="/api", tags=["credits"])
    app.include_router(billing.router, prefix="/api", tags=["billing"])
    app.include_router(monitoring.router, prefix="/api", tags=["monitoring"])

    @app.get("/health")
    @app.get("/api/health")
    async def health_check():
        return {"status": "healthy"}

    return app


app = create_app()
