import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from vitalis import __version__
from vitalis.config import settings
from vitalis.core.error_handling import ErrorHandlingMiddleware, register_exception_handlers
from vitalis.core.logging import configure_logging
from vitalis.database import Base, engine as default_engine
from vitalis.routers import health_sync, provider_auth
from vitalis.services.connectors.registry import ConnectorRegistry
from vitalis.services.credential_store import CredentialStore
from vitalis.services.oauth_state import OAuthStateSigner
from vitalis.services.persistence import HealthDataGateway
from vitalis.services.sync_orchestrator import SyncOrchestrator
from vitalis.services.sync_worker import start_sync_worker, stop_sync_worker

configure_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


def create_app(engine: Optional[Engine] = None, registry: Optional[ConnectorRegistry] = None) -> FastAPI:
    engine = engine or default_engine

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting Vitalis health sync service...")

        Base.metadata.create_all(bind=engine)
        logger.info("Database tables ready")

        session_factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
        app.state.registry = registry or ConnectorRegistry.from_settings(settings)
        app.state.state_signer = OAuthStateSigner(
            settings.state_signing_secrets(),
            ttl_seconds=settings.OAUTH_STATE_TTL_SECONDS,
        )
        app.state.credential_store = CredentialStore(session_factory)
        app.state.gateway = HealthDataGateway(session_factory)
        app.state.orchestrator = SyncOrchestrator(
            app.state.registry,
            app.state.credential_store,
            app.state.gateway,
            provider_timeout=settings.SYNC_PROVIDER_TIMEOUT_SECONDS,
            total_timeout=settings.SYNC_TOTAL_TIMEOUT_SECONDS,
            default_window_days=settings.SYNC_DEFAULT_WINDOW_DAYS,
        )
        logger.info(
            f"Registered providers: {', '.join(p.value for p in app.state.registry.providers)}"
        )

        if settings.SYNC_WORKER_ENABLED:
            await start_sync_worker(app.state.orchestrator, settings.SYNC_WORKER_INTERVAL_MINUTES)
        else:
            logger.info("Sync worker disabled (set SYNC_WORKER_ENABLED=true to enable)")

        yield

        logger.info("Shutting down Vitalis health sync service...")
        if settings.SYNC_WORKER_ENABLED:
            await stop_sync_worker()
        logger.info("Shutdown complete")

    app = FastAPI(
        title="Vitalis Health Sync",
        description="Multi-provider wearable data sync and normalization",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(ErrorHandlingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_exception_handlers(app)

    app.include_router(provider_auth.router)
    app.include_router(health_sync.router)

    @app.get("/")
    async def root():
        return {
            "message": "Vitalis Health Sync API",
            "version": __version__,
            "status": "operational",
        }

    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("vitalis.main:app", host="0.0.0.0", port=8000)
