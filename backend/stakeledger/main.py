"""StakeLedger Backend API - Main Application"""
import structlog
from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from stakeledger.config import Settings, get_settings
from stakeledger.api.v1.router import api_router
from stakeledger.models.database import close_db, create_engine, create_session_factory, init_db
from stakeledger.services.repository import SnapshotRepository
from stakeledger.services.snapshot_manager import SnapshotManager
from stakeledger.services.solana_client import SolanaClient

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.dev.ConsoleRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


def create_app(settings: Optional[Settings] = None, manager: Optional[SnapshotManager] = None) -> FastAPI:
    """
    Create FastAPI application.

    Args:
        settings: Settings to use instead of the environment
        manager: Pre-built snapshot manager; when given, startup skips creating
            the database engine and RPC client
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager"""
        logger.info("Starting StakeLedger API", version=settings.app_version)

        if manager is not None:
            yield
            return

        engine = create_engine(settings.database_url, pool_size=settings.database_pool_size, echo=settings.debug)
        await init_db(engine)
        logger.info("Database initialized")

        client = SolanaClient(settings.full_rpc_url)
        await client.connect()

        app.state.snapshot_manager = SnapshotManager(
            client=client,
            repository=SnapshotRepository(create_session_factory(engine)),
            settings=settings,
        )

        yield

        # Cleanup
        await client.disconnect()
        await close_db(engine)
        logger.info("StakeLedger API shutdown complete")

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Staking ledger and holder snapshot API",
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(api_router, prefix=settings.api_prefix)

    if manager is not None:
        app.state.snapshot_manager = manager

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "version": settings.app_version,
            "staking_contract": settings.staking_contract_address,
        }

    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(
        "stakeledger.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
    )
