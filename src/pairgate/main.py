"""PairGate main application."""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from pairgate import __version__
from pairgate.api import router
from pairgate.api.deps import close_store, get_store, validate_auth_config
from pairgate.config import StoreBackend, settings
from pairgate.db.base import close_db, init_db
from pairgate.tasks.sweep import start_expiry_sweep, stop_expiry_sweep

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("pairgate")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting PairGate server...")
    logger.info(f"Environment: {settings.env.value}")
    logger.info(f"Store backend: {settings.store_backend.value}")

    # Fail fast on insecure auth configuration
    validate_auth_config()

    if settings.store_backend == StoreBackend.SQL:
        await init_db()
        logger.info("Database initialized")

    store = get_store()

    if settings.session_sweep_enabled:
        await start_expiry_sweep(store)
        logger.info("Expiry sweep task started")

    yield

    logger.info("Shutting down PairGate server...")
    await stop_expiry_sweep()
    await close_store()
    if settings.store_backend == StoreBackend.SQL:
        await close_db()
    logger.info("Shutdown complete")


app = FastAPI(
    title="PairGate",
    description="Pairing codes, controller/subject relationships and time-boxed admin sessions",
    version=__version__,
    lifespan=lifespan,
)

# Explicit allowlist, no wildcards with credentials
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=settings.cors_allowed_methods,
    allow_headers=settings.cors_allowed_headers,
)

app.include_router(router)


def main():
    """Entry point for the application."""
    uvicorn.run(
        "pairgate.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
