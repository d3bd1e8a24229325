import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from providerhub.config import warn_if_unprotected

logger = logging.getLogger(__name__)
from providerhub.routes import batch, health
from providerhub.services.backend_client import BackendClient
from providerhub.services.key_fetcher import MultiKeyModelFetcher
from providerhub.services.registry import BatchJobRegistry

# Warn about an open admin API before the app starts
warn_if_unprotected()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown lifecycle events"""
    backend = BackendClient()
    fetcher = MultiKeyModelFetcher(backend=backend)

    app.state.backend = backend
    app.state.fetcher = fetcher
    app.state.registry = BatchJobRegistry(backend, fetcher)
    logger.info(f"Provider backend: {backend.base_url}")

    yield

    # Shutdown: stop running jobs, then close HTTP clients
    await app.state.registry.cleanup()
    await fetcher.cleanup()
    await backend.cleanup()


app = FastAPI(
    title="ProviderHub Batch API",
    description="Batch import and model reconciliation for LLM provider platforms",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS middleware (useful when an admin UI is served from another origin)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, prefix="/api", tags=["health"])
app.include_router(batch.router, prefix="/api", tags=["batch"])
