"""FastAPI app entrypoint."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from dockyard.api.deps import get_orchestrator
from dockyard.api.routes.deploy import router as deploy_router
from dockyard.api.routes.events import router as events_router
from dockyard.api.routes.projects import router as projects_router
from dockyard.api.routes.webhooks import router as webhooks_router
from dockyard.config import configure_logging, get_settings
from dockyard.core.orchestrator import DeploymentOrchestrator

logger = logging.getLogger(__name__)


def _orchestrator(app: FastAPI) -> DeploymentOrchestrator:
    provider = app.dependency_overrides.get(get_orchestrator, get_orchestrator)
    return provider()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    orchestrator = _orchestrator(app)
    recovered = await orchestrator.recover()
    if recovered:
        logger.warning(f"Recovered {len(recovered)} interrupted attempt(s)")
    try:
        yield
    finally:
        await orchestrator.shutdown()


def create_app() -> FastAPI:
    app = FastAPI(title="Dockyard API", version="0.1.0", lifespan=lifespan)
    app.include_router(projects_router)
    app.include_router(deploy_router)
    app.include_router(events_router)
    app.include_router(webhooks_router)

    @app.get("/health", tags=["system"])
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app


app = create_app()


def run() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    uvicorn.run("dockyard.api.app:app", host=settings.host, port=settings.port, reload=False)
