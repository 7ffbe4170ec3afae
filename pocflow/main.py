"""PocFlow API — FastAPI application entry point.

Invariants:
    - Routes registered explicitly (no auto-discovery)
    - Global error handlers map PocFlowError → structured JSON responses
    - CORS configured from settings (not hardcoded)
    - One shared BackendClient and one OrchestratorRegistry per process,
      created in lifespan and closed on shutdown (all adapters cancelled)

Design Decisions:
    - Lifespan over @app.on_event: FastAPI recommended pattern, cleaner cleanup
    - create_app() factory so tests build an app around a fake backend
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from pocflow.api.error_handlers import register_error_handlers
from pocflow.api.routes import health, workflow
from pocflow.config import Settings, get_settings
from pocflow.core.backend_protocols import WorkflowBackend
from pocflow.infrastructure.backend_client import BackendClient
from pocflow.infrastructure.observability import setup_logging
from pocflow.services.orchestrator_registry import OrchestratorRegistry

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    backend: WorkflowBackend | None = None,
) -> FastAPI:
    """Build the app. A provided backend is used as-is and not closed on shutdown."""
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup/shutdown lifecycle."""
        setup_logging(settings.log_level, settings.log_format)
        client = None
        if backend is None:
            client = BackendClient(
                settings.backend_base_url,
                timeout_seconds=settings.backend_timeout_seconds,
                connect_timeout_seconds=settings.backend_connect_timeout_seconds,
                agent_timeout_seconds=settings.backend_agent_timeout_seconds,
            )
        app.state.registry = OrchestratorRegistry(backend or client, settings)
        logger.info("PocFlow API started")
        yield
        logger.info("PocFlow API shutting down")
        await app.state.registry.close()
        if client is not None:
            await client.aclose()

    app = FastAPI(title="PocFlow API", version="1.0.0", lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Routes: explicit registration
    app.include_router(health.router)
    app.include_router(workflow.router)

    register_error_handlers(app)
    return app


app = create_app()
