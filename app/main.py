"""FastAPI entry point for the workflow execution service."""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import WorkflowSettings, get_settings
from .logging import configure_logging
from .routers import workflows


def create_app(settings: Optional[WorkflowSettings] = None) -> FastAPI:
    """Create a FastAPI application exposing the workflow run API."""

    resolved_settings = settings or get_settings()
    configure_logging(resolved_settings.log_level)

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        workflows.configure_workflow_service(resolved_settings)
        if resolved_settings.recover_runs_on_startup:
            await workflows.recover_workflow_runs()
        yield
        await workflows.shutdown_workflow_service()

    app = FastAPI(title=resolved_settings.app_name, lifespan=lifespan)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=resolved_settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(workflows.router)

    @app.get("/health", tags=["health"])
    def health_check() -> Dict[str, Optional[str]]:
        """Report service status and the configured agent provider."""

        return {
            "status": "ok",
            "service": resolved_settings.app_name,
            "llm_provider": resolved_settings.llm_provider,
        }

    @app.get("/ready", tags=["health"])
    def readiness_check() -> Dict[str, object]:
        """Readiness check endpoint for Kubernetes."""

        return {
            "status": "ready",
            "service": resolved_settings.app_name,
            "workflow_engine_ready": True,
            "max_execution_steps": resolved_settings.max_execution_steps,
        }

    return app


app = create_app()
