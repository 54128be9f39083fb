"""Workflow Automation Engine - FastAPI Application."""

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.routes import health
from api.v1.router import api_v1_router
from app.config import Settings, get_settings
from core.logging_config import setup_logging
from core.middleware import RequestTrackingMiddleware, setup_exception_handlers
from db.database import close_db, create_db_engine, create_session_factory, init_db
from services.analytics_service import AnalyticsService
from services.repository import InMemoryRepository, Repository
from services.sql_repository import definition_repository, execution_repository
from services.workflow_service import WorkflowService
from tasks.capabilities import Capabilities
from tasks.implementations.http_task import HttpxApiClient
from tasks.registry import TaskRegistry
from triggers.manager import TriggerManager
from workflow.engine import WorkflowEngine
from workflow.models import WorkflowDefinition, WorkflowExecution

logger = structlog.get_logger(__name__)


def wire_services(
    app: FastAPI,
    definitions: Repository[WorkflowDefinition],
    executions: Repository[WorkflowExecution],
    capabilities: Optional[Capabilities] = None,
    settings: Optional[Settings] = None,
    task_registry: Optional[TaskRegistry] = None,
) -> WorkflowEngine:
    """Build the engine and services over the given stores and attach them to ``app.state``."""
    settings = settings or get_settings()
    engine = WorkflowEngine(
        definitions,
        executions,
        task_registry=task_registry,
        capabilities=capabilities,
        settings=settings,
    )

    app.state.engine = engine
    app.state.workflow_service = WorkflowService(definitions, engine)
    app.state.analytics_service = AnalyticsService(definitions, executions, settings)
    app.state.trigger_manager = TriggerManager(definitions, engine)
    return engine


def default_capabilities(settings: Settings) -> Capabilities:
    # Documents, notifications and task assignment are supplied by the host system
    return Capabilities(
        api_client=HttpxApiClient(
            timeout=settings.API_CALL_TIMEOUT_SECONDS,
            allow_private_hosts=settings.API_CALL_ALLOW_PRIVATE_HOSTS,
        )
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown events."""
    # Startup
    settings = get_settings()
    setup_logging(settings)

    db_engine = None
    if settings.STORE_BACKEND == "sql":
        db_engine = create_db_engine(settings)
        await init_db(db_engine)
        session_factory = create_session_factory(db_engine)
        definitions = definition_repository(session_factory)
        executions = execution_repository(session_factory)
    else:
        definitions = InMemoryRepository(WorkflowDefinition)
        executions = InMemoryRepository(WorkflowExecution)
    app.state.db_engine = db_engine

    wire_services(app, definitions, executions, default_capabilities(settings), settings)

    logger.info(
        "application_started",
        app=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
        store=settings.STORE_BACKEND,
    )
    yield
    # Shutdown
    running = app.state.engine.get_running_executions()
    if running:
        logger.warning("shutdown_with_running_executions", count=len(running))
    if db_engine is not None:
        await close_db(db_engine)
    logger.info("application_stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Workflow definition, execution and analytics engine "
                    "for multi-step business processes.",
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
        lifespan=lifespan,
    )

    # Request tracking middleware
    app.add_middleware(RequestTrackingMiddleware)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    )

    # Global exception handlers
    setup_exception_handlers(app)

    # Root health check (unversioned, for load balancers / k8s probes)
    app.include_router(health.router, prefix="/api", tags=["Health"])

    # Versioned API, all business endpoints under /api/v1
    app.include_router(api_v1_router, prefix=settings.API_V1_PREFIX)

    return app


app = create_app()
