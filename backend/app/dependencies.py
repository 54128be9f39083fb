"""FastAPI dependency injection functions.

Services are built once in the application lifespan and stored on
``app.state``; these getters hand them to the routes.
"""

from fastapi import Request

from services.analytics_service import AnalyticsService
from services.workflow_service import WorkflowService
from triggers.manager import TriggerManager
from workflow.engine import WorkflowEngine


def get_engine(request: Request) -> WorkflowEngine:
    return request.app.state.engine


def get_workflow_service(request: Request) -> WorkflowService:
    return request.app.state.workflow_service


def get_analytics_service(request: Request) -> AnalyticsService:
    return request.app.state.analytics_service


def get_trigger_manager(request: Request) -> TriggerManager:
    return request.app.state.trigger_manager
