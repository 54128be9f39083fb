"""Analytics endpoints for workflow performance reporting."""

import structlog
from fastapi import APIRouter, Depends

from app.dependencies import get_analytics_service
from services.analytics_service import AnalyticsReport, AnalyticsRequest, AnalyticsService

logger = structlog.get_logger(__name__)

router = APIRouter(tags=["analytics"])


@router.post("/workflows", response_model=AnalyticsReport)
async def workflow_analytics(
    request: AnalyticsRequest,
    svc: AnalyticsService = Depends(get_analytics_service),
) -> AnalyticsReport:
    """
    Per-workflow execution metrics, a summary and recommendations.

    Args:
        request: Workflows to include (all when omitted), the period and
            whether to add step analytics and daily trends.

    Returns:
        Analytics report with:
        - analytics: one entry per workflow
        - summary: totals and averages across the entries
        - recommendations: reliability and performance suggestions
    """
    return await svc.analyze(request)
