"""Analytics service — per-workflow metrics over execution history.

Pure read-side: loads definitions and executions through the repositories
and never writes. Rates are fractions of the executions started inside the
requested period; duration statistics use COMPLETED executions only.
Cost and time savings are flat per-execution estimates, not a costing model.
"""

from collections import Counter, defaultdict
from datetime import date, datetime, timedelta
from typing import Any, Optional

import structlog
from pydantic import BaseModel, Field

from app.config import Settings, get_settings
from core.constants import (
    AnalyticsPeriod,
    ErrorType,
    ExecutionStatus,
    PERIOD_DAYS,
    RecommendationType,
    StepStatus,
    StepType,
)
from core.exceptions import ValidationError
from core.utils import ensure_utc, mean, median, utc_now
from services.repository import Repository
from workflow.models import WorkflowDefinition, WorkflowExecution

logger = structlog.get_logger(__name__)

# A step with at least this error rate is flagged as error-prone
ERROR_PRONE_RATE = 0.2
# A step taking at least this share of the summed step durations is a bottleneck
BOTTLENECK_SHARE = 0.5


# ─── Schemas ──────────────────────────────────────────────────

class AnalyticsRequest(BaseModel):
    workflow_ids: Optional[list[str]] = None
    period: AnalyticsPeriod = AnalyticsPeriod.LAST_30_DAYS
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    include_step_analytics: bool = False
    include_trends: bool = False


class ErrorSummary(BaseModel):
    code: str
    message: str
    occurrences: int
    last_occurrence: datetime


class StepAnalytics(BaseModel):
    step_id: str
    step_name: str
    step_type: StepType
    total_executions: int = 0
    average_duration: float = 0.0
    success_rate: float = 0.0
    error_rate: float = 0.0
    timeout_rate: float = 0.0
    skip_rate: float = 0.0
    common_errors: list[ErrorSummary] = Field(default_factory=list)


class TrendPoint(BaseModel):
    day: date
    value: float
    change: Optional[float] = None  # percent vs the previous point


class WorkflowAnalytics(BaseModel):
    workflow_id: str
    workflow_name: str
    period: AnalyticsPeriod
    period_start: datetime
    period_end: datetime
    total_executions: int = 0
    recent_executions: int = 0
    average_executions_per_day: float = 0.0
    average_duration: float = 0.0
    median_duration: float = 0.0
    fastest_execution: float = 0.0
    slowest_execution: float = 0.0
    success_rate: float = 0.0
    error_rate: float = 0.0
    timeout_rate: float = 0.0
    step_performance: list[StepAnalytics] = Field(default_factory=list)
    bottleneck_steps: list[str] = Field(default_factory=list)
    error_prone_steps: list[str] = Field(default_factory=list)
    common_errors: list[ErrorSummary] = Field(default_factory=list)
    cost_savings: float = 0.0
    time_saved_hours: float = 0.0
    documents_generated: int = 0
    approvals_processed: int = 0
    usage_trend: list[TrendPoint] = Field(default_factory=list)
    performance_trend: list[TrendPoint] = Field(default_factory=list)
    error_trend: list[TrendPoint] = Field(default_factory=list)
    last_calculated: datetime = Field(default_factory=utc_now)


class AnalyticsSummary(BaseModel):
    total_workflows: int = 0
    total_executions: int = 0
    recent_executions: int = 0
    average_success_rate: float = 0.0
    average_duration: float = 0.0
    top_performing_workflows: list[str] = Field(default_factory=list)
    bottleneck_workflows: list[str] = Field(default_factory=list)
    cost_savings: float = 0.0
    time_saved_hours: float = 0.0


class AnalyticsRecommendation(BaseModel):
    type: RecommendationType
    title: str
    description: str
    impact: str
    effort: str
    workflow_ids: list[str]


class AnalyticsReport(BaseModel):
    analytics: list[WorkflowAnalytics]
    summary: AnalyticsSummary
    recommendations: list[AnalyticsRecommendation] = Field(default_factory=list)


# ─── Service ──────────────────────────────────────────────────

class AnalyticsService:
    """Computes workflow analytics from stored executions."""

    def __init__(
        self,
        definitions: Repository[WorkflowDefinition],
        executions: Repository[WorkflowExecution],
        settings: Optional[Settings] = None,
    ):
        self._definitions = definitions
        self._executions = executions
        self._settings = settings or get_settings()

    async def analyze(self, request: AnalyticsRequest, now: Optional[datetime] = None) -> AnalyticsReport:
        """Build the report for the requested workflows (all if none given).

        Unknown workflow ids are skipped.

        Raises:
            ValidationError: CUSTOM period without a valid date range
        """
        now = ensure_utc(now) or utc_now()
        start, end = self._period_bounds(request, now)

        if request.workflow_ids is None:
            definitions, _ = await self._definitions.list()
        else:
            definitions = []
            for workflow_id in request.workflow_ids:
                definition = await self._definitions.get(workflow_id)
                if definition is not None:
                    definitions.append(definition)

        analytics = []
        for definition in definitions:
            executions, _ = await self._executions.list({"workflow_definition_id": definition.id})
            analytics.append(self._analyze_workflow(definition, executions, request, start, end))

        report = AnalyticsReport(
            analytics=analytics,
            summary=self._summarize(analytics),
            recommendations=self._recommend(analytics),
        )
        logger.info(
            "analytics_calculated",
            workflows=len(analytics),
            period=request.period.value,
            recommendations=len(report.recommendations),
        )
        return report

    def _period_bounds(self, request: AnalyticsRequest, now: datetime) -> tuple[datetime, datetime]:
        if request.period == AnalyticsPeriod.CUSTOM:
            if request.start_date is None or request.end_date is None:
                raise ValidationError("CUSTOM period requires start_date and end_date")
            start, end = ensure_utc(request.start_date), ensure_utc(request.end_date)
            if start >= end:
                raise ValidationError("start_date must be before end_date")
            return start, end
        return now - timedelta(days=PERIOD_DAYS[request.period]), now

    def _analyze_workflow(
        self,
        definition: WorkflowDefinition,
        executions: list[WorkflowExecution],
        request: AnalyticsRequest,
        start: datetime,
        end: datetime,
    ) -> WorkflowAnalytics:
        recent = [e for e in executions if start <= ensure_utc(e.start_time) <= end]
        completed = [e for e in recent if e.status == ExecutionStatus.COMPLETED]
        failed = [e for e in recent if e.status == ExecutionStatus.ERROR]
        timed_out = [e for e in recent if any(err.type == ErrorType.TIMEOUT for err in e.errors)]
        durations = [e.duration for e in completed if e.duration is not None]
        days = max(1, (end - start).days)
        total = len(recent)

        result = WorkflowAnalytics(
            workflow_id=definition.id,
            workflow_name=definition.name,
            period=request.period,
            period_start=start,
            period_end=end,
            total_executions=len(executions),
            recent_executions=total,
            average_executions_per_day=total / days,
            average_duration=mean(durations),
            median_duration=median(durations),
            fastest_execution=min(durations) if durations else 0.0,
            slowest_execution=max(durations) if durations else 0.0,
            success_rate=len(completed) / total if total else 0.0,
            error_rate=len(failed) / total if total else 0.0,
            timeout_rate=len(timed_out) / total if total else 0.0,
            common_errors=_common_errors(err for e in recent for err in e.errors),
            cost_savings=self._settings.ANALYTICS_COST_PER_EXECUTION * len(completed),
            time_saved_hours=self._settings.ANALYTICS_HOURS_SAVED_PER_EXECUTION * len(completed),
            documents_generated=sum(e.metrics.documents_generated for e in recent),
            approvals_processed=sum(
                1
                for e in recent
                for run in e.step_runs.values()
                if run.step_type == StepType.APPROVAL_GATE and run.status == StepStatus.COMPLETED
            ),
        )

        if request.include_step_analytics:
            result.step_performance = [_step_analytics(step, recent) for step in definition.steps]
            result.bottleneck_steps = _bottlenecks(result.step_performance)
            result.error_prone_steps = [
                s.step_id for s in result.step_performance
                if s.total_executions and s.error_rate >= ERROR_PRONE_RATE
            ]

        if request.include_trends:
            result.usage_trend, result.performance_trend, result.error_trend = _trends(recent, start, end)

        return result

    def _summarize(self, analytics: list[WorkflowAnalytics]) -> AnalyticsSummary:
        active = [a for a in analytics if a.recent_executions]
        return AnalyticsSummary(
            total_workflows=len(analytics),
            total_executions=sum(a.total_executions for a in analytics),
            recent_executions=sum(a.recent_executions for a in analytics),
            average_success_rate=mean([a.success_rate for a in active]),
            average_duration=mean([a.average_duration for a in active if a.average_duration]),
            top_performing_workflows=[
                a.workflow_id for a in sorted(active, key=lambda a: a.success_rate, reverse=True)[:5]
            ],
            bottleneck_workflows=[
                a.workflow_id
                for a in sorted(active, key=lambda a: a.average_duration, reverse=True)[:3]
                if a.average_duration
            ],
            cost_savings=sum(a.cost_savings for a in analytics),
            time_saved_hours=sum(a.time_saved_hours for a in analytics),
        )

    def _recommend(self, analytics: list[WorkflowAnalytics]) -> list[AnalyticsRecommendation]:
        # Workflows without executions in the period have nothing to judge
        active = [a for a in analytics if a.recent_executions]
        recommendations = []

        unreliable = [a.workflow_id for a in active if a.success_rate < self._settings.ANALYTICS_RELIABILITY_THRESHOLD]
        if unreliable:
            recommendations.append(AnalyticsRecommendation(
                type=RecommendationType.RELIABILITY,
                title="Improve workflow reliability",
                description=(
                    f"Success rate is below {self._settings.ANALYTICS_RELIABILITY_THRESHOLD:.0%}. "
                    "Review error-prone steps and their on-error policy."
                ),
                impact="high",
                effort="medium",
                workflow_ids=unreliable,
            ))

        slow = [a.workflow_id for a in active if a.average_duration > self._settings.ANALYTICS_SLOW_DURATION_MS]
        if slow:
            recommendations.append(AnalyticsRecommendation(
                type=RecommendationType.PERFORMANCE,
                title="Optimize slow workflows",
                description="Average duration is above the expected range. Look at bottleneck steps.",
                impact="medium",
                effort="high",
                workflow_ids=slow,
            ))

        return recommendations


# ─── Helpers ──────────────────────────────────────────────────

def _common_errors(errors, limit: int = 5) -> list[ErrorSummary]:
    counts: Counter = Counter()
    latest: dict[str, Any] = {}
    for err in errors:
        counts[err.code] += 1
        seen = latest.get(err.code)
        if seen is None or ensure_utc(err.timestamp) >= ensure_utc(seen.timestamp):
            latest[err.code] = err
    return [
        ErrorSummary(
            code=code,
            message=latest[code].message,
            occurrences=count,
            last_occurrence=latest[code].timestamp,
        )
        for code, count in counts.most_common(limit)
    ]


def _step_analytics(step, executions: list[WorkflowExecution]) -> StepAnalytics:
    runs = [e.step_runs[step.id] for e in executions if step.id in e.step_runs]
    total = len(runs)
    completed = [r for r in runs if r.status == StepStatus.COMPLETED]
    failed = [r for r in runs if r.status in (StepStatus.FAILED, StepStatus.TIMEOUT)]
    timed_out = [r for r in runs if r.status == StepStatus.TIMEOUT]
    skipped = [r for r in runs if r.status == StepStatus.SKIPPED]
    errors = [err for e in executions for err in e.errors if err.step_id == step.id]

    return StepAnalytics(
        step_id=step.id,
        step_name=step.display_name,
        step_type=step.type,
        total_executions=total,
        average_duration=mean([r.duration_ms for r in completed if r.duration_ms is not None]),
        success_rate=len(completed) / total if total else 0.0,
        error_rate=len(failed) / total if total else 0.0,
        timeout_rate=len(timed_out) / total if total else 0.0,
        skip_rate=len(skipped) / total if total else 0.0,
        common_errors=_common_errors(errors),
    )


def _bottlenecks(steps: list[StepAnalytics]) -> list[str]:
    timed = [s for s in steps if s.average_duration > 0]
    if len(timed) < 2:
        return []
    overall = sum(s.average_duration for s in timed)
    return [s.step_id for s in timed if s.average_duration / overall >= BOTTLENECK_SHARE]


def _trends(
    executions: list[WorkflowExecution],
    start: datetime,
    end: datetime,
) -> tuple[list[TrendPoint], list[TrendPoint], list[TrendPoint]]:
    """Daily usage, mean completed duration and error counts across the period."""
    by_day: dict[date, list[WorkflowExecution]] = defaultdict(list)
    for e in executions:
        by_day[ensure_utc(e.start_time).date()].append(e)

    usage, performance, errors = [], [], []
    day = start.date()
    while day <= end.date():
        bucket = by_day.get(day, [])
        usage.append((day, float(len(bucket))))
        performance.append((day, mean([
            e.duration for e in bucket if e.status == ExecutionStatus.COMPLETED and e.duration is not None
        ])))
        errors.append((day, float(sum(1 for e in bucket if e.status == ExecutionStatus.ERROR))))
        day += timedelta(days=1)

    return _with_change(usage), _with_change(performance), _with_change(errors)


def _with_change(points: list[tuple[date, float]]) -> list[TrendPoint]:
    out = []
    previous: Optional[float] = None
    for day, value in points:
        change = None
        if previous:
            change = round((value - previous) / previous * 100, 2)
        out.append(TrendPoint(day=day, value=value, change=change))
        previous = value
    return out
