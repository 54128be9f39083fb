"""Trigger event and result types.

The engine does not listen for events itself. An external source (a
webhook receiver, a scheduler, a document service) builds a TriggerEvent
and hands it to the TriggerManager, which maps it to ``execute`` calls.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from core.constants import TriggerType
from core.utils import utc_now
from workflow.models import ExecutionContext


@dataclass
class TriggerEvent:
    """Represents a single observed event.

    ``workflow_id`` narrows the event to one definition; without it every
    definition declaring a matching trigger is started.
    """

    trigger_type: TriggerType
    payload: dict[str, Any] = field(default_factory=dict)
    variables: dict[str, Any] = field(default_factory=dict)
    context: ExecutionContext = field(default_factory=ExecutionContext)
    workflow_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)
    correlation_id: Optional[str] = None


@dataclass
class TriggerResult:
    """Outcome of firing one event against one workflow."""

    success: bool
    message: str
    workflow_id: str
    trigger_id: Optional[str] = None
    execution_id: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
