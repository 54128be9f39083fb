"""Injected side-effect capabilities.

The engine never renders documents, sends messages or calls third-party
systems itself. Step handlers reach those through the protocols below,
supplied by whoever builds the engine. A step whose capability is absent
fails with CAPABILITY_NOT_CONFIGURED.
"""

from dataclasses import dataclass
from typing import Any, Optional, Protocol, runtime_checkable

from core.constants import ErrorCode
from core.exceptions import StepExecutionError


@runtime_checkable
class DocumentRenderer(Protocol):
    async def render(
        self,
        template_id: str,
        output_formats: list[str],
        data: dict[str, Any],
        document_name: Optional[str] = None,
    ) -> dict[str, Any]:
        """Render a template; returns at least ``document_id``."""
        ...


@runtime_checkable
class Notifier(Protocol):
    async def send(
        self,
        channel: str,
        recipients: list[str],
        subject: Optional[str],
        message: str,
    ) -> dict[str, Any]:
        """Deliver a message on ``channel`` (email, sms, slack)."""
        ...


@runtime_checkable
class ApiClient(Protocol):
    async def request(
        self,
        method: str,
        endpoint: str,
        headers: Optional[dict[str, str]] = None,
        payload: Any = None,
    ) -> dict[str, Any]:
        """Perform a call; returns ``status_code`` and ``body``."""
        ...


@runtime_checkable
class TaskAssigner(Protocol):
    async def assign(
        self,
        assigned_to: list[str],
        assigned_roles: list[str],
        title: str,
        description: Optional[str] = None,
        due_in_days: Optional[int] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """Create a work item; returns at least ``task_id``."""
        ...


@dataclass
class Capabilities:
    """Bundle of optional capabilities handed to every step handler."""

    documents: Optional[DocumentRenderer] = None
    notifier: Optional[Notifier] = None
    api_client: Optional[ApiClient] = None
    task_assigner: Optional[TaskAssigner] = None

    def require(self, name: str) -> Any:
        capability = getattr(self, name, None)
        if capability is None:
            raise StepExecutionError(
                f"Capability '{name}' is not configured",
                code=ErrorCode.CAPABILITY_NOT_CONFIGURED.value,
                retryable=False,
            )
        return capability
