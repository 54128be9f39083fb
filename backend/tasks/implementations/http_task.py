"""API call step and the default httpx-based ApiClient.

The step itself only shapes the request and the output; the actual call
goes through the ``api_client`` capability. HttpxApiClient is the stock
implementation, with SSRF guards on the target URL.
"""

import ipaddress
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import httpx
import structlog

from core.constants import ErrorCode, StepType
from core.exceptions import StepExecutionError
from tasks.base_task import BaseTask, StepContext, TaskResult
from workflow.step_configs import ApiCallConfig

logger = structlog.get_logger(__name__)

ALLOWED_METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"}
FORBIDDEN_PORTS = (5432, 6379, 9000)


def _is_private_ip(ip_str: str) -> bool:
    """Check if an IP address is private, loopback or reserved."""
    try:
        ip = ipaddress.ip_address(ip_str)
        return ip.is_private or ip.is_loopback or ip.is_reserved or ip.is_link_local
    except ValueError:
        return False


def validate_url_safety(url: str, allow_private: bool = False) -> None:
    """Validate a URL before calling it.

    Blocks:
    - Non-HTTP(S) schemes
    - Private/loopback IPs and localhost (unless allow_private)
    - Internal service ports

    Raises:
        ValueError: If URL is unsafe
    """
    parsed = urlparse(url)

    if parsed.scheme.lower() not in ("http", "https"):
        raise ValueError(f"Unsupported scheme: {parsed.scheme or '(none)'}. Only HTTP and HTTPS allowed.")

    hostname = parsed.hostname
    if not hostname:
        raise ValueError("URL must have a valid hostname")

    if not allow_private:
        if hostname.lower() in ("localhost", "127.0.0.1", "::1"):
            raise ValueError("Connections to localhost are not allowed")
        # Domain names are not resolved here
        if _is_private_ip(hostname):
            raise ValueError(f"Connections to private IP {hostname} are not allowed")

        if parsed.port and parsed.port in FORBIDDEN_PORTS:
            raise ValueError(f"Connections to internal port {parsed.port} are not allowed")


class HttpxApiClient:
    """ApiClient capability backed by httpx.AsyncClient."""

    def __init__(
        self,
        timeout: float = 30.0,
        allow_private_hosts: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._timeout = timeout
        self._allow_private = allow_private_hosts
        self._transport = transport

    async def request(
        self,
        method: str,
        endpoint: str,
        headers: Optional[Dict[str, str]] = None,
        payload: Any = None,
    ) -> Dict[str, Any]:
        try:
            validate_url_safety(endpoint, allow_private=self._allow_private)
        except ValueError as e:
            raise StepExecutionError(str(e), code=ErrorCode.INTEGRATION_ERROR.value, retryable=False)

        method = method.upper()
        kwargs: Dict[str, Any] = {"headers": headers or {}}
        if payload is not None and method not in ("GET", "HEAD", "DELETE"):
            if isinstance(payload, (dict, list)):
                kwargs["json"] = payload
            else:
                kwargs["content"] = str(payload)
        elif isinstance(payload, dict) and method == "GET":
            kwargs["params"] = payload

        try:
            async with httpx.AsyncClient(
                timeout=self._timeout,
                transport=self._transport,
                follow_redirects=True,
            ) as client:
                response = await client.request(method, endpoint, **kwargs)
        except httpx.TimeoutException as e:
            raise StepExecutionError(
                f"Request to {endpoint} timed out: {e}",
                code=ErrorCode.INTEGRATION_ERROR.value,
                retryable=True,
            )
        except httpx.HTTPError as e:
            raise StepExecutionError(
                f"Request to {endpoint} failed: {e}",
                code=ErrorCode.INTEGRATION_ERROR.value,
                retryable=True,
            )

        content_type = response.headers.get("content-type", "")
        body: Any
        if "application/json" in content_type:
            try:
                body = response.json()
            except ValueError:
                body = response.text
        else:
            body = response.text

        if response.status_code >= 400:
            raise StepExecutionError(
                f"{method} {endpoint} returned HTTP {response.status_code}",
                code=ErrorCode.INTEGRATION_ERROR.value,
                retryable=response.status_code >= 500 or response.status_code == 429,
                details={"status_code": response.status_code},
            )

        return {
            "status_code": response.status_code,
            "headers": dict(response.headers),
            "body": body,
        }


class ApiCallTask(BaseTask):
    """Call an external API through the api_client capability.

    Config:
        endpoint: Target URL (required)
        method: HTTP method (required)
        headers: Dict of HTTP headers
        payload: JSON body, or query params for GET
    """

    task_type = StepType.API_CALL.value
    display_name = "API Call"
    description = "Call an external HTTP API"
    config_model = ApiCallConfig

    async def execute(self, ctx: StepContext) -> TaskResult:
        config: ApiCallConfig = ctx.config
        method = config.method.upper()
        if method not in ALLOWED_METHODS:
            return TaskResult.failure(
                f"Unsupported HTTP method: {config.method}",
                code=ErrorCode.VALIDATION.value,
                retryable=False,
            )

        client = ctx.capabilities.require("api_client")
        response = await client.request(method, config.endpoint, config.headers, config.payload)

        return TaskResult(
            success=True,
            output={
                "endpoint": config.endpoint,
                "method": method,
                "response": response,
            },
            metrics={"api_calls_made": 1},
        )


HTTP_TASK_TYPES = {
    StepType.API_CALL: ApiCallTask,
}
