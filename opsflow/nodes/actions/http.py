"""HTTP action node for making HTTP requests."""

import json
import math
from typing import Any, Dict, Optional

import httpx
import structlog

from opsflow.executor.errors import ConfigurationError, PermanentError, TransientError
from ..base import (
    ActionNode,
    NodeCategory,
    NodeDefinition,
    NodeParameter,
    ParameterType,
    variable_name_parameter,
)

logger = structlog.get_logger()


class HTTPRequestNode(ActionNode):
    """Node for making HTTP requests."""

    definition = NodeDefinition(
        name="HTTP Request",
        type="HTTP_REQUEST",
        category=NodeCategory.INTEGRATION,
        description="Make HTTP requests to web APIs and services",
        default_variable_name="httpResponse",
        parameters=[
            variable_name_parameter(),
            NodeParameter(
                name="endpoint",
                display_name="Endpoint URL",
                type=ParameterType.STRING,
                required=True,
                description="The URL to make the request to",
            ),
            NodeParameter(
                name="method",
                display_name="HTTP Method",
                type=ParameterType.OPTIONS,
                default="GET",
                templated=False,
                options=["GET", "POST", "PUT", "PATCH", "DELETE"],
            ),
            NodeParameter(
                name="body",
                display_name="Body",
                type=ParameterType.STRING,
                description="JSON request body for POST, PUT and PATCH",
            ),
            NodeParameter(
                name="headers",
                display_name="Headers",
                type=ParameterType.JSON,
                description="HTTP headers to include",
            ),
            NodeParameter(
                name="timeout",
                display_name="Timeout (seconds)",
                type=ParameterType.NUMBER,
                default=30,
                templated=False,
            ),
        ],
    )

    def __init__(self, context, definition=None, client: Optional[httpx.AsyncClient] = None):
        super().__init__(context, definition)
        self.client = client or context.extras.get("http_client")

    def _parse_body(self, method: str, body: Any) -> Optional[Any]:
        if method not in ("POST", "PUT", "PATCH") or body in (None, ""):
            return None
        if isinstance(body, (dict, list)):
            return body
        try:
            return json.loads(body)
        except ValueError as e:
            raise ConfigurationError("HTTP Request error: Body must be valid JSON.", field="body") from e

    async def _send(self, method: str, url: str, body: Any, headers: Dict[str, str], timeout: float) -> Dict[str, Any]:
        try:
            if self.client is not None:
                response = await self.client.request(method, url, json=body, headers=headers, timeout=timeout)
            else:
                async with httpx.AsyncClient(timeout=timeout) as client:
                    response = await client.request(method, url, json=body, headers=headers)
        except httpx.TimeoutException as e:
            raise TransientError(f"HTTP Request timed out: {url}") from e
        except httpx.TransportError as e:
            raise TransientError(f"HTTP Request failed: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise TransientError(
                f"HTTP Request failed with status {response.status_code}",
                details={"status_code": response.status_code},
            )
        if response.status_code >= 400:
            raise PermanentError(
                f"HTTP Request failed with status {response.status_code}",
                details={"status_code": response.status_code, "body": response.text[:1000]},
            )

        content_type = response.headers.get("content-type", "")
        data: Any = response.text
        if "application/json" in content_type and response.content:
            data = response.json()
        return {
            "status": response.status_code,
            "statusText": response.reason_phrase,
            "data": data,
        }

    @staticmethod
    def timeout_seconds(value: Any) -> float:
        if value in (None, ""):
            return 30.0
        try:
            timeout = float(value)
        except (TypeError, ValueError) as e:
            raise ConfigurationError("HTTP Request error: Timeout must be a number.", field="timeout") from e
        if not math.isfinite(timeout) or timeout <= 0:
            raise ConfigurationError("HTTP Request error: Timeout must be greater than 0.", field="timeout")
        return timeout

    async def execute(self, parameters: Dict[str, Any]) -> Dict[str, Any]:
        method = str(parameters.get("method") or "GET").upper()
        url = parameters["endpoint"]
        body = self._parse_body(method, parameters.get("body"))
        headers = parameters.get("headers") or {}
        if isinstance(headers, str):
            try:
                headers = json.loads(headers)
            except ValueError as e:
                raise ConfigurationError("HTTP Request error: Headers must be valid JSON.", field="headers") from e
        if not isinstance(headers, dict):
            raise ConfigurationError("HTTP Request error: Headers must be an object.", field="headers")
        timeout = self.timeout_seconds(parameters.get("timeout"))

        result = await self.context.steps.run(
            self.step_key("http-request"),
            lambda: self._send(method, url, body, headers, timeout),
        )
        return self.bind_output(result, parameters)
