"""Domain operations gateway.

Action nodes never talk to CRM, calendar or messaging backends directly;
they invoke a named operation here. Failures are mapped onto the execution
error taxonomy so the orchestrator can decide whether to retry.
"""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

import httpx
import structlog

from opsflow.executor.errors import NodeNotImplementedError, PermanentError, TransientError

logger = structlog.get_logger()


@dataclass(frozen=True)
class OperationContext:
    """Who is asking and on behalf of which run."""
    user_id: Optional[str] = None
    run_id: Optional[str] = None
    node_id: Optional[str] = None


Operation = Callable[[Dict[str, Any], OperationContext], Awaitable[Any]]


class DomainOperations:
    """Registry of named async operations."""

    def __init__(self, operations: Optional[Dict[str, Operation]] = None):
        self._operations: Dict[str, Operation] = dict(operations or {})
        self.logger = logger.bind(component="domain_operations")

    def register(self, name: str, operation: Optional[Operation] = None):
        """Register an operation; usable as a decorator."""
        if operation is not None:
            self._operations[name] = operation
            return operation

        def decorator(func: Operation) -> Operation:
            self._operations[name] = func
            return func

        return decorator

    def supports(self, name: str) -> bool:
        return name in self._operations

    @property
    def names(self) -> Iterable[str]:
        return sorted(self._operations)

    async def invoke(
        self,
        name: str,
        payload: Dict[str, Any],
        *,
        user_id: Optional[str] = None,
        run_id: Optional[str] = None,
        node_id: Optional[str] = None,
    ) -> Any:
        operation = self._operations.get(name)
        if operation is None:
            raise NodeNotImplementedError(f"Operation {name} is not implemented yet.", operation=name)
        self.logger.debug("Invoking operation", operation=name, run_id=run_id, node_id=node_id)
        return await operation(payload, OperationContext(user_id=user_id, run_id=run_id, node_id=node_id))


class HttpDomainOperations(DomainOperations):
    """Operations served by a remote backend at ``POST {base_url}/operations/{name}``.

    Locally registered operations take precedence. Timeouts, transport
    errors, 429 and 5xx responses are transient; 501 means the backend does
    not implement the operation; other 4xx responses are permanent.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        operations: Optional[Dict[str, Operation]] = None,
    ):
        super().__init__(operations)
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout, headers=headers)

    def supports(self, name: str) -> bool:
        return True

    async def invoke(
        self,
        name: str,
        payload: Dict[str, Any],
        *,
        user_id: Optional[str] = None,
        run_id: Optional[str] = None,
        node_id: Optional[str] = None,
    ) -> Any:
        if super().supports(name):
            return await super().invoke(name, payload, user_id=user_id, run_id=run_id, node_id=node_id)

        body = {"payload": payload, "userId": user_id, "runId": run_id, "nodeId": node_id}
        try:
            response = await self.client.post(f"/operations/{name}", json=body)
        except httpx.TimeoutException as e:
            raise TransientError(f"Operation {name} timed out", details={"operation": name}) from e
        except httpx.TransportError as e:
            raise TransientError(
                f"Operation {name} unreachable: {e}", details={"operation": name}
            ) from e

        status = response.status_code
        if status == 501:
            raise NodeNotImplementedError(f"Operation {name} is not implemented yet.", operation=name)
        if status == 429 or status >= 500:
            raise TransientError(
                f"Operation {name} failed with status {status}",
                details={"operation": name, "status_code": status},
            )
        if status >= 400:
            raise PermanentError(
                _error_message(response) or f"Operation {name} rejected with status {status}",
                details={"operation": name, "status_code": status},
            )
        if not response.content:
            return None
        return response.json()

    async def close(self) -> None:
        await self.client.aclose()


def _error_message(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return response.text or None
    if isinstance(body, dict):
        message = body.get("message") or body.get("detail") or body.get("error")
        return str(message) if message else None
    return None
