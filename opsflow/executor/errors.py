"""Execution engine error classes.

Every failure a node can raise is classified into one of four kinds. The
orchestrator reads ``retriable`` to decide whether another attempt is spent;
exceptions outside this hierarchy are treated as transient.
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorKind(str, Enum):
    """Failure classification."""

    CONFIGURATION = "configuration"
    NOT_IMPLEMENTED = "not_implemented"
    TRANSIENT = "transient"
    PERMANENT = "permanent"


class ExecutionError(Exception):
    """Base class for all execution errors."""

    kind: ErrorKind = ErrorKind.PERMANENT
    retriable: bool = False

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary."""
        return {
            "error": self.__class__.__name__,
            "kind": self.kind.value,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details,
        }


class ConfigurationError(ExecutionError):
    """Node or workflow configuration is unusable. Never retried."""

    kind = ErrorKind.CONFIGURATION

    def __init__(self, message: str, field: Optional[str] = None, **kwargs):
        kwargs.setdefault("error_code", "CONFIGURATION")
        super().__init__(message, **kwargs)
        self.field = field
        if field is not None:
            self.details["field"] = field


class NodeNotImplementedError(ExecutionError):
    """Node kind has no backing integration."""

    kind = ErrorKind.NOT_IMPLEMENTED

    def __init__(self, message: str, operation: Optional[str] = None, **kwargs):
        kwargs.setdefault("error_code", "NOT_IMPLEMENTED")
        super().__init__(message, **kwargs)
        self.operation = operation
        if operation is not None:
            self.details["operation"] = operation


class TransientError(ExecutionError):
    """Temporary failure, retried within the attempt budget."""

    kind = ErrorKind.TRANSIENT
    retriable = True

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("error_code", "TRANSIENT")
        super().__init__(message, **kwargs)


class PermanentError(ExecutionError):
    """Domain rejected the request; retrying cannot help."""

    kind = ErrorKind.PERMANENT

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("error_code", "PERMANENT")
        super().__init__(message, **kwargs)


class NodeExecutionError(ExecutionError):
    """Raised when node execution fails after classification."""

    def __init__(
        self,
        message: str,
        node_id: str,
        node_type: str,
        kind: ErrorKind,
        attempts: int = 1,
        run_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(message, **kwargs)
        self.node_id = node_id
        self.node_type = node_type
        self.kind = kind
        self.attempts = attempts
        self.run_id = run_id
        self.details.update({
            "node_id": node_id,
            "node_type": node_type,
            "attempts": attempts,
            "run_id": run_id,
        })


class WorkflowValidationError(ConfigurationError):
    """Raised when workflow validation fails."""

    def __init__(
        self,
        message: str,
        validation_errors: Optional[List[str]] = None,
        **kwargs
    ):
        kwargs.setdefault("error_code", "WORKFLOW_VALIDATION")
        super().__init__(message, **kwargs)
        self.validation_errors = validation_errors or []
        self.details["validation_errors"] = self.validation_errors


class CircularWorkflowError(ConfigurationError):
    """Raised when a workflow would invoke one of its own ancestors."""

    def __init__(
        self,
        message: str,
        workflow_path: Optional[List[str]] = None,
        **kwargs
    ):
        kwargs.setdefault("error_code", "CIRCULAR_WORKFLOW")
        super().__init__(message, **kwargs)
        self.workflow_path = workflow_path or []
        self.details["workflow_path"] = self.workflow_path


class SubWorkflowDepthError(ConfigurationError):
    """Raised when nested runs exceed the configured depth."""

    def __init__(self, message: str, max_depth: int, **kwargs):
        kwargs.setdefault("error_code", "SUBWORKFLOW_DEPTH")
        super().__init__(message, **kwargs)
        self.max_depth = max_depth
        self.details["max_depth"] = max_depth


class WorkflowNotFoundError(PermanentError):
    """Raised when a workflow definition does not exist."""

    def __init__(self, workflow_id: str, **kwargs):
        kwargs.setdefault("error_code", "WORKFLOW_NOT_FOUND")
        super().__init__(f"Workflow {workflow_id} not found", **kwargs)
        self.workflow_id = workflow_id
        self.details["workflow_id"] = workflow_id


class RunNotFoundError(ExecutionError):
    """Raised when a run id is unknown."""

    def __init__(self, run_id: str, **kwargs):
        kwargs.setdefault("error_code", "RUN_NOT_FOUND")
        super().__init__(f"Run {run_id} not found", **kwargs)
        self.run_id = run_id
        self.details["run_id"] = run_id


class TriggerAuthenticationError(ExecutionError):
    """Trigger ingress could not be authenticated."""

    def __init__(self, message: str = "Trigger authentication failed", **kwargs):
        kwargs.setdefault("error_code", "TRIGGER_AUTH")
        super().__init__(message, **kwargs)


class ChildRunFailedError(ExecutionError):
    """A nested run ended without succeeding.

    Carries the kind of the nested failure but is never retried by the
    parent: the nested run already spent its own attempts.
    """

    def __init__(
        self,
        message: str,
        kind: ErrorKind,
        child_run_id: str,
        failure: Optional[Dict[str, Any]] = None,
        **kwargs
    ):
        kwargs.setdefault("error_code", "CHILD_RUN_FAILED")
        super().__init__(message, **kwargs)
        self.kind = kind
        self.child_run_id = child_run_id
        self.details.update({"child_run_id": child_run_id, "failure": failure})


class ExecutionSignal(Exception):
    """Control-flow interruption raised by a node.

    Signals are not failures: they bypass retry and error reporting.
    """


def classify(error: BaseException) -> ErrorKind:
    """Return the failure kind of an exception."""
    if isinstance(error, ExecutionError):
        return error.kind
    return ErrorKind.TRANSIENT


def is_retriable(error: BaseException) -> bool:
    """Whether another attempt may succeed."""
    # Cancellation and interpreter exits end the attempt for good
    if not isinstance(error, Exception) or isinstance(error, ExecutionSignal):
        return False
    if isinstance(error, ExecutionError):
        return error.retriable
    return True
