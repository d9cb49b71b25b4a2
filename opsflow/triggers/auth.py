"""Trigger ingress authentication."""

import hashlib
import hmac
from typing import Mapping, Optional

import structlog

from opsflow.executor.errors import TriggerAuthenticationError
from opsflow.workflows.schemas import WorkflowDefinition

logger = structlog.get_logger()

SIGNATURE_HEADER = "X-Opsflow-Signature"
WORKFLOW_SECRET_SETTING = "webhookSecret"


def generate_signature(payload: bytes, secret: str) -> str:
    """HMAC-SHA256 signature of a request body."""
    digest = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


class TriggerAuthenticator:
    """Checks a shared secret header or a body signature.

    A workflow may store its own secret under ``settings.webhookSecret``;
    otherwise the service-wide secret applies. Without any secret every
    request is rejected unless ``allow_unauthenticated`` is set.
    """

    def __init__(
        self,
        secret: Optional[str] = None,
        header: str = "X-Opsflow-Secret",
        signature_header: str = SIGNATURE_HEADER,
        allow_unauthenticated: bool = False,
    ):
        self.secret = secret
        self.allow_unauthenticated = allow_unauthenticated
        self.header = header.lower()
        self.signature_header = signature_header.lower()
        self.logger = logger.bind(component="trigger_auth")

    def secret_for(self, workflow: Optional[WorkflowDefinition] = None) -> Optional[str]:
        if workflow is not None:
            stored = workflow.settings.get(WORKFLOW_SECRET_SETTING)
            if stored:
                return str(stored)
        return self.secret

    def authenticate(
        self,
        headers: Mapping[str, str],
        body: bytes = b"",
        workflow: Optional[WorkflowDefinition] = None,
    ) -> None:
        """Raise :class:`TriggerAuthenticationError` unless the request is trusted."""
        secret = self.secret_for(workflow)
        if not secret:
            if self.allow_unauthenticated:
                return
            self.logger.warning(
                "Trigger rejected, no secret configured",
                workflow_id=workflow.id if workflow else None,
            )
            raise TriggerAuthenticationError("Trigger ingress has no secret configured")

        normalized = {key.lower(): value for key, value in headers.items()}
        provided = normalized.get(self.header)
        if provided and hmac.compare_digest(provided, secret):
            return

        signature = normalized.get(self.signature_header)
        if signature and hmac.compare_digest(signature, generate_signature(body, secret)):
            return

        self.logger.warning(
            "Trigger authentication failed",
            workflow_id=workflow.id if workflow else None,
            had_secret=provided is not None,
            had_signature=signature is not None,
        )
        raise TriggerAuthenticationError()
