"""Trigger ingress: authentication, adapter and HTTP routes."""

from .adapter import TriggerAdapter, parse_payload
from .auth import TriggerAuthenticator, generate_signature
from .schedule import due_schedules, schedule_run_id

__all__ = [
    "TriggerAdapter",
    "TriggerAuthenticator",
    "due_schedules",
    "generate_signature",
    "parse_payload",
    "schedule_run_id",
]
