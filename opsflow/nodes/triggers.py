"""Trigger node implementations.

Triggers are passive: the payload that started the run is already in the
context under ``triggerData`` and the trigger node re-exposes it under its
configured variable name, or a per-kind default when the configured name is
missing or not a valid identifier.
"""

from datetime import datetime
from typing import Any, Dict, List, NamedTuple, Optional, Sequence, Tuple

import pytz
from croniter import croniter

from opsflow.executor.errors import ConfigurationError
from .base import (
    NodeCategory,
    NodeDefinition,
    NodeParameter,
    ParameterType,
    TriggerNode,
    variable_name_parameter,
)

MANUAL_TRIGGER = "MANUAL_TRIGGER"
WEBHOOK_TRIGGER = "WEBHOOK_TRIGGER"
SCHEDULE_TRIGGER = "SCHEDULE_TRIGGER"


class TriggerSpec(NamedTuple):
    type: str
    name: str
    default_variable_name: str
    description: str
    required_fields: Tuple[str, ...] = ()


TRIGGER_CATALOG: Sequence[TriggerSpec] = (
    TriggerSpec(MANUAL_TRIGGER, "Manual Trigger", "manualTrigger", "Started by hand from the editor"),
    TriggerSpec(WEBHOOK_TRIGGER, "Webhook", "webhook", "Started by an authenticated HTTP call"),

    # CRM
    TriggerSpec("CONTACT_CREATED_TRIGGER", "Contact Created", "newContact", "Triggers when a contact is created"),
    TriggerSpec("CONTACT_UPDATED_TRIGGER", "Contact Updated", "updatedContact", "Triggers when a contact is updated"),
    TriggerSpec("CONTACT_DELETED_TRIGGER", "Contact Deleted", "deletedContact", "Triggers when a contact is deleted"),
    TriggerSpec("CONTACT_FIELD_CHANGED_TRIGGER", "Contact Field Changed", "contactChange", "Triggers when a watched contact field changes"),
    TriggerSpec("CONTACT_TYPE_CHANGED_TRIGGER", "Contact Type Changed", "contactTypeChange", "Triggers when a contact changes type"),
    TriggerSpec("CONTACT_LIFECYCLE_STAGE_CHANGED_TRIGGER", "Contact Lifecycle Stage Changed", "contactStageChange", "Triggers when a contact moves lifecycle stage"),
    TriggerSpec("DEAL_CREATED_TRIGGER", "Deal Created", "newDeal", "Triggers when a deal is created"),
    TriggerSpec("DEAL_UPDATED_TRIGGER", "Deal Updated", "updatedDeal", "Triggers when a deal is updated"),
    TriggerSpec("DEAL_DELETED_TRIGGER", "Deal Deleted", "deletedDeal", "Triggers when a deal is deleted"),
    TriggerSpec("APPOINTMENT_CREATED_TRIGGER", "Appointment Created", "newAppointment", "Triggers when an appointment is created"),
    TriggerSpec("APPOINTMENT_CANCELLED_TRIGGER", "Appointment Cancelled", "cancelledAppointment", "Triggers when an appointment is cancelled"),

    # Google
    TriggerSpec("GOOGLE_CALENDAR_TRIGGER", "Google Calendar", "googleCalendar", "Triggers on Google Calendar activity"),
    TriggerSpec("GOOGLE_CALENDAR_EVENT_CREATED", "Google Calendar: Event Created", "newEvent", "Triggers when a calendar event is created"),
    TriggerSpec("GOOGLE_CALENDAR_EVENT_UPDATED", "Google Calendar: Event Updated", "updatedEvent", "Triggers when a calendar event is updated"),
    TriggerSpec("GOOGLE_CALENDAR_EVENT_DELETED", "Google Calendar: Event Deleted", "deletedEvent", "Triggers when a calendar event is deleted"),
    TriggerSpec("GOOGLE_DRIVE_FILE_CREATED", "Google Drive: File Created", "newFile", "Triggers when a file is created in Google Drive"),
    TriggerSpec("GOOGLE_DRIVE_FILE_UPDATED", "Google Drive: File Updated", "updatedFile", "Triggers when a file is updated in Google Drive"),
    TriggerSpec("GOOGLE_DRIVE_FILE_DELETED", "Google Drive: File Deleted", "deletedFile", "Triggers when a file is deleted from Google Drive"),
    TriggerSpec("GOOGLE_DRIVE_FOLDER_CREATED", "Google Drive: Folder Created", "newFolder", "Triggers when a folder is created in Google Drive"),
    TriggerSpec("GOOGLE_FORM_TRIGGER", "Google Forms: New Response", "formResponse", "Triggers when a form response is submitted"),
    TriggerSpec("GMAIL_TRIGGER", "Gmail: New Email", "gmailTrigger", "Triggers when a new email arrives in Gmail"),

    # Microsoft
    TriggerSpec("OUTLOOK_NEW_EMAIL", "Outlook: New Email", "newEmail", "Triggers when a new email arrives"),
    TriggerSpec("OUTLOOK_EMAIL_MOVED", "Outlook: Email Moved", "movedEmail", "Triggers when an email is moved"),
    TriggerSpec("OUTLOOK_EMAIL_DELETED", "Outlook: Email Deleted", "deletedEmail", "Triggers when an email is deleted"),
    TriggerSpec("OUTLOOK_CALENDAR_EVENT_CREATED", "Outlook Calendar: Event Created", "newEvent", "Triggers when a calendar event is created"),
    TriggerSpec("OUTLOOK_CALENDAR_EVENT_UPDATED", "Outlook Calendar: Event Updated", "updatedEvent", "Triggers when a calendar event is updated"),
    TriggerSpec("OUTLOOK_CALENDAR_EVENT_DELETED", "Outlook Calendar: Event Deleted", "deletedEvent", "Triggers when a calendar event is deleted"),
    TriggerSpec("ONEDRIVE_FILE_CREATED", "OneDrive: File Created", "newFile", "Triggers when a file is created"),
    TriggerSpec("ONEDRIVE_FILE_UPDATED", "OneDrive: File Updated", "updatedFile", "Triggers when a file is updated"),
    TriggerSpec("ONEDRIVE_FILE_DELETED", "OneDrive: File Deleted", "deletedFile", "Triggers when a file is deleted"),

    # Messaging
    TriggerSpec("SLACK_NEW_MESSAGE", "Slack: New Message", "newMessage", "Triggers when a new Slack message is posted", ("channelId",)),
    TriggerSpec("SLACK_MESSAGE_REACTION", "Slack: Message Reaction", "reaction", "Triggers when a reaction is added to a message"),
    TriggerSpec("SLACK_CHANNEL_JOINED", "Slack: Channel Joined", "joinEvent", "Triggers when a user joins a channel"),
    TriggerSpec("DISCORD_NEW_MESSAGE", "Discord: New Message", "newMessage", "Triggers when a new Discord message is posted", ("channelId",)),
    TriggerSpec("DISCORD_NEW_REACTION", "Discord: New Reaction", "reaction", "Triggers when a reaction is added"),
    TriggerSpec("DISCORD_USER_JOINED", "Discord: User Joined", "joinEvent", "Triggers when a user joins the server"),
    TriggerSpec("TELEGRAM_NEW_MESSAGE", "Telegram: New Message", "newMessage", "Triggers when a new Telegram message is received"),
    TriggerSpec("TELEGRAM_COMMAND_RECEIVED", "Telegram: Command Received", "command", "Triggers when a bot command is received", ("commandName",)),

    # Payments
    TriggerSpec("STRIPE_PAYMENT_SUCCEEDED", "Stripe: Payment Succeeded", "payment", "Triggers when a payment succeeds"),
    TriggerSpec("STRIPE_PAYMENT_FAILED", "Stripe: Payment Failed", "failedPayment", "Triggers when a payment fails"),
    TriggerSpec("STRIPE_SUBSCRIPTION_CREATED", "Stripe: Subscription Created", "subscription", "Triggers when a subscription is created"),
    TriggerSpec("STRIPE_SUBSCRIPTION_UPDATED", "Stripe: Subscription Updated", "subscription", "Triggers when a subscription is updated"),
    TriggerSpec("STRIPE_SUBSCRIPTION_CANCELLED", "Stripe: Subscription Cancelled", "subscription", "Triggers when a subscription is cancelled"),
)


def trigger_definition(spec: TriggerSpec) -> NodeDefinition:
    """Build the definition of a catalog trigger."""
    parameters: List[NodeParameter] = [variable_name_parameter()]
    parameters.extend(
        NodeParameter(name=field, type=ParameterType.STRING, required=True)
        for field in spec.required_fields
    )
    return NodeDefinition(
        name=spec.name,
        type=spec.type,
        category=NodeCategory.TRIGGER,
        description=spec.description,
        parameters=parameters,
        inputs=[],
        default_variable_name=spec.default_variable_name,
    )


def next_fire_time(cron: str, timezone: str = "UTC", after: Optional[datetime] = None) -> datetime:
    """Next time ``cron`` fires after ``after`` in ``timezone``."""
    tz = pytz.timezone(timezone)
    base = (after or datetime.now(pytz.utc)).astimezone(tz)
    return croniter(cron, base).get_next(datetime)


def previous_fire_time(cron: str, timezone: str = "UTC", before: Optional[datetime] = None) -> datetime:
    """Most recent time ``cron`` fired strictly before ``before`` in ``timezone``."""
    tz = pytz.timezone(timezone)
    base = (before or datetime.now(pytz.utc)).astimezone(tz)
    return croniter(cron, base).get_prev(datetime)


def validate_schedule(cron: Any, timezone: Any) -> None:
    if not isinstance(cron, str) or not croniter.is_valid(cron):
        raise ConfigurationError(f"Schedule Trigger error: invalid cron expression {cron!r}.", field="cron")
    if timezone not in pytz.all_timezones_set:
        raise ConfigurationError(f"Schedule Trigger error: unknown timezone {timezone!r}.", field="timezone")


class ScheduleTriggerNode(TriggerNode):
    """Schedule trigger node - triggered by cron schedule."""

    definition = NodeDefinition(
        name="Schedule Trigger",
        type=SCHEDULE_TRIGGER,
        category=NodeCategory.TRIGGER,
        description="Trigger workflow on a schedule",
        inputs=[],
        default_variable_name="schedule",
        parameters=[
            variable_name_parameter(),
            NodeParameter(
                name="cron",
                type=ParameterType.STRING,
                required=True,
                templated=False,
                description="Cron expression",
                placeholder="0 */2 * * *",
            ),
            NodeParameter(
                name="timezone",
                type=ParameterType.STRING,
                default="UTC",
                templated=False,
                description="Timezone for schedule",
                placeholder="America/New_York",
            ),
        ],
    )

    async def execute(self, parameters: Dict[str, Any]) -> Dict[str, Any]:
        cron = parameters.get("cron")
        timezone = parameters.get("timezone") or "UTC"
        validate_schedule(cron, timezone)

        updates = await super().execute(parameters)
        name, payload = next(iter(updates.items()))
        payload.setdefault("cron", cron)
        payload.setdefault("timezone", timezone)
        payload.setdefault("nextRun", next_fire_time(cron, timezone, self.context.steps.now()).isoformat())
        return {name: payload}


def catalog_trigger_definitions() -> List[NodeDefinition]:
    return [trigger_definition(spec) for spec in TRIGGER_CATALOG]
