"""Catalog of action nodes backed by domain operations.

Each entry names its required and optional fields; the node renders them,
then invokes the operation of the same (kebab-cased) name exactly once per
run. The result is bound to the configured output variable, or the entry's
default name when it has one.
"""

from typing import Any, Dict, List, NamedTuple, Optional, Sequence, Tuple

from ..base import (
    ActionNode,
    NodeCategory,
    NodeDefinition,
    NodeParameter,
    ParameterType,
    kebab_case,
    variable_name_parameter,
)


class ActionSpec(NamedTuple):
    type: str
    name: str
    category: NodeCategory
    required_fields: Tuple[str, ...]
    optional_fields: Tuple[str, ...] = ()
    default_variable_name: Optional[str] = None
    description: str = ""

    @property
    def operation(self) -> str:
        return kebab_case(self.type)


CRM = NodeCategory.CRM
INTEGRATION = NodeCategory.INTEGRATION

CONTACT_FIELDS = (
    "name", "email", "companyName", "phone", "position", "type", "lifecycleStage",
    "source", "website", "linkedin", "country", "city", "notes",
)
DEAL_FIELDS = ("name", "value", "currency", "deadline", "source", "description")

ACTION_CATALOG: Sequence[ActionSpec] = (
    # CRM
    ActionSpec("CREATE_CONTACT", "Create Contact", CRM, ("name",), CONTACT_FIELDS[1:],
               description="Create a contact in the CRM"),
    ActionSpec("UPDATE_CONTACT", "Update Contact", CRM, ("contactId",), CONTACT_FIELDS,
               description="Update fields of an existing contact"),
    ActionSpec("DELETE_CONTACT", "Delete Contact", CRM, ("contactId",),
               description="Delete a contact"),
    ActionSpec("FIND_CONTACTS", "Find Contacts", CRM, (),
               ("email", "name", "companyName", "type", "lifecycleStage", "limit"),
               description="Search contacts by field"),
    ActionSpec("ADD_TAG_TO_CONTACT", "Add Tag to Contact", CRM, ("contactId", "tag"),
               description="Add a tag to a contact"),
    ActionSpec("REMOVE_TAG_FROM_CONTACT", "Remove Tag from Contact", CRM, ("contactId", "tag"),
               description="Remove a tag from a contact"),
    ActionSpec("CREATE_DEAL", "Create Deal", CRM, ("name",),
               DEAL_FIELDS[1:] + ("pipelineId", "pipelineStageId", "contactIds"),
               description="Create a deal"),
    ActionSpec("UPDATE_DEAL", "Update Deal", CRM, ("dealId",), DEAL_FIELDS,
               description="Update fields of an existing deal"),
    ActionSpec("DELETE_DEAL", "Delete Deal", CRM, ("dealId",),
               description="Delete a deal"),
    ActionSpec("MOVE_DEAL_STAGE", "Move Deal Stage", CRM, ("dealId", "pipelineStageId"),
               description="Move a deal to another pipeline stage"),
    ActionSpec("ADD_DEAL_NOTE", "Add Deal Note", CRM, ("dealId", "note"),
               description="Attach a note to a deal"),
    ActionSpec("UPDATE_PIPELINE", "Update Pipeline", CRM, ("dealId", "pipelineStageId"),
               description="Reassign a deal within its pipeline"),
    ActionSpec("SCHEDULE_APPOINTMENT", "Schedule Appointment", CRM, ("title", "startTime", "endTime"),
               ("contactId", "description", "location"), "scheduledAppointment",
               "Schedule a new appointment"),
    ActionSpec("UPDATE_APPOINTMENT", "Update Appointment", CRM, ("appointmentId",),
               ("title", "startTime", "endTime", "description", "location"), "updatedAppointment",
               "Update an existing appointment"),
    ActionSpec("CANCEL_APPOINTMENT", "Cancel Appointment", CRM, ("appointmentId",), ("reason",),
               "result", "Cancel an appointment"),

    # Google
    ActionSpec("GOOGLE_CALENDAR_FIND_AVAILABLE_TIMES", "Google Calendar: Find Available Times", INTEGRATION,
               ("calendarId", "timeMin", "timeMax"), (), "availableTimes",
               "Find available time slots in Google Calendar"),
    ActionSpec("GOOGLE_CALENDAR_CREATE_EVENT", "Google Calendar: Create Event", INTEGRATION,
               ("calendarId", "summary", "start", "end"), ("description", "attendees"), "createdEvent",
               "Create a Google Calendar event"),
    ActionSpec("GOOGLE_FORM_CREATE_RESPONSE", "Google Forms: Create Response", INTEGRATION,
               ("formId", "responses"), (), "formResponse", "Submit a response to a Google Form"),
    ActionSpec("GMAIL_SEND_EMAIL", "Gmail: Send Email", INTEGRATION,
               ("to", "subject", "body"), ("cc", "bcc"), "sentEmail", "Send an email via Gmail"),

    # Microsoft
    ActionSpec("OUTLOOK_SEND_EMAIL", "Outlook: Send Email", INTEGRATION,
               ("to", "subject", "body"), ("cc", "bcc"), "sentEmail", "Send an email via Outlook"),
    ActionSpec("OUTLOOK_REPLY_TO_EMAIL", "Outlook: Reply to Email", INTEGRATION,
               ("messageId", "body"), (), "reply", "Reply to an email"),
    ActionSpec("OUTLOOK_MOVE_EMAIL", "Outlook: Move Email", INTEGRATION,
               ("messageId", "destinationFolderId"), (), "movedEmail", "Move an email to a folder"),
    ActionSpec("OUTLOOK_SEARCH_EMAILS", "Outlook: Search Emails", INTEGRATION,
               ("query",), (), "searchResults", "Search emails in Outlook"),
    ActionSpec("OUTLOOK_CALENDAR_CREATE_EVENT", "Outlook Calendar: Create Event", INTEGRATION,
               ("subject", "start", "end"), ("body", "attendees"), "createdEvent", "Create a calendar event"),
    ActionSpec("OUTLOOK_CALENDAR_UPDATE_EVENT", "Outlook Calendar: Update Event", INTEGRATION,
               ("eventId",), ("subject", "start", "end", "body"), "updatedEvent", "Update a calendar event"),
    ActionSpec("OUTLOOK_CALENDAR_DELETE_EVENT", "Outlook Calendar: Delete Event", INTEGRATION,
               ("eventId",), (), "result", "Delete a calendar event"),
    ActionSpec("ONEDRIVE_UPLOAD_FILE", "OneDrive: Upload File", INTEGRATION,
               ("fileName", "fileContent"), ("folderPath",), "uploadedFile", "Upload a file to OneDrive"),
    ActionSpec("ONEDRIVE_DOWNLOAD_FILE", "OneDrive: Download File", INTEGRATION,
               ("fileId",), (), "downloadedFile", "Download a file from OneDrive"),
    ActionSpec("ONEDRIVE_MOVE_FILE", "OneDrive: Move File", INTEGRATION,
               ("fileId", "destinationFolderId"), (), "movedFile", "Move a file in OneDrive"),
    ActionSpec("ONEDRIVE_DELETE_FILE", "OneDrive: Delete File", INTEGRATION,
               ("fileId",), (), "result", "Delete a file from OneDrive"),

    # Messaging
    ActionSpec("SLACK_SEND_MESSAGE", "Slack: Send Message", INTEGRATION,
               ("channel", "message"), (), "slackMessage", "Post a message to a Slack channel"),
    ActionSpec("SLACK_UPDATE_MESSAGE", "Slack: Update Message", INTEGRATION,
               ("channel", "timestamp", "message"), (), "updatedMessage", "Update an existing Slack message"),
    ActionSpec("SLACK_SEND_DM", "Slack: Send DM", INTEGRATION,
               ("userId", "message"), (), "sentDM", "Send a direct message in Slack"),
    ActionSpec("SLACK_UPLOAD_FILE", "Slack: Upload File", INTEGRATION,
               ("channel", "file", "filename"), (), "uploadedFile", "Upload a file to Slack"),
    ActionSpec("DISCORD_SEND_MESSAGE", "Discord: Send Message", INTEGRATION,
               ("channelId", "message"), (), "sentMessage", "Send a message to Discord"),
    ActionSpec("DISCORD_EDIT_MESSAGE", "Discord: Edit Message", INTEGRATION,
               ("channelId", "messageId", "message"), (), "editedMessage", "Edit a Discord message"),
    ActionSpec("DISCORD_SEND_EMBED", "Discord: Send Embed", INTEGRATION,
               ("channelId", "title", "description"), ("color", "url"), "sentEmbed",
               "Send an embed message to Discord"),
    ActionSpec("DISCORD_SEND_DM", "Discord: Send DM", INTEGRATION,
               ("userId", "message"), (), "sentDM", "Send a direct message in Discord"),
    ActionSpec("TELEGRAM_SEND_MESSAGE", "Telegram: Send Message", INTEGRATION,
               ("chatId", "message"), (), "sentMessage", "Send a message via Telegram"),
    ActionSpec("TELEGRAM_SEND_PHOTO", "Telegram: Send Photo", INTEGRATION,
               ("chatId", "photoUrl"), ("caption",), "sentPhoto", "Send a photo via Telegram"),
    ActionSpec("TELEGRAM_SEND_DOCUMENT", "Telegram: Send Document", INTEGRATION,
               ("chatId", "documentUrl"), ("caption",), "sentDocument", "Send a document via Telegram"),

    # Payments
    ActionSpec("STRIPE_CREATE_CHECKOUT_SESSION", "Stripe: Create Checkout Session", INTEGRATION,
               ("priceId", "successUrl", "cancelUrl"), ("quantity", "customerEmail"), "checkoutSession",
               "Create a Stripe checkout session"),
    ActionSpec("STRIPE_CREATE_INVOICE", "Stripe: Create Invoice", INTEGRATION,
               ("customerId", "amount"), ("currency", "description"), "invoice", "Create a Stripe invoice"),
    ActionSpec("STRIPE_SEND_INVOICE", "Stripe: Send Invoice", INTEGRATION,
               ("invoiceId",), (), "sentInvoice", "Send a Stripe invoice"),
    ActionSpec("STRIPE_REFUND_PAYMENT", "Stripe: Refund Payment", INTEGRATION,
               ("paymentIntentId",), ("amount", "reason"), "refund", "Refund a Stripe payment"),

    # AI
    ActionSpec("GEMINI_GENERATE_TEXT", "Gemini: Generate Text", INTEGRATION,
               ("prompt",), ("model", "systemPrompt"), "generatedText", "Generate text using Gemini"),
    ActionSpec("GEMINI_SUMMARISE", "Gemini: Summarise", INTEGRATION,
               ("text",), ("model",), "summary", "Summarise text using Gemini"),
    ActionSpec("GEMINI_TRANSFORM", "Gemini: Transform", INTEGRATION,
               ("text", "instructions"), ("model",), "transformedText", "Transform text using Gemini"),
    ActionSpec("GEMINI_CLASSIFY", "Gemini: Classify", INTEGRATION,
               ("text", "categories"), ("model",), "classification", "Classify text using Gemini"),
)


def _display_name(field: str) -> str:
    words = []
    current = ""
    for char in field:
        if char.isupper() and current:
            words.append(current)
            current = char
        else:
            current += char
    words.append(current)
    label = " ".join(words)
    return label[:1].upper() + label[1:].replace(" Id", " ID")


def action_definition(spec: ActionSpec) -> NodeDefinition:
    """Build the definition of a catalog action."""
    parameters: List[NodeParameter] = [variable_name_parameter()]
    parameters.extend(
        NodeParameter(name=field, display_name=_display_name(field), type=ParameterType.STRING, required=True)
        for field in spec.required_fields
    )
    parameters.extend(
        NodeParameter(name=field, display_name=_display_name(field), type=ParameterType.STRING)
        for field in spec.optional_fields
    )
    return NodeDefinition(
        name=spec.name,
        type=spec.type,
        category=spec.category,
        description=spec.description,
        parameters=parameters,
        default_variable_name=spec.default_variable_name,
        operation=spec.operation,
    )


class OperationActionNode(ActionNode):
    """Generic executor for catalog actions."""

    async def execute(self, parameters: Dict[str, Any]) -> Dict[str, Any]:
        payload = {
            param.name: parameters[param.name]
            for param in self.definition.parameters
            if param.name != "variableName" and parameters.get(param.name) not in (None, "")
        }
        result = await self.perform(self.definition.operation, payload)
        return self.bind_output(result, parameters)


def catalog_action_definitions() -> List[NodeDefinition]:
    return [action_definition(spec) for spec in ACTION_CATALOG]
