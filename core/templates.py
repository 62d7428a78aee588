"""
Template registry for notification messages.

Pure lookup and rendering, no I/O:
- resolve(kind, role, channel) names the template for a recipient, or None
  when nothing is registered (a configuration gap, not an error)
- render(template_id, payload) fills named placeholders

SMS bodies are normalized to plain GSM-friendly punctuation before the
single-segment length check. Over-long bodies are rejected, never truncated.
"""

import logging
import re
import string
from dataclasses import dataclass
from typing import Any, Mapping

from core.events import EventKind
from core.exceptions import MessageTooLongError, MissingFieldError, NotFoundError
from core.models import Channel, RecipientRole

logger = logging.getLogger(__name__)

_formatter = string.Formatter()

_PUNCTUATION = str.maketrans({
    "“": '"', "”": '"', "„": '"',
    "‘": "'", "’": "'",
    "–": "-", "—": "-",
})
_WHITESPACE = re.compile(r"\s+")


def normalize_sms(text: str) -> str:
    """Replace typographic punctuation and collapse whitespace to single spaces."""
    text = text.translate(_PUNCTUATION).replace("…", "...")
    return _WHITESPACE.sub(" ", text).strip()


@dataclass(frozen=True)
class MessageTemplate:
    """A parameterized message. Subject is only used for email."""

    template_id: str
    channel: Channel
    body: str
    subject: str | None = None

    @property
    def fields(self) -> frozenset[str]:
        """Placeholder names used by subject and body."""
        names = set()
        for text in (self.subject or "", self.body):
            for _, field_name, _, _ in _formatter.parse(text):
                if field_name:
                    names.add(re.split(r"[.\[]", field_name, maxsplit=1)[0])
        return frozenset(names)


@dataclass(frozen=True)
class RenderedMessage:
    template_id: str
    channel: Channel
    body: str
    subject: str | None = None


RouteKey = tuple[EventKind, RecipientRole, Channel]


class TemplateRegistry:
    """
    Maps (event kind, recipient role, channel) to a template and renders it.

    Usage:
        registry = TemplateRegistry.default()
        template_id = registry.resolve(EventKind.PARTS_ORDERED, RecipientRole.CLIENT, Channel.SMS)
        if template_id is not None:
            message = registry.render(template_id, event.payload)
    """

    def __init__(
        self,
        templates: list[MessageTemplate] | None = None,
        routes: Mapping[RouteKey, str] | None = None,
        sms_max_length: int = 160,
    ):
        self._templates: dict[str, MessageTemplate] = {}
        self._routes: dict[RouteKey, str] = {}
        self.sms_max_length = sms_max_length

        for template in templates or []:
            self.add_template(template)
        for (kind, role, channel), template_id in (routes or {}).items():
            self.add_route(kind, role, channel, template_id)

    @classmethod
    def default(cls, sms_max_length: int = 160) -> "TemplateRegistry":
        """Registry preloaded with the built-in message set."""
        return cls(DEFAULT_TEMPLATES, DEFAULT_ROUTES, sms_max_length=sms_max_length)

    def add_template(self, template: MessageTemplate) -> None:
        self._templates[template.template_id] = template

    def add_route(
        self, kind: EventKind, role: RecipientRole, channel: Channel, template_id: str
    ) -> None:
        """
        Register which template a recipient gets for an event kind.

        Raises:
            NotFoundError: If the template is unknown
            ValueError: If the template is for a different channel
        """
        template = self.get(template_id)
        if template.channel != channel:
            raise ValueError(
                f"Template '{template_id}' is a {template.channel.value} template, "
                f"cannot route it to {channel.value}"
            )
        self._routes[(kind, role, channel)] = template_id

    def get(self, template_id: str) -> MessageTemplate:
        template = self._templates.get(template_id)
        if template is None:
            raise NotFoundError("Template", template_id)
        return template

    def resolve(self, kind: EventKind, role: RecipientRole, channel: Channel) -> str | None:
        """Template id for a recipient, or None if none is registered."""
        return self._routes.get((kind, role, channel))

    def render(self, template_id: str, payload: Mapping[str, Any]) -> RenderedMessage:
        """
        Fill a template from an event payload.

        None values count as missing. Output is a pure function of
        (template_id, payload).

        Raises:
            NotFoundError: Unknown template
            MissingFieldError: Payload lacks a placeholder
            MessageTooLongError: SMS body longer than sms_max_length
        """
        template = self.get(template_id)

        missing = sorted(name for name in template.fields if payload.get(name) is None)
        if missing:
            raise MissingFieldError(template_id, missing)

        values = dict(payload)
        body = template.body.format_map(values)
        subject = template.subject.format_map(values) if template.subject else None

        if template.channel == Channel.SMS:
            body = normalize_sms(body)
            if len(body) > self.sms_max_length:
                raise MessageTooLongError(template_id, len(body), self.sms_max_length)

        return RenderedMessage(
            template_id=template_id,
            channel=template.channel,
            body=body,
            subject=subject,
        )


# =============================================================================
# BUILT-IN TEMPLATES
# =============================================================================

_SIGNOFF = "Service desk"

DEFAULT_TEMPLATES = [
    # Client
    MessageTemplate(
        "client_status_sms", Channel.SMS,
        "Service #{ticket_ref} ({device}): status is now {status_label}.",
    ),
    MessageTemplate(
        "client_status_email", Channel.EMAIL,
        "Dear {recipient_name},\n\nThe status of your service request #{ticket_ref} "
        "for {device} changed from {old_status_label} to {status_label}.\n\n" + _SIGNOFF,
        subject="Service #{ticket_ref}: {status_label}",
    ),
    MessageTemplate(
        "client_awaiting_parts_sms", Channel.SMS,
        "Service #{ticket_ref} ({device}) needs a spare part. We will let you know once it is ordered.",
    ),
    MessageTemplate(
        "client_awaiting_parts_email", Channel.EMAIL,
        "Dear {recipient_name},\n\nYour {device} (service #{ticket_ref}) needs a spare part "
        "before the repair can continue. We will let you know once it is ordered.\n\n" + _SIGNOFF,
        subject="Service #{ticket_ref}: spare part needed",
    ),
    MessageTemplate(
        "client_additional_parts_sms", Channel.SMS,
        "Service #{ticket_ref} ({device}): an additional part is needed to finish the repair.",
    ),
    MessageTemplate(
        "client_additional_parts_email", Channel.EMAIL,
        "Dear {recipient_name},\n\nWhile repairing your {device} (service #{ticket_ref}) "
        "our technician found that an additional spare part is needed. "
        "We will let you know once it is ordered.\n\n" + _SIGNOFF,
        subject="Service #{ticket_ref}: additional part needed",
    ),
    MessageTemplate(
        "client_parts_ordered_sms", Channel.SMS,
        "Part \"{part_description}\" ordered for your {device}{urgency_note}. Service #{ticket_ref}.",
    ),
    MessageTemplate(
        "client_parts_ordered_email", Channel.EMAIL,
        "Dear {recipient_name},\n\nWe ordered \"{part_description}\" for your {device} "
        "(service #{ticket_ref}){urgency_note}. We will contact you when it arrives.\n\n" + _SIGNOFF,
        subject="Service #{ticket_ref}: part ordered",
    ),
    MessageTemplate(
        "client_parts_received_sms", Channel.SMS,
        "Part {part_description} for service #{ticket_ref} has arrived. A technician will contact you within 24h.",
    ),
    MessageTemplate(
        "client_completed_sms", Channel.SMS,
        "Service #{ticket_ref} for your {device} is complete. Thank you!",
    ),
    MessageTemplate(
        "client_completed_email", Channel.EMAIL,
        "Dear {recipient_name},\n\nThe repair of your {device} (service #{ticket_ref}) "
        "is complete. Thank you for your trust.\n\n" + _SIGNOFF,
        subject="Service #{ticket_ref} completed",
    ),
    MessageTemplate(
        "client_billed_email", Channel.EMAIL,
        "Dear {recipient_name},\n\nService #{ticket_ref} for your {device} has been invoiced. "
        "The invoice will follow separately.\n\n" + _SIGNOFF,
        subject="Service #{ticket_ref} invoiced",
    ),
    MessageTemplate(
        "client_cancelled_sms", Channel.SMS,
        "Service #{ticket_ref} ({device}) has been cancelled.",
    ),
    MessageTemplate(
        "client_cancelled_email", Channel.EMAIL,
        "Dear {recipient_name},\n\nService request #{ticket_ref} for your {device} "
        "has been cancelled.\n\n" + _SIGNOFF,
        subject="Service #{ticket_ref} cancelled",
    ),
    # Technician
    MessageTemplate(
        "technician_parts_ordered_sms", Channel.SMS,
        "Ordered for #{ticket_ref}: {part_description}{urgency_note}.",
    ),
    MessageTemplate(
        "technician_parts_received_sms", Channel.SMS,
        "Part arrived for #{ticket_ref} ({device}): {part_description}. Ready to install.",
    ),
    MessageTemplate(
        "technician_additional_parts_sms", Channel.SMS,
        "#{ticket_ref} ({device}) is back to awaiting parts.",
    ),
    MessageTemplate(
        "technician_cancelled_sms", Channel.SMS,
        "#{ticket_ref} ({device}) was cancelled. No further work needed.",
    ),
    # Business partner
    MessageTemplate(
        "partner_status_email", Channel.EMAIL,
        "Hello {recipient_name},\n\nService #{ticket_ref} ({device}) moved from "
        "{old_status_label} to {status_label}.\n\n" + _SIGNOFF,
        subject="Service #{ticket_ref}: {status_label}",
    ),
    MessageTemplate(
        "partner_completed_sms", Channel.SMS,
        "Service #{ticket_ref} ({device}) is complete. Thank you for the cooperation!",
    ),
    # Supplier
    MessageTemplate(
        "supplier_parts_ordered_sms", Channel.SMS,
        "New order #{ticket_ref}: {part_description} for {device}{urgency_note}.",
    ),
    MessageTemplate(
        "supplier_parts_ordered_email", Channel.EMAIL,
        "Hello {recipient_name},\n\nPlease supply \"{part_description}\" for {device} "
        "(service #{ticket_ref}){urgency_note}.\n\n" + _SIGNOFF,
        subject="Parts order for service #{ticket_ref}",
    ),
    MessageTemplate(
        "supplier_parts_received_email", Channel.EMAIL,
        "Hello {recipient_name},\n\nWe confirm receipt of \"{part_description}\" "
        "for service #{ticket_ref}.\n\n" + _SIGNOFF,
        subject="Parts received for service #{ticket_ref}",
    ),
    MessageTemplate(
        "supplier_daily_report_email", Channel.EMAIL,
        "Hello {recipient_name},\n\nDaily activity for {report_date}:\n"
        "Completed services: {completed_count}\n"
        "Parts ordered: {ordered_count}\n"
        "Parts received: {received_count}\n\n{details}\n\n" + _SIGNOFF,
        subject="{supplier_name} daily report {report_date}",
    ),
]

_C, _T, _P, _S = (
    RecipientRole.CLIENT, RecipientRole.TECHNICIAN,
    RecipientRole.BUSINESS_PARTNER, RecipientRole.SUPPLIER,
)
_SMS, _EMAIL = Channel.SMS, Channel.EMAIL

DEFAULT_ROUTES: dict[RouteKey, str] = {
    (EventKind.STATUS_CHANGED, _C, _SMS): "client_status_sms",
    (EventKind.STATUS_CHANGED, _C, _EMAIL): "client_status_email",
    (EventKind.STATUS_CHANGED, _P, _EMAIL): "partner_status_email",

    (EventKind.AWAITING_PARTS, _C, _SMS): "client_awaiting_parts_sms",
    (EventKind.AWAITING_PARTS, _C, _EMAIL): "client_awaiting_parts_email",
    (EventKind.AWAITING_PARTS, _P, _EMAIL): "partner_status_email",

    (EventKind.ADDITIONAL_PARTS_NEEDED, _C, _SMS): "client_additional_parts_sms",
    (EventKind.ADDITIONAL_PARTS_NEEDED, _C, _EMAIL): "client_additional_parts_email",
    (EventKind.ADDITIONAL_PARTS_NEEDED, _T, _SMS): "technician_additional_parts_sms",
    (EventKind.ADDITIONAL_PARTS_NEEDED, _P, _EMAIL): "partner_status_email",

    (EventKind.PARTS_ORDERED, _C, _SMS): "client_parts_ordered_sms",
    (EventKind.PARTS_ORDERED, _C, _EMAIL): "client_parts_ordered_email",
    (EventKind.PARTS_ORDERED, _T, _SMS): "technician_parts_ordered_sms",
    (EventKind.PARTS_ORDERED, _P, _EMAIL): "partner_status_email",
    (EventKind.PARTS_ORDERED, _S, _SMS): "supplier_parts_ordered_sms",
    (EventKind.PARTS_ORDERED, _S, _EMAIL): "supplier_parts_ordered_email",

    (EventKind.PARTS_RECEIVED, _C, _SMS): "client_parts_received_sms",
    (EventKind.PARTS_RECEIVED, _T, _SMS): "technician_parts_received_sms",
    (EventKind.PARTS_RECEIVED, _P, _EMAIL): "partner_status_email",
    (EventKind.PARTS_RECEIVED, _S, _EMAIL): "supplier_parts_received_email",

    (EventKind.SERVICE_COMPLETED, _C, _SMS): "client_completed_sms",
    (EventKind.SERVICE_COMPLETED, _C, _EMAIL): "client_completed_email",
    (EventKind.SERVICE_COMPLETED, _P, _SMS): "partner_completed_sms",
    (EventKind.SERVICE_COMPLETED, _P, _EMAIL): "partner_status_email",

    (EventKind.SERVICE_BILLED, _C, _EMAIL): "client_billed_email",
    (EventKind.SERVICE_BILLED, _P, _EMAIL): "partner_status_email",

    (EventKind.SERVICE_CANCELLED, _C, _SMS): "client_cancelled_sms",
    (EventKind.SERVICE_CANCELLED, _C, _EMAIL): "client_cancelled_email",
    (EventKind.SERVICE_CANCELLED, _T, _SMS): "technician_cancelled_sms",
    (EventKind.SERVICE_CANCELLED, _P, _EMAIL): "partner_status_email",

    (EventKind.DAILY_REPORT, _S, _EMAIL): "supplier_daily_report_email",
}
