"""Typed exceptions for lifecycle, templating and delivery failures."""


class ServiceDeskError(Exception):
    """Base class for all service-desk core errors."""


# =============================================================================
# LIFECYCLE
# =============================================================================


class NotFoundError(ServiceDeskError):
    """Ticket, parts order or event does not exist."""

    def __init__(self, entity: str, entity_id: object):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class InvalidTransitionError(ServiceDeskError):
    """Requested status is not reachable from the current status."""

    def __init__(self, current: str, target: str, reason: str | None = None):
        self.current = current
        self.target = target
        self.reason = reason
        message = f"Invalid ticket status transition: {current} -> {target}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class ForbiddenActorError(ServiceDeskError):
    """Actor's role is not permitted to take this edge."""

    def __init__(self, actor_id: str, target: str):
        self.actor_id = actor_id
        self.target = target
        super().__init__(f"Actor {actor_id} is not permitted to move ticket to {target}")


class PartsOrderConflictError(ServiceDeskError):
    """Ticket already has an open parts order."""


# =============================================================================
# TEMPLATES
# =============================================================================


class TemplateError(ServiceDeskError):
    """Base class for rendering failures."""


class MissingFieldError(TemplateError):
    """Payload lacks one or more placeholders the template needs."""

    def __init__(self, template_id: str, missing: list[str]):
        self.template_id = template_id
        self.missing = missing
        super().__init__(
            f"Template '{template_id}' missing fields: {', '.join(missing)}"
        )


class MessageTooLongError(TemplateError):
    """Rendered SMS body exceeds the single-segment ceiling."""

    def __init__(self, template_id: str, length: int, limit: int):
        self.template_id = template_id
        self.length = length
        self.limit = limit
        super().__init__(
            f"Template '{template_id}' rendered {length} characters (limit {limit})"
        )


# =============================================================================
# CHANNELS
# =============================================================================


class ChannelError(ServiceDeskError):
    """Base class for delivery failures reported by a channel adapter."""


class ChannelTransientError(ChannelError):
    """Gateway hiccup. Safe to retry."""


class ChannelPermanentError(ChannelError):
    """Gateway rejected the message for good (bad number, bad address)."""


# =============================================================================
# STORAGE GUARDS
# =============================================================================


class DuplicateReportError(ServiceDeskError):
    """A daily report already exists for this supplier and day.

    Internal guard only. The report job catches it and reuses the
    existing record.
    """
