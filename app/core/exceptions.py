"""
Notification Errors — Exception hierarchy for the scheduling engine.

- ConfigurationError: invalid timezone, malformed quiet hours, or a 24h
  quiet window. Raised at write time, never silently coerced.
- DuplicateError: the same logical event is already pending in the queue.
- NotFoundError / InvalidTransitionError: misuse of (or a race on) the
  queue API. Always surfaced to the caller.
- DispatchError: raised by the injected send capability.
"""


class NotificationError(Exception):
    """Base class for all notification engine errors."""


class ConfigurationError(NotificationError, ValueError):
    """Stored or submitted configuration is invalid."""


class DuplicateError(NotificationError):
    """An identical (link_id, recipient_user, kind, scheduled_at) notification is still pending."""

    def __init__(self, message: str, existing_id: int | None = None):
        super().__init__(message)
        self.existing_id = existing_id


class NotFoundError(NotificationError):
    """No notification exists with the given id."""

    def __init__(self, notification_id: int):
        super().__init__(f"Notification {notification_id} not found")
        self.notification_id = notification_id


class InvalidTransitionError(NotificationError):
    """The notification is not in a state that allows the requested transition."""

    def __init__(self, notification_id: int, current_status: str, target_status: str):
        super().__init__(
            f"Notification {notification_id} cannot move from "
            f"'{current_status}' to '{target_status}'"
        )
        self.notification_id = notification_id
        self.current_status = current_status
        self.target_status = target_status


class DispatchError(NotificationError):
    """The send capability failed to deliver a notification."""
