"""
Scheduling Notification Service
Fire-and-forget notices for booking, cancellation and calendar sync events.
A failing channel is logged and never reaches the scheduling core.
"""

import logging
from typing import Any, Optional, Protocol

logger = logging.getLogger(__name__)

APPOINTMENT_BOOKED = "appointment_booked"
APPOINTMENT_CANCELLED = "appointment_cancelled"
MEETING_LINK_READY = "meeting_link_ready"
SYNC_CONFLICT = "calendar_sync_conflict"
SYNC_FAILED = "calendar_sync_failed"


class Notifier(Protocol):
    def send(self, notification_type: str, recipient: Optional[str], payload: dict[str, Any]) -> None: ...


class LoggingNotifier:
    """Default channel: writes the notice to the application log"""

    def send(self, notification_type: str, recipient: Optional[str], payload: dict[str, Any]) -> None:
        logger.info(f"📧 {notification_type} -> {recipient or 'unknown recipient'}: {payload}")


default_notifier = LoggingNotifier()


def notify(
    notification_type: str,
    recipient: Optional[str],
    payload: dict[str, Any],
    notifier: Optional[Notifier] = None,
) -> bool:
    """
    Send one notice without letting a channel failure escape.

    Returns whether the channel accepted it.
    """
    channel = notifier or default_notifier
    try:
        channel.send(notification_type, recipient, payload)
        return True
    except Exception as e:
        logger.error(f"❌ Failed to send {notification_type} notification to {recipient}: {e}")
        return False
