"""
Status notifications for renewal events.

Notifications are fire-and-forget: they report progress to the platform but
never influence the outcome of a run.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from .logger import get_logger
from .platform import PlatformClient


# Event texts published by the coordinator
SCHEDULED_TRIGGERED = "Scheduled cert renewal triggered"
FORCED_TRIGGERED = "Forced cert renewal triggered"
RENEWAL_SUCCEEDED = "Successfully renewed cert."
RENEWAL_SKIPPED = "Did not attempt to renew cert."
RENEWAL_FAILED = "Failed to renew cert."


@dataclass
class NotificationContext:
    """A status update to publish."""
    text: str
    type: str = "statusUpdate"
    time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class NotificationSender(ABC):
    """Abstract base class for notification senders."""

    @abstractmethod
    def send(self, context: NotificationContext) -> bool:
        """
        Send a notification.

        Returns:
            True if the notification was delivered
        """
        pass


class PlatformEventNotifier(NotificationSender):
    """Publish status updates as events on the application's managed object."""

    def __init__(self, client: PlatformClient, application_name: str):
        self.client = client
        self.application_name = application_name
        self.logger = get_logger()
        self._device_id: Optional[str] = None

    def _find_device_id(self) -> Optional[str]:
        if self._device_id is None:
            self._device_id = self.client.find_application_device(self.application_name)
        return self._device_id

    def send(self, context: NotificationContext) -> bool:
        device_id = self._find_device_id()
        if not device_id:
            self.logger.debug(
                f"No managed object found for application {self.application_name}, "
                "skipping status event"
            )
            return False

        self.client.create_event({
            "source": {"id": device_id},
            "type": context.type,
            "text": context.text,
            "time": context.time.isoformat(),
        })
        self.logger.debug(f"Published status event: {context.text}")
        return True


class NotificationManager:
    """
    Sends notifications through all registered senders.

    Failures of a sender are logged and never propagate.
    """

    def __init__(self, notifiers: Optional[List[NotificationSender]] = None):
        self.logger = get_logger()
        self.notifiers: List[NotificationSender] = list(notifiers or [])

    def notify(self, text: str, event_type: str = "statusUpdate") -> None:
        """Publish text through every notifier, swallowing their errors."""
        if not self.notifiers:
            return

        context = NotificationContext(text=text, type=event_type)
        for notifier in self.notifiers:
            try:
                notifier.send(context)
            except Exception as e:
                notifier_name = type(notifier).__name__
                self.logger.debug(f"Notification failed ({notifier_name}): {e}")
