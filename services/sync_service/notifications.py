"""Save status signal and critical error notifications."""

import logging
import os
from typing import Callable, List, Optional

import httpx

from shared.models import StatusEvent, SyncStatus

logger = logging.getLogger(__name__)


class StatusBroadcaster:
    """Publishes the user-facing save status to subscribers."""

    def __init__(self):
        self.current = StatusEvent(status=SyncStatus.IDLE)
        self._subscribers: List[Callable[[StatusEvent], None]] = []

    def subscribe(self, callback: Callable[[StatusEvent], None]) -> Callable[[], None]:
        """
        Register a status listener.

        Returns:
            A function that removes the listener
        """
        self._subscribers.append(callback)
        return lambda: self._subscribers.remove(callback)

    def publish(self, status: SyncStatus, message: str = "", queue_length: int = 0) -> StatusEvent:
        event = StatusEvent(status=status, message=message, queue_length=queue_length)
        self.current = event

        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                logger.warning(f"Status subscriber failed: {e}")

        return event


class NotificationService:
    """Handles sending notifications for records that could not be backed up."""

    def __init__(self, webhook_url: Optional[str] = None, enabled: Optional[bool] = None):
        """Initialize notification service."""
        if enabled is None:
            enabled = os.getenv("ENABLE_NOTIFICATIONS", "false").lower() == "true"
        self.notification_enabled = enabled
        self.notification_webhook = webhook_url or os.getenv("NOTIFICATION_WEBHOOK_URL")

    async def send_permanent_failure_notification(
        self,
        record_id: str,
        item_id: str,
        attempts: int,
        context: Optional[dict] = None
    ):
        """
        Send notification for a queued upload that was dropped after exhausting its retries.

        The record is then only on this device, so someone has to act on it.

        Args:
            record_id: The patient record ID
            item_id: The evicted queue item ID
            attempts: Failed attempts made before eviction
            context: Optional additional context
        """
        if not self.notification_enabled:
            logger.info(f"Notifications disabled, skipping notification for record {record_id}")
            return

        notification_message = (
            f"Record Not Backed Up\n"
            f"Record ID: {record_id}\n"
            f"Queue Item: {item_id}\n"
            f"Failed attempts: {attempts}\n"
        )

        if context:
            notification_message += f"Context: {context}\n"

        logger.warning(f"CRITICAL ERROR NOTIFICATION: {notification_message}")

        if self.notification_webhook:
            try:
                async with httpx.AsyncClient() as client:
                    await client.post(
                        self.notification_webhook,
                        json={
                            "text": notification_message,
                            "record_id": record_id,
                            "item_id": item_id,
                            "attempts": attempts
                        },
                        timeout=10.0
                    )
                logger.info(f"Notification sent for record {record_id}")
            except httpx.HTTPError as e:
                logger.error(f"Failed to send notification: {e}")
