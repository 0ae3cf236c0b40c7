"""Notification schemas for API."""
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import Field

from ..models.notification import Notification, NotificationType
from ..services.payload import NotificationPayload
from .base import CamelModel

logger = logging.getLogger(__name__)


class NotificationContent(CamelModel):
    """Pre-rendered notification content."""
    title: str = Field(..., min_length=1, max_length=255)
    body: str = Field(..., min_length=1)
    type: NotificationType = NotificationType.GENERAL
    data: Optional[Dict[str, Any]] = None
    image_url: Optional[str] = None
    action_url: Optional[str] = None

    def to_payload(self) -> NotificationPayload:
        return NotificationPayload(
            title=self.title,
            body=self.body,
            type=self.type,
            data=self.data,
            image_url=self.image_url,
            action_url=self.action_url,
        )


class SendNotificationRequest(NotificationContent):
    """Send to one user, now or at scheduled_for."""
    user_id: str = Field(..., min_length=1)
    scheduled_for: Optional[datetime] = None


class BulkNotificationRequest(NotificationContent):
    """Send the same content to several users."""
    user_ids: List[str] = Field(..., min_length=1)
    scheduled_for: Optional[datetime] = None


class TopicNotificationRequest(NotificationContent):
    topic: str = Field(..., min_length=1)


class TopicSubscriptionRequest(CamelModel):
    user_id: str = Field(..., min_length=1)
    topic: str = Field(..., min_length=1)


class TopicSubscriptionResponse(CamelModel):
    success: bool
    count: int


class SendNotificationResponse(CamelModel):
    success: bool
    notification_id: Optional[int] = None
    message: str


class BulkNotificationResponse(CamelModel):
    success: bool
    sent_count: int
    failed_count: int


class AppointmentReminderRequest(CamelModel):
    appointment_id: str = Field(..., min_length=1)


class DoctorMessageRequest(CamelModel):
    patient_id: str = Field(..., min_length=1)
    doctor_name: str = Field(..., min_length=1)
    message_preview: str = Field(..., min_length=1)


class TestNotificationRequest(CamelModel):
    user_id: str = Field(..., min_length=1)
    title: str = "Test Notification"
    body: str = "This is a test notification from the backend"


class UserRequest(CamelModel):
    """Body carrying the acting user, for ownership-scoped inbox operations."""
    user_id: str = Field(..., min_length=1)


class NotificationResponse(CamelModel):
    """A notification in API responses."""
    id: int
    user_id: str
    title: str
    body: str
    type: str
    metadata: Optional[Dict[str, Any]] = None
    image_url: Optional[str] = None
    action_url: Optional[str] = None
    scheduled_for: Optional[datetime] = None
    is_sent: bool
    sent_at: Optional[datetime] = None
    is_read: bool
    created_at: datetime

    @classmethod
    def from_model(cls, notification: Notification) -> "NotificationResponse":
        metadata = None
        if notification.metadata_json:
            try:
                metadata = json.loads(notification.metadata_json)
            except json.JSONDecodeError as e:
                logger.warning(f"Ignoring unreadable metadata on notification {notification.id}: {e}")
        return cls(
            id=notification.id,
            user_id=notification.user_id,
            title=notification.title,
            body=notification.body,
            type=notification.type,
            metadata=metadata,
            image_url=notification.image_url,
            action_url=notification.action_url,
            scheduled_for=notification.scheduled_for,
            is_sent=notification.is_sent,
            sent_at=notification.sent_at,
            is_read=notification.is_read,
            created_at=notification.created_at,
        )


class NotificationListResponse(CamelModel):
    notifications: List[NotificationResponse]
    total: int
    limit: int
    offset: int
    has_more: bool


class UnreadCountResponse(CamelModel):
    count: int
