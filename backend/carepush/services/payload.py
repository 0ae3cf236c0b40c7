"""Notification payloads as supplied by callers and as handed to push backends."""
import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..models.notification import Notification, NotificationType


def coerce_data(data: Optional[Dict[str, Any]]) -> Dict[str, str]:
    """Push providers only accept string key/value pairs.

    Strings pass through unchanged, everything else is JSON encoded.
    """
    if not data:
        return {}
    return {
        str(key): value if isinstance(value, str) else json.dumps(value, default=str)
        for key, value in data.items()
    }


@dataclass
class NotificationPayload:
    """Pre-rendered notification content supplied by the calling service."""
    title: str
    body: str
    type: NotificationType = NotificationType.GENERAL
    data: Optional[Dict[str, Any]] = None
    image_url: Optional[str] = None
    action_url: Optional[str] = None

    def __post_init__(self):
        self.type = NotificationType(self.type)

    @classmethod
    def from_notification(cls, notification: Notification) -> "NotificationPayload":
        """Rebuild the payload of a persisted (scheduled) notification."""
        data = json.loads(notification.metadata_json) if notification.metadata_json else None
        return cls(
            title=notification.title,
            body=notification.body,
            type=NotificationType(notification.type),
            data=data,
            image_url=notification.image_url,
            action_url=notification.action_url,
        )


@dataclass(frozen=True)
class PushMessage:
    """Transport-ready message: string-only data and resolved priority."""
    title: str
    body: str
    type: str
    data: Dict[str, str] = field(default_factory=dict)
    image_url: Optional[str] = None
    action_url: Optional[str] = None
    high_priority: bool = False

    @classmethod
    def from_payload(cls, payload: NotificationPayload) -> "PushMessage":
        return cls(
            title=payload.title,
            body=payload.body,
            type=payload.type.value,
            data=coerce_data(payload.data),
            image_url=payload.image_url,
            action_url=payload.action_url,
            high_priority=payload.type == NotificationType.EMERGENCY,
        )
