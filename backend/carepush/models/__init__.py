"""Database models."""
from .device_token import DeviceToken, DeviceType
from .notification import Notification, NotificationType

__all__ = ["DeviceToken", "DeviceType", "Notification", "NotificationType"]
