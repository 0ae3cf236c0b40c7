"""Pydantic schemas for API request/response models."""
from .base import SuccessResponse
from .device import (
    DeviceRegisterRequest,
    DeviceRegisterResponse,
    DeviceUnregisterRequest,
    UserDevicesUnregisterRequest,
    UserDevicesUnregisterResponse,
    DeviceResponse,
)
from .notification import (
    NotificationContent,
    SendNotificationRequest,
    BulkNotificationRequest,
    TopicNotificationRequest,
    TopicSubscriptionRequest,
    TopicSubscriptionResponse,
    SendNotificationResponse,
    BulkNotificationResponse,
    AppointmentReminderRequest,
    DoctorMessageRequest,
    TestNotificationRequest,
    UserRequest,
    NotificationResponse,
    NotificationListResponse,
    UnreadCountResponse,
)

__all__ = [
    "SuccessResponse",
    "DeviceRegisterRequest",
    "DeviceRegisterResponse",
    "DeviceUnregisterRequest",
    "UserDevicesUnregisterRequest",
    "UserDevicesUnregisterResponse",
    "DeviceResponse",
    "NotificationContent",
    "SendNotificationRequest",
    "BulkNotificationRequest",
    "TopicNotificationRequest",
    "TopicSubscriptionRequest",
    "TopicSubscriptionResponse",
    "SendNotificationResponse",
    "BulkNotificationResponse",
    "AppointmentReminderRequest",
    "DoctorMessageRequest",
    "TestNotificationRequest",
    "UserRequest",
    "NotificationResponse",
    "NotificationListResponse",
    "UnreadCountResponse",
]
