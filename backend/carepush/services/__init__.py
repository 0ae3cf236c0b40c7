"""Services for device registration, notification storage, dispatch and scheduling."""
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from ..config import Settings
from .appointments import AppointmentDirectory, HttpAppointmentDirectory
from .device_registry import DeviceTokenRegistry
from .inbox_stream import InboxStreamManager
from .notification_service import NotificationService
from .notification_store import NotificationStore
from .push_backends import PushBackend, build_backend
from .push_dispatcher import PushDispatcher
from .scheduler import SchedulerService


def build_notification_service(
    config: Settings,
    session_factory: async_sessionmaker,
    backend: Optional[PushBackend] = None,
    stream: Optional[InboxStreamManager] = None,
    appointments: Optional[AppointmentDirectory] = None,
) -> NotificationService:
    """Wire the registry, store and dispatcher into a NotificationService."""
    registry = DeviceTokenRegistry(session_factory)
    store = NotificationStore(session_factory)
    dispatcher = PushDispatcher(
        backend or build_backend(config),
        registry,
        timeout_seconds=config.dispatch_timeout_seconds,
    )
    return NotificationService(
        registry,
        store,
        dispatcher,
        stream=stream,
        appointments=appointments or HttpAppointmentDirectory(config.appointment_service_url),
        bulk_concurrency=config.bulk_send_concurrency,
    )


__all__ = [
    "DeviceTokenRegistry",
    "NotificationStore",
    "PushDispatcher",
    "NotificationService",
    "SchedulerService",
    "InboxStreamManager",
    "build_notification_service",
]
