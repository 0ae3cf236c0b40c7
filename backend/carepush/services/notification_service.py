"""Notification service - persists, dispatches and tracks notifications for users.

Business services (appointments, chat, profiles) call send_to_user and
send_to_multiple_users with fully rendered content. Both always return a
structured result; delivery problems are reported in the result, never raised.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, Optional

from ..exceptions import PersistenceError, ValidationError
from ..models.device_token import DeviceType
from ..models.notification import Notification, NotificationType
from .appointments import AppointmentDirectory
from .device_registry import DeviceTokenRegistry, RegistrationResult
from .inbox_stream import InboxStreamManager
from .notification_store import NotificationFilter, NotificationPage, NotificationStore
from .payload import NotificationPayload
from .push_dispatcher import PushDispatcher

logger = logging.getLogger(__name__)

MESSAGE_SCHEDULED = "Notification scheduled successfully"
MESSAGE_NO_DEVICES = "No active devices to send notification"
MESSAGE_FAILED = "Failed to send notification"


@dataclass
class SendResult:
    """Result of sending to a single user."""
    success: bool
    notification_id: Optional[int] = None
    message: str = ""


@dataclass
class BulkSendResult:
    """Aggregate result of sending to several users."""
    success: bool
    sent_count: int = 0
    failed_count: int = 0


def to_utc_naive(value: Optional[datetime]) -> Optional[datetime]:
    """Timestamps are stored as naive UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class NotificationService:
    """Orchestrates the registry, store and dispatcher."""

    def __init__(
        self,
        registry: DeviceTokenRegistry,
        store: NotificationStore,
        dispatcher: PushDispatcher,
        stream: Optional[InboxStreamManager] = None,
        appointments: Optional[AppointmentDirectory] = None,
        bulk_concurrency: int = 10,
    ):
        self.registry = registry
        self.store = store
        self.dispatcher = dispatcher
        self.stream = stream
        self.appointments = appointments
        self._bulk_concurrency = bulk_concurrency

    # Sending

    async def send_to_user(
        self,
        user_id: str,
        payload: NotificationPayload,
        scheduled_for: Optional[datetime] = None,
        persist: bool = True,
    ) -> SendResult:
        """Send a notification to every active device of a user.

        With scheduled_for set the notification is only stored; the
        scheduler delivers it later. persist=False skips storage and is used
        for rows that already exist.
        """
        if not user_id:
            raise ValidationError("userId is required", field="userId")
        if not payload.title:
            raise ValidationError("title is required", field="title")

        scheduled_for = to_utc_naive(scheduled_for)
        notification_id = None
        try:
            if persist:
                notification = self._build_notification(user_id, payload, scheduled_for)
                notification_id = await self.store.create(notification)
                if scheduled_for is None:
                    await self.announce_notification(notification)

            if scheduled_for is not None:
                logger.info(f"Notification {notification_id} scheduled for {scheduled_for.isoformat()}")
                return SendResult(success=True, notification_id=notification_id, message=MESSAGE_SCHEDULED)

            tokens = await self.registry.list_active_tokens(user_id)
            if not tokens:
                logger.warning(f"No active device tokens found for user: {user_id}")
                return SendResult(success=True, notification_id=notification_id, message=MESSAGE_NO_DEVICES)

            outcome = await self.dispatcher.send_multicast(tokens, payload)

            delivered = tokens - outcome.failed_tokens
            if delivered:
                await self.registry.touch(delivered)
        except PersistenceError as e:
            logger.error(f"Error sending notification to user {user_id}: {e}")
            return SendResult(success=False, notification_id=notification_id, message=MESSAGE_FAILED)

        if outcome.provider_unavailable:
            message = f"Push provider unavailable: {outcome.provider_error}"
        else:
            message = f"Sent to {outcome.success_count} devices, {outcome.failure_count} failed"

        return SendResult(
            success=outcome.success_count > 0,
            notification_id=notification_id,
            message=message,
        )

    def _build_notification(
        self,
        user_id: str,
        payload: NotificationPayload,
        scheduled_for: Optional[datetime],
    ) -> Notification:
        now = datetime.utcnow()
        immediate = scheduled_for is None
        return Notification(
            user_id=user_id,
            title=payload.title,
            body=payload.body,
            type=payload.type.value,
            metadata_json=json.dumps(payload.data, default=str) if payload.data else None,
            image_url=payload.image_url,
            action_url=payload.action_url,
            scheduled_for=scheduled_for,
            is_sent=immediate,
            sent_at=now if immediate else None,
            is_read=False,
            created_at=now,
        )

    async def send_to_multiple_users(
        self,
        user_ids: Iterable[str],
        payload: NotificationPayload,
        scheduled_for: Optional[datetime] = None,
    ) -> BulkSendResult:
        """Send the same notification to several users concurrently.

        Each user gets their own row and their own dispatch. Duplicate ids
        are collapsed so that one user is never dispatched to twice.
        """
        user_ids = list(dict.fromkeys(uid for uid in user_ids if uid))
        if not user_ids:
            return BulkSendResult(success=False)

        semaphore = asyncio.Semaphore(self._bulk_concurrency)

        async def send_with_limit(user_id: str) -> SendResult:
            async with semaphore:
                try:
                    return await self.send_to_user(user_id, payload, scheduled_for)
                except ValidationError as e:
                    return SendResult(success=False, message=e.message)

        results = await asyncio.gather(*[send_with_limit(uid) for uid in user_ids])

        sent_count = sum(1 for r in results if r.success)
        failed_count = len(results) - sent_count
        logger.info(f"Bulk notification: {sent_count} sent, {failed_count} failed")
        return BulkSendResult(
            success=sent_count > 0,
            sent_count=sent_count,
            failed_count=failed_count,
        )

    async def send_to_topic(self, topic: str, payload: NotificationPayload) -> bool:
        """Broadcast to a provider topic. Nothing is stored."""
        if not topic:
            raise ValidationError("topic is required", field="topic")
        return await self.dispatcher.send_to_topic(topic, payload)

    async def subscribe_user_to_topic(self, user_id: str, topic: str) -> int:
        """Subscribe all active devices of a user to a topic."""
        if not topic:
            raise ValidationError("topic is required", field="topic")
        tokens = await self.registry.list_active_tokens(user_id)
        return await self.dispatcher.subscribe_to_topic(tokens, topic)

    async def unsubscribe_user_from_topic(self, user_id: str, topic: str) -> int:
        if not topic:
            raise ValidationError("topic is required", field="topic")
        tokens = await self.registry.list_active_tokens(user_id)
        return await self.dispatcher.unsubscribe_from_topic(tokens, topic)

    async def announce_notification(self, notification: Notification):
        """Tell the user's open inbox streams about a delivered notification."""
        if self.stream is None:
            return
        await self.stream.notification_created(
            notification.user_id,
            notification.id,
            notification.title,
            notification.body,
            notification.type,
        )

    # Devices

    async def register_device(
        self,
        user_id: str,
        token: str,
        device_type: DeviceType | str = DeviceType.WEB,
        device_name: Optional[str] = None,
    ) -> RegistrationResult:
        return await self.registry.register(user_id, token, device_type, device_name)

    async def unregister_device(self, token: str) -> bool:
        if not token:
            raise ValidationError("token is required", field="token")
        return await self.registry.deactivate(token)

    async def unregister_user_devices(self, user_id: str) -> int:
        if not user_id:
            raise ValidationError("userId is required", field="userId")
        return await self.registry.deactivate_all(user_id)

    # Inbox

    async def get_user_notifications(
        self,
        user_id: str,
        filter: Optional[NotificationFilter] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> NotificationPage:
        if filter is not None:
            filter.start_date = to_utc_naive(filter.start_date)
            filter.end_date = to_utc_naive(filter.end_date)
        items, total = await self.store.list(user_id, filter, limit, offset)
        return NotificationPage(items=items, total=total, limit=limit, offset=offset)

    async def get_notification(self, notification_id: int, user_id: str) -> Notification:
        return await self.store.get(notification_id, user_id)

    async def _publish_unread_count(self, user_id: str):
        if self.stream is None:
            return
        try:
            count = await self.store.unread_count(user_id)
        except PersistenceError as e:
            logger.warning(f"Skipping unread count update for {user_id}: {e}")
            return
        await self.stream.unread_count(user_id, count)

    async def mark_as_read(self, notification_id: int, user_id: str) -> bool:
        try:
            await self.store.mark_read(notification_id, user_id)
            await self._publish_unread_count(user_id)
        except PersistenceError as e:
            logger.error(f"Error marking notification {notification_id} as read: {e}")
            return False
        return True

    async def mark_all_as_read(self, user_id: str) -> bool:
        try:
            await self.store.mark_all_read(user_id)
            await self._publish_unread_count(user_id)
        except PersistenceError as e:
            logger.error(f"Error marking all notifications as read for {user_id}: {e}")
            return False
        return True

    async def delete_notification(self, notification_id: int, user_id: str) -> bool:
        try:
            await self.store.delete(notification_id, user_id)
            await self._publish_unread_count(user_id)
        except PersistenceError as e:
            logger.error(f"Error deleting notification {notification_id}: {e}")
            return False
        return True

    async def get_unread_count(self, user_id: str) -> int:
        return await self.store.unread_count(user_id)

    # Domain senders

    async def send_appointment_reminder(self, appointment_id: str) -> bool:
        """Remind the patient of an upcoming appointment."""
        if self.appointments is None:
            logger.error("Appointment directory not configured")
            return False

        appointment = await self.appointments.get_appointment(appointment_id)
        if appointment is None:
            logger.error(f"Appointment not found: {appointment_id}")
            return False

        result = await self.send_to_user(
            appointment.patient_id,
            NotificationPayload(
                title="🏥 Appointment Reminder",
                body=(
                    f"You have an appointment with Dr. {appointment.doctor_name} "
                    f"on {appointment.formatted_date} at {appointment.appointment_time}"
                ),
                type=NotificationType.APPOINTMENT_REMINDER,
                data={
                    "appointmentId": appointment.appointment_id,
                    "doctorName": appointment.doctor_name,
                    "date": appointment.formatted_date,
                    "time": appointment.appointment_time,
                },
                action_url=f"/appointments/{appointment.appointment_id}",
            ),
        )
        return result.notification_id is not None

    async def send_doctor_message(self, patient_id: str, doctor_name: str, message_preview: str) -> bool:
        """Tell a patient that their doctor sent a chat message."""
        result = await self.send_to_user(
            patient_id,
            NotificationPayload(
                title=f"💬 Message from Dr. {doctor_name}",
                body=message_preview,
                type=NotificationType.DOCTOR_MESSAGE,
                data={"doctorName": doctor_name},
                action_url="/chat",
            ),
        )
        return result.notification_id is not None
