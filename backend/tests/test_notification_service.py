from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from carepush.exceptions import PersistenceError, ValidationError
from carepush.models.notification import NotificationType
from carepush.services.appointments import AppointmentDirectory, AppointmentInfo
from carepush.services.notification_service import (
    MESSAGE_FAILED,
    MESSAGE_NO_DEVICES,
    MESSAGE_SCHEDULED,
    NotificationService,
)
from carepush.services.notification_store import NotificationFilter
from carepush.services.payload import NotificationPayload
from carepush.services.scheduler import SchedulerService

from conftest import FakeWebSocket


PAYLOAD = NotificationPayload(
    title="Appointment confirmed",
    body="See you on Monday",
    type=NotificationType.APPOINTMENT,
    data={"appointmentId": "apt-1", "slot": 3},
)


class StaticAppointments(AppointmentDirectory):
    def __init__(self, appointments):
        self.appointments = appointments

    async def get_appointment(self, appointment_id):
        return self.appointments.get(appointment_id)


# Sending

async def test_immediate_send_persists_sent_row_and_dispatches(service, registry, store, backend):
    await registry.register("user-1", "phone")
    await registry.register("user-1", "browser")

    result = await service.send_to_user("user-1", PAYLOAD)

    assert result.success is True
    assert result.message == "Sent to 2 devices, 0 failed"
    assert sorted(backend.dispatched_tokens) == ["browser", "phone"]

    notification = await store.get(result.notification_id, "user-1")
    assert notification.is_sent is True
    assert notification.sent_at is not None
    assert notification.scheduled_for is None
    assert notification.type == "appointment"

    message = backend.multicast_calls[0][1]
    assert message.data == {"appointmentId": "apt-1", "slot": "3"}


async def test_send_without_devices_still_stores_inbox_row(service, store, backend):
    result = await service.send_to_user("user-1", PAYLOAD)

    assert result.success is True
    assert result.message == MESSAGE_NO_DEVICES
    assert result.notification_id is not None
    assert backend.multicast_calls == []
    assert await store.unread_count("user-1") == 1


async def test_scheduled_send_stores_unsent_row_without_dispatch(service, registry, store, backend):
    await registry.register("user-1", "phone")
    when = datetime.utcnow() + timedelta(hours=1)

    result = await service.send_to_user("user-1", PAYLOAD, scheduled_for=when)

    assert result.success is True
    assert result.message == MESSAGE_SCHEDULED
    assert backend.multicast_calls == []

    notification = await store.get(result.notification_id, "user-1")
    assert notification.is_sent is False
    assert notification.sent_at is None
    assert notification.scheduled_for == when


async def test_timezone_aware_schedule_is_stored_as_utc(service, store):
    when = datetime(2025, 6, 1, 12, 0, tzinfo=timezone(timedelta(hours=2)))

    result = await service.send_to_user("user-1", PAYLOAD, scheduled_for=when)

    notification = await store.get(result.notification_id, "user-1")
    assert notification.scheduled_for == datetime(2025, 6, 1, 10, 0)


async def test_partial_failure_reports_counts_and_retires_invalid_token(service, registry, backend):
    await registry.register("user-1", "good")
    await registry.register("user-1", "dead")
    backend.invalid_tokens = {"dead"}

    result = await service.send_to_user("user-1", PAYLOAD)

    assert result.success is True
    assert result.message == "Sent to 1 devices, 1 failed"
    assert await registry.list_active_tokens("user-1") == {"good"}

    backend.multicast_calls.clear()
    await service.send_to_user("user-1", PAYLOAD)
    assert backend.dispatched_tokens == ["good"]


async def test_all_devices_failing_is_unsuccessful(service, registry, backend):
    await registry.register("user-1", "a")
    backend.failing_tokens = {"a"}

    result = await service.send_to_user("user-1", PAYLOAD)

    assert result.success is False
    assert result.message == "Sent to 0 devices, 1 failed"
    assert result.notification_id is not None


async def test_provider_outage_is_reported_not_raised(service, registry, store, backend):
    await registry.register("user-1", "a")
    backend.unavailable = "FCM unavailable"

    result = await service.send_to_user("user-1", PAYLOAD)

    assert result.success is False
    assert result.message.startswith("Push provider unavailable")
    assert await registry.list_active_tokens("user-1") == {"a"}
    assert await store.unread_count("user-1") == 1


async def test_empty_user_or_title_is_rejected(service):
    with pytest.raises(ValidationError):
        await service.send_to_user("", PAYLOAD)
    with pytest.raises(ValidationError):
        await service.send_to_user("user-1", NotificationPayload(title="", body="b"))


async def test_persistence_failure_becomes_failed_result(service, backend):
    service.store.create = AsyncMock(side_effect=PersistenceError("Database error during notification create"))

    result = await service.send_to_user("user-1", PAYLOAD)

    assert result.success is False
    assert result.notification_id is None
    assert result.message == MESSAGE_FAILED
    assert backend.multicast_calls == []


async def test_delivered_tokens_are_touched(service, registry):
    await registry.register("user-1", "a")
    service.registry.touch = AsyncMock()

    await service.send_to_user("user-1", PAYLOAD)

    service.registry.touch.assert_awaited_once_with({"a"})


async def test_bulk_send_counts_per_user(service, registry, store, backend):
    await registry.register("user-1", "a")
    await registry.register("user-2", "b")
    await registry.register("user-3", "c")
    backend.failing_tokens = {"c"}

    result = await service.send_to_multiple_users(["user-1", "user-2", "user-3", "user-1"], PAYLOAD)

    assert result.success is True
    assert result.sent_count == 2
    assert result.failed_count == 1
    # One row and one dispatch per distinct user
    assert sorted(backend.dispatched_tokens) == ["a", "b", "c"]
    for user_id in ("user-1", "user-2", "user-3"):
        assert await store.unread_count(user_id) == 1


async def test_bulk_send_with_no_users(service):
    result = await service.send_to_multiple_users([], PAYLOAD)

    assert result.success is False
    assert result.sent_count == 0
    assert result.failed_count == 0


async def test_bulk_scheduled_send(service, store, backend):
    when = datetime.utcnow() + timedelta(days=1)

    result = await service.send_to_multiple_users(["user-1", "user-2"], PAYLOAD, scheduled_for=when)

    assert result.sent_count == 2
    assert backend.multicast_calls == []
    assert len(await store.due_scheduled(when)) == 2


async def test_topic_send_and_subscription(service, registry, backend):
    await registry.register("user-1", "a")
    await registry.register("user-1", "b")

    assert await service.send_to_topic("health-tips", PAYLOAD) is True
    assert await service.subscribe_user_to_topic("user-1", "health-tips") == 2
    assert await service.unsubscribe_user_from_topic("user-1", "health-tips") == 2

    with pytest.raises(ValidationError):
        await service.send_to_topic("", PAYLOAD)


# Devices

async def test_device_operations(service, registry):
    result = await service.register_device("user-1", "a", "ios", "iPhone")
    assert result.created is True

    assert await service.unregister_device("a") is True
    assert await service.unregister_device("unknown") is True

    await service.register_device("user-1", "a")
    await service.register_device("user-1", "b")
    assert await service.unregister_user_devices("user-1") == 2

    with pytest.raises(ValidationError):
        await service.unregister_device("")
    with pytest.raises(ValidationError):
        await service.unregister_user_devices("")


# Inbox

async def test_inbox_read_state_is_per_user(service):
    own = await service.send_to_user("user-1", PAYLOAD)
    other = await service.send_to_user("user-2", PAYLOAD)

    assert await service.mark_as_read(other.notification_id, "user-1") is True
    assert await service.get_unread_count("user-2") == 1

    assert await service.mark_as_read(own.notification_id, "user-1") is True
    assert await service.get_unread_count("user-1") == 0

    await service.send_to_user("user-1", PAYLOAD)
    assert await service.mark_all_as_read("user-1") is True
    assert await service.get_unread_count("user-1") == 0
    assert await service.get_unread_count("user-2") == 1


async def test_delete_notification(service):
    own = await service.send_to_user("user-1", PAYLOAD)

    assert await service.delete_notification(own.notification_id, "user-2") is True
    assert (await service.get_user_notifications("user-1")).total == 1

    assert await service.delete_notification(own.notification_id, "user-1") is True
    assert (await service.get_user_notifications("user-1")).total == 0


async def test_inbox_write_failure_returns_false(service):
    service.store.mark_read = AsyncMock(side_effect=PersistenceError("Database error during mark read"))

    assert await service.mark_as_read(1, "user-1") is False


async def test_get_user_notifications_filters_and_pages(service):
    for _ in range(3):
        await service.send_to_user("user-1", PAYLOAD)
    await service.send_to_user("user-1", NotificationPayload(title="Tip", body="Drink water", type="health_tip"))

    page = await service.get_user_notifications("user-1", limit=2)
    assert page.total == 4
    assert len(page.items) == 2
    assert page.has_more is True
    assert page.items[0].title == "Tip"

    page = await service.get_user_notifications(
        "user-1",
        NotificationFilter(type=NotificationType.HEALTH_TIP),
    )
    assert page.total == 1
    assert page.has_more is False


async def test_inbox_stream_receives_events(service, stream):
    websocket = FakeWebSocket()
    async with stream.session("user-1", websocket):
        result = await service.send_to_user("user-1", PAYLOAD)
        await service.mark_as_read(result.notification_id, "user-1")

    assert websocket.accepted is True
    created, unread = websocket.messages
    assert created["type"] == "notification_created"
    assert created["notification_id"] == result.notification_id
    assert created["notification_type"] == "appointment"
    assert unread == {"type": "unread_count", "count": 0}


# Domain senders

async def test_appointment_reminder(registry, store, dispatcher, backend):
    appointments = StaticAppointments({
        "apt-1": AppointmentInfo(
            appointment_id="apt-1",
            patient_id="patient-1",
            doctor_name="Jane Smith",
            appointment_date=datetime(2025, 3, 14).date(),
            appointment_time="10:30",
        ),
    })
    service = NotificationService(registry, store, dispatcher, appointments=appointments)
    await registry.register("patient-1", "phone")

    assert await service.send_appointment_reminder("apt-1") is True
    assert await service.send_appointment_reminder("missing") is False

    page = await service.get_user_notifications("patient-1")
    notification = page.items[0]
    assert notification.title == "🏥 Appointment Reminder"
    assert notification.body == "You have an appointment with Dr. Jane Smith on 03/14/2025 at 10:30"
    assert notification.type == "appointment_reminder"
    assert notification.action_url == "/appointments/apt-1"
    assert backend.dispatched_tokens == ["phone"]


async def test_appointment_reminder_without_directory(service):
    assert await service.send_appointment_reminder("apt-1") is False


async def test_doctor_message(service, store):
    assert await service.send_doctor_message("patient-1", "House", "Please call me back") is True

    page = await service.get_user_notifications("patient-1")
    notification = page.items[0]
    assert notification.title == "💬 Message from Dr. House"
    assert notification.body == "Please call me back"
    assert notification.type == "doctor_message"
    assert notification.action_url == "/chat"


# End to end

async def test_scheduled_notification_is_delivered_once_after_due_time(service, registry, store, backend):
    await registry.register("user-1", "phone")
    t1 = datetime(2025, 3, 1, 8, 0)
    t2 = t1 + timedelta(hours=1)
    scheduler = SchedulerService(service)

    result = await service.send_to_user("user-1", PAYLOAD, scheduled_for=t2)
    assert result.message == MESSAGE_SCHEDULED

    assert await scheduler.tick(now=t1) == 0
    assert backend.multicast_calls == []

    assert await scheduler.tick(now=t2 + timedelta(seconds=30)) == 1
    assert backend.dispatched_tokens == ["phone"]

    notification = await store.get(result.notification_id, "user-1")
    assert notification.is_sent is True
    assert notification.sent_at is not None

    assert await scheduler.tick(now=t2 + timedelta(minutes=5)) == 0
    assert backend.dispatched_tokens == ["phone"]
    assert (await service.get_user_notifications("user-1")).total == 1


async def test_three_tokens_two_delivered_one_invalid(service, registry, backend):
    for token in ("a", "b", "dead"):
        await registry.register("user-1", token)
    backend.invalid_tokens = {"dead"}
    touch = AsyncMock(wraps=registry.touch)
    service.registry.touch = touch

    result = await service.send_to_user("user-1", PAYLOAD)

    assert result.message == "Sent to 2 devices, 1 failed"
    touch.assert_awaited_once_with({"a", "b"})
    assert await registry.list_active_tokens("user-1") == {"a", "b"}


async def test_web_and_android_devices_end_to_end(service, registry, store, backend):
    await registry.register("user-1", "t1", "web")
    await registry.register("user-1", "t2", "android")
    backend.invalid_tokens = {"t2"}
    t1_before = (await registry.get("t1")).last_used_at

    result = await service.send_to_user("user-1", PAYLOAD)

    assert result.success is True
    assert result.message == "Sent to 1 devices, 1 failed"
    assert (await store.get(result.notification_id, "user-1")).is_sent is True
    t1 = await registry.get("t1")
    assert t1.is_active is True
    assert t1.last_used_at >= t1_before
    assert (await registry.get("t2")).is_active is False


async def test_unread_count_tracks_unread_rows_through_mixed_operations(service, store):
    async def assert_consistent(user_id="user-1"):
        _, unread_total = await store.list(user_id, NotificationFilter(is_read=False))
        assert await service.get_unread_count(user_id) == unread_total
        return unread_total

    ids = [(await service.send_to_user("user-1", PAYLOAD)).notification_id for _ in range(4)]
    await service.send_to_user("user-2", PAYLOAD)
    assert await assert_consistent() == 4

    await service.mark_as_read(ids[0], "user-1")
    assert await assert_consistent() == 3

    # Deleting an unread row lowers the count; deleting a read row does not
    await service.delete_notification(ids[1], "user-1")
    assert await assert_consistent() == 2
    await service.delete_notification(ids[0], "user-1")
    assert await assert_consistent() == 2

    await service.send_to_user("user-1", PAYLOAD)
    assert await assert_consistent() == 3

    assert await service.mark_all_as_read("user-1") is True
    assert await assert_consistent() == 0
    once = [(n.id, n.is_read) for n in (await service.get_user_notifications("user-1")).items]

    # A second mark-all leaves the same state
    assert await service.mark_all_as_read("user-1") is True
    assert await assert_consistent() == 0
    twice = [(n.id, n.is_read) for n in (await service.get_user_notifications("user-1")).items]
    assert twice == once

    assert await assert_consistent("user-2") == 1
