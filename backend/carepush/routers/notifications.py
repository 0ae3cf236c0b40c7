"""Notification API endpoints - sending, inbox and the realtime inbox stream."""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect

from ..config import settings
from ..dependencies import get_inbox_stream, get_notification_service
from ..models.notification import NotificationType
from ..schemas.base import SuccessResponse
from ..schemas.notification import (
    AppointmentReminderRequest,
    BulkNotificationRequest,
    BulkNotificationResponse,
    DoctorMessageRequest,
    NotificationListResponse,
    NotificationResponse,
    SendNotificationRequest,
    SendNotificationResponse,
    TestNotificationRequest,
    TopicNotificationRequest,
    TopicSubscriptionRequest,
    TopicSubscriptionResponse,
    UnreadCountResponse,
    UserRequest,
)
from ..services.inbox_stream import InboxStreamManager
from ..services.notification_service import NotificationService
from ..services.notification_store import NotificationFilter
from ..services.payload import NotificationPayload

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/notifications", tags=["notifications"])


# Sending

@router.post("/send", response_model=SendNotificationResponse)
async def send_notification(
    request: SendNotificationRequest,
    service: NotificationService = Depends(get_notification_service),
):
    """Send a notification to one user, now or at scheduled_for."""
    result = await service.send_to_user(
        request.user_id,
        request.to_payload(),
        scheduled_for=request.scheduled_for,
    )
    return SendNotificationResponse(
        success=result.success,
        notification_id=result.notification_id,
        message=result.message,
    )


@router.post("/send/bulk", response_model=BulkNotificationResponse)
async def send_bulk_notification(
    request: BulkNotificationRequest,
    service: NotificationService = Depends(get_notification_service),
):
    """Send the same notification to several users."""
    result = await service.send_to_multiple_users(
        request.user_ids,
        request.to_payload(),
        scheduled_for=request.scheduled_for,
    )
    return BulkNotificationResponse(
        success=result.success,
        sent_count=result.sent_count,
        failed_count=result.failed_count,
    )


@router.post("/send/appointment-reminder", response_model=SuccessResponse)
async def send_appointment_reminder(
    request: AppointmentReminderRequest,
    service: NotificationService = Depends(get_notification_service),
):
    success = await service.send_appointment_reminder(request.appointment_id)
    return SuccessResponse(success=success)


@router.post("/send/doctor-message", response_model=SuccessResponse)
async def send_doctor_message(
    request: DoctorMessageRequest,
    service: NotificationService = Depends(get_notification_service),
):
    success = await service.send_doctor_message(
        request.patient_id,
        request.doctor_name,
        request.message_preview,
    )
    return SuccessResponse(success=success)


@router.post("/send/topic", response_model=SuccessResponse)
async def send_topic_notification(
    request: TopicNotificationRequest,
    service: NotificationService = Depends(get_notification_service),
):
    """Broadcast to every device subscribed to a topic. Nothing is stored."""
    success = await service.send_to_topic(request.topic, request.to_payload())
    return SuccessResponse(success=success)


@router.post("/topics/subscribe", response_model=TopicSubscriptionResponse)
async def subscribe_to_topic(
    request: TopicSubscriptionRequest,
    service: NotificationService = Depends(get_notification_service),
):
    count = await service.subscribe_user_to_topic(request.user_id, request.topic)
    return TopicSubscriptionResponse(success=count > 0, count=count)


@router.post("/topics/unsubscribe", response_model=TopicSubscriptionResponse)
async def unsubscribe_from_topic(
    request: TopicSubscriptionRequest,
    service: NotificationService = Depends(get_notification_service),
):
    count = await service.unsubscribe_user_from_topic(request.user_id, request.topic)
    return TopicSubscriptionResponse(success=count > 0, count=count)


@router.post("/test", response_model=SendNotificationResponse)
async def send_test_notification(
    request: TestNotificationRequest,
    service: NotificationService = Depends(get_notification_service),
):
    """Send a test notification. Only available when ENABLE_TEST_ENDPOINT is set."""
    if not settings.enable_test_endpoint:
        raise HTTPException(status_code=404, detail="Not Found")

    result = await service.send_to_user(
        request.user_id,
        NotificationPayload(
            title=request.title,
            body=request.body,
            type=NotificationType.GENERAL,
            data={"test": "true"},
        ),
    )
    return SendNotificationResponse(
        success=result.success,
        notification_id=result.notification_id,
        message=result.message,
    )


# Inbox

@router.get("/user/{user_id}", response_model=NotificationListResponse)
async def list_user_notifications(
    user_id: str,
    type: Optional[NotificationType] = None,
    is_read: Optional[bool] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    service: NotificationService = Depends(get_notification_service),
):
    """Get a user's notifications, newest first."""
    page = await service.get_user_notifications(
        user_id,
        NotificationFilter(type=type, is_read=is_read, start_date=start_date, end_date=end_date),
        limit=limit,
        offset=offset,
    )
    return NotificationListResponse(
        notifications=[NotificationResponse.from_model(n) for n in page.items],
        total=page.total,
        limit=page.limit,
        offset=page.offset,
        has_more=page.has_more,
    )


@router.get("/user/{user_id}/unread-count", response_model=UnreadCountResponse)
async def get_unread_count(
    user_id: str,
    service: NotificationService = Depends(get_notification_service),
):
    count = await service.get_unread_count(user_id)
    return UnreadCountResponse(count=count)


@router.patch("/read-all", response_model=SuccessResponse)
async def mark_all_as_read(
    request: UserRequest,
    service: NotificationService = Depends(get_notification_service),
):
    success = await service.mark_all_as_read(request.user_id)
    return SuccessResponse(success=success)


@router.get("/{notification_id}", response_model=NotificationResponse)
async def get_notification(
    notification_id: int,
    user_id: str = Query(..., min_length=1),
    service: NotificationService = Depends(get_notification_service),
):
    notification = await service.get_notification(notification_id, user_id)
    return NotificationResponse.from_model(notification)


@router.patch("/{notification_id}/read", response_model=SuccessResponse)
async def mark_as_read(
    notification_id: int,
    request: UserRequest,
    service: NotificationService = Depends(get_notification_service),
):
    success = await service.mark_as_read(notification_id, request.user_id)
    return SuccessResponse(success=success)


@router.delete("/{notification_id}", response_model=SuccessResponse)
async def delete_notification(
    notification_id: int,
    user_id: str = Query(..., min_length=1),
    service: NotificationService = Depends(get_notification_service),
):
    success = await service.delete_notification(notification_id, user_id)
    return SuccessResponse(success=success)


# Realtime

@router.websocket("/ws/{user_id}")
async def inbox_websocket(
    websocket: WebSocket,
    user_id: str,
    stream: InboxStreamManager = Depends(get_inbox_stream),
):
    """Stream inbox events (new notifications, unread count) to a connected client.

    Clients may send "ping" as a heartbeat.
    """
    async with stream.session(user_id, websocket):
        try:
            while True:
                message = await websocket.receive_text()
                if message == "ping":
                    await websocket.send_json({"type": "pong"})
        except WebSocketDisconnect:
            pass
