"""FastAPI dependencies."""
from fastapi import HTTPException, Request, WebSocket, status

from .services.inbox_stream import InboxStreamManager
from .services.notification_service import NotificationService


def get_notification_service(request: Request) -> NotificationService:
    """NotificationService created in the application lifespan."""
    service = getattr(request.app.state, "notification_service", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Notification service not initialized",
        )
    return service


def get_inbox_stream(websocket: WebSocket) -> InboxStreamManager:
    return websocket.app.state.inbox_stream
