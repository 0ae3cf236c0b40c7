"""Device token API endpoints for push notifications."""
import logging

from fastapi import APIRouter, Depends

from ..dependencies import get_notification_service
from ..schemas.base import SuccessResponse
from ..schemas.device import (
    DeviceRegisterRequest,
    DeviceRegisterResponse,
    DeviceResponse,
    DeviceUnregisterRequest,
    UserDevicesUnregisterRequest,
    UserDevicesUnregisterResponse,
)
from ..services.notification_service import NotificationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/notifications/tokens", tags=["devices"])


@router.post("/register", response_model=DeviceRegisterResponse)
async def register_device(
    request: DeviceRegisterRequest,
    service: NotificationService = Depends(get_notification_service),
):
    """Register a device token for push notifications.

    If the token already exists it is moved to the given user and reactivated.
    Clients should call this whenever the push provider hands out a new token.
    """
    result = await service.register_device(
        request.user_id,
        request.token,
        request.device_type,
        request.device_name,
    )
    return DeviceRegisterResponse(
        success=True,
        device_id=result.device_id,
        message=result.message,
    )


@router.post("/unregister", response_model=SuccessResponse)
async def unregister_device(
    request: DeviceUnregisterRequest,
    service: NotificationService = Depends(get_notification_service),
):
    """Unregister a device token.

    This doesn't delete the record but marks it as inactive. Unknown tokens
    are accepted.
    """
    success = await service.unregister_device(request.token)
    return SuccessResponse(success=success)


@router.post("/unregister-user", response_model=UserDevicesUnregisterResponse)
async def unregister_user_devices(
    request: UserDevicesUnregisterRequest,
    service: NotificationService = Depends(get_notification_service),
):
    """Deactivate every device of a user (used on logout everywhere)."""
    count = await service.unregister_user_devices(request.user_id)
    return UserDevicesUnregisterResponse(
        success=True,
        count=count,
        message=f"Unregistered {count} device(s)",
    )


@router.get("/{token}", response_model=DeviceResponse)
async def get_device(
    token: str,
    service: NotificationService = Depends(get_notification_service),
):
    """Look up a registered device by token."""
    device = await service.registry.get(token)
    return DeviceResponse.model_validate(device)
