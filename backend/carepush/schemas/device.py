"""Device registration schemas for API."""
from datetime import datetime
from typing import Optional
from pydantic import Field

from ..models.device_token import DeviceType
from .base import CamelModel


class DeviceRegisterRequest(CamelModel):
    """Request to register a device for push notifications."""
    user_id: str = Field(..., min_length=1)
    token: str = Field(..., min_length=1)
    device_type: DeviceType = DeviceType.WEB
    device_name: Optional[str] = Field(None, max_length=255)


class DeviceRegisterResponse(CamelModel):
    """Response after registering a device."""
    success: bool
    device_id: int
    message: str


class DeviceUnregisterRequest(CamelModel):
    token: str = Field(..., min_length=1)


class UserDevicesUnregisterRequest(CamelModel):
    user_id: str = Field(..., min_length=1)


class UserDevicesUnregisterResponse(CamelModel):
    success: bool
    count: int
    message: str


class DeviceResponse(CamelModel):
    """A registered device as seen by operators."""
    token: str
    user_id: str
    device_type: DeviceType
    device_name: Optional[str] = None
    is_active: bool
    created_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None
