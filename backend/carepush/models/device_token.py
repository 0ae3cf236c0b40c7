"""DeviceToken model - stores per-device push tokens for users."""
import enum
from datetime import datetime
from sqlalchemy import Boolean, Column, Integer, String, DateTime

from ..database import Base


class DeviceType(str, enum.Enum):
    """Platform of the installed app instance."""
    WEB = "web"
    ANDROID = "android"
    IOS = "ios"


class DeviceToken(Base):
    """Registered device for push notifications."""

    __tablename__ = "device_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    token = Column(String, unique=True, nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    device_type = Column(String, nullable=False, default=DeviceType.WEB.value)
    device_name = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    last_used_at = Column(DateTime, nullable=True)
