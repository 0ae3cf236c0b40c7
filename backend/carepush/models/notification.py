"""Notification model - per-user inbox entries and their delivery state."""
import enum
from datetime import datetime
from sqlalchemy import Boolean, Column, Integer, String, Text, DateTime, Index

from ..database import Base


class NotificationType(str, enum.Enum):
    """Closed set of notification categories."""
    APPOINTMENT = "appointment"
    APPOINTMENT_REMINDER = "appointment_reminder"
    APPOINTMENT_CANCELLED = "appointment_cancelled"
    APPOINTMENT_RESCHEDULED = "appointment_rescheduled"
    DOCTOR_MESSAGE = "doctor_message"
    MEDICATION_REMINDER = "medication_reminder"
    CHECKUP_REMINDER = "checkup_reminder"
    HEALTH_TIP = "health_tip"
    GENERAL = "general"
    EMERGENCY = "emergency"


class Notification(Base):
    """A message destined for one user.

    A row with scheduled_for set and is_sent false is waiting for the
    scheduler. claimed_at is stamped by the scheduler instance that picked
    the row up for dispatch.
    """

    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String, nullable=False)
    title = Column(String, nullable=False)
    body = Column(Text, nullable=False)
    type = Column(String, nullable=False, default=NotificationType.GENERAL.value)
    metadata_json = Column("metadata", Text, nullable=True)  # JSON object of string values
    image_url = Column(String, nullable=True)
    action_url = Column(String, nullable=True)
    scheduled_for = Column(DateTime, nullable=True)
    is_sent = Column(Boolean, nullable=False, default=False)
    sent_at = Column(DateTime, nullable=True)
    claimed_at = Column(DateTime, nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_notifications_user_created", "user_id", "created_at"),
        Index("ix_notifications_due", "is_sent", "scheduled_for"),
    )
