"""Notification store - persisted inbox rows, their read/sent state and scheduled-row claims."""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..database import async_session
from ..exceptions import NotFoundError
from ..models.notification import Notification, NotificationType
from ..utils.db_utils import persistence_guard, retry_on_lock

logger = logging.getLogger(__name__)


@dataclass
class NotificationFilter:
    """Optional constraints for listing a user's notifications."""
    type: Optional[NotificationType] = None
    is_read: Optional[bool] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


@dataclass
class NotificationPage:
    """A page of a user's notifications, newest first."""
    items: List[Notification] = field(default_factory=list)
    total: int = 0
    limit: int = 50
    offset: int = 0

    @property
    def has_more(self) -> bool:
        return self.total > self.offset + self.limit


class NotificationStore:
    """Owns notifications rows. Every inbox mutation is scoped to the owning user."""

    def __init__(self, session_factory: async_sessionmaker = async_session):
        self._session_factory = session_factory

    @persistence_guard("notification create")
    async def create(self, notification: Notification) -> int:
        """Persist a notification. is_sent/sent_at are set by the caller."""
        async with self._session_factory() as session:
            session.add(notification)
            await retry_on_lock(session.commit)
            return notification.id

    def _filter_conditions(self, user_id: str, filter: Optional[NotificationFilter]) -> list:
        conditions = [Notification.user_id == user_id]
        if filter is None:
            return conditions

        if filter.type is not None:
            conditions.append(Notification.type == NotificationType(filter.type).value)
        if filter.is_read is not None:
            conditions.append(Notification.is_read.is_(filter.is_read))
        if filter.start_date is not None:
            conditions.append(Notification.created_at >= filter.start_date)
        if filter.end_date is not None:
            conditions.append(Notification.created_at <= filter.end_date)
        return conditions

    @persistence_guard("notification list")
    async def list(
        self,
        user_id: str,
        filter: Optional[NotificationFilter] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[Notification], int]:
        """Return (items, total) for a user, ordered by created_at descending."""
        conditions = self._filter_conditions(user_id, filter)

        async with self._session_factory() as session:
            result = await session.execute(
                select(Notification)
                .where(*conditions)
                .order_by(Notification.created_at.desc(), Notification.id.desc())
                .limit(limit)
                .offset(offset)
            )
            items = list(result.scalars().all())

            total_result = await session.execute(
                select(func.count(Notification.id)).where(*conditions)
            )
            total = total_result.scalar() or 0

        return items, total

    @persistence_guard("notification lookup")
    async def get(self, notification_id: int, user_id: str) -> Notification:
        """Fetch a single notification owned by the user."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(Notification).where(
                    Notification.id == notification_id,
                    Notification.user_id == user_id,
                )
            )
            notification = result.scalar_one_or_none()
        if notification is None:
            raise NotFoundError("Notification not found")
        return notification

    @persistence_guard("mark read")
    async def mark_read(self, notification_id: int, user_id: str) -> bool:
        """Mark one notification read. Missing or foreign ids are a no-op."""
        async with self._session_factory() as session:
            await session.execute(
                update(Notification)
                .where(Notification.id == notification_id, Notification.user_id == user_id)
                .values(is_read=True)
            )
            await retry_on_lock(session.commit)
        return True

    @persistence_guard("mark all read")
    async def mark_all_read(self, user_id: str) -> bool:
        """Mark every unread notification of the user read."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(Notification)
                .where(Notification.user_id == user_id, Notification.is_read.is_(False))
                .values(is_read=True)
            )
            await retry_on_lock(session.commit)
        logger.debug(f"Marked {result.rowcount} notification(s) read for user {user_id}")
        return True

    @persistence_guard("notification delete")
    async def delete(self, notification_id: int, user_id: str) -> bool:
        """Hard delete one notification owned by the user."""
        async with self._session_factory() as session:
            await session.execute(
                delete(Notification).where(
                    Notification.id == notification_id,
                    Notification.user_id == user_id,
                )
            )
            await retry_on_lock(session.commit)
        return True

    @persistence_guard("unread count")
    async def unread_count(self, user_id: str) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count(Notification.id)).where(
                    Notification.user_id == user_id,
                    Notification.is_read.is_(False),
                )
            )
            return result.scalar() or 0

    @persistence_guard("due scheduled lookup")
    async def due_scheduled(self, now: Optional[datetime] = None) -> List[Notification]:
        """Scheduled notifications whose time has come and that are not yet sent."""
        now = now or datetime.utcnow()
        async with self._session_factory() as session:
            result = await session.execute(
                select(Notification)
                .where(
                    Notification.scheduled_for.is_not(None),
                    Notification.scheduled_for <= now,
                    Notification.is_sent.is_(False),
                )
                .order_by(Notification.scheduled_for, Notification.id)
            )
            return list(result.scalars().all())

    @persistence_guard("scheduled claim")
    async def claim(self, notification_id: int, now: Optional[datetime] = None) -> bool:
        """Atomically take a due row for dispatch and mark it sent.

        A single conditional UPDATE; only one concurrent caller can see a
        rowcount of 1. The row leaves the due set at the moment it is claimed,
        so it is never dispatched a second time, even if the attempt fails.
        """
        now = now or datetime.utcnow()
        async with self._session_factory() as session:
            result = await session.execute(
                update(Notification)
                .where(Notification.id == notification_id, Notification.is_sent.is_(False))
                .values(is_sent=True, sent_at=now, claimed_at=now)
            )
            await retry_on_lock(session.commit)
        return result.rowcount == 1

    @persistence_guard("mark sent")
    async def mark_sent(self, notification_id: int) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(Notification)
                .where(Notification.id == notification_id)
                .values(is_sent=True, sent_at=datetime.utcnow())
            )
            await retry_on_lock(session.commit)
