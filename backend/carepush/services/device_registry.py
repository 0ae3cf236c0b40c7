"""Device token registry - the source of truth for which devices receive a user's pushes."""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional, Set

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from ..database import async_session
from ..exceptions import NotFoundError, ValidationError
from ..models.device_token import DeviceToken, DeviceType
from ..utils.db_utils import persistence_guard, retry_on_lock

logger = logging.getLogger(__name__)

DEFAULT_DEVICE_NAME = "Unknown Device"


@dataclass
class RegistrationResult:
    """Outcome of a device registration."""
    created: bool
    device_id: int

    @property
    def message(self) -> str:
        if self.created:
            return "Device token registered successfully"
        return "Device token updated successfully"


class DeviceTokenRegistry:
    """Owns device_tokens rows. Tokens are soft-deactivated, never deleted."""

    def __init__(self, session_factory: async_sessionmaker = async_session):
        self._session_factory = session_factory

    @persistence_guard("device registration")
    async def register(
        self,
        user_id: str,
        token: str,
        device_type: DeviceType | str = DeviceType.WEB,
        device_name: Optional[str] = None,
    ) -> RegistrationResult:
        """Register a device token, or re-associate an already known one.

        A known token is moved to the supplied user and reactivated
        (last writer wins). The device name is only replaced when a new
        non-empty value is supplied.
        """
        if not token or not token.strip():
            raise ValidationError("token is required", field="token")
        if not user_id or not user_id.strip():
            raise ValidationError("userId is required", field="userId")

        try:
            device_type = DeviceType(device_type).value
        except ValueError:
            raise ValidationError(f"Unsupported device type: {device_type}", field="deviceType")
        now = datetime.utcnow()

        async with self._session_factory() as session:
            result = await session.execute(
                select(DeviceToken).where(DeviceToken.token == token)
            )
            existing = result.scalar_one_or_none()

            if existing:
                if existing.user_id != user_id:
                    logger.info(f"Device token {token[:16]}... moved from user {existing.user_id} to {user_id}")
                existing.user_id = user_id
                existing.device_type = device_type
                existing.is_active = True
                existing.last_used_at = now
                if device_name:
                    existing.device_name = device_name

                await retry_on_lock(session.commit)
                logger.info(f"Device token updated: {token[:16]}...")
                return RegistrationResult(created=False, device_id=existing.id)

            device = DeviceToken(
                token=token,
                user_id=user_id,
                device_type=device_type,
                device_name=device_name or DEFAULT_DEVICE_NAME,
                is_active=True,
                last_used_at=now,
            )
            session.add(device)
            await retry_on_lock(session.commit)

            logger.info(f"New device registered for user {user_id}: {token[:16]}...")
            return RegistrationResult(created=True, device_id=device.id)

    @persistence_guard("device lookup")
    async def get(self, token: str) -> DeviceToken:
        """Return the row for a token, active or not."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(DeviceToken).where(DeviceToken.token == token)
            )
            device = result.scalar_one_or_none()
        if device is None:
            raise NotFoundError("Device not found")
        return device

    @persistence_guard("active token lookup")
    async def list_active_tokens(self, user_id: str) -> Set[str]:
        """Tokens of every active device registered to the user."""
        async with self._session_factory() as session:
            result = await session.execute(
                select(DeviceToken.token).where(
                    DeviceToken.user_id == user_id,
                    DeviceToken.is_active.is_(True),
                )
            )
            return set(result.scalars().all())

    @persistence_guard("device deactivation")
    async def deactivate(self, token: str) -> bool:
        """Mark a token inactive. Unknown or already inactive tokens are a no-op."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(DeviceToken)
                .where(DeviceToken.token == token, DeviceToken.is_active.is_(True))
                .values(is_active=False)
            )
            await retry_on_lock(session.commit)

        if result.rowcount:
            logger.info(f"Device token deactivated: {token[:16]}...")
        return True

    @persistence_guard("user device deactivation")
    async def deactivate_all(self, user_id: str) -> int:
        """Deactivate every active token of a user (logout, session revocation)."""
        async with self._session_factory() as session:
            result = await session.execute(
                update(DeviceToken)
                .where(DeviceToken.user_id == user_id, DeviceToken.is_active.is_(True))
                .values(is_active=False)
            )
            await retry_on_lock(session.commit)

        count = result.rowcount or 0
        logger.info(f"Deactivated {count} device token(s) for user {user_id}")
        return count

    @persistence_guard("device touch")
    async def touch(self, tokens: Iterable[str]) -> None:
        """Refresh last_used_at for tokens that received a push."""
        tokens = list(tokens)
        if not tokens:
            return

        async with self._session_factory() as session:
            await session.execute(
                update(DeviceToken)
                .where(DeviceToken.token.in_(tokens))
                .values(last_used_at=datetime.utcnow())
            )
            await retry_on_lock(session.commit)
