import asyncio
import json
from datetime import datetime
from typing import List

import pytest
import pytest_asyncio

from carepush.database import create_engine_for, create_session_factory, init_db
from carepush.exceptions import InvalidTokenError, ProviderUnavailable
from carepush.models.notification import Notification, NotificationType
from carepush.services.device_registry import DeviceTokenRegistry
from carepush.services.inbox_stream import InboxStreamManager
from carepush.services.notification_service import NotificationService
from carepush.services.notification_store import NotificationStore
from carepush.services.payload import PushMessage
from carepush.services.push_backends import INVALID_TOKEN, PROVIDER_ERROR, DeliveryResult, PushBackend
from carepush.services.push_dispatcher import PushDispatcher


# === Fakes ===

class FakePushBackend(PushBackend):
    """Records every call and answers from a per-token script."""

    name = "fake"
    supports_topics = True

    def __init__(self, max_batch_size: int = 500):
        self.max_batch_size = max_batch_size
        self.invalid_tokens = set()
        self.failing_tokens = set()
        self.unavailable = None
        self.delay = 0.0
        self.single_calls = []
        self.multicast_calls = []
        self.topic_calls = []

    def _result(self, token: str) -> DeliveryResult:
        if token in self.invalid_tokens:
            return DeliveryResult(token=token, success=False, error_code=INVALID_TOKEN, error_message="Unregistered")
        if token in self.failing_tokens:
            return DeliveryResult(token=token, success=False, error_code=PROVIDER_ERROR, error_message="Rejected")
        return DeliveryResult(token=token, success=True)

    async def _before_call(self):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.unavailable:
            raise ProviderUnavailable(self.unavailable)

    async def send_to_token(self, token: str, message: PushMessage) -> DeliveryResult:
        self.single_calls.append((token, message))
        await self._before_call()
        result = self._result(token)
        if result.is_invalid_token:
            raise InvalidTokenError(token)
        return result

    async def send_multicast(self, tokens: List[str], message: PushMessage) -> List[DeliveryResult]:
        self.multicast_calls.append((list(tokens), message))
        await self._before_call()
        return [self._result(token) for token in tokens]

    async def send_to_topic(self, topic: str, message: PushMessage) -> bool:
        self.topic_calls.append((topic, message))
        await self._before_call()
        return True

    async def subscribe_to_topic(self, tokens: List[str], topic: str) -> int:
        await self._before_call()
        return len(tokens)

    async def unsubscribe_from_topic(self, tokens: List[str], topic: str) -> int:
        await self._before_call()
        return len(tokens)

    @property
    def dispatched_tokens(self) -> List[str]:
        return [token for tokens, _ in self.multicast_calls for token in tokens]


class FakeWebSocket:
    def __init__(self, fail: bool = False):
        self.accepted = False
        self.fail = fail
        self.messages = []

    async def accept(self):
        self.accepted = True

    async def send_text(self, text: str):
        if self.fail:
            raise RuntimeError("connection closed")
        self.messages.append(json.loads(text))


def make_notification(user_id: str = "user-1", **overrides) -> Notification:
    values = dict(
        user_id=user_id,
        title="Reminder",
        body="Take your medication",
        type=NotificationType.GENERAL.value,
        is_sent=True,
        sent_at=datetime.utcnow(),
        is_read=False,
        created_at=datetime.utcnow(),
    )
    values.update(overrides)
    return Notification(**values)


# === Fixtures ===

@pytest_asyncio.fixture
async def db_engine(tmp_path):
    engine = create_engine_for(f"sqlite+aiosqlite:///{tmp_path / 'carepush-test.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def registry(session_factory):
    return DeviceTokenRegistry(session_factory)


@pytest.fixture
def store(session_factory):
    return NotificationStore(session_factory)


@pytest.fixture
def backend():
    return FakePushBackend()


@pytest.fixture
def dispatcher(backend, registry):
    return PushDispatcher(backend, registry, timeout_seconds=1.0)


@pytest.fixture
def stream():
    return InboxStreamManager()


@pytest.fixture
def service(registry, store, dispatcher, stream):
    return NotificationService(registry, store, dispatcher, stream=stream)
