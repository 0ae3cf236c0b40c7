"""Push delivery backends.

Each backend exposes the same capability: deliver a message to one token or
to a batch of tokens and report a per-token result. A permanently invalid
token is reported with the INVALID_TOKEN error code (multicast) or by raising
InvalidTokenError (single token). Unreachable or unconfigured providers raise
ProviderUnavailable.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Optional

import firebase_admin
from aioapns import APNs, NotificationRequest, PushType
from firebase_admin import credentials, messaging
from firebase_admin import exceptions as firebase_exceptions

from ..exceptions import InvalidTokenError, ProviderUnavailable
from .payload import PushMessage

logger = logging.getLogger(__name__)

INVALID_TOKEN = "invalid_token"
PROVIDER_ERROR = "provider_error"
CONNECTION_ERROR = "connection_error"

# APNs reasons meaning the token will never work again
APNS_INVALID_REASONS = {"BadDeviceToken", "Unregistered", "DeviceTokenNotForTopic"}

APNS_PRIORITY_HIGH = 10
APNS_PRIORITY_NORMAL = 5


@dataclass
class DeliveryResult:
    """Provider verdict for one token."""
    token: str
    success: bool
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def is_invalid_token(self) -> bool:
        return self.error_code == INVALID_TOKEN


class PushBackend(ABC):
    """Capability contract of a push provider."""

    name = "abstract"
    max_batch_size = 500
    supports_topics = False

    @abstractmethod
    async def send_to_token(self, token: str, message: PushMessage) -> DeliveryResult:
        """Deliver to one token. Raises InvalidTokenError for a dead token."""

    @abstractmethod
    async def send_multicast(self, tokens: List[str], message: PushMessage) -> List[DeliveryResult]:
        """Deliver to up to max_batch_size tokens; one result per token, same order."""

    async def send_to_topic(self, topic: str, message: PushMessage) -> bool:
        raise ProviderUnavailable(f"{self.name} backend does not support topics")

    async def subscribe_to_topic(self, tokens: List[str], topic: str) -> int:
        raise ProviderUnavailable(f"{self.name} backend does not support topics")

    async def unsubscribe_from_topic(self, tokens: List[str], topic: str) -> int:
        raise ProviderUnavailable(f"{self.name} backend does not support topics")


class NullBackend(PushBackend):
    """Backend used when push delivery is disabled or not configured."""

    name = "none"

    def __init__(self, reason: str = "Push notifications are disabled"):
        self.reason = reason

    async def send_to_token(self, token: str, message: PushMessage) -> DeliveryResult:
        raise ProviderUnavailable(self.reason)

    async def send_multicast(self, tokens: List[str], message: PushMessage) -> List[DeliveryResult]:
        raise ProviderUnavailable(self.reason)


class FCMBackend(PushBackend):
    """Firebase Cloud Messaging via the firebase-admin SDK (web, Android and iOS tokens)."""

    name = "fcm"
    max_batch_size = 500
    supports_topics = True

    def __init__(
        self,
        credentials_path: Optional[str] = None,
        project_id: Optional[str] = None,
        app_name: str = "carepush",
    ):
        self._credentials_path = credentials_path
        self._project_id = project_id
        self._app_name = app_name
        self._app: Optional[firebase_admin.App] = None

    def _get_app(self) -> firebase_admin.App:
        """Initialize the Firebase app on first use."""
        if self._app is not None:
            return self._app

        try:
            self._app = firebase_admin.get_app(self._app_name)
        except ValueError:
            try:
                if self._credentials_path:
                    cred = credentials.Certificate(self._credentials_path)
                else:
                    cred = credentials.ApplicationDefault()
                options = {"projectId": self._project_id} if self._project_id else None
                self._app = firebase_admin.initialize_app(cred, options, name=self._app_name)
                logger.info("Firebase Admin SDK initialized")
            except Exception as e:
                logger.error(f"Failed to initialize Firebase Admin SDK: {e}")
                raise ProviderUnavailable(f"Firebase not configured: {e}") from e
        return self._app

    def _notification(self, message: PushMessage) -> messaging.Notification:
        return messaging.Notification(
            title=message.title,
            body=message.body,
            image=message.image_url,
        )

    def _android(self, message: PushMessage) -> messaging.AndroidConfig:
        return messaging.AndroidConfig(
            priority="high" if message.high_priority else "normal",
            notification=messaging.AndroidNotification(
                channel_id="default",
                sound="default",
                click_action=message.action_url,
            ),
        )

    def _webpush(self, message: PushMessage) -> messaging.WebpushConfig:
        return messaging.WebpushConfig(
            notification=messaging.WebpushNotification(
                icon="/notification-icon.png",
                badge="/badge-icon.png",
                image=message.image_url,
                require_interaction=message.high_priority,
                tag=message.type,
            ),
            fcm_options=messaging.WebpushFCMOptions(link=message.action_url or "/"),
        )

    def _apns(self, message: PushMessage) -> messaging.APNSConfig:
        return messaging.APNSConfig(
            payload=messaging.APNSPayload(
                aps=messaging.Aps(sound="default", badge=1, category=message.type),
            ),
        )

    def build_message(self, token: str, message: PushMessage) -> messaging.Message:
        return messaging.Message(
            token=token,
            notification=self._notification(message),
            data=message.data or None,
            android=self._android(message),
            webpush=self._webpush(message),
            apns=self._apns(message),
        )

    def build_multicast(self, tokens: List[str], message: PushMessage) -> messaging.MulticastMessage:
        return messaging.MulticastMessage(
            tokens=tokens,
            notification=self._notification(message),
            data=message.data or None,
            android=self._android(message),
            webpush=self._webpush(message),
            apns=self._apns(message),
        )

    @staticmethod
    def classify_error(error: Exception) -> str:
        """Map a firebase-admin exception to a delivery error code."""
        if isinstance(error, (messaging.UnregisteredError, messaging.SenderIdMismatchError)):
            return INVALID_TOKEN
        if isinstance(error, firebase_exceptions.InvalidArgumentError) and "registration token" in str(error).lower():
            return INVALID_TOKEN
        return getattr(error, "code", None) or PROVIDER_ERROR

    async def send_to_token(self, token: str, message: PushMessage) -> DeliveryResult:
        app = self._get_app()
        try:
            message_id = await asyncio.to_thread(messaging.send, self.build_message(token, message), app=app)
        except firebase_exceptions.FirebaseError as e:
            code = self.classify_error(e)
            if code == INVALID_TOKEN:
                raise InvalidTokenError(token, getattr(e, "code", INVALID_TOKEN)) from e
            if isinstance(e, (firebase_exceptions.UnavailableError, firebase_exceptions.InternalError)):
                raise ProviderUnavailable(f"FCM unavailable: {e}") from e
            return DeliveryResult(token=token, success=False, error_code=code, error_message=str(e))

        logger.debug(f"FCM message {message_id} sent to {token[:16]}...")
        return DeliveryResult(token=token, success=True)

    async def send_multicast(self, tokens: List[str], message: PushMessage) -> List[DeliveryResult]:
        app = self._get_app()
        try:
            response = await asyncio.to_thread(
                messaging.send_each_for_multicast, self.build_multicast(tokens, message), app=app
            )
        except firebase_exceptions.FirebaseError as e:
            raise ProviderUnavailable(f"FCM multicast failed: {e}") from e

        results = []
        for token, send_response in zip(tokens, response.responses):
            if send_response.success:
                results.append(DeliveryResult(token=token, success=True))
            else:
                error = send_response.exception
                results.append(DeliveryResult(
                    token=token,
                    success=False,
                    error_code=self.classify_error(error),
                    error_message=str(error),
                ))
        return results

    async def send_to_topic(self, topic: str, message: PushMessage) -> bool:
        app = self._get_app()
        topic_message = messaging.Message(
            topic=topic,
            notification=self._notification(message),
            data=message.data or None,
            webpush=self._webpush(message),
        )
        try:
            message_id = await asyncio.to_thread(messaging.send, topic_message, app=app)
        except firebase_exceptions.FirebaseError as e:
            raise ProviderUnavailable(f"FCM topic send failed: {e}") from e
        logger.info(f"Notification sent to topic {topic}: {message_id}")
        return True

    async def subscribe_to_topic(self, tokens: List[str], topic: str) -> int:
        app = self._get_app()
        try:
            response = await asyncio.to_thread(messaging.subscribe_to_topic, tokens, topic, app=app)
        except firebase_exceptions.FirebaseError as e:
            raise ProviderUnavailable(f"FCM topic subscribe failed: {e}") from e
        return response.success_count

    async def unsubscribe_from_topic(self, tokens: List[str], topic: str) -> int:
        app = self._get_app()
        try:
            response = await asyncio.to_thread(messaging.unsubscribe_from_topic, tokens, topic, app=app)
        except firebase_exceptions.FirebaseError as e:
            raise ProviderUnavailable(f"FCM topic unsubscribe failed: {e}") from e
        return response.success_count


class APNsBackend(PushBackend):
    """Apple Push Notification service via aioapns (native iOS tokens only).

    APNs has no multicast endpoint, so a batch is fanned out over the
    client's HTTP/2 connection pool.
    """

    name = "apns"
    max_batch_size = 100

    def __init__(
        self,
        key_path: str,
        key_id: str,
        team_id: str,
        bundle_id: str,
        use_sandbox: bool = True,
    ):
        self._key_path = key_path
        self._key_id = key_id
        self._team_id = team_id
        self._bundle_id = bundle_id
        self._use_sandbox = use_sandbox
        self._client: Optional[APNs] = None

    def _get_client(self) -> APNs:
        """Create the APNs client inside the running event loop."""
        if self._client is None:
            try:
                self._client = APNs(
                    key=self._key_path,
                    key_id=self._key_id,
                    team_id=self._team_id,
                    topic=self._bundle_id,
                    use_sandbox=self._use_sandbox,
                )
                logger.info(f"APNs client configured (sandbox={self._use_sandbox})")
            except Exception as e:
                logger.error(f"Failed to configure APNs client: {e}")
                raise ProviderUnavailable(f"APNs not configured: {e}") from e
        return self._client

    def build_payload(self, message: PushMessage) -> dict:
        aps = {
            "alert": {"title": message.title, "body": message.body},
            "sound": "default",
            "badge": 1,
            "category": message.type,
        }
        if message.high_priority:
            aps["interruption-level"] = "time-sensitive"

        # Combine aps with custom data
        payload = {"aps": aps}
        payload.update(message.data)
        if message.action_url:
            payload["actionUrl"] = message.action_url
        return payload

    async def _send(self, client: APNs, token: str, message: PushMessage) -> DeliveryResult:
        request = NotificationRequest(
            device_token=token,
            message=self.build_payload(message),
            push_type=PushType.ALERT,
            priority=APNS_PRIORITY_HIGH if message.high_priority else APNS_PRIORITY_NORMAL,
        )
        try:
            response = await client.send_notification(request)
        except Exception as e:
            logger.warning(f"APNs request failed for {token[:16]}...: {e}")
            return DeliveryResult(token=token, success=False, error_code=CONNECTION_ERROR, error_message=str(e))

        if response.is_successful:
            return DeliveryResult(token=token, success=True)

        code = INVALID_TOKEN if response.description in APNS_INVALID_REASONS else PROVIDER_ERROR
        return DeliveryResult(token=token, success=False, error_code=code, error_message=response.description)

    async def send_to_token(self, token: str, message: PushMessage) -> DeliveryResult:
        result = await self._send(self._get_client(), token, message)
        if result.is_invalid_token:
            raise InvalidTokenError(token, result.error_message or INVALID_TOKEN)
        return result

    async def send_multicast(self, tokens: List[str], message: PushMessage) -> List[DeliveryResult]:
        client = self._get_client()
        results = list(await asyncio.gather(*[self._send(client, token, message) for token in tokens]))
        if results and all(r.error_code == CONNECTION_ERROR for r in results):
            raise ProviderUnavailable(f"APNs unreachable: {results[0].error_message}")
        return results


def build_backend(config) -> PushBackend:
    """Choose a push backend from application settings."""
    provider = (config.push_provider or "none").lower()

    if provider == "fcm":
        return FCMBackend(
            credentials_path=config.firebase_credentials_path,
            project_id=config.firebase_project_id,
        )

    if provider == "apns":
        if not all([config.apns_key_path, config.apns_key_id, config.apns_team_id, config.apns_bundle_id]):
            logger.warning("Push notifications enabled but APNs not fully configured")
            return NullBackend("APNs not fully configured")
        return APNsBackend(
            key_path=config.apns_key_path,
            key_id=config.apns_key_id,
            team_id=config.apns_team_id,
            bundle_id=config.apns_bundle_id,
            use_sandbox=config.apns_use_sandbox,
        )

    if provider != "none":
        logger.warning(f"Unknown push provider '{provider}', push notifications disabled")
    else:
        logger.info("Push notifications are disabled")
    return NullBackend()
