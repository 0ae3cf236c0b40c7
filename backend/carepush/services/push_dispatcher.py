"""Push dispatcher - delivers payloads through a push backend and retires dead tokens."""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Set

from ..exceptions import InvalidTokenError, PersistenceError, ProviderUnavailable
from .device_registry import DeviceTokenRegistry
from .payload import NotificationPayload, PushMessage
from .push_backends import DeliveryResult, PushBackend

logger = logging.getLogger(__name__)


@dataclass
class DispatchOutcome:
    """Aggregate result of a multicast dispatch."""
    success_count: int = 0
    failure_count: int = 0
    failed_tokens: Set[str] = field(default_factory=set)
    invalid_tokens: Set[str] = field(default_factory=set)
    provider_error: Optional[str] = None

    @property
    def provider_unavailable(self) -> bool:
        return self.provider_error is not None and self.success_count == 0


def _batches(tokens: List[str], size: int):
    for start in range(0, len(tokens), size):
        yield tokens[start:start + size]


class PushDispatcher:
    """Sends notifications to device tokens via the configured backend.

    Provider outages and timeouts never raise out of this class: they are
    reported as failed tokens without deactivating anything. Only tokens the
    provider reports as permanently invalid are deactivated in the registry.
    """

    def __init__(
        self,
        backend: PushBackend,
        registry: DeviceTokenRegistry,
        timeout_seconds: float = 10.0,
    ):
        self.backend = backend
        self._registry = registry
        self._timeout = timeout_seconds

    async def _deactivate(self, token: str):
        try:
            await self._registry.deactivate(token)
            logger.warning(f"Marked token as inactive: {token[:16]}...")
        except PersistenceError as e:
            logger.error(f"Error marking token {token[:16]}... as inactive: {e}")

    async def send_one(self, token: str, payload: NotificationPayload) -> bool:
        """Send a push notification to a single device.

        Returns:
            True if the provider accepted the notification
        """
        message = PushMessage.from_payload(payload)
        try:
            result = await asyncio.wait_for(
                self.backend.send_to_token(token, message),
                timeout=self._timeout,
            )
        except InvalidTokenError as e:
            logger.warning(f"Push token rejected ({e.code}): {token[:16]}...")
            await self._deactivate(token)
            return False
        except ProviderUnavailable as e:
            logger.error(f"Push provider unavailable: {e}")
            return False
        except asyncio.TimeoutError:
            logger.error(f"Push to {token[:16]}... timed out after {self._timeout}s")
            return False
        except Exception as e:
            logger.error(f"Failed to send push notification: {e}")
            return False

        if result.success:
            logger.info(f"Push notification sent to {token[:16]}...")
            return True

        logger.warning(
            f"Push notification failed: {result.error_code} {result.error_message or ''} "
            f"(token: {token[:16]}...)"
        )
        return False

    async def _send_batch(self, batch: List[str], message: PushMessage, timeout: float) -> List[DeliveryResult]:
        if timeout <= 0:
            raise asyncio.TimeoutError
        results = await asyncio.wait_for(
            self.backend.send_multicast(batch, message),
            timeout=timeout,
        )
        if len(results) != len(batch):
            raise ProviderUnavailable(
                f"Provider returned {len(results)} results for {len(batch)} tokens"
            )
        return results

    async def send_multicast(self, tokens: Iterable[str], payload: NotificationPayload) -> DispatchOutcome:
        """Send one payload to many tokens with per-token outcome.

        Each backend batch is a single provider call. The timeout bounds the
        whole dispatch, not each batch: batches left when it runs out are not
        sent. A batch that fails as a whole (outage, timeout) counts every
        token in it as failed.
        """
        tokens = list(dict.fromkeys(tokens))
        outcome = DispatchOutcome()
        if not tokens:
            return outcome

        message = PushMessage.from_payload(payload)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._timeout

        for batch in _batches(tokens, self.backend.max_batch_size):
            try:
                results = await self._send_batch(batch, message, deadline - loop.time())
            except asyncio.TimeoutError:
                outcome.provider_error = f"timed out after {self._timeout}s"
                logger.error(f"Multicast to {len(batch)} token(s) timed out after {self._timeout}s")
                results = None
            except ProviderUnavailable as e:
                outcome.provider_error = e.message
                logger.error(f"Push provider unavailable: {e}")
                results = None
            except Exception as e:
                outcome.provider_error = str(e)
                logger.error(f"Error sending multicast notification: {e}")
                results = None

            if results is None:
                outcome.failure_count += len(batch)
                outcome.failed_tokens.update(batch)
                continue

            for result in results:
                if result.success:
                    outcome.success_count += 1
                    continue

                outcome.failure_count += 1
                outcome.failed_tokens.add(result.token)
                logger.warning(
                    f"Failed to send to token {result.token[:16]}...: "
                    f"{result.error_code} {result.error_message or ''}"
                )
                if result.is_invalid_token:
                    outcome.invalid_tokens.add(result.token)
                    await self._deactivate(result.token)

        logger.info(
            f"Push notifications sent: {outcome.success_count} success, {outcome.failure_count} failed"
        )
        return outcome

    async def send_to_topic(self, topic: str, payload: NotificationPayload) -> bool:
        """Send a notification to every device subscribed to a topic."""
        try:
            return await asyncio.wait_for(
                self.backend.send_to_topic(topic, PushMessage.from_payload(payload)),
                timeout=self._timeout,
            )
        except (ProviderUnavailable, asyncio.TimeoutError) as e:
            logger.error(f"Error sending notification to topic {topic}: {e}")
            return False

    async def subscribe_to_topic(self, tokens: Iterable[str], topic: str) -> int:
        """Subscribe tokens to a topic; returns the number subscribed."""
        tokens = list(tokens)
        if not tokens:
            return 0
        try:
            count = await asyncio.wait_for(
                self.backend.subscribe_to_topic(tokens, topic),
                timeout=self._timeout,
            )
        except (ProviderUnavailable, asyncio.TimeoutError) as e:
            logger.error(f"Error subscribing to topic {topic}: {e}")
            return 0
        logger.info(f"Subscribed {count} token(s) to topic: {topic}")
        return count

    async def unsubscribe_from_topic(self, tokens: Iterable[str], topic: str) -> int:
        """Unsubscribe tokens from a topic; returns the number unsubscribed."""
        tokens = list(tokens)
        if not tokens:
            return 0
        try:
            count = await asyncio.wait_for(
                self.backend.unsubscribe_from_topic(tokens, topic),
                timeout=self._timeout,
            )
        except (ProviderUnavailable, asyncio.TimeoutError) as e:
            logger.error(f"Error unsubscribing from topic {topic}: {e}")
            return 0
        logger.info(f"Unsubscribed {count} token(s) from topic: {topic}")
        return count
