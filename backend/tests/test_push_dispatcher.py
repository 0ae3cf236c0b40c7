from carepush.models.notification import NotificationType
from carepush.services.payload import NotificationPayload, PushMessage, coerce_data
from carepush.services.push_backends import NullBackend
from carepush.services.push_dispatcher import PushDispatcher

from conftest import FakePushBackend


PAYLOAD = NotificationPayload(title="Lab results", body="Your results are ready")


async def _register(registry, user_id, *tokens):
    for token in tokens:
        await registry.register(user_id, token)


async def test_multicast_with_no_tokens_makes_no_backend_call(dispatcher, backend):
    outcome = await dispatcher.send_multicast(set(), PAYLOAD)

    assert outcome.success_count == 0
    assert outcome.failure_count == 0
    assert outcome.failed_tokens == set()
    assert backend.multicast_calls == []


async def test_multicast_partial_failure_deactivates_only_invalid_tokens(dispatcher, backend, registry):
    await _register(registry, "user-1", "good", "dead", "flaky")
    backend.invalid_tokens = {"dead"}
    backend.failing_tokens = {"flaky"}

    outcome = await dispatcher.send_multicast({"good", "dead", "flaky"}, PAYLOAD)

    assert outcome.success_count == 1
    assert outcome.failure_count == 2
    assert outcome.failed_tokens == {"dead", "flaky"}
    assert outcome.invalid_tokens == {"dead"}
    assert outcome.provider_error is None
    assert await registry.list_active_tokens("user-1") == {"good", "flaky"}


async def test_multicast_counts_add_up(dispatcher, backend, registry):
    tokens = {f"token-{i}" for i in range(7)}
    backend.failing_tokens = {"token-1", "token-4"}

    outcome = await dispatcher.send_multicast(tokens, PAYLOAD)

    assert outcome.success_count + outcome.failure_count == len(tokens)
    assert outcome.failed_tokens <= tokens


async def test_multicast_is_split_into_backend_batches(registry):
    backend = FakePushBackend(max_batch_size=2)
    dispatcher = PushDispatcher(backend, registry)

    outcome = await dispatcher.send_multicast(["a", "b", "c", "d", "e"], PAYLOAD)

    assert [len(tokens) for tokens, _ in backend.multicast_calls] == [2, 2, 1]
    assert outcome.success_count == 5


async def test_multicast_collapses_duplicate_tokens(dispatcher, backend):
    outcome = await dispatcher.send_multicast(["a", "a", "b"], PAYLOAD)

    assert backend.dispatched_tokens == ["a", "b"]
    assert outcome.success_count == 2


async def test_provider_outage_fails_every_token_without_deactivation(dispatcher, backend, registry):
    await _register(registry, "user-1", "a", "b")
    backend.unavailable = "FCM unavailable"

    outcome = await dispatcher.send_multicast({"a", "b"}, PAYLOAD)

    assert outcome.success_count == 0
    assert outcome.failure_count == 2
    assert outcome.failed_tokens == {"a", "b"}
    assert outcome.provider_unavailable is True
    assert outcome.provider_error == "FCM unavailable"
    assert await registry.list_active_tokens("user-1") == {"a", "b"}


async def test_provider_timeout_fails_every_token_without_deactivation(backend, registry):
    await _register(registry, "user-1", "a")
    backend.delay = 0.5
    dispatcher = PushDispatcher(backend, registry, timeout_seconds=0.05)

    outcome = await dispatcher.send_multicast({"a"}, PAYLOAD)

    assert outcome.failure_count == 1
    assert outcome.provider_unavailable is True
    assert "timed out" in outcome.provider_error
    assert await registry.list_active_tokens("user-1") == {"a"}


async def test_timeout_bounds_the_whole_multicast_not_each_batch(registry):
    backend = FakePushBackend(max_batch_size=1)
    backend.delay = 0.04
    dispatcher = PushDispatcher(backend, registry, timeout_seconds=0.1)
    tokens = ["a", "b", "c", "d", "e"]
    for token in tokens:
        await registry.register("user-1", token)

    outcome = await dispatcher.send_multicast(tokens, PAYLOAD)

    # Every batch alone fits the timeout; all five together do not
    assert outcome.success_count < 5
    assert outcome.success_count + outcome.failure_count == 5
    assert "timed out" in outcome.provider_error
    assert len(backend.multicast_calls) < 5
    assert await registry.list_active_tokens("user-1") == set(tokens)


async def test_null_backend_reports_provider_unavailable(registry):
    dispatcher = PushDispatcher(NullBackend("Push notifications are disabled"), registry)

    outcome = await dispatcher.send_multicast({"a"}, PAYLOAD)

    assert outcome.provider_unavailable is True
    assert outcome.failed_tokens == {"a"}


async def test_send_one_success(dispatcher, backend):
    assert await dispatcher.send_one("a", PAYLOAD) is True
    assert backend.single_calls[0][0] == "a"


async def test_send_one_invalid_token_is_deactivated(dispatcher, backend, registry):
    await _register(registry, "user-1", "dead")
    backend.invalid_tokens = {"dead"}

    assert await dispatcher.send_one("dead", PAYLOAD) is False
    assert await registry.list_active_tokens("user-1") == set()


async def test_send_one_transient_failure_keeps_token(dispatcher, backend, registry):
    await _register(registry, "user-1", "flaky")
    backend.failing_tokens = {"flaky"}

    assert await dispatcher.send_one("flaky", PAYLOAD) is False

    backend.failing_tokens = set()
    backend.unavailable = "down"
    assert await dispatcher.send_one("flaky", PAYLOAD) is False
    assert await registry.list_active_tokens("user-1") == {"flaky"}


async def test_topic_operations(dispatcher, backend):
    assert await dispatcher.send_to_topic("health-tips", PAYLOAD) is True
    assert backend.topic_calls[0][0] == "health-tips"
    assert await dispatcher.subscribe_to_topic({"a", "b"}, "health-tips") == 2
    assert await dispatcher.unsubscribe_from_topic(["a"], "health-tips") == 1
    assert await dispatcher.subscribe_to_topic([], "health-tips") == 0


async def test_topic_operations_on_backend_without_topics(registry):
    dispatcher = PushDispatcher(NullBackend(), registry)

    assert await dispatcher.send_to_topic("health-tips", PAYLOAD) is False
    assert await dispatcher.subscribe_to_topic({"a"}, "health-tips") == 0


def test_coerce_data_keeps_strings_and_json_encodes_the_rest():
    data = coerce_data({"appointmentId": "42", "count": 3, "flags": {"urgent": True}, "none": None})

    assert data == {
        "appointmentId": "42",
        "count": "3",
        "flags": '{"urgent": true}',
        "none": "null",
    }
    assert coerce_data(None) == {}


def test_emergency_messages_are_high_priority():
    emergency = PushMessage.from_payload(
        NotificationPayload(title="Alert", body="Call your doctor", type=NotificationType.EMERGENCY)
    )
    general = PushMessage.from_payload(PAYLOAD)

    assert emergency.high_priority is True
    assert emergency.type == "emergency"
    assert general.high_priority is False


def test_payload_accepts_type_as_string():
    payload = NotificationPayload(title="t", body="b", type="health_tip")
    assert payload.type is NotificationType.HEALTH_TIP
