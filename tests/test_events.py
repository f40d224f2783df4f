"""Tests for the Redis event publisher."""

from unittest.mock import MagicMock, patch

import redis

from preview_controller.events import CHANNEL, STREAM_MAXLEN, EventPublisher, stream_key


def test_disabled_without_url(logger):
    publisher = EventPublisher("", logger)

    publisher.publish("foo", "READY", "ready")

    assert publisher.client() is None
    assert publisher.read("foo") == []


def test_publish_writes_stream_and_channel(logger):
    fake = MagicMock()
    with patch.object(redis.Redis, "from_url", return_value=fake):
        publisher = EventPublisher("redis://localhost:6379", logger)
        publisher.publish("foo", "READY", "Preview ready", "done")

    key, event = fake.xadd.call_args.args
    assert key == stream_key("foo") == "preview:events:foo"
    assert event["type"] == "READY" and event["phase"] == "done"
    assert fake.xadd.call_args.kwargs["maxlen"] == STREAM_MAXLEN
    assert fake.publish.call_args.args[0] == CHANNEL


def test_unreachable_redis_is_not_fatal(logger):
    fake = MagicMock()
    fake.ping.side_effect = redis.ConnectionError("refused")
    with patch.object(redis.Redis, "from_url", return_value=fake):
        publisher = EventPublisher("redis://localhost:6379", logger)
        publisher.publish("foo", "READY", "ready")

    fake.xadd.assert_not_called()


def test_read_returns_event_payloads(logger):
    fake = MagicMock()
    fake.xrange.return_value = [("1-0", {"type": "A"}), ("2-0", {"type": "B"})]
    with patch.object(redis.Redis, "from_url", return_value=fake):
        publisher = EventPublisher("redis://localhost:6379", logger)
        assert publisher.read("foo") == [{"type": "A"}, {"type": "B"}]


def test_forget_lets_the_stream_expire(logger):
    fake = MagicMock()
    with patch.object(redis.Redis, "from_url", return_value=fake):
        publisher = EventPublisher("redis://localhost:6379", logger)
        publisher.forget("foo", 3600)

    fake.expire.assert_called_once_with("preview:events:foo", 3600)
    fake.delete.assert_not_called()


def test_new_event_revives_expiring_stream(logger):
    fake = MagicMock()
    with patch.object(redis.Redis, "from_url", return_value=fake):
        publisher = EventPublisher("redis://localhost:6379", logger)
        publisher.forget("foo", 3600)
        publisher.publish("foo", "PROVISIONING_START", "again")

    fake.persist.assert_called_once_with("preview:events:foo")
