"""
Lifecycle events and metrics.

Events go to a Redis Stream per environment (for the status API) and to a
global pub/sub channel. Redis is optional — graceful degradation if it is
not configured or unreachable.
"""
import json
import logging
from datetime import datetime, timezone

import redis
from prometheus_client import Counter, Gauge

STREAM_MAXLEN = 100
CHANNEL = "preview:events"

PROVISIONS = Counter(
    "preview_provisions_total",
    "Provisioning runs by backing and result",
    ["backing", "result"],
)
GC_DELETIONS = Counter(
    "preview_gc_deletions_total",
    "Preview environment deletions triggered by the GC sweep",
    ["result"],
)
LIVE_ENVIRONMENTS = Gauge(
    "preview_environments_live",
    "Live preview environments seen by the last sweep",
    ["backing"],
)


def now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def stream_key(name: str) -> str:
    return f"preview:events:{name}"


class EventPublisher:
    def __init__(self, redis_url: str, logger: logging.Logger):
        self.redis_url = redis_url
        self.logger = logger
        self._client = None

    def client(self):
        """Lazy-init Redis client. Returns None if unavailable."""
        if self._client is not None:
            return self._client
        if not self.redis_url:
            return None
        try:
            c = redis.Redis.from_url(self.redis_url, decode_responses=True)
            c.ping()
        except redis.RedisError as e:
            self.logger.warning(f"Redis unavailable (non-fatal): {e}")
            return None
        self.logger.info(f"Redis connected: {self.redis_url}")
        self._client = c
        return c

    def publish(self, name: str, event_type: str, message: str, phase: str = ""):
        r = self.client()
        if not r:
            return
        event = {
            "environment": name,
            "type": event_type,
            "message": message,
            "phase": phase,
            "timestamp": now(),
        }
        try:
            r.xadd(stream_key(name), event, maxlen=STREAM_MAXLEN)
            # a stream set to expire by forget() is live again
            r.persist(stream_key(name))
            r.publish(CHANNEL, json.dumps(event))
        except redis.RedisError as e:
            self.logger.debug(f"Redis publish failed (non-fatal): {e}")

    def read(self, name: str, count: int = 50) -> list[dict]:
        r = self.client()
        if not r:
            return []
        return [data for _, data in r.xrange(stream_key(name), count=count)]

    def forget(self, name: str, retention_seconds: int):
        """Let the event stream of a deleted environment expire."""
        r = self.client()
        if not r:
            return
        try:
            r.expire(stream_key(name), retention_seconds)
        except redis.RedisError as e:
            self.logger.debug(f"Redis expire failed (non-fatal): {e}")
