from __future__ import annotations

"""Optional Redis fan-out of generation lifecycle events.

Nothing is published unless ``REDIS_URL`` is set. Redis problems never
reach the editor: the message is dropped and the connection is retried
after a back-off, so a dead server is not pinged on every transition.
"""

import json
import logging
import os
import time
from typing import Any, Dict, Optional

import redis

logger = logging.getLogger("chronicle.events")

CHANNEL_PREFIX = os.getenv("CHRONICLE_EVENTS_PREFIX", "chronicle.events")
RECONNECT_BACKOFF_SECONDS = float(os.getenv("CHRONICLE_EVENTS_RECONNECT_S", "5"))


class LifecyclePublisher:
    def __init__(self, url: str, prefix: str = CHANNEL_PREFIX, backoff: Optional[float] = None) -> None:
        self.url = url
        self.prefix = prefix
        self.backoff = RECONNECT_BACKOFF_SECONDS if backoff is None else backoff
        self._client: Optional[redis.Redis] = None
        self._retry_at = 0.0
        self.published = 0
        self.dropped = 0

    @property
    def connected(self) -> bool:
        return self._client is not None

    def channel_for(self, event_type: str) -> str:
        return f"{self.prefix}.{event_type}"

    def _disconnect(self) -> None:
        self._client = None
        self._retry_at = time.monotonic() + self.backoff

    def _ensure_client(self) -> Optional[redis.Redis]:
        if self._client is not None:
            return self._client
        if time.monotonic() < self._retry_at:
            return None
        try:
            client = redis.Redis.from_url(self.url, socket_timeout=0.5)
            client.ping()
        except Exception as exc:
            logger.debug("event_publisher_connect_failed", extra={"err": str(exc), "retry_in_s": self.backoff})
            self._disconnect()
            return None
        self._client = client
        return client

    def publish(self, event_type: str, payload: Dict[str, Any]) -> bool:
        client = self._ensure_client()
        if client is None:
            self.dropped += 1
            return False
        message = json.dumps({"type": event_type, "at": time.time(), **payload})
        try:
            client.publish(self.channel_for(event_type), message)
        except Exception as exc:
            logger.debug("event_publish_failed", extra={"event_type": event_type, "err": str(exc)})
            self._disconnect()
            self.dropped += 1
            return False
        self.published += 1
        return True


_publisher: Optional[LifecyclePublisher] = None


def get_publisher() -> Optional[LifecyclePublisher]:
    global _publisher
    if _publisher is None:
        url = os.getenv("REDIS_URL")
        if url:
            _publisher = LifecyclePublisher(url)
    return _publisher


def publish_event(event_type: str, payload: Dict[str, Any]) -> None:
    publisher = get_publisher()
    if publisher is not None:
        publisher.publish(event_type, payload)


def reset_publisher() -> None:
    global _publisher
    _publisher = None
