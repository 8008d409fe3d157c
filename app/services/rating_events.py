"""
Rating Event Publisher - appends rating events to the Redis stream
"""
import os
import logging
from typing import Optional

import redis
from dotenv import load_dotenv

from app.redis_client import redis_client
from app.schemas.events import RatingEvent, encode_event

load_dotenv()

logger = logging.getLogger(__name__)

RATING_STREAM_KEY = os.getenv("RATING_STREAM_KEY", "rating-events")
RATING_CONSUMER_GROUP = os.getenv("RATING_CONSUMER_GROUP", "rating-consumers")
RATING_STREAM_MAXLEN = int(os.getenv("RATING_STREAM_MAXLEN", 100000))

EVENT_FIELD = "data"


class RatingEventPublisher:
    """Writes rating events to the stream and manages its consumer group"""

    def __init__(self, client: redis.Redis, stream_key: str = RATING_STREAM_KEY,
                 group: str = RATING_CONSUMER_GROUP, maxlen: int = RATING_STREAM_MAXLEN):
        self._redis = client
        self.stream_key = stream_key
        self.group = group
        self.maxlen = maxlen

    def publish(self, event: RatingEvent) -> Optional[str]:
        """
        Append one event to the stream

        Failures are logged and swallowed: the rating is already committed and
        the reconcile job corrects the index later.

        Returns:
            Stream entry id, or None if the append failed
        """
        try:
            entry_id = self._redis.xadd(
                self.stream_key,
                {EVENT_FIELD: encode_event(event)},
                maxlen=self.maxlen,
                approximate=True,
            )
            logger.debug(f"Published {event.operation} for movie {event.movie_id} as {entry_id}")
            return entry_id
        except redis.RedisError as e:
            logger.error(f"✗ Failed to publish rating event for movie {event.movie_id}: {e}")
            return None

    def ensure_group(self) -> bool:
        """
        Create the consumer group (and the stream) if missing

        Returns:
            True if created, False if it already existed
        """
        try:
            self._redis.xgroup_create(self.stream_key, self.group, id="0", mkstream=True)
            logger.info(f"✓ Created consumer group '{self.group}' on '{self.stream_key}'")
            return True
        except redis.ResponseError as e:
            if "BUSYGROUP" in str(e):
                return False
            raise

    def pending_count(self) -> int:
        """Entries delivered to the group but not yet acknowledged"""
        try:
            summary = self._redis.xpending(self.stream_key, self.group)
        except redis.ResponseError:
            # No group yet means nothing is pending
            return 0
        return int(summary.get("pending", 0) if isinstance(summary, dict) else summary[0])

    def stream_length(self) -> int:
        try:
            return int(self._redis.xlen(self.stream_key))
        except redis.RedisError:
            return 0


event_publisher = RatingEventPublisher(redis_client)


def get_event_publisher() -> RatingEventPublisher:
    return event_publisher
