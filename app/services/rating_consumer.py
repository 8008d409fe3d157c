"""
Rating Aggregate Consumer
=========================
Reads rating events from the Redis stream through a consumer group and
recomputes each affected movie's aggregates from scratch.

Per batch:
1. Unparseable entries are acknowledged and logged (they can never succeed)
2. Remaining events are coalesced per movie
3. Per movie: drop cache -> exact aggregate query -> write movie ->
   cache fresh stats -> partial index update (full upsert as fallback)
4. A movie's entry ids are acknowledged only after step 3 succeeds

Recomputing from the full ratings table makes redelivery, reordering and
duplicates harmless. Failed entries stay pending. After a failure the consumer
re-reads its own pending list once the retry delay has passed, alternating
with reads of new entries so a failing movie never starves the others.
Entries left idle by dead consumers are reclaimed with XAUTOCLAIM.
"""
import os
import socket
import asyncio
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

import redis
from dotenv import load_dotenv
from sqlalchemy.orm import Session, selectinload

from app.database import get_session_factory
from app.models.actor import MovieCast
from app.models.movie import Movie
from app.redis_client import redis_client
from app.schemas.events import decode_event
from app.services.rating_events import (
    RATING_STREAM_KEY,
    RATING_CONSUMER_GROUP,
    EVENT_FIELD,
    RatingEventPublisher,
    event_publisher,
)
from app.services.rating_service import RatingService
from app.services.search_index import SearchIndexGateway, search_index
from app.utils.cache import RatingStatsCache, rating_stats_cache

load_dotenv()

logger = logging.getLogger(__name__)

RATING_CONSUMER_NAME = os.getenv("RATING_CONSUMER_NAME", f"{socket.gethostname()}-{os.getpid()}")
RATING_STREAM_BLOCK_MS = int(os.getenv("RATING_STREAM_BLOCK_MS", 5000))
RATING_STREAM_BATCH_SIZE = int(os.getenv("RATING_STREAM_BATCH_SIZE", 10))
RATING_STREAM_CLAIM_IDLE_MS = int(os.getenv("RATING_STREAM_CLAIM_IDLE_MS", 60000))
# Minimum wait before failed entries are read again from our pending list
RATING_STREAM_RETRY_MS = int(os.getenv("RATING_STREAM_RETRY_MS", RATING_STREAM_BLOCK_MS))

# Pause after a transport error before polling again
ERROR_BACKOFF_SECONDS = 2.0

StreamEntry = Tuple[str, Optional[Dict[str, str]]]


class RatingAggregateConsumer:
    """Consumer-group reader that keeps movie aggregates and the index in sync"""

    def __init__(
        self,
        client: redis.Redis,
        session_factory: Callable[[], Session],
        index: SearchIndexGateway,
        cache: RatingStatsCache,
        publisher: RatingEventPublisher,
        consumer_name: str = RATING_CONSUMER_NAME,
        batch_size: int = RATING_STREAM_BATCH_SIZE,
        block_ms: Optional[int] = RATING_STREAM_BLOCK_MS,
        claim_idle_ms: int = RATING_STREAM_CLAIM_IDLE_MS,
        retry_ms: int = RATING_STREAM_RETRY_MS,
    ):
        """
        Args:
            client: Redis client (decode_responses=True)
            session_factory: Callable returning a new SQLAlchemy session
            index: Search index gateway
            cache: Rating stats cache
            publisher: Publisher that owns the stream key and group name
            consumer_name: Name of this consumer inside the group
            batch_size: Max entries per XREADGROUP
            block_ms: XREADGROUP block time; None reads without blocking
            claim_idle_ms: Idle time after which other consumers' entries are reclaimed
            retry_ms: Wait after a failed batch before the pending list is re-read
        """
        self._redis = client
        self.session_factory = session_factory
        self.index = index
        self.cache = cache
        self.publisher = publisher
        self.stream_key = publisher.stream_key
        self.group = publisher.group
        self.consumer_name = consumer_name
        self.batch_size = batch_size
        self.block_ms = block_ms
        self.claim_idle_ms = claim_idle_ms
        self.retry_ms = retry_ms

        self._lock = threading.Lock()
        # Monotonic time at which our pending list is due for a re-read; None when clean
        self._backlog_due_at: Optional[float] = 0.0
        self._last_read_was_backlog = False
        self._next_claim_at = 0.0
        self._stopping = False
        self._task: Optional[asyncio.Task] = None

        self.stats = {
            'batches': 0,
            'acknowledged': 0,
            'discarded': 0,
            'failed_movies': 0,
            'last_batch_at': None,
            'last_error': None,
        }

    # ============================================
    # Stream reads
    # ============================================

    @staticmethod
    def _flatten(response) -> List[StreamEntry]:
        """Normalize an XREADGROUP reply (list or dict form) to [(id, fields)]"""
        if not response:
            return []
        if isinstance(response, dict):
            streams = response.values()
            entries = []
            for value in streams:
                # RESP3 nests entries one level deeper
                entries.extend(value[0] if value and isinstance(value[0], list) else value)
            return [tuple(entry) for entry in entries]
        entries = []
        for _stream, stream_entries in response:
            entries.extend(tuple(entry) for entry in stream_entries)
        return entries

    def _claim_stale(self) -> List[StreamEntry]:
        """Take over entries another consumer left idle too long"""
        now = time.monotonic()
        if now < self._next_claim_at:
            return []
        self._next_claim_at = now + self.claim_idle_ms / 1000

        try:
            reply = self._redis.xautoclaim(
                self.stream_key,
                self.group,
                self.consumer_name,
                min_idle_time=self.claim_idle_ms,
                start_id="0-0",
                count=self.batch_size,
            )
        except redis.ResponseError as e:
            logger.debug(f"XAUTOCLAIM unavailable: {e}")
            return []

        claimed = [tuple(entry) for entry in reply[1]] if reply and len(reply) > 1 else []
        if claimed:
            logger.info(f"Reclaimed {len(claimed)} stale rating events")
        return claimed

    def _backlog_due(self) -> bool:
        """
        Whether this read should go to our own pending list

        Never twice in a row: entries that keep failing must not keep new
        events from other movies waiting.
        """
        if self._backlog_due_at is None or self._last_read_was_backlog:
            return False
        return time.monotonic() >= self._backlog_due_at

    def _read_batch(self) -> List[StreamEntry]:
        if self._backlog_due():
            response = self._redis.xreadgroup(
                self.group,
                self.consumer_name,
                {self.stream_key: "0"},
                count=self.batch_size,
            )
            entries = self._flatten(response)
            self._backlog_due_at = None
            if entries:
                self._last_read_was_backlog = True
                if len(entries) >= self.batch_size:
                    # More pending than one batch: come back after the next new read
                    self._backlog_due_at = time.monotonic()
                return entries

        self._last_read_was_backlog = False

        claimed = self._claim_stale()
        if claimed:
            return claimed

        response = self._redis.xreadgroup(
            self.group,
            self.consumer_name,
            {self.stream_key: ">"},
            count=self.batch_size,
            block=self.block_ms,
        )
        return self._flatten(response)

    # ============================================
    # Processing
    # ============================================

    def poll_once(self) -> int:
        """
        Read and process one batch

        Returns:
            Number of entries acknowledged
        """
        with self._lock:
            entries = self._read_batch()
            if not entries:
                return 0
            return self.process_entries(entries)

    def process_entries(self, entries: List[StreamEntry]) -> int:
        """Coalesce entries per movie, recompute each movie, ack what succeeded"""
        by_movie: Dict[int, List[str]] = {}
        discarded = []

        for entry_id, fields in entries:
            payload = (fields or {}).get(EVENT_FIELD)
            if payload is None:
                logger.warning(f"Discarding rating event {entry_id}: no payload")
                discarded.append(entry_id)
                continue
            try:
                event = decode_event(payload)
            except ValueError as e:
                logger.warning(f"Discarding unparseable rating event {entry_id}: {e}")
                discarded.append(entry_id)
                continue
            by_movie.setdefault(event.movie_id, []).append(entry_id)

        acknowledged = 0
        if discarded:
            acknowledged += self._ack(discarded)
            self.stats['discarded'] += len(discarded)

        failed = False
        for movie_id, entry_ids in by_movie.items():
            try:
                self.recompute_movie(movie_id)
            except Exception as e:
                failed = True
                self.stats['failed_movies'] += 1
                self.stats['last_error'] = f"movie {movie_id}: {e}"
                logger.error(f"✗ Aggregate recompute failed for movie {movie_id}: {e}")
                continue
            acknowledged += self._ack(entry_ids)

        if failed:
            self._backlog_due_at = time.monotonic() + self.retry_ms / 1000

        self.stats['batches'] += 1
        self.stats['acknowledged'] += acknowledged
        self.stats['last_batch_at'] = datetime.now(timezone.utc).isoformat()
        logger.debug(f"Processed {len(entries)} rating events for {len(by_movie)} movies")
        return acknowledged

    def _ack(self, entry_ids: List[str]) -> int:
        return int(self._redis.xack(self.stream_key, self.group, *entry_ids))

    def recompute_movie(self, movie_id: int) -> bool:
        """
        Bring one movie's aggregates, cache entry and index document up to date

        Returns:
            False if the movie no longer exists (nothing to do), True otherwise

        Raises:
            Any store or index error; the caller leaves the entries pending
        """
        self.cache.invalidate(movie_id)

        db = self.session_factory()
        try:
            movie = db.query(Movie).options(
                selectinload(Movie.casts).selectinload(MovieCast.actor)
            ).filter(Movie.id == movie_id).first()

            if movie is None:
                logger.warning(f"Movie {movie_id} no longer exists, skipping its rating events")
                return False

            stats = RatingService.compute_movie_stats(db, movie_id)
            movie.avg_rating = stats["average_rating"]
            movie.ratings_count = stats["total_ratings"]
            db.commit()

            self.cache.set_stats(movie_id, RatingService.stats_payload(movie_id, stats))

            updated = self.index.update_aggregate_fields(
                movie_id, stats["average_rating"], stats["total_ratings"]
            )
            if not updated:
                db.refresh(movie)
                self.index.upsert(self.index.to_document(movie))
                logger.info(f"Reindexed movie {movie_id} after failed partial update")

            return True
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    # ============================================
    # Lifecycle
    # ============================================

    async def run(self) -> None:
        """Poll forever; each blocking read runs in a worker thread"""
        self.publisher.ensure_group()
        logger.info(f"✓ Rating consumer '{self.consumer_name}' listening on '{self.stream_key}'")

        while not self._stopping:
            try:
                await asyncio.to_thread(self.poll_once)
            except redis.RedisError as e:
                self.stats['last_error'] = str(e)
                logger.error(f"✗ Rating stream read failed: {e}")
                await asyncio.sleep(ERROR_BACKOFF_SECONDS)

        logger.info("Rating consumer stopped")

    def start(self) -> asyncio.Task:
        self._stopping = False
        self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self) -> None:
        """Let the in-flight read finish, then end the loop"""
        self._stopping = True
        if self._task is None:
            return
        timeout = (self.block_ms or 0) / 1000 + 5
        try:
            await asyncio.wait_for(self._task, timeout=timeout)
        except asyncio.TimeoutError:
            self._task.cancel()
        self._task = None

    def get_status(self) -> dict:
        return {
            'consumer': self.consumer_name,
            'running': self._task is not None and not self._task.done(),
            **self.stats,
        }


rating_consumer = RatingAggregateConsumer(
    client=redis_client,
    session_factory=get_session_factory(),
    index=search_index,
    cache=rating_stats_cache,
    publisher=event_publisher,
)
