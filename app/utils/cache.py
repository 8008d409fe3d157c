"""
Rating Stats Cache
==================
Short-lived Redis cache for per-movie rating statistics.

Features:
- JSON values with a TTL (default 5 minutes)
- Explicit invalidation on every rating write
- Hit/miss counters for the admin endpoint

Cache failures never fail a request: reads fall back to the database and
write errors are logged.

Usage:
    from app.utils.cache import rating_stats_cache

    stats = rating_stats_cache.get_stats(movie_id)
    if stats is None:
        stats = compute(...)
        rating_stats_cache.set_stats(movie_id, stats)
"""
import os
import json
import logging
from typing import Optional

import redis
from dotenv import load_dotenv

from app.redis_client import redis_client

load_dotenv()

logger = logging.getLogger(__name__)

RATING_CACHE_TTL = int(os.getenv("RATING_CACHE_TTL", 300))
RATING_CACHE_PREFIX = "movie:rating:"


class RatingStatsCache:
    """
    Redis cache for {averageRating, totalRatings, ratingDistribution}
    keyed by movie id.
    """

    def __init__(self, client: redis.Redis, ttl: int = RATING_CACHE_TTL,
                 prefix: str = RATING_CACHE_PREFIX):
        """
        Args:
            client: Redis client created with decode_responses=True
            ttl: Time to live in seconds
            prefix: Key prefix, the movie id is appended
        """
        self._redis = client
        self.ttl = ttl
        self.prefix = prefix
        self._hits = 0
        self._misses = 0

    def _key(self, movie_id: int) -> str:
        return f"{self.prefix}{movie_id}"

    def get_stats(self, movie_id: int) -> Optional[dict]:
        """
        Cached stats for a movie

        Returns:
            Cached dict, or None on miss, expiry, corrupt value or Redis error
        """
        try:
            raw = self._redis.get(self._key(movie_id))
        except redis.RedisError as e:
            logger.warning(f"Rating cache read failed for movie {movie_id}: {e}")
            self._misses += 1
            return None

        if raw is None:
            self._misses += 1
            return None

        try:
            value = json.loads(raw)
        except ValueError:
            logger.warning(f"Discarding corrupt rating cache entry for movie {movie_id}")
            self.invalidate(movie_id)
            self._misses += 1
            return None

        self._hits += 1
        return value

    def set_stats(self, movie_id: int, stats: dict) -> None:
        try:
            self._redis.setex(self._key(movie_id), self.ttl, json.dumps(stats, default=str))
        except redis.RedisError as e:
            logger.warning(f"Rating cache write failed for movie {movie_id}: {e}")

    def invalidate(self, movie_id: int) -> None:
        try:
            self._redis.delete(self._key(movie_id))
            logger.debug(f"Invalidated rating cache for movie {movie_id}")
        except redis.RedisError as e:
            logger.warning(f"Rating cache invalidation failed for movie {movie_id}: {e}")

    def get_cache_stats(self) -> dict:
        """
        Cache statistics.

        Returns:
            Dictionary with cache performance metrics
        """
        total_requests = self._hits + self._misses
        hit_rate = (self._hits / total_requests * 100) if total_requests > 0 else 0

        return {
            'ttl': self.ttl,
            'prefix': self.prefix,
            'hits': self._hits,
            'misses': self._misses,
            'hit_rate': f"{hit_rate:.2f}%"
        }


# Global cache instance
rating_stats_cache = RatingStatsCache(redis_client)


def get_rating_cache() -> RatingStatsCache:
    return rating_stats_cache
