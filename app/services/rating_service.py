"""
Rating Service - rating ingest and per-movie rating statistics

Every write runs in one transaction that also refreshes the movie's
aggregate fields. After commit the stats cache entry is dropped and a
rating event is published so the aggregate consumer can bring the search
index (and any concurrent writer's view) up to date.
"""
import logging
from datetime import datetime, timezone
from typing import Dict, Optional, Tuple

from fastapi import Depends, HTTPException, status
from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.database import get_db
from app.models.movie import Movie
from app.models.rating import Rating
from app.schemas.events import RatingCreated, RatingUpdated, RatingDeleted, RatingEvent
from app.services.rating_events import RatingEventPublisher, get_event_publisher
from app.utils.cache import RatingStatsCache, get_rating_cache

logger = logging.getLogger(__name__)

MIN_STARS = 1
MAX_STARS = 5


class RatingService:
    """Service for movie rating operations"""

    def __init__(self, db: Session, publisher: Optional[RatingEventPublisher] = None,
                 cache: Optional[RatingStatsCache] = None):
        self.db = db
        self.publisher = publisher
        self.cache = cache

    # ==================== AGGREGATES ====================

    @staticmethod
    def compute_movie_stats(db: Session, movie_id: int) -> Dict:
        """
        Exact rating statistics for one movie, straight from the ratings table

        Args:
            db: Database session
            movie_id: Movie ID

        Returns:
            Dictionary with average_rating (2 decimals), total_ratings and
            rating_distribution keyed "1".."5"
        """
        rows = db.query(Rating.stars, func.count(Rating.id)).filter(
            Rating.movie_id == movie_id
        ).group_by(Rating.stars).all()

        distribution = {str(i): 0 for i in range(MIN_STARS, MAX_STARS + 1)}
        total = 0
        star_sum = 0
        for stars, count in rows:
            distribution[str(stars)] = count
            total += count
            star_sum += stars * count

        average = round(star_sum / total, 2) if total else 0.0

        return {
            "average_rating": average,
            "total_ratings": total,
            "rating_distribution": distribution
        }

    @staticmethod
    def stats_payload(movie_id: int, stats: Dict) -> Dict:
        """Cacheable stats document for the stats endpoint"""
        return {
            "movie_id": movie_id,
            "average_rating": stats["average_rating"],
            "total_ratings": stats["total_ratings"],
            "rating_distribution": stats["rating_distribution"],
            "last_updated": datetime.now(timezone.utc).isoformat()
        }

    def _refresh_aggregates(self, movie: Movie) -> None:
        """Write avg/count from the ratings table onto the movie (inside the caller's transaction)"""
        stats = self.compute_movie_stats(self.db, movie.id)
        movie.avg_rating = stats["average_rating"]
        movie.ratings_count = stats["total_ratings"]

    def _after_commit(self, event: RatingEvent) -> None:
        if self.cache is not None:
            self.cache.invalidate(event.movie_id)
        if self.publisher is not None:
            self.publisher.publish(event)

    # ==================== WRITES ====================

    def submit(self, movie_id: int, stars: int, source_id: Optional[str] = None) -> Tuple[Rating, Movie]:
        """
        Record a new rating for a movie

        Args:
            movie_id: Movie ID
            stars: Star value (1-5)
            source_id: Optional submitter token, one rating per token per movie

        Returns:
            (rating, movie) with the movie's refreshed aggregates

        Raises:
            HTTPException: 400 for bad stars, unknown movie or duplicate rating;
                500 if the transaction fails
        """
        if stars is None or not MIN_STARS <= stars <= MAX_STARS:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Stars must be between {MIN_STARS} and {MAX_STARS}"
            )

        movie = self.db.query(Movie).filter(Movie.id == movie_id).first()
        if not movie:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Movie not found"
            )

        if source_id:
            existing = self.db.query(Rating.id).filter(
                Rating.movie_id == movie_id,
                Rating.source_id == source_id
            ).first()
            if existing:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="You have already rated this movie"
                )

        try:
            rating = Rating(movie_id=movie_id, stars=stars, source_id=source_id)
            self.db.add(rating)
            self.db.flush()
            self._refresh_aggregates(movie)
            self.db.commit()
        except IntegrityError:
            # A concurrent request from the same source won the race
            self.db.rollback()
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="You have already rated this movie"
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"✗ Failed to save rating for movie {movie_id}: {e}")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Failed to save rating"
            )

        self.db.refresh(rating)
        self.db.refresh(movie)
        logger.info(f"Rating {rating.id} ({stars}★) saved for movie {movie_id}")

        self._after_commit(RatingCreated(movie_id=movie_id, rating_id=rating.id, stars=stars))
        return rating, movie

    def _get_owned_rating(self, rating_id: int, source_id: str) -> Rating:
        rating = self.db.query(Rating).filter(Rating.id == rating_id).first()
        if not rating:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Rating not found"
            )
        if not source_id or rating.source_id != source_id:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="You don't have permission to modify this rating"
            )
        return rating

    def update_rating(self, rating_id: int, stars: int, source_id: str) -> Tuple[Rating, Movie]:
        """
        Change the stars of an existing rating

        Raises:
            HTTPException: 404 unknown rating, 403 wrong source, 400 bad stars
        """
        if stars is None or not MIN_STARS <= stars <= MAX_STARS:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Stars must be between {MIN_STARS} and {MAX_STARS}"
            )

        rating = self._get_owned_rating(rating_id, source_id)
        movie = rating.movie
        previous = rating.stars

        if previous == stars:
            return rating, movie

        try:
            rating.stars = stars
            rating.updated_at = datetime.now(timezone.utc)
            self.db.flush()
            self._refresh_aggregates(movie)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"✗ Failed to update rating {rating_id}: {e}")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Failed to update rating"
            )

        self.db.refresh(rating)
        self.db.refresh(movie)

        self._after_commit(RatingUpdated(
            movie_id=movie.id,
            rating_id=rating.id,
            stars=stars,
            previous_stars=previous
        ))
        return rating, movie

    def delete_rating(self, rating_id: int, source_id: str) -> Movie:
        """
        Delete a rating owned by source_id

        Returns:
            The movie with refreshed aggregates
        """
        rating = self._get_owned_rating(rating_id, source_id)
        movie = rating.movie

        try:
            self.db.delete(rating)
            self.db.flush()
            self._refresh_aggregates(movie)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"✗ Failed to delete rating {rating_id}: {e}")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Failed to delete rating"
            )

        self.db.refresh(movie)
        self._after_commit(RatingDeleted(movie_id=movie.id, rating_id=rating_id))
        return movie

    # ==================== READS ====================

    def _require_movie(self, movie_id: int) -> Movie:
        movie = self.db.query(Movie).filter(Movie.id == movie_id).first()
        if not movie:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Movie not found"
            )
        return movie

    def get_movie_ratings(self, movie_id: int, page: int = 1, limit: int = 20) -> Dict:
        """
        Ratings of a movie, newest first

        Args:
            movie_id: Movie ID
            page: 1-based page number
            limit: Page size
        """
        self._require_movie(movie_id)

        query = self.db.query(Rating).filter(Rating.movie_id == movie_id)
        total = query.count()
        ratings = query.order_by(
            Rating.created_at.desc(),
            Rating.id.desc()
        ).offset((page - 1) * limit).limit(limit).all()

        return {
            "ratings": ratings,
            "total": total,
            "page": page,
            "limit": limit,
            "has_more": page * limit < total
        }

    def get_movie_rating_stats(self, movie_id: int) -> Dict:
        """
        Rating statistics for a movie, served from the cache when possible

        Returns:
            Stats dictionary plus a `cached` flag
        """
        if self.cache is not None:
            cached = self.cache.get_stats(movie_id)
            if cached is not None:
                return {**cached, "cached": True}

        self._require_movie(movie_id)
        payload = self.stats_payload(movie_id, self.compute_movie_stats(self.db, movie_id))

        if self.cache is not None:
            self.cache.set_stats(movie_id, payload)

        return {**payload, "cached": False}


def get_rating_service(
    db: Session = Depends(get_db),
    publisher: RatingEventPublisher = Depends(get_event_publisher),
    cache: RatingStatsCache = Depends(get_rating_cache)
) -> RatingService:
    """FastAPI dependency wiring the service to the request session"""
    return RatingService(db, publisher, cache)
