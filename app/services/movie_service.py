"""
Movie Service - catalog lookup, creation, search and top-rated listings
"""
import math
import logging
from typing import Dict, List, Optional

from fastapi import HTTPException, status
from opensearchpy.exceptions import OpenSearchException
from sqlalchemy.orm import Session, selectinload

from app.models.actor import Actor, MovieCast
from app.models.movie import Movie, MovieType
from app.schemas.movie import MovieCreate
from app.services.query_compiler import compile_query, compile_top_rated, page_offset
from app.services.query_parser import QueryParser
from app.services.rating_service import RatingService
from app.services.search_index import SearchIndexGateway, SearchUnavailableError

logger = logging.getLogger(__name__)


def _total_pages(total: int, limit: int) -> int:
    return math.ceil(total / limit) if limit else 0


class MovieService:
    """Service for catalog operations"""

    @staticmethod
    def _with_casts(db: Session):
        return db.query(Movie).options(
            selectinload(Movie.casts).selectinload(MovieCast.actor)
        )

    @staticmethod
    def get_movie(db: Session, movie_id: int) -> Movie:
        """
        Movie with its cast

        Raises:
            HTTPException: 404 if the movie does not exist
        """
        movie = MovieService._with_casts(db).filter(Movie.id == movie_id).first()
        if not movie:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Movie not found"
            )
        return movie

    @staticmethod
    def get_movie_detail(db: Session, movie_id: int) -> Dict:
        """Movie, cast and live rating distribution"""
        movie = MovieService.get_movie(db, movie_id)
        stats = RatingService.compute_movie_stats(db, movie_id)

        return {
            "id": movie.id,
            "title": movie.title,
            "description": movie.description,
            "cover_url": movie.cover_url,
            "release_date": movie.release_date,
            "type": movie.type,
            "avg_rating": movie.avg_rating,
            "ratings_count": movie.ratings_count,
            "created_at": movie.created_at,
            "updated_at": movie.updated_at,
            "casts": movie.casts,
            "rating_distribution": stats["rating_distribution"],
        }

    @staticmethod
    def _get_or_create_actor(db: Session, name: str) -> Actor:
        actor = db.query(Actor).filter(Actor.name == name).first()
        if actor:
            return actor
        actor = Actor(name=name)
        db.add(actor)
        db.flush()
        return actor

    @staticmethod
    def create_movie(db: Session, data: MovieCreate,
                     index: Optional[SearchIndexGateway] = None) -> Movie:
        """
        Add a movie and its cast, then index it

        Indexing is a secondary write: if it fails the movie is still created
        and the next sync picks it up.
        """
        movie = Movie(
            title=data.title,
            description=data.description,
            release_date=data.release_date,
            cover_url=data.cover_url,
            type=data.type,
            avg_rating=0.0,
            ratings_count=0
        )
        db.add(movie)
        db.flush()

        for name in data.cast_names:
            actor = MovieService._get_or_create_actor(db, name)
            db.add(MovieCast(movie_id=movie.id, actor_id=actor.id))

        db.commit()
        movie = MovieService.get_movie(db, movie.id)
        logger.info(f"Created movie {movie.id} '{movie.title}' with {len(data.cast_names)} cast members")

        if index is not None:
            try:
                index.upsert(index.to_document(movie))
            except OpenSearchException as e:
                logger.warning(f"Movie {movie.id} saved but not indexed: {e}")

        return movie

    # ============================================
    # Listings
    # ============================================

    @staticmethod
    def _run_search(index: SearchIndexGateway, ranked, offset: int, limit: int):
        try:
            return index.execute(ranked, offset=offset, size=limit)
        except SearchUnavailableError:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Search is temporarily unavailable"
            )

    @staticmethod
    def search(index: SearchIndexGateway, query: Optional[str], movie_type: Optional[MovieType] = None,
               page: int = 1, limit: int = 10) -> Dict:
        """
        Free-text search with rating/date phrases

        Args:
            index: Search index gateway
            query: Raw search string (empty or 1 char -> top rated)
            movie_type: Optional type filter
            page: 1-based page number
            limit: Page size

        Returns:
            Dictionary shaped like MovieListData
        """
        criteria = QueryParser.parse(query)
        ranked = compile_query(criteria, type_override=movie_type)
        result = MovieService._run_search(index, ranked, page_offset(page - 1, limit), limit)

        return {
            "movies": [SearchIndexGateway.hit_to_movie(hit) for hit in result.documents],
            "total": result.total,
            "page": page,
            "total_pages": _total_pages(result.total, limit)
        }

    @staticmethod
    def top_rated_from_store(db: Session, movie_type: Optional[MovieType] = None,
                             limit: int = 10) -> Dict:
        """First page of the top-rated listing, straight from the store"""
        query = db.query(Movie)
        if movie_type is not None:
            query = query.filter(Movie.type == movie_type)

        total = query.count()
        movies: List[Movie] = query.options(
            selectinload(Movie.casts).selectinload(MovieCast.actor)
        ).order_by(
            Movie.avg_rating.desc(),
            Movie.ratings_count.desc(),
            Movie.id.asc()
        ).limit(limit).all()

        return {
            "movies": movies,
            "total": total,
            "page": 0,
            "total_pages": _total_pages(total, limit),
            "has_more": limit < total
        }

    @staticmethod
    def top_rated(db: Session, index: SearchIndexGateway, movie_type: Optional[MovieType] = None,
                  page: int = 0, limit: int = 10) -> Dict:
        """
        Top-rated listing with 0-based pages

        Page 0 comes from the store; later pages come from the index.
        """
        if page == 0:
            return MovieService.top_rated_from_store(db, movie_type, limit)

        offset = page_offset(page, limit)
        result = MovieService._run_search(index, compile_top_rated(movie_type), offset, limit)

        return {
            "movies": [SearchIndexGateway.hit_to_movie(hit) for hit in result.documents],
            "total": result.total,
            "page": page,
            "total_pages": _total_pages(result.total, limit),
            "has_more": offset + len(result.documents) < result.total
        }
