from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Body, Depends, HTTPException, Path, Query, status
from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.database import get_db
from app.models.movie import MovieType
from app.schemas.movie import MovieCreate, MovieDetailResponse
from app.schemas.rating import (
    MovieRatingStats,
    MovieRatingsPage,
    RateMovieResponse,
    RatingCreate,
)
from app.schemas.search import MovieListResponse
from app.schemas.sync import SyncOptions, SyncStartResponse, SyncStatusResponse
from app.schemas.validation import SearchQuerySchema
from app.services.movie_service import MovieService
from app.services.rating_service import RatingService, get_rating_service
from app.services.search_index import SearchIndexGateway, get_search_index
from app.services.sync_service import SyncService, get_sync_service
from app.utils.dependencies import require_api_key

router = APIRouter(prefix="/movies", tags=["Movies"], dependencies=[Depends(require_api_key)])

MAX_PAGE_SIZE = 50


# ============================================
# Search & Top Rated
# ============================================

@router.get("/search", response_model=MovieListResponse)
def search_movies(
    query: Optional[str] = Query(None, max_length=200, description="Free text, e.g. 'batman more than 3 stars after 2010'"),
    type: Optional[MovieType] = Query(None, description="MOVIE or TV_SHOW"),
    page: int = Query(1, ge=1, description="Page number (1-based)"),
    limit: int = Query(10, ge=1, le=MAX_PAGE_SIZE, description="Results per page"),
    index: SearchIndexGateway = Depends(get_search_index)
):
    """
    Natural-language movie search

    Rating phrases ("at least 4 stars", "under 3 stars") and date phrases
    ("after 2010", "within the last 5 years") become filters; the rest of the
    text is matched against title, description and cast.

    An empty or one-character query returns the top-rated set.
    """
    if query:
        try:
            query = SearchQuerySchema(query=query).query
        except ValidationError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Invalid characters in search query"
            )

    data = MovieService.search(index, query, movie_type=type, page=page, limit=limit)
    return {
        "success": True,
        "data": data,
        "message": f"Found {data['total']} movies"
    }


@router.get("/top", response_model=MovieListResponse)
def get_top_rated(
    type: Optional[MovieType] = Query(None, description="MOVIE or TV_SHOW"),
    limit: int = Query(10, ge=1, le=MAX_PAGE_SIZE, description="Results per page"),
    page: int = Query(0, ge=0, description="Page number (0-based)"),
    db: Session = Depends(get_db),
    index: SearchIndexGateway = Depends(get_search_index)
):
    """Highest rated movies; ties broken by number of ratings"""
    data = MovieService.top_rated(db, index, movie_type=type, page=page, limit=limit)
    return {
        "success": True,
        "data": data,
        "message": "Top rated movies retrieved successfully"
    }


# ============================================
# Sync
# ============================================

@router.post("/sync/start", response_model=SyncStartResponse)
def start_sync(
    background_tasks: BackgroundTasks,
    options: Optional[SyncOptions] = Body(None),
    syncer: SyncService = Depends(get_sync_service)
):
    """
    Start a bulk sync of the catalog into the search index

    Returns immediately with the sync id; poll /movies/sync/status/{syncId}.
    """
    job = syncer.start(options)
    background_tasks.add_task(syncer.run, job.sync_id)
    return {
        "success": True,
        "message": "Sync started",
        "sync_id": job.sync_id,
        "options": job.options,
        "timestamp": datetime.now(timezone.utc)
    }


@router.get("/sync/status", response_model=SyncStatusResponse)
def get_latest_sync_status(syncer: SyncService = Depends(get_sync_service)):
    """Status of the most recent sync"""
    return {
        "success": True,
        "data": syncer.get_status(),
        "message": "Sync status retrieved successfully"
    }


@router.get("/sync/status/{sync_id}", response_model=SyncStatusResponse)
def get_sync_status(
    sync_id: str = Path(..., description="Id returned by /movies/sync/start"),
    syncer: SyncService = Depends(get_sync_service)
):
    return {
        "success": True,
        "data": syncer.get_status(sync_id),
        "message": "Sync status retrieved successfully"
    }


# ============================================
# Catalog
# ============================================

@router.post("", response_model=MovieDetailResponse, status_code=status.HTTP_201_CREATED)
def create_movie(
    movie_data: MovieCreate,
    db: Session = Depends(get_db),
    index: SearchIndexGateway = Depends(get_search_index)
):
    """Add a movie or TV show; unknown cast names are created as actors"""
    movie = MovieService.create_movie(db, movie_data, index)
    return {
        "success": True,
        "data": MovieService.get_movie_detail(db, movie.id),
        "message": "Movie created successfully"
    }


# ============================================
# Movie Details & Ratings (dynamic routes last)
# ============================================

@router.get("/{movie_id}", response_model=MovieDetailResponse)
def get_movie(
    movie_id: int = Path(..., gt=0),
    db: Session = Depends(get_db)
):
    """Movie with cast and rating distribution"""
    return {
        "success": True,
        "data": MovieService.get_movie_detail(db, movie_id),
        "message": "Movie retrieved successfully"
    }


@router.post("/{movie_id}/rate", response_model=RateMovieResponse)
def rate_movie(
    rating_data: RatingCreate,
    movie_id: int = Path(..., gt=0),
    service: RatingService = Depends(get_rating_service)
):
    """
    Rate a movie with 1-5 stars

    - **stars**: 1 to 5 (required)
    - **sourceId**: optional submitter token; a token can rate a movie once
    """
    rating, movie = service.submit(movie_id, rating_data.stars, rating_data.source_id)
    return {
        "success": True,
        "data": {"rating": rating, "movie": movie},
        "message": "Rating submitted successfully"
    }


@router.get("/{movie_id}/ratings", response_model=MovieRatingsPage)
def get_movie_ratings(
    movie_id: int = Path(..., gt=0),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=MAX_PAGE_SIZE),
    service: RatingService = Depends(get_rating_service)
):
    """Ratings of a movie, newest first"""
    return service.get_movie_ratings(movie_id, page, limit)


@router.get("/{movie_id}/ratings/stats", response_model=MovieRatingStats)
def get_movie_rating_stats(
    movie_id: int = Path(..., gt=0),
    service: RatingService = Depends(get_rating_service)
):
    """Average, count and star distribution (cached for a few minutes)"""
    return service.get_movie_rating_stats(movie_id)
