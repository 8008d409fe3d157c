"""
Rating Schemas - Pydantic models for rating request/response validation
"""

from pydantic import Field, field_validator
from datetime import datetime
from typing import Optional, Dict, List

from app.schemas.search import CamelModel


class RatingCreate(CamelModel):
    """Schema for rating a movie (body of POST /movies/{id}/rate)"""
    stars: int = Field(..., description="Star rating (1-5)", ge=1, le=5)
    source_id: Optional[str] = Field(
        None,
        min_length=1,
        max_length=255,
        description="Anonymous submitter token; one rating per token per movie"
    )

    @field_validator('source_id')
    @classmethod
    def strip_source_id(cls, v):
        if v is None:
            return v
        v = v.strip()
        return v or None


class RatingUpdate(CamelModel):
    """Schema for changing an existing rating; the source id proves ownership"""
    stars: int = Field(..., description="New star rating (1-5)", ge=1, le=5)
    source_id: str = Field(..., min_length=1, max_length=255)


class RatingResponse(CamelModel):
    """Schema for rating response (matches database model)"""
    id: int
    movie_id: int
    stars: int
    source_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class MovieRatingSummary(CamelModel):
    """Aggregate fields of a movie right after a rating write"""
    id: int
    title: str
    avg_rating: float
    ratings_count: int


class RateMovieData(CamelModel):
    rating: RatingResponse
    movie: MovieRatingSummary


class RateMovieResponse(CamelModel):
    success: bool = True
    data: RateMovieData
    message: str


class MovieRatingStats(CamelModel):
    """Schema for movie-specific rating statistics"""
    movie_id: int
    average_rating: float = Field(..., description="Average stars, rounded to 2 decimals")
    total_ratings: int
    rating_distribution: Dict[str, int] = Field(
        ...,
        description="Number of ratings per star value (1-5)"
    )
    cached: bool = False
    last_updated: Optional[str] = None


class MovieRatingsPage(CamelModel):
    ratings: List[RatingResponse]
    total: int
    page: int
    limit: int
    has_more: bool
