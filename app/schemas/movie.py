"""
Movie catalog schemas - creation payload and detail response
"""
from pydantic import Field, field_validator
from typing import Optional, List
from datetime import date, datetime

from app.models.movie import MovieType
from app.schemas.search import CamelModel, CastEntry
from app.schemas.validation import SafeStringMixin, clean_cast_names


class MovieCreate(CamelModel):
    """Schema for adding a movie or TV show to the catalog"""
    title: str = Field(..., min_length=1, max_length=500)
    description: str = Field("", max_length=5000)
    release_date: date
    cover_url: Optional[str] = Field(None, max_length=2000)
    type: MovieType = MovieType.MOVIE
    cast_names: List[str] = Field(default_factory=list, description="Actor names, created on demand")

    @field_validator('title')
    @classmethod
    def clean_title(cls, v):
        return SafeStringMixin.to_plain_text(SafeStringMixin.validate_no_script(v))

    @field_validator('description')
    @classmethod
    def clean_description(cls, v):
        return SafeStringMixin.sanitize_html(SafeStringMixin.validate_no_script(v))

    @field_validator('cast_names')
    @classmethod
    def check_cast_names(cls, v):
        return clean_cast_names(v)


class MovieDetail(CamelModel):
    """Movie with cast and live rating statistics"""
    id: int
    title: str
    description: str
    cover_url: Optional[str] = None
    release_date: date
    type: MovieType
    avg_rating: float
    ratings_count: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    casts: List[CastEntry] = Field(default_factory=list)
    rating_distribution: Optional[dict] = None


class MovieDetailResponse(CamelModel):
    success: bool = True
    data: MovieDetail
    message: str
