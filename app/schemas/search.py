"""
Search criteria and search response schemas
Criteria are produced by the query parser and consumed by the query compiler
"""
from pydantic import BaseModel, Field, ConfigDict
from pydantic.alias_generators import to_camel
from typing import Optional, List
from datetime import date

from app.models.movie import MovieType


# ============================================
# Parsed search criteria
# ============================================

class SearchCriteria(BaseModel):
    """
    Structured filters extracted from a free-text search string

    Rating bounds are on the 1-5 star scale; exclusive phrases
    ("more than 3 stars") arrive already shifted by 0.01.
    """
    text_query: Optional[str] = None
    min_rating: Optional[float] = None
    max_rating: Optional[float] = None
    after_year: Optional[int] = None
    before_year: Optional[int] = None
    older_than_years: Optional[int] = None
    newer_than_years: Optional[int] = None
    cast_names: Optional[List[str]] = None
    type: Optional[MovieType] = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def has_filters(self) -> bool:
        """True when any non-text criterion is set"""
        return any(
            value is not None
            for value in (
                self.min_rating,
                self.max_rating,
                self.after_year,
                self.before_year,
                self.older_than_years,
                self.newer_than_years,
                self.type,
            )
        ) or bool(self.cast_names)


# ============================================
# Response Schemas
# ============================================

class CamelModel(BaseModel):
    """Base for API payloads: snake_case in Python, camelCase on the wire"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class ActorRef(CamelModel):
    name: str


class CastEntry(CamelModel):
    actor: ActorRef
    role: Optional[str] = None


class MovieSummary(CamelModel):
    """Movie as returned by search and top-rated listings"""
    id: int
    title: str
    description: str = ""
    cover_url: Optional[str] = None
    release_date: Optional[date] = None
    type: MovieType
    avg_rating: float = 0.0
    ratings_count: int = 0
    casts: List[CastEntry] = Field(default_factory=list)
    score: Optional[float] = None


class MovieListData(CamelModel):
    movies: List[MovieSummary]
    total: int
    page: int
    total_pages: int
    has_more: Optional[bool] = None


class MovieListResponse(CamelModel):
    """Standard envelope for movie list endpoints"""
    success: bool = True
    data: MovieListData
    message: str
