import enum

from sqlalchemy import Column, Integer, String, Float, Text, Date, DateTime, Enum
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from app.database import Base


class MovieType(str, enum.Enum):
    MOVIE = "MOVIE"
    TV_SHOW = "TV_SHOW"


class Movie(Base):
    __tablename__ = "movies"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(500), nullable=False)
    description = Column(Text, nullable=False, default="")
    type = Column(Enum(MovieType, name="movie_type"), nullable=False, default=MovieType.MOVIE, index=True)
    release_date = Column(Date, nullable=False)
    cover_url = Column(String)

    # Derived from ratings; written by rating ingest and the rating consumer only
    avg_rating = Column(Float, nullable=False, default=0.0)
    ratings_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    casts = relationship("MovieCast", back_populates="movie", cascade="all, delete-orphan")
    ratings = relationship("Rating", back_populates="movie")

    def __repr__(self):
        return f"<Movie(id={self.id}, title='{self.title}', type={self.type})>"
