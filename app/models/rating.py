from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint, CheckConstraint
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from app.database import Base

class Rating(Base):
    __tablename__ = "ratings"

    id = Column(Integer, primary_key=True, index=True)
    movie_id = Column(Integer, ForeignKey("movies.id", ondelete="CASCADE"), nullable=False, index=True)
    stars = Column(Integer, nullable=False)  # 1-5
    source_id = Column(String(255), nullable=True)  # Anonymous submitter token
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    movie = relationship("Movie", back_populates="ratings")

    # One rating per identified source per movie (NULL source ids never collide)
    __table_args__ = (
        UniqueConstraint('movie_id', 'source_id', name='unique_movie_source_rating'),
        CheckConstraint('stars >= 1 AND stars <= 5', name='rating_stars_range'),
    )
