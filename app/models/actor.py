from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from app.database import Base


class Actor(Base):
    __tablename__ = "actors"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False, unique=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    casts = relationship("MovieCast", back_populates="actor")


class MovieCast(Base):
    """Join entity linking a movie to an actor, with an optional role label"""
    __tablename__ = "movie_casts"

    id = Column(Integer, primary_key=True, index=True)
    movie_id = Column(Integer, ForeignKey("movies.id", ondelete="CASCADE"), nullable=False, index=True)
    actor_id = Column(Integer, ForeignKey("actors.id", ondelete="RESTRICT"), nullable=False, index=True)
    role = Column(String(255))

    # Relationships
    movie = relationship("Movie", back_populates="casts")
    actor = relationship("Actor", back_populates="casts")

    __table_args__ = (
        UniqueConstraint('movie_id', 'actor_id', name='unique_movie_actor'),
    )
