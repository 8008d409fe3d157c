"""
Import all models to ensure they are registered with SQLAlchemy
"""
from app.models.movie import Movie, MovieType
from app.models.actor import Actor, MovieCast
from app.models.rating import Rating

__all__ = [
    "Movie",
    "MovieType",
    "Actor",
    "MovieCast",
    "Rating"
]
