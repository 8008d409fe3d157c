"""
Load movies and TV shows from a JSON file into the catalog

The file holds a list of objects shaped like the POST /movies body:
    [{"title": "Alien", "description": "...", "releaseDate": "1979-05-25",
      "type": "MOVIE", "castNames": ["Sigourney Weaver"]}]

Titles already present with the same release date are skipped. The search
index is not touched; start a sync afterwards (or let the startup check do it).

Usage:
    python -m app.migrations.seed_catalog path/to/catalog.json
"""
import sys
import os
import json

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../..')))

from pydantic import ValidationError

from app.database import SessionLocal
from app.models.movie import Movie
from app.schemas.movie import MovieCreate
from app.services.movie_service import MovieService


def seed_catalog(entries, db=None):
    """
    Insert catalog entries that are not present yet

    Args:
        entries: List of dicts accepted by MovieCreate
        db: Session to use (a new one is opened when omitted)

    Returns:
        Dictionary with created/skipped/invalid counts
    """
    own_session = db is None
    db = db or SessionLocal()
    created_count = 0
    skipped_count = 0
    invalid_count = 0

    try:
        for position, entry in enumerate(entries):
            try:
                data = MovieCreate.model_validate(entry)
            except ValidationError as e:
                print(f"  ✗ Entry {position} is invalid: {e.errors()[0]['msg']}")
                invalid_count += 1
                continue

            existing = db.query(Movie).filter(
                Movie.title == data.title,
                Movie.release_date == data.release_date
            ).first()
            if existing:
                skipped_count += 1
                continue

            movie = MovieService.create_movie(db, data)
            created_count += 1
            print(f"  ✓ {movie.title} ({movie.release_date.year})")
    finally:
        if own_session:
            db.close()

    return {"created": created_count, "skipped": skipped_count, "invalid": invalid_count}


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print("Usage: python -m app.migrations.seed_catalog path/to/catalog.json")
        sys.exit(1)

    with open(sys.argv[1], encoding="utf-8") as f:
        catalog = json.load(f)

    print(f"🎬 Seeding {len(catalog)} catalog entries...")
    summary = seed_catalog(catalog)
    print(f"\n✅ Created {summary['created']}, skipped {summary['skipped']}, "
          f"invalid {summary['invalid']}")
