"""
Database Performance Indexes
============================
Creates indexes for frequently queried columns to improve performance.

Usage:
    python -m app.models.indexes

This module creates indexes to optimize:
- Rating aggregation per movie (avg/count/distribution recomputation)
- Duplicate-source lookups on rating ingest
- Top-rated listing straight from the store (avg_rating, ratings_count)
- Stable id-ordered paging during bulk sync
- Cast lookups for document projection

Run this after initial deployment or schema changes.
"""
from sqlalchemy import text, inspect
from app.database import engine
import logging

logger = logging.getLogger(__name__)


# Define all indexes with their purposes
PERFORMANCE_INDEXES = [
    # Ratings table
    {
        "name": "idx_ratings_movie_stars",
        "table": "ratings",
        "sql": "CREATE INDEX IF NOT EXISTS idx_ratings_movie_stars ON ratings(movie_id, stars);",
        "purpose": "Recompute average rating and distribution per movie"
    },
    {
        "name": "idx_ratings_movie_created",
        "table": "ratings",
        "sql": "CREATE INDEX IF NOT EXISTS idx_ratings_movie_created ON ratings(movie_id, created_at DESC);",
        "purpose": "Paginate a movie's ratings newest first"
    },

    # Movies table
    {
        "name": "idx_movies_top_rated",
        "table": "movies",
        "sql": "CREATE INDEX IF NOT EXISTS idx_movies_top_rated ON movies(type, avg_rating DESC, ratings_count DESC);",
        "purpose": "Serve the first top-rated page from the store"
    },
    {
        "name": "idx_movies_release_date",
        "table": "movies",
        "sql": "CREATE INDEX IF NOT EXISTS idx_movies_release_date ON movies(release_date);",
        "purpose": "Release-date range scans"
    },

    # Cast join table
    {
        "name": "idx_movie_casts_movie_actor",
        "table": "movie_casts",
        "sql": "CREATE INDEX IF NOT EXISTS idx_movie_casts_movie_actor ON movie_casts(movie_id, actor_id);",
        "purpose": "Load cast names when projecting search documents"
    },
]


def index_exists(table_name: str, index_name: str, bind=None) -> bool:
    """Check if an index already exists"""
    inspector = inspect(bind or engine)
    try:
        indexes = inspector.get_indexes(table_name)
        return any(idx['name'] == index_name for idx in indexes)
    except Exception:
        return False


def create_performance_indexes(bind=None):
    """
    Create indexes to speed up common queries.
    This function is idempotent - safe to run multiple times.

    Args:
        bind: Engine to run against (defaults to the application engine)
    """
    bind = bind or engine

    created_count = 0
    skipped_count = 0
    error_count = 0

    # Process each index individually with its own transaction
    for idx in PERFORMANCE_INDEXES:
        with bind.connect() as conn:
            try:
                if index_exists(idx['table'], idx['name'], bind):
                    logger.info(f"✓ Index {idx['name']} already exists - {idx['purpose']}")
                    skipped_count += 1
                else:
                    conn.execute(text(idx['sql']))
                    conn.commit()
                    logger.info(f"✓ Created index {idx['name']} - {idx['purpose']}")
                    created_count += 1

            except Exception as e:
                # Rollback this transaction and continue with next index
                conn.rollback()
                error_msg = str(e).split('\n')[0]
                logger.error(f"✗ Error creating index {idx['name']}: {error_msg}")
                error_count += 1

    logger.info("=" * 60)
    logger.info("Index Creation Summary:")
    logger.info(f"  Created: {created_count}")
    logger.info(f"  Skipped (already exists): {skipped_count}")
    logger.info(f"  Errors: {error_count}")
    logger.info(f"  Total: {len(PERFORMANCE_INDEXES)}")
    logger.info("=" * 60)

    if error_count:
        logger.warning(f"⚠️ Completed with {error_count} errors")

    return {
        "created": created_count,
        "skipped": skipped_count,
        "errors": error_count,
        "total": len(PERFORMANCE_INDEXES)
    }


def drop_all_custom_indexes(bind=None):
    """
    Drop all custom indexes (for testing/debugging).
    WARNING: Use with caution! This will slow down queries.
    """
    bind = bind or engine
    logger.warning("⚠️ Dropping all custom indexes...")

    with bind.connect() as conn:
        for idx in PERFORMANCE_INDEXES:
            try:
                conn.execute(text(f"DROP INDEX IF EXISTS {idx['name']};"))
                logger.info(f"✓ Dropped index {idx['name']}")
            except Exception as e:
                logger.error(f"✗ Error dropping index {idx['name']}: {str(e)}")
        conn.commit()


if __name__ == "__main__":
    import argparse

    logging.basicConfig(level=logging.INFO)

    parser = argparse.ArgumentParser(description="Manage database performance indexes")
    parser.add_argument(
        "--drop",
        action="store_true",
        help="Drop all custom indexes instead of creating them"
    )

    args = parser.parse_args()

    if args.drop:
        drop_all_custom_indexes()
    else:
        create_performance_indexes()
