"""
Migration script to create all database tables

Run this script to create all database tables and their performance indexes:
    python -m app.migrations.create_all_tables
"""

import sys
import os

# Add parent directory to path
sys.path.append(os.path.dirname(os.path.dirname(os.path.dirname(__file__))))

from app.database import engine, Base
# Import all models to ensure they're registered with Base
from app.models import Movie, Actor, MovieCast, Rating  # noqa: F401
from app.models.indexes import create_performance_indexes


def create_tables(bind=None):
    """Create all database tables, then the performance indexes"""
    bind = bind or engine

    print("=" * 60)
    print("Creating all database tables...")
    print("=" * 60)

    try:
        # Create all tables defined in Base metadata
        Base.metadata.create_all(bind=bind)

        print("\n✅ All tables created successfully!")
        print("\nTables created:")
        for table_name in Base.metadata.tables:
            print(f"   - {table_name}")
        print("=" * 60)

        summary = create_performance_indexes(bind)
        print(f"Indexes: {summary['created']} created, {summary['skipped']} already present, "
              f"{summary['errors']} failed")
        return summary

    except Exception as e:
        print(f"\n❌ Error creating tables: {e}")
        import traceback
        traceback.print_exc()
        raise


if __name__ == "__main__":
    create_tables()
