"""
Sync Service - bulk (re)indexing of the movie catalog into OpenSearch

Each run is a SyncJob kept in a registry keyed by sync id, so status can be
read for the latest run or any earlier one. Only one run at a time.
"""
import os
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple

from dotenv import load_dotenv
from fastapi import HTTPException, status
from sqlalchemy import func
from sqlalchemy.orm import Session, selectinload

from app.database import get_session_factory
from app.models.actor import MovieCast
from app.models.movie import Movie
from app.models.rating import Rating
from app.schemas.sync import SyncOptions
from app.services.search_index import SearchIndexGateway, BulkIndexError, search_index

load_dotenv()

logger = logging.getLogger(__name__)

SYNC_BATCH_SIZE = int(os.getenv("SYNC_BATCH_SIZE", 100))

# Keep only the most recent finished jobs
MAX_FINISHED_JOBS = 20


class SyncJob:
    """State of one sync run"""

    def __init__(self, sync_id: str, options: SyncOptions):
        self.sync_id = sync_id
        self.options = options
        self.is_running = False
        self.total_records = 0
        self.processed_records = 0
        self.failed_documents = 0
        self.current_operation = "Queued"
        self.errors: List[str] = []
        self.started_at: Optional[datetime] = None
        self.finished_at: Optional[datetime] = None

    @property
    def progress(self) -> int:
        if self.total_records <= 0:
            return 100 if self.finished_at else 0
        return min(100, int(self.processed_records * 100 / self.total_records))

    def record_error(self, message: str) -> None:
        logger.error(f"[{self.sync_id}] ✗ {message}")
        self.errors.append(message)

    def to_status(self) -> Dict:
        return {
            "sync_id": self.sync_id,
            "is_running": self.is_running,
            "progress": self.progress,
            "total_records": self.total_records,
            "processed_records": self.processed_records,
            "current_operation": self.current_operation,
            "failed_documents": self.failed_documents,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "errors": list(self.errors),
        }


class SyncJobRegistry:
    """In-process registry of sync jobs"""

    def __init__(self):
        self._jobs: Dict[str, SyncJob] = {}
        self._latest_id: Optional[str] = None
        self._lock = threading.Lock()

    def create(self, options: SyncOptions) -> SyncJob:
        """
        Register a new job

        Raises:
            HTTPException: 400 if another sync is still running
        """
        with self._lock:
            if any(job.is_running for job in self._jobs.values()):
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="A sync is already running"
                )

            sync_id = f"sync-{int(time.time() * 1000)}"
            suffix = 1
            while sync_id in self._jobs:
                suffix += 1
                sync_id = f"sync-{int(time.time() * 1000)}-{suffix}"
            job = SyncJob(sync_id, options)
            # Marked running on creation so a second start is rejected before the task begins
            job.is_running = True
            job.started_at = datetime.now(timezone.utc)
            self._jobs[sync_id] = job
            self._latest_id = sync_id
            self._prune()
            return job

    def _prune(self) -> None:
        finished = sorted(
            (job for job in self._jobs.values() if not job.is_running),
            key=lambda job: job.started_at
        )
        for job in finished[:max(0, len(finished) - MAX_FINISHED_JOBS)]:
            del self._jobs[job.sync_id]

    def get(self, sync_id: str) -> Optional[SyncJob]:
        return self._jobs.get(sync_id)

    def latest(self) -> Optional[SyncJob]:
        return self._jobs.get(self._latest_id) if self._latest_id else None

    def is_running(self) -> bool:
        return any(job.is_running for job in self._jobs.values())


class SyncService:
    """Pages the store by id and bulk-upserts documents into the index"""

    def __init__(self, session_factory: Callable[[], Session], index: SearchIndexGateway,
                 registry: SyncJobRegistry):
        self.session_factory = session_factory
        self.index = index
        self.registry = registry

    def start(self, options: Optional[SyncOptions] = None) -> SyncJob:
        """Register a job; the caller schedules run(job.sync_id)"""
        return self.registry.create(options or SyncOptions(batch_size=SYNC_BATCH_SIZE))

    def get_status(self, sync_id: Optional[str] = None) -> Dict:
        """
        Status of a sync job (latest when sync_id is None)

        Raises:
            HTTPException: 404 if no such job
        """
        job = self.registry.get(sync_id) if sync_id else self.registry.latest()
        if job is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Sync job not found" if sync_id else "No sync has been started"
            )
        return job.to_status()

    @staticmethod
    def _aggregate_ratings(db: Session, movie_ids: List[int]) -> Dict[int, Tuple[float, int]]:
        """avg/count per movie straight from the ratings table"""
        rows = db.query(
            Rating.movie_id,
            func.avg(Rating.stars),
            func.count(Rating.id)
        ).filter(
            Rating.movie_id.in_(movie_ids)
        ).group_by(Rating.movie_id).all()

        return {
            movie_id: (round(float(average), 2), int(count))
            for movie_id, average, count in rows
        }

    def run(self, sync_id: str) -> SyncJob:
        """
        Execute a registered sync job to completion

        Bulk failures are recorded on the job and the run moves on to the
        next page. Any other failure ends the run with an error.
        """
        job = self.registry.get(sync_id)
        if job is None:
            raise ValueError(f"Unknown sync job {sync_id}")

        options = job.options
        job.is_running = True
        start_time = datetime.now()
        db = self.session_factory()

        try:
            if options.delete_existing:
                job.current_operation = "Clearing index"
                self.index.clear_index()
            else:
                self.index.ensure_index()

            job.total_records = db.query(func.count(Movie.id)).scalar() or 0
            logger.info(f"[{sync_id}] Starting sync of {job.total_records} movies "
                        f"(batch {options.batch_size}, ratings {options.sync_ratings})")

            last_id = 0
            batch_number = 0
            while True:
                movies = db.query(Movie).options(
                    selectinload(Movie.casts).selectinload(MovieCast.actor)
                ).filter(
                    Movie.id > last_id
                ).order_by(Movie.id.asc()).limit(options.batch_size).all()

                if not movies:
                    break

                batch_number += 1
                last_id = movies[-1].id
                job.current_operation = f"Indexing batch {batch_number}"

                aggregates = {}
                if options.sync_ratings:
                    aggregates = self._aggregate_ratings(db, [movie.id for movie in movies])

                documents = []
                for movie in movies:
                    if options.sync_ratings:
                        average, count = aggregates.get(movie.id, (0.0, 0))
                        documents.append(self.index.to_document(movie, average, count))
                    else:
                        documents.append(self.index.to_document(movie))

                try:
                    self.index.bulk_upsert(documents)
                except BulkIndexError as e:
                    job.failed_documents += len(e.failed_positions)
                    failed_ids = [documents[pos]["id"] for pos in e.failed_positions if pos < len(documents)]
                    job.record_error(f"Batch {batch_number}: {e} (ids {', '.join(failed_ids)})")

                job.processed_records += len(movies)
                # Drop loaded movies before the next page
                db.expunge_all()

            elapsed = (datetime.now() - start_time).total_seconds()
            job.current_operation = "Completed" if not job.errors else "Completed with errors"
            logger.info(f"[{sync_id}] ✓ Completed in {elapsed:.2f}s - "
                        f"{job.processed_records} processed, {job.failed_documents} failed")

        except Exception as e:
            job.current_operation = "Failed"
            job.record_error(f"Sync failed: {e}")

        finally:
            job.is_running = False
            job.finished_at = datetime.now(timezone.utc)
            db.close()

        return job

    def check_and_sync(self) -> Optional[str]:
        """
        Startup/reconcile check: full sync when the index is missing or its
        document count differs from the store

        Returns:
            Sync id of the run that was executed, or None if nothing was needed
        """
        created = self.index.ensure_index()

        db = self.session_factory()
        try:
            store_count = db.query(func.count(Movie.id)).scalar() or 0
        finally:
            db.close()

        if created:
            reason = "index created"
        else:
            index_count = self.index.count()
            if index_count == store_count:
                logger.info(f"Search index in sync ({index_count} documents)")
                return None
            reason = f"count mismatch (index {index_count}, store {store_count})"

        if self.registry.is_running():
            logger.info(f"Sync needed ({reason}) but one is already running")
            return None

        logger.info(f"Starting full sync: {reason}")
        job = self.start(SyncOptions(batch_size=SYNC_BATCH_SIZE))
        self.run(job.sync_id)
        return job.sync_id


sync_registry = SyncJobRegistry()
sync_service = SyncService(get_session_factory(), search_index, sync_registry)


def get_sync_service() -> SyncService:
    return sync_service
