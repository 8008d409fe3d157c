"""
Background Jobs Service for catalog maintenance
Watches the rating stream backlog and reconciles the search index with the store

Features:
- Scheduled jobs using APScheduler
- Configurable timezone
- Job monitoring and statistics
- Pause/resume and manual trigger from the admin routes
- Error handling and logging
"""

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from datetime import datetime
import logging
import os
from typing import Dict
from pytz import timezone

from app.services.rating_events import event_publisher
from app.services.sync_service import sync_service

logger = logging.getLogger(__name__)

RATING_PENDING_WARN_THRESHOLD = int(os.getenv("RATING_PENDING_WARN_THRESHOLD", 100))


class BackgroundJobService:
    """
    Manages scheduled maintenance jobs

    Jobs:
    - Monitor rating stream backlog (every minute)
    - Reconcile search index with the store (daily at 3 AM)

    Usage:
        jobs = BackgroundJobService()
        jobs.start()  # Start all scheduled jobs
        jobs.shutdown()  # Stop all jobs gracefully
    """

    def __init__(self, publisher=event_publisher, syncer=sync_service):
        """Initialize scheduler with timezone configuration"""
        tz_name = os.getenv("TIMEZONE", "UTC")
        self.timezone = timezone(tz_name)
        self.scheduler = BackgroundScheduler(timezone=self.timezone)
        self.publisher = publisher
        self.syncer = syncer

        # Track job execution statistics
        self.job_stats = {
            'monitor_rating_stream': {'last_run': None, 'status': 'idle', 'error': None, 'result': None},
            'reconcile_search_index': {'last_run': None, 'status': 'idle', 'error': None, 'result': None}
        }

    def start(self):
        """
        Start all scheduled background jobs

        Jobs are only started if ENABLE_BACKGROUND_JOBS=true in environment
        """
        if os.getenv("ENABLE_BACKGROUND_JOBS", "true").lower() != "true":
            logger.info("Background jobs disabled via ENABLE_BACKGROUND_JOBS environment variable")
            return

        # Job 1: Watch the rating stream backlog every minute
        self.scheduler.add_job(
            func=self.monitor_rating_stream,
            trigger=IntervalTrigger(minutes=1, timezone=self.timezone),
            id='monitor_rating_stream',
            name='Monitor rating stream backlog',
            replace_existing=True,
            max_instances=1  # Prevent concurrent runs
        )
        logger.info("✓ Scheduled: Monitor rating stream (every minute)")

        # Job 2: Reconcile search index daily at 3 AM
        self.scheduler.add_job(
            func=self.reconcile_search_index,
            trigger=CronTrigger(hour=3, minute=0, timezone=self.timezone),
            id='reconcile_search_index',
            name='Reconcile search index with store',
            replace_existing=True,
            max_instances=1
        )
        logger.info("✓ Scheduled: Reconcile search index (daily 3:00 AM)")

        self.scheduler.start()
        logger.info("=" * 60)
        logger.info("Background jobs started successfully")
        logger.info(f"   Timezone: {self.timezone}")
        logger.info(f"   Active jobs: {len(self.scheduler.get_jobs())}")
        logger.info("=" * 60)

    def shutdown(self):
        """Shutdown scheduler gracefully"""
        if self.scheduler.running:
            self.scheduler.shutdown(wait=True)
            logger.info("Background jobs stopped gracefully")

    def get_job_stats(self) -> Dict:
        """
        Get statistics for all jobs including next run times

        Returns:
            Dict with job information and execution history
        """
        jobs_info = []
        scheduled = {job.id: job for job in self.scheduler.get_jobs()}
        for job_id, stats in self.job_stats.items():
            job = scheduled.get(job_id)
            jobs_info.append({
                'id': job_id,
                'name': job.name if job else job_id,
                'next_run': job.next_run_time.isoformat() if job and job.next_run_time else None,
                'last_run': stats.get('last_run'),
                'status': stats.get('status', 'idle'),
                'error': stats.get('error'),
                'result': stats.get('result')
            })

        return {
            'scheduler_running': self.scheduler.running,
            'timezone': str(self.timezone),
            'jobs': jobs_info
        }

    # ============================================
    # Main Job Methods
    # ============================================

    def _run_job(self, job_id: str, func):
        """Run one job body with status bookkeeping and timing"""
        self.job_stats[job_id]['status'] = 'running'
        self.job_stats[job_id]['error'] = None
        start_time = datetime.now()

        try:
            result = func()
            elapsed = (datetime.now() - start_time).total_seconds()
            logger.info(f"[{job_id}] ✓ Completed in {elapsed:.2f}s")

            self.job_stats[job_id]['status'] = 'success'
            self.job_stats[job_id]['result'] = result

        except Exception as e:
            elapsed = (datetime.now() - start_time).total_seconds()
            error_msg = str(e)

            logger.error(f"[{job_id}] ✗ Failed after {elapsed:.2f}s: {error_msg}")

            self.job_stats[job_id]['status'] = 'failed'
            self.job_stats[job_id]['error'] = error_msg

        finally:
            self.job_stats[job_id]['last_run'] = datetime.now().isoformat()

    def monitor_rating_stream(self):
        """
        Log the consumer group's pending count and warn when it grows
        past RATING_PENDING_WARN_THRESHOLD (a sign of poison or stuck events)
        """
        job_id = 'monitor_rating_stream'

        def check():
            pending = self.publisher.pending_count()
            length = self.publisher.stream_length()
            if pending > RATING_PENDING_WARN_THRESHOLD:
                logger.warning(
                    f"[{job_id}] {pending} rating events pending "
                    f"(threshold {RATING_PENDING_WARN_THRESHOLD})"
                )
            else:
                logger.info(f"[{job_id}] {pending} pending, stream length {length}")
            return {'pending': pending, 'stream_length': length}

        self._run_job(job_id, check)

    def reconcile_search_index(self):
        """
        Full sync when the index is missing or its document count drifted
        from the store
        """
        job_id = 'reconcile_search_index'

        def reconcile():
            sync_id = self.syncer.check_and_sync()
            return {'sync_id': sync_id}

        self._run_job(job_id, reconcile)

    def run_job_now(self, job_id: str) -> bool:
        """
        Run a job immediately in the calling thread

        Returns:
            False if the job id is unknown
        """
        jobs = {
            'monitor_rating_stream': self.monitor_rating_stream,
            'reconcile_search_index': self.reconcile_search_index,
        }
        job = jobs.get(job_id)
        if job is None:
            return False
        logger.info(f"Manually triggering job: {job_id}")
        job()
        return True

    def pause_job(self, job_id: str):
        """Pause a scheduled job"""
        self.scheduler.pause_job(job_id)
        logger.info(f"⏸ Paused job: {job_id}")

    def resume_job(self, job_id: str):
        """Resume a paused job"""
        self.scheduler.resume_job(job_id)
        logger.info(f"▶ Resumed job: {job_id}")


# Global singleton instance
background_jobs = BackgroundJobService()
