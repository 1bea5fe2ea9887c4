"""
Scheduler Service for UniClaim.
Runs post expiry, ghost conversation cleanup and write queue flushes using APScheduler.
"""

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from apscheduler.triggers.cron import CronTrigger
from datetime import datetime, timezone
import logging
import atexit

logger = logging.getLogger(__name__)


class UniclaimScheduler:
    """
    Background scheduler for maintenance tasks.
    One instance per application, built with the services it drives.
    """

    def __init__(self, post_service, integrity_service, store, scheduler=None):
        self.post_service = post_service
        self.integrity_service = integrity_service
        self.store = store
        self.scheduler = scheduler or BackgroundScheduler(
            timezone='UTC',
            job_defaults={
                'coalesce': True,  # Run a missed job once, not once per missed slot
                'max_instances': 1,
                'misfire_grace_time': 300  # 5 minutes grace period for missed jobs
            }
        )
        self.is_running = False

        # Register shutdown handler
        atexit.register(self.shutdown)

    def start(self):
        """Start the scheduler and add all jobs."""
        if self.is_running:
            return
        try:
            self.add_jobs()
            self.scheduler.start()
            self.is_running = True

            logger.info("✅ UniClaim Scheduler started successfully")
            for job in self.scheduler.get_jobs():
                logger.info(f"   - {job.name}: {job.trigger}")
        except Exception as e:
            logger.error(f"❌ Failed to start scheduler: {str(e)}")
            raise

    def add_jobs(self):
        # Daily at 2:00 AM UTC to avoid peak usage hours
        self.scheduler.add_job(
            func=self.expire_posts_job,
            trigger=CronTrigger(hour=2, minute=0),
            id='expire_inactive_posts',
            name='Move expired posts to unclaimed',
            replace_existing=True
        )
        self.scheduler.add_job(
            func=self.cleanup_ghost_conversations_job,
            trigger=IntervalTrigger(hours=1),
            id='cleanup_ghost_conversations',
            name='Remove conversations of resolved or missing posts',
            replace_existing=True
        )
        self.scheduler.add_job(
            func=self.flush_write_queue_job,
            trigger=IntervalTrigger(seconds=30),
            id='flush_write_queue',
            name='Flush queued store writes',
            replace_existing=True
        )
        logger.info("📋 Added maintenance jobs")

    def expire_posts_job(self):
        try:
            logger.info("🔄 Starting post expiry run...")
            start_time = datetime.now(timezone.utc)
            result = self.post_service.expire_inactive_posts()
            duration = (datetime.now(timezone.utc) - start_time).total_seconds()
            logger.info(f"📊 Moved {result.get('updated_count', 0)} posts to unclaimed in {duration:.2f} seconds")
            for post in result.get('updated_posts', []):
                logger.info(f"   - {post['title']} (ID: {post['id']})")
            if result.get('failed'):
                logger.error(f"❌ Failed to expire posts: {result['failed']}")
            return result
        except Exception as e:
            logger.error(f"❌ Error in post expiry job: {str(e)}")

    def cleanup_ghost_conversations_job(self):
        try:
            result = self.integrity_service.cleanup_ghost_conversations()
            if result.get('deleted_count'):
                logger.info(f"🗑️ Removed {result['deleted_count']} ghost conversations")
            return result
        except Exception as e:
            logger.error(f"❌ Error in ghost conversation cleanup job: {str(e)}")

    def flush_write_queue_job(self):
        try:
            return self.store.flush()
        except Exception as e:
            logger.error(f"❌ Error flushing write queue: {str(e)}")

    def get_job_status(self, job_id):
        """Get status of a specific job."""
        job = self.scheduler.get_job(job_id)
        if not job:
            return None
        return {
            'id': job.id,
            'name': job.name,
            'next_run': job.next_run_time,
            'trigger': str(job.trigger)
        }

    def shutdown(self):
        """Shutdown the scheduler gracefully."""
        if self.is_running:
            try:
                self.scheduler.shutdown(wait=True)
                self.is_running = False
                logger.info("🛑 UniClaim Scheduler shutdown successfully")
            except Exception as e:
                logger.error(f"❌ Error during scheduler shutdown: {str(e)}")
