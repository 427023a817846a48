"""
Scheduled daily digest job.
Runs the daily pipeline for every user with a profile once per day.
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger

from mailbrief.config import Settings
from mailbrief.pipeline import EmailDigestPipeline

JOB_ID = "mailbrief_daily_digest"


class DailyDigestJob:
    """
    Cron-driven cycle over all profiled users.
    Users are processed in small concurrent batches; one user's failure never stops the cycle.
    """

    def __init__(self, pipeline: EmailDigestPipeline, settings: Settings) -> None:
        self.pipeline = pipeline
        self.settings = settings
        self.scheduler: Optional[BackgroundScheduler] = None
        self._cycle_lock = threading.Lock()

    def start(self) -> None:
        """Start the background scheduler (no-op if already running)."""
        if self.scheduler and self.scheduler.running:
            logger.info("Scheduler already running")
            return

        scheduler = BackgroundScheduler()
        scheduler.add_job(
            self.run_cycle,
            trigger=CronTrigger(hour=self.settings.DAILY_RUN_HOUR, minute=self.settings.DAILY_RUN_MINUTE),
            id=JOB_ID,
            name="MailBrief Daily Digest",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=3600,
        )
        scheduler.start()
        self.scheduler = scheduler
        logger.info(
            f"Daily digest scheduled at {self.settings.DAILY_RUN_HOUR:02d}:{self.settings.DAILY_RUN_MINUTE:02d}"
        )

    def stop(self, wait: bool = True) -> None:
        if not self.scheduler or not self.scheduler.running:
            logger.info("Scheduler was not running")
            return
        logger.info("Stopping scheduler...")
        self.scheduler.shutdown(wait=wait)
        self.scheduler = None
        logger.info("Scheduler stopped")

    @property
    def running(self) -> bool:
        return bool(self.scheduler and self.scheduler.running)

    def next_run_time(self) -> Optional[datetime]:
        if not self.scheduler:
            return None
        job = self.scheduler.get_job(JOB_ID)
        return job.next_run_time if job else None

    def eligible_users(self, now: Optional[datetime] = None) -> list[str]:
        """Profiled users without a daily digest since local midnight."""
        midnight = (now or datetime.now()).replace(hour=0, minute=0, second=0, microsecond=0)
        store = self.pipeline.local_store
        return [
            user_id
            for user_id in store.list_profiled_users()
            if not store.has_digest_since(user_id, midnight, digest_type="daily")
        ]

    def _process_user(self, user_id: str) -> str:
        try:
            result = self.pipeline.process_daily_emails(user_id)
        except Exception as e:
            logger.exception(f"Daily digest failed for user {user_id}: {e}")
            return "failed"
        return "completed" if result.status == "completed" else "skipped"

    def run_cycle(self) -> Optional[dict]:
        """
        Run one daily digest cycle.

        Returns:
            Cycle stats (processed, skipped, failed, eligible), or None if a cycle
            was already running.
        """
        if not self._cycle_lock.acquire(blocking=False):
            logger.warning("Daily digest cycle is already running, skipping this tick")
            return None

        started = time.time()
        stats = {"processed": 0, "skipped": 0, "failed": 0, "eligible": 0}
        try:
            users = self.eligible_users()
            stats["eligible"] = len(users)
            if not users:
                logger.info("No users are due for a daily digest")
                return stats

            batch_size = self.settings.JOB_USER_BATCH_SIZE
            logger.info(f"Starting daily digest cycle for {len(users)} users")
            with ThreadPoolExecutor(max_workers=batch_size, thread_name_prefix="digest-job") as executor:
                for start in range(0, len(users), batch_size):
                    batch = users[start: start + batch_size]
                    logger.info(f"Processing batch {start // batch_size + 1} ({len(batch)} users)")

                    for outcome in executor.map(self._process_user, batch):
                        key = "processed" if outcome == "completed" else outcome
                        stats[key] += 1

                    if start + batch_size < len(users) and self.settings.JOB_BATCH_DELAY_SECONDS > 0:
                        time.sleep(self.settings.JOB_BATCH_DELAY_SECONDS)

            logger.info(f"Daily digest cycle finished in {time.time() - started:.1f}s: {stats}")
            return stats
        finally:
            self._cycle_lock.release()
