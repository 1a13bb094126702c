"""
Periodic purge of stale staging directories.

Staged files of failed jobs are kept for operator inspection; this janitor
removes job directories under STAGING_DIR once they are older than the
retention window.
"""

import shutil
import time
from pathlib import Path
from typing import List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from core.config import settings
import logging

logger = logging.getLogger(__name__)


class StagingJanitor:
    def __init__(
        self,
        staging_dir: Optional[str] = None,
        retention_hours: Optional[int] = None,
        interval_minutes: Optional[int] = None
    ):
        self.staging_dir = Path(staging_dir or settings.STAGING_DIR)
        self.retention_seconds = (
            retention_hours if retention_hours is not None else settings.STAGING_RETENTION_HOURS
        ) * 3600
        self.interval_minutes = interval_minutes or settings.STAGING_SWEEP_MINUTES
        self.scheduler = AsyncIOScheduler()

    def sweep(self, now: Optional[float] = None) -> List[str]:
        """Remove expired job directories; returns the removed job ids."""
        if not self.staging_dir.is_dir():
            return []

        now = now if now is not None else time.time()
        removed = []
        for job_dir in sorted(self.staging_dir.iterdir()):
            if not job_dir.is_dir():
                continue
            age = now - job_dir.stat().st_mtime
            if age < self.retention_seconds:
                continue
            try:
                shutil.rmtree(job_dir)
                removed.append(job_dir.name)
            except OSError as e:
                logger.error(f"Janitor: failed to remove {job_dir}: {e}")

        if removed:
            logger.info(f"Janitor: removed {len(removed)} stale staging directories")
        return removed

    async def run_sweep(self):
        """Job entry point for the scheduler"""
        self.sweep()

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            self.run_sweep,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id="staging_janitor",
            replace_existing=True
        )
        self.scheduler.start()
        logger.info("Staging janitor started")

    def stop(self):
        if self.scheduler.running:
            self.scheduler.shutdown()
        logger.info("Staging janitor stopped")
