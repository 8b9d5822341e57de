"""
Scheduler Module

Runs the daily fine accrual and ban expiry sweep on cron triggers. Both jobs
and their manual triggers share one lock, so they never overlap.
"""

import threading
from typing import Any, Dict, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from .accrual import AccrualResult, FineAccrualEngine
from .bans import BanEnforcer
from .config import LibraryFinesConfig, get_config
from .logging_config import get_logger


ACCRUAL_JOB_ID = "fine-accrual"
BAN_SWEEP_JOB_ID = "ban-expiry-sweep"


class FineScheduler:
    """Cron-driven runner for the accrual job and the ban expiry sweep"""

    def __init__(
        self,
        accrual_engine: FineAccrualEngine,
        ban_enforcer: BanEnforcer,
        config: Optional[LibraryFinesConfig] = None,
        scheduler: Optional[BackgroundScheduler] = None
    ):
        self.accrual_engine = accrual_engine
        self.ban_enforcer = ban_enforcer
        self.config = config or get_config()
        self.scheduler = scheduler or BackgroundScheduler(timezone=self.config.scheduler_timezone)
        self.logger = get_logger("library_fines.scheduler")
        self._job_lock = threading.Lock()

    def start(self) -> None:
        self.scheduler.add_job(
            self._accrual_job,
            trigger=CronTrigger(
                hour=self.config.accrual_hour,
                minute=self.config.accrual_minute,
                timezone=self.config.scheduler_timezone
            ),
            id=ACCRUAL_JOB_ID,
            name="Daily fine accrual",
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        self.scheduler.add_job(
            self._ban_sweep_job,
            trigger=CronTrigger(
                hour=self.config.ban_sweep_hour,
                minute=self.config.ban_sweep_minute,
                timezone=self.config.scheduler_timezone
            ),
            id=BAN_SWEEP_JOB_ID,
            name="Daily ban expiry sweep",
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )
        self.scheduler.start()
        self.logger.info(
            f"Scheduler started: accrual at {self.config.accrual_hour:02d}:{self.config.accrual_minute:02d}, "
            f"ban sweep at {self.config.ban_sweep_hour:02d}:{self.config.ban_sweep_minute:02d} "
            f"({self.config.scheduler_timezone})"
        )

    def shutdown(self, wait: bool = True) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            self.logger.info("Scheduler stopped")

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def run_accrual(self) -> AccrualResult:
        """Run the accrual job now, waiting for any job already running"""
        with self._job_lock:
            return self.accrual_engine.run()

    def run_ban_sweep(self) -> List[str]:
        """Run the ban expiry sweep now, waiting for any job already running"""
        with self._job_lock:
            return self.ban_enforcer.sweep_expired()

    def jobs(self) -> List[Dict[str, Any]]:
        return [
            {
                'id': job.id,
                'name': job.name,
                'next_run_time': job.next_run_time.isoformat() if getattr(job, 'next_run_time', None) else None
            }
            for job in self.scheduler.get_jobs()
        ]

    def _accrual_job(self) -> None:
        # Scheduled runs have no caller to report to
        try:
            self.run_accrual()
        except Exception as e:
            self.logger.exception(f"Scheduled fine accrual failed: {e}")

    def _ban_sweep_job(self) -> None:
        try:
            self.run_ban_sweep()
        except Exception as e:
            self.logger.exception(f"Scheduled ban sweep failed: {e}")
