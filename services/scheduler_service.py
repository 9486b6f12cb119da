"""Scheduler service - runs periodic verification of every protected item"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from core.config import ScheduleConfig

logger = logging.getLogger(__name__)


def _parse_time(value: str) -> Tuple[int, int]:
    """Parse HH:MM, falling back to 03:00 on bad input."""
    try:
        hour, minute = map(int, str(value).split(":"))
        if 0 <= hour <= 23 and 0 <= minute <= 59:
            return hour, minute
    except (ValueError, AttributeError):
        pass
    logger.warning(f"Invalid schedule time '{value}', using 03:00")
    return 3, 0


def build_trigger(config: ScheduleConfig) -> Tuple[CronTrigger, str]:
    """Build the cron trigger and a description for a schedule config.

    Raises:
        ValueError: For an invalid custom cron expression.
    """
    if config.frequency == "custom":
        return CronTrigger.from_crontab(config.cron_expression), f"cron: {config.cron_expression}"

    hour, minute = _parse_time(config.time)
    at = f"{hour:02d}:{minute:02d}"
    if config.frequency == "daily":
        return CronTrigger(hour=hour, minute=minute), f"daily at {at}"
    if config.frequency == "monthly":
        day = config.day_of_month if isinstance(config.day_of_month, int) and 1 <= config.day_of_month <= 31 else 1
        return CronTrigger(day=day, hour=hour, minute=minute), f"monthly on day {day} at {at}"
    return (CronTrigger(day_of_week=config.day_of_week, hour=hour, minute=minute),
            f"weekly on {config.day_of_week} at {at}")


class SchedulerService:
    """Service for scheduling `verify all` runs"""

    JOB_ID = "par2protect_scheduled_verify"

    def __init__(self, config: ScheduleConfig, verify_all: Callable[[bool], Any]):
        self._scheduler = BackgroundScheduler(
            job_defaults={
                'coalesce': True,  # Combine missed runs into one
                'max_instances': 1,  # Only one instance at a time
                'misfire_grace_time': 60 * 60,  # 1 hour grace time for missed jobs
            }
        )
        self._config = config
        self._verify_all = verify_all
        self._last_run: Optional[datetime] = None
        self._next_run: Optional[datetime] = None
        self._started = False

    @property
    def config(self) -> ScheduleConfig:
        return self._config

    def start(self):
        """Start the scheduler"""
        if self._started:
            return
        self._scheduler.start()
        self._started = True
        if self._config.enabled:
            self._apply_schedule()
        logger.info("Scheduler service started")

    def stop(self):
        """Stop the scheduler"""
        if self._started:
            self._scheduler.shutdown(wait=False)
            self._started = False
            logger.info("Scheduler service stopped")

    def _run_scheduled_job(self) -> Any:
        """Queue verification of every protected item"""
        logger.info("Starting scheduled verification")
        self._last_run = datetime.now()
        try:
            return self._verify_all(self._config.force)
        except Exception:
            logger.exception("Scheduled verification failed")
            return None

    def _apply_schedule(self):
        """Apply the current schedule configuration"""
        if self._scheduler.get_job(self.JOB_ID):
            self._scheduler.remove_job(self.JOB_ID)
            self._next_run = None

        if not self._config.enabled:
            logger.info("Schedule disabled")
            return

        try:
            trigger, schedule_desc = build_trigger(self._config)
        except ValueError as e:
            logger.error(f"Failed to apply schedule: {e}")
            return

        self._scheduler.add_job(
            self._run_scheduled_job,
            trigger=trigger,
            id=self.JOB_ID,
            name="PAR2Protect Scheduled Verification",
            replace_existing=True,
        )
        job = self._scheduler.get_job(self.JOB_ID)
        if job:
            self._next_run = job.next_run_time

        logger.info(f"Schedule enabled: {schedule_desc}")
        if self._next_run:
            logger.info(f"Next scheduled verification: {self._next_run.strftime('%Y-%m-%d %H:%M:%S')}")

    def run_now(self) -> Any:
        """Trigger a verification run immediately, outside the schedule"""
        return self._run_scheduled_job()

    def get_status(self) -> Dict[str, Any]:
        """Get scheduler status"""
        job = self._scheduler.get_job(self.JOB_ID) if self._started else None
        next_run = job.next_run_time if job else None
        description = "Disabled"
        if self._config.enabled:
            try:
                trigger, description = build_trigger(self._config)
                if next_run is None and not self._started:
                    next_run = trigger.get_next_fire_time(None, datetime.now().astimezone())
            except ValueError as e:
                description = f"Invalid schedule: {e}"
        return {
            "enabled": self._config.enabled,
            "running": self._started,
            "frequency": self._config.frequency,
            "schedule_description": description,
            "next_run": next_run.isoformat() if next_run else None,
            "last_run": self._last_run.isoformat() if self._last_run else None,
        }

    @staticmethod
    def validate_cron(expression: str) -> Dict[str, Any]:
        """Validate a cron expression and preview its next runs"""
        try:
            trigger = CronTrigger.from_crontab(expression)
        except ValueError as e:
            return {"valid": False, "message": str(e), "next_runs": []}

        next_runs = []
        base = datetime.now().astimezone()
        for _ in range(3):
            next_time = trigger.get_next_fire_time(None, base)
            if not next_time:
                break
            next_runs.append(next_time.strftime("%Y-%m-%d %H:%M"))
            base = next_time + timedelta(seconds=1)
        return {"valid": True, "message": "Valid cron expression", "next_runs": next_runs}
