"""
Security Scheduler — runs in its own process, never inside a request path.

Jobs:
1. Kill-switch auto-trigger check (every 5 minutes)
2. Kill-switch expiry cleanup (every minute)
3. Alert escalation sweep (every minute)
4. Behavior profile rebuild (nightly)
5. Employee baseline refresh (nightly, after the profile rebuild)
"""

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from trustgate.alerting.service import AlertingService
from trustgate.behavior.profiler import BehaviorProfiler
from trustgate.config import settings
from trustgate.employees.detector import EmployeeAnomalyDetector
from trustgate.killswitch.service import KillSwitchService

logger = structlog.get_logger(__name__)


class SecurityScheduler:
    """
    Background sweeps for the security layer.

    Every job is isolated: an exception is logged and the next run
    happens on schedule.
    """

    def __init__(
        self,
        kill_switch: KillSwitchService,
        alerting: AlertingService,
        profiler: BehaviorProfiler,
        employees: EmployeeAnomalyDetector,
    ):
        self.kill_switch = kill_switch
        self.alerting = alerting
        self.profiler = profiler
        self.employees = employees
        self.scheduler = AsyncIOScheduler()

    def start(self):
        """Register and start all scheduled jobs."""
        self.scheduler.add_job(
            self.check_auto_triggers,
            IntervalTrigger(minutes=settings.auto_trigger_interval_minutes),
            id="kill_switch_auto_triggers",
            max_instances=1,
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.cleanup_kill_switches,
            IntervalTrigger(minutes=settings.killswitch_cleanup_interval_minutes),
            id="kill_switch_cleanup",
            max_instances=1,
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.process_escalations,
            IntervalTrigger(minutes=settings.escalation_interval_minutes),
            id="alert_escalations",
            max_instances=1,
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.rebuild_profiles,
            CronTrigger(hour=settings.profile_rebuild_hour, minute=0),
            id="behavior_profile_rebuild",
            max_instances=1,
            replace_existing=True,
        )
        self.scheduler.add_job(
            self.refresh_baselines,
            CronTrigger(hour=settings.profile_rebuild_hour, minute=30),
            id="employee_baseline_refresh",
            max_instances=1,
            replace_existing=True,
        )
        self.scheduler.start()
        logger.info("security_scheduler_started")

    def stop(self):
        """Gracefully stop the scheduler."""
        self.scheduler.shutdown(wait=True)
        logger.info("security_scheduler_stopped")

    async def check_auto_triggers(self) -> list[str]:
        try:
            return await self.kill_switch.check_auto_triggers()
        except Exception as e:
            logger.error("auto_trigger_check_failed", error=str(e))
            return []

    async def cleanup_kill_switches(self) -> int:
        try:
            return await self.kill_switch.cleanup_expired()
        except Exception as e:
            logger.error("kill_switch_cleanup_failed", error=str(e))
            return 0

    async def process_escalations(self) -> int:
        try:
            return await self.alerting.process_escalations()
        except Exception as e:
            logger.error("escalation_sweep_failed", error=str(e))
            return 0

    async def rebuild_profiles(self) -> dict:
        logger.info("behavior_profile_rebuild_started")
        try:
            return await self.profiler.update_all_profiles()
        except Exception as e:
            logger.error("behavior_profile_rebuild_failed", error=str(e))
            return {"updated": 0, "failed": 0}

    async def refresh_baselines(self) -> dict:
        logger.info("employee_baseline_refresh_started")
        try:
            return await self.employees.refresh_all_baselines()
        except Exception as e:
            logger.error("employee_baseline_refresh_failed", error=str(e))
            return {"refreshed": 0, "failed": 0}
