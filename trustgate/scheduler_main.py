"""
Scheduler Entry Point — runs in a separate process.

Usage:
    python -m trustgate.scheduler_main

This does NOT run a web server. It runs the APScheduler loop for the
kill-switch, escalation, profile and baseline sweeps.
"""

import asyncio
import signal

import structlog

from trustgate.alerting.presets import SecurityAlerts
from trustgate.alerting.service import AlertingService
from trustgate.behavior.profiler import BehaviorProfiler
from trustgate.config import settings
from trustgate.db.engine import close_db, get_session_factory, init_db
from trustgate.employees.detector import EmployeeAnomalyDetector
from trustgate.killswitch.service import KillSwitchService
from trustgate.logging_setup import configure_logging
from trustgate.services.cache import close_redis
from trustgate.services.scheduler import SecurityScheduler

logger = structlog.get_logger(__name__)


async def main():
    """Initialize and run the scheduler."""
    configure_logging()
    logger.info("scheduler_starting", version=settings.app_version)

    await init_db()
    session_factory = get_session_factory()

    alerting = AlertingService(session_factory)
    alerts = SecurityAlerts(alerting)
    scheduler = SecurityScheduler(
        kill_switch=KillSwitchService(session_factory, alerts=alerts),
        alerting=alerting,
        profiler=BehaviorProfiler(session_factory),
        employees=EmployeeAnomalyDetector(session_factory, alerts=alerts),
    )

    # Expired switches are cleared before the first interval elapses
    await scheduler.cleanup_kill_switches()

    scheduler.start()

    stop_event = asyncio.Event()

    def _handle_signal(signum, frame):
        logger.info("shutdown_signal_received", signal=signum)
        stop_event.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    logger.info("scheduler_running", msg="Waiting for jobs... Ctrl+C to stop.")

    await stop_event.wait()

    scheduler.stop()
    await close_redis()
    await close_db()
    logger.info("scheduler_shutdown_complete")


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
