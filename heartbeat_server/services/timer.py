# heartbeat_server/services/timer.py
import logging
import threading

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from dataflows.exceptions import ClaimError
from heartbeat_server.conf import HeartbeatSettings
from heartbeat_server.services.dispatcher import run_cycle

logger = logging.getLogger(__name__)

HEARTBEAT_JOB_ID = "heartbeat"

# Global scheduler
_scheduler: BackgroundScheduler | None = None
_scheduler_lock = threading.Lock()


def _heartbeat_job(settings: HeartbeatSettings) -> None:
    """Timer-triggered heartbeat cycle. Cycle-level errors are logged, not raised."""
    try:
        run_cycle(max_workers=settings.max_workers, claim_ttl_seconds=settings.claim_ttl_seconds)
    except ClaimError as e:
        logger.error("Heartbeat cycle failed: %s", e)
    except Exception as e:
        logger.error("Error in heartbeat timer: %s", e, exc_info=True)


def start_heartbeat_timer(settings: HeartbeatSettings) -> BackgroundScheduler | None:
    """Start the in-process heartbeat timer if an interval is configured."""
    global _scheduler

    if settings.heartbeat_interval_seconds <= 0:
        logger.info("In-process heartbeat timer disabled")
        return None

    with _scheduler_lock:
        if _scheduler is not None:
            logger.warning("Heartbeat timer already running")
            return _scheduler

        scheduler = BackgroundScheduler(timezone="UTC")
        scheduler.add_job(
            func=_heartbeat_job,
            trigger=IntervalTrigger(seconds=settings.heartbeat_interval_seconds),
            args=[settings],
            id=HEARTBEAT_JOB_ID,
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.start()
        _scheduler = scheduler
        logger.info("Heartbeat timer started (every %ss)", settings.heartbeat_interval_seconds)
        return scheduler


def stop_heartbeat_timer() -> None:
    """Stop the heartbeat timer."""
    global _scheduler

    with _scheduler_lock:
        if _scheduler is None:
            return

        _scheduler.shutdown(wait=False)
        _scheduler = None
        logger.info("Heartbeat timer stopped")
