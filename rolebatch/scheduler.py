import logging

from apscheduler.schedulers.blocking import BlockingScheduler
from sqlalchemy.orm import Session, sessionmaker

from rolebatch.adapters import SqlAuditSink, SqlRecordStore
from rolebatch.config import Settings
from rolebatch.expiry import ExpirySweeper


logger = logging.getLogger(__name__)


def build_sweeper(settings: Settings, session_factory: sessionmaker[Session]) -> ExpirySweeper:
    return ExpirySweeper(
        settings,
        session_factory,
        record_store=SqlRecordStore(session_factory),
        audit_sink=SqlAuditSink(session_factory),
    )


def _run_expiry_sweep(settings: Settings, session_factory: sessionmaker[Session]) -> None:
    result = build_sweeper(settings, session_factory).expire_due()
    if result.failed:
        logger.error(
            "scheduled expiry sweep had failures",
            extra={"processed": result.processed, "expired": result.expired, "failed": result.failed},
        )
        return
    logger.info(
        "scheduled expiry sweep completed",
        extra={"processed": result.processed, "expired": result.expired},
    )


def build_scheduler(settings: Settings, session_factory: sessionmaker[Session]) -> BlockingScheduler:
    scheduler = BlockingScheduler(timezone="UTC")
    scheduler.add_job(
        _run_expiry_sweep,
        "interval",
        args=[settings, session_factory],
        minutes=settings.expiry_sweep_minutes,
        id="temporary_role_expiry",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    return scheduler


def start_scheduler(settings: Settings, session_factory: sessionmaker[Session], *, run_now: bool = False) -> None:
    scheduler = build_scheduler(settings, session_factory)
    logger.info("scheduler started", extra={"expiry_sweep_minutes": settings.expiry_sweep_minutes})

    if run_now:
        _run_expiry_sweep(settings, session_factory)

    scheduler.start()
