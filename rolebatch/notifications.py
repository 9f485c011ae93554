import logging

from sqlalchemy.orm import Session, sessionmaker

from rolebatch.db_models import ItemOutcomeRecord
from rolebatch.ports import Notifier
from rolebatch.run_store import get_run, list_outcomes, record_notification, run_options
from rolebatch.schemas import OutcomeKind, RunStatus


logger = logging.getLogger(__name__)

ROLE_CHANGED_TEMPLATE = "role_changed"
TEMPORARY_ROLE_TEMPLATE = "temporary_role_assigned"


def template_for(outcome: ItemOutcomeRecord) -> str:
    return TEMPORARY_ROLE_TEMPLATE if outcome.expires_at is not None else ROLE_CHANGED_TEMPLATE


class NotificationDispatcher:
    def __init__(self, session_factory: sessionmaker[Session], notifier: Notifier) -> None:
        self.session_factory = session_factory
        self.notifier = notifier

    def notify_run(self, run_id: int) -> None:
        """Send one notification per successful item; send failures are recorded, never raised."""
        with self.session_factory() as db:
            run = get_run(db, run_id)
            if run.status not in (RunStatus.COMPLETED.value, RunStatus.FAILED.value):
                logger.warning("notifications skipped for unfinished run", extra={"run_id": run_id, "status": run.status})
                return
            if run_options(run).validate_only:
                return

            sent = failed = 0
            for outcome in list_outcomes(db, run_id, kind=OutcomeKind.SUCCESS):
                template_name = template_for(outcome)
                context = {
                    "run_id": run_id,
                    "previous_role": outcome.previous_role,
                    "new_role": outcome.target_role,
                    "expires_at": outcome.expires_at.isoformat() if outcome.expires_at else None,
                    "initiated_by": run.initiated_by,
                }
                try:
                    self.notifier.send(outcome.subject_id, template_name, context)
                except Exception as exc:
                    failed += 1
                    logger.warning(
                        "notification failed",
                        extra={"run_id": run_id, "subject_id": outcome.subject_id, "error": str(exc)},
                    )
                    record_notification(
                        db,
                        run_id=run_id,
                        subject_id=outcome.subject_id,
                        template_name=template_name,
                        status="failed",
                        error=str(exc) or exc.__class__.__name__,
                    )
                    continue
                sent += 1
                record_notification(
                    db,
                    run_id=run_id,
                    subject_id=outcome.subject_id,
                    template_name=template_name,
                    status="sent",
                )

            logger.info("notifications dispatched", extra={"run_id": run_id, "sent": sent, "failed": failed})
