from datetime import datetime
import logging

from sqlalchemy.orm import Session, sessionmaker

from rolebatch.config import Settings
from rolebatch.db_models import utc_now
from rolebatch.ports import AuditEntry, AuditSink, RecordStore
from rolebatch.rollback import revert_role
from rolebatch.run_store import due_temporary_outcomes, record_expiration
from rolebatch.schemas import AssignmentError, ErrorType, ExpiryResult, Role


logger = logging.getLogger(__name__)

EXPIRY_ACTOR = "system:temporary-expiry"


class ExpirySweeper:
    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        *,
        record_store: RecordStore,
        audit_sink: AuditSink,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.record_store = record_store
        self.audit_sink = audit_sink

    def expire_due(self, now: datetime | None = None) -> ExpiryResult:
        now = now or utc_now()
        errors: list[AssignmentError] = []
        expired = 0

        with self.session_factory() as db:
            due = due_temporary_outcomes(db, now=now)
            for outcome in due:
                error = revert_role(
                    self.record_store,
                    outcome,
                    max_retries=self.settings.max_call_retries,
                    backoff_seconds=self.settings.retry_backoff_seconds,
                )
                if error is not None:
                    # only outages are retried; a role changed since assignment is left alone
                    retryable = error.retryable and error.error_type is ErrorType.SYSTEM
                    logger.warning(
                        "temporary role expiry failed",
                        extra={"run_id": outcome.run_id, "subject_id": outcome.subject_id, "error_code": error.error_code},
                    )
                    record_expiration(
                        db,
                        outcome=outcome,
                        ok=False,
                        retryable=retryable,
                        error_code=error.error_code,
                        error_message=error.error_message,
                    )
                    errors.append(error)
                    continue

                record_expiration(db, outcome=outcome, ok=True)
                expired += 1
                try:
                    self.audit_sink.record(
                        AuditEntry(
                            run_id=outcome.run_id,
                            subject_id=outcome.subject_id,
                            from_role=Role(outcome.target_role),
                            to_role=Role(outcome.previous_role),
                            actor_id=EXPIRY_ACTOR,
                            justification="temporary assignment expired",
                            timestamp=now,
                            is_rollback=True,
                            details={"expired_at": outcome.expires_at.isoformat() if outcome.expires_at else None},
                        )
                    )
                except Exception:
                    logger.exception("expiry audit record failed", extra={"subject_id": outcome.subject_id})

        logger.info("expiry sweep finished", extra={"processed": len(due), "expired": expired, "failed": len(errors)})
        return ExpiryResult(processed=len(due), expired=expired, failed=len(errors), errors=errors)
