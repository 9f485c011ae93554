from collections.abc import Sequence
import logging

from sqlalchemy.orm import Session, sessionmaker

from rolebatch.config import Settings
from rolebatch.db_models import ItemOutcomeRecord, utc_now
from rolebatch.executor import partition
from rolebatch.ports import AuditEntry, AuditSink, RecordStore
from rolebatch.retry import RetryExhaustedError, run_with_retries
from rolebatch.run_store import (
    claim_rollback,
    expired_outcome_ids,
    get_run,
    list_outcomes,
    mark_run_rolled_back,
    record_rollback_result,
    release_rollback,
)
from rolebatch.schemas import (
    AssignmentError,
    ErrorCode,
    ErrorType,
    OutcomeKind,
    Role,
    RollbackResult,
)


logger = logging.getLogger(__name__)


def revert_role(
    record_store: RecordStore,
    outcome: ItemOutcomeRecord,
    *,
    max_retries: int,
    backoff_seconds: float,
) -> AssignmentError | None:
    """Put one subject back on the role it held before ``outcome`` was applied."""
    try:
        result = run_with_retries(
            lambda: record_store.update_role(
                outcome.subject_id, Role(outcome.target_role), Role(outcome.previous_role)
            ),
            max_retries=max_retries,
            backoff_seconds=backoff_seconds,
        )
    except RetryExhaustedError as exc:
        return AssignmentError(
            subject_id=outcome.subject_id,
            error_code=ErrorCode.STORE_UNAVAILABLE.value,
            error_message=f"gave up after {exc.attempts} attempts: {exc}",
            error_type=ErrorType.SYSTEM,
            retryable=True,
        )
    except Exception as exc:
        return AssignmentError(
            subject_id=outcome.subject_id,
            error_code=ErrorCode.SYSTEM_ERROR.value,
            error_message=str(exc) or exc.__class__.__name__,
            error_type=ErrorType.SYSTEM,
            retryable=False,
        )

    if result.ok:
        return None
    code = result.error_code or ErrorCode.STORE_ERROR
    return AssignmentError(
        subject_id=outcome.subject_id,
        error_code=code.value,
        error_message=result.error_message or code.value,
        error_type=ErrorType.EXECUTION,
        retryable=code is ErrorCode.CONCURRENT_MODIFICATION,
    )


class RollbackCoordinator:
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

    def rollback(self, run_id: int, initiated_by: str, reason: str) -> RollbackResult:
        """Revert every ``success`` outcome of a finished run.

        The run is claimed before any revert, so only one caller proceeds, and
        it becomes ``rolledBack`` when the pass completes. Per-item store
        failures are recorded and do not stop the remaining reverts.
        Raises ``InvalidRunStateError`` for runs that are not completed or failed.
        """
        with self.session_factory() as db:
            run = get_run(db, run_id)
            claim_rollback(db, run, initiated_by=initiated_by, reason=reason)

            try:
                # temporary assignments that already expired hold their previous role again
                expired = expired_outcome_ids(db, run_id)
                successes = [
                    outcome
                    for outcome in list_outcomes(db, run_id, kind=OutcomeKind.SUCCESS)
                    if outcome.id not in expired
                ]
                errors = self._revert_all(db, run_id, successes)
                rolled_back = len(successes) - len(errors)
                mark_run_rolled_back(db, run)
            except Exception:
                release_rollback(db, run)
                raise

        self._audit(run_id, initiated_by=initiated_by, reason=reason, rolled_back=rolled_back, failed=len(errors))
        logger.info(
            "run rolled back",
            extra={"run_id": run_id, "rolled_back_count": rolled_back, "failed_count": len(errors)},
        )
        return RollbackResult(run_id=run_id, rolled_back_count=rolled_back, failed_count=len(errors), errors=errors)

    def _revert_all(self, db: Session, run_id: int, successes: Sequence[ItemOutcomeRecord]) -> list[AssignmentError]:
        errors: list[AssignmentError] = []
        for batch in partition(successes, self.settings.default_batch_size):
            for outcome in batch:
                error = revert_role(
                    self.record_store,
                    outcome,
                    max_retries=self.settings.max_call_retries,
                    backoff_seconds=self.settings.retry_backoff_seconds,
                )
                if error is None:
                    record_rollback_result(db, run_id=run_id, outcome=outcome, ok=True)
                    continue
                logger.warning(
                    "rollback of item failed",
                    extra={"run_id": run_id, "subject_id": outcome.subject_id, "error_code": error.error_code},
                )
                record_rollback_result(
                    db,
                    run_id=run_id,
                    outcome=outcome,
                    ok=False,
                    error_code=error.error_code,
                    error_message=error.error_message,
                )
                errors.append(error)
            db.commit()
        return errors

    def _audit(self, run_id: int, *, initiated_by: str, reason: str, rolled_back: int, failed: int) -> None:
        entry = AuditEntry(
            run_id=run_id,
            subject_id=None,
            from_role=None,
            to_role=None,
            actor_id=initiated_by,
            justification=reason,
            timestamp=utc_now(),
            is_rollback=True,
            details={"rolled_back_count": rolled_back, "failed_count": failed},
        )
        try:
            self.audit_sink.record(entry)
        except Exception:
            logger.exception("rollback audit record failed", extra={"run_id": run_id})
