from collections.abc import Sequence
from dataclasses import asdict
from datetime import datetime
import json

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from rolebatch.db_models import (
    BulkRun,
    ItemOutcomeRecord,
    NotificationDelivery,
    RollbackItemResult,
    TemporaryExpiration,
    utc_now,
)
from rolebatch.errors import InvalidRunStateError, RunNotFoundError
from rolebatch.schemas import (
    RUN_TRANSITIONS,
    AssignmentError,
    ErrorType,
    FailedOutcome,
    Outcome,
    OutcomeKind,
    Role,
    RunOptions,
    RunSnapshot,
    RunStatus,
    SkippedOutcome,
    SuccessOutcome,
    TemporaryAssignment,
    ValidatedItem,
    ValidationReport,
)


def serialize_report(report: ValidationReport | None) -> str:
    if report is None:
        return json.dumps({"errors": [], "warnings": []})
    return json.dumps(
        {
            "errors": [asdict(error) for error in report.errors],
            "warnings": [asdict(warning) for warning in report.warnings],
        },
        sort_keys=True,
    )


def create_run(
    db: Session,
    *,
    initiated_by: str,
    options: RunOptions,
    total_items: int,
    target_role: Role | None = None,
    org_unit_id: str | None = None,
    justification: str | None = None,
    temporary: TemporaryAssignment | None = None,
    report: ValidationReport | None = None,
) -> BulkRun:
    temporary = temporary or TemporaryAssignment()
    run = BulkRun(
        initiated_by=initiated_by,
        target_role=target_role.value if target_role else None,
        org_unit_id=org_unit_id,
        justification=justification,
        status=RunStatus.PENDING.value,
        total_items=total_items,
        processed_items=0,
        success_count=0,
        failure_count=0,
        skipped_count=0,
        batch_size=options.batch_size,
        options=json.dumps(options.to_dict(), sort_keys=True),
        is_temporary=temporary.is_temporary,
        expires_at=temporary.expires_at,
        validation_issues=serialize_report(report),
        started_at=utc_now(),
    )
    db.add(run)
    db.commit()
    db.refresh(run)
    return run


def get_run(db: Session, run_id: int) -> BulkRun:
    run = db.get(BulkRun, run_id)
    if run is None:
        raise RunNotFoundError(run_id)
    return run


def transition_run(db: Session, run: BulkRun, target: RunStatus) -> None:
    current = RunStatus(run.status)
    if target not in RUN_TRANSITIONS[current]:
        raise InvalidRunStateError(run.id, current.value, target.value)
    run.status = target.value
    if target in (RunStatus.COMPLETED, RunStatus.FAILED):
        run.completed_at = utc_now()
    db.commit()


def mark_run_processing(db: Session, run: BulkRun) -> None:
    transition_run(db, run, RunStatus.PROCESSING)


def finish_run(db: Session, run: BulkRun) -> None:
    # failed still means finished, with at least one failed item
    target = RunStatus.COMPLETED if run.failure_count == 0 else RunStatus.FAILED
    transition_run(db, run, target)


def mark_run_failed(
    db: Session,
    run: BulkRun,
    *,
    error: str,
    unsaved: Sequence[tuple[ItemOutcomeRecord, Outcome]] = (),
) -> None:
    """Abort a run, keeping outcomes that already reached the record store.

    ``unsaved`` pairs outcome rows with results that were applied but whose
    checkpoint never committed; they are written again after the rollback.
    """
    db.rollback()
    kept = []
    for record, outcome in unsaved:
        if record.outcome == OutcomeKind.PENDING.value:
            finalize_outcome(record, outcome)
            kept.append(outcome)
    _count_outcomes(run, kept)
    run.error = error

    status = RunStatus(run.status)
    if status is RunStatus.PENDING:
        transition_run(db, run, RunStatus.PROCESSING)
        status = RunStatus.PROCESSING
    if status is RunStatus.PROCESSING:
        transition_run(db, run, RunStatus.FAILED)
    else:
        db.commit()


def claim_rollback(db: Session, run: BulkRun, *, initiated_by: str, reason: str) -> None:
    """Reserve a finished run for one rollback; concurrent callers get ``InvalidRunStateError``."""
    finished = [status.value for status, targets in RUN_TRANSITIONS.items() if RunStatus.ROLLED_BACK in targets]
    claimed = db.execute(
        update(BulkRun)
        .where(BulkRun.id == run.id, BulkRun.status.in_(finished), BulkRun.rolled_back_by.is_(None))
        .values(rolled_back_at=utc_now(), rolled_back_by=initiated_by, rollback_reason=reason)
    ).rowcount
    db.commit()
    db.refresh(run)
    if claimed != 1:
        current = "rolling back" if run.status in finished else run.status
        raise InvalidRunStateError(run.id, current, RunStatus.ROLLED_BACK.value)


def release_rollback(db: Session, run: BulkRun) -> None:
    db.rollback()
    run.rolled_back_at = None
    run.rolled_back_by = None
    run.rollback_reason = None
    db.commit()


def mark_run_rolled_back(db: Session, run: BulkRun) -> None:
    run.rolled_back_at = utc_now()
    transition_run(db, run, RunStatus.ROLLED_BACK)


def insert_pending_outcomes(
    db: Session,
    *,
    run_id: int,
    items: Sequence[ValidatedItem],
    start_sequence: int,
) -> list[ItemOutcomeRecord]:
    records = [
        ItemOutcomeRecord(
            run_id=run_id,
            sequence=start_sequence + offset,
            subject_id=item.resolved_subject_id,
            subject_identifier=item.subject_identifier,
            previous_role=item.current_role.value,
            target_role=item.target_role.value,
            outcome=OutcomeKind.PENDING.value,
            requires_approval=item.requires_approval,
        )
        for offset, item in enumerate(items)
    ]
    db.add_all(records)
    db.commit()
    return records


def finalize_outcome(record: ItemOutcomeRecord, outcome: Outcome) -> None:
    if record.outcome != OutcomeKind.PENDING.value:
        raise ValueError(f"outcome {record.id} is already final ({record.outcome})")

    record.outcome = outcome.kind.value
    if isinstance(outcome, SuccessOutcome):
        record.previous_role = outcome.previous_role.value
        record.applied_at = outcome.applied_at
        record.expires_at = outcome.expires_at
    elif isinstance(outcome, FailedOutcome):
        record.error_code = outcome.error_code.value
        record.error_message = outcome.error_message
        record.error_type = outcome.error_type.value
        record.retryable = outcome.retryable
    elif isinstance(outcome, SkippedOutcome):
        record.error_code = outcome.reason_code.value


def checkpoint_batch(db: Session, run: BulkRun, outcomes: Sequence[Outcome]) -> None:
    """Persist one batch worth of final outcomes together with the run counters."""
    _count_outcomes(run, outcomes)
    db.commit()


def _count_outcomes(run: BulkRun, outcomes: Sequence[Outcome]) -> None:
    processed = run.processed_items + len(outcomes)
    if processed > run.total_items:
        raise ValueError(f"run {run.id} would process {processed} of {run.total_items} items")

    run.processed_items = processed
    run.success_count += sum(1 for outcome in outcomes if outcome.kind is OutcomeKind.SUCCESS)
    run.failure_count += sum(1 for outcome in outcomes if outcome.kind is OutcomeKind.FAILED)
    run.skipped_count += sum(1 for outcome in outcomes if outcome.kind is OutcomeKind.SKIPPED)


def list_outcomes(db: Session, run_id: int, *, kind: OutcomeKind | None = None) -> list[ItemOutcomeRecord]:
    stmt = select(ItemOutcomeRecord).where(ItemOutcomeRecord.run_id == run_id)
    if kind is not None:
        stmt = stmt.where(ItemOutcomeRecord.outcome == kind.value)
    return list(db.execute(stmt.order_by(ItemOutcomeRecord.sequence)).scalars().all())


def terminal_subject_ids(db: Session, run_id: int) -> set[str]:
    stmt = select(ItemOutcomeRecord.subject_id).where(
        ItemOutcomeRecord.run_id == run_id,
        ItemOutcomeRecord.outcome != OutcomeKind.PENDING.value,
    )
    return set(db.execute(stmt).scalars().all())


def assignment_error(record: ItemOutcomeRecord) -> AssignmentError:
    return AssignmentError(
        subject_id=record.subject_id,
        error_code=record.error_code or "",
        error_message=record.error_message or "",
        error_type=ErrorType(record.error_type) if record.error_type else ErrorType.EXECUTION,
        retryable=record.retryable,
    )


def record_rollback_result(
    db: Session,
    *,
    run_id: int,
    outcome: ItemOutcomeRecord,
    ok: bool,
    error_code: str | None = None,
    error_message: str | None = None,
) -> RollbackItemResult:
    result = RollbackItemResult(
        run_id=run_id,
        outcome_id=outcome.id,
        subject_id=outcome.subject_id,
        restored_role=outcome.previous_role,
        ok=ok,
        error_code=error_code,
        error_message=error_message,
    )
    db.add(result)
    return result


def record_notification(
    db: Session,
    *,
    run_id: int,
    subject_id: str,
    template_name: str,
    status: str,
    error: str | None = None,
) -> None:
    db.add(
        NotificationDelivery(
            run_id=run_id,
            subject_id=subject_id,
            template_name=template_name,
            status=status,
            error=error,
        )
    )
    db.commit()


def due_temporary_outcomes(db: Session, *, now: datetime) -> list[ItemOutcomeRecord]:
    # failed attempts that may succeed later stay due
    settled = select(TemporaryExpiration.outcome_id).where(TemporaryExpiration.retryable.is_(False))
    stmt = (
        select(ItemOutcomeRecord)
        .join(BulkRun, BulkRun.id == ItemOutcomeRecord.run_id)
        .where(
            ItemOutcomeRecord.outcome == OutcomeKind.SUCCESS.value,
            ItemOutcomeRecord.expires_at.is_not(None),
            ItemOutcomeRecord.expires_at <= now,
            BulkRun.status != RunStatus.ROLLED_BACK.value,
            ItemOutcomeRecord.id.not_in(settled),
        )
        .order_by(ItemOutcomeRecord.expires_at, ItemOutcomeRecord.id)
    )
    return list(db.execute(stmt).scalars().all())


def record_expiration(
    db: Session,
    *,
    outcome: ItemOutcomeRecord,
    ok: bool,
    retryable: bool = False,
    error_code: str | None = None,
    error_message: str | None = None,
) -> None:
    db.add(
        TemporaryExpiration(
            outcome_id=outcome.id,
            run_id=outcome.run_id,
            subject_id=outcome.subject_id,
            restored_role=outcome.previous_role,
            ok=ok,
            retryable=retryable,
            error_code=error_code,
            error_message=error_message,
            processed_at=utc_now(),
        )
    )
    db.commit()


def run_options(run: BulkRun) -> RunOptions:
    return RunOptions.from_mapping(json.loads(run.options))


def to_snapshot(run: BulkRun) -> RunSnapshot:
    return RunSnapshot(
        run_id=run.id,
        initiated_by=run.initiated_by,
        target_role=run.target_role,
        status=RunStatus(run.status),
        total_items=run.total_items,
        processed_items=run.processed_items,
        success_count=run.success_count,
        failure_count=run.failure_count,
        skipped_count=run.skipped_count,
        batch_size=run.batch_size,
        options=run_options(run),
        started_at=run.started_at,
        completed_at=run.completed_at,
        error=run.error,
    )


def expired_outcome_ids(db: Session, run_id: int) -> set[int]:
    stmt = select(TemporaryExpiration.outcome_id).where(
        TemporaryExpiration.run_id == run_id,
        TemporaryExpiration.ok.is_(True),
    )
    return set(db.execute(stmt).scalars().all())
