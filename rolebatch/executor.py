from collections.abc import Callable, Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
import logging

from sqlalchemy.orm import Session, sessionmaker

from rolebatch.config import Settings
from rolebatch.db_models import BulkRun, ItemOutcomeRecord, utc_now
from rolebatch.errors import StoreUnavailableError
from rolebatch.ports import AuditEntry, AuditSink, PolicyOracle, PolicyVerdict, RecordStore, UpdateResult
from rolebatch.retry import RetryExhaustedError, run_with_retries
from rolebatch.run_store import (
    checkpoint_batch,
    create_run,
    finalize_outcome,
    finish_run,
    get_run,
    insert_pending_outcomes,
    mark_run_failed,
    mark_run_processing,
    terminal_subject_ids,
    to_snapshot,
)
from rolebatch.schemas import (
    ErrorCode,
    ErrorType,
    FailedOutcome,
    Outcome,
    Role,
    RunOptions,
    RunSnapshot,
    SkippedOutcome,
    SuccessOutcome,
    TemporaryAssignment,
    ValidatedItem,
    ValidationReport,
)


logger = logging.getLogger(__name__)

CheckpointHook = Callable[[RunSnapshot], None]


def partition(items: Sequence[ValidatedItem], batch_size: int) -> Iterator[Sequence[ValidatedItem]]:
    for start in range(0, len(items), batch_size):
        yield items[start : start + batch_size]


class BatchExecutor:
    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        *,
        record_store: RecordStore,
        policy_oracle: PolicyOracle,
        audit_sink: AuditSink,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.record_store = record_store
        self.policy_oracle = policy_oracle
        self.audit_sink = audit_sink

    def start_run(
        self,
        valid_items: Sequence[ValidatedItem],
        options: RunOptions,
        *,
        initiated_by: str,
        target_role: Role | None = None,
        org_unit_id: str | None = None,
        justification: str | None = None,
        temporary: TemporaryAssignment | None = None,
        report: ValidationReport | None = None,
    ) -> int:
        with self.session_factory() as db:
            run = create_run(
                db,
                initiated_by=initiated_by,
                options=options,
                total_items=len(valid_items),
                target_role=target_role,
                org_unit_id=org_unit_id,
                justification=justification,
                temporary=temporary,
                report=report,
            )
            logger.info("run created", extra={"run_id": run.id, "total_items": run.total_items})
            return run.id

    def execute(
        self,
        valid_items: Sequence[ValidatedItem],
        options: RunOptions,
        *,
        initiated_by: str,
        run_id: int | None = None,
        target_role: Role | None = None,
        org_unit_id: str | None = None,
        justification: str | None = None,
        temporary: TemporaryAssignment | None = None,
        report: ValidationReport | None = None,
        on_checkpoint: CheckpointHook | None = None,
    ) -> RunSnapshot:
        """Apply validated items in fixed-size batches and return the finished run.

        Item failures never abort the run; they become ``failed`` outcomes. Raises
        ``StoreUnavailableError`` only when the record store cannot be reached
        before the first batch; a run created beforehand is then marked failed.
        """
        if valid_items:
            try:
                self._probe_store(valid_items[0])
            except StoreUnavailableError as exc:
                if run_id is not None:
                    with self.session_factory() as db:
                        mark_run_failed(db, get_run(db, run_id), error=str(exc))
                raise

        if run_id is None:
            run_id = self.start_run(
                valid_items,
                options,
                initiated_by=initiated_by,
                target_role=target_role,
                org_unit_id=org_unit_id,
                justification=justification,
                temporary=temporary,
                report=report,
            )

        with self.session_factory() as db:
            run = get_run(db, run_id)
            if not valid_items:
                finish_run(db, run)
                logger.info("empty run completed", extra={"run_id": run.id})
                return to_snapshot(run)

            expires_at = run.expires_at if run.is_temporary else None
            actor = run.initiated_by
            reason = run.justification
            mark_run_processing(db, run)

            unsaved: list[tuple[ItemOutcomeRecord, Outcome]] = []
            try:
                sequence = 0
                for batch_number, batch in enumerate(partition(valid_items, options.batch_size), start=1):
                    records = insert_pending_outcomes(db, run_id=run.id, items=batch, start_sequence=sequence)
                    sequence += len(batch)

                    outcomes = self._apply_batch(batch, options, expires_at=expires_at)
                    unsaved = list(zip(records, outcomes))
                    for record, outcome in unsaved:
                        finalize_outcome(record, outcome)
                    checkpoint_batch(db, run, outcomes)
                    unsaved = []

                    self._audit_successes(run, batch, outcomes, actor=actor, reason=reason)
                    logger.info(
                        "batch checkpointed",
                        extra={
                            "run_id": run.id,
                            "batch": batch_number,
                            "processed_items": run.processed_items,
                            "total_items": run.total_items,
                        },
                    )
                    if on_checkpoint:
                        try:
                            on_checkpoint(to_snapshot(run))
                        except Exception:
                            logger.exception("checkpoint hook failed", extra={"run_id": run.id, "batch": batch_number})

                finish_run(db, run)
            except Exception as exc:
                mark_run_failed(db, run, error=str(exc), unsaved=unsaved)
                logger.exception("bulk run aborted", extra={"run_id": run.id})
                return to_snapshot(run)

            logger.info(
                "bulk run finished",
                extra={
                    "run_id": run.id,
                    "status": run.status,
                    "success_count": run.success_count,
                    "failure_count": run.failure_count,
                    "skipped_count": run.skipped_count,
                },
            )
            return to_snapshot(run)

    def remaining_items(self, run_id: int, items: Sequence[ValidatedItem]) -> list[ValidatedItem]:
        """Items of ``items`` that have no terminal outcome in ``run_id``, in order."""
        with self.session_factory() as db:
            get_run(db, run_id)
            done = terminal_subject_ids(db, run_id)
        return [item for item in items if item.resolved_subject_id not in done]

    def _probe_store(self, item: ValidatedItem) -> None:
        try:
            run_with_retries(
                lambda: self.record_store.find_by_ids([item.resolved_subject_id]),
                max_retries=self.settings.max_call_retries,
                backoff_seconds=self.settings.retry_backoff_seconds,
            )
        except RetryExhaustedError as exc:
            raise StoreUnavailableError(f"record store unreachable: {exc}") from exc
        except Exception as exc:
            raise StoreUnavailableError(f"record store probe failed: {exc!r}") from exc

    def _apply_batch(
        self,
        batch: Sequence[ValidatedItem],
        options: RunOptions,
        *,
        expires_at: datetime | None,
    ) -> list[Outcome]:
        def apply(item: ValidatedItem) -> Outcome:
            return self._apply_item(item, options, expires_at=expires_at)

        if self.settings.item_workers <= 1 or len(batch) <= 1:
            return [apply(item) for item in batch]

        # map keeps validation order and joins every worker before the checkpoint
        with ThreadPoolExecutor(max_workers=self.settings.item_workers) as pool:
            return list(pool.map(apply, batch))

    def _apply_item(self, item: ValidatedItem, options: RunOptions, *, expires_at: datetime | None) -> Outcome:
        subject_id = item.resolved_subject_id
        if item.is_noop:
            return SkippedOutcome(subject_id, item.current_role, item.target_role, ErrorCode.SAME_ROLE)
        if item.requires_approval and options.hold_for_approval:
            return SkippedOutcome(subject_id, item.current_role, item.target_role, ErrorCode.APPROVAL_REQUIRED)

        try:
            verdict: PolicyVerdict = self._call(
                lambda: self.policy_oracle.check_transition(
                    subject_id, item.current_role, item.target_role, item.org_unit_id
                )
            )
            if not verdict.allowed:
                return FailedOutcome(
                    subject_id,
                    item.current_role,
                    item.target_role,
                    ErrorCode.POLICY_VIOLATION,
                    verdict.reason or "transition no longer allowed",
                    ErrorType.POLICY,
                )
        except RetryExhaustedError as exc:
            return self._system_failure(item, ErrorCode.POLICY_UNAVAILABLE, exc)
        except Exception as exc:
            return self._unexpected_failure(item, exc)

        if options.validate_only:
            return SkippedOutcome(subject_id, item.current_role, item.target_role, ErrorCode.DRY_RUN)

        try:
            result: UpdateResult = self._call(
                lambda: self.record_store.update_role(subject_id, item.current_role, item.target_role)
            )
        except RetryExhaustedError as exc:
            return self._system_failure(item, ErrorCode.STORE_UNAVAILABLE, exc)
        except Exception as exc:
            return self._unexpected_failure(item, exc)

        if result.ok:
            return SuccessOutcome(subject_id, item.current_role, item.target_role, utc_now(), expires_at)

        code = result.error_code or ErrorCode.STORE_ERROR
        logger.warning(
            "item update rejected by record store",
            extra={"subject_id": subject_id, "error_code": code.value},
        )
        return FailedOutcome(
            subject_id,
            item.current_role,
            item.target_role,
            code,
            result.error_message or code.value,
            ErrorType.EXECUTION,
            retryable=code is ErrorCode.CONCURRENT_MODIFICATION,
        )

    def _call(self, fn):
        return run_with_retries(
            fn,
            max_retries=self.settings.max_call_retries,
            backoff_seconds=self.settings.retry_backoff_seconds,
        )

    def _system_failure(self, item: ValidatedItem, code: ErrorCode, exc: RetryExhaustedError) -> FailedOutcome:
        logger.warning(
            "item failed after retries",
            extra={"subject_id": item.resolved_subject_id, "attempts": exc.attempts, "error": str(exc)},
        )
        return FailedOutcome(
            item.resolved_subject_id,
            item.current_role,
            item.target_role,
            code,
            f"gave up after {exc.attempts} attempts: {exc}",
            ErrorType.SYSTEM,
            retryable=True,
        )

    def _unexpected_failure(self, item: ValidatedItem, exc: Exception) -> FailedOutcome:
        logger.warning(
            "item failed with unexpected error",
            extra={"subject_id": item.resolved_subject_id, "error": repr(exc)},
        )
        return FailedOutcome(
            item.resolved_subject_id,
            item.current_role,
            item.target_role,
            ErrorCode.SYSTEM_ERROR,
            str(exc) or exc.__class__.__name__,
            ErrorType.SYSTEM,
            retryable=False,
        )

    def _audit_successes(
        self,
        run: BulkRun,
        batch: Sequence[ValidatedItem],
        outcomes: Sequence[Outcome],
        *,
        actor: str,
        reason: str | None,
    ) -> None:
        for item, outcome in zip(batch, outcomes):
            if not isinstance(outcome, SuccessOutcome):
                continue
            entry = AuditEntry(
                run_id=run.id,
                subject_id=outcome.subject_id,
                from_role=outcome.previous_role,
                to_role=outcome.target_role,
                actor_id=actor,
                justification=item.justification or reason or "Bulk assignment",
                timestamp=outcome.applied_at,
                details={
                    "requires_approval": item.requires_approval,
                    "approver_role": item.approver_role.value if item.approver_role else None,
                    "expires_at": outcome.expires_at.isoformat() if outcome.expires_at else None,
                },
            )
            try:
                self.audit_sink.record(entry)
            except Exception:
                logger.exception("audit record failed", extra={"run_id": run.id, "subject_id": outcome.subject_id})

