from collections.abc import Sequence
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
import logging

from sqlalchemy.orm import Session, sessionmaker

from rolebatch.aggregator import OutcomeAggregator
from rolebatch.config import Settings
from rolebatch.db_models import utc_now
from rolebatch.executor import BatchExecutor, CheckpointHook
from rolebatch.notifications import NotificationDispatcher
from rolebatch.parser import candidates_from_identifiers, parse
from rolebatch.ports import AuditSink, Notifier, PolicyOracle, RecordStore
from rolebatch.rollback import RollbackCoordinator
from rolebatch.run_store import get_run, mark_run_failed, to_snapshot
from rolebatch.schemas import (
    ParseResult,
    Role,
    RollbackResult,
    RunOptions,
    RunSnapshot,
    RunStatus,
    RunStatusView,
    RunSummary,
    TemporaryAssignment,
    ValidatedItem,
    ValidationContext,
    ValidationReport,
)
from rolebatch.validator import Validator


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SubmissionRequest:
    initiated_by: str
    target_role: Role | None = None
    subject_identifiers: Sequence[str] | None = None
    raw_payload: object = None
    source_format: str = "csv"
    org_unit_id: str | None = None
    justification: str | None = None
    temporary: TemporaryAssignment = TemporaryAssignment()
    options: RunOptions = field(default_factory=RunOptions)
    background: bool = False


@dataclass(frozen=True)
class SubmissionResult:
    parse: ParseResult
    validation: ValidationReport | None = None
    run_id: int | None = None
    run: RunSnapshot | None = None
    accepted: bool = False


class BulkRoleRunner:
    def __init__(
        self,
        settings: Settings,
        session_factory: sessionmaker[Session],
        *,
        record_store: RecordStore,
        policy_oracle: PolicyOracle,
        audit_sink: AuditSink,
        notifier: Notifier,
    ) -> None:
        self.settings = settings
        self.session_factory = session_factory
        self.validator = Validator(
            record_store,
            policy_oracle,
            max_retries=settings.max_call_retries,
            backoff_seconds=settings.retry_backoff_seconds,
        )
        self.executor = BatchExecutor(
            settings,
            session_factory,
            record_store=record_store,
            policy_oracle=policy_oracle,
            audit_sink=audit_sink,
        )
        self.aggregator = OutcomeAggregator(settings, session_factory)
        self.rollback_coordinator = RollbackCoordinator(
            settings,
            session_factory,
            record_store=record_store,
            audit_sink=audit_sink,
        )
        self.dispatcher = NotificationDispatcher(session_factory, notifier)
        self._background = ThreadPoolExecutor(max_workers=1, thread_name_prefix="rolebatch-run")
        self._pending: dict[int, Future[RunSnapshot | None]] = {}

    def submit(self, request: SubmissionRequest, *, on_checkpoint: CheckpointHook | None = None) -> SubmissionResult:
        """Parse, validate and execute one bulk request.

        Payload-level parse errors and run-level validation errors return an
        unaccepted result with no run. Large or ``background`` requests return
        as soon as the run exists; poll ``status`` for progress.
        """
        parsed = self._parse(request)
        if parsed.fatal:
            logger.warning(
                "submission rejected at parse",
                extra={"initiated_by": request.initiated_by, "errors": len(parsed.errors)},
            )
            return SubmissionResult(parse=parsed)

        context = ValidationContext(
            initiated_by=request.initiated_by,
            now=utc_now(),
            org_unit_id=request.org_unit_id,
            temporary=request.temporary,
            skip_duplicates=request.options.skip_duplicates,
        )
        report = self.validator.validate(parsed.items, context)
        if report.run_errors:
            logger.warning(
                "submission rejected at validation",
                extra={"initiated_by": request.initiated_by, "code": report.run_errors[0].code.value},
            )
            return SubmissionResult(parse=parsed, validation=report)

        run_kwargs = {
            "initiated_by": request.initiated_by,
            "target_role": request.target_role,
            "org_unit_id": request.org_unit_id,
            "justification": request.justification,
            "temporary": request.temporary,
            "report": report,
        }

        if request.background or len(report.valid) > self.settings.sync_item_limit:
            run_id = self.executor.start_run(report.valid, request.options, **run_kwargs)
            self._pending[run_id] = self._background.submit(
                self._run_in_background, report.valid, request.options, run_id, run_kwargs, on_checkpoint
            )
            logger.info("run handed to background worker", extra={"run_id": run_id, "items": len(report.valid)})
            return SubmissionResult(parse=parsed, validation=report, run_id=run_id, accepted=True)

        snapshot = self._execute_and_notify(
            report.valid, request.options, run_id=None, run_kwargs=run_kwargs, on_checkpoint=on_checkpoint
        )
        return SubmissionResult(parse=parsed, validation=report, run_id=snapshot.run_id, run=snapshot, accepted=True)

    def wait(self, run_id: int, timeout: float | None = None) -> RunSnapshot | None:
        """Block until a background run finishes; ``None`` for runs not queued by this runner."""
        future = self._pending.get(run_id)
        if future is None:
            return None
        return future.result(timeout=timeout)

    def close(self) -> None:
        self._background.shutdown(wait=True)

    def status(self, run_id: int) -> RunStatusView:
        return self.aggregator.status(run_id)

    def summary(self, run_id: int) -> RunSummary:
        return self.aggregator.summary(run_id)

    def rollback(self, run_id: int, initiated_by: str, reason: str) -> RollbackResult:
        return self.rollback_coordinator.rollback(run_id, initiated_by, reason)

    def remaining_items(self, run_id: int, items: Sequence[ValidatedItem]) -> list[ValidatedItem]:
        return self.executor.remaining_items(run_id, items)

    def _parse(self, request: SubmissionRequest) -> ParseResult:
        if request.subject_identifiers is not None:
            if request.target_role is None:
                raise ValueError("target_role is required when submitting subject identifiers")
            return candidates_from_identifiers(
                request.subject_identifiers,
                request.target_role,
                org_unit_id=request.org_unit_id,
                justification=request.justification,
                max_items=self.settings.max_items,
            )
        payload = request.raw_payload if request.raw_payload is not None else ""
        return parse(payload, request.source_format, max_items=self.settings.max_items)

    def _run_in_background(
        self,
        items: Sequence[ValidatedItem],
        options: RunOptions,
        run_id: int,
        run_kwargs: dict[str, object],
        on_checkpoint: CheckpointHook | None,
    ) -> RunSnapshot:
        try:
            return self._execute_and_notify(
                items, options, run_id=run_id, run_kwargs=run_kwargs, on_checkpoint=on_checkpoint
            )
        except Exception as exc:
            logger.exception("background run failed", extra={"run_id": run_id})
            with self.session_factory() as db:
                run = get_run(db, run_id)
                if RunStatus(run.status) in (RunStatus.PENDING, RunStatus.PROCESSING):
                    mark_run_failed(db, run, error=str(exc) or exc.__class__.__name__)
                return to_snapshot(run)

    def _execute_and_notify(
        self,
        items: Sequence[ValidatedItem],
        options: RunOptions,
        *,
        run_id: int | None,
        run_kwargs: dict[str, object],
        on_checkpoint: CheckpointHook | None,
    ) -> RunSnapshot:
        snapshot = self.executor.execute(items, options, run_id=run_id, on_checkpoint=on_checkpoint, **run_kwargs)
        if options.send_notifications and not options.validate_only and snapshot.status in (
            RunStatus.COMPLETED,
            RunStatus.FAILED,
        ):
            self.dispatcher.notify_run(snapshot.run_id)
        return snapshot
