from datetime import datetime, timedelta
import json
import math

from sqlalchemy.orm import Session, sessionmaker

from rolebatch.config import Settings
from rolebatch.db_models import BulkRun, utc_now
from rolebatch.run_store import assignment_error, get_run, list_outcomes, to_snapshot
from rolebatch.schemas import ErrorCode, OutcomeKind, RunStatus, RunStatusView, RunSummary


def progress_percent(processed_items: int, total_items: int) -> float:
    if total_items <= 0:
        return 0.0
    return round(processed_items / total_items * 100, 2)


def batch_counts(run: BulkRun) -> tuple[int, int]:
    """Return (current_batch, total_batches) for a run."""
    total_batches = math.ceil(run.total_items / run.batch_size) if run.total_items else 0
    completed = math.ceil(run.processed_items / run.batch_size) if run.processed_items else 0
    if run.status == RunStatus.PROCESSING.value:
        return min(completed + 1, total_batches), total_batches
    return completed, total_batches


class OutcomeAggregator:
    def __init__(self, settings: Settings, session_factory: sessionmaker[Session]) -> None:
        self.settings = settings
        self.session_factory = session_factory

    def status(self, run_id: int, *, now: datetime | None = None) -> RunStatusView:
        with self.session_factory() as db:
            run = get_run(db, run_id)
            failed = list_outcomes(db, run_id, kind=OutcomeKind.FAILED)
            current_batch, total_batches = batch_counts(run)

            estimated_completion = None
            if run.status == RunStatus.PROCESSING.value:
                remaining = run.total_items - run.processed_items
                estimated_completion = (now or utc_now()) + timedelta(
                    seconds=remaining * self.settings.seconds_per_item
                )

            return RunStatusView(
                run_id=run.id,
                status=RunStatus(run.status),
                processed_items=run.processed_items,
                total_items=run.total_items,
                progress_percent=progress_percent(run.processed_items, run.total_items),
                current_batch=current_batch,
                total_batches=total_batches,
                estimated_completion=estimated_completion,
                errors=[assignment_error(record) for record in failed],
            )

    def summary(self, run_id: int) -> RunSummary:
        with self.session_factory() as db:
            run = get_run(db, run_id)
            errors = [assignment_error(record) for record in list_outcomes(db, run_id, kind=OutcomeKind.FAILED)]
            issues = json.loads(run.validation_issues or "{}")

            duration = None
            if run.completed_at is not None:
                duration = (run.completed_at - run.started_at).total_seconds()

            return RunSummary(
                run=to_snapshot(run),
                conflicts=[error for error in errors if error.error_code == ErrorCode.CONCURRENT_MODIFICATION.value],
                errors=errors,
                validation_errors=issues.get("errors", []),
                validation_warnings=issues.get("warnings", []),
                duration_seconds=duration,
            )
