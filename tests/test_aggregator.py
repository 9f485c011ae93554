from dataclasses import replace
from datetime import datetime, timedelta

from rolebatch.aggregator import OutcomeAggregator, progress_percent
from rolebatch.schemas import ErrorCode, IssueCode, Role, RunOptions, RunStatus, ValidationIssue, ValidationReport
from support.fakes import validated


def test_progress_percent_handles_empty_runs() -> None:
    assert progress_percent(0, 0) == 0.0
    assert progress_percent(1, 3) == 33.33
    assert progress_percent(5, 5) == 100.0


def test_status_while_processing_estimates_completion(executor, record_store, test_settings, session_factory) -> None:
    aggregator = OutcomeAggregator(test_settings, session_factory)
    now = datetime(2026, 3, 1, 9, 0)
    views = []
    items = [validated(subject, Role.TEACHER) for subject in record_store.subjects.values()]

    executor.execute(
        items,
        RunOptions(batch_size=2),
        initiated_by="admin-1",
        on_checkpoint=lambda snapshot: views.append(aggregator.status(snapshot.run_id, now=now)),
    )

    first = views[0]
    assert first.status is RunStatus.PROCESSING
    assert first.processed_items == 2
    assert first.total_batches == 3
    assert first.current_batch == 2
    assert first.progress_percent == 40.0
    assert first.estimated_completion == now + timedelta(seconds=3 * test_settings.seconds_per_item)
    assert views[-1].current_batch == 3


def test_status_of_finished_run_lists_item_errors(executor, record_store, test_settings, session_factory) -> None:
    record_store.rejected_ids.add("u2")
    items = [validated(subject, Role.TEACHER) for subject in record_store.subjects.values()]
    run = executor.execute(items, RunOptions(batch_size=2), initiated_by="admin-1")

    view = OutcomeAggregator(test_settings, session_factory).status(run.run_id)

    assert view.status is RunStatus.FAILED
    assert view.progress_percent == 100.0
    assert view.current_batch == view.total_batches == 3
    assert view.estimated_completion is None
    assert [error.subject_id for error in view.errors] == ["u2"]
    assert view.errors[0].error_code == ErrorCode.STORE_ERROR.value


def test_summary_separates_conflicts_and_keeps_validation_issues(
    executor, record_store, test_settings, session_factory
) -> None:
    stale = replace(record_store.subjects["u1"], role=Role.TEACHER)
    items = [validated(stale, Role.DEPARTMENT_ADMIN), validated(record_store.subjects["u2"], Role.TEACHER)]
    report = ValidationReport(
        valid=items,
        errors=[ValidationIssue(code=IssueCode.SUBJECT_NOT_FOUND, message="missing", row_number=4)],
        warnings=[ValidationIssue(code=IssueCode.DUPLICATE, message="dup", row_number=5)],
        affected_count=2,
    )
    run = executor.execute(items, RunOptions(), initiated_by="admin-1", report=report)

    summary = OutcomeAggregator(test_settings, session_factory).summary(run.run_id)

    assert summary.run.success_count == 1
    assert [conflict.subject_id for conflict in summary.conflicts] == ["u1"]
    assert len(summary.errors) == 1
    assert summary.validation_errors[0]["code"] == "SUBJECT_NOT_FOUND"
    assert summary.validation_warnings[0]["row_number"] == 5
    assert summary.duration_seconds is not None and summary.duration_seconds >= 0
