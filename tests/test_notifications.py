from datetime import timedelta

from sqlalchemy import select

from rolebatch.db_models import NotificationDelivery, utc_now
from rolebatch.notifications import ROLE_CHANGED_TEMPLATE, TEMPORARY_ROLE_TEMPLATE, NotificationDispatcher
from rolebatch.run_store import create_run
from rolebatch.schemas import Role, RunOptions, TemporaryAssignment
from support.fakes import validated


def teacher_items(record_store):
    return [validated(subject, Role.TEACHER) for subject in record_store.subjects.values()]


def test_each_success_is_notified_once(executor, record_store, notifier, session_factory) -> None:
    record_store.rejected_ids.add("u5")
    run = executor.execute(teacher_items(record_store), RunOptions(), initiated_by="admin-1")

    NotificationDispatcher(session_factory, notifier).notify_run(run.run_id)

    assert [subject_id for subject_id, _, _ in notifier.sent] == ["u1", "u2", "u3", "u4"]
    _, template, context = notifier.sent[0]
    assert template == ROLE_CHANGED_TEMPLATE
    assert context["previous_role"] == "student"
    assert context["new_role"] == "teacher"
    assert context["initiated_by"] == "admin-1"


def test_send_failures_are_recorded_not_raised(executor, record_store, notifier, session_factory) -> None:
    notifier.failing_subjects.add("u2")
    run = executor.execute(teacher_items(record_store), RunOptions(), initiated_by="admin-1")

    NotificationDispatcher(session_factory, notifier).notify_run(run.run_id)

    with session_factory() as db:
        deliveries = db.execute(select(NotificationDelivery).order_by(NotificationDelivery.id)).scalars().all()
    assert len(deliveries) == 5
    failed = [delivery for delivery in deliveries if delivery.status == "failed"]
    assert [delivery.subject_id for delivery in failed] == ["u2"]
    assert "rejected" in failed[0].error
    assert len(notifier.sent) == 4


def test_temporary_assignments_use_their_own_template(executor, record_store, notifier, session_factory) -> None:
    expires_at = utc_now() + timedelta(days=1)
    run = executor.execute(
        teacher_items(record_store)[:1],
        RunOptions(),
        initiated_by="admin-1",
        temporary=TemporaryAssignment(is_temporary=True, expires_at=expires_at),
    )

    NotificationDispatcher(session_factory, notifier).notify_run(run.run_id)

    _, template, context = notifier.sent[0]
    assert template == TEMPORARY_ROLE_TEMPLATE
    assert context["expires_at"] == expires_at.isoformat()


def test_unfinished_and_dry_runs_send_nothing(executor, record_store, notifier, session_factory) -> None:
    with session_factory() as db:
        pending = create_run(db, initiated_by="admin-1", options=RunOptions(), total_items=1)
    dry_run = executor.execute(teacher_items(record_store), RunOptions(validate_only=True), initiated_by="admin-1")

    dispatcher = NotificationDispatcher(session_factory, notifier)
    dispatcher.notify_run(pending.id)
    dispatcher.notify_run(dry_run.run_id)

    assert notifier.sent == []
