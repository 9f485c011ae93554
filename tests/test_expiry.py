from dataclasses import replace
from datetime import timedelta

import pytest

from rolebatch.db_models import utc_now
from rolebatch.expiry import EXPIRY_ACTOR, ExpirySweeper
from rolebatch.rollback import RollbackCoordinator
from rolebatch.schemas import ErrorCode, Role, RunOptions, TemporaryAssignment
from support.fakes import validated


@pytest.fixture()
def sweeper(test_settings, session_factory, record_store, audit_sink) -> ExpirySweeper:
    return ExpirySweeper(test_settings, session_factory, record_store=record_store, audit_sink=audit_sink)


def temporary_run(executor, record_store, count: int = 2):
    expires_at = utc_now() + timedelta(hours=1)
    items = [validated(subject, Role.TEACHER) for subject in list(record_store.subjects.values())[:count]]
    run = executor.execute(
        items,
        RunOptions(),
        initiated_by="admin-1",
        temporary=TemporaryAssignment(is_temporary=True, expires_at=expires_at),
    )
    return run, expires_at


def test_due_assignments_revert_once(sweeper, executor, record_store, audit_sink) -> None:
    _, expires_at = temporary_run(executor, record_store)
    audit_sink.entries.clear()

    early = sweeper.expire_due(now=expires_at - timedelta(minutes=5))
    due = sweeper.expire_due(now=expires_at + timedelta(minutes=1))
    again = sweeper.expire_due(now=expires_at + timedelta(minutes=2))

    assert early.processed == 0
    assert due.processed == 2 and due.expired == 2 and due.failed == 0
    assert again.processed == 0
    assert record_store.role_of("u1") is Role.STUDENT
    assert [entry.actor_id for entry in audit_sink.entries] == [EXPIRY_ACTOR, EXPIRY_ACTOR]
    assert all(entry.is_rollback for entry in audit_sink.entries)
    assert audit_sink.entries[0].to_role is Role.STUDENT


def test_permanent_assignments_never_expire(sweeper, executor, record_store) -> None:
    items = [validated(record_store.subjects["u1"], Role.TEACHER)]
    executor.execute(items, RunOptions(), initiated_by="admin-1")

    result = sweeper.expire_due(now=utc_now() + timedelta(days=3650))

    assert result.processed == 0


def test_outage_is_retried_on_the_next_sweep(sweeper, executor, record_store) -> None:
    _, expires_at = temporary_run(executor, record_store, count=1)
    record_store.transient_failures["u1"] = 10

    first = sweeper.expire_due(now=expires_at + timedelta(minutes=1))
    record_store.transient_failures.clear()
    second = sweeper.expire_due(now=expires_at + timedelta(minutes=16))

    assert first.failed == 1
    assert first.errors[0].error_code == ErrorCode.STORE_UNAVAILABLE.value
    assert second.expired == 1
    assert record_store.role_of("u1") is Role.STUDENT


def test_changed_role_is_left_alone(sweeper, executor, record_store) -> None:
    _, expires_at = temporary_run(executor, record_store, count=1)
    record_store.subjects["u1"] = replace(record_store.subjects["u1"], role=Role.DEPARTMENT_ADMIN)

    first = sweeper.expire_due(now=expires_at + timedelta(minutes=1))
    second = sweeper.expire_due(now=expires_at + timedelta(minutes=16))

    assert first.errors[0].error_code == ErrorCode.CONCURRENT_MODIFICATION.value
    assert second.processed == 0
    assert record_store.role_of("u1") is Role.DEPARTMENT_ADMIN


def test_rollback_skips_items_that_already_expired(
    sweeper, executor, record_store, audit_sink, test_settings, session_factory
) -> None:
    run, expires_at = temporary_run(executor, record_store)
    sweeper.expire_due(now=expires_at + timedelta(minutes=1))
    coordinator = RollbackCoordinator(test_settings, session_factory, record_store=record_store, audit_sink=audit_sink)

    result = coordinator.rollback(run.run_id, "admin-2", "cleanup")

    assert result.rolled_back_count == 0
    assert result.failed_count == 0


def test_rolled_back_runs_are_not_swept(sweeper, executor, record_store, audit_sink, test_settings, session_factory) -> None:
    run, expires_at = temporary_run(executor, record_store)
    RollbackCoordinator(test_settings, session_factory, record_store=record_store, audit_sink=audit_sink).rollback(
        run.run_id, "admin-2", "cancelled"
    )

    result = sweeper.expire_due(now=expires_at + timedelta(minutes=1))

    assert result.processed == 0
