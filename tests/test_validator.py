from datetime import UTC, datetime, timedelta, timezone

import pytest

from rolebatch.errors import StoreUnavailableError
from rolebatch.ports import PolicyVerdict
from rolebatch.schemas import (
    CandidateMutation,
    IssueCode,
    Role,
    TemporaryAssignment,
    ValidationContext,
)
from rolebatch.validator import Validator


NOW = datetime(2026, 3, 1, 12, 0)


def candidate(row: int, identifier: str, role: Role = Role.TEACHER) -> CandidateMutation:
    return CandidateMutation(row_number=row, subject_identifier=identifier, target_role=role)


@pytest.fixture()
def validator(record_store, policy_oracle) -> Validator:
    return Validator(record_store, policy_oracle, max_retries=1, backoff_seconds=0)


def context(**overrides) -> ValidationContext:
    return ValidationContext(initiated_by="admin-1", now=NOW, **overrides)


def test_subjects_resolve_by_id_or_email_in_one_lookup(validator, record_store) -> None:
    report = validator.validate(
        [candidate(2, "u1"), candidate(3, "user2@example.edu"), candidate(4, "ghost@example.edu")],
        context(),
    )

    assert record_store.find_calls == 1
    assert [item.resolved_subject_id for item in report.valid] == ["u1", "u2"]
    assert report.affected_count == 2
    assert [(error.code, error.row_number) for error in report.errors] == [(IssueCode.SUBJECT_NOT_FOUND, 4)]


def test_duplicates_collapse_to_first_occurrence(validator) -> None:
    report = validator.validate([candidate(2, "u1"), candidate(3, "user1@example.edu")], context())

    assert len(report.valid) == 1
    assert report.valid[0].row_number == 2
    assert [warning.code for warning in report.warnings] == [IssueCode.DUPLICATE]
    assert report.errors == []


def test_conflicting_duplicates_are_errors_when_not_skipped(validator) -> None:
    items = [candidate(2, "u1", Role.TEACHER), candidate(3, "u1", Role.DEPARTMENT_ADMIN)]

    report = validator.validate(items, context(skip_duplicates=False))

    assert [item.target_role for item in report.valid] == [Role.TEACHER]
    assert [error.code for error in report.errors] == [IssueCode.DUPLICATE_CONFLICT]


def test_same_role_is_a_warning_and_skips_the_policy_call(validator, policy_oracle) -> None:
    report = validator.validate([candidate(2, "u1", Role.STUDENT)], context())

    assert report.valid[0].is_noop
    assert [warning.code for warning in report.warnings] == [IssueCode.SAME_ROLE]
    assert policy_oracle.calls == []


def test_policy_denial_and_outage_exclude_items(validator, policy_oracle) -> None:
    policy_oracle.denied_subjects.add("u1")
    denied = validator.validate([candidate(2, "u1")], context())

    policy_oracle.unavailable = True
    unavailable = validator.validate([candidate(2, "u2")], context())

    assert denied.valid == []
    assert denied.errors[0].code is IssueCode.POLICY_VIOLATION
    assert denied.errors[0].message == "u1 is locked"
    assert unavailable.valid == []
    assert unavailable.errors[0].code is IssueCode.POLICY_UNAVAILABLE


def test_approval_requirement_is_carried_on_the_item(validator, policy_oracle) -> None:
    policy_oracle.verdicts[(Role.STUDENT, Role.DEPARTMENT_ADMIN)] = PolicyVerdict(
        allowed=True,
        requires_approval=True,
        approver_role=Role.INSTITUTION_ADMIN,
    )

    report = validator.validate([candidate(2, "u1", Role.DEPARTMENT_ADMIN)], context(org_unit_id="math"))

    item = report.valid[0]
    assert item.requires_approval
    assert item.approver_role is Role.INSTITUTION_ADMIN
    assert item.org_unit_id == "math"
    assert [warning.code for warning in report.warnings] == [IssueCode.REQUIRES_APPROVAL]
    assert policy_oracle.calls == [("u1", Role.STUDENT, Role.DEPARTMENT_ADMIN, "math")]


def test_temporary_assignment_needs_a_future_expiry(validator, record_store) -> None:
    missing = validator.validate([candidate(2, "u1")], context(temporary=TemporaryAssignment(is_temporary=True)))
    past = validator.validate(
        [candidate(2, "u1")],
        context(temporary=TemporaryAssignment(is_temporary=True, expires_at=NOW - timedelta(minutes=1))),
    )

    assert missing.valid == []
    assert [error.code for error in missing.errors] == [IssueCode.MISSING_EXPIRATION]
    assert missing.run_errors == missing.errors
    assert past.errors[0].code is IssueCode.EXPIRATION_IN_PAST
    assert record_store.find_calls == 0


def test_unreachable_store_raises(validator, record_store) -> None:
    record_store.unavailable = True

    with pytest.raises(StoreUnavailableError):
        validator.validate([candidate(2, "u1")], context())

    assert record_store.find_calls == 2


def test_policy_oracle_bug_becomes_a_row_error(validator, policy_oracle, monkeypatch) -> None:
    def broken(subject_id, from_role, to_role, org_unit_id=None):
        raise ValueError("oracle bug")

    monkeypatch.setattr(policy_oracle, "check_transition", broken)

    report = validator.validate([candidate(2, "u1"), candidate(3, "u2")], context())

    assert report.valid == []
    assert [(error.row_number, error.code) for error in report.errors] == [
        (2, IssueCode.POLICY_UNAVAILABLE),
        (3, IssueCode.POLICY_UNAVAILABLE),
    ]
    assert "oracle bug" in report.errors[0].message


def test_store_bug_during_resolution_is_reported_as_unavailable(validator, record_store, monkeypatch) -> None:
    def broken(identifiers):
        raise KeyError("email")

    monkeypatch.setattr(record_store, "find_by_ids", broken)

    with pytest.raises(StoreUnavailableError):
        validator.validate([candidate(2, "u1")], context())


def test_timezone_aware_expiry_is_compared_in_utc(validator) -> None:
    aware_future = datetime(2026, 3, 1, 14, 0, tzinfo=UTC).astimezone(timezone(timedelta(hours=-5)))
    aware_past = datetime(2026, 3, 1, 11, 0, tzinfo=UTC)

    future = validator.validate(
        [candidate(2, "u1")],
        context(temporary=TemporaryAssignment(is_temporary=True, expires_at=aware_future)),
    )
    past = validator.validate(
        [candidate(2, "u1")],
        context(temporary=TemporaryAssignment(is_temporary=True, expires_at=aware_past)),
    )

    assert future.errors == []
    assert [item.resolved_subject_id for item in future.valid] == ["u1"]
    assert TemporaryAssignment(is_temporary=True, expires_at=aware_future).expires_at == datetime(2026, 3, 1, 14, 0)
    assert past.errors[0].code is IssueCode.EXPIRATION_IN_PAST
