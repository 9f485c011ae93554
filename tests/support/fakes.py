from collections.abc import Mapping, Sequence
from dataclasses import replace
import threading

from rolebatch.errors import TransientError
from rolebatch.ports import AuditEntry, PolicyVerdict, Subject, UpdateResult
from rolebatch.schemas import ErrorCode, Role, ValidatedItem


def make_subjects(count: int, role: Role = Role.STUDENT) -> list[Subject]:
    return [Subject(id=f"u{index}", email=f"user{index}@example.edu", role=role) for index in range(1, count + 1)]


def validated(subject: Subject, target_role: Role, **overrides) -> ValidatedItem:
    item = ValidatedItem(
        subject_identifier=subject.email,
        resolved_subject_id=subject.id,
        current_role=subject.role,
        target_role=target_role,
    )
    return replace(item, **overrides)


class InMemoryRecordStore:
    def __init__(self, subjects: Sequence[Subject] = ()) -> None:
        self.subjects: dict[str, Subject] = {subject.id: subject for subject in subjects}
        self.rejected_ids: set[str] = set()
        self.transient_failures: dict[str, int] = {}
        self.unavailable = False
        self.find_calls = 0
        self.update_calls: list[tuple[str, Role, Role]] = []
        self._lock = threading.Lock()

    def find_by_ids(self, identifiers: Sequence[str]) -> list[Subject]:
        self.find_calls += 1
        if self.unavailable:
            raise TransientError("record store offline")
        wanted = {identifier.lower() for identifier in identifiers}
        return [
            subject
            for subject in self.subjects.values()
            if subject.id.lower() in wanted or subject.email.lower() in wanted
        ]

    def update_role(self, subject_id: str, from_role: Role, to_role: Role) -> UpdateResult:
        with self._lock:
            self.update_calls.append((subject_id, from_role, to_role))
            if self.unavailable:
                raise TransientError("record store offline")
            remaining = self.transient_failures.get(subject_id, 0)
            if remaining:
                self.transient_failures[subject_id] = remaining - 1
                raise TransientError(f"timeout updating {subject_id}")
            if subject_id in self.rejected_ids:
                return UpdateResult(ok=False, error_code=ErrorCode.STORE_ERROR, error_message="write rejected")

            subject = self.subjects.get(subject_id)
            if subject is None:
                return UpdateResult(ok=False, error_code=ErrorCode.SUBJECT_NOT_FOUND, error_message="gone")
            if subject.role is not from_role:
                return UpdateResult(
                    ok=False,
                    error_code=ErrorCode.CONCURRENT_MODIFICATION,
                    error_message=f"expected {from_role.value}, found {subject.role.value}",
                )
            self.subjects[subject_id] = replace(subject, role=to_role)
            return UpdateResult(ok=True)

    def role_of(self, subject_id: str) -> Role:
        return self.subjects[subject_id].role


class FakePolicyOracle:
    def __init__(self) -> None:
        self.verdicts: dict[tuple[Role, Role], PolicyVerdict] = {}
        self.denied_subjects: set[str] = set()
        self.unavailable = False
        self.calls: list[tuple[str, Role, Role, str | None]] = []

    def check_transition(
        self,
        subject_id: str,
        from_role: Role,
        to_role: Role,
        org_unit_id: str | None = None,
    ) -> PolicyVerdict:
        self.calls.append((subject_id, from_role, to_role, org_unit_id))
        if self.unavailable:
            raise TransientError("policy service offline")
        if subject_id in self.denied_subjects:
            return PolicyVerdict(allowed=False, reason=f"{subject_id} is locked")
        return self.verdicts.get((from_role, to_role), PolicyVerdict(allowed=True))


class FakeAuditSink:
    def __init__(self) -> None:
        self.entries: list[AuditEntry] = []
        self.failing = False

    def record(self, entry: AuditEntry) -> None:
        if self.failing:
            raise RuntimeError("audit log unavailable")
        self.entries.append(entry)


class FakeNotifier:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str, dict[str, object]]] = []
        self.failing_subjects: set[str] = set()

    def send(self, subject_id: str, template_name: str, context: Mapping[str, object]) -> None:
        if subject_id in self.failing_subjects:
            raise RuntimeError(f"mailbox for {subject_id} rejected the message")
        self.sent.append((subject_id, template_name, dict(context)))
