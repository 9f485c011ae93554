from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol, runtime_checkable

from rolebatch.schemas import ErrorCode, Role


@dataclass(frozen=True)
class Subject:
    id: str
    email: str
    role: Role
    org_unit_id: str | None = None


@dataclass(frozen=True)
class UpdateResult:
    ok: bool
    error_code: ErrorCode | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class PolicyVerdict:
    allowed: bool
    requires_approval: bool = False
    approver_role: Role | None = None
    reason: str | None = None


@dataclass(frozen=True)
class AuditEntry:
    run_id: int
    subject_id: str | None
    from_role: Role | None
    to_role: Role | None
    actor_id: str
    justification: str
    timestamp: datetime
    is_rollback: bool = False
    details: Mapping[str, object] = field(default_factory=dict)


@runtime_checkable
class RecordStore(Protocol):
    def find_by_ids(self, identifiers: Sequence[str]) -> list[Subject]: ...

    def update_role(self, subject_id: str, from_role: Role, to_role: Role) -> UpdateResult: ...


@runtime_checkable
class PolicyOracle(Protocol):
    def check_transition(
        self,
        subject_id: str,
        from_role: Role,
        to_role: Role,
        org_unit_id: str | None = None,
    ) -> PolicyVerdict: ...


@runtime_checkable
class AuditSink(Protocol):
    def record(self, entry: AuditEntry) -> None: ...


@runtime_checkable
class Notifier(Protocol):
    def send(self, subject_id: str, template_name: str, context: Mapping[str, object]) -> None: ...
