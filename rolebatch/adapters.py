from collections.abc import Iterable, Mapping, Sequence
import json
import logging

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from rolebatch.db_models import NotificationOutbox, RoleAuditEntry, RolePolicy, SubjectRecord, utc_now
from rolebatch.errors import TransientError
from rolebatch.ports import AuditEntry, PolicyVerdict, Subject, UpdateResult
from rolebatch.schemas import ErrorCode, Role


logger = logging.getLogger(__name__)


class SqlRecordStore:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    def find_by_ids(self, identifiers: Sequence[str]) -> list[Subject]:
        if not identifiers:
            return []
        lowered = {identifier.strip().lower() for identifier in identifiers}
        stmt = select(SubjectRecord).where(
            or_(func.lower(SubjectRecord.id).in_(lowered), func.lower(SubjectRecord.email).in_(lowered))
        )
        try:
            with self.session_factory() as db:
                rows = db.execute(stmt).scalars().all()
        except OperationalError as exc:
            raise TransientError(f"subject lookup failed: {exc}") from exc
        return [_to_subject(row) for row in rows]

    def update_role(self, subject_id: str, from_role: Role, to_role: Role) -> UpdateResult:
        """Move ``subject_id`` to ``to_role`` only if it still holds ``from_role``."""
        stmt = (
            update(SubjectRecord)
            .where(SubjectRecord.id == subject_id, SubjectRecord.role == from_role.value)
            .values(role=to_role.value, updated_at=utc_now())
        )
        try:
            with self.session_factory() as db:
                changed = db.execute(stmt).rowcount
                if changed == 1:
                    db.commit()
                    return UpdateResult(ok=True)
                db.rollback()
                current = db.get(SubjectRecord, subject_id)
        except OperationalError as exc:
            raise TransientError(f"role update failed: {exc}") from exc

        if current is None:
            return UpdateResult(
                ok=False,
                error_code=ErrorCode.SUBJECT_NOT_FOUND,
                error_message=f"subject {subject_id} no longer exists",
            )
        return UpdateResult(
            ok=False,
            error_code=ErrorCode.CONCURRENT_MODIFICATION,
            error_message=f"expected role {from_role.value}, found {current.role}",
        )


def _to_subject(row: SubjectRecord) -> Subject:
    return Subject(id=row.id, email=row.email, role=Role(row.role), org_unit_id=row.org_unit_id)


def add_subjects(session_factory: sessionmaker[Session], subjects: Iterable[Subject]) -> None:
    with session_factory() as db:
        for subject in subjects:
            db.merge(
                SubjectRecord(
                    id=subject.id,
                    email=subject.email.lower(),
                    role=subject.role.value,
                    org_unit_id=subject.org_unit_id,
                )
            )
        db.commit()


def default_verdict(from_role: Role, to_role: Role) -> PolicyVerdict:
    if to_role is Role.SYSTEM_ADMIN:
        return PolicyVerdict(allowed=False, reason="system_admin cannot be assigned in bulk")
    if to_role.rank <= from_role.rank:
        return PolicyVerdict(allowed=True)
    if to_role is Role.INSTITUTION_ADMIN:
        return PolicyVerdict(allowed=True, requires_approval=True, approver_role=Role.SYSTEM_ADMIN)
    if to_role.rank - from_role.rank >= 2:
        return PolicyVerdict(allowed=True, requires_approval=True, approver_role=Role.INSTITUTION_ADMIN)
    return PolicyVerdict(allowed=True)


class SqlPolicyOracle:
    """Role transition policy read from ``role_policies``.

    The most specific active row wins (matching ``from_role`` and ``org_unit_id``
    beat wildcards). Transitions with no matching row fall back to
    ``default_verdict``.
    """

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    def check_transition(
        self,
        subject_id: str,
        from_role: Role,
        to_role: Role,
        org_unit_id: str | None = None,
    ) -> PolicyVerdict:
        stmt = select(RolePolicy).where(
            RolePolicy.is_active.is_(True),
            RolePolicy.to_role == to_role.value,
            or_(RolePolicy.from_role.is_(None), RolePolicy.from_role == from_role.value),
            or_(RolePolicy.org_unit_id.is_(None), RolePolicy.org_unit_id == org_unit_id),
        )
        try:
            with self.session_factory() as db:
                rows = db.execute(stmt).scalars().all()
        except OperationalError as exc:
            raise TransientError(f"policy lookup failed: {exc}") from exc

        if not rows:
            return default_verdict(from_role, to_role)

        policy = max(rows, key=lambda row: (row.from_role is not None, row.org_unit_id is not None, row.id))
        logger.debug("policy row matched", extra={"subject_id": subject_id, "policy_id": policy.id})
        return PolicyVerdict(
            allowed=policy.allowed,
            requires_approval=policy.requires_approval,
            approver_role=Role(policy.approver_role) if policy.approver_role else None,
            reason=policy.reason,
        )


class SqlAuditSink:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    def record(self, entry: AuditEntry) -> None:
        row = RoleAuditEntry(
            run_id=entry.run_id,
            subject_id=entry.subject_id,
            from_role=entry.from_role.value if entry.from_role else None,
            to_role=entry.to_role.value if entry.to_role else None,
            actor_id=entry.actor_id,
            justification=entry.justification,
            is_rollback=entry.is_rollback,
            details=json.dumps(dict(entry.details), sort_keys=True, default=str),
            recorded_at=entry.timestamp,
        )
        with self.session_factory() as db:
            db.add(row)
            db.commit()


class OutboxNotifier:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    def send(self, subject_id: str, template_name: str, context: Mapping[str, object]) -> None:
        with self.session_factory() as db:
            db.add(
                NotificationOutbox(
                    subject_id=subject_id,
                    template_name=template_name,
                    context=json.dumps(dict(context), sort_keys=True, default=str),
                )
            )
            db.commit()
