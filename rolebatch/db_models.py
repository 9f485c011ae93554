from datetime import UTC, datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


def utc_now() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


class BulkRun(Base):
    __tablename__ = "bulk_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    initiated_by: Mapped[str] = mapped_column(String(128), index=True)
    target_role: Mapped[str | None] = mapped_column(String(32), nullable=True)
    org_unit_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    justification: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(32), default="pending", index=True)
    total_items: Mapped[int] = mapped_column(Integer, default=0)
    processed_items: Mapped[int] = mapped_column(Integer, default=0)
    success_count: Mapped[int] = mapped_column(Integer, default=0)
    failure_count: Mapped[int] = mapped_column(Integer, default=0)
    skipped_count: Mapped[int] = mapped_column(Integer, default=0)
    batch_size: Mapped[int] = mapped_column(Integer, default=100)
    options: Mapped[str] = mapped_column(Text, default="{}")
    is_temporary: Mapped[bool] = mapped_column(Boolean, default=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    validation_issues: Mapped[str] = mapped_column(Text, default="{}")
    started_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    rolled_back_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    rolled_back_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    rollback_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    outcomes: Mapped[list["ItemOutcomeRecord"]] = relationship(back_populates="run", cascade="all, delete-orphan")
    rollback_results: Mapped[list["RollbackItemResult"]] = relationship(
        back_populates="run", cascade="all, delete-orphan"
    )


class ItemOutcomeRecord(Base):
    __tablename__ = "run_item_outcomes"
    __table_args__ = (UniqueConstraint("run_id", "subject_id", name="uq_run_subject"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(ForeignKey("bulk_runs.id", ondelete="CASCADE"), index=True)
    sequence: Mapped[int] = mapped_column(Integer)
    subject_id: Mapped[str] = mapped_column(String(128), index=True)
    subject_identifier: Mapped[str] = mapped_column(String(255))
    previous_role: Mapped[str] = mapped_column(String(32))
    target_role: Mapped[str] = mapped_column(String(32))
    outcome: Mapped[str] = mapped_column(String(16), default="pending", index=True)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_type: Mapped[str | None] = mapped_column(String(16), nullable=True)
    retryable: Mapped[bool] = mapped_column(Boolean, default=False)
    requires_approval: Mapped[bool] = mapped_column(Boolean, default=False)
    applied_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)

    run: Mapped[BulkRun] = relationship(back_populates="outcomes")


class RollbackItemResult(Base):
    __tablename__ = "rollback_item_results"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(ForeignKey("bulk_runs.id", ondelete="CASCADE"), index=True)
    outcome_id: Mapped[int] = mapped_column(ForeignKey("run_item_outcomes.id"), index=True)
    subject_id: Mapped[str] = mapped_column(String(128))
    restored_role: Mapped[str] = mapped_column(String(32))
    ok: Mapped[bool] = mapped_column(Boolean)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)

    run: Mapped[BulkRun] = relationship(back_populates="rollback_results")


class NotificationDelivery(Base):
    __tablename__ = "notification_deliveries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(ForeignKey("bulk_runs.id", ondelete="CASCADE"), index=True)
    subject_id: Mapped[str] = mapped_column(String(128))
    template_name: Mapped[str] = mapped_column(String(64))
    status: Mapped[str] = mapped_column(String(16))
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)


class TemporaryExpiration(Base):
    __tablename__ = "temporary_expirations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    outcome_id: Mapped[int] = mapped_column(ForeignKey("run_item_outcomes.id"), index=True)
    run_id: Mapped[int] = mapped_column(ForeignKey("bulk_runs.id", ondelete="CASCADE"), index=True)
    subject_id: Mapped[str] = mapped_column(String(128))
    restored_role: Mapped[str] = mapped_column(String(32))
    ok: Mapped[bool] = mapped_column(Boolean)
    retryable: Mapped[bool] = mapped_column(Boolean, default=False)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)


# Tables behind the reference collaborators in rolebatch.adapters.


class SubjectRecord(Base):
    __tablename__ = "subjects"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    role: Mapped[str] = mapped_column(String(32))
    org_unit_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, onupdate=utc_now)


class RolePolicy(Base):
    __tablename__ = "role_policies"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    from_role: Mapped[str | None] = mapped_column(String(32), nullable=True)
    to_role: Mapped[str] = mapped_column(String(32), index=True)
    org_unit_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    allowed: Mapped[bool] = mapped_column(Boolean, default=True)
    requires_approval: Mapped[bool] = mapped_column(Boolean, default=False)
    approver_role: Mapped[str | None] = mapped_column(String(32), nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)


class RoleAuditEntry(Base):
    __tablename__ = "role_audit_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_id: Mapped[int] = mapped_column(Integer, index=True)
    subject_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    from_role: Mapped[str | None] = mapped_column(String(32), nullable=True)
    to_role: Mapped[str | None] = mapped_column(String(32), nullable=True)
    actor_id: Mapped[str] = mapped_column(String(128))
    justification: Mapped[str] = mapped_column(Text)
    is_rollback: Mapped[bool] = mapped_column(Boolean, default=False)
    details: Mapped[str] = mapped_column(Text, default="{}")
    recorded_at: Mapped[datetime] = mapped_column(DateTime)


class NotificationOutbox(Base):
    __tablename__ = "notification_outbox"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subject_id: Mapped[str] = mapped_column(String(128), index=True)
    template_name: Mapped[str] = mapped_column(String(64))
    context: Mapped[str] = mapped_column(Text, default="{}")
    enqueued_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now)
