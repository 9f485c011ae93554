from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

from rolebatch.errors import InvalidRunOptionsError


def as_naive_utc(value: datetime) -> datetime:
    """Stored timestamps are naive UTC; aware values are converted, naive ones kept."""
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


class Role(StrEnum):
    STUDENT = "student"
    TEACHER = "teacher"
    DEPARTMENT_ADMIN = "department_admin"
    INSTITUTION_ADMIN = "institution_admin"
    SYSTEM_ADMIN = "system_admin"

    @property
    def rank(self) -> int:
        return ROLE_ORDER.index(self)


ROLE_ORDER: tuple[Role, ...] = (
    Role.STUDENT,
    Role.TEACHER,
    Role.DEPARTMENT_ADMIN,
    Role.INSTITUTION_ADMIN,
    Role.SYSTEM_ADMIN,
)
LOWEST_PRIVILEGE_ROLE = Role.STUDENT


class RunStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolledBack"


RUN_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    # pending may complete directly only when the run has no items
    RunStatus.PENDING: frozenset({RunStatus.PROCESSING, RunStatus.COMPLETED}),
    RunStatus.PROCESSING: frozenset({RunStatus.COMPLETED, RunStatus.FAILED}),
    RunStatus.COMPLETED: frozenset({RunStatus.ROLLED_BACK}),
    RunStatus.FAILED: frozenset({RunStatus.ROLLED_BACK}),
    RunStatus.ROLLED_BACK: frozenset(),
}


class OutcomeKind(StrEnum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class IssueCode(StrEnum):
    # payload-level
    EMPTY_INPUT = "EMPTY_INPUT"
    MISSING_REQUIRED_FIELD = "MISSING_REQUIRED_FIELD"
    TOO_MANY_RECORDS = "TOO_MANY_RECORDS"
    PARSE_ERROR = "PARSE_ERROR"
    UNSUPPORTED_FORMAT = "UNSUPPORTED_FORMAT"
    # row-level
    MISSING_VALUE = "MISSING_VALUE"
    INVALID_IDENTIFIER = "INVALID_IDENTIFIER"
    UNKNOWN_ROLE = "UNKNOWN_ROLE"
    NO_ROLE_SPECIFIED = "NO_ROLE_SPECIFIED"
    INVALID_ORG_UNIT = "INVALID_ORG_UNIT"
    INVALID_RECORD = "INVALID_RECORD"
    DUPLICATE = "DUPLICATE"
    # validation
    SUBJECT_NOT_FOUND = "SUBJECT_NOT_FOUND"
    POLICY_VIOLATION = "POLICY_VIOLATION"
    POLICY_UNAVAILABLE = "POLICY_UNAVAILABLE"
    REQUIRES_APPROVAL = "REQUIRES_APPROVAL"
    SAME_ROLE = "SAME_ROLE"
    DUPLICATE_CONFLICT = "DUPLICATE_CONFLICT"
    MISSING_EXPIRATION = "MISSING_EXPIRATION"
    EXPIRATION_IN_PAST = "EXPIRATION_IN_PAST"


PAYLOAD_ISSUE_CODES = frozenset(
    {
        IssueCode.EMPTY_INPUT,
        IssueCode.MISSING_REQUIRED_FIELD,
        IssueCode.TOO_MANY_RECORDS,
        IssueCode.PARSE_ERROR,
        IssueCode.UNSUPPORTED_FORMAT,
    }
)


class ErrorCode(StrEnum):
    SUBJECT_NOT_FOUND = "SUBJECT_NOT_FOUND"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"
    POLICY_VIOLATION = "POLICY_VIOLATION"
    STORE_ERROR = "STORE_ERROR"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
    POLICY_UNAVAILABLE = "POLICY_UNAVAILABLE"
    SYSTEM_ERROR = "SYSTEM_ERROR"
    SAME_ROLE = "SAME_ROLE"
    DRY_RUN = "DRY_RUN"
    APPROVAL_REQUIRED = "APPROVAL_REQUIRED"


class ErrorType(StrEnum):
    VALIDATION = "validation"
    POLICY = "policy"
    EXECUTION = "execution"
    SYSTEM = "system"


@dataclass(frozen=True)
class CandidateMutation:
    row_number: int
    subject_identifier: str
    target_role: Role
    org_unit_id: str | None = None
    justification: str | None = None
    metadata: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ParseIssue:
    row_number: int
    field: str
    code: IssueCode
    message: str
    raw_value: str | None = None


@dataclass(frozen=True)
class ParseResult:
    items: list[CandidateMutation]
    errors: list[ParseIssue]
    warnings: list[ParseIssue]

    @property
    def fatal(self) -> bool:
        return any(error.code in PAYLOAD_ISSUE_CODES for error in self.errors)


@dataclass(frozen=True)
class ValidatedItem:
    subject_identifier: str
    resolved_subject_id: str
    current_role: Role
    target_role: Role
    org_unit_id: str | None = None
    requires_approval: bool = False
    approver_role: Role | None = None
    justification: str | None = None
    row_number: int = 0

    @property
    def is_noop(self) -> bool:
        return self.current_role == self.target_role


@dataclass(frozen=True)
class ValidationIssue:
    code: IssueCode
    message: str
    row_number: int | None = None
    subject_identifier: str | None = None
    field: str | None = None

    @property
    def run_level(self) -> bool:
        return self.row_number is None and self.subject_identifier is None


@dataclass(frozen=True)
class ValidationReport:
    valid: list[ValidatedItem]
    errors: list[ValidationIssue]
    warnings: list[ValidationIssue]
    affected_count: int

    @property
    def run_errors(self) -> list[ValidationIssue]:
        return [error for error in self.errors if error.run_level]


@dataclass(frozen=True)
class TemporaryAssignment:
    is_temporary: bool = False
    expires_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.expires_at is not None:
            object.__setattr__(self, "expires_at", as_naive_utc(self.expires_at))


@dataclass(frozen=True)
class ValidationContext:
    initiated_by: str
    now: datetime
    org_unit_id: str | None = None
    temporary: TemporaryAssignment = TemporaryAssignment()
    skip_duplicates: bool = True


RUN_OPTIONS_VERSION = 1
MAX_BATCH_SIZE = 1000


@dataclass(frozen=True)
class RunOptions:
    version: int = RUN_OPTIONS_VERSION
    validate_only: bool = False
    skip_duplicates: bool = True
    send_notifications: bool = True
    batch_size: int = 100
    hold_for_approval: bool = False

    def __post_init__(self) -> None:
        if self.version != RUN_OPTIONS_VERSION:
            raise InvalidRunOptionsError(f"unsupported options version: {self.version}")
        if isinstance(self.batch_size, bool) or not isinstance(self.batch_size, int):
            raise InvalidRunOptionsError("batch_size must be an integer")
        if not 1 <= self.batch_size <= MAX_BATCH_SIZE:
            raise InvalidRunOptionsError(f"batch_size must be between 1 and {MAX_BATCH_SIZE}")
        for name in ("validate_only", "skip_duplicates", "send_notifications", "hold_for_approval"):
            if not isinstance(getattr(self, name), bool):
                raise InvalidRunOptionsError(f"{name} must be a boolean")

    @classmethod
    def from_mapping(cls, values: Mapping[str, object]) -> "RunOptions":
        known = set(cls.__dataclass_fields__)
        unknown = sorted(set(values) - known)
        if unknown:
            raise InvalidRunOptionsError(f"unknown run options: {', '.join(unknown)}")
        return cls(**values)  # type: ignore[arg-type]

    def to_dict(self) -> dict[str, object]:
        return {name: getattr(self, name) for name in self.__dataclass_fields__}


@dataclass(frozen=True)
class SuccessOutcome:
    subject_id: str
    previous_role: Role
    target_role: Role
    applied_at: datetime
    expires_at: datetime | None = None
    kind: OutcomeKind = field(default=OutcomeKind.SUCCESS, init=False)


@dataclass(frozen=True)
class FailedOutcome:
    subject_id: str
    previous_role: Role
    target_role: Role
    error_code: ErrorCode
    error_message: str
    error_type: ErrorType
    retryable: bool = False
    kind: OutcomeKind = field(default=OutcomeKind.FAILED, init=False)


@dataclass(frozen=True)
class SkippedOutcome:
    subject_id: str
    previous_role: Role
    target_role: Role
    reason_code: ErrorCode
    kind: OutcomeKind = field(default=OutcomeKind.SKIPPED, init=False)


Outcome = SuccessOutcome | FailedOutcome | SkippedOutcome


@dataclass(frozen=True)
class AssignmentError:
    subject_id: str
    error_code: str
    error_message: str
    error_type: ErrorType
    retryable: bool


@dataclass(frozen=True)
class RunSnapshot:
    run_id: int
    initiated_by: str
    target_role: str | None
    status: RunStatus
    total_items: int
    processed_items: int
    success_count: int
    failure_count: int
    skipped_count: int
    batch_size: int
    options: RunOptions
    started_at: datetime
    completed_at: datetime | None
    error: str | None = None


@dataclass(frozen=True)
class RunStatusView:
    run_id: int
    status: RunStatus
    processed_items: int
    total_items: int
    progress_percent: float
    current_batch: int
    total_batches: int
    estimated_completion: datetime | None
    errors: list[AssignmentError]


@dataclass(frozen=True)
class RunSummary:
    run: RunSnapshot
    conflicts: list[AssignmentError]
    errors: list[AssignmentError]
    validation_errors: list[dict[str, object]]
    validation_warnings: list[dict[str, object]]
    duration_seconds: float | None


@dataclass(frozen=True)
class RollbackResult:
    run_id: int
    rolled_back_count: int
    failed_count: int
    errors: list[AssignmentError]


@dataclass(frozen=True)
class ExpiryResult:
    processed: int
    expired: int
    failed: int
    errors: list[AssignmentError]
