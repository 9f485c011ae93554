from collections.abc import Sequence
from dataclasses import replace
import logging

from rolebatch.errors import StoreUnavailableError
from rolebatch.parser import is_valid_identifier
from rolebatch.ports import PolicyOracle, PolicyVerdict, RecordStore, Subject
from rolebatch.retry import RetryExhaustedError, run_with_retries
from rolebatch.schemas import (
    CandidateMutation,
    IssueCode,
    ValidatedItem,
    ValidationContext,
    ValidationIssue,
    ValidationReport,
)


logger = logging.getLogger(__name__)


class Validator:
    def __init__(
        self,
        record_store: RecordStore,
        policy_oracle: PolicyOracle,
        *,
        max_retries: int = 2,
        backoff_seconds: float = 0.5,
    ) -> None:
        self.record_store = record_store
        self.policy_oracle = policy_oracle
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds

    def validate(self, items: Sequence[CandidateMutation], context: ValidationContext) -> ValidationReport:
        """Check candidates against structure and policy without mutating anything.

        Run-level faults (temporary assignment without a future expiry) are returned
        as a single error with no valid items. Raises ``StoreUnavailableError`` only
        when subject resolution cannot reach the record store at all.
        """
        run_error = self._check_temporary(context)
        if run_error is not None:
            return ValidationReport(valid=[], errors=[run_error], warnings=[], affected_count=0)

        errors: list[ValidationIssue] = []
        warnings: list[ValidationIssue] = []

        structurally_valid = []
        for item in items:
            issue = self._check_structure(item)
            if issue is None:
                structurally_valid.append(item)
            else:
                errors.append(issue)

        subjects = self._resolve(structurally_valid)

        valid: list[ValidatedItem] = []
        first_rows: dict[str, CandidateMutation] = {}
        for item in structurally_valid:
            subject = subjects.get(item.subject_identifier.lower())
            if subject is None:
                errors.append(
                    ValidationIssue(
                        code=IssueCode.SUBJECT_NOT_FOUND,
                        message=f"No subject matches {item.subject_identifier}",
                        row_number=item.row_number,
                        subject_identifier=item.subject_identifier,
                    )
                )
                continue

            first = first_rows.get(subject.id)
            if first is not None:
                self._collapse_duplicate(item, first, context, errors, warnings)
                continue
            first_rows[subject.id] = item

            validated = self._check_policy(item, subject, context, errors, warnings)
            if validated is not None:
                valid.append(validated)

        affected_count = len({validated.resolved_subject_id for validated in valid})
        logger.info(
            "validation finished",
            extra={
                "candidates": len(items),
                "valid": len(valid),
                "errors": len(errors),
                "warnings": len(warnings),
                "affected_count": affected_count,
            },
        )
        return ValidationReport(valid=valid, errors=errors, warnings=warnings, affected_count=affected_count)

    def _check_temporary(self, context: ValidationContext) -> ValidationIssue | None:
        temporary = context.temporary
        if not temporary.is_temporary:
            return None
        if temporary.expires_at is None:
            return ValidationIssue(
                code=IssueCode.MISSING_EXPIRATION,
                message="Temporary assignments require an expiration timestamp",
                field="expires_at",
            )
        if temporary.expires_at <= context.now:
            return ValidationIssue(
                code=IssueCode.EXPIRATION_IN_PAST,
                message="Expiration timestamp must be in the future",
                field="expires_at",
            )
        return None

    def _check_structure(self, item: CandidateMutation) -> ValidationIssue | None:
        if not item.subject_identifier:
            return ValidationIssue(
                code=IssueCode.MISSING_VALUE,
                message="Subject identifier is required",
                row_number=item.row_number,
                field="subject_identifier",
            )
        if item.target_role is None:
            return ValidationIssue(
                code=IssueCode.MISSING_VALUE,
                message="Target role is required",
                row_number=item.row_number,
                subject_identifier=item.subject_identifier,
                field="target_role",
            )
        if not is_valid_identifier(item.subject_identifier):
            return ValidationIssue(
                code=IssueCode.INVALID_IDENTIFIER,
                message="Invalid identifier format",
                row_number=item.row_number,
                subject_identifier=item.subject_identifier,
                field="subject_identifier",
            )
        return None

    def _resolve(self, items: Sequence[CandidateMutation]) -> dict[str, Subject]:
        identifiers = list(dict.fromkeys(item.subject_identifier for item in items))
        if not identifiers:
            return {}

        try:
            found = run_with_retries(
                lambda: self.record_store.find_by_ids(identifiers),
                max_retries=self.max_retries,
                backoff_seconds=self.backoff_seconds,
            )
        except RetryExhaustedError as exc:
            raise StoreUnavailableError(f"subject resolution failed after {exc.attempts} attempts: {exc}") from exc
        except Exception as exc:
            raise StoreUnavailableError(f"subject resolution failed: {exc!r}") from exc

        by_identifier: dict[str, Subject] = {}
        for subject in found:
            by_identifier[subject.id.lower()] = subject
            by_identifier[subject.email.lower()] = subject
        return by_identifier

    def _collapse_duplicate(
        self,
        item: CandidateMutation,
        first: CandidateMutation,
        context: ValidationContext,
        errors: list[ValidationIssue],
        warnings: list[ValidationIssue],
    ) -> None:
        if not context.skip_duplicates and item.target_role != first.target_role:
            errors.append(
                ValidationIssue(
                    code=IssueCode.DUPLICATE_CONFLICT,
                    message=(
                        f"Row {item.row_number} requests {item.target_role.value} but row "
                        f"{first.row_number} already requests {first.target_role.value} for the same subject"
                    ),
                    row_number=item.row_number,
                    subject_identifier=item.subject_identifier,
                )
            )
            return
        warnings.append(
            ValidationIssue(
                code=IssueCode.DUPLICATE,
                message=f"Duplicate subject collapsed into row {first.row_number}",
                row_number=item.row_number,
                subject_identifier=item.subject_identifier,
            )
        )

    def _check_policy(
        self,
        item: CandidateMutation,
        subject: Subject,
        context: ValidationContext,
        errors: list[ValidationIssue],
        warnings: list[ValidationIssue],
    ) -> ValidatedItem | None:
        org_unit_id = item.org_unit_id or context.org_unit_id
        base = ValidatedItem(
            subject_identifier=item.subject_identifier,
            resolved_subject_id=subject.id,
            current_role=subject.role,
            target_role=item.target_role,
            org_unit_id=org_unit_id,
            justification=item.justification,
            row_number=item.row_number,
        )

        if base.is_noop:
            warnings.append(
                ValidationIssue(
                    code=IssueCode.SAME_ROLE,
                    message=f"Subject already holds role {subject.role.value}",
                    row_number=item.row_number,
                    subject_identifier=item.subject_identifier,
                )
            )
            return base

        try:
            verdict: PolicyVerdict = run_with_retries(
                lambda: self.policy_oracle.check_transition(subject.id, subject.role, item.target_role, org_unit_id),
                max_retries=self.max_retries,
                backoff_seconds=self.backoff_seconds,
            )
        except RetryExhaustedError as exc:
            logger.warning("policy check unavailable", extra={"subject_id": subject.id, "error": str(exc)})
            errors.append(
                ValidationIssue(
                    code=IssueCode.POLICY_UNAVAILABLE,
                    message=f"Policy check failed after {exc.attempts} attempts: {exc}",
                    row_number=item.row_number,
                    subject_identifier=item.subject_identifier,
                )
            )
            return None
        except Exception as exc:
            logger.warning("policy check raised", extra={"subject_id": subject.id, "error": repr(exc)})
            errors.append(
                ValidationIssue(
                    code=IssueCode.POLICY_UNAVAILABLE,
                    message=f"Policy check failed: {exc}",
                    row_number=item.row_number,
                    subject_identifier=item.subject_identifier,
                )
            )
            return None

        if not verdict.allowed:
            errors.append(
                ValidationIssue(
                    code=IssueCode.POLICY_VIOLATION,
                    message=verdict.reason
                    or f"Transition {subject.role.value} -> {item.target_role.value} is not allowed",
                    row_number=item.row_number,
                    subject_identifier=item.subject_identifier,
                )
            )
            return None

        if verdict.requires_approval:
            approver = verdict.approver_role.value if verdict.approver_role else "an approver"
            warnings.append(
                ValidationIssue(
                    code=IssueCode.REQUIRES_APPROVAL,
                    message=f"Transition to {item.target_role.value} requires approval by {approver}",
                    row_number=item.row_number,
                    subject_identifier=item.subject_identifier,
                )
            )
            return replace(base, requires_approval=True, approver_role=verdict.approver_role)
        return base
