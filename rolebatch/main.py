import argparse
from datetime import datetime
import logging
from pathlib import Path
import sys

from sqlalchemy.orm import Session, sessionmaker

from rolebatch.adapters import OutboxNotifier, SqlAuditSink, SqlPolicyOracle, SqlRecordStore
from rolebatch.config import Settings, get_settings
from rolebatch.database import build_session_factory
from rolebatch.errors import InvalidRunOptionsError, InvalidRunStateError, RunNotFoundError
from rolebatch.parser import parse_role
from rolebatch.pipeline import BulkRoleRunner, SubmissionRequest
from rolebatch.scheduler import build_sweeper, start_scheduler
from rolebatch.schemas import RunOptions, RunStatus, TemporaryAssignment, as_naive_utc


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Bulk role assignment")
    subparsers = parser.add_subparsers(dest="command", required=True)

    submit_parser = subparsers.add_parser("submit", help="parse, validate and apply one bulk request")
    source = submit_parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--file", help="CSV, TSV or JSON file with one subject per record")
    source.add_argument("--identifiers", nargs="+", help="subject ids or emails, all assigned --role")
    submit_parser.add_argument("--format", default=None, choices=["csv", "tsv", "json"], help="payload format")
    submit_parser.add_argument("--role", help="target role for --identifiers")
    submit_parser.add_argument("--initiated-by", required=True, help="actor id recorded on the run")
    submit_parser.add_argument("--org-unit", help="organizational unit the assignment is scoped to")
    submit_parser.add_argument("--justification", help="reason written to the audit trail")
    submit_parser.add_argument("--batch-size", type=int, default=None)
    submit_parser.add_argument("--dry-run", action="store_true", help="validate and classify without writing")
    submit_parser.add_argument("--no-notify", action="store_true", help="do not notify affected subjects")
    submit_parser.add_argument(
        "--strict-duplicates",
        action="store_true",
        help="report conflicting duplicate rows as errors",
    )
    submit_parser.add_argument(
        "--hold-for-approval",
        action="store_true",
        help="skip items whose transition requires approval",
    )
    submit_parser.add_argument("--temporary", action="store_true", help="assignment reverts at --expires-at")
    submit_parser.add_argument("--expires-at", help="ISO-8601 expiry for temporary assignments")

    status_parser = subparsers.add_parser("status", help="show progress of one run")
    status_parser.add_argument("run_id", type=int)

    rollback_parser = subparsers.add_parser("rollback", help="revert every applied item of a finished run")
    rollback_parser.add_argument("run_id", type=int)
    rollback_parser.add_argument("--initiated-by", required=True)
    rollback_parser.add_argument("--reason", required=True)

    subparsers.add_parser("expire", help="revert temporary assignments that are due")

    schedule_parser = subparsers.add_parser("schedule", help="start the recurring expiry sweep")
    schedule_parser.add_argument("--run-now", action="store_true", help="also sweep once immediately")

    return parser.parse_args()


def build_runner(settings: Settings, session_factory: sessionmaker[Session]) -> BulkRoleRunner:
    return BulkRoleRunner(
        settings,
        session_factory,
        record_store=SqlRecordStore(session_factory),
        policy_oracle=SqlPolicyOracle(session_factory),
        audit_sink=SqlAuditSink(session_factory),
        notifier=OutboxNotifier(session_factory),
    )


def parse_expiry(value: str | None) -> datetime | None:
    if not value:
        return None
    return as_naive_utc(datetime.fromisoformat(value))


def _submission_request(args: argparse.Namespace, settings: Settings) -> SubmissionRequest:
    target_role = parse_role(args.role) if args.role else None
    if args.role and target_role is None:
        raise SystemExit(f"unknown role: {args.role}")

    options = RunOptions(
        validate_only=args.dry_run,
        skip_duplicates=not args.strict_duplicates,
        send_notifications=not args.no_notify,
        batch_size=args.batch_size or settings.default_batch_size,
        hold_for_approval=args.hold_for_approval,
    )
    expires_at = parse_expiry(args.expires_at)
    temporary = TemporaryAssignment(is_temporary=args.temporary or expires_at is not None, expires_at=expires_at)

    if args.identifiers:
        if target_role is None:
            raise SystemExit("--role is required with --identifiers")
        return SubmissionRequest(
            initiated_by=args.initiated_by,
            target_role=target_role,
            subject_identifiers=args.identifiers,
            org_unit_id=args.org_unit,
            justification=args.justification,
            temporary=temporary,
            options=options,
        )

    path = Path(args.file)
    source_format = args.format or path.suffix.lstrip(".").lower() or "csv"
    return SubmissionRequest(
        initiated_by=args.initiated_by,
        target_role=target_role,
        raw_payload=path.read_bytes(),
        source_format=source_format,
        org_unit_id=args.org_unit,
        justification=args.justification,
        temporary=temporary,
        options=options,
    )


def _submit(args: argparse.Namespace, settings: Settings, runner: BulkRoleRunner) -> None:
    try:
        request = _submission_request(args, settings)
    except InvalidRunOptionsError as exc:
        raise SystemExit(f"invalid run options: {exc}") from exc

    result = runner.submit(request)
    for issue in result.parse.errors:
        print(f"parse_error row={issue.row_number} code={issue.code} field={issue.field}", file=sys.stderr)
    if result.validation is not None:
        for error in result.validation.errors:
            print(
                f"validation_error row={error.row_number} code={error.code} subject={error.subject_identifier}",
                file=sys.stderr,
            )

    if not result.accepted:
        print(
            "status=rejected parse_errors={parse_errors} validation_errors={validation_errors}".format(
                parse_errors=len(result.parse.errors),
                validation_errors=len(result.validation.errors) if result.validation else 0,
            )
        )
        raise SystemExit(1)

    run = result.run or runner.wait(result.run_id)
    if run is None:
        print(f"run_id={result.run_id} status={RunStatus.FAILED}")
        raise SystemExit(1)

    print(
        "run_id={run_id} status={status} total={total} success={success} failed={failed} skipped={skipped} warnings={warnings} validation_errors={validation_errors}".format(
            run_id=run.run_id,
            status=run.status,
            total=run.total_items,
            success=run.success_count,
            failed=run.failure_count,
            skipped=run.skipped_count,
            warnings=len(result.validation.warnings),
            validation_errors=len(result.validation.errors),
        )
    )
    if run.status is RunStatus.FAILED:
        raise SystemExit(1)


def _status(args: argparse.Namespace, runner: BulkRoleRunner) -> None:
    view = runner.status(args.run_id)
    print(
        "run_id={run_id} status={status} processed={processed} total={total} progress={progress} batch={batch}/{batches} errors={errors}".format(
            run_id=view.run_id,
            status=view.status,
            processed=view.processed_items,
            total=view.total_items,
            progress=view.progress_percent,
            batch=view.current_batch,
            batches=view.total_batches,
            errors=len(view.errors),
        )
    )


def _rollback(args: argparse.Namespace, runner: BulkRoleRunner) -> None:
    try:
        result = runner.rollback(args.run_id, args.initiated_by, args.reason)
    except InvalidRunStateError as exc:
        raise SystemExit(str(exc)) from exc
    print(
        f"run_id={result.run_id} status={RunStatus.ROLLED_BACK} "
        f"rolled_back={result.rolled_back_count} failed={result.failed_count}"
    )
    if result.failed_count:
        raise SystemExit(1)


def main() -> None:
    args = parse_args()
    settings = get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    session_factory = build_session_factory(settings.database_url, timeout_seconds=settings.call_timeout_seconds)
    if args.command == "schedule":
        start_scheduler(settings, session_factory, run_now=args.run_now)
        return

    if args.command == "expire":
        result = build_sweeper(settings, session_factory).expire_due()
        print(f"processed={result.processed} expired={result.expired} failed={result.failed}")
        if result.failed:
            raise SystemExit(1)
        return

    runner = build_runner(settings, session_factory)
    try:
        if args.command == "submit":
            _submit(args, settings, runner)
        elif args.command == "status":
            _status(args, runner)
        elif args.command == "rollback":
            _rollback(args, runner)
    except RunNotFoundError as exc:
        raise SystemExit(str(exc)) from exc
    finally:
        runner.close()


if __name__ == "__main__":
    main()
