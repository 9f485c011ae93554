from collections.abc import Mapping, Sequence
import csv
import io
import json
import re

from rolebatch.schemas import (
    LOWEST_PRIVILEGE_ROLE,
    CandidateMutation,
    IssueCode,
    ParseIssue,
    ParseResult,
    Role,
)


DEFAULT_MAX_ITEMS = 10000
SUPPORTED_FORMATS = ("csv", "tsv", "json", "records")

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.:-]{0,127}$")

# normalized header -> canonical field
HEADER_ALIASES: dict[str, str] = {
    "email": "email",
    "emailaddress": "email",
    "userid": "subject_id",
    "subjectid": "subject_id",
    "id": "subject_id",
    "role": "role",
    "targetrole": "role",
    "department": "org_unit_id",
    "departmentid": "org_unit_id",
    "orgunit": "org_unit_id",
    "orgunitid": "org_unit_id",
    "justification": "justification",
    "firstname": "first_name",
    "lastname": "last_name",
}
IDENTIFIER_FIELDS = ("email", "subject_id")
METADATA_FIELDS = ("first_name", "last_name")


def normalize_header(header: str) -> str:
    return re.sub(r"[\s_\-]", "", header.strip().lower())


def parse_role(value: str) -> Role | None:
    literal = re.sub(r"[\s\-]+", "_", value.strip().lower())
    try:
        return Role(literal)
    except ValueError:
        return None


def is_valid_identifier(value: str) -> bool:
    if "@" in value:
        return EMAIL_PATTERN.match(value) is not None
    return ID_PATTERN.match(value) is not None


def parse(
    raw_payload: str | bytes | Sequence[Mapping[str, object]],
    source_format: str = "csv",
    *,
    max_items: int = DEFAULT_MAX_ITEMS,
) -> ParseResult:
    source_format = source_format.lower()
    if source_format not in SUPPORTED_FORMATS:
        return _fatal(
            IssueCode.UNSUPPORTED_FORMAT,
            "file",
            f"Unsupported format. Supported formats: {', '.join(SUPPORTED_FORMATS)}",
            source_format,
        )

    if source_format in ("json", "records"):
        return _parse_structured(raw_payload, source_format, max_items)
    return _parse_delimited(raw_payload, "\t" if source_format == "tsv" else ",", max_items)


def _fatal(code: IssueCode, field: str, message: str, raw_value: str | None = None, row_number: int = 0) -> ParseResult:
    return ParseResult(
        items=[],
        errors=[ParseIssue(row_number=row_number, field=field, code=code, message=message, raw_value=raw_value)],
        warnings=[],
    )


def _as_text(raw_payload: str | bytes) -> str:
    if isinstance(raw_payload, bytes):
        raw_payload = raw_payload.decode("utf-8-sig")
    return raw_payload.lstrip("\ufeff")


def _not_utf8(exc: UnicodeDecodeError) -> ParseResult:
    return _fatal(IssueCode.PARSE_ERROR, "file", f"File is not valid UTF-8 (byte {exc.start})")


def _parse_delimited(raw_payload: object, delimiter: str, max_items: int) -> ParseResult:
    if not isinstance(raw_payload, (str, bytes)):
        return _fatal(IssueCode.PARSE_ERROR, "file", "Delimited payload must be text")

    try:
        text = _as_text(raw_payload)
    except UnicodeDecodeError as exc:
        return _not_utf8(exc)
    if not text.strip():
        return _fatal(IssueCode.EMPTY_INPUT, "file", "File is empty")

    try:
        rows = list(csv.reader(io.StringIO(text, newline=""), delimiter=delimiter))
    except csv.Error as exc:
        return _fatal(IssueCode.PARSE_ERROR, "file", f"Could not parse delimited text: {exc}")

    header, *body = rows
    # row numbers count records, header is row 1
    numbered = [
        (index, row)
        for index, row in enumerate(body, start=2)
        if any(value.strip() for value in row)
    ]
    if not numbered:
        return _fatal(IssueCode.EMPTY_INPUT, "file", "File contains no data rows")
    if len(numbered) > max_items:
        return _fatal(
            IssueCode.TOO_MANY_RECORDS,
            "file",
            f"File contains too many records. Maximum allowed: {max_items}",
            str(len(numbered)),
        )

    columns = [HEADER_ALIASES.get(normalize_header(name)) for name in header]
    missing = _missing_identifier(columns, row_number=1)
    if missing:
        return missing

    records = []
    for row_number, row in numbered:
        record: dict[str, str] = {}
        for column, value in zip(columns, row):
            if column and column not in record:
                record[column] = value.strip()
        records.append((row_number, record))

    return _build_items(records, present_columns={column for column in columns if column})


def _parse_structured(raw_payload: object, source_format: str, max_items: int) -> ParseResult:
    if source_format == "json":
        if not isinstance(raw_payload, (str, bytes)):
            return _fatal(IssueCode.PARSE_ERROR, "file", "JSON payload must be text")
        try:
            text = _as_text(raw_payload)
        except UnicodeDecodeError as exc:
            return _not_utf8(exc)
        if not text.strip():
            return _fatal(IssueCode.EMPTY_INPUT, "file", "File is empty")
        try:
            loaded = json.loads(text)
        except json.JSONDecodeError as exc:
            return _fatal(IssueCode.PARSE_ERROR, "file", f"Invalid JSON: {exc.msg}")
        if isinstance(loaded, dict) and isinstance(loaded.get("records"), list):
            loaded = loaded["records"]
    else:
        loaded = raw_payload

    if isinstance(loaded, (str, bytes)) or not isinstance(loaded, Sequence):
        return _fatal(IssueCode.PARSE_ERROR, "file", "Expected a list of records")
    if not loaded:
        return _fatal(IssueCode.EMPTY_INPUT, "file", "File is empty")
    if len(loaded) > max_items:
        return _fatal(
            IssueCode.TOO_MANY_RECORDS,
            "file",
            f"File contains too many records. Maximum allowed: {max_items}",
            str(len(loaded)),
        )

    records = []
    present: set[str] = set()
    errors: list[ParseIssue] = []
    for row_number, raw in enumerate(loaded, start=1):
        if not isinstance(raw, Mapping):
            errors.append(
                ParseIssue(row_number, "record", IssueCode.INVALID_RECORD, "Record must be an object", str(raw))
            )
            continue
        record: dict[str, str] = {}
        for key, value in raw.items():
            column = HEADER_ALIASES.get(normalize_header(str(key)))
            if column and column not in record:
                record[column] = "" if value is None else str(value).strip()
                present.add(column)
        records.append((row_number, record))

    missing = _missing_identifier(list(present), row_number=0)
    if missing:
        return missing

    result = _build_items(records, present_columns=present)
    return ParseResult(items=result.items, errors=errors + result.errors, warnings=result.warnings)


def _missing_identifier(columns: Sequence[str | None], *, row_number: int) -> ParseResult | None:
    if any(column in IDENTIFIER_FIELDS for column in columns):
        return None
    return _fatal(
        IssueCode.MISSING_REQUIRED_FIELD,
        "email",
        "Missing required header: email (or user_id)",
        row_number=row_number,
    )


def _build_items(records: list[tuple[int, dict[str, str]]], *, present_columns: set[str]) -> ParseResult:
    items: list[CandidateMutation] = []
    errors: list[ParseIssue] = []
    warnings: list[ParseIssue] = []
    first_seen: dict[str, int] = {}
    identifier_field = "email" if "email" in present_columns else "subject_id"

    for row_number, record in records:
        row_errors: list[ParseIssue] = []
        row_warnings: list[ParseIssue] = []

        email = record.get("email", "")
        subject_id = record.get("subject_id", "")
        identifier = email.lower() if email else subject_id
        field = "email" if email else identifier_field

        if not identifier:
            row_errors.append(
                ParseIssue(row_number, identifier_field, IssueCode.MISSING_VALUE, f"{identifier_field} is required")
            )
        elif not is_valid_identifier(identifier):
            row_errors.append(
                ParseIssue(row_number, field, IssueCode.INVALID_IDENTIFIER, "Invalid identifier format", identifier)
            )

        role_value = record.get("role", "")
        role = parse_role(role_value) if role_value else LOWEST_PRIVILEGE_ROLE
        if role is None:
            valid_roles = ", ".join(known.value for known in Role)
            row_errors.append(
                ParseIssue(
                    row_number,
                    "role",
                    IssueCode.UNKNOWN_ROLE,
                    f"Invalid role: {role_value}. Valid roles: {valid_roles}",
                    role_value,
                )
            )
        elif not role_value:
            row_warnings.append(
                ParseIssue(
                    row_number,
                    "role",
                    IssueCode.NO_ROLE_SPECIFIED,
                    f"WARNING: no role specified, defaulting to {LOWEST_PRIVILEGE_ROLE.value}",
                    LOWEST_PRIVILEGE_ROLE.value,
                )
            )

        org_unit_id = record.get("org_unit_id") or None
        if org_unit_id and ID_PATTERN.match(org_unit_id) is None:
            row_warnings.append(
                ParseIssue(
                    row_number,
                    "org_unit_id",
                    IssueCode.INVALID_ORG_UNIT,
                    "Org unit ID format may be invalid",
                    org_unit_id,
                )
            )

        warnings.extend(row_warnings)
        if row_errors:
            errors.extend(row_errors)
            continue

        key = identifier.lower()
        if key in first_seen:
            warnings.append(
                ParseIssue(
                    row_number,
                    field,
                    IssueCode.DUPLICATE,
                    f"Duplicate identifier found: {identifier} (first seen on row {first_seen[key]})",
                    identifier,
                )
            )
        else:
            first_seen[key] = row_number

        items.append(
            CandidateMutation(
                row_number=row_number,
                subject_identifier=identifier,
                target_role=role,
                org_unit_id=org_unit_id,
                justification=record.get("justification") or None,
                metadata={name: record[name] for name in METADATA_FIELDS if record.get(name)},
            )
        )

    return ParseResult(items=items, errors=errors, warnings=warnings)


def candidates_from_identifiers(
    identifiers: Sequence[str],
    target_role: Role,
    *,
    org_unit_id: str | None = None,
    justification: str | None = None,
    max_items: int = DEFAULT_MAX_ITEMS,
) -> ParseResult:
    """Build candidates for a plain identifier list submitted with a single target role."""
    if not identifiers:
        return _fatal(IssueCode.EMPTY_INPUT, "subject_identifiers", "No subject identifiers provided")
    if len(identifiers) > max_items:
        return _fatal(
            IssueCode.TOO_MANY_RECORDS,
            "subject_identifiers",
            f"Too many subject identifiers. Maximum allowed: {max_items}",
            str(len(identifiers)),
        )

    records = [
        (index, {"email" if "@" in value else "subject_id": value.strip(), "role": target_role.value})
        for index, value in enumerate(identifiers, start=1)
    ]
    for _, record in records:
        if org_unit_id:
            record["org_unit_id"] = org_unit_id
        if justification:
            record["justification"] = justification
    return _build_items(records, present_columns={"email", "subject_id"})
