# ruff: noqa: T201

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from signal import SIGINT, signal
from typing import TYPE_CHECKING
from uuid import UUID

from dotenv import load_dotenv
from pydantic import TypeAdapter, ValidationError

from tallyman.adapters.rules import RuleDefinition, RuleSetDocument, definition_from_rule
from tallyman.adapters.sqlalchemy import schema_revision
from tallyman.app import build_app
from tallyman.config import configure_logging
from tallyman.domain.model import MatchStatus, RecordField
from tallyman.domain.ports import AuditFilter, PageRequest, ResultFilter

if TYPE_CHECKING:
    from collections.abc import Sequence
    from types import FrameType

    from tallyman.app import TallymanApp
    from tallyman.domain.jobs import JobStatusView

log = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"

_RULE_LIST = TypeAdapter(list[RuleDefinition])


def _parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reconcile uploaded transaction batches")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create or upgrade the database schema")

    rules = subparsers.add_parser("rules", help="Matching rule administration")
    rules_sub = rules.add_subparsers(dest="rules_command", required=True)
    rules_seed = rules_sub.add_parser("seed", help="Install the default rules into an empty store")
    rules_seed.add_argument("--actor", type=str, default=SYSTEM_ACTOR, help="Acting user id")
    rules_sub.add_parser("list", help="Print all rules as JSON, highest priority first")
    rules_import = rules_sub.add_parser("import", help="Create or update rules from a JSON file")
    rules_import.add_argument("file", type=Path, help="JSON list of rules or {'rules': [...]}")
    rules_import.add_argument("--actor", type=str, default=SYSTEM_ACTOR, help="Acting user id")

    preview = subparsers.add_parser("preview", help="Show the first rows of a file")
    preview.add_argument("file", type=Path)
    preview.add_argument("--limit", type=int, help="Number of rows to show (defaults to config)")

    submit = subparsers.add_parser("submit", help="Upload a file for reconciliation")
    submit.add_argument("file", type=Path)
    submit.add_argument(
        "--map",
        dest="mappings",
        action="append",
        default=[],
        metavar="FIELD=COLUMN",
        help="Map a record field (transactionId, amount, referenceNumber, date) to a column",
    )
    submit.add_argument("--actor", type=str, required=True, help="Submitting user id")

    status = subparsers.add_parser("status", help="Show the status of an upload job")
    status.add_argument("job", type=str)

    results = subparsers.add_parser("results", help="List reconciliation results of a job")
    results.add_argument("job", type=str)
    results.add_argument(
        "--status",
        type=str,
        choices=[choice.value for choice in MatchStatus],
        help="Only results with this match status",
    )
    results.add_argument("--page", type=int, default=1)
    results.add_argument("--size", type=int, default=50)

    audit = subparsers.add_parser("audit", help="Show the audit trail of a job or record")
    audit_target = audit.add_mutually_exclusive_group(required=True)
    audit_target.add_argument("--job", type=str)
    audit_target.add_argument("--record", type=str)
    audit_target.add_argument("--actor", type=str, help="Newest entries written by this actor")

    retry = subparsers.add_parser("retry", help="Retry a failed or partially failed job")
    retry.add_argument("job", type=str)
    retry.add_argument("--actor", type=str, required=True)

    reprocess = subparsers.add_parser("reprocess", help="Re-run reconciliation for a job")
    reprocess.add_argument("job", type=str)
    reprocess.add_argument("--actor", type=str, required=True)

    subparsers.add_parser("worker", help="Resume unfinished jobs and consume the job queues")

    return parser.parse_args(list(argv))


def _parse_uuid(value: str) -> UUID:
    try:
        return UUID(value)
    except ValueError as exc:
        raise ValueError(f"Invalid UUID: {value}") from exc


def _parse_mappings(values: Sequence[str]) -> dict[str, str]:
    mapping: dict[str, str] = {}
    known = {name.value for name in RecordField}
    for value in values:
        field, sep, column = value.partition("=")
        field, column = field.strip(), column.strip()
        if not sep or not field or not column:
            raise ValueError(f"Invalid mapping {value!r}, expected FIELD=COLUMN")
        if field not in known:
            raise ValueError(f"Unknown record field {field!r}; expected one of {sorted(known)}")
        mapping[field] = column
    return mapping


def _load_rule_definitions(path: Path) -> list[RuleDefinition]:
    raw = path.read_text(encoding="utf-8")
    try:
        if raw.lstrip().startswith("["):
            return _RULE_LIST.validate_json(raw)
        return RuleSetDocument.model_validate_json(raw).rules
    except ValidationError as exc:
        raise ValueError(f"Invalid rule file {path}: {exc}") from exc


def _validate(args: argparse.Namespace) -> None:
    if args.command == "submit":
        args.mapping = _parse_mappings(args.mappings)
    if args.command in {"status", "results", "retry", "reprocess"}:
        args.job_id = _parse_uuid(args.job)
    if args.command == "audit":
        args.job_id = _parse_uuid(args.job) if args.job else None
        args.record_id = _parse_uuid(args.record) if args.record else None
    if args.command == "results" and (args.page < 1 or args.size < 1):
        raise ValueError("Page and size must be positive")
    if args.command == "preview" and args.limit is not None and args.limit < 1:
        raise ValueError("Limit must be positive")


def _print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _job_status_payload(view: JobStatusView) -> dict[str, object]:
    job = view.job
    return {
        "jobId": str(job.id),
        "fileName": job.file_name,
        "status": job.status.value,
        "progress": view.progress,
        "totalRecords": job.total_records,
        "processedRecords": job.processed_records,
        "failedRecords": job.failed_records,
        "matchedRecords": job.matched_records,
        "partiallyMatchedRecords": job.partially_matched_records,
        "unmatchedRecords": job.unmatched_records,
        "duplicateRecords": job.duplicate_records,
        "retryCount": job.retry_count,
        "errorMessage": job.error_message,
        "queueState": None if view.queue is None else view.queue.state.value,
    }


def _print_status(app: TallymanApp, job_id: UUID) -> None:
    _print_json(_job_status_payload(app.get_job_status(job_id)))


def _run_submit(app: TallymanApp, args: argparse.Namespace) -> None:
    content = args.file.read_bytes()
    submission = app.submit_upload(content, args.file.name, args.mapping, args.actor)
    if submission.existing:
        log.info("File already submitted as job %s", submission.job.id)
    else:
        log.info("Created upload job %s", submission.job.id)
    _print_status(app, submission.job.id)


def _run_results(app: TallymanApp, args: argparse.Namespace) -> None:
    result_filter = ResultFilter(
        job_id=args.job_id, status=MatchStatus(args.status) if args.status else None
    )
    page = app.list_results(result_filter, PageRequest(page=args.page, size=args.size))
    summary = app.reconciliation_summary(ResultFilter(job_id=args.job_id))
    _print_json(
        {
            "summary": {
                "total": summary.total,
                "matched": summary.matched,
                "partiallyMatched": summary.partially_matched,
                "unmatched": summary.unmatched,
                "duplicate": summary.duplicate,
                "failed": summary.failed,
                "accuracy": str(summary.accuracy),
            },
            "page": page.page,
            "pages": page.pages,
            "total": page.total,
            "results": [result.describe() for result in page.items],
        }
    )


def _run_audit(app: TallymanApp, args: argparse.Namespace) -> None:
    if args.actor:
        entries = app.search_audit_logs(AuditFilter(actor_id=args.actor)).items
    else:
        entries = app.get_audit_timeline(record_id=args.record_id, job_id=args.job_id)
    _print_json(
        [
            {
                "id": str(entry.id),
                "timestamp": entry.timestamp.isoformat(),
                "action": entry.action.value,
                "entityType": entry.entity_type.value,
                "actorId": entry.actor_id,
                "source": entry.source.value,
                "recordId": None if entry.record_id is None else str(entry.record_id),
                "jobId": None if entry.job_id is None else str(entry.job_id),
                "oldValue": entry.old_value,
                "newValue": entry.new_value,
            }
            for entry in entries
        ]
    )


def _run_command(app: TallymanApp, args: argparse.Namespace) -> None:  # noqa: C901, PLR0912
    if args.command == "init-db":
        log.info("Database schema at revision %s", schema_revision())
    elif args.command == "rules" and args.rules_command == "seed":
        created = app.seed_default_rules(actor_id=args.actor)
        log.info("Seeded %d default matching rules", created)
    elif args.command == "rules" and args.rules_command == "list":
        _print_json(
            [
                definition_from_rule(rule).model_dump(mode="json", by_alias=True)
                for rule in app.list_rules()
            ]
        )
    elif args.command == "rules" and args.rules_command == "import":
        imported = app.import_rules(args.definitions, actor_id=args.actor)
        log.info("Imported %d matching rules", len(imported))
    elif args.command == "preview":
        preview = app.preview_upload(args.file, limit=args.limit)
        _print_json(
            {
                "columns": list(preview.columns),
                "totalRows": preview.total_rows,
                "rows": [dict(row) for row in preview.rows],
            }
        )
    elif args.command == "submit":
        _run_submit(app, args)
    elif args.command == "status":
        _print_status(app, args.job_id)
    elif args.command == "results":
        _run_results(app, args)
    elif args.command == "audit":
        _run_audit(app, args)
    elif args.command == "retry":
        job = app.retry_upload(args.job_id, args.actor)
        log.info("Upload job %s queued for retry %d", job.id, job.retry_count)
        _print_status(app, args.job_id)
    elif args.command == "reprocess":
        handle = app.reprocess_upload(args.job_id, args.actor)
        log.info("Reconciliation of job %s queued as %s", args.job_id, handle)
        _print_status(app, args.job_id)
    elif args.command == "worker":
        app.run_worker()
    else:
        raise ValueError(f"Unsupported command: {args.command}")


def main(argv: Sequence[str] | None = None) -> None:
    """Main application entry point."""
    configure_logging()
    args_list = list(argv) if argv is not None else list(sys.argv[1:])
    parsed_args: argparse.Namespace
    try:
        parsed_args = _parse_args(args_list)
        _validate(parsed_args)
        if parsed_args.verbose:
            logging.getLogger().setLevel(logging.DEBUG)
        if parsed_args.command == "rules" and parsed_args.rules_command == "import":
            parsed_args.definitions = _load_rule_definitions(parsed_args.file)
    except (ValueError, OSError):
        log.exception("CLI validation error")
        sys.exit(2)

    try:
        app = build_app()
        _run_command(app, parsed_args)
    except Exception:
        log.exception("Fatal error during %s", parsed_args.command)
        sys.exit(1)


def sigint_handler(_signal_received: int, _frame: FrameType | None) -> None:
    """Handle SIGINT (Ctrl+C) gracefully."""
    log.info("Closed by user (Ctrl+C)")
    sys.exit(0)


if __name__ == "__main__":
    load_dotenv()
    signal(SIGINT, sigint_handler)
    main()
