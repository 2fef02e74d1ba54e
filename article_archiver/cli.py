"""Minimal CLI entrypoint for article-archiver."""

from __future__ import annotations

import argparse
from typing import Any
from typing import Sequence
from uuid import uuid4

from connectors import HttpApiRecordSource, IngestCoordinator, JsonlRecordSource, RecordSource
from core.config import ArchiverConfig
from core.models import RunStatus, Stage, StageReport
from core.pipeline import STAGE_ORDER, Pipeline
from core.structured_logging import emit_error_event, emit_json_event
from exporter import ExportCoordinator
from fetcher import AttachmentFetchStage
from manifest import ManifestBuilder
from publisher import DryRunNetworkClient, HttpNetworkStorageClient, PublishScheduler
from storage import SQLiteVersionStore
from sync import SyncStateManager


def _resolve_command_run_id(args: argparse.Namespace) -> str:
    """Resolve run_id from CLI args or create one for command-level tracing."""
    explicit = getattr(args, "run_id", None)
    if explicit:
        return str(explicit)
    return str(uuid4())


def _emit_cli_event(
    event_type: str,
    *,
    run_id: str,
    command: str,
    **payload: Any,
) -> str:
    """Emit one structured CLI event line with standard fields."""
    return emit_json_event(
        event_type=event_type,
        run_id=run_id,
        command=command,
        **payload,
    )


def _config(args: argparse.Namespace) -> ArchiverConfig:
    return ArchiverConfig.from_env(db_path=getattr(args, "db", None))


def _build_source(location: str, config: ArchiverConfig, run_id: str, page_size: int) -> RecordSource:
    """HTTP(S) URLs are paginated APIs; anything else is a local JSON/JSONL file."""
    if location.startswith(("http://", "https://")):
        return HttpApiRecordSource(location, config, page_size=page_size, run_id=run_id)
    return JsonlRecordSource(location)


def _report_payload(report: StageReport) -> dict[str, Any]:
    return {
        "counts": report.counts,
        "failed_items": [item.model_dump() for item in report.failures],
    }


def _exit_code(report: StageReport) -> int:
    return 0 if report.failed == 0 else 1


def _cmd_ingest(args: argparse.Namespace) -> int:
    """Validate records from a source and upsert them into the store."""
    run_id = args.run_id or str(uuid4())
    config = _config(args)
    store = SQLiteVersionStore(config.db_path)
    source = _build_source(args.source, config, run_id, args.page_size)
    report = IngestCoordinator(store, config, run_id=run_id).ingest(source.iter_records(), limit=args.limit)
    _emit_cli_event(
        "cli_ingest_completed",
        run_id=run_id,
        command="ingest",
        db=str(config.db_path),
        source=args.source,
        **_report_payload(report),
    )
    return _exit_code(report)


def _cmd_fetch_attachments(args: argparse.Namespace) -> int:
    """Download attachments still missing a local copy."""
    run_id = args.run_id or str(uuid4())
    config = _config(args)
    store = SQLiteVersionStore(config.db_path)
    report = AttachmentFetchStage(store, config, run_id=run_id).run(limit=args.limit)
    _emit_cli_event(
        "cli_fetch_attachments_completed",
        run_id=run_id,
        command="fetch-attachments",
        db=str(config.db_path),
        **_report_payload(report),
    )
    return _exit_code(report)


def _cmd_export(args: argparse.Namespace) -> int:
    """Export pending latest versions as Parquet batches (or rebuild metadata.parquet)."""
    run_id = args.run_id or str(uuid4())
    config = _config(args)
    store = SQLiteVersionStore(config.db_path)
    exporter = ExportCoordinator(store, config, run_id=run_id)

    if args.full_rebuild:
        path, count = exporter.rebuild_snapshot()
        _emit_cli_event(
            "cli_export_completed",
            run_id=run_id,
            command="export",
            db=str(config.db_path),
            full_rebuild=True,
            output=str(path),
            exported_rows=count,
        )
        return 0

    report = StageReport(stage=Stage.EXPORT)
    batches = exporter.export_pending(batch_size_limit=args.batch_size, limit=args.limit, report=report)
    _emit_cli_event(
        "cli_export_completed",
        run_id=run_id,
        command="export",
        db=str(config.db_path),
        full_rebuild=False,
        batches=[batch.batch_name for batch in batches],
        **_report_payload(report),
    )
    return _exit_code(report)


def _cmd_build_manifests(args: argparse.Namespace) -> int:
    """Build publication bundles for versions with content."""
    run_id = args.run_id or str(uuid4())
    config = _config(args)
    store = SQLiteVersionStore(config.db_path)
    report = ManifestBuilder(store, config, run_id=run_id).build_pending(limit=args.limit)
    _emit_cli_event(
        "cli_build_manifests_completed",
        run_id=run_id,
        command="build-manifests",
        db=str(config.db_path),
        **_report_payload(report),
    )
    return _exit_code(report)


def _build_publisher(args: argparse.Namespace, config: ArchiverConfig, run_id: str) -> PublishScheduler:
    store = SQLiteVersionStore(config.db_path)
    client = DryRunNetworkClient() if args.dry_run else HttpNetworkStorageClient(config)
    return PublishScheduler(store, config, client, dry_run=args.dry_run, run_id=run_id)


def _cmd_publish(args: argparse.Namespace) -> int:
    """Upload generated bundles (or estimate identifiers and cost with --dry-run)."""
    run_id = args.run_id or str(uuid4())
    config = _config(args)
    report = _build_publisher(args, config, run_id).publish_pending(limit=args.limit)
    _emit_cli_event(
        "cli_publish_completed",
        run_id=run_id,
        command="publish",
        db=str(config.db_path),
        dry_run=args.dry_run,
        **_report_payload(report),
    )
    return _exit_code(report)


def _cmd_publish_batches(args: argparse.Namespace) -> int:
    """Upload export batch files that have no remote identifier yet."""
    run_id = args.run_id or str(uuid4())
    config = _config(args)
    report = _build_publisher(args, config, run_id).publish_batches(limit=args.limit)
    _emit_cli_event(
        "cli_publish_batches_completed",
        run_id=run_id,
        command="publish-batches",
        db=str(config.db_path),
        dry_run=args.dry_run,
        **_report_payload(report),
    )
    return _exit_code(report)


def _cmd_reset_publish(args: argparse.Namespace) -> int:
    """Clear upload state so versions are republished on the next pass."""
    if not (args.article_id or args.version_id or args.all):
        raise ValueError("reset-publish needs --article-id, --version-id or --all")
    run_id = args.run_id or str(uuid4())
    config = _config(args)
    store = SQLiteVersionStore(config.db_path)
    state = SyncStateManager(store, config, run_id=run_id)
    scheduler = PublishScheduler(store, config, DryRunNetworkClient(), state=state, dry_run=True, run_id=run_id)
    count = scheduler.reset(article_id=args.article_id, version_id=args.version_id)
    _emit_cli_event(
        "cli_reset_publish_completed",
        run_id=run_id,
        command="reset-publish",
        db=str(config.db_path),
        article_id=args.article_id,
        version_id=args.version_id,
        versions_reset=count,
    )
    return 0


def _cmd_clear_checkpoints(args: argparse.Namespace) -> int:
    """Forget failure bookkeeping so held items are retried."""
    run_id = args.run_id or str(uuid4())
    config = _config(args)
    store = SQLiteVersionStore(config.db_path)
    stage = Stage(args.stage) if args.stage else None
    cleared = SyncStateManager(store, config, run_id=run_id).clear(stage=stage, item_id=args.item_id)
    _emit_cli_event(
        "cli_clear_checkpoints_completed",
        run_id=run_id,
        command="clear-checkpoints",
        db=str(config.db_path),
        stage=args.stage,
        item_id=args.item_id,
        cleared=cleared,
    )
    return 0


def _cmd_run(args: argparse.Namespace) -> int:
    """Run every stage (or the selected ones) in pipeline order."""
    run_id = args.run_id or str(uuid4())
    config = _config(args)
    source = _build_source(args.source, config, run_id, args.page_size) if args.source else None
    stages = [Stage(value) for value in args.stages] if args.stages else None
    pipeline = Pipeline.from_config(config, source=source, dry_run=args.dry_run, run_id=run_id)
    run_log = pipeline.run(stages=stages, limit=args.limit)
    _emit_cli_event(
        "cli_run_completed",
        run_id=run_log.id,
        command="run",
        db=str(config.db_path),
        status=run_log.status.value,
        stages=[stage.value for stage in run_log.stages],
        reports={report.stage.value: report.counts for report in run_log.reports},
        errors=run_log.error_count,
        note=run_log.error_message,
        dry_run=args.dry_run,
    )
    if run_log.status != RunStatus.COMPLETED:
        return 1
    return 0 if run_log.error_count == 0 else 1


def _cmd_status(args: argparse.Namespace) -> int:
    """Print store counters and checkpoint summary."""
    run_id = _resolve_command_run_id(args)
    config = _config(args)
    store = SQLiteVersionStore(config.db_path)
    _emit_cli_event(
        "cli_status_completed",
        run_id=run_id,
        command="status",
        db=str(config.db_path),
        stats=store.stats(),
        checkpoints=SyncStateManager(store, config).summary(),
    )
    return 0


def _add_common(parser: argparse.ArgumentParser, limit: bool = True) -> None:
    parser.add_argument("--db", help="SQLite DB path (default: ARCHIVER_DB_PATH or data/sqlite/archive.db)")
    parser.add_argument("--run-id", help="Optional explicit run ID for logging")
    if limit:
        parser.add_argument("--limit", type=int, help="Process at most this many items")


def build_parser() -> argparse.ArgumentParser:
    """Create argument parser for the article-archiver CLI."""
    parser = argparse.ArgumentParser(
        prog="article-archiver",
        description="Versioned article archive: ingest, export, bundle and publish",
    )
    parser.add_argument("--version", action="version", version="article-archiver 0.1.0")

    subparsers = parser.add_subparsers(dest="command")

    ingest_parser = subparsers.add_parser("ingest", help="Ingest records from a JSON/JSONL file or API URL")
    ingest_parser.add_argument("--source", required=True, help="Local .json/.jsonl path or http(s) API URL")
    ingest_parser.add_argument("--page-size", type=int, default=100, help="Page size for API sources")
    _add_common(ingest_parser)
    ingest_parser.set_defaults(func=_cmd_ingest)

    fetch_parser = subparsers.add_parser("fetch-attachments", help="Download missing attachment files")
    _add_common(fetch_parser)
    fetch_parser.set_defaults(func=_cmd_fetch_attachments)

    export_parser = subparsers.add_parser("export", help="Write Parquet batches for unexported versions")
    export_parser.add_argument("--batch-size", type=int, help="Maximum rows per batch")
    export_parser.add_argument(
        "--full-rebuild",
        action="store_true",
        help="Regenerate metadata.parquet from all latest versions; export flags are untouched",
    )
    _add_common(export_parser)
    export_parser.set_defaults(func=_cmd_export)

    manifests_parser = subparsers.add_parser("build-manifests", help="Build per-version publication bundles")
    _add_common(manifests_parser)
    manifests_parser.set_defaults(func=_cmd_build_manifests)

    publish_parser = subparsers.add_parser("publish", help="Upload bundles and record content identifiers")
    publish_parser.add_argument("--dry-run", action="store_true", help="Compute identifiers and cost only")
    _add_common(publish_parser)
    publish_parser.set_defaults(func=_cmd_publish)

    batches_parser = subparsers.add_parser("publish-batches", help="Upload recorded Parquet batch files")
    batches_parser.add_argument("--dry-run", action="store_true", help="Compute identifiers and cost only")
    _add_common(batches_parser)
    batches_parser.set_defaults(func=_cmd_publish_batches)

    reset_parser = subparsers.add_parser("reset-publish", help="Clear publish state to force republication")
    target = reset_parser.add_mutually_exclusive_group()
    target.add_argument("--article-id", help="Reset every version of one article")
    target.add_argument("--version-id", help="Reset one version, e.g. abc123_v2")
    target.add_argument("--all", action="store_true", help="Reset every version")
    _add_common(reset_parser, limit=False)
    reset_parser.set_defaults(func=_cmd_reset_publish)

    clear_parser = subparsers.add_parser("clear-checkpoints", help="Forget failure bookkeeping for held items")
    clear_parser.add_argument("--stage", choices=[stage.value for stage in Stage], help="Limit to one stage")
    clear_parser.add_argument("--item-id", help="Limit to one item")
    _add_common(clear_parser, limit=False)
    clear_parser.set_defaults(func=_cmd_clear_checkpoints)

    run_parser = subparsers.add_parser("run", help="Run all stages in order")
    run_parser.add_argument("--source", help="Record source for the ingest stage")
    run_parser.add_argument("--page-size", type=int, default=100, help="Page size for API sources")
    run_parser.add_argument(
        "--stages",
        nargs="+",
        choices=[stage.value for stage in STAGE_ORDER],
        help="Run only these stages (still in pipeline order)",
    )
    run_parser.add_argument("--dry-run", action="store_true", help="Do not upload; estimate identifiers and cost")
    _add_common(run_parser)
    run_parser.set_defaults(func=_cmd_run)

    status_parser = subparsers.add_parser("status", help="Show store and checkpoint counters")
    _add_common(status_parser, limit=False)
    status_parser.set_defaults(func=_cmd_status)

    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """Execute CLI and return process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        return 0

    try:
        return int(args.func(args))
    except Exception as exc:
        run_id = _resolve_command_run_id(args)
        emit_error_event(
            "cli_error",
            exc,
            run_id=run_id,
            command=str(getattr(args, "command", "unknown")),
        )
        return 1


def cli() -> None:
    """Console-script entrypoint."""
    raise SystemExit(main())


if __name__ == "__main__":
    raise SystemExit(main())
