"""
Export stage: batch unexported latest versions into immutable Parquet snapshots.

Ordering per batch:
1. validate rows
2. write the snapshot to a temp file, fsync, rename into place
3. one transaction records the batch and marks its rows exported

A failure before step 3 commits leaves every row unexported, so rerunning
the stage is always safe.
"""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable

from core.config import ArchiverConfig
from core.errors import ConflictError, DurabilityError, ValidationError
from core.models import ArticleVersion, CheckpointStatus, ExportBatch, Stage, StageReport
from core.structured_logging import emit_error_event, emit_json_event
from exporter.parquet import (
    METADATA_COLUMNS,
    ParquetSnapshotWriter,
    estimate_row_bytes,
    metadata_row,
    validate_row,
    version_to_row,
)
from storage.sqlite import SQLiteVersionStore
from sync.state import SyncStateManager

METADATA_FILENAME = "metadata.parquet"


def batch_name_for(export_date: datetime, sequence: int) -> str:
    return f"{export_date.strftime('%Y-%m-%d')}_batch-{sequence:03d}"


def partition_rows(
    rows: list[tuple[ArticleVersion, dict[str, Any]]],
    max_records: int,
    max_bytes: int,
) -> list[list[tuple[ArticleVersion, dict[str, Any]]]]:
    """
    Greedy split bounded by record count and estimated byte size.

    A single row larger than `max_bytes` still gets its own batch.
    """
    batches: list[list[tuple[ArticleVersion, dict[str, Any]]]] = []
    current: list[tuple[ArticleVersion, dict[str, Any]]] = []
    current_bytes = 0
    for version, row in rows:
        row_bytes = estimate_row_bytes(row)
        if current and (len(current) >= max_records or current_bytes + row_bytes > max_bytes):
            batches.append(current)
            current, current_bytes = [], 0
        current.append((version, row))
        current_bytes += row_bytes
    if current:
        batches.append(current)
    return batches


class ExportCoordinator:
    """Turns the export pending set into recorded, immutable batches."""

    def __init__(
        self,
        store: SQLiteVersionStore,
        config: ArchiverConfig,
        writer: ParquetSnapshotWriter | None = None,
        state: SyncStateManager | None = None,
        clock_fn: Callable[[], datetime] | None = None,
        run_id: str | None = None,
    ) -> None:
        self.store = store
        self.config = config
        self.writer = writer or ParquetSnapshotWriter(compression=config.export_compression)
        self.state = state or SyncStateManager(store, config, run_id=run_id)
        self.run_id = run_id
        self._clock = clock_fn or (lambda: datetime.now(UTC))

    @property
    def batches_dir(self) -> Path:
        return Path(self.config.batches_dir)

    def _validated_rows(
        self,
        versions: list[ArticleVersion],
        report: StageReport,
    ) -> list[tuple[ArticleVersion, dict[str, Any]]]:
        rows: list[tuple[ArticleVersion, dict[str, Any]]] = []
        for version in versions:
            row = version_to_row(version)
            try:
                validate_row(row)
            except ValidationError as exc:
                report.skip(version.id, exc)
                self.state.checkpoint(Stage.EXPORT, version.id, CheckpointStatus.SKIPPED, exc)
                continue
            rows.append((version, row))
        return rows

    def _write_batch(self, members: list[tuple[ArticleVersion, dict[str, Any]]]) -> ExportBatch:
        export_date = self._clock()
        batch_name = batch_name_for(export_date, self.store.next_batch_sequence(export_date.strftime("%Y-%m-%d")))
        final_path = self.batches_dir / f"{batch_name}.parquet"

        file_size = self.writer.write([row for _, row in members], final_path)
        batch = ExportBatch(
            batch_name=batch_name,
            export_date=export_date,
            version_ids=[version.id for version, _ in members],
            article_count=len(members),
            file_path=str(final_path),
            file_size_bytes=file_size,
        )
        try:
            self.store.record_export_batch(batch)
        except (ConflictError, DurabilityError):
            # Unrecorded file; a later pass writes a fresh batch.
            final_path.unlink(missing_ok=True)
            raise
        return batch

    def export_pending(
        self,
        batch_size_limit: int | None = None,
        byte_size_limit: int | None = None,
        limit: int | None = None,
        report: StageReport | None = None,
    ) -> list[ExportBatch]:
        """
        Export every pending latest version; returns the batches written.

        A batch that fails to persist is reported and skipped; the remaining
        batches in the pass still run.
        """
        report = report or StageReport(stage=Stage.EXPORT)
        versions = self.state.pending_items(Stage.EXPORT, limit=limit)
        rows = self._validated_rows(versions, report)
        partitions = partition_rows(
            rows,
            max_records=batch_size_limit or self.config.export_batch_records,
            max_bytes=byte_size_limit or self.config.export_batch_bytes,
        )

        written: list[ExportBatch] = []
        for members in partitions:
            try:
                batch = self._write_batch(members)
            except (DurabilityError, ConflictError) as exc:
                report.fail(members[0][0].id, exc)
                emit_error_event(
                    "export_batch_failed",
                    exc,
                    run_id=self.run_id,
                    component="exporter",
                    stage=Stage.EXPORT.value,
                    version_ids=[version.id for version, _ in members],
                )
                continue

            written.append(batch)
            report.count("batches")
            report.count("exported", batch.article_count)
            emit_json_event(
                "export_batch_written",
                run_id=self.run_id,
                component="exporter",
                stage=Stage.EXPORT.value,
                batch_name=batch.batch_name,
                article_count=batch.article_count,
                file_size_bytes=batch.file_size_bytes,
            )
        return written

    def run(self, limit: int | None = None) -> StageReport:
        report = StageReport(stage=Stage.EXPORT)
        self.export_pending(limit=limit, report=report)
        report.ended_at = datetime.now(UTC)
        return report

    def rebuild_snapshot(self) -> tuple[Path, int]:
        """
        Regenerate metadata.parquet from every latest version.

        Export flags and batch history are left untouched.
        """
        counts = self.store.version_counts()
        rows = [metadata_row(version, counts.get(version.article_id, 1)) for version in self.store.iter_latest()]
        final_path = Path(self.config.export_dir) / METADATA_FILENAME
        self.writer.write(rows, final_path, columns=METADATA_COLUMNS)
        emit_json_event(
            "export_snapshot_rebuilt",
            run_id=self.run_id,
            component="exporter",
            path=str(final_path),
            article_count=len(rows),
        )
        return final_path, len(rows)
