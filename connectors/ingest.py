"""Ingest stage: validate raw records and upsert them into the version store."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Iterable

from connectors.base import MalformedRecord
from core.config import ArchiverConfig
from core.errors import ConflictError, ValidationError
from core.models import ArticleCandidate, CheckpointStatus, Stage, StageReport, UpsertResult
from core.structured_logging import emit_json_event
from storage.sqlite import SQLiteVersionStore
from sync.state import SyncStateManager
from sync.workers import KeyedWorkerPool


class IngestCoordinator:
    """
    Feed records through change detection.

    Invalid records are counted and skipped. Candidates for distinct
    article_ids are upserted concurrently; candidates for the same id run in
    input order. A ConflictError is retried once.
    """

    def __init__(
        self,
        store: SQLiteVersionStore,
        config: ArchiverConfig | None = None,
        pool: KeyedWorkerPool | None = None,
        state: SyncStateManager | None = None,
        run_id: str | None = None,
    ) -> None:
        config = config or ArchiverConfig()
        self.store = store
        self.pool = pool or KeyedWorkerPool(config.worker_count)
        self.state = state or SyncStateManager(store, config, run_id=run_id)
        self.run_id = run_id

    def _upsert(self, candidate: ArticleCandidate) -> UpsertResult:
        try:
            return self.store.upsert(candidate, run_id=self.run_id)
        except ConflictError as exc:
            emit_json_event(
                "ingest_conflict_retry",
                run_id=self.run_id,
                level="warning",
                component="ingest",
                article_id=candidate.article_id,
                error=str(exc),
            )
            return self.store.upsert(candidate, run_id=self.run_id)

    def ingest(self, records: Iterable[Any], limit: int | None = None) -> StageReport:
        """Validate and upsert records; returns per-action counts."""
        report = StageReport(stage=Stage.INGEST)
        candidates: list[ArticleCandidate] = []

        for index, raw in enumerate(records):
            if limit is not None and index >= limit:
                break
            report.count("received")
            if isinstance(raw, MalformedRecord):
                report.skip(raw.location, ValidationError(raw.error))
                continue
            try:
                candidates.append(ArticleCandidate.from_record(raw))
            except ValidationError as exc:
                item_id = f"record-{index}"
                if isinstance(raw, dict):
                    item_id = str(raw.get("article_id") or raw.get("id") or item_id)
                report.skip(item_id, exc)
                emit_json_event(
                    "ingest_record_invalid",
                    run_id=self.run_id,
                    level="warning",
                    component="ingest",
                    item_id=item_id,
                    error=str(exc),
                )

        outcomes = self.pool.run(candidates, key_fn=lambda c: c.article_id, fn=self._upsert)
        for outcome in outcomes:
            article_id = outcome.item.article_id
            if outcome.ok and outcome.result is not None:
                report.count(outcome.result.action.value)
                continue
            exc = outcome.error
            if isinstance(exc, ValidationError):
                report.skip(article_id, exc)
            else:
                report.fail(article_id, exc)
                self.state.checkpoint(Stage.INGEST, article_id, CheckpointStatus.FAILED, exc)

        report.ended_at = datetime.now(UTC)
        emit_json_event(
            "ingest_completed",
            run_id=self.run_id,
            component="ingest",
            counts=report.counts,
        )
        return report
