"""SQLite persistence for article versions, export batches, publish state and checkpoints."""

from __future__ import annotations

import json
import sqlite3
import threading
import weakref
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Iterator

from core.errors import ConflictError, DurabilityError, ValidationError
from core.fingerprint import canonical_json, hash_content_document
from core.models import (
    ArticleCandidate,
    ArticleVersion,
    AttachmentRef,
    BundleFile,
    CheckpointStatus,
    ExportBatch,
    RunLog,
    Stage,
    SyncCheckpoint,
    UpsertAction,
    UpsertResult,
)
from core.structured_logging import emit_json_event
from storage.merge import classify

MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"

_JSON_LIST_FIELDS = ("authors", "keywords", "collections", "attachments")
_DATETIME_FIELDS = (
    "source_created_at",
    "source_updated_at",
    "published_at",
    "created_at",
    "updated_at",
    "export_date",
    "manifest_generated_at",
    "manifest_uploaded_at",
)
_CONTENT_COLUMNS = (
    "id",
    "article_id",
    "version_number",
    "is_latest",
    "slug",
    "title",
    "abstract",
    "doi",
    "license",
    "url",
    "authors_json",
    "keywords_json",
    "collections_json",
    "attachments_json",
    "content_document",
    "content_hash",
    "source_created_at",
    "source_updated_at",
    "published_at",
    "created_at",
    "updated_at",
)


def _utc_now() -> datetime:
    """Return timezone-aware UTC timestamp."""
    return datetime.now(UTC)


def _parse_iso_datetime(value: str | None) -> datetime | None:
    """Parse ISO datetime string into datetime, preserving None."""
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _isoformat(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def _to_column(name: str, value: Any) -> tuple[str, Any]:
    """Map one model field to its column name and storage value."""
    if name in _JSON_LIST_FIELDS:
        items = [item.model_dump(mode="json") if hasattr(item, "model_dump") else item for item in value]
        return f"{name}_json", json.dumps(items, sort_keys=True, ensure_ascii=False)
    if name == "content_document":
        return name, canonical_json(value) if value is not None else None
    if name in _DATETIME_FIELDS:
        return name, _isoformat(value)
    if isinstance(value, bool):
        return name, int(value)
    return name, value


def _row_to_version(row: sqlite3.Row) -> ArticleVersion:
    """Build an ArticleVersion from one article_versions row."""
    content = row["content_document"]
    return ArticleVersion(
        id=str(row["id"]),
        article_id=str(row["article_id"]),
        version_number=int(row["version_number"]),
        is_latest=bool(row["is_latest"]),
        slug=row["slug"],
        title=row["title"],
        abstract=row["abstract"],
        doi=row["doi"],
        license=row["license"],
        url=row["url"],
        authors=json.loads(row["authors_json"] or "[]"),
        keywords=json.loads(row["keywords_json"] or "[]"),
        collections=json.loads(row["collections_json"] or "[]"),
        attachments=json.loads(row["attachments_json"] or "[]"),
        content_document=json.loads(content) if content else None,
        content_hash=row["content_hash"],
        source_created_at=_parse_iso_datetime(row["source_created_at"]),
        source_updated_at=_parse_iso_datetime(row["source_updated_at"]),
        published_at=_parse_iso_datetime(row["published_at"]),
        created_at=_parse_iso_datetime(row["created_at"]) or _utc_now(),
        updated_at=_parse_iso_datetime(row["updated_at"]) or _utc_now(),
        exported=bool(row["exported"]),
        export_batch=row["export_batch"],
        export_date=_parse_iso_datetime(row["export_date"]),
        manifest_generated=bool(row["manifest_generated"]),
        manifest_generated_at=_parse_iso_datetime(row["manifest_generated_at"]),
        manifest_path=row["manifest_path"],
        manifest_uploaded=bool(row["manifest_uploaded"]),
        manifest_uploaded_at=_parse_iso_datetime(row["manifest_uploaded_at"]),
        content_identifier=row["content_identifier"],
    )


def _row_to_batch(row: sqlite3.Row) -> ExportBatch:
    return ExportBatch(
        batch_name=str(row["batch_name"]),
        export_date=_parse_iso_datetime(row["export_date"]) or _utc_now(),
        version_ids=json.loads(row["version_ids_json"] or "[]"),
        article_count=int(row["article_count"]),
        file_path=str(row["file_path"]),
        file_size_bytes=int(row["file_size_bytes"]),
        remote_identifier=row["remote_identifier"],
        uploaded_at=_parse_iso_datetime(row["uploaded_at"]),
        created_at=_parse_iso_datetime(row["created_at"]) or _utc_now(),
    )


def version_id_for(article_id: str, version_number: int) -> str:
    """Row id for one article version."""
    return f"{article_id}_v{version_number}"


class KeyedLocks:
    """Hand out one re-entrant lock per key (single writer per article_id)."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        # Entries vanish once no holder references them.
        self._locks: weakref.WeakValueDictionary[str, Any] = weakref.WeakValueDictionary()

    def __len__(self) -> int:
        return len(self._locks)

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
        with lock:
            yield


class SQLiteVersionStore:
    """
    Authoritative record of every article version and its lineage.

    Every mutation is one `BEGIN IMMEDIATE` transaction, so a crash leaves
    the database in the last committed state.
    """

    def __init__(self, db_path: str | Path, initialize: bool = True, busy_timeout: float = 30.0) -> None:
        """Initialize store and optionally apply startup schema upgrades."""
        self.db_path = Path(db_path)
        self.busy_timeout = busy_timeout
        self._locks = KeyedLocks()
        if initialize:
            self.initialize_schema()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        connection = sqlite3.connect(self.db_path, timeout=self.busy_timeout, isolation_level=None)
        connection.row_factory = sqlite3.Row
        try:
            connection.execute("PRAGMA foreign_keys = ON")
            yield connection
        finally:
            connection.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """One unit of work; rolled back on any exception."""
        with self._connect() as connection:
            connection.execute("BEGIN IMMEDIATE")
            try:
                yield connection
            except BaseException:
                connection.execute("ROLLBACK")
                raise
            connection.execute("COMMIT")

    def initialize_schema(self) -> None:
        """Apply initial migration schema to an empty database."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        sql = (MIGRATIONS_DIR / "0001_init.sql").read_text(encoding="utf-8")
        with self._connect() as connection:
            connection.execute("PRAGMA journal_mode = WAL")
            existing = connection.execute(
                "SELECT 1 FROM sqlite_master WHERE type='table' AND name='article_versions'"
            ).fetchone()
            if existing:
                return
            connection.executescript(sql)

    # ------------------------------------------------------------------
    # Upsert / change detection
    # ------------------------------------------------------------------

    @staticmethod
    def _version_from_candidate(
        candidate: ArticleCandidate,
        version_number: int,
        now: datetime,
    ) -> ArticleVersion:
        return ArticleVersion(
            id=version_id_for(candidate.article_id, version_number),
            article_id=candidate.article_id,
            version_number=version_number,
            is_latest=True,
            slug=candidate.slug,
            title=candidate.title,
            abstract=candidate.abstract,
            doi=candidate.doi,
            license=candidate.license,
            url=candidate.url,
            authors=candidate.authors,
            keywords=candidate.keywords,
            collections=candidate.collections,
            attachments=[
                ref.model_copy(update={"local_path": None, "sha256": None, "content_identifier": None})
                for ref in candidate.attachments
            ],
            content_document=candidate.content_document,
            content_hash=hash_content_document(candidate.content_document),
            source_created_at=candidate.created_at,
            source_updated_at=candidate.updated_at,
            published_at=candidate.published_at,
            created_at=now,
            updated_at=now,
        )

    @staticmethod
    def _insert_version(connection: sqlite3.Connection, version: ArticleVersion) -> None:
        params = dict(_to_column(name, getattr(version, name)) for name in (
            "id",
            "article_id",
            "version_number",
            "is_latest",
            "slug",
            "title",
            "abstract",
            "doi",
            "license",
            "url",
            "authors",
            "keywords",
            "collections",
            "attachments",
            "content_document",
            "content_hash",
            "source_created_at",
            "source_updated_at",
            "published_at",
            "created_at",
            "updated_at",
        ))
        placeholders = ", ".join(f":{column}" for column in _CONTENT_COLUMNS)
        connection.execute(
            f"INSERT INTO article_versions ({', '.join(_CONTENT_COLUMNS)}) VALUES ({placeholders})",
            params,
        )

    @staticmethod
    def _update_fields(
        connection: sqlite3.Connection,
        version_id: str,
        updates: dict[str, Any],
        now: datetime,
    ) -> None:
        assignments: list[str] = []
        params: list[Any] = []
        for name, value in updates.items():
            column, stored = _to_column(name, value)
            assignments.append(f"{column} = ?")
            params.append(stored)
        assignments.append("updated_at = ?")
        params.extend([now.isoformat(), version_id])
        connection.execute(
            f"UPDATE article_versions SET {', '.join(assignments)} WHERE id = ? AND is_latest = 1",
            params,
        )

    @staticmethod
    def _load_latest(connection: sqlite3.Connection, article_id: str) -> ArticleVersion | None:
        row = connection.execute(
            "SELECT * FROM article_versions WHERE article_id = ? AND is_latest = 1",
            (article_id,),
        ).fetchone()
        return _row_to_version(row) if row else None

    def upsert(self, candidate: ArticleCandidate, run_id: str | None = None) -> UpsertResult:
        """
        Insert, version, enrich or skip one candidate.

        Writes for one article_id are serialized; different ids may run
        concurrently.

        Raises:
            ValidationError: when the candidate has no stable identifier.
            ConflictError: when version assignment collides with another writer.
        """
        if not candidate.article_id or not candidate.article_id.strip():
            raise ValidationError("candidate has no stable article_id")

        with self._locks.hold(candidate.article_id):
            try:
                with self._transaction() as connection:
                    stored = self._load_latest(connection, candidate.article_id)
                    decision = classify(candidate, stored)
                    now = _utc_now()

                    if decision.action == UpsertAction.INSERTED:
                        version = self._version_from_candidate(candidate, 1, now)
                        self._insert_version(connection, version)
                    elif decision.action == UpsertAction.NEW_VERSION:
                        assert stored is not None
                        flipped = connection.execute(
                            """
                            UPDATE article_versions
                            SET is_latest = 0, updated_at = ?
                            WHERE id = ? AND is_latest = 1
                            """,
                            (now.isoformat(), stored.id),
                        ).rowcount
                        if flipped != 1:
                            raise ConflictError(f"latest version of {candidate.article_id} changed concurrently")
                        version = self._version_from_candidate(candidate, stored.version_number + 1, now)
                        self._insert_version(connection, version)
                    elif decision.action == UpsertAction.ENRICHED:
                        assert stored is not None
                        self._update_fields(connection, stored.id, decision.updates, now)
                        version = stored
                    else:
                        assert stored is not None
                        version = stored
            except sqlite3.IntegrityError as exc:
                raise ConflictError(f"version conflict for {candidate.article_id}: {exc}") from exc

        emit_json_event(
            "store_upsert",
            run_id=run_id,
            component="storage",
            article_id=candidate.article_id,
            action=decision.action.value,
            version_number=version.version_number,
            reason=decision.reason,
            fields=sorted(decision.updates),
        )
        return UpsertResult(
            action=decision.action,
            article_id=candidate.article_id,
            version_number=version.version_number,
            version_id=version.id,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_latest(self, article_id: str) -> ArticleVersion | None:
        """Return the latest version of one article."""
        with self._connect() as connection:
            return self._load_latest(connection, article_id)

    def get_version(self, article_id: str, version_number: int) -> ArticleVersion | None:
        """Return one specific version."""
        return self.get_version_by_id(version_id_for(article_id, version_number))

    def get_version_by_id(self, version_id: str) -> ArticleVersion | None:
        with self._connect() as connection:
            row = connection.execute(
                "SELECT * FROM article_versions WHERE id = ?",
                (version_id,),
            ).fetchone()
            return _row_to_version(row) if row else None

    def list_versions(self, article_id: str) -> list[ArticleVersion]:
        """Return every version of an article, oldest first."""
        with self._connect() as connection:
            rows = connection.execute(
                """
                SELECT * FROM article_versions
                WHERE article_id = ?
                ORDER BY version_number
                """,
                (article_id,),
            ).fetchall()
            return [_row_to_version(row) for row in rows]

    def _list_latest_where(self, condition: str, limit: int | None = None) -> list[ArticleVersion]:
        with self._connect() as connection:
            rows = connection.execute(
                f"""
                SELECT * FROM article_versions
                WHERE is_latest = 1 AND ({condition})
                ORDER BY COALESCE(published_at, '') DESC, id
                LIMIT ?
                """,
                (limit if limit is not None else -1,),
            ).fetchall()
            return [_row_to_version(row) for row in rows]

    def iter_latest(self) -> Iterator[ArticleVersion]:
        """Yield every latest version in deterministic order."""
        yield from self._list_latest_where("1 = 1")

    def list_unexported(self, limit: int | None = None) -> list[ArticleVersion]:
        return self._list_latest_where("exported = 0", limit)

    def list_missing_attachments(self, limit: int | None = None) -> list[ArticleVersion]:
        candidates = self._list_latest_where("manifest_uploaded = 0 AND attachments_json <> '[]'")
        pending = [
            version
            for version in candidates
            if any(ref.source_url and not ref.local_path for ref in version.attachments)
        ]
        return pending if limit is None else pending[:limit]

    def list_needing_manifest(self, limit: int | None = None) -> list[ArticleVersion]:
        return self._list_latest_where("manifest_generated = 0 AND content_document IS NOT NULL", limit)

    def list_needing_publish(self, limit: int | None = None) -> list[ArticleVersion]:
        return self._list_latest_where("manifest_generated = 1 AND manifest_uploaded = 0", limit)

    def version_counts(self) -> dict[str, int]:
        """Return article_id -> number of stored versions."""
        with self._connect() as connection:
            rows = connection.execute(
                "SELECT article_id, COUNT(*) AS n FROM article_versions GROUP BY article_id"
            ).fetchall()
            return {str(row["article_id"]): int(row["n"]) for row in rows}

    def stats(self) -> dict[str, int]:
        """Summary counters for status output."""
        with self._connect() as connection:
            row = connection.execute(
                """
                SELECT
                    COUNT(*) AS total_versions,
                    COUNT(DISTINCT article_id) AS unique_articles,
                    SUM(CASE WHEN is_latest = 1 AND exported = 0 THEN 1 ELSE 0 END) AS unexported,
                    SUM(CASE WHEN is_latest = 1 AND manifest_generated = 1 THEN 1 ELSE 0 END) AS manifests_generated,
                    SUM(CASE WHEN is_latest = 1 AND manifest_uploaded = 1 THEN 1 ELSE 0 END) AS manifests_uploaded
                FROM article_versions
                """
            ).fetchone()
            batches = connection.execute(
                """
                SELECT COUNT(*) AS batch_count,
                       SUM(CASE WHEN remote_identifier IS NOT NULL THEN 1 ELSE 0 END) AS uploaded_batches
                FROM export_batches
                """
            ).fetchone()
        summary = {key: int(row[key] or 0) for key in row.keys()}
        summary.update({key: int(batches[key] or 0) for key in batches.keys()})
        return summary

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    def record_attachment_download(self, version_id: str, downloaded: AttachmentRef) -> None:
        """
        Store local state for one downloaded attachment, in place.

        Reads the current attachment list inside the transaction so a
        concurrent enrichment is never overwritten. A bundle built but not
        yet uploaded is marked stale so the manifest stage rebuilds it with
        the new file.
        """
        with self._transaction() as connection:
            row = connection.execute(
                "SELECT attachments_json FROM article_versions WHERE id = ?",
                (version_id,),
            ).fetchone()
            if row is None:
                raise ValidationError(f"unknown version: {version_id}")
            refs = [AttachmentRef.model_validate(item) for item in json.loads(row["attachments_json"] or "[]")]
            updated = [
                ref.model_copy(
                    update={
                        "local_path": downloaded.local_path,
                        "size": downloaded.size,
                        "sha256": downloaded.sha256,
                        "content_type": downloaded.content_type or ref.content_type,
                    }
                )
                if ref.filename == downloaded.filename
                else ref
                for ref in refs
            ]
            column, value = _to_column("attachments", updated)
            connection.execute(
                f"""
                UPDATE article_versions
                SET {column} = ?, updated_at = ?,
                    manifest_generated = CASE WHEN manifest_uploaded = 0 THEN 0 ELSE manifest_generated END
                WHERE id = ?
                """,
                (value, _utc_now().isoformat(), version_id),
            )

    # ------------------------------------------------------------------
    # Export batches
    # ------------------------------------------------------------------

    def next_batch_sequence(self, date_prefix: str) -> int:
        """Next free batch number for a date; batches are never renumbered."""
        with self._connect() as connection:
            rows = connection.execute(
                "SELECT batch_name FROM export_batches WHERE batch_name LIKE ?",
                (f"{date_prefix}_batch-%",),
            ).fetchall()
        highest = 0
        for row in rows:
            suffix = str(row["batch_name"]).rsplit("-", 1)[-1]
            if suffix.isdigit():
                highest = max(highest, int(suffix))
        return highest + 1

    def record_export_batch(self, batch: ExportBatch) -> None:
        """
        Record a durable batch and mark its rows exported, atomically.

        Raises:
            ConflictError: when the batch name exists or any member row is
                already assigned to a batch. Nothing is committed.
            DurabilityError: when the database cannot commit the batch (locked,
                disk full, I/O error). Nothing is committed.
        """
        export_date = batch.export_date.isoformat()
        try:
            with self._transaction() as connection:
                connection.execute(
                    """
                    INSERT INTO export_batches (
                        batch_name, export_date, article_count, version_ids_json,
                        file_path, file_size_bytes, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        batch.batch_name,
                        export_date,
                        batch.article_count,
                        json.dumps(batch.version_ids),
                        batch.file_path,
                        batch.file_size_bytes,
                        batch.created_at.isoformat(),
                    ),
                )
                for version_id in batch.version_ids:
                    changed = connection.execute(
                        """
                        UPDATE article_versions
                        SET exported = 1, export_batch = ?, export_date = ?
                        WHERE id = ? AND exported = 0 AND export_batch IS NULL
                        """,
                        (batch.batch_name, export_date, version_id),
                    ).rowcount
                    if changed != 1:
                        raise ConflictError(f"version {version_id} is missing or already exported")
        except sqlite3.IntegrityError as exc:
            raise ConflictError(f"cannot record batch {batch.batch_name}: {exc}") from exc
        except sqlite3.DatabaseError as exc:
            raise DurabilityError(f"cannot record batch {batch.batch_name}: {exc}") from exc

    def list_export_batches(self) -> list[ExportBatch]:
        with self._connect() as connection:
            rows = connection.execute("SELECT * FROM export_batches ORDER BY batch_name").fetchall()
            return [_row_to_batch(row) for row in rows]

    def get_export_batch(self, batch_name: str) -> ExportBatch | None:
        with self._connect() as connection:
            row = connection.execute(
                "SELECT * FROM export_batches WHERE batch_name = ?",
                (batch_name,),
            ).fetchone()
            return _row_to_batch(row) if row else None

    def set_batch_remote_identifier(self, batch_name: str, remote_identifier: str) -> None:
        """Record where a batch was uploaded (write-once)."""
        with self._transaction() as connection:
            changed = connection.execute(
                """
                UPDATE export_batches
                SET remote_identifier = ?, uploaded_at = ?
                WHERE batch_name = ? AND remote_identifier IS NULL
                """,
                (remote_identifier, _utc_now().isoformat(), batch_name),
            ).rowcount
            if changed != 1:
                raise ConflictError(f"batch {batch_name} is missing or already uploaded")

    # ------------------------------------------------------------------
    # Publish state (forward only)
    # ------------------------------------------------------------------

    def mark_manifest_generated(self, version_id: str, manifest_path: str) -> None:
        """Flag a version's bundle as built; requires a content document."""
        with self._transaction() as connection:
            changed = connection.execute(
                """
                UPDATE article_versions
                SET manifest_generated = 1, manifest_generated_at = ?, manifest_path = ?
                WHERE id = ? AND content_document IS NOT NULL
                """,
                (_utc_now().isoformat(), manifest_path, version_id),
            ).rowcount
            if changed != 1:
                raise ValidationError(f"version {version_id} is missing or has no content document")

    def mark_manifest_uploaded(self, version_id: str, content_identifier: str) -> None:
        """
        Record the permanent content identifier for a version.

        Raises:
            ValidationError: when the bundle was never generated.
            ConflictError: when the version is already marked uploaded.
        """
        with self._transaction() as connection:
            changed = connection.execute(
                """
                UPDATE article_versions
                SET manifest_uploaded = 1, manifest_uploaded_at = ?, content_identifier = ?
                WHERE id = ? AND manifest_generated = 1 AND manifest_uploaded = 0
                """,
                (_utc_now().isoformat(), content_identifier, version_id),
            ).rowcount
            if changed == 1:
                return
            row = connection.execute(
                "SELECT manifest_generated, manifest_uploaded FROM article_versions WHERE id = ?",
                (version_id,),
            ).fetchone()
        if row is None or not row["manifest_generated"]:
            raise ValidationError(f"version {version_id} has no generated manifest")
        raise ConflictError(f"version {version_id} is already uploaded")

    def reset_publish_state(self, article_id: str | None = None, version_id: str | None = None) -> int:
        """
        Clear upload state to force republication.

        Version history, export state and generated bundles are untouched.
        With neither argument, every version is reset. Returns the number of
        versions reset.
        """
        if version_id is not None:
            condition, params = "id = ?", [version_id]
        elif article_id is not None:
            condition, params = "article_id = ?", [article_id]
        else:
            condition, params = "1 = 1", []

        with self._transaction() as connection:
            ids = [
                str(row["id"])
                for row in connection.execute(
                    f"SELECT id FROM article_versions WHERE {condition}",
                    params,
                ).fetchall()
            ]
            for item in ids:
                connection.execute("DELETE FROM uploaded_files WHERE version_id = ?", (item,))
            changed = connection.execute(
                f"""
                UPDATE article_versions
                SET manifest_uploaded = 0, manifest_uploaded_at = NULL, content_identifier = NULL
                WHERE ({condition}) AND (manifest_uploaded = 1 OR content_identifier IS NOT NULL)
                """,
                params,
            ).rowcount
        return int(changed)

    def get_uploaded_files(self, version_id: str) -> dict[str, tuple[str, str]]:
        """Return path -> (sha256, content_identifier) for files already uploaded."""
        with self._connect() as connection:
            rows = connection.execute(
                "SELECT path, sha256, content_identifier FROM uploaded_files WHERE version_id = ?",
                (version_id,),
            ).fetchall()
            return {str(row["path"]): (str(row["sha256"]), str(row["content_identifier"])) for row in rows}

    def save_uploaded_file(self, version_id: str, bundle_file: BundleFile, content_identifier: str) -> None:
        with self._transaction() as connection:
            connection.execute(
                """
                INSERT INTO uploaded_files (version_id, path, sha256, size, content_identifier, uploaded_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(version_id, path) DO UPDATE SET
                    sha256 = excluded.sha256,
                    size = excluded.size,
                    content_identifier = excluded.content_identifier,
                    uploaded_at = excluded.uploaded_at
                """,
                (
                    version_id,
                    bundle_file.path,
                    bundle_file.sha256,
                    bundle_file.size,
                    content_identifier,
                    _utc_now().isoformat(),
                ),
            )

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    def get_checkpoint(self, stage: Stage, item_id: str) -> SyncCheckpoint | None:
        with self._connect() as connection:
            row = connection.execute(
                "SELECT * FROM sync_checkpoints WHERE stage = ? AND item_id = ?",
                (stage.value, item_id),
            ).fetchone()
        if row is None:
            return None
        return SyncCheckpoint(
            stage=Stage(row["stage"]),
            item_id=str(row["item_id"]),
            status=CheckpointStatus(row["status"]),
            retry_count=int(row["retry_count"]),
            last_error=row["last_error"],
            updated_at=_parse_iso_datetime(row["updated_at"]) or _utc_now(),
        )

    def list_checkpoints(self, stage: Stage, status: CheckpointStatus | None = None) -> list[SyncCheckpoint]:
        query = "SELECT item_id FROM sync_checkpoints WHERE stage = ?"
        params: list[Any] = [stage.value]
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        with self._connect() as connection:
            item_ids = [str(row["item_id"]) for row in connection.execute(query + " ORDER BY item_id", params)]
        return [cp for cp in (self.get_checkpoint(stage, item) for item in item_ids) if cp is not None]

    def save_checkpoint(self, checkpoint: SyncCheckpoint) -> None:
        with self._transaction() as connection:
            connection.execute(
                """
                INSERT INTO sync_checkpoints (stage, item_id, status, retry_count, last_error, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(stage, item_id) DO UPDATE SET
                    status = excluded.status,
                    retry_count = excluded.retry_count,
                    last_error = excluded.last_error,
                    updated_at = excluded.updated_at
                """,
                (
                    checkpoint.stage.value,
                    checkpoint.item_id,
                    checkpoint.status.value,
                    checkpoint.retry_count,
                    checkpoint.last_error,
                    checkpoint.updated_at.isoformat(),
                ),
            )

    def delete_checkpoints(self, stage: Stage | None = None, item_id: str | None = None) -> int:
        clauses: list[str] = []
        params: list[Any] = []
        if stage is not None:
            clauses.append("stage = ?")
            params.append(stage.value)
        if item_id is not None:
            clauses.append("item_id = ?")
            params.append(item_id)
        where = " AND ".join(clauses) or "1 = 1"
        with self._transaction() as connection:
            return int(connection.execute(f"DELETE FROM sync_checkpoints WHERE {where}", params).rowcount)

    # ------------------------------------------------------------------
    # Run log
    # ------------------------------------------------------------------

    def create_run_log(self, run_log: RunLog) -> None:
        """
        Insert a new run_log row.

        Raises:
            ConflictError: when a run with the same id was already recorded.
        """
        try:
            with self._transaction() as connection:
                connection.execute(
                    """
                    INSERT INTO run_log (id, stages, started_at, ended_at, status, error_message, dry_run, reports_json)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        run_log.id,
                        json.dumps([stage.value for stage in run_log.stages]),
                        run_log.started_at.isoformat(),
                        _isoformat(run_log.ended_at),
                        run_log.status.value,
                        run_log.error_message,
                        int(run_log.dry_run),
                        json.dumps([report.model_dump(mode="json") for report in run_log.reports]),
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise ConflictError(f"run {run_log.id} already recorded") from exc

    def update_run_log(self, run_log: RunLog) -> None:
        """Update end-state and stage reports for a run."""
        with self._transaction() as connection:
            connection.execute(
                """
                UPDATE run_log
                SET ended_at = ?, status = ?, error_message = ?, reports_json = ?
                WHERE id = ?
                """,
                (
                    _isoformat(run_log.ended_at),
                    run_log.status.value,
                    run_log.error_message,
                    json.dumps([report.model_dump(mode="json") for report in run_log.reports]),
                    run_log.id,
                ),
            )
