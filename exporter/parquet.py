"""Row shaping and durable Parquet writes for export snapshots."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import jsonschema
import pandas as pd
import pyarrow as pa

from core.errors import DurabilityError, ValidationError
from core.fingerprint import canonical_json
from core.models import ArticleVersion
from core.paths import fsync_and_replace, temp_path_for

PROJECT_ROOT = Path(__file__).resolve().parent.parent
SCHEMAS_DIR = PROJECT_ROOT / "schemas"
ARTICLE_VERSION_SCHEMA = json.loads((SCHEMAS_DIR / "article_version.schema.json").read_text(encoding="utf-8"))

EXPORT_COLUMNS = [
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
    "source_created_at",
    "source_updated_at",
    "published_at",
    "version_created_at",
    "content_json",
    "content_hash",
    "authors_json",
    "author_count",
    "keywords_json",
    "collections_json",
    "collection_count",
    "attachments_json",
    "attachment_count",
]

METADATA_COLUMNS = [
    "article_id",
    "slug",
    "title",
    "abstract_preview",
    "authors_json",
    "author_count",
    "keywords_json",
    "collections_json",
    "collection_count",
    "doi",
    "source_created_at",
    "source_updated_at",
    "published_at",
    "url",
    "version_number",
    "has_multiple_versions",
    "export_batch",
    "content_identifier",
]

ABSTRACT_PREVIEW_CHARS = 500


def _iso(value: Any) -> str | None:
    return value.isoformat() if value is not None else None


def _json_list(items: list[Any]) -> str:
    return json.dumps(
        [item.model_dump(mode="json") if hasattr(item, "model_dump") else item for item in items],
        ensure_ascii=False,
        sort_keys=True,
    )


def version_to_row(version: ArticleVersion) -> dict[str, Any]:
    """Flatten one version into an export row; composite fields become JSON text."""
    return {
        "id": version.id,
        "article_id": version.article_id,
        "version_number": version.version_number,
        "is_latest": version.is_latest,
        "slug": version.slug,
        "title": version.title,
        "abstract": version.abstract,
        "doi": version.doi,
        "license": version.license,
        "url": version.url,
        "source_created_at": _iso(version.source_created_at),
        "source_updated_at": _iso(version.source_updated_at),
        "published_at": _iso(version.published_at),
        "version_created_at": version.created_at.isoformat(),
        "content_json": canonical_json(version.content_document) if version.content_document is not None else None,
        "content_hash": version.content_hash,
        "authors_json": _json_list(version.authors),
        "author_count": len(version.authors),
        "keywords_json": _json_list(version.keywords),
        "collections_json": _json_list(version.collections),
        "collection_count": len(version.collections),
        "attachments_json": _json_list(
            [ref.model_copy(update={"local_path": None}) for ref in version.attachments]
        ),
        "attachment_count": len(version.attachments),
    }


def metadata_row(version: ArticleVersion, version_count: int) -> dict[str, Any]:
    """Read-optimized row for metadata.parquet."""
    return {
        "article_id": version.article_id,
        "slug": version.slug,
        "title": version.title,
        "abstract_preview": (version.abstract or "")[:ABSTRACT_PREVIEW_CHARS],
        "authors_json": _json_list(version.authors),
        "author_count": len(version.authors),
        "keywords_json": _json_list(version.keywords),
        "collections_json": _json_list(version.collections),
        "collection_count": len(version.collections),
        "doi": version.doi,
        "source_created_at": _iso(version.source_created_at),
        "source_updated_at": _iso(version.source_updated_at),
        "published_at": _iso(version.published_at),
        "url": version.url,
        "version_number": version.version_number,
        "has_multiple_versions": version_count > 1,
        "export_batch": version.export_batch,
        "content_identifier": version.content_identifier,
    }


def validate_row(row: dict[str, Any]) -> None:
    """
    Check one export row against article_version.schema.json.

    Raises:
        ValidationError: when the row does not match.
    """
    try:
        jsonschema.validate(row, ARTICLE_VERSION_SCHEMA)
    except jsonschema.ValidationError as exc:
        raise ValidationError(f"Export validation failed for version {row.get('id')}: {exc.message}") from exc


def estimate_row_bytes(row: dict[str, Any]) -> int:
    """Serialized size estimate used for byte-bounded batching."""
    return len(canonical_json(row).encode("utf-8"))


class ParquetSnapshotWriter:
    """Write a DataFrame to Parquet so the final path only ever holds a complete file."""

    def __init__(self, compression: str = "zstd") -> None:
        self.compression = compression

    def _to_parquet(self, frame: pd.DataFrame, path: Path) -> None:
        frame.to_parquet(path, engine="pyarrow", compression=self.compression, index=False)

    def write(self, rows: list[dict[str, Any]], final_path: Path, columns: list[str] | None = None) -> int:
        """
        Write rows and return the final file size in bytes.

        Raises:
            DurabilityError: when serialization, flush or rename fails. No
                partial file is left at `final_path`.
        """
        frame = pd.DataFrame(rows, columns=columns or EXPORT_COLUMNS)
        try:
            temp_path = temp_path_for(final_path)
        except OSError as exc:
            raise DurabilityError(f"cannot stage snapshot {final_path}: {exc}") from exc
        try:
            self._to_parquet(frame, temp_path)
        except (OSError, ValueError, pa.ArrowException) as exc:
            temp_path.unlink(missing_ok=True)
            raise DurabilityError(f"failed to write snapshot {final_path}: {exc}") from exc
        fsync_and_replace(temp_path, final_path)
        return final_path.stat().st_size
