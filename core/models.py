"""
Core Pydantic models for article-archiver.

Design principles:
- Composite values (authors, attachments, keywords, content document) are
  typed sub-structures; they become JSON text only at the storage boundary
- One immutable ArticleVersion per row; history is never rewritten
- Deterministic serialization (for hashing, bundles and exports)
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator

from core.errors import ValidationError


def _utc_now() -> datetime:
    return datetime.now(UTC)


# ============================================================================
# Enums
# ============================================================================

class UpsertAction(str, Enum):
    """What an upsert did to the store."""
    INSERTED = "inserted"  # First version of a new article
    NEW_VERSION = "new_version"  # Substantive change, version bumped
    ENRICHED = "enriched"  # Latest row improved in place
    UNCHANGED = "unchanged"  # No writes


class Stage(str, Enum):
    """Pipeline stages, in execution order."""
    INGEST = "ingest"
    ATTACHMENTS = "attachments"
    EXPORT = "export"
    MANIFEST = "manifest"
    PUBLISH = "publish"


class CheckpointStatus(str, Enum):
    """Outcome recorded for one item in one stage."""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunStatus(str, Enum):
    """Status of a run."""
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


# ============================================================================
# Sub-structures
# ============================================================================

class Author(BaseModel):
    """One contributor as listed on the article."""
    name: str
    orcid: Optional[str] = None
    affiliation: Optional[str] = None
    is_corresponding: bool = False

    def completeness(self) -> int:
        """Count populated optional fields (used by the richer-value merge)."""
        return sum(1 for value in (self.orcid, self.affiliation) if value)


class AttachmentRef(BaseModel):
    """
    A file referenced by the content document.

    `local_path` is set once the file has been downloaded; `content_identifier`
    once it has been uploaded as part of a bundle.
    """
    filename: str
    size: Optional[int] = None
    source_url: Optional[str] = None
    local_path: Optional[str] = None
    content_type: Optional[str] = None
    sha256: Optional[str] = None
    content_identifier: Optional[str] = None

    @field_validator("filename")
    @classmethod
    def validate_filename(cls, v: str) -> str:
        """Reject names that would escape the bundle's attachments/ directory."""
        name = v.strip()
        if not name or "/" in name or "\\" in name or name in {".", ".."}:
            raise ValueError(f"invalid attachment filename: {v!r}")
        return name


# ============================================================================
# Incoming Record
# ============================================================================

class ArticleCandidate(BaseModel):
    """
    One raw record from the content-fetch collaborator, validated.

    Same content fields as ArticleVersion but without any pipeline state.
    """
    article_id: str

    slug: Optional[str] = None
    title: Optional[str] = None
    abstract: Optional[str] = None
    doi: Optional[str] = None
    license: Optional[str] = None
    url: Optional[str] = None

    authors: List[Author] = Field(default_factory=list)
    keywords: List[str] = Field(default_factory=list)
    collections: List[str] = Field(default_factory=list)
    attachments: List[AttachmentRef] = Field(default_factory=list)

    # Structured document (e.g. ProseMirror JSON); None when not scraped yet
    content_document: Optional[Dict[str, Any]] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    published_at: Optional[datetime] = None

    @field_validator("article_id")
    @classmethod
    def validate_article_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("article_id must not be blank")
        return v

    @classmethod
    def from_record(cls, record: Any) -> "ArticleCandidate":
        """
        Validate a raw dict into a candidate.

        Raises:
            ValidationError: when the record is not a mapping, lacks a stable
                identifier, or has malformed fields.
        """
        if not isinstance(record, dict):
            raise ValidationError(f"record must be an object, got {type(record).__name__}")
        article_id = record.get("article_id") or record.get("id")
        if article_id is None or not str(article_id).strip():
            raise ValidationError("record has no stable article_id")
        payload = dict(record)
        payload["article_id"] = str(article_id)
        payload.pop("id", None)
        try:
            return cls.model_validate(payload)
        except PydanticValidationError as exc:
            raise ValidationError(f"record {article_id}: {exc.error_count()} invalid field(s): {exc}") from exc


# ============================================================================
# Stored Version
# ============================================================================

class ArticleVersion(BaseModel):
    """
    One immutable snapshot of an article's metadata + content.

    Content fields only change in place through the enrichment merge;
    export and publish state only move forward.
    """
    id: str  # "{article_id}_v{version_number}"
    article_id: str
    version_number: int = Field(ge=1)
    is_latest: bool = True

    slug: Optional[str] = None
    title: Optional[str] = None
    abstract: Optional[str] = None
    doi: Optional[str] = None
    license: Optional[str] = None
    url: Optional[str] = None

    authors: List[Author] = Field(default_factory=list)
    keywords: List[str] = Field(default_factory=list)
    collections: List[str] = Field(default_factory=list)
    attachments: List[AttachmentRef] = Field(default_factory=list)
    content_document: Optional[Dict[str, Any]] = None
    content_hash: Optional[str] = None

    source_created_at: Optional[datetime] = None
    source_updated_at: Optional[datetime] = None
    published_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utc_now)
    updated_at: datetime = Field(default_factory=_utc_now)

    # Export state
    exported: bool = False
    export_batch: Optional[str] = None
    export_date: Optional[datetime] = None

    # Publish state
    manifest_generated: bool = False
    manifest_generated_at: Optional[datetime] = None
    manifest_path: Optional[str] = None
    manifest_uploaded: bool = False
    manifest_uploaded_at: Optional[datetime] = None
    content_identifier: Optional[str] = None

    @property
    def content_available(self) -> bool:
        return self.content_document is not None

    @property
    def attachments_fetched(self) -> bool:
        return all(item.local_path for item in self.attachments)


class UpsertResult(BaseModel):
    """Outcome of one upsert."""
    action: UpsertAction
    article_id: str
    version_number: int
    version_id: str


# ============================================================================
# Export Batches
# ============================================================================

class ExportBatch(BaseModel):
    """
    An immutable Parquet snapshot of many latest-version rows.

    Written once; `remote_identifier` is also write-once.
    """
    batch_name: str
    export_date: datetime
    version_ids: List[str] = Field(default_factory=list)
    article_count: int = 0
    file_path: str
    file_size_bytes: int = 0
    remote_identifier: Optional[str] = None
    uploaded_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utc_now)


# ============================================================================
# Bundles / Publishing
# ============================================================================

class BundleFile(BaseModel):
    """One file inside a publication bundle."""
    path: str  # Relative to the bundle root, '/'-separated
    size: int
    sha256: str
    content_type: str


class Bundle(BaseModel):
    """The self-contained file set for one article version."""
    version_id: str
    article_id: str
    version_number: int
    directory: str
    files: List[BundleFile] = Field(default_factory=list)
    missing_attachments: List[str] = Field(default_factory=list)

    @property
    def total_bytes(self) -> int:
        return sum(item.size for item in self.files)


class PublishResult(BaseModel):
    """Outcome of publishing one bundle."""
    version_id: str
    content_identifier: Optional[str] = None
    file_identifiers: Dict[str, str] = Field(default_factory=dict)
    uploaded_files: int = 0
    reused_files: int = 0
    uploaded_bytes: int = 0
    estimated_cost: float = 0.0
    skipped: bool = False
    dry_run: bool = False


# ============================================================================
# Sync State / Reporting
# ============================================================================

class SyncCheckpoint(BaseModel):
    """Retry/error bookkeeping for one item in one stage."""
    stage: Stage
    item_id: str
    status: CheckpointStatus
    retry_count: int = 0
    last_error: Optional[str] = None
    updated_at: datetime = Field(default_factory=_utc_now)


class FailedItem(BaseModel):
    """One failed item with its cause."""
    item_id: str
    error_type: str
    error: str


class StageReport(BaseModel):
    """Per-outcome counts and failures for one stage pass."""
    stage: Stage
    counts: Dict[str, int] = Field(default_factory=dict)
    failures: List[FailedItem] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=_utc_now)
    ended_at: Optional[datetime] = None

    def count(self, outcome: str, amount: int = 1) -> None:
        self.counts[outcome] = self.counts.get(outcome, 0) + amount

    def _record(self, outcome: str, item_id: str, exc: BaseException) -> None:
        self.count(outcome)
        self.failures.append(
            FailedItem(item_id=item_id, error_type=type(exc).__name__, error=str(exc))
        )

    def fail(self, item_id: str, exc: BaseException) -> None:
        self._record("failed", item_id, exc)

    def skip(self, item_id: str, exc: BaseException) -> None:
        """Invalid input: counted and listed, but not a failure."""
        self._record("skipped", item_id, exc)

    @property
    def failed(self) -> int:
        return self.counts.get("failed", 0)


class RunLog(BaseModel):
    """
    Log entry for an entire pipeline run (one or more stages).
    """
    id: str = Field(default_factory=lambda: str(uuid4()))
    stages: List[Stage] = Field(default_factory=list)

    started_at: datetime = Field(default_factory=_utc_now)
    ended_at: Optional[datetime] = None

    status: RunStatus = RunStatus.RUNNING
    error_message: Optional[str] = None
    dry_run: bool = False

    reports: List[StageReport] = Field(default_factory=list)

    @property
    def error_count(self) -> int:
        return sum(report.failed for report in self.reports)
