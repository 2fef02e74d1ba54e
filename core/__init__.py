"""Core module for article-archiver."""

from core.config import ArchiverConfig
from core.errors import ArchiverError, ConflictError, DurabilityError, TransientIOError, ValidationError
from core.models import (
    ArticleCandidate,
    ArticleVersion,
    AttachmentRef,
    Author,
    Bundle,
    ExportBatch,
    PublishResult,
    RunLog,
    Stage,
    StageReport,
    SyncCheckpoint,
    UpsertAction,
    UpsertResult,
)

__all__ = [
    "ArchiverConfig",
    "ArchiverError",
    "ConflictError",
    "DurabilityError",
    "TransientIOError",
    "ValidationError",
    "ArticleCandidate",
    "ArticleVersion",
    "AttachmentRef",
    "Author",
    "Bundle",
    "ExportBatch",
    "PublishResult",
    "RunLog",
    "Stage",
    "StageReport",
    "SyncCheckpoint",
    "UpsertAction",
    "UpsertResult",
]
