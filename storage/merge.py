"""
Change detection and the richer-value-wins enrichment merge.

Deterministic rule used for every candidate:

1. No stored row: insert version 1.
2. A candidate is stale when both timestamps are known and the candidate's
   `updated_at` is older than the stored `source_updated_at`. Stale
   candidates never create versions.
3. A non-stale candidate creates a new version when its `updated_at` is
   newer than the stored one, or when both sides carry a content document
   and the document hashes differ.
4. Otherwise enrichable fields are merged in place when the candidate is
   richer; if nothing improves, the upsert is a no-op.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from core.fingerprint import hash_content_document
from core.models import ArticleCandidate, ArticleVersion, AttachmentRef, Author, UpsertAction


def _as_utc(value: datetime | None) -> datetime | None:
    """Compare naive timestamps as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _text_len(value: str | None) -> int:
    return len(value.strip()) if value else 0


@dataclass
class ChangeDecision:
    """Classification of a candidate against the stored latest row."""

    action: UpsertAction
    updates: dict[str, Any] = field(default_factory=dict)
    reason: str = ""


def is_stale(candidate: ArticleCandidate, stored: ArticleVersion) -> bool:
    """Return True when the candidate predates the stored version."""
    incoming = _as_utc(candidate.updated_at)
    current = _as_utc(stored.source_updated_at)
    return incoming is not None and current is not None and incoming < current


def is_substantive_change(candidate: ArticleCandidate, stored: ArticleVersion) -> tuple[bool, str]:
    """Decide whether the candidate warrants a new version."""
    if is_stale(candidate, stored):
        return False, "stale"

    incoming = _as_utc(candidate.updated_at)
    current = _as_utc(stored.source_updated_at)
    if incoming is not None and current is not None and incoming > current:
        return True, "updated_at advanced"
    if incoming is not None and current is None:
        return True, "updated_at first seen"

    candidate_hash = hash_content_document(candidate.content_document)
    if candidate_hash is not None and stored.content_hash is not None and candidate_hash != stored.content_hash:
        return True, "content changed"
    return False, "same signal"


def _richer_text(stored: str | None, incoming: str | None) -> str | None:
    """Longer non-blank text wins; returns the winner only when it changes."""
    if _text_len(incoming) > _text_len(stored):
        return incoming
    return None


def _richer_list(stored: list[str], incoming: list[str]) -> list[str] | None:
    if len(incoming) > len(stored):
        return list(incoming)
    return None


def _richer_authors(stored: list[Author], incoming: list[Author]) -> list[Author] | None:
    if len(incoming) > len(stored):
        return list(incoming)
    if incoming and len(incoming) == len(stored):
        if sum(a.completeness() for a in incoming) > sum(a.completeness() for a in stored):
            return list(incoming)
    return None


def merge_attachments(
    stored: list[AttachmentRef],
    incoming: list[AttachmentRef],
) -> list[AttachmentRef] | None:
    """
    Union attachment refs by filename.

    Existing refs keep their local state (downloaded path, hash, identifier);
    only missing descriptive fields are filled. Returns None when nothing
    changes.
    """
    by_name = {item.filename: item for item in stored}
    merged: list[AttachmentRef] = []
    changed = False

    for item in stored:
        new = next((ref for ref in incoming if ref.filename == item.filename), None)
        if new is None:
            merged.append(item)
            continue
        fills = {
            name: getattr(new, name)
            for name in ("size", "source_url", "content_type")
            if getattr(item, name) in (None, "") and getattr(new, name) not in (None, "")
        }
        if fills:
            changed = True
            merged.append(item.model_copy(update=fills))
        else:
            merged.append(item)

    for ref in incoming:
        if ref.filename in by_name:
            continue
        by_name[ref.filename] = ref
        merged.append(ref.model_copy(update={"local_path": None, "sha256": None, "content_identifier": None}))
        changed = True

    return merged if changed else None


def enrichment_updates(candidate: ArticleCandidate, stored: ArticleVersion) -> dict[str, Any]:
    """
    Compute in-place improvements for the stored latest row.

    Never replaces a longer or more complete value with a sparser one.
    """
    updates: dict[str, Any] = {}

    for name in ("title", "abstract"):
        winner = _richer_text(getattr(stored, name), getattr(candidate, name))
        if winner is not None:
            updates[name] = winner

    for name in ("keywords", "collections"):
        winner = _richer_list(getattr(stored, name), getattr(candidate, name))
        if winner is not None:
            updates[name] = winner

    authors = _richer_authors(stored.authors, candidate.authors)
    if authors is not None:
        updates["authors"] = authors

    attachments = merge_attachments(stored.attachments, candidate.attachments)
    if attachments is not None:
        updates["attachments"] = attachments

    if stored.content_document is None and candidate.content_document is not None:
        updates["content_document"] = candidate.content_document
        updates["content_hash"] = hash_content_document(candidate.content_document)

    for name in ("doi", "license", "slug", "url"):
        if not getattr(stored, name) and getattr(candidate, name):
            updates[name] = getattr(candidate, name)
    if stored.published_at is None and candidate.published_at is not None:
        updates["published_at"] = candidate.published_at

    return updates


def classify(candidate: ArticleCandidate, stored: ArticleVersion | None) -> ChangeDecision:
    """Classify a candidate as inserted, new_version, enriched or unchanged."""
    if stored is None:
        return ChangeDecision(UpsertAction.INSERTED, reason="first version")

    substantive, reason = is_substantive_change(candidate, stored)
    if substantive:
        return ChangeDecision(UpsertAction.NEW_VERSION, reason=reason)

    updates = enrichment_updates(candidate, stored)
    if updates:
        return ChangeDecision(UpsertAction.ENRICHED, updates=updates, reason=reason)
    return ChangeDecision(UpsertAction.UNCHANGED, reason=reason)
