"""
Deterministic hashing and JSON rendering.

Everything that must be byte-stable across runs (content hashes, bundle
files, dry-run identifiers) goes through these helpers.
"""

import base64
import hashlib
import json
from typing import Any


def canonical_json(value: Any) -> str:
    """
    Render a value as compact canonical JSON.

    Keys are sorted and separators fixed, so equal values give equal text.
    """
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str)


def pretty_json(value: Any) -> str:
    """Render stable, human-readable JSON with a trailing newline."""
    return json.dumps(value, sort_keys=True, indent=2, ensure_ascii=False, default=str) + "\n"


def hash_content_document(document: dict[str, Any] | None) -> str | None:
    """
    Hash a content document for change detection.

    Returns None when there is no document, so "not scraped yet" never
    compares unequal to a real document.
    """
    if document is None:
        return None
    return hashlib.sha256(canonical_json(document).encode("utf-8")).hexdigest()


def sha256_bytes(data: bytes) -> str:
    """Hex SHA-256 of a byte string."""
    return hashlib.sha256(data).hexdigest()


def content_address(data: bytes) -> str:
    """
    Derive a 43-char URL-safe identifier from content.

    Used by dry runs to predict identifiers without uploading.
    """
    digest = hashlib.sha256(data).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")
