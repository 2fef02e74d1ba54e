"""Network storage collaborator: the append-only, content-addressed upload service."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Any

import requests

from core.config import ArchiverConfig
from core.errors import TransientIOError, ValidationError
from core.fingerprint import canonical_json, content_address
from fetcher.http import classify_status

PATH_MANIFEST_TYPE = "arweave/paths"
PATH_MANIFEST_VERSION = "0.2.0"
PATH_MANIFEST_CONTENT_TYPE = "application/x.arweave-manifest+json"

Tags = list[dict[str, str]]


def make_tags(content_type: str, app_name: str, **extra: str) -> Tags:
    """Tags in upload order: Content-Type, App-Name, then extras."""
    tags = [
        {"name": "Content-Type", "value": content_type},
        {"name": "App-Name", "value": app_name},
    ]
    tags.extend({"name": name.replace("_", "-"), "value": value} for name, value in extra.items())
    return tags


def path_manifest_document(paths: dict[str, str], index: str) -> dict[str, Any]:
    """Map of bundle-relative path -> uploaded file id, with an index entry."""
    if index not in paths:
        raise ValidationError(f"index path {index!r} is not among the uploaded files")
    return {
        "manifest": PATH_MANIFEST_TYPE,
        "version": PATH_MANIFEST_VERSION,
        "index": {"path": index},
        "paths": {path: {"id": paths[path]} for path in sorted(paths)},
    }


def path_manifest_bytes(paths: dict[str, str], index: str) -> bytes:
    return canonical_json(path_manifest_document(paths, index)).encode("utf-8")


class NetworkStorageClient(ABC):
    """
    Upload-only view of the storage network.

    Identifiers are returned on acceptance; the network is eventually
    consistent, so callers store ids and never read them back.
    """

    @abstractmethod
    def upload_file(self, data: bytes, tags: Tags) -> str:
        """Upload one file; returns its content identifier."""
        pass

    @abstractmethod
    def upload_path_manifest(self, paths: dict[str, str], index: str = "metadata.json") -> str:
        """Upload a path manifest over already-uploaded files; returns its identifier."""
        pass


class HttpNetworkStorageClient(NetworkStorageClient):
    """Bundler-style HTTP upload endpoint (`POST {base}/tx`, JSON `{"id": ...}` reply)."""

    def __init__(self, config: ArchiverConfig, session: requests.Session | None = None) -> None:
        if not config.network_upload_url:
            raise ValueError("network_upload_url is required for uploads (set ARCHIVER_NETWORK_UPLOAD_URL)")
        self.base_url = config.network_upload_url.rstrip("/")
        self.app_name = config.app_name
        self.timeout_seconds = config.fetch_timeout_seconds
        self.user_agent = config.user_agent
        self._token = config.network_token
        self.session = session or requests.Session()

    def _post(self, data: bytes, tags: Tags) -> str:
        content_type = next((tag["value"] for tag in tags if tag["name"] == "Content-Type"), "application/octet-stream")
        headers = {
            "Content-Type": content_type,
            "User-Agent": self.user_agent,
            "X-Tags": canonical_json(tags),
        }
        if self._token is not None:
            headers["Authorization"] = f"Bearer {self._token.get_secret_value()}"

        url = f"{self.base_url}/tx"
        try:
            response = self.session.post(url, data=data, headers=headers, timeout=self.timeout_seconds)
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise TransientIOError(f"upload to {url} failed: {exc}") from exc
        classify_status(response.status_code, url)
        try:
            identifier = response.json().get("id")
        except (ValueError, AttributeError) as exc:
            raise TransientIOError(f"unreadable upload response from {url}: {exc}") from exc
        if not identifier:
            raise TransientIOError(f"upload response from {url} carried no id")
        return str(identifier)

    def upload_file(self, data: bytes, tags: Tags) -> str:
        return self._post(data, tags)

    def upload_path_manifest(self, paths: dict[str, str], index: str = "metadata.json") -> str:
        return self._post(
            path_manifest_bytes(paths, index),
            make_tags(PATH_MANIFEST_CONTENT_TYPE, self.app_name),
        )


class DryRunNetworkClient(NetworkStorageClient):
    """Predicts identifiers from content; nothing leaves the machine."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.uploaded_bytes = 0
        self.upload_count = 0

    def _record(self, data: bytes) -> str:
        with self._lock:
            self.uploaded_bytes += len(data)
            self.upload_count += 1
        return content_address(data)

    def upload_file(self, data: bytes, tags: Tags) -> str:
        return self._record(data)

    def upload_path_manifest(self, paths: dict[str, str], index: str = "metadata.json") -> str:
        return self._record(path_manifest_bytes(paths, index))
