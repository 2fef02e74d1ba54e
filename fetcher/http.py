"""Attachment downloads with SSRF protections and crash-safe replacement."""

from __future__ import annotations

import hashlib
import os
import socket
from datetime import UTC, datetime
from ipaddress import ip_address, ip_network
from pathlib import Path
from typing import Iterable
from urllib.parse import urljoin, urlparse

import requests

from core.config import ArchiverConfig
from core.errors import DurabilityError, TransientIOError, ValidationError
from core.models import ArticleVersion, AttachmentRef, CheckpointStatus, Stage, StageReport
from core.paths import fsync_and_replace, safe_path_component, temp_path_for
from core.structured_logging import emit_error_event, emit_json_event
from fetcher.retry import NetworkGuard
from storage.sqlite import SQLiteVersionStore
from sync.state import SyncStateManager
from sync.workers import KeyedWorkerPool

MAX_REDIRECTS = 5


class BodyLimitExceeded(ValidationError):
    """Raised when an attachment exceeds the configured size limit."""


def _blocked_networks(config: ArchiverConfig) -> list:
    """Build blocked network list from config."""
    return [ip_network(cidr, strict=False) for cidr in config.blocked_ip_ranges]


def _resolve_ip_addresses(hostname: str) -> set[str]:
    """Resolve hostname to a set of IP addresses."""
    try:
        infos = socket.getaddrinfo(hostname, None, proto=socket.IPPROTO_TCP)
    except socket.gaierror:
        return set()
    return {item[4][0] for item in infos}


def _is_blocked_ip(ip_text: str, blocked_networks: Iterable) -> bool:
    """Check if an IP is inside blocked ranges."""
    ip_obj = ip_address(ip_text)
    return any(ip_obj in network for network in blocked_networks)


def check_url_allowed(url: str, config: ArchiverConfig) -> None:
    """
    Refuse URLs with a disallowed scheme or resolving into blocked ranges.

    Raises:
        ValidationError: when the URL may not be fetched.
    """
    parsed = urlparse(url)
    if parsed.scheme.lower() not in config.allowed_protocols:
        raise ValidationError(f"protocol not allowed: {url}")
    hostname = parsed.hostname or ""
    if not hostname:
        raise ValidationError(f"URL has no host: {url}")
    blocked = _blocked_networks(config)
    if any(_is_blocked_ip(ip_text, blocked) for ip_text in _resolve_ip_addresses(hostname)):
        raise ValidationError(f"host resolves to a blocked IP range: {hostname}")


def classify_status(status_code: int, url: str) -> None:
    """Map HTTP failures to the pipeline's error kinds."""
    if status_code == 429 or status_code >= 500:
        raise TransientIOError(f"HTTP {status_code} from {url}")
    if status_code >= 400:
        raise ValidationError(f"HTTP {status_code} from {url}")


class AttachmentDownloader:
    """Fetch one attachment into place without ever exposing a partial file."""

    def __init__(
        self,
        config: ArchiverConfig,
        guard: NetworkGuard | None = None,
        session: requests.Session | None = None,
        run_id: str | None = None,
    ) -> None:
        self.config = config
        self.guard = guard or NetworkGuard.from_config(config, name="attachments", run_id=run_id)
        self.session = session or requests.Session()
        self.run_id = run_id

    def _open(self, url: str) -> requests.Response:
        """GET with manual redirect handling so every hop is checked."""
        current_url = url
        for hop in range(MAX_REDIRECTS + 1):
            check_url_allowed(current_url, self.config)
            try:
                response = self.session.get(
                    current_url,
                    headers={"User-Agent": self.config.user_agent},
                    timeout=self.config.fetch_timeout_seconds,
                    allow_redirects=False,
                    stream=True,
                )
            except (requests.Timeout, requests.ConnectionError) as exc:
                raise TransientIOError(f"fetch failed for {current_url}: {exc}") from exc
            except requests.RequestException as exc:
                raise ValidationError(f"fetch failed for {current_url}: {exc}") from exc

            if 300 <= response.status_code < 400 and response.headers.get("location"):
                response.close()
                if hop >= MAX_REDIRECTS:
                    break
                current_url = urljoin(current_url, response.headers["location"])
                continue

            if response.status_code >= 400:
                response.close()
                classify_status(response.status_code, current_url)
            return response

        raise ValidationError(f"redirects exceeded {MAX_REDIRECTS} for {url}")

    def _fetch_to(self, url: str, temp_path: Path) -> tuple[int, str, str | None]:
        response = self._open(url)
        digest = hashlib.sha256()
        total = 0
        try:
            with open(temp_path, "wb") as handle:
                for chunk in response.iter_content(chunk_size=65536):
                    if not chunk:
                        continue
                    total += len(chunk)
                    if total > self.config.max_attachment_bytes:
                        raise BodyLimitExceeded(f"attachment exceeds {self.config.max_attachment_bytes} bytes: {url}")
                    digest.update(chunk)
                    handle.write(chunk)
        except requests.RequestException as exc:
            raise TransientIOError(f"download interrupted for {url}: {exc}") from exc
        except OSError as exc:
            raise DurabilityError(f"failed writing attachment from {url}: {exc}") from exc
        finally:
            response.close()
        content_type = response.headers.get("content-type")
        if content_type:
            content_type = content_type.split(";", 1)[0].strip().lower()
        return total, digest.hexdigest(), content_type

    def download(self, ref: AttachmentRef, destination: Path) -> AttachmentRef:
        """
        Download `ref.source_url` to `destination`.

        A previous copy at `destination` is replaced only after the new one
        is complete and flushed.
        """
        if not ref.source_url:
            raise ValidationError(f"attachment {ref.filename} has no source_url")

        try:
            temp_path = temp_path_for(destination)
        except OSError as exc:
            raise DurabilityError(f"cannot stage attachment {destination}: {exc}") from exc
        try:
            size, sha256, content_type = self.guard.call(
                lambda: self._fetch_to(ref.source_url, temp_path),
                operation="download_attachment",
            )
        except BaseException:
            temp_path.unlink(missing_ok=True)
            raise
        fsync_and_replace(temp_path, destination)

        emit_json_event(
            "attachment_downloaded",
            run_id=self.run_id,
            component="fetcher",
            filename=ref.filename,
            url=ref.source_url,
            bytes_received=size,
            sha256=sha256,
        )
        return ref.model_copy(
            update={
                "local_path": str(destination),
                "size": size,
                "sha256": sha256,
                "content_type": content_type or ref.content_type,
            }
        )


class AttachmentFetchStage:
    """Download every attachment the latest versions still lack."""

    def __init__(
        self,
        store: SQLiteVersionStore,
        config: ArchiverConfig,
        downloader: AttachmentDownloader | None = None,
        state: SyncStateManager | None = None,
        pool: KeyedWorkerPool | None = None,
        run_id: str | None = None,
    ) -> None:
        self.store = store
        self.config = config
        self.downloader = downloader or AttachmentDownloader(config, run_id=run_id)
        self.state = state or SyncStateManager(store, config, run_id=run_id)
        self.pool = pool or KeyedWorkerPool(config.worker_count)
        self.run_id = run_id

    def destination_for(self, version: ArticleVersion, ref: AttachmentRef) -> Path:
        return (
            Path(self.config.attachments_dir)
            / safe_path_component(version.article_id)
            / f"v{version.version_number}"
            / ref.filename
        )

    def _fetch_version(self, version: ArticleVersion) -> int:
        fetched = 0
        for ref in version.attachments:
            if ref.local_path and os.path.exists(ref.local_path):
                continue
            if not ref.source_url:
                continue
            downloaded = self.downloader.download(ref, self.destination_for(version, ref))
            self.store.record_attachment_download(version.id, downloaded)
            fetched += 1
        return fetched

    def run(self, limit: int | None = None) -> StageReport:
        report = StageReport(stage=Stage.ATTACHMENTS)
        versions = self.state.pending_items(Stage.ATTACHMENTS, limit=limit)
        outcomes = self.pool.run(versions, key_fn=lambda v: v.article_id, fn=self._fetch_version)

        for outcome in outcomes:
            version = outcome.item
            if outcome.ok:
                report.count("fetched", outcome.result or 0)
                report.count("succeeded")
                self.state.checkpoint(Stage.ATTACHMENTS, version.id, CheckpointStatus.SUCCEEDED)
                continue
            exc = outcome.error
            if isinstance(exc, ValidationError):
                report.skip(version.id, exc)
                self.state.checkpoint(Stage.ATTACHMENTS, version.id, CheckpointStatus.SKIPPED, exc)
            else:
                report.fail(version.id, exc)
                self.state.checkpoint(Stage.ATTACHMENTS, version.id, CheckpointStatus.FAILED, exc)
            emit_error_event(
                "attachment_fetch_failed",
                exc,
                run_id=self.run_id,
                level="warning",
                component="fetcher",
                version_id=version.id,
            )
        report.ended_at = datetime.now(UTC)
        return report
