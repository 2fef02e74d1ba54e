"""
Runtime configuration for article-archiver.

One explicit ArchiverConfig object is built at startup (from defaults,
keyword overrides, or ARCHIVER_* environment variables) and handed to each
component's constructor. Nothing reads configuration from module globals.

Design: defaults are "safe + slow". Uploads are rate limited to one per
second, retries are bounded, and the circuit breaker opens quickly.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, SecretStr, model_validator


class ArchiverConfig(BaseModel):
    """
    Immutable settings shared by every pipeline stage.

    Paths default to a `data/` directory relative to the working directory.
    """

    model_config = ConfigDict(frozen=True)

    # ========================================================================
    # Storage Paths
    # ========================================================================

    db_path: Path = Path("data/sqlite/archive.db")
    """SQLite database holding every article version."""

    export_dir: Path = Path("data/parquet")
    """Root for Parquet batch snapshots (`articles/`) and `metadata.parquet`."""

    manifests_dir: Path = Path("data/manifests")
    """Root for per-version publication bundles."""

    attachments_dir: Path = Path("data/attachments")
    """Root for downloaded attachment files."""

    # ========================================================================
    # Export Batching
    # ========================================================================

    export_batch_records: int = Field(default=1000, ge=1)
    """Maximum rows per export batch."""

    export_batch_bytes: int = Field(default=32 * 1024 * 1024, ge=1)
    """Target serialized size per export batch (estimated from row JSON)."""

    export_compression: str = "zstd"
    """Parquet compression codec."""

    # ========================================================================
    # Concurrency
    # ========================================================================

    worker_count: int = Field(default=4, ge=1)
    """Bounded worker pool size within a stage."""

    # ========================================================================
    # Network Resilience (shared by every network collaborator call)
    # ========================================================================

    rate_per_second: float = Field(default=1.0, gt=0)
    """Token refill rate for network calls."""

    rate_burst: int = Field(default=1, ge=1)
    """Token bucket capacity."""

    retry_max_attempts: int = Field(default=5, ge=1)
    """Attempts per network call, including the first."""

    retry_base_delay: float = Field(default=1.0, ge=0)
    """Initial backoff delay in seconds."""

    retry_max_delay: float = Field(default=30.0, ge=0)
    """Backoff delay cap in seconds."""

    retry_jitter: float = Field(default=0.5, ge=0)
    """Maximum random jitter added to each backoff delay."""

    breaker_failure_threshold: int = Field(default=5, ge=1)
    """Consecutive failures before the circuit opens."""

    breaker_reset_seconds: float = Field(default=60.0, ge=0)
    """Time the circuit stays open before a half-open probe."""

    # ========================================================================
    # Checkpoint Backoff
    # ========================================================================

    checkpoint_max_failures: int = Field(default=5, ge=1)
    """Failures after which an item is held until manually cleared."""

    checkpoint_backoff_seconds: float = Field(default=60.0, ge=0)
    """Base delay before a failed item is offered again (doubles per failure)."""

    checkpoint_backoff_cap_seconds: float = Field(default=6 * 3600.0, ge=0)
    """Upper bound on the per-item retry delay."""

    # ========================================================================
    # Attachment Fetching
    # ========================================================================

    fetch_timeout_seconds: int = Field(default=60, ge=1)
    """Maximum time to wait for one attachment download."""

    max_attachment_bytes: int = Field(default=200_000_000, ge=1)
    """Attachments larger than this are rejected."""

    user_agent: str = "article-archiver/0.1"
    """User-Agent header for outbound requests."""

    allowed_protocols: frozenset[str] = frozenset({"http", "https"})
    """Only HTTP(S) downloads are allowed."""

    blocked_ip_ranges: tuple[str, ...] = (
        "127.0.0.1/8",
        "10.0.0.0/8",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "169.254.0.0/16",
        "224.0.0.0/4",
        "0.0.0.0/8",
        "::1/128",
        "fe80::/10",
        "fc00::/7",
        "ff00::/8",
    )
    """IP ranges that cannot be fetched (SSRF prevention)."""

    # ========================================================================
    # Network Storage
    # ========================================================================

    network_upload_url: str | None = None
    """Base URL of the upload service. Required for non-dry-run publishing."""

    network_token: SecretStr | None = None
    """Bearer credential for the upload service."""

    app_name: str = "Article-Archive"
    """Value of the App-Name tag attached to every upload."""

    cost_per_mib: float = Field(default=0.01, ge=0)
    """Advisory upload price used for cost estimates only."""

    @model_validator(mode="after")
    def _check_delays(self) -> "ArchiverConfig":
        if self.retry_max_delay < self.retry_base_delay:
            raise ValueError("retry_max_delay must be >= retry_base_delay")
        if not self.allowed_protocols:
            raise ValueError("allowed_protocols must not be empty")
        return self

    @property
    def batches_dir(self) -> Path:
        """Directory holding immutable batch snapshots."""
        return self.export_dir / "articles"

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        **overrides: Any,
    ) -> "ArchiverConfig":
        """
        Build config from `ARCHIVER_<FIELD>` environment variables.

        Explicit keyword overrides win over the environment. Values are
        coerced by pydantic, so numeric fields accept their string forms.
        """
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}
        for name in cls.model_fields:
            key = f"ARCHIVER_{name.upper()}"
            if key in env and env[key] != "":
                values[name] = env[key]
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
