"""Paginated JSON API connector."""

from __future__ import annotations

from typing import Any, Iterator

import requests

from connectors.base import RecordSource
from core.config import ArchiverConfig
from core.errors import TransientIOError, ValidationError
from fetcher.http import classify_status
from fetcher.retry import NetworkGuard


def _page_items(payload: Any) -> tuple[list[Any], bool | None]:
    """Return (records, has_more) from one page body."""
    if isinstance(payload, list):
        return payload, None
    if not isinstance(payload, dict):
        raise ValidationError(f"unexpected page payload: {type(payload).__name__}")
    for key in ("articles", "items", "data", "records"):
        if isinstance(payload.get(key), list):
            has_more = payload.get("has_more")
            if has_more is None and "next" in payload:
                has_more = bool(payload["next"])
            return payload[key], has_more
    raise ValidationError("page payload has no record list")


class HttpApiRecordSource(RecordSource):
    """
    Walk `?page=N&limit=M` pages until an empty or short page.

    Every page request goes through the shared NetworkGuard (rate limit,
    breaker, retry).
    """

    def __init__(
        self,
        base_url: str,
        config: ArchiverConfig,
        page_size: int = 100,
        max_pages: int | None = None,
        session: requests.Session | None = None,
        guard: NetworkGuard | None = None,
        run_id: str | None = None,
    ) -> None:
        if page_size < 1:
            raise ValueError("page_size must be >= 1")
        self.base_url = base_url
        self.config = config
        self.page_size = page_size
        self.max_pages = max_pages
        self.session = session or requests.Session()
        self.guard = guard or NetworkGuard.from_config(config, name="record-api", run_id=run_id)
        self.name = f"api:{base_url}"

    def _get_page(self, page: int) -> Any:
        try:
            response = self.session.get(
                self.base_url,
                params={"page": page, "limit": self.page_size},
                headers={"User-Agent": self.config.user_agent, "Accept": "application/json"},
                timeout=self.config.fetch_timeout_seconds,
            )
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise TransientIOError(f"page {page} request failed: {exc}") from exc
        classify_status(response.status_code, self.base_url)
        try:
            return response.json()
        except ValueError as exc:
            raise ValidationError(f"page {page} is not JSON: {exc}") from exc

    def iter_records(self) -> Iterator[Any]:
        page = 1
        while self.max_pages is None or page <= self.max_pages:
            payload = self.guard.call(lambda: self._get_page(page), operation="fetch_records_page")
            items, has_more = _page_items(payload)
            yield from items
            if not items or has_more is False:
                return
            if has_more is None and len(items) < self.page_size:
                return
            page += 1
