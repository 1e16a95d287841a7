from __future__ import annotations

import logging
import random
import re
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterable
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

import feedparser
from bs4 import BeautifulSoup

from .config import NewsConfig
from .models import NewsItem
from .storage import list_active_news_sources
from .utils import log_event, parse_date_value, parse_task_date

logger = logging.getLogger("aperture.news")

FetchFn = Callable[[str, dict[str, str], int], tuple[int | None, bytes | None, str | None]]


def _fetch_url(
    url: str,
    headers: dict[str, str],
    timeout: int,
    max_retries: int = 0,
    backoff_seconds: int = 1,
) -> tuple[int | None, bytes | None, str | None]:
    attempt = 0
    while attempt <= max_retries:
        try:
            request = Request(url, headers=headers)
            with urlopen(request, timeout=timeout) as response:
                status = response.getcode()
                content = response.read()
            return status, content, None
        except HTTPError as exc:
            return exc.code, None, str(exc)
        except URLError as exc:
            if attempt >= max_retries:
                return None, None, str(exc)
            time.sleep(backoff_seconds * (attempt + 1))
            attempt += 1
        except Exception as exc:  # noqa: BLE001
            return None, None, str(exc)
    return None, None, "Unknown fetch error"


class NewsFetcher:
    """Best-effort aggregation of recent feed items for the selection stage."""

    def __init__(
        self,
        conn: Any,
        config: NewsConfig,
        *,
        fetch: FetchFn | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.conn = conn
        self.config = config
        self._fetch = fetch or (lambda url, headers, timeout: _fetch_url(url, headers, timeout))
        self._rng = rng or random.Random()

    def fetch_aggregate(
        self,
        topic_ids: list[str] | None,
        task_date: str | None = None,
        exclude_links: Iterable[str] = (),
    ) -> list[NewsItem]:
        sources = list_active_news_sources(self.conn, topic_ids or None)
        if not sources:
            log_event(logger, logging.WARNING, "news_no_sources", topics=",".join(topic_ids or []))
            return []

        selected = self._sample(sources)
        reference = parse_task_date(task_date) if task_date else datetime.now(tz=timezone.utc)
        cutoff = reference - timedelta(hours=self.config.window_hours)

        items: list[NewsItem] = []
        failed = 0
        workers = max(1, min(self.config.max_workers, len(selected)))
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {
                executor.submit(self._fetch_source, source, cutoff): source for source in selected
            }
            for future in as_completed(futures):
                source = futures[future]
                try:
                    items.extend(future.result())
                except Exception as exc:  # noqa: BLE001
                    failed += 1
                    log_event(
                        logger,
                        logging.WARNING,
                        "news_fetch_failed",
                        source_id=source["id"],
                        url=source["url"],
                        error=str(exc),
                    )

        items.sort(key=lambda item: item.published_at or "", reverse=True)
        items = items[: self.config.max_items]
        excluded = set(exclude_links)
        filtered = [item for item in items if item.link not in excluded]
        log_event(
            logger,
            logging.INFO,
            "news_aggregated",
            sources=len(selected),
            failed=failed,
            items=len(filtered),
            excluded=len(items) - len(filtered),
        )
        return filtered

    def _sample(self, sources: list[dict[str, str]]) -> list[dict[str, str]]:
        if len(sources) <= self.config.max_sources:
            return sources
        return self._rng.sample(sources, self.config.max_sources)

    def _fetch_source(self, source: dict[str, str], cutoff: datetime) -> list[NewsItem]:
        headers = {"User-Agent": self.config.user_agent}
        status, content, error = self._fetch(source["url"], headers, self.config.timeout_seconds)
        if error or content is None:
            raise RuntimeError(error or f"http_status {status}")
        parsed = feedparser.parse(content)
        if parsed.bozo and not parsed.entries:
            raise RuntimeError(f"feed_parse_error: {parsed.get('bozo_exception')}")

        fetched_at = datetime.now(tz=timezone.utc)
        items: list[NewsItem] = []
        for entry in parsed.entries[: self.config.items_per_source]:
            title = (entry.get("title") or "").strip() or "Untitled"
            link = entry.get("link") or ""
            if not link:
                continue
            published = parse_date_value(
                entry.get("published_parsed")
                or entry.get("published")
                or entry.get("updated_parsed")
                or entry.get("updated")
            ) or fetched_at
            if published <= cutoff:
                continue
            items.append(
                NewsItem(
                    title=title,
                    link=link,
                    summary=_plain_summary(entry.get("summary") or entry.get("description") or ""),
                    source_name=source["name"],
                    published_at=published.isoformat(),
                )
            )
        return items


def _plain_summary(html: str) -> str:
    if not html:
        return ""
    text = BeautifulSoup(html, "html.parser").get_text(" ", strip=True)
    return re.sub(r"\s+", " ", text).strip()
