"""Post-processing for free-form provider output: JSON bodies, URLs and citations."""

from __future__ import annotations

import logging
import math
import re
import urllib.error
import urllib.request
from typing import Any, Iterable

from .utils import log_event, unique_strings

logger = logging.getLogger("aperture.extraction")

GROUNDING_REDIRECT_MARKER = "vertexaisearch.cloud.google.com/grounding-api-redirect"

_JSON_BLOCK_RE = re.compile(r"```json\n?([\s\S]*?)\n?```", re.IGNORECASE)
_GENERIC_BLOCK_RE = re.compile(r"```\n?([\s\S]*?)\n?```")
_URL_RE = re.compile(r"https?://[^\s<>()\[\]'\"]+")
_URL_TRAILING_RE = re.compile(r"[)\]}<>.,;:，。；：]+$")
_CITATION_RE = re.compile(r"\[\s*\d+(?:,\s*\d+)*\s*\]")
_PARAGRAPH_BREAK_RE = re.compile(r"\n\s*\n")
_SENTENCE_END_RE = re.compile(r"([.!?])\s+(?=[A-Z0-9])")


def extract_json(text: str) -> str:
    """Best-effort isolation of a JSON object from chatty model output.

    Tries a fenced ``json`` block, then any fenced block whose body starts
    with ``{``, then the span from the first ``{`` to the last ``}``. Falls
    back to the trimmed text so the caller's JSON parser reports the error.
    """
    match = _JSON_BLOCK_RE.search(text)
    if match and match.group(1):
        return match.group(1).strip()

    match = _GENERIC_BLOCK_RE.search(text)
    if match and match.group(1):
        candidate = match.group(1).strip()
        if candidate.startswith("{"):
            return candidate

    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end != -1 and end > start:
        return text[start : end + 1].strip()
    return text.strip()


def clean_url(raw: str) -> str:
    value = raw.strip().lstrip("<").rstrip(">")
    return _URL_TRAILING_RE.sub("", value)


def extract_http_urls_from_text(text: str) -> list[str]:
    urls = [clean_url(match) for match in _URL_RE.findall(text or "")]
    return [url for url in urls if url]


def collect_http_urls(value: Any) -> list[str]:
    """Walk nested dicts/lists/tuples and harvest every URL found in strings.

    Containers already visited are skipped, so self-referencing structures
    terminate.
    """
    urls: list[str] = []
    seen: set[int] = set()
    stack: list[Any] = [value]
    while stack:
        item = stack.pop()
        if item is None:
            continue
        if isinstance(item, str):
            urls.extend(extract_http_urls_from_text(item))
            continue
        if not isinstance(item, (dict, list, tuple, set)):
            continue
        if id(item) in seen:
            continue
        seen.add(id(item))
        children = list(item.values()) if isinstance(item, dict) else list(item)
        # Reverse so the walk keeps document order.
        stack.extend(reversed(children))
    return urls


def strip_citations(text: str) -> str:
    return _CITATION_RE.sub("", text)


def resolve_redirect_url(url: str, timeout_seconds: float = 5) -> str:
    if GROUNDING_REDIRECT_MARKER not in url:
        return url
    request = urllib.request.Request(url, method="HEAD")
    try:
        with urllib.request.urlopen(request, timeout=timeout_seconds) as response:
            final_url = response.geturl()
    except (urllib.error.URLError, OSError, ValueError) as exc:
        log_event(logger, logging.WARNING, "redirect_resolve_failed", url=url[:80], error=str(exc))
        return url
    if final_url and final_url != url:
        log_event(logger, logging.DEBUG, "redirect_resolved", url=url[:80], resolved=final_url)
        return final_url
    return url


def resolve_redirect_urls(urls: Iterable[str], timeout_seconds: float = 5) -> list[str]:
    return unique_strings(resolve_redirect_url(url, timeout_seconds) for url in urls)


def build_source_urls(
    *,
    validated: dict[str, Any],
    news_summary: str,
    response_text: str,
    grounding_urls: Iterable[str] = (),
    limit: int = 5,
    resolve: bool = True,
) -> list[str]:
    raw_sources: list[str] = []
    if isinstance(validated.get("source"), str) and validated["source"]:
        raw_sources = [validated["source"]]
    elif isinstance(validated.get("sources"), list):
        raw_sources = [item for item in validated["sources"] if isinstance(item, str)]

    text_urls = extract_http_urls_from_text(news_summary) + extract_http_urls_from_text(
        response_text
    )
    merged = unique_strings([*raw_sources, *text_urls, *grounding_urls])[:limit]
    if not resolve:
        return merged
    return resolve_redirect_urls(merged)


def ensure_content_paragraphs(content: str, level: int) -> str:
    """Normalize article body into blank-line separated paragraphs.

    Existing paragraph breaks are kept and cleaned. A single wall of text is
    split at sentence ends and regrouped into two (levels 1 and 2) or three
    (level 3) paragraphs.
    """
    text = content.replace("\r\n", "\n").strip()
    if not text:
        return text

    if _PARAGRAPH_BREAK_RE.search(text):
        paragraphs = [
            _collapse_whitespace(part) for part in re.split(r"\n\s*\n+", text)
        ]
        return "\n\n".join(part for part in paragraphs if part)

    flattened = _collapse_whitespace(text)
    if not flattened:
        return flattened
    sentences = [
        part.strip()
        for part in _SENTENCE_END_RE.sub(r"\1\n", flattened).split("\n")
        if part.strip()
    ]
    if len(sentences) <= 1:
        return flattened

    desired = 3 if level == 3 else 2
    per_paragraph = max(2, math.ceil(len(sentences) / desired))
    paragraphs = [
        " ".join(sentences[idx : idx + per_paragraph])
        for idx in range(0, len(sentences), per_paragraph)
    ]
    return "\n\n".join(paragraphs)


def _collapse_whitespace(text: str) -> str:
    text = re.sub(r"\s*\n\s*", " ", text)
    return re.sub(r"\s{2,}", " ", text).strip()
