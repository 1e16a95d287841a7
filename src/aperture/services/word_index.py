from __future__ import annotations

import logging
import re
from typing import Any, Iterable

from ..models import ArticleWithAnalysis
from ..storage import insert_word_index_entry
from ..utils import log_event

logger = logging.getLogger("aperture.word_index")

SNIPPET_MAX_CHARS = 200
SNIPPET_WINDOW = 80

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]")


def sanitize_word(word: str) -> str:
    return _NON_ALNUM_RE.sub("", word.strip().lower())


def context_snippet(sentence: str, word: str) -> str:
    snippet = sentence.strip()
    if len(snippet) <= SNIPPET_MAX_CHARS:
        return snippet
    index = snippet.lower().find(word)
    start = max(0, index - SNIPPET_WINDOW)
    end = min(len(snippet), index + SNIPPET_WINDOW)
    prefix = "..." if start > 0 else ""
    suffix = "..." if end < len(snippet) else ""
    return f"{prefix}{snippet[start:end]}{suffix}"


def index_article_words(
    conn: Any,
    article_id: str,
    articles: Iterable[ArticleWithAnalysis],
    target_words: Iterable[str],
) -> int:
    """Index each target word against its first sentence in the longest level.

    Sentences are the analyzed ``SentenceData`` of that level, so snippets match
    the stored sentence boundaries. Writes join the caller's transaction.
    Returns the number of entries written.
    """
    levels = [article for article in articles if article.content]
    if not levels:
        log_event(logger, logging.WARNING, "word_index_no_content", article_id=article_id)
        return 0
    main = max(levels, key=lambda article: len(article.content.split()))
    sentences = [sentence.text for sentence in main.sentences] or [main.content]

    written = 0
    seen: set[str] = set()
    for raw in target_words:
        word = sanitize_word(raw)
        if len(word) < 2 or word in seen:
            continue
        seen.add(word)
        pattern = re.compile(rf"\b{re.escape(word)}\b", re.IGNORECASE)
        match = next((sentence for sentence in sentences if pattern.search(sentence)), None)
        if match is None:
            continue
        insert_word_index_entry(
            conn,
            word=word,
            article_id=article_id,
            context_snippet=context_snippet(match, word),
            role="keyword",
        )
        written += 1
    log_event(logger, logging.INFO, "word_index_built", article_id=article_id, entries=written)
    return written
