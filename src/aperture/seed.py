from __future__ import annotations

import logging
import os
from typing import Any

import yaml

from .errors import ConfigError
from .storage import (
    add_daily_word_reference,
    set_profile_topics,
    upsert_news_source,
    upsert_profile,
    upsert_topic,
    upsert_word,
)
from .utils import log_event

logger = logging.getLogger("aperture.seed")

SEED_KEYS = ("words", "daily_words", "topics", "news_sources", "profiles")


def load_seed_file(path: str) -> dict[str, Any]:
    if not os.path.exists(path):
        raise ConfigError(f"seed file not found: {path}")
    with open(path, "r", encoding="utf-8") as handle:
        try:
            data = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"seed file is not valid YAML: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError("seed file must contain a mapping")
    unknown = sorted(set(data) - set(SEED_KEYS))
    if unknown:
        raise ConfigError(f"unknown seed keys: {', '.join(unknown)}")
    return data


def import_seed(conn: Any, data: dict[str, Any]) -> dict[str, int]:
    """Upsert reference data; topics first so sources and profiles can link to them.

    ``daily_words`` maps a ``YYYY-MM-DD`` date to ``{"new": [...], "review": [...]}``.
    """
    counts = {key: 0 for key in SEED_KEYS}
    try:
        for word in data.get("words") or []:
            upsert_word(conn, str(word).strip(), origin="seed")
            counts["words"] += 1
        for date, groups in (data.get("daily_words") or {}).items():
            for word_type in ("new", "review"):
                for word in (groups or {}).get(word_type) or []:
                    word = str(word).strip()
                    upsert_word(conn, word, origin="seed")
                    add_daily_word_reference(conn, str(date), word, word_type)
                    counts["daily_words"] += 1
        for topic in data.get("topics") or []:
            upsert_topic(conn, topic)
            counts["topics"] += 1
        for source in data.get("news_sources") or []:
            if not source.get("url"):
                raise ConfigError(f"news source {source.get('name')!r} has no url")
            upsert_news_source(conn, source)
            counts["news_sources"] += 1
        for profile in data.get("profiles") or []:
            profile_id = upsert_profile(conn, profile)
            if "topics" in profile:
                set_profile_topics(conn, profile_id, [str(item) for item in profile["topics"]])
            counts["profiles"] += 1
    except Exception:
        conn.rollback()
        raise
    conn.commit()
    log_event(logger, logging.INFO, "seed_imported", **counts)
    return counts
