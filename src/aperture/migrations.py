from __future__ import annotations

import logging
from typing import Any, Callable

from .utils import log_event, utc_now_iso

Migration = Callable[[Any], None]

logger = logging.getLogger("aperture.migrations")


def apply_migrations(conn) -> list[str]:
    """Apply every pending migration in one transaction; returns the versions applied."""
    conn.execute("BEGIN IMMEDIATE")
    try:
        conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_migrations "
            "(version TEXT PRIMARY KEY, applied_at TEXT NOT NULL)"
        )
        done = {row[0] for row in conn.execute("SELECT version FROM schema_migrations")}
        applied = []
        for version, migration in _get_migrations():
            if version in done:
                continue
            migration(conn)
            conn.execute(
                "INSERT OR IGNORE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            applied.append(version)
            log_event(logger, logging.INFO, "migration_applied", version=version)
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    return applied


def _migration_reference_tables(conn) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value_json TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS generation_profiles (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            topic_preference TEXT NOT NULL DEFAULT '',
            concurrency INTEGER NOT NULL DEFAULT 1,
            timeout_ms INTEGER NOT NULL DEFAULT 3600000,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS topics (
            id TEXT PRIMARY KEY,
            label TEXT NOT NULL,
            prompts TEXT NULL,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS profile_topics (
            profile_id TEXT NOT NULL REFERENCES generation_profiles(id),
            topic_id TEXT NOT NULL REFERENCES topics(id),
            PRIMARY KEY (profile_id, topic_id)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS news_sources (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            url TEXT NOT NULL,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS topic_sources (
            topic_id TEXT NOT NULL REFERENCES topics(id),
            source_id TEXT NOT NULL REFERENCES news_sources(id),
            PRIMARY KEY (topic_id, source_id)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS words (
            word TEXT PRIMARY KEY,
            mastery_status TEXT NOT NULL DEFAULT 'unknown',
            origin TEXT NOT NULL DEFAULT 'manual',
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS daily_word_references (
            id TEXT PRIMARY KEY,
            date TEXT NOT NULL,
            word TEXT NOT NULL,
            type TEXT NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE(date, word, type)
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_daily_word_references_date ON daily_word_references(date)"
    )


def _migration_tasks_table(conn) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS tasks (
            id TEXT PRIMARY KEY,
            task_date TEXT NOT NULL,
            type TEXT NOT NULL DEFAULT 'article_generation',
            trigger_source TEXT NOT NULL DEFAULT 'manual',
            mode TEXT NOT NULL DEFAULT 'rss',
            profile_id TEXT NULL REFERENCES generation_profiles(id),
            llm TEXT NULL,
            status TEXT NOT NULL,
            locked_until TEXT NULL,
            version INTEGER NOT NULL DEFAULT 0,
            params_json TEXT NULL,
            context_json TEXT NULL,
            error_message TEXT NULL,
            error_context_json TEXT NULL,
            created_at TEXT NOT NULL,
            started_at TEXT NULL,
            finished_at TEXT NULL,
            published_at TEXT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_status_created ON tasks(status, created_at)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_task_date ON tasks(task_date)")


def _migration_article_tables(conn) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS articles (
            id TEXT PRIMARY KEY,
            generation_task_id TEXT NOT NULL REFERENCES tasks(id),
            provider TEXT NOT NULL,
            model TEXT NOT NULL,
            variant INTEGER NOT NULL DEFAULT 1,
            title TEXT NOT NULL,
            slug TEXT NOT NULL,
            source_url TEXT NULL,
            rss_link TEXT NULL,
            status TEXT NOT NULL DEFAULT 'published',
            input_words_json TEXT NULL,
            output_json TEXT NULL,
            usage_json TEXT NULL,
            created_at TEXT NOT NULL,
            published_at TEXT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_articles_task ON articles(generation_task_id, model, variant)"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS article_variants (
            id TEXT PRIMARY KEY,
            article_id TEXT NOT NULL REFERENCES articles(id),
            level INTEGER NOT NULL,
            level_label TEXT NOT NULL,
            title TEXT NOT NULL,
            content TEXT NOT NULL,
            sentences_json TEXT NOT NULL,
            syntax_json TEXT NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE(article_id, level)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS article_vocabulary (
            id TEXT PRIMARY KEY,
            article_id TEXT NOT NULL REFERENCES articles(id),
            word TEXT NOT NULL,
            used_form TEXT NULL,
            phonetic TEXT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS article_vocab_definitions (
            id TEXT PRIMARY KEY,
            vocab_id TEXT NOT NULL REFERENCES article_vocabulary(id),
            part_of_speech TEXT NOT NULL,
            definition TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS article_word_index (
            id TEXT PRIMARY KEY,
            word TEXT NOT NULL,
            article_id TEXT NOT NULL REFERENCES articles(id),
            context_snippet TEXT NOT NULL,
            role TEXT NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE(word, article_id)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS highlights (
            id TEXT PRIMARY KEY,
            article_id TEXT NOT NULL REFERENCES articles(id),
            actor TEXT NOT NULL,
            start_meta_json TEXT NOT NULL,
            end_meta_json TEXT NOT NULL,
            text TEXT NOT NULL,
            note TEXT NULL,
            style_json TEXT NULL,
            created_at TEXT NOT NULL,
            deleted_at TEXT NULL
        )
        """
    )


def _get_migrations() -> list[tuple[str, Migration]]:
    return [
        ("001_reference_tables", _migration_reference_tables),
        ("002_tasks_table", _migration_tasks_table),
        ("003_article_tables", _migration_article_tables),
    ]
