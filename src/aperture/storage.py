from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Iterable

from .db import connect_db
from .models import CandidateWord, GenerationProfile, Task, Topic
from .utils import json_dumps, json_loads_or, log_event, utc_now_iso, utc_now_iso_offset

logger = logging.getLogger("aperture.storage")

_TASK_COLUMNS = """
    id, task_date, type, trigger_source, mode, profile_id, llm, status, locked_until,
    version, params_json, context_json, error_message, error_context_json, created_at,
    started_at, finished_at, published_at
"""


def init_db(path: str | None = None, *, migrate: bool = True):
    if path is None:
        from .config import get_state_db_path

        path = get_state_db_path()
    return connect_db(path, migrate=migrate)


def get_setting(conn: Any, key: str, default: object) -> object:
    row = conn.execute("SELECT value_json FROM settings WHERE key = ?", (key,)).fetchone()
    if not row:
        return default
    try:
        return json.loads(row[0])
    except json.JSONDecodeError:
        return default


def set_setting(conn: Any, key: str, value: object) -> None:
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO settings (key, value_json, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value_json = excluded.value_json,
                                       updated_at = excluded.updated_at
        """,
        (key, json_dumps(value), now),
    )
    conn.commit()


# Tasks


def insert_task(
    conn: Any,
    *,
    task_date: str,
    trigger_source: str,
    mode: str,
    profile_id: str | None,
    llm: str | None,
    params: dict[str, object] | None = None,
) -> str:
    task_id = _new_id("task")
    conn.execute(
        """
        INSERT INTO tasks
            (id, task_date, type, trigger_source, mode, profile_id, llm, status,
             locked_until, version, params_json, context_json, created_at)
        VALUES (?, ?, 'article_generation', ?, ?, ?, ?, 'queued', NULL, 0, ?, NULL, ?)
        """,
        (
            task_id,
            task_date,
            trigger_source,
            mode,
            profile_id,
            llm,
            json_dumps(params) if params else None,
            utc_now_iso(),
        ),
    )
    return task_id


def get_task(conn: Any, task_id: str) -> Task | None:
    row = conn.execute(
        f"SELECT {_TASK_COLUMNS} FROM tasks WHERE id = ?",
        (task_id,),
    ).fetchone()
    return _row_to_task(row) if row else None


def list_tasks(conn: Any, limit: int = 50, task_date: str | None = None) -> list[Task]:
    if task_date:
        cursor = conn.execute(
            f"""
            SELECT {_TASK_COLUMNS}
            FROM tasks
            WHERE task_date = ?
            ORDER BY created_at DESC
            LIMIT ?
            """,
            (task_date, limit),
        )
    else:
        cursor = conn.execute(
            f"""
            SELECT {_TASK_COLUMNS}
            FROM tasks
            ORDER BY created_at DESC
            LIMIT ?
            """,
            (limit,),
        )
    return [_row_to_task(row) for row in cursor.fetchall()]


def has_live_lease(conn: Any, now_iso: str, exclude_task_id: str | None = None) -> bool:
    row = conn.execute(
        """
        SELECT id FROM tasks
        WHERE status = 'running' AND locked_until IS NOT NULL AND locked_until > ?
          AND id != ?
        LIMIT 1
        """,
        (now_iso, exclude_task_id or ""),
    ).fetchone()
    return row is not None


def select_claim_candidate(conn: Any, now_iso: str) -> tuple[str, int] | None:
    row = conn.execute(
        """
        SELECT id, version FROM tasks
        WHERE status = 'queued'
           OR (status = 'running' AND (locked_until IS NULL OR locked_until < ?))
        ORDER BY created_at ASC
        LIMIT 1
        """,
        (now_iso,),
    ).fetchone()
    if not row:
        return None
    return row[0], int(row[1])


def try_claim_task(conn: Any, task_id: str, version: int, lease_seconds: int) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE tasks
        SET status = 'running',
            locked_until = ?,
            started_at = COALESCE(started_at, ?),
            version = version + 1,
            error_message = NULL,
            error_context_json = NULL,
            finished_at = NULL
        WHERE id = ? AND version = ?
          AND (status = 'queued'
               OR (status = 'running' AND (locked_until IS NULL OR locked_until < ?)))
        """,
        (utc_now_iso_offset(seconds=lease_seconds), now, task_id, version, now),
    )
    conn.commit()
    return cursor.rowcount == 1


def claim_next_task(
    conn: Any,
    lease_seconds: int,
    *,
    exclusive: bool = True,
    max_attempts: int = 20,
) -> Task | None:
    for _ in range(max_attempts):
        now = utc_now_iso()
        if exclusive and has_live_lease(conn, now):
            return None
        candidate = select_claim_candidate(conn, now)
        if candidate is None:
            return None
        task_id, version = candidate
        if try_claim_task(conn, task_id, version, lease_seconds):
            return get_task(conn, task_id)
        log_event(logger, logging.DEBUG, "task_claim_conflict", task_id=task_id, version=version)
    return None


def extend_task_lease(conn: Any, task_id: str, lease_seconds: int) -> bool:
    cursor = conn.execute(
        """
        UPDATE tasks
        SET locked_until = ?
        WHERE id = ? AND status = 'running'
        """,
        (utc_now_iso_offset(seconds=lease_seconds), task_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def save_task_checkpoint(
    conn: Any, task_id: str, version: int, checkpoint: dict[str, object]
) -> bool:
    cursor = conn.execute(
        """
        UPDATE tasks
        SET context_json = ?
        WHERE id = ? AND version = ? AND status = 'running'
        """,
        (json_dumps(checkpoint), task_id, version),
    )
    conn.commit()
    return cursor.rowcount == 1


def mark_task_succeeded(conn: Any, task_id: str, version: int) -> bool:
    """Flip to succeeded without committing, so it shares the article transaction."""
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE tasks
        SET status = 'succeeded',
            version = version + 1,
            context_json = NULL,
            locked_until = NULL,
            error_message = NULL,
            error_context_json = NULL,
            finished_at = ?,
            published_at = ?
        WHERE id = ? AND version = ? AND status = 'running'
        """,
        (now, now, task_id, version),
    )
    return cursor.rowcount == 1


def fail_task(
    conn: Any,
    task_id: str,
    version: int,
    error_message: str,
    error_context: dict[str, object] | None = None,
) -> bool:
    cursor = conn.execute(
        """
        UPDATE tasks
        SET status = 'failed',
            version = version + 1,
            locked_until = NULL,
            error_message = ?,
            error_context_json = ?,
            finished_at = ?
        WHERE id = ? AND version = ? AND status = 'running'
        """,
        (
            error_message,
            json_dumps(error_context) if error_context else None,
            utc_now_iso(),
            task_id,
            version,
        ),
    )
    conn.commit()
    return cursor.rowcount == 1


def cancel_task(conn: Any, task_id: str) -> bool:
    cursor = conn.execute(
        """
        UPDATE tasks
        SET status = 'canceled', version = version + 1, finished_at = ?
        WHERE id = ? AND status = 'queued'
        """,
        (utc_now_iso(), task_id),
    )
    conn.commit()
    return cursor.rowcount == 1


# Profiles, topics and sources


def list_profiles(conn: Any) -> list[GenerationProfile]:
    cursor = conn.execute(
        """
        SELECT id, name, topic_preference, concurrency, timeout_ms
        FROM generation_profiles
        ORDER BY created_at ASC
        """
    )
    return [_row_to_profile(row) for row in cursor.fetchall()]


def get_profile(conn: Any, profile_id: str) -> GenerationProfile | None:
    row = conn.execute(
        """
        SELECT id, name, topic_preference, concurrency, timeout_ms
        FROM generation_profiles
        WHERE id = ?
        """,
        (profile_id,),
    ).fetchone()
    return _row_to_profile(row) if row else None


def upsert_profile(conn: Any, profile: dict[str, object]) -> str:
    profile_id = str(profile.get("id") or _new_id("profile"))
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO generation_profiles
            (id, name, topic_preference, concurrency, timeout_ms, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            name = excluded.name,
            topic_preference = excluded.topic_preference,
            concurrency = excluded.concurrency,
            timeout_ms = excluded.timeout_ms,
            updated_at = excluded.updated_at
        """,
        (
            profile_id,
            str(profile.get("name") or profile_id),
            str(profile.get("topic_preference") or ""),
            int(profile.get("concurrency") or 1),
            int(profile.get("timeout_ms") or 3_600_000),
            now,
            now,
        ),
    )
    return profile_id


def ensure_default_profile(conn: Any) -> list[GenerationProfile]:
    profiles = list_profiles(conn)
    if profiles:
        return profiles
    upsert_profile(conn, {"name": "Default", "topic_preference": ""})
    conn.commit()
    log_event(logger, logging.INFO, "default_profile_created")
    return list_profiles(conn)


def set_profile_topics(conn: Any, profile_id: str, topic_ids: Iterable[str]) -> None:
    conn.execute("DELETE FROM profile_topics WHERE profile_id = ?", (profile_id,))
    for topic_id in topic_ids:
        conn.execute(
            "INSERT OR IGNORE INTO profile_topics (profile_id, topic_id) VALUES (?, ?)",
            (profile_id, topic_id),
        )


def upsert_topic(conn: Any, topic: dict[str, object]) -> str:
    topic_id = str(topic.get("id") or _new_id("topic"))
    conn.execute(
        """
        INSERT INTO topics (id, label, prompts, is_active, created_at)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            label = excluded.label,
            prompts = excluded.prompts,
            is_active = excluded.is_active
        """,
        (
            topic_id,
            str(topic.get("label") or topic_id),
            topic.get("prompts"),
            1 if topic.get("is_active", True) else 0,
            utc_now_iso(),
        ),
    )
    return topic_id


def list_profile_topics(conn: Any, profile_id: str) -> list[Topic]:
    cursor = conn.execute(
        """
        SELECT t.id, t.label, t.prompts
        FROM profile_topics pt
        JOIN topics t ON t.id = pt.topic_id
        WHERE pt.profile_id = ? AND t.is_active = 1
        ORDER BY t.label ASC
        """,
        (profile_id,),
    )
    return [Topic(id=row[0], label=row[1], prompts=row[2]) for row in cursor.fetchall()]


def upsert_news_source(conn: Any, source: dict[str, object]) -> str:
    source_id = str(source.get("id") or _new_id("source"))
    conn.execute(
        """
        INSERT INTO news_sources (id, name, url, is_active, created_at)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            name = excluded.name,
            url = excluded.url,
            is_active = excluded.is_active
        """,
        (
            source_id,
            str(source.get("name") or source_id),
            str(source["url"]),
            1 if source.get("is_active", True) else 0,
            utc_now_iso(),
        ),
    )
    for topic_id in source.get("topics") or []:
        conn.execute(
            "INSERT OR IGNORE INTO topic_sources (topic_id, source_id) VALUES (?, ?)",
            (str(topic_id), source_id),
        )
    return source_id


def list_active_news_sources(
    conn: Any, topic_ids: list[str] | None = None
) -> list[dict[str, str]]:
    if topic_ids:
        placeholders = ",".join("?" for _ in topic_ids)
        cursor = conn.execute(
            f"""
            SELECT DISTINCT s.id, s.name, s.url
            FROM news_sources s
            JOIN topic_sources ts ON ts.source_id = s.id
            WHERE s.is_active = 1 AND ts.topic_id IN ({placeholders})
            ORDER BY s.id ASC
            """,
            tuple(topic_ids),
        )
    else:
        cursor = conn.execute(
            """
            SELECT id, name, url FROM news_sources
            WHERE is_active = 1
            ORDER BY id ASC
            """
        )
    return [{"id": row[0], "name": row[1], "url": row[2]} for row in cursor.fetchall()]


# Words


def upsert_word(conn: Any, word: str, origin: str = "manual") -> None:
    conn.execute(
        "INSERT OR IGNORE INTO words (word, origin, created_at) VALUES (?, ?, ?)",
        (word, origin, utc_now_iso()),
    )


def add_daily_word_reference(conn: Any, date: str, word: str, word_type: str) -> None:
    conn.execute(
        """
        INSERT OR IGNORE INTO daily_word_references (id, date, word, type, created_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (_new_id("dwr"), date, word, word_type, utc_now_iso()),
    )


def list_daily_word_references(conn: Any, date: str) -> list[CandidateWord]:
    cursor = conn.execute(
        """
        SELECT word, type FROM daily_word_references
        WHERE date = ?
        ORDER BY created_at ASC
        """,
        (date,),
    )
    return [CandidateWord(word=row[0], type=row[1]) for row in cursor.fetchall()]


def sample_random_words(conn: Any, limit: int) -> list[str]:
    cursor = conn.execute("SELECT word FROM words ORDER BY RANDOM() LIMIT ?", (limit,))
    return [row[0] for row in cursor.fetchall()]


# Articles


def list_used_words_for_date(conn: Any, task_date: str) -> set[str]:
    cursor = conn.execute(
        """
        SELECT a.input_words_json
        FROM articles a
        JOIN tasks t ON t.id = a.generation_task_id
        WHERE t.task_date = ?
        """,
        (task_date,),
    )
    used: set[str] = set()
    for (raw,) in cursor.fetchall():
        payload = json_loads_or(raw, {})
        selected = payload.get("selected") if isinstance(payload, dict) else None
        for word in selected or []:
            if isinstance(word, str) and word.strip():
                used.add(word.strip())
    return used


def list_used_rss_links(conn: Any) -> list[str]:
    cursor = conn.execute(
        "SELECT DISTINCT rss_link FROM articles WHERE rss_link IS NOT NULL AND rss_link != ''"
    )
    return [row[0] for row in cursor.fetchall()]


def list_recent_titles(conn: Any, limit: int = 20) -> list[str]:
    cursor = conn.execute(
        "SELECT title FROM articles ORDER BY created_at DESC LIMIT ?",
        (limit,),
    )
    return [row[0] for row in cursor.fetchall()]


def list_article_ids(
    conn: Any, task_id: str, model: str | None = None, variant: int | None = None
) -> list[str]:
    clauses = ["generation_task_id = ?"]
    params: list[object] = [task_id]
    if model is not None:
        clauses.append("model = ?")
        params.append(model)
    if variant is not None:
        clauses.append("variant = ?")
        params.append(variant)
    cursor = conn.execute(
        f"SELECT id FROM articles WHERE {' AND '.join(clauses)} ORDER BY created_at ASC",
        tuple(params),
    )
    return [row[0] for row in cursor.fetchall()]


def insert_article(
    conn: Any,
    *,
    task_id: str,
    provider: str,
    model: str,
    variant: int,
    title: str,
    slug: str,
    source_url: str | None,
    rss_link: str | None,
    input_words: dict[str, object],
    output: dict[str, object],
    usage: dict[str, object],
    published_at: str,
) -> str:
    article_id = _new_id("article")
    conn.execute(
        """
        INSERT INTO articles
            (id, generation_task_id, provider, model, variant, title, slug, source_url,
             rss_link, status, input_words_json, output_json, usage_json, created_at,
             published_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 'published', ?, ?, ?, ?, ?)
        """,
        (
            article_id,
            task_id,
            provider,
            model,
            variant,
            title,
            slug,
            source_url,
            rss_link,
            json_dumps(input_words),
            json_dumps(output),
            json_dumps(usage),
            utc_now_iso(),
            published_at,
        ),
    )
    return article_id


def insert_article_variant(
    conn: Any,
    *,
    article_id: str,
    level: int,
    level_label: str,
    title: str,
    content: str,
    sentences: list[object],
    structure: list[object],
) -> str:
    variant_id = _new_id("variant")
    conn.execute(
        """
        INSERT INTO article_variants
            (id, article_id, level, level_label, title, content, sentences_json,
             syntax_json, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            variant_id,
            article_id,
            level,
            level_label,
            title,
            content,
            json_dumps(sentences),
            json_dumps(structure),
            utc_now_iso(),
        ),
    )
    return variant_id


def insert_vocabulary(
    conn: Any,
    *,
    article_id: str,
    word: str,
    used_form: str | None,
    phonetic: str | None,
    definitions: list[tuple[str, str]],
) -> str:
    vocab_id = _new_id("vocab")
    conn.execute(
        """
        INSERT INTO article_vocabulary (id, article_id, word, used_form, phonetic, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (vocab_id, article_id, word, used_form, phonetic, utc_now_iso()),
    )
    for part_of_speech, definition in definitions:
        conn.execute(
            """
            INSERT INTO article_vocab_definitions (id, vocab_id, part_of_speech, definition)
            VALUES (?, ?, ?, ?)
            """,
            (_new_id("def"), vocab_id, part_of_speech, definition),
        )
    return vocab_id


def insert_word_index_entry(
    conn: Any, *, word: str, article_id: str, context_snippet: str, role: str
) -> None:
    conn.execute(
        """
        INSERT OR IGNORE INTO article_word_index
            (id, word, article_id, context_snippet, role, created_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (_new_id("idx"), word, article_id, context_snippet, role, utc_now_iso()),
    )


def list_article_variants(conn: Any, article_id: str) -> list[dict[str, object]]:
    cursor = conn.execute(
        """
        SELECT level, level_label, title, content, sentences_json, syntax_json
        FROM article_variants
        WHERE article_id = ?
        ORDER BY level ASC
        """,
        (article_id,),
    )
    return [
        {
            "level": row[0],
            "level_label": row[1],
            "title": row[2],
            "content": row[3],
            "sentences": json_loads_or(row[4], []),
            "structure": json_loads_or(row[5], []),
        }
        for row in cursor.fetchall()
    ]


def count_table(conn: Any, table: str) -> int:
    row = conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()
    return int(row[0] or 0)


def _row_to_task(row: tuple) -> Task:
    (
        task_id,
        task_date,
        task_type,
        trigger_source,
        mode,
        profile_id,
        llm,
        status,
        locked_until,
        version,
        params_json,
        context_json,
        error_message,
        error_context_json,
        created_at,
        started_at,
        finished_at,
        published_at,
    ) = row
    params = json_loads_or(params_json, {})
    context = json_loads_or(context_json, None)
    error_context = json_loads_or(error_context_json, None)
    return Task(
        id=task_id,
        task_date=task_date,
        type=task_type,
        trigger_source=trigger_source,
        mode=mode,
        profile_id=profile_id,
        llm=llm,
        status=status,
        locked_until=locked_until,
        version=int(version or 0),
        params=params if isinstance(params, dict) else {},
        context=context if isinstance(context, dict) else None,
        error_message=error_message,
        error_context=error_context if isinstance(error_context, dict) else None,
        created_at=created_at,
        started_at=started_at,
        finished_at=finished_at,
        published_at=published_at,
    )


def _row_to_profile(row: tuple) -> GenerationProfile:
    profile_id, name, topic_preference, concurrency, timeout_ms = row
    return GenerationProfile(
        id=profile_id,
        name=name,
        topic_preference=topic_preference or "",
        concurrency=int(concurrency or 1),
        timeout_ms=int(timeout_ms or 0),
    )


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"
