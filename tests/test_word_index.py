from aperture.models import ArticleWithAnalysis
from aperture.pipelines.analyzer import split_into_sentences
from aperture.services.word_index import (
    SNIPPET_WINDOW,
    context_snippet,
    index_article_words,
    sanitize_word,
)
from aperture.storage import init_db, insert_article, insert_task
from aperture.utils import utc_now_iso


def _article(conn):
    task_id = insert_task(
        conn, task_date="2026-10-18", trigger_source="manual", mode="impression", profile_id=None, llm=None
    )
    article_id = insert_article(
        conn,
        task_id=task_id,
        provider="fake",
        model="fake-model",
        variant=1,
        title="Harbor",
        slug="harbor",
        source_url=None,
        rss_link=None,
        input_words={},
        output={},
        usage={},
        published_at=utc_now_iso(),
    )
    conn.commit()
    return article_id


def _levels(*contents):
    return [
        ArticleWithAnalysis(
            level=level,
            level_name=f"Level {level}",
            content=content,
            sentences=split_into_sentences(content),
        )
        for level, content in enumerate(contents, start=1)
    ]


def _entries(conn):
    rows = conn.execute(
        "SELECT word, context_snippet, role FROM article_word_index ORDER BY word"
    ).fetchall()
    return [tuple(row) for row in rows]


def test_sanitize_word():
    assert sanitize_word("  Harbor's! ") == "harbors"
    assert sanitize_word("co-op") == "coop"


def test_context_snippet_keeps_short_sentences_and_windows_long_ones():
    assert context_snippet("  A short sentence.  ", "short") == "A short sentence."

    sentence = "x" * 150 + " harbor " + "y" * 150
    snippet = context_snippet(sentence, "harbor")
    assert snippet.startswith("...") and snippet.endswith("...")
    assert "harbor" in snippet
    assert len(snippet) == 2 * SNIPPET_WINDOW + 6


def test_index_uses_first_matching_sentence_of_longest_level(db_path):
    conn = init_db(db_path)
    article_id = _article(conn)
    contents = _levels(
        "The harbor is calm.",
        "Rain fell all night. The old harbor flooded! Residents stayed resilient in the harbor.",
    )

    written = index_article_words(
        conn, article_id, contents, ["Harbor", "harbor", "resilient", "a", "volcano"]
    )
    conn.commit()

    assert written == 2
    assert _entries(conn) == [
        ("harbor", "The old harbor flooded!", "keyword"),
        ("resilient", "Residents stayed resilient in the harbor.", "keyword"),
    ]


def test_whole_word_match_only(db_path):
    conn = init_db(db_path)
    article_id = _article(conn)

    written = index_article_words(conn, article_id, _levels("The harbors were busy."), ["harbor"])

    assert written == 0


def test_no_content_writes_nothing(db_path):
    conn = init_db(db_path)
    article_id = _article(conn)

    assert index_article_words(conn, article_id, _levels("", ""), ["harbor"]) == 0


def test_snippet_follows_analyzed_sentence_boundaries(db_path):
    conn = init_db(db_path)
    article_id = _article(conn)

    written = index_article_words(
        conn, article_id, _levels("Dr. Hale met the harbor crew at dawn."), ["harbor"]
    )

    assert written == 1
    assert _entries(conn) == [("harbor", "Dr. Hale met the harbor crew at dawn.", "keyword")]


def test_level_without_sentences_falls_back_to_its_content(db_path):
    conn = init_db(db_path)
    article_id = _article(conn)
    level = ArticleWithAnalysis(level=1, level_name="Elementary", content="Harbor news today")

    assert index_article_words(conn, article_id, [level], ["harbor"]) == 1
    assert _entries(conn) == [("harbor", "Harbor news today", "keyword")]
