import pytest

from aperture.errors import ConfigError
from aperture.seed import import_seed, load_seed_file
from aperture.storage import (
    count_table,
    init_db,
    list_active_news_sources,
    list_daily_word_references,
    list_profile_topics,
    list_profiles,
)

SEED = """
words:
  - tide
daily_words:
  "2026-10-18":
    new: [harbor, resilient]
    review: [tide]
topics:
  - id: topic_weather
    label: Weather
    prompts: storms, floods
news_sources:
  - id: source_alpha
    name: Alpha News
    url: https://alpha.example.com/rss
    topics: [topic_weather]
profiles:
  - id: profile_main
    name: Main
    timeout_ms: 600000
    topics: [topic_weather]
"""


def test_seed_file_round_trip(tmp_path, db_path):
    path = tmp_path / "seed.yaml"
    path.write_text(SEED, encoding="utf-8")
    conn = init_db(db_path)

    counts = import_seed(conn, load_seed_file(str(path)))

    assert counts == {"words": 1, "daily_words": 3, "topics": 1, "news_sources": 1, "profiles": 1}
    assert count_table(conn, "words") == 3
    refs = list_daily_word_references(conn, "2026-10-18")
    assert sorted((ref.word, ref.type) for ref in refs) == [
        ("harbor", "new"),
        ("resilient", "new"),
        ("tide", "review"),
    ]
    assert list_active_news_sources(conn, ["topic_weather"])[0]["name"] == "Alpha News"
    profile = list_profiles(conn)[0]
    assert profile.timeout_ms == 600000
    assert [topic.label for topic in list_profile_topics(conn, profile.id)] == ["Weather"]


def test_seed_import_is_repeatable(tmp_path, db_path):
    path = tmp_path / "seed.yaml"
    path.write_text(SEED, encoding="utf-8")
    conn = init_db(db_path)
    data = load_seed_file(str(path))

    import_seed(conn, data)
    import_seed(conn, data)

    assert count_table(conn, "daily_word_references") == 3
    assert count_table(conn, "generation_profiles") == 1


def test_load_seed_file_rejects_bad_input(tmp_path):
    with pytest.raises(ConfigError, match="not found"):
        load_seed_file(str(tmp_path / "missing.yaml"))

    bad_yaml = tmp_path / "bad.yaml"
    bad_yaml.write_text("words: [unclosed", encoding="utf-8")
    with pytest.raises(ConfigError, match="not valid YAML"):
        load_seed_file(str(bad_yaml))

    listing = tmp_path / "list.yaml"
    listing.write_text("- harbor\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="must contain a mapping"):
        load_seed_file(str(listing))

    unknown = tmp_path / "unknown.yaml"
    unknown.write_text("articles: []\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="unknown seed keys: articles"):
        load_seed_file(str(unknown))


def test_source_without_url_rolls_back_everything(db_path):
    conn = init_db(db_path)

    with pytest.raises(ConfigError, match="has no url"):
        import_seed(conn, {"words": ["harbor"], "news_sources": [{"name": "Broken"}]})

    assert count_table(conn, "words") == 0
