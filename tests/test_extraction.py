from aperture.extraction import (
    build_source_urls,
    clean_url,
    collect_http_urls,
    ensure_content_paragraphs,
    extract_json,
    extract_http_urls_from_text,
    resolve_redirect_url,
    strip_citations,
)


def test_extract_json_prefers_fenced_json_block():
    text = 'Here you go:\n```json\n{"a": 1}\n```\nand {"b": 2}'
    assert extract_json(text) == '{"a": 1}'


def test_extract_json_uses_generic_block_only_when_it_is_an_object():
    assert extract_json('```\n{"a": 1}\n```') == '{"a": 1}'
    assert extract_json('```\nnot json\n```\nthen {"b": 2} end') == '{"b": 2}'


def test_extract_json_falls_back_to_brace_span_and_trimmed_text():
    assert extract_json('Sure! {"x": {"y": 2}} Thanks') == '{"x": {"y": 2}}'
    assert extract_json("  nothing here  ") == "nothing here"


def test_clean_url_strips_angle_brackets_and_trailing_punctuation():
    assert clean_url("<https://example.com/a>") == "https://example.com/a"
    assert clean_url("https://example.com/a).") == "https://example.com/a"
    assert clean_url("https://example.com/新闻。") == "https://example.com/新闻"


def test_extract_http_urls_from_text():
    text = "See (https://a.example.com/x) and https://b.example.com/y, thanks."
    assert extract_http_urls_from_text(text) == [
        "https://a.example.com/x",
        "https://b.example.com/y",
    ]


def test_collect_http_urls_walks_nested_values_and_survives_cycles():
    payload = {"a": ["https://one.example.com", {"b": "text https://two.example.com"}]}
    payload["self"] = payload
    payload["a"].append(payload["a"])

    assert collect_http_urls(payload) == ["https://one.example.com", "https://two.example.com"]
    assert collect_http_urls(None) == []


def test_strip_citations():
    assert strip_citations("Storms hit[1] the coast [2, 3].") == "Storms hit the coast ."


def test_resolve_redirect_url_leaves_ordinary_urls_alone():
    assert resolve_redirect_url("https://example.com/a") == "https://example.com/a"


def test_build_source_urls_merges_deduplicates_and_limits():
    urls = build_source_urls(
        validated={"source": "https://a.example.com"},
        news_summary="Reported by https://b.example.com.",
        response_text='{"source": "https://a.example.com"}',
        grounding_urls=["https://c.example.com", "https://b.example.com"],
        limit=2,
        resolve=False,
    )
    assert urls == ["https://a.example.com", "https://b.example.com"]


def test_build_source_urls_accepts_source_list():
    urls = build_source_urls(
        validated={"sources": ["https://x.example.com", 3]},
        news_summary="",
        response_text="",
        resolve=False,
    )
    assert urls == ["https://x.example.com"]


def test_ensure_content_paragraphs_keeps_existing_breaks():
    content = "First  para\nline.\n\n\n  Second para. "
    assert ensure_content_paragraphs(content, 1) == "First para line.\n\nSecond para."


def test_ensure_content_paragraphs_splits_wall_of_text():
    content = "One. Two. Three. Four. Five. Six."
    assert ensure_content_paragraphs(content, 2) == "One. Two. Three.\n\nFour. Five. Six."
    assert ensure_content_paragraphs(content, 3) == "One. Two.\n\nThree. Four.\n\nFive. Six."
    assert ensure_content_paragraphs("Only one sentence.", 3) == "Only one sentence."
