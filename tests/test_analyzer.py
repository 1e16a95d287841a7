import json
import logging

import pytest

from conftest import EchoAnalysisProvider, FakeProvider
from aperture.errors import ProviderError, TextIntegrityError, ValidationError
from aperture.models import ArticleInput, SentenceData
from aperture.pipelines.analyzer import (
    SpanAnnotation,
    analyze_article,
    convert_to_global_offsets,
    parse_paragraph_response,
    run_sentence_analysis,
)


def _articles():
    return [
        ArticleInput(level=3, level_name="Advanced", content="Engineers reinforced the barrier before the storm."),
        ArticleInput(level=1, level_name="Elementary", content="The big storm hit the town today."),
        ArticleInput(level=2, level_name="Intermediate", content="A strong storm struck the harbor town."),
    ]


def test_span_is_located_inside_its_own_sentence():
    content = "The cat sat down. The cat ran away."
    second = SentenceData(id=1, start=18, end=len(content), text="The cat ran away.")

    converted = convert_to_global_offsets(
        [SpanAnnotation(text="The cat", role="S"), SpanAnnotation(text="ran", role="v")],
        second,
        content,
    )

    assert [(item.start, item.end, item.role) for item in converted] == [(18, 25, "s"), (26, 29, "v")]
    for item in converted:
        assert content[item.start : item.end] == item.text


def test_unknown_roles_and_missing_text_are_dropped():
    content = "Boats stay safe."
    sentence = SentenceData(id=0, start=0, end=len(content), text=content)

    converted = convert_to_global_offsets(
        [
            SpanAnnotation(text="Boats", role="subject"),
            SpanAnnotation(text="ships", role="s"),
            SpanAnnotation(text="stay", role="v"),
        ],
        sentence,
        content,
    )

    assert [(item.text, item.role) for item in converted] == [("stay", "v")]


def test_parse_paragraph_response_ignores_unknown_keys():
    text = json.dumps(
        {
            "S0": [{"text": "Boats", "role": "s"}, {"text": "", "role": "v"}, "junk"],
            "1": [{"text": "check", "role": "v"}],
            "S7": [{"text": "nothing", "role": "o"}],
            "notes": "ignored",
            "S1x": [],
        }
    )

    parsed = parse_paragraph_response(text, 2)

    assert parsed == {
        0: [SpanAnnotation(text="Boats", role="s")],
        1: [SpanAnnotation(text="check", role="v")],
    }


def test_malformed_analysis_json_raises_validation_error():
    with pytest.raises(ValidationError):
        parse_paragraph_response("not json at all", 1)
    with pytest.raises(ValidationError):
        parse_paragraph_response("[1, 2]", 1)


def test_short_paragraphs_are_not_sent_to_provider():
    provider = EchoAnalysisProvider()
    article = ArticleInput(
        level=1,
        level_name="Elementary",
        content="Boats are safe.\n\nWorkers check every boat in the harbor today.",
    )

    analyzed, usage = analyze_article(provider, article)

    assert [call["label"] for call in provider.calls] == ["analysis_l1_p1"]
    assert len(analyzed.sentences) == 2
    assert [(item.text, item.role) for item in analyzed.structure] == [("Workers", "s")]
    assert usage is not None and usage.total_tokens == 15


def test_empty_article_is_returned_without_provider_calls():
    provider = FakeProvider()

    analyzed, usage = analyze_article(provider, ArticleInput(level=2, level_name="", content=""))

    assert analyzed.sentences == [] and analyzed.structure == []
    assert usage is None
    assert provider.calls == []


def test_structure_is_sorted_by_start():
    content = "Residents stayed resilient as the wind grew stronger."
    response = json.dumps(
        {"S0": [{"text": "the wind", "role": "s"}, {"text": "Residents", "role": "s"}]}
    )
    provider = FakeProvider(responses=[response])

    analyzed, _ = analyze_article(provider, ArticleInput(level=2, level_name="", content=content))

    assert [item.text for item in analyzed.structure] == ["Residents", "the wind"]


def test_inline_response_with_altered_text_raises_integrity_error():
    content = "The dog barked loudly at night."
    provider = FakeProvider(responses=[json.dumps({"S0": "<S>The cat</S> <V>barked</V> loudly at night."})])

    with pytest.raises(TextIntegrityError):
        analyze_article(
            provider,
            ArticleInput(level=1, level_name="", content=content),
            response_format="inline",
        )


def test_inline_response_produces_spans():
    content = "The dog barked loudly at night."
    provider = FakeProvider(
        responses=[json.dumps({"S0": "<S>The dog</S> <V>barked</V> loudly <PP>at night</PP>."})]
    )

    analyzed, _ = analyze_article(
        provider,
        ArticleInput(level=1, level_name="", content=content),
        response_format="inline",
    )

    assert [(item.text, item.role, item.start) for item in analyzed.structure] == [
        ("The dog", "s", 0),
        ("barked", "v", 8),
        ("at night", "pp", 22),
    ]


def test_run_sentence_analysis_sorts_levels_and_reports_progress():
    provider = EchoAnalysisProvider()
    progress = []

    result = run_sentence_analysis(
        provider,
        _articles(),
        on_level_complete=lambda completed: progress.append([item.level for item in completed]),
    )

    assert [article.level for article in result.articles] == [1, 2, 3]
    assert progress == [[3], [1, 3], [1, 2, 3]]
    assert sorted(result.usage) == ["level_1", "level_2", "level_3"]


def test_run_sentence_analysis_skips_completed_levels():
    first = run_sentence_analysis(EchoAnalysisProvider(), _articles()[:2])
    provider = EchoAnalysisProvider()

    result = run_sentence_analysis(provider, _articles(), completed_levels=first.articles)

    assert provider.levels_called() == [2]
    assert [article.level for article in result.articles] == [1, 2, 3]
    assert list(result.usage) == ["level_2"]


def test_provider_failure_propagates_after_earlier_levels_complete():
    provider = EchoAnalysisProvider(fail_levels={2})
    saved = []

    with pytest.raises(ProviderError, match="503"):
        run_sentence_analysis(
            provider,
            sorted(_articles(), key=lambda item: item.level),
            on_level_complete=lambda completed: saved.append([item.level for item in completed]),
        )

    assert saved == [[1]]


def test_level_progress_and_paragraph_failures_are_logged(caplog):
    with caplog.at_level(logging.INFO, logger="aperture.analyzer"):
        run_sentence_analysis(EchoAnalysisProvider(), _articles()[1:2])
        with pytest.raises(ProviderError):
            analyze_article(EchoAnalysisProvider(fail_levels={2}), _articles()[2])

    messages = [record.getMessage() for record in caplog.records]
    assert any(
        msg.startswith("event=analysis_level_complete article_level=1") for msg in messages
    )
    assert any(
        msg.startswith("event=paragraph_analysis_failed article_level=2") for msg in messages
    )
