import pytest

from conftest import EchoAnalysisProvider, FakeGenerationClient, StubNewsFetcher
from aperture.errors import PipelineStageError
from aperture.llm.client import Deadline
from aperture.models import CandidateWord, NewsItem, Topic
from aperture.pipelines.generation import (
    STAGES,
    MemoryCheckpointSink,
    PipelineCheckpoint,
    run_pipeline,
)

CANDIDATES = [CandidateWord(word="harbor", type="new"), CandidateWord(word="resilient", type="review")]


def _run(client, **kwargs):
    kwargs.setdefault("mode", "rss")
    kwargs.setdefault("candidate_words", CANDIDATES)
    kwargs.setdefault("task_date", "2026-10-18")
    return run_pipeline(client, **kwargs)


def _news_item(link="https://news.example.com/storm"):
    return NewsItem(
        title="Storm hits harbor",
        link=link,
        summary="A storm hit a harbor town.",
        source_name="Example News",
        published_at="2026-10-17T08:00:00+00:00",
    )


def test_full_run_executes_stages_in_order_and_checkpoints_each():
    client = FakeGenerationClient()
    sink = MemoryCheckpointSink()

    result = _run(client, sink=sink)

    assert client.calls == list(STAGES)
    assert sink.stages[:3] == ["search_selection", "draft", "conversion"]
    assert sink.stages[-1] == "grammar_analysis"
    assert [len(item["completed_levels"]) for item in sink.saved[3:6]] == [1, 2, 3]
    assert result.selected_words == ["harbor", "resilient"]
    assert sorted(result.usage) == [
        "conversion",
        "draft",
        "level_1",
        "level_2",
        "level_3",
        "search_selection",
    ]


def test_output_carries_offsets_that_slice_back_to_content():
    result = _run(FakeGenerationClient())

    assert [article["level"] for article in result.output["articles"]] == [1, 2, 3]
    for article in result.output["articles"]:
        content = article["content"]
        assert article["sentences"]
        for sentence in article["sentences"]:
            assert content[sentence["start"] : sentence["end"]] == sentence["text"]
        for span in article["structure"]:
            assert content[span["start"] : span["end"]] == span["text"]


def test_resume_after_draft_skips_selection_and_draft():
    client = FakeGenerationClient()
    checkpoint = PipelineCheckpoint(
        stage="draft",
        selected_words=["harbor"],
        source_urls=["https://news.example.com/storm"],
        draft_text="A storm hit the harbor.",
    )

    result = _run(client, checkpoint=checkpoint)

    assert client.calls == ["conversion", "grammar_analysis"]
    assert client.kwargs["conversion"]["draft_text"] == "A storm hit the harbor."
    assert result.selected_words == ["harbor"]


def test_conversion_reruns_when_checkpoint_has_no_output():
    client = FakeGenerationClient()
    checkpoint = PipelineCheckpoint(stage="grammar_analysis", selected_words=["harbor"], draft_text="Draft.")

    _run(client, checkpoint=checkpoint)

    assert client.calls == ["conversion", "grammar_analysis"]


def test_resume_analysis_only_runs_missing_level():
    failing = FakeGenerationClient(analysis_provider=EchoAnalysisProvider(fail_levels={3}))
    sink = MemoryCheckpointSink()
    with pytest.raises(PipelineStageError) as excinfo:
        _run(failing, sink=sink)
    assert excinfo.value.stage == "grammar_analysis"

    checkpoint = PipelineCheckpoint.from_dict(sink.saved[-1])
    assert checkpoint is not None
    assert [level.level for level in checkpoint.completed_levels] == [1, 2]

    provider = EchoAnalysisProvider()
    client = FakeGenerationClient(analysis_provider=provider)
    result = _run(client, checkpoint=checkpoint)

    assert client.calls == ["grammar_analysis"]
    assert provider.levels_called() == [3]
    assert [article.level for article in result.articles] == [1, 2, 3]


def test_stage_failure_is_wrapped_with_stage_name():
    client = FakeGenerationClient(fail_stage="draft")
    sink = MemoryCheckpointSink()

    with pytest.raises(PipelineStageError) as excinfo:
        _run(client, sink=sink)

    assert excinfo.value.stage == "draft"
    assert "network_error" in str(excinfo.value)
    assert sink.stages == ["search_selection"]


def test_expired_deadline_fails_before_first_stage():
    client = FakeGenerationClient()

    with pytest.raises(PipelineStageError) as excinfo:
        _run(client, deadline=Deadline(0))

    assert excinfo.value.stage == "search_selection"
    assert client.calls == []


def test_deadline_expiring_mid_run_stops_at_next_stage():
    now = [0.0]
    deadline = Deadline(10, clock=lambda: now[0])
    client = FakeGenerationClient()
    original = client.run_stage2_draft_generation

    def slow_draft(**kwargs):
        now[0] = 11.0
        return original(**kwargs)

    client.run_stage2_draft_generation = slow_draft

    with pytest.raises(PipelineStageError) as excinfo:
        _run(client, deadline=deadline)

    assert excinfo.value.stage == "conversion"


def test_news_items_reach_selection_and_chosen_item_is_kept():
    fetcher = StubNewsFetcher(items=[_news_item(), _news_item("https://news.example.com/used")])
    client = FakeGenerationClient()

    result = _run(
        client,
        news_fetcher=fetcher,
        topics=[Topic(id="topic_weather", label="Weather", prompts=None)],
        exclude_links=["https://news.example.com/used"],
    )

    assert fetcher.calls[0]["topic_ids"] == ["topic_weather"]
    assert [item.link for item in client.kwargs["search_selection"]["news_items"]] == [
        "https://news.example.com/storm"
    ]
    assert result.selected_rss_item["link"] == "https://news.example.com/storm"


def test_news_failure_is_best_effort():
    fetcher = StubNewsFetcher(error=RuntimeError("feeds down"))
    client = FakeGenerationClient()

    result = _run(client, news_fetcher=fetcher)

    assert client.kwargs["search_selection"]["news_items"] == []
    assert result.selected_rss_item is None
    assert client.calls == list(STAGES)


def test_impression_mode_does_not_fetch_news():
    fetcher = StubNewsFetcher(items=[_news_item()])

    _run(FakeGenerationClient(), mode="impression", news_fetcher=fetcher)

    assert fetcher.calls == []


def test_checkpoint_round_trips_and_rejects_unknown_stage():
    result_sink = MemoryCheckpointSink()
    _run(FakeGenerationClient(), sink=result_sink)

    restored = PipelineCheckpoint.from_dict(result_sink.saved[-1])
    assert restored is not None
    assert restored.to_dict() == result_sink.saved[-1]
    assert PipelineCheckpoint.from_dict({"stage": "publishing"}) is None
    assert PipelineCheckpoint.from_dict({"stage": "draft", "completed_levels": [{"content": "x"}]}) is None
