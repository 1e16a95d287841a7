from __future__ import annotations

import copy
import json
import re

import pytest

from aperture.errors import ProviderError
from aperture.llm.client import ProviderResponse
from aperture.llm.stages import ConversionResult, DraftResult, SelectionResult
from aperture.models import TokenUsage
from aperture.pipelines.analyzer import run_sentence_analysis

SAMPLE_OUTPUT = {
    "title": "Storm Tests Harbor Town",
    "topic": "Weather",
    "sources": ["https://news.example.com/storm"],
    "pull_quote": "The harbor held.",
    "summary": "A storm hit a small harbor town. People worked together.",
    "articles": [
        {
            "level": 1,
            "level_name": "Elementary",
            "content": "A big storm hits the harbor town. The people stay resilient and help.\n\n"
            "Boats stay safe in the harbor today. Workers check every boat.",
        },
        {
            "level": 2,
            "level_name": "Intermediate",
            "content": "A powerful storm struck the small harbor town on Monday night. "
            "Residents stayed resilient as the wind grew stronger.\n\n"
            "By morning, workers had checked every boat in the harbor.",
        },
        {
            "level": 3,
            "level_name": "Advanced",
            "content": "A powerful storm battered the small harbor town overnight, testing "
            "flood barriers that engineers had reinforced only a year earlier. "
            "Residents proved remarkably resilient, sheltering neighbours and clearing debris "
            "before dawn.\n\n"
            "By morning, inspectors had confirmed that every vessel moored in the harbor "
            "had survived without serious damage.",
        },
    ],
    "word_usage_check": {"target_words_count": 2, "used_count": 2, "missing_words": []},
    "word_definitions": [
        {
            "word": "harbor",
            "used_form": "harbor",
            "phonetic": "/ˈhɑːrbər/",
            "definitions": [{"pos": "n", "definition": "A sheltered place where ships stay."}],
        },
        {
            "word": "resilient",
            "used_form": "resilient",
            "phonetic": "/rɪˈzɪliənt/",
            "definitions": [{"pos": "adj", "definition": "Able to recover quickly."}],
        },
    ],
}

_NUMBERED_LINE_RE = re.compile(r"^\[S(\d+)\] (.+)$", re.MULTILINE)
_LEVEL_LABEL_RE = re.compile(r"analysis_l(\d+)_p\d+")


class FakeProvider:
    """Scripted transport: pops canned texts, or computes them with ``respond``."""

    provider = "fake"
    model = "fake-model"

    def __init__(self, responses=None, respond=None, usage=None):
        self.responses = list(responses or [])
        self.respond = respond
        self.usage = usage or TokenUsage(input_tokens=10, output_tokens=5, total_tokens=15)
        self.calls = []

    def generate(self, system, prompt, *, json_mode=False, search=False, label="", deadline=None):
        self.calls.append(
            {"system": system, "prompt": prompt, "json_mode": json_mode, "search": search, "label": label}
        )
        if deadline is not None:
            deadline.check(label)
        if self.respond is not None:
            text = self.respond(label, prompt)
        elif self.responses:
            text = self.responses.pop(0)
        else:
            raise AssertionError(f"unexpected provider call {label}")
        if isinstance(text, Exception):
            raise text
        return ProviderResponse(text=text, usage=self.usage)


class EchoAnalysisProvider(FakeProvider):
    """Tags the first word of every numbered sentence as the subject."""

    def __init__(self, fail_levels=()):
        super().__init__(respond=self._respond)
        self.fail_levels = set(fail_levels)

    def _respond(self, label, prompt):
        match = _LEVEL_LABEL_RE.match(label)
        if match and int(match.group(1)) in self.fail_levels:
            return ProviderError(f"http_error 503: level {match.group(1)} unavailable")
        payload = {
            f"S{idx}": [{"text": text.split()[0], "role": "s"}]
            for idx, text in _NUMBERED_LINE_RE.findall(prompt)
        }
        return json.dumps(payload)

    def levels_called(self):
        return sorted(
            {int(m.group(1)) for call in self.calls if (m := _LEVEL_LABEL_RE.match(call["label"]))}
        )


class FakeGenerationClient:
    """Stage client with canned stage 1-3 results and a real analyzer for stage 4."""

    provider_name = "fake"
    model = "fake-model"

    def __init__(self, *, fail_stage=None, analysis_provider=None, output=None):
        self.fail_stage = fail_stage
        self.analysis_provider = analysis_provider or EchoAnalysisProvider()
        self.output = output or SAMPLE_OUTPUT
        self.calls = []
        self.kwargs = {}

    def _enter(self, stage, kwargs):
        self.calls.append(stage)
        self.kwargs[stage] = kwargs
        if stage == self.fail_stage:
            raise ProviderError(f"network_error: {stage} unreachable")

    def run_stage1_search_and_selection(self, **kwargs):
        self._enter("search_selection", kwargs)
        news_items = kwargs.get("news_items") or []
        return SelectionResult(
            selected_words=["harbor", "resilient"],
            news_summary="A storm hit a harbor town.",
            source_urls=["https://news.example.com/storm"],
            selected_rss_id=0 if news_items else None,
            selected_rss_item=news_items[0] if news_items else None,
            usage=TokenUsage(input_tokens=100, output_tokens=40, total_tokens=140),
        )

    def run_stage2_draft_generation(self, **kwargs):
        self._enter("draft", kwargs)
        return DraftResult(
            draft_text="A storm hit the harbor. People stayed resilient.",
            usage=TokenUsage(input_tokens=80, output_tokens=300, total_tokens=380),
        )

    def run_stage3_json_conversion(self, **kwargs):
        self._enter("conversion", kwargs)
        return ConversionResult(
            output=copy.deepcopy(self.output),
            usage=TokenUsage(input_tokens=400, output_tokens=900, total_tokens=1300),
        )

    def run_stage4_sentence_analysis(
        self, *, articles, completed_levels=(), on_level_complete=None, deadline=None
    ):
        self._enter("grammar_analysis", {"articles": articles})
        return run_sentence_analysis(
            self.analysis_provider,
            articles,
            completed_levels=completed_levels,
            on_level_complete=on_level_complete,
            deadline=deadline,
        )


class StubNewsFetcher:
    def __init__(self, items=None, error=None):
        self.items = list(items or [])
        self.error = error
        self.calls = []

    def fetch_aggregate(self, topic_ids, task_date=None, exclude_links=()):
        self.calls.append({"topic_ids": topic_ids, "task_date": task_date, "exclude": list(exclude_links)})
        if self.error is not None:
            raise self.error
        return [item for item in self.items if item.link not in set(exclude_links)]


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "state.sqlite3")


@pytest.fixture
def provider_env(monkeypatch):
    monkeypatch.delenv("AP_LLM_PROVIDER", raising=False)
    monkeypatch.setenv("GEMINI_API_KEY", "test-key")
    monkeypatch.setenv("GEMINI_MODEL", "fake-model")


@pytest.fixture
def sample_output():
    return copy.deepcopy(SAMPLE_OUTPUT)
