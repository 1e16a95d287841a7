from __future__ import annotations

import copy
import os
from dataclasses import dataclass
from typing import Any, Callable

from .errors import ConfigError
from .storage import get_setting, set_setting


@dataclass(frozen=True)
class QueueConfig:
    lease_seconds: int
    heartbeat_seconds: int
    poll_seconds: int
    initial_delay_seconds: int
    exclusive: bool
    claim_attempts: int


@dataclass(frozen=True)
class PipelineConfig:
    timeout_seconds: int
    variant: int
    source_url_limit: int
    grounding_url_limit: int
    rss_min_words: int
    rss_max_words: int
    impression_min_words: int
    impression_max_words: int


@dataclass(frozen=True)
class AnalysisConfig:
    min_paragraph_words: int
    response_format: str
    abbreviations: list[str]


@dataclass(frozen=True)
class NewsConfig:
    enabled: bool
    max_sources: int
    items_per_source: int
    max_items: int
    window_hours: int
    timeout_seconds: int
    max_workers: int
    user_agent: str


@dataclass(frozen=True)
class ImpressionConfig:
    candidate_words: int
    recent_title_limit: int


@dataclass(frozen=True)
class LlmConfig:
    default_provider: str
    timeout_seconds: int
    max_output_tokens: int
    temperature: float
    default_models: dict[str, str]


@dataclass(frozen=True)
class Config:
    queue: QueueConfig
    pipeline: PipelineConfig
    analysis: AnalysisConfig
    news: NewsConfig
    impression: ImpressionConfig
    llm: LlmConfig


@dataclass(frozen=True)
class ProviderSettings:
    provider: str
    api_key: str
    base_url: str | None
    model: str
    timeout_seconds: int
    max_output_tokens: int
    temperature: float


DEFAULT_CONFIG: dict[str, Any] = {
    "queue": {
        "lease_seconds": 300,
        "heartbeat_seconds": 60,
        "poll_seconds": 10,
        "initial_delay_seconds": 1,
        "exclusive": True,
        "claim_attempts": 20,
    },
    "pipeline": {
        "timeout_seconds": 3600,
        "variant": 1,
        "source_url_limit": 1,
        "grounding_url_limit": 5,
        "rss_min_words": 1,
        "rss_max_words": 8,
        "impression_min_words": 1,
        "impression_max_words": 60,
    },
    "analysis": {
        "min_paragraph_words": 5,
        "response_format": "spans",
        "abbreviations": [
            "mr",
            "mrs",
            "ms",
            "dr",
            "prof",
            "sr",
            "jr",
            "st",
            "vs",
            "etc",
            "inc",
            "ltd",
            "co",
            "corp",
            "u.s",
            "u.k",
            "e.g",
            "i.e",
        ],
    },
    "news": {
        "enabled": True,
        "max_sources": 20,
        "items_per_source": 5,
        "max_items": 20,
        "window_hours": 48,
        "timeout_seconds": 5,
        "max_workers": 8,
        "user_agent": "ApertureDaily/1.0 (NewsAggregator)",
    },
    "impression": {
        "candidate_words": 200,
        "recent_title_limit": 20,
    },
    "llm": {
        "default_provider": "gemini",
        "timeout_seconds": 120,
        "max_output_tokens": 8192,
        "temperature": 0.7,
        "default_models": {
            "gemini": "gemini-2.5-flash",
            "openai": "gpt-4o",
            "claude": "claude-3-5-sonnet-20240620",
        },
    },
}

CONFIG_KEY = "config.runtime"
RESPONSE_FORMATS = ("spans", "inline")

_PROVIDER_ENV = {
    "gemini": ("GEMINI_API_KEY", "GEMINI_BASE_URL", "GEMINI_MODEL"),
    "openai": ("OPENAI_API_KEY", "OPENAI_BASE_URL", "OPENAI_MODEL"),
    "claude": ("ANTHROPIC_API_KEY", "ANTHROPIC_BASE_URL", "ANTHROPIC_MODEL"),
}


def get_state_db_path() -> str:
    data_dir = os.environ.get("AP_DATA_DIR", "/data")
    return os.path.join(data_dir, "state.sqlite3")


def bootstrap_runtime_config(conn) -> dict[str, Any]:
    """Return the stored runtime config, seeding the defaults on first use."""
    stored = get_setting(conn, CONFIG_KEY, None)
    if stored is None:
        stored = copy.deepcopy(DEFAULT_CONFIG)
        set_setting(conn, CONFIG_KEY, stored)
    if not isinstance(stored, dict):
        raise ConfigError(f"{CONFIG_KEY} must be a JSON object")
    return stored


def get_runtime_config(conn) -> dict[str, Any]:
    return _require_valid(bootstrap_runtime_config(conn))


def set_runtime_config(conn, cfg: dict[str, Any]) -> None:
    set_setting(conn, CONFIG_KEY, copy.deepcopy(_require_valid(cfg)))


def load_runtime_config(conn) -> Config:
    return _build_config(get_runtime_config(conn))


def default_config() -> Config:
    return _build_config(copy.deepcopy(DEFAULT_CONFIG))


def _require_valid(cfg: dict[str, Any]) -> dict[str, Any]:
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError(f"Invalid {CONFIG_KEY}: " + "; ".join(errors))
    return cfg


def validate_runtime_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config.runtime", errors)
    if not errors:
        response_format = cfg["analysis"]["response_format"]
        if response_format not in RESPONSE_FORMATS:
            errors.append(
                f"config.runtime.analysis.response_format must be one of {', '.join(RESPONSE_FORMATS)}"
            )
        if cfg["llm"]["default_provider"] not in _PROVIDER_ENV:
            errors.append("config.runtime.llm.default_provider is not a known provider")
        for key in ("lease_seconds", "heartbeat_seconds"):
            if cfg["queue"][key] <= 0:
                errors.append(f"config.runtime.queue.{key} must be positive")
        if cfg["queue"]["heartbeat_seconds"] >= cfg["queue"]["lease_seconds"]:
            errors.append("config.runtime.queue.heartbeat_seconds must be below lease_seconds")
    return errors


def resolve_provider_settings(
    override: str | None,
    config: Config,
    env: dict[str, str] | None = None,
) -> ProviderSettings:
    """Pick provider and credentials: task override, then AP_LLM_PROVIDER, then the default."""
    env = os.environ if env is None else env
    provider = (override or env.get("AP_LLM_PROVIDER") or config.llm.default_provider).strip().lower()
    if provider not in _PROVIDER_ENV:
        raise ConfigError(f"Unsupported LLM provider: {provider}")
    key_var, base_var, model_var = _PROVIDER_ENV[provider]
    api_key = (env.get(key_var) or "").strip()
    if not api_key:
        raise ConfigError(f"{key_var} is required for provider {provider}")
    model = (env.get(model_var) or "").strip() or config.llm.default_models.get(provider, "")
    if not model:
        raise ConfigError(f"No model configured for provider {provider}")
    return ProviderSettings(
        provider=provider,
        api_key=api_key,
        base_url=(env.get(base_var) or "").strip() or None,
        model=model,
        timeout_seconds=config.llm.timeout_seconds,
        max_output_tokens=config.llm.max_output_tokens,
        temperature=config.llm.temperature,
    )


# Checked in order: bool before int, since bool is an int subclass.
_SCALAR_CHECKS: tuple[tuple[type, str, Callable[[Any], bool]], ...] = (
    (bool, "a boolean", lambda v: isinstance(v, bool)),
    (int, "an integer", lambda v: isinstance(v, int) and not isinstance(v, bool)),
    (float, "a number", lambda v: isinstance(v, (int, float)) and not isinstance(v, bool)),
    (str, "a string", lambda v: isinstance(v, str)),
)


def _validate_dict(value: Any, schema: dict[str, Any], path: str, errors: list[str]) -> None:
    """Walk ``value`` against the shape of ``schema`` (the defaults), collecting errors."""
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    errors.extend(f"missing {path}.{key}" for key in schema if key not in value)
    errors.extend(f"unknown {path}.{key}" for key in value if key not in schema)
    for key in [key for key in schema if key in value]:
        _validate_value(value[key], schema[key], f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, list):
        if not isinstance(value, list):
            errors.append(f"{path} must be a list")
        elif any(not isinstance(item, str) for item in value):
            errors.append(f"{path} must be a list of strings")
        return
    for kind, label, check in _SCALAR_CHECKS:
        if isinstance(default, kind):
            if not check(value):
                errors.append(f"{path} must be {label}")
            elif kind is int and value < 0:
                errors.append(f"{path} must not be negative")
            return


def _build_config(cfg: dict[str, Any]) -> Config:
    queue_cfg = cfg["queue"]
    pipeline_cfg = cfg["pipeline"]
    analysis_cfg = cfg["analysis"]
    news_cfg = cfg["news"]
    impression_cfg = cfg["impression"]
    llm_cfg = cfg["llm"]

    return Config(
        queue=QueueConfig(
            lease_seconds=int(queue_cfg["lease_seconds"]),
            heartbeat_seconds=int(queue_cfg["heartbeat_seconds"]),
            poll_seconds=int(queue_cfg["poll_seconds"]),
            initial_delay_seconds=int(queue_cfg["initial_delay_seconds"]),
            exclusive=bool(queue_cfg["exclusive"]),
            claim_attempts=int(queue_cfg["claim_attempts"]),
        ),
        pipeline=PipelineConfig(**{key: int(value) for key, value in pipeline_cfg.items()}),
        analysis=AnalysisConfig(
            min_paragraph_words=int(analysis_cfg["min_paragraph_words"]),
            response_format=str(analysis_cfg["response_format"]),
            abbreviations=[str(item).lower() for item in analysis_cfg["abbreviations"]],
        ),
        news=NewsConfig(
            enabled=bool(news_cfg["enabled"]),
            max_sources=int(news_cfg["max_sources"]),
            items_per_source=int(news_cfg["items_per_source"]),
            max_items=int(news_cfg["max_items"]),
            window_hours=int(news_cfg["window_hours"]),
            timeout_seconds=int(news_cfg["timeout_seconds"]),
            max_workers=int(news_cfg["max_workers"]),
            user_agent=str(news_cfg["user_agent"]),
        ),
        impression=ImpressionConfig(
            candidate_words=int(impression_cfg["candidate_words"]),
            recent_title_limit=int(impression_cfg["recent_title_limit"]),
        ),
        llm=LlmConfig(
            default_provider=str(llm_cfg["default_provider"]),
            timeout_seconds=int(llm_cfg["timeout_seconds"]),
            max_output_tokens=int(llm_cfg["max_output_tokens"]),
            temperature=float(llm_cfg["temperature"]),
            default_models={str(k): str(v) for k, v in llm_cfg["default_models"].items()},
        ),
    )
