from __future__ import annotations

import json
import logging
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from typing import Any

from ..config import ProviderSettings
from ..errors import GenerationTimeout, ProviderError
from ..extraction import collect_http_urls
from ..models import TokenUsage
from ..utils import log_event

logger = logging.getLogger("aperture.llm")

DEFAULT_BASE_URLS = {
    "openai": "https://api.openai.com/v1",
    "claude": "https://api.anthropic.com/v1",
    "gemini": "https://generativelanguage.googleapis.com/v1beta",
}
ANTHROPIC_VERSION = "2023-06-01"


class Deadline:
    """Wall-clock budget shared by every provider call of one task attempt."""

    def __init__(self, seconds: float | None, clock=time.monotonic) -> None:
        self._clock = clock
        self._expires_at = None if seconds is None else clock() + seconds

    def remaining(self) -> float | None:
        if self._expires_at is None:
            return None
        return self._expires_at - self._clock()

    def check(self, label: str) -> None:
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise GenerationTimeout(f"generation deadline exceeded before {label}")

    def cap(self, timeout_seconds: float) -> float:
        remaining = self.remaining()
        if remaining is None:
            return timeout_seconds
        return max(1.0, min(timeout_seconds, remaining))


@dataclass(frozen=True)
class ProviderResponse:
    text: str
    usage: TokenUsage | None = None
    grounding_urls: list[str] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict)


class ProviderClient:
    """HTTP transport for the supported chat providers."""

    def __init__(self, settings: ProviderSettings) -> None:
        self.settings = settings
        self.provider = settings.provider
        self.model = settings.model

    def generate(
        self,
        system: str,
        prompt: str,
        *,
        json_mode: bool = False,
        search: bool = False,
        label: str = "",
        deadline: Deadline | None = None,
    ) -> ProviderResponse:
        if deadline is not None:
            deadline.check(label or "provider_call")
        timeout = self.settings.timeout_seconds
        if deadline is not None:
            timeout = deadline.cap(timeout)
        started = time.monotonic()
        response = _call_provider(
            self.settings, system, prompt, json_mode=json_mode, search=search, timeout=timeout
        )
        log_event(
            logger,
            logging.INFO,
            "llm_call",
            provider=self.provider,
            model=self.model,
            label=label,
            latency_ms=int((time.monotonic() - started) * 1000),
            output_chars=len(response.text),
            total_tokens=response.usage.total_tokens if response.usage else None,
        )
        return response


def _call_provider(
    settings: ProviderSettings,
    system: str,
    prompt: str,
    *,
    json_mode: bool,
    search: bool,
    timeout: float,
) -> ProviderResponse:
    base_url = settings.base_url or _default_base_url(settings.provider)
    if settings.provider == "openai":
        payload: dict[str, Any] = {
            "model": settings.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            "temperature": settings.temperature,
            "max_tokens": settings.max_output_tokens,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}
        response = _http_request(
            "POST",
            _join_url(base_url, "/chat/completions"),
            _auth_headers(settings.provider, settings.api_key),
            payload,
            timeout,
        )
        return ProviderResponse(
            text=_read_openai(response), usage=_openai_usage(response), raw=response
        )
    if settings.provider == "claude":
        payload = {
            "model": settings.model,
            "max_tokens": settings.max_output_tokens,
            "temperature": settings.temperature,
            "system": system,
            "messages": [{"role": "user", "content": prompt}],
        }
        response = _http_request(
            "POST",
            _join_url(base_url, "/messages"),
            _auth_headers(settings.provider, settings.api_key),
            payload,
            timeout,
        )
        return ProviderResponse(
            text=_read_anthropic(response), usage=_anthropic_usage(response), raw=response
        )
    if settings.provider == "gemini":
        path = _join_url(
            base_url,
            f"/models/{urllib.parse.quote(settings.model)}:generateContent",
        )
        generation_config: dict[str, Any] = {
            "temperature": settings.temperature,
            "maxOutputTokens": settings.max_output_tokens,
        }
        # Search grounding cannot be combined with a JSON response mime type.
        if json_mode and not search:
            generation_config["responseMimeType"] = "application/json"
        payload = {
            "systemInstruction": {"parts": [{"text": system}]},
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": generation_config,
        }
        if search:
            payload["tools"] = [{"googleSearch": {}}]
        response = _http_request(
            "POST", _append_key(path, settings.api_key), {}, payload, timeout
        )
        candidates = response.get("candidates") or []
        grounding = candidates[0].get("groundingMetadata") if candidates else None
        return ProviderResponse(
            text=_read_google(response),
            usage=_google_usage(response),
            grounding_urls=collect_http_urls(grounding) if grounding else [],
            raw=response,
        )
    raise ProviderError(f"unsupported_provider: {settings.provider}")


def _http_request(
    method: str,
    url: str,
    headers: dict[str, str],
    payload: dict[str, Any] | None,
    timeout: float,
) -> dict[str, Any]:
    data = json.dumps(payload).encode("utf-8") if payload is not None else None
    request = urllib.request.Request(url, data=data, method=method)
    request.add_header("Content-Type", "application/json")
    for key, value in headers.items():
        request.add_header(key, value)
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            raw = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        raw = exc.read().decode("utf-8", errors="ignore")
        raise ProviderError(f"http_error {exc.code}: {raw[:500]}") from exc
    except urllib.error.URLError as exc:
        raise ProviderError(f"network_error: {exc}") from exc
    except TimeoutError as exc:
        raise ProviderError(f"network_timeout: {exc}") from exc
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ProviderError(f"invalid_response_body: {raw[:200]}") from exc
    if not isinstance(parsed, dict):
        raise ProviderError("invalid_response_body: expected an object")
    return parsed


def _read_openai(response: dict[str, Any]) -> str:
    choices = response.get("choices") or []
    if not choices:
        raise ProviderError("openai_missing_choices")
    return choices[0].get("message", {}).get("content") or ""


def _read_anthropic(response: dict[str, Any]) -> str:
    content = response.get("content") or []
    if not content:
        raise ProviderError("anthropic_missing_content")
    return "".join(part.get("text") or "" for part in content if part.get("type", "text") == "text")


def _read_google(response: dict[str, Any]) -> str:
    candidates = response.get("candidates") or []
    if not candidates:
        raise ProviderError("google_missing_candidates")
    parts = candidates[0].get("content", {}).get("parts", [])
    if not parts:
        raise ProviderError("google_missing_parts")
    return "".join(part.get("text") or "" for part in parts)


def _openai_usage(response: dict[str, Any]) -> TokenUsage | None:
    usage = response.get("usage")
    if not isinstance(usage, dict):
        return None
    prompt_tokens = int(usage.get("prompt_tokens") or 0)
    completion_tokens = int(usage.get("completion_tokens") or 0)
    return TokenUsage(
        input_tokens=prompt_tokens,
        output_tokens=completion_tokens,
        total_tokens=int(usage.get("total_tokens") or prompt_tokens + completion_tokens),
    )


def _anthropic_usage(response: dict[str, Any]) -> TokenUsage | None:
    usage = response.get("usage")
    if not isinstance(usage, dict):
        return None
    input_tokens = int(usage.get("input_tokens") or 0)
    output_tokens = int(usage.get("output_tokens") or 0)
    return TokenUsage(input_tokens, output_tokens, input_tokens + output_tokens)


def _google_usage(response: dict[str, Any]) -> TokenUsage | None:
    usage = response.get("usageMetadata")
    if not isinstance(usage, dict):
        return None
    prompt_tokens = int(usage.get("promptTokenCount") or 0)
    output_tokens = int(usage.get("candidatesTokenCount") or 0)
    return TokenUsage(
        input_tokens=prompt_tokens,
        output_tokens=output_tokens,
        total_tokens=int(usage.get("totalTokenCount") or prompt_tokens + output_tokens),
    )


def _auth_headers(provider: str, api_key: str | None) -> dict[str, str]:
    # Gemini takes the key as a query parameter instead.
    if api_key and provider == "openai":
        return {"Authorization": f"Bearer {api_key}"}
    if api_key and provider == "claude":
        return {"x-api-key": api_key, "anthropic-version": ANTHROPIC_VERSION}
    return {}


def _default_base_url(provider: str) -> str:
    return DEFAULT_BASE_URLS.get(provider, "")


def _append_key(url: str, api_key: str | None) -> str:
    if not api_key:
        return url
    parsed = urllib.parse.urlsplit(url)
    query = urllib.parse.parse_qsl(parsed.query, keep_blank_values=True)
    query.append(("key", api_key))
    return urllib.parse.urlunsplit(
        (parsed.scheme, parsed.netloc, parsed.path, urllib.parse.urlencode(query), parsed.fragment)
    )


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path
