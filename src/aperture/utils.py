from __future__ import annotations

import calendar
import dataclasses
import json
import logging
import os
import re
import sys
import unicodedata
from datetime import date, datetime, timezone, timedelta
from email.utils import parsedate_to_datetime
from typing import Any, Iterable

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def log_event(logger: logging.Logger, level: int, event: str, **fields: Any) -> None:
    """Log ``event=<name> k=v ...`` so lines stay grep-able."""
    rendered = " ".join(f"{key}={value}" for key, value in fields.items())
    logger.log(level, f"event={event} {rendered}" if rendered else f"event={event}")


def configure_logging(logger_name: str, default_level: str = "INFO") -> logging.Logger:
    """Attach one stdout handler (and ``AP_LOG_FILE`` when set) to the root logger.

    Safe to call repeatedly: handlers already present are not added twice.
    ``AP_LOG_LEVELS=aperture.llm=DEBUG,aperture.news=ERROR`` tunes single loggers.
    """
    level = _level(os.environ.get("AP_LOG_LEVEL", default_level))
    root = logging.getLogger()
    root.setLevel(level)

    if not any(_is_stdout_handler(handler) for handler in root.handlers):
        _attach(root, logging.StreamHandler(sys.stdout), level)

    log_file = os.environ.get("AP_LOG_FILE")
    if log_file:
        log_file = os.path.abspath(log_file)
        if not any(
            isinstance(handler, logging.FileHandler) and handler.baseFilename == log_file
            for handler in root.handlers
        ):
            os.makedirs(os.path.dirname(log_file), exist_ok=True)
            _attach(root, logging.FileHandler(log_file), level)

    for entry in os.environ.get("AP_LOG_LEVELS", "").split(","):
        name, sep, value = entry.partition("=")
        if sep and name.strip():
            logging.getLogger(name.strip()).setLevel(_level(value))
    return logging.getLogger(logger_name)


def _level(name: str) -> int:
    return getattr(logging, name.strip().upper(), logging.INFO)


def _is_stdout_handler(handler: logging.Handler) -> bool:
    return (
        isinstance(handler, logging.StreamHandler)
        and not isinstance(handler, logging.FileHandler)
        and handler.stream is sys.stdout
    )


def _attach(root: logging.Logger, handler: logging.Handler, level: int) -> None:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root.addHandler(handler)


def json_dumps(value: Any) -> str:
    return json.dumps(value, default=_json_default, sort_keys=True, ensure_ascii=False)


def json_loads_or(raw: str | None, default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return default


def _json_default(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (set, frozenset, tuple)):
        return sorted(value) if isinstance(value, (set, frozenset)) else list(value)
    return str(value)


def unique_strings(values: Iterable[Any]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for value in values:
        if not isinstance(value, str):
            continue
        item = value.strip()
        if not item or item in seen:
            continue
        seen.add(item)
        out.append(item)
    return out


_SLUG_JUNK_RE = re.compile(r"[^a-z0-9]+")


def slugify(text: str, max_length: int = 80) -> str:
    ascii_text = unicodedata.normalize("NFKD", text or "").encode("ascii", "ignore").decode("ascii")
    slug = _SLUG_JUNK_RE.sub("-", ascii_text.lower()).strip("-")
    return slug[:max_length].strip("-") or "untitled"


def _as_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value.astimezone(timezone.utc)


def parse_date_value(value: Any) -> datetime | None:
    """Accept ``time.struct_time`` (feedparser), datetimes, RFC 2822 and ISO 8601 strings."""
    if isinstance(value, datetime):
        return _as_utc(value)
    if hasattr(value, "tm_year"):
        return datetime.fromtimestamp(calendar.timegm(value), tz=timezone.utc)
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    for parse in (parsedate_to_datetime, lambda raw: datetime.fromisoformat(raw.replace("Z", "+00:00"))):
        try:
            return _as_utc(parse(text))
        except (TypeError, ValueError, IndexError):
            continue
    return None


def parse_task_date(value: str) -> datetime:
    """Midnight UTC of a ``YYYY-MM-DD`` task date."""
    return datetime.strptime(value, "%Y-%m-%d").replace(tzinfo=timezone.utc)


def utc_now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat(timespec="microseconds")


def utc_now_iso_offset(*, seconds: int) -> str:
    return (datetime.now(tz=timezone.utc) + timedelta(seconds=seconds)).isoformat(
        timespec="microseconds"
    )
