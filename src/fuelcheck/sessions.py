import json
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator

import structlog

from fuelcheck.config import Environment
from fuelcheck.models import ProviderId, SessionRecord
from fuelcheck.provider.codex import codex_home

logger = structlog.get_logger()

# model assumed for sessions logged before turn_context carried one
FALLBACK_MODEL = "gpt-5"

_TOKEN_FIELDS = (
    "input_tokens",
    "cached_input_tokens",
    "output_tokens",
    "reasoning_output_tokens",
    "total_tokens",
)


@dataclass(frozen=True, slots=True)
class _Usage:
    input_tokens: "int" = 0
    cached_input_tokens: "int" = 0
    output_tokens: "int" = 0
    reasoning_output_tokens: "int" = 0
    total_tokens: "int" = 0

    def minus(self, other: "_Usage | None") -> "_Usage":
        if other is None:
            return self
        return _Usage(
            *(max(getattr(self, name) - getattr(other, name), 0) for name in _TOKEN_FIELDS)
        )

    @property
    def is_zero(self) -> "bool":
        return not (
            self.input_tokens
            or self.cached_input_tokens
            or self.output_tokens
            or self.reasoning_output_tokens
        )


class CodexSessionLog:
    """
    CodexSessionLog enumerates token usage records from the Codex CLI
    session logs (`sessions/**/*.jsonl`). Iterating it walks the
    directory again, so it can be consumed more than once; a missing
    directory yields nothing.
    """

    def __init__(self, sessions_dir: "Path") -> "None":
        self._sessions_dir = sessions_dir

    @property
    def sessions_dir(self) -> "Path":
        return self._sessions_dir

    @classmethod
    def for_environment(
        cls, environment: "Environment", home: "Path | None" = None
    ) -> "CodexSessionLog":
        if home is not None:
            return cls(home / ".codex" / "sessions")
        return cls(codex_home(environment) / "sessions")

    def __iter__(self) -> "Iterator[SessionRecord]":
        if not self._sessions_dir.is_dir():
            logger.debug("sessions_dir_missing", path=str(self._sessions_dir))
            return
        for path in sorted(self._sessions_dir.glob("**/*.jsonl")):
            if path.is_file():
                yield from self._read_file(path)

    def _session_id(self, path: "Path") -> "str":
        relative = path.relative_to(self._sessions_dir).as_posix()
        return relative.removesuffix(".jsonl")

    def _read_file(self, path: "Path") -> "Iterator[SessionRecord]":
        session_id = self._session_id(path)
        previous_totals: "_Usage | None" = None
        current_model: "str | None" = None
        current_is_fallback = False

        try:
            handle = path.open(encoding="utf-8", errors="replace")
        except OSError as exc:
            logger.warning("session_file_unreadable", path=str(path), error=str(exc))
            return

        with handle:
            for line in handle:
                entry = _parse_line(line)
                if entry is None:
                    continue

                entry_type = entry.get("type")
                payload = entry.get("payload")

                if entry_type == "turn_context":
                    model = extract_model(payload)
                    if model is not None:
                        current_model = model
                        current_is_fallback = False
                    continue

                if entry_type != "event_msg" or not isinstance(payload, dict):
                    continue
                if payload.get("type") != "token_count":
                    continue

                timestamp = _parse_timestamp(entry.get("timestamp"))
                if timestamp is None:
                    continue

                info = payload.get("info") if isinstance(payload.get("info"), dict) else {}
                last = _usage(info.get("last_token_usage"))
                total = _usage(info.get("total_token_usage"))

                if last is not None:
                    usage = last
                elif total is not None:
                    usage = total.minus(previous_totals)
                else:
                    usage = None
                if total is not None:
                    previous_totals = total
                if usage is None or usage.is_zero:
                    continue

                model = extract_model(payload) or extract_model(info)
                if model is not None:
                    current_model, current_is_fallback = model, False
                elif current_model is None:
                    current_model, current_is_fallback = FALLBACK_MODEL, True

                yield SessionRecord(
                    session_id=session_id,
                    timestamp=timestamp,
                    model=current_model,
                    input_tokens=usage.input_tokens,
                    cached_input_tokens=min(usage.cached_input_tokens, usage.input_tokens),
                    output_tokens=usage.output_tokens,
                    reasoning_output_tokens=usage.reasoning_output_tokens,
                    total_tokens=usage.total_tokens or usage.input_tokens + usage.output_tokens,
                    is_fallback_model=current_is_fallback,
                )


def session_log_for(
    provider: "ProviderId",
    environment: "Environment",
    home: "Path | None" = None,
) -> "Iterable[SessionRecord] | None":
    """
    returns the session-log reader for provider, or None when the
    provider keeps no local logs fuelcheck can read.
    """
    if provider is ProviderId.CODEX:
        return CodexSessionLog.for_environment(environment, home)
    return None


def extract_model(value: "Any") -> "str | None":
    if not isinstance(value, dict):
        return None
    for key in ("model", "model_name"):
        model = value.get(key)
        if isinstance(model, str) and model.strip():
            return model.strip()
    nested = extract_model(value.get("info"))
    if nested is not None:
        return nested
    metadata = value.get("metadata")
    if isinstance(metadata, dict):
        model = metadata.get("model")
        if isinstance(model, str) and model.strip():
            return model.strip()
    return None


def _parse_line(line: "str") -> "dict[str, Any] | None":
    text = line.strip()
    if not text:
        return None
    try:
        entry = json.loads(text)
    except ValueError:
        return None
    return entry if isinstance(entry, dict) else None


def _parse_timestamp(value: "Any") -> "datetime | None":
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return None
    return parsed.astimezone(timezone.utc)


def _count(value: "Any") -> "int":
    if isinstance(value, bool):
        return 0
    if isinstance(value, (int, float)):
        return max(int(value), 0)
    if isinstance(value, str):
        try:
            return max(int(value.strip()), 0)
        except ValueError:
            return 0
    return 0


def _usage(value: "Any") -> "_Usage | None":
    if not isinstance(value, dict):
        return None
    cached = value.get("cached_input_tokens")
    if cached is None:
        cached = value.get("cache_read_input_tokens")
    input_tokens = _count(value.get("input_tokens"))
    output_tokens = _count(value.get("output_tokens"))
    return _Usage(
        input_tokens=input_tokens,
        cached_input_tokens=_count(cached),
        output_tokens=output_tokens,
        reasoning_output_tokens=_count(value.get("reasoning_output_tokens")),
        total_tokens=_count(value.get("total_tokens")) or input_tokens + output_tokens,
    )
