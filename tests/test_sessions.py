import json
from datetime import datetime, timezone
from pathlib import Path

from fuelcheck.config import Environment
from fuelcheck.models import ProviderId
from fuelcheck.sessions import FALLBACK_MODEL, CodexSessionLog, session_log_for


def _usage(input_tokens: "int", cached: "int", output: "int", reasoning: "int" = 0) -> "dict[str, int]":
    return {
        "input_tokens": input_tokens,
        "cached_input_tokens": cached,
        "output_tokens": output,
        "reasoning_output_tokens": reasoning,
        "total_tokens": input_tokens + output,
    }


def _token_count(timestamp: "str", last: "dict | None" = None, total: "dict | None" = None) -> "dict":
    info = {}
    if last is not None:
        info["last_token_usage"] = last
    if total is not None:
        info["total_token_usage"] = total
    return {"timestamp": timestamp, "type": "event_msg", "payload": {"type": "token_count", "info": info}}


def _write_session(path: "Path", entries: "list[object]") -> "None":
    path.parent.mkdir(parents=True, exist_ok=True)
    lines = [entry if isinstance(entry, str) else json.dumps(entry) for entry in entries]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")


class TestCodexSessionLog:
    def test_reads_last_token_usage_with_turn_context_model(self, tmp_path: "Path") -> "None":
        sessions = tmp_path / "sessions"
        _write_session(
            sessions / "2025/09/01/rollout-a.jsonl",
            [
                {"timestamp": "2025-09-01T10:00:00Z", "type": "turn_context", "payload": {"model": "gpt-5-codex"}},
                _token_count("2025-09-01T10:00:05Z", last=_usage(1000, 200, 50, 10)),
            ],
        )

        (record,) = list(CodexSessionLog(sessions))

        assert record.session_id == "2025/09/01/rollout-a"
        assert record.model == "gpt-5-codex"
        assert record.timestamp == datetime(2025, 9, 1, 10, 0, 5, tzinfo=timezone.utc)
        assert (record.input_tokens, record.cached_input_tokens, record.output_tokens) == (1000, 200, 50)
        assert record.reasoning_output_tokens == 10
        assert record.is_fallback_model is False

    def test_total_usage_deltas(self, tmp_path: "Path") -> "None":
        sessions = tmp_path / "sessions"
        _write_session(
            sessions / "s.jsonl",
            [
                {"timestamp": "2025-09-01T10:00:00Z", "type": "turn_context", "payload": {"model": "gpt-5"}},
                _token_count("2025-09-01T10:00:01Z", total=_usage(100, 0, 10)),
                # unchanged totals produce no record
                _token_count("2025-09-01T10:00:02Z", total=_usage(100, 0, 10)),
                _token_count("2025-09-01T10:00:03Z", total=_usage(250, 50, 30)),
            ],
        )

        records = list(CodexSessionLog(sessions))

        assert [(r.input_tokens, r.cached_input_tokens, r.output_tokens) for r in records] == [
            (100, 0, 10),
            (150, 50, 20),
        ]

    def test_legacy_session_falls_back(self, tmp_path: "Path") -> "None":
        sessions = tmp_path / "sessions"
        _write_session(sessions / "old.jsonl", [_token_count("2025-01-01T00:00:00Z", last=_usage(10, 0, 1))])

        (record,) = list(CodexSessionLog(sessions))

        assert record.model == FALLBACK_MODEL
        assert record.is_fallback_model is True

    def test_skips_malformed_lines(self, tmp_path: "Path") -> "None":
        sessions = tmp_path / "sessions"
        _write_session(
            sessions / "s.jsonl",
            [
                "{not json",
                "",
                "[1, 2]",
                {"type": "event_msg", "payload": {"type": "token_count"}},
                _token_count("not-a-time", last=_usage(10, 0, 1)),
                _token_count("2025-09-01T10:00:00Z", last=_usage(10, 0, 1)),
            ],
        )

        assert len(list(CodexSessionLog(sessions))) == 1

    def test_is_restartable(self, tmp_path: "Path") -> "None":
        sessions = tmp_path / "sessions"
        _write_session(sessions / "s.jsonl", [_token_count("2025-09-01T10:00:00Z", last=_usage(10, 0, 1))])
        log = CodexSessionLog(sessions)

        assert list(log) == list(log)
        assert len(list(log)) == 1

    def test_missing_directory_yields_nothing(self, tmp_path: "Path") -> "None":
        assert list(CodexSessionLog(tmp_path / "nope")) == []


class TestSessionLogFor:
    def test_home_override(self, tmp_path: "Path") -> "None":
        env = Environment(variables={"CODEX_HOME": str(tmp_path / "ignored")}, home=tmp_path)
        log = session_log_for(ProviderId.CODEX, env, home=tmp_path / "other")
        assert isinstance(log, CodexSessionLog)
        assert log.sessions_dir == tmp_path / "other" / ".codex" / "sessions"

    def test_codex_home(self, tmp_path: "Path") -> "None":
        env = Environment(variables={"CODEX_HOME": str(tmp_path / "codex")}, home=tmp_path)
        log = session_log_for(ProviderId.CODEX, env)
        assert isinstance(log, CodexSessionLog)
        assert log.sessions_dir == tmp_path / "codex" / "sessions"

    def test_provider_without_logs(self, environment: "Environment") -> "None":
        assert session_log_for(ProviderId.CLAUDE, environment) is None
