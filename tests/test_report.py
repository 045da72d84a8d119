import json
from datetime import date, datetime
from pathlib import Path
from zoneinfo import ZoneInfo

import pytest

from fuelcheck.config import Environment
from fuelcheck.errors import ReportError
from fuelcheck.models import ProviderId, ReportGranularity, SessionRecord
from fuelcheck.pricing import RATES, token_cost
from fuelcheck.report import (
    ReportFilters,
    build_report,
    collect_reports,
    parse_filter_date,
    resolve_timezone,
    validate_filters,
)

UTC = ZoneInfo("UTC")


def _record(
    timestamp: "str",
    model: "str" = "gpt-5",
    session_id: "str" = "2025/09/01/rollout-a",
    input_tokens: "int" = 1000,
    cached: "int" = 0,
    output: "int" = 100,
) -> "SessionRecord":
    return SessionRecord(
        session_id=session_id,
        timestamp=datetime.fromisoformat(timestamp.replace("Z", "+00:00")),
        model=model,
        input_tokens=input_tokens,
        cached_input_tokens=cached,
        output_tokens=output,
        total_tokens=input_tokens + output,
    )


class TestFilters:
    def test_parse_both_date_forms(self) -> "None":
        assert parse_filter_date("20250901") == date(2025, 9, 1)
        assert parse_filter_date("2025-09-01") == date(2025, 9, 1)
        assert parse_filter_date(None) is None

    @pytest.mark.parametrize("raw", ["2025/09/01", "yesterday", "20251301", "2025-02-30"])
    def test_invalid_dates(self, raw: "str") -> "None":
        with pytest.raises(ReportError) as excinfo:
            parse_filter_date(raw)
        assert excinfo.value.kind == "invalid_date"

    def test_since_after_until(self) -> "None":
        with pytest.raises(ReportError) as excinfo:
            validate_filters("20250930", "20250901")
        assert excinfo.value.kind == "invalid_range"

    def test_invalid_timezone(self) -> "None":
        with pytest.raises(ReportError) as excinfo:
            resolve_timezone("Mars/Olympus_Mons")
        assert excinfo.value.kind == "invalid_timezone"

    def test_timezone_defaults(self, tmp_path: "Path") -> "None":
        assert resolve_timezone(None).key == "UTC"
        env = Environment(variables={"TZ": "Europe/Berlin"}, home=tmp_path)
        assert resolve_timezone(None, env).key == "Europe/Berlin"
        bad = Environment(variables={"TZ": "Not/AZone"}, home=tmp_path)
        assert resolve_timezone(None, bad).key == "UTC"


class TestBuildReport:
    def test_timezone_boundary(self) -> "None":
        filters = ReportFilters(zone=ZoneInfo("America/New_York"))
        report = build_report(ProviderId.CODEX, [_record("2025-01-01T00:30:00Z")], filters)

        assert [bucket.key for bucket in report.buckets] == ["2024-12-31"]
        assert report.timezone == "America/New_York"

    def test_range_is_inclusive_on_local_dates(self) -> "None":
        zone = ZoneInfo("America/New_York")
        filters = ReportFilters(zone=zone, since=date(2025, 9, 1), until=date(2025, 9, 30))
        records = [
            # 2025-08-31 20:00 local
            _record("2025-09-01T00:00:00Z"),
            # 2025-09-30 23:59:59 local
            _record("2025-10-01T03:59:59Z"),
            # 2025-10-01 00:00 local
            _record("2025-10-01T04:00:00Z"),
        ]

        report = build_report(ProviderId.CODEX, records, filters)

        assert [bucket.key for bucket in report.buckets] == ["2025-09-30"]

    def test_daily_buckets_sorted_with_model_breakdown(self) -> "None":
        records = [
            _record("2025-09-02T12:00:00Z", model="gpt-5-mini"),
            _record("2025-09-01T12:00:00Z", model="gpt-5"),
            _record("2025-09-02T13:00:00Z", model="gpt-5", cached=500),
        ]

        report = build_report(ProviderId.CODEX, records, ReportFilters(zone=UTC))

        first, second = report.buckets
        assert (first.key, second.key) == ("2025-09-01", "2025-09-02")
        assert [name for name, _ in second.models] == ["gpt-5", "gpt-5-mini"]
        assert second.input_tokens == 2000
        assert second.cached_input_tokens == 500
        assert second.start == datetime(2025, 9, 2, tzinfo=UTC)
        assert second.end == datetime(2025, 9, 3, tzinfo=UTC)
        expected = token_cost(1000, 500, 100, RATES["gpt-5"]) + token_cost(1000, 0, 100, RATES["gpt-5-mini"])
        assert second.cost_usd == pytest.approx(expected)

    def test_totals_are_raw_sums(self) -> "None":
        records = [_record(f"2025-09-0{day}T12:00:00Z", input_tokens=333, output=7) for day in (1, 2, 3)]

        report = build_report(ProviderId.CODEX, records, ReportFilters(zone=UTC))

        assert report.totals.input_tokens == 999
        assert report.totals.total_tokens == 1020
        assert report.totals.cost_usd == sum(bucket.cost_usd for bucket in report.buckets)

    def test_monthly_buckets(self) -> "None":
        records = [
            _record("2025-09-30T12:00:00Z"),
            _record("2025-10-01T12:00:00Z"),
            _record("2025-10-15T12:00:00Z"),
        ]

        report = build_report(ProviderId.CODEX, records, ReportFilters(zone=UTC), ReportGranularity.MONTHLY)

        assert [(b.key, b.input_tokens) for b in report.buckets] == [("2025-09", 1000), ("2025-10", 2000)]
        assert report.buckets[1].end == datetime(2025, 11, 1, tzinfo=UTC)

    def test_session_buckets_in_first_occurrence_order(self) -> "None":
        records = [
            _record("2025-09-02T12:00:00Z", session_id="b"),
            _record("2025-09-01T12:00:00Z", session_id="a"),
            _record("2025-09-03T12:00:00Z", session_id="a"),
        ]

        report = build_report(ProviderId.CODEX, records, ReportFilters(zone=UTC), ReportGranularity.SESSION)

        assert [b.key for b in report.buckets] == ["a", "b"]
        session_a = report.buckets[0]
        assert session_a.start == datetime(2025, 9, 1, 12, tzinfo=UTC)
        assert session_a.end == datetime(2025, 9, 3, 12, tzinfo=UTC)

    def test_unknown_model_degrades_to_warning(self) -> "None":
        records = [_record("2025-09-01T12:00:00Z", model="mystery-1"), _record("2025-09-01T13:00:00Z")]

        report = build_report(ProviderId.CODEX, records, ReportFilters(zone=UTC))

        (bucket,) = report.buckets
        assert bucket.warnings == ("mystery-1",)
        assert report.warnings == ("mystery-1",)
        usage = dict(bucket.models)["mystery-1"]
        assert usage.cost_usd == 0.0
        assert usage.pricing_missing is True
        assert bucket.cost_usd == pytest.approx(token_cost(1000, 0, 100, RATES["gpt-5"]))

    def test_is_idempotent(self) -> "None":
        records = [_record(f"2025-09-{day:02d}T{hour:02d}:00:00Z") for day in range(1, 10) for hour in (1, 23)]
        filters = ReportFilters(zone=ZoneInfo("Asia/Tokyo"))

        assert build_report(ProviderId.CODEX, records, filters) == build_report(
            ProviderId.CODEX, list(reversed(records)), filters
        )

    def test_empty_input(self) -> "None":
        report = build_report(ProviderId.CODEX, [], ReportFilters(zone=UTC))
        assert report.buckets == ()
        assert report.totals.cost_usd == 0.0


class TestCollectReports:
    def test_reads_codex_logs_and_rejects_others(self, tmp_path: "Path") -> "None":
        session = tmp_path / ".codex" / "sessions" / "2025" / "09" / "01" / "rollout-a.jsonl"
        session.parent.mkdir(parents=True)
        session.write_text(
            json.dumps(
                {
                    "timestamp": "2025-09-01T10:00:00Z",
                    "type": "event_msg",
                    "payload": {
                        "type": "token_count",
                        "info": {"last_token_usage": {"input_tokens": 100, "output_tokens": 10}},
                    },
                }
            )
            + "\n",
            encoding="utf-8",
        )
        env = Environment(variables={}, home=tmp_path)

        codex, claude = collect_reports(
            [ProviderId.CODEX, ProviderId.CLAUDE],
            ReportFilters(zone=UTC),
            ReportGranularity.DAILY,
            env,
        )

        assert codex.ok
        assert codex.report is not None
        assert codex.report.totals.input_tokens == 100
        assert not claude.ok
        assert claude.error is not None
        assert claude.error.kind == "unsupported_operation"
