import json
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from fuelcheck.errors import FetchError, FetchErrorKind
from fuelcheck.models import (
    FetchOutcome,
    ProviderCost,
    ProviderId,
    ReportGranularity,
    SessionRecord,
    SourceKind,
    StatusBadge,
    StatusIndicator,
    UsageMetric,
    UsageSnapshot,
)
from fuelcheck.output import (
    EXIT_OK,
    EXIT_PROVIDER_FAILED,
    OutputFormat,
    exit_status,
    metric_line,
    render_reports,
    render_usage,
    reports_payload,
    reset_countdown,
    usage_bar,
    usage_payload,
)
from fuelcheck.report import ReportFilters, ReportOutcome, build_report

NOW = datetime(2025, 9, 15, 12, 0, tzinfo=timezone.utc)


def _codex_outcome() -> "FetchOutcome":
    snapshot = UsageSnapshot(
        provider=ProviderId.CODEX,
        source=SourceKind.OAUTH,
        fetched_at=NOW,
        metrics=(
            UsageMetric(
                label="session",
                used=42.0,
                limit=100.0,
                unit="percent",
                resets_at=NOW + timedelta(hours=2, minutes=30),
                window_minutes=300,
            ),
        ),
        plan="plus",
        account="work",
    )
    return FetchOutcome.success(snapshot)


def _timeout_outcome() -> "FetchOutcome":
    error = FetchError(FetchErrorKind.TIMEOUT, "claude: no result within 30s")
    return FetchOutcome.failure(ProviderId.CLAUDE, SourceKind.AUTO, error)


class TestUsagePayload:
    def test_single_provider_is_flat(self) -> "None":
        payload = usage_payload([_codex_outcome()])

        assert payload["provider"] == "codex"
        assert payload["source"] == "oauth"
        assert payload["account"] == "work"
        metric = payload["usage"]["metrics"][0]
        assert metric["usedPercent"] == 42.0
        assert metric["resetsAt"] == "2025-09-15T14:30:00Z"
        assert metric["windowMinutes"] == 300
        assert payload["usage"]["updatedAt"] == "2025-09-15T12:00:00Z"
        assert payload["usage"]["providerCost"] is None

    def test_one_success_one_timeout(self) -> "None":
        text = render_usage([_codex_outcome(), _timeout_outcome()], OutputFormat.JSON)
        payload = json.loads(text)

        assert list(payload) == ["codex", "claude"]
        assert "usage" in payload["codex"]
        assert payload["claude"]["error"] == {
            "kind": "timeout",
            "message": "claude: no result within 30s",
        }
        assert "usage" not in payload["claude"]
        assert exit_status([_codex_outcome(), _timeout_outcome()]) == EXIT_PROVIDER_FAILED

    def test_jsonl_is_one_line_per_provider(self) -> "None":
        lines = render_usage([_codex_outcome(), _timeout_outcome()], OutputFormat.JSONL).splitlines()
        assert [json.loads(line)["provider"] for line in lines] == ["codex", "claude"]

    def test_pretty_json(self) -> "None":
        assert "\n  " in render_usage([_codex_outcome()], OutputFormat.JSON, pretty=True)
        assert "\n" not in render_usage([_codex_outcome()], OutputFormat.JSON)


class TestUsageText:
    def test_renders_snapshot_and_error(self) -> "None":
        text = render_usage([_codex_outcome(), _timeout_outcome()], OutputFormat.TEXT, now=NOW)

        assert text.splitlines() == [
            "== Codex (oauth) ==",
            "Session: 58% left [=======-----]",
            "  Resets in 2h 30m",
            "Account: work",
            "Plan: plus",
            "",
            "claude: error: claude: no result within 30s",
        ]

    def test_metric_line_with_counts(self) -> "None":
        metric = UsageMetric(label="requests", used=30.0, limit=150.0, unit="requests")
        assert metric_line(metric) == "Requests: 80% left [==========--] (30/150 requests)"

    def test_metric_line_without_limit(self) -> "None":
        metric = UsageMetric(label="credits", used=12.5, limit=0.0, unit="credits")
        assert metric_line(metric) == "Credits: 12.50 credits used"

    def test_cost_line(self) -> "None":
        snapshot = UsageSnapshot(
            provider=ProviderId.CURSOR,
            source=SourceKind.WEB,
            fetched_at=NOW,
            cost=ProviderCost(used=19.99, limit=50.0, period="monthly"),
        )
        text = render_usage([FetchOutcome.success(snapshot)], now=NOW)
        assert text.splitlines() == ["== Cursor (web) ==", "Cost: $19.99 / $50.00 (monthly)"]

    @pytest.mark.parametrize(
        "delta,expected",
        [
            (timedelta(seconds=-5), "now"),
            (timedelta(seconds=30), "in 1m"),
            (timedelta(minutes=45), "in 45m"),
            (timedelta(hours=3), "in 3h"),
            (timedelta(days=2, hours=5), "in 2d 5h"),
        ],
    )
    def test_reset_countdown(self, delta: "timedelta", expected: "str") -> "None":
        assert reset_countdown(NOW + delta, NOW) == expected

    def test_usage_bar_bounds(self) -> "None":
        assert usage_bar(100.0) == "[============]"
        assert usage_bar(-10.0) == "[------------]"


def _extras_outcome() -> "FetchOutcome":
    snapshot = UsageSnapshot(
        provider=ProviderId.CODEX,
        source=SourceKind.OAUTH,
        fetched_at=NOW,
        credits_remaining=1234.5,
        status=StatusBadge(
            indicator=StatusIndicator.MINOR,
            url="https://status.openai.com",
            description="Partially Degraded Service",
            updated_at=NOW,
        ),
    )
    return FetchOutcome.success(snapshot)


class TestExtras:
    def test_credits_and_status_payload(self) -> "None":
        usage = usage_payload([_extras_outcome()])["usage"]

        assert usage["credits"] == {"remaining": 1234.5}
        assert usage["status"] == {
            "indicator": "minor",
            "description": "Partially Degraded Service",
            "updatedAt": "2025-09-15T12:00:00Z",
            "url": "https://status.openai.com",
        }

    def test_absent_extras_are_null(self) -> "None":
        usage = usage_payload([_codex_outcome()])["usage"]
        assert usage["credits"] is None
        assert usage["status"] is None

    def test_credits_and_status_text(self) -> "None":
        text = render_usage([_extras_outcome()], now=NOW)

        assert text.splitlines() == [
            "== Codex (oauth) ==",
            "Credits: 1,234.50 left",
            "Status: Partial outage - Partially Degraded Service",
        ]


class TestAccountOutcomes:
    def test_accounts_of_one_provider_are_listed(self) -> "None":
        error = FetchError(FetchErrorKind.AUTHENTICATION_REJECTED, "codex: HTTP 401")
        outcomes = [
            _codex_outcome(),
            FetchOutcome.failure(ProviderId.CODEX, SourceKind.OAUTH, error, account="home"),
            _timeout_outcome(),
        ]

        payload = usage_payload(outcomes)

        assert list(payload) == ["codex", "claude"]
        assert [item["account"] for item in payload["codex"]] == ["work", "home"]
        assert payload["codex"][1]["error"]["kind"] == "authentication_rejected"
        assert "account" not in payload["claude"]

    def test_failed_account_text_names_account(self) -> "None":
        error = FetchError(FetchErrorKind.AUTHENTICATION_REJECTED, "codex: HTTP 401")
        outcome = FetchOutcome.failure(ProviderId.CODEX, SourceKind.OAUTH, error, account="home")

        assert render_usage([outcome]) == "codex (home): error: codex: HTTP 401"


class TestReports:
    def _report_outcome(self, granularity: "ReportGranularity" = ReportGranularity.DAILY) -> "ReportOutcome":
        records = [
            SessionRecord(
                session_id="2025/09/01/rollout-a",
                timestamp=datetime(2025, 9, 1, 10, tzinfo=timezone.utc),
                model="gpt-5",
                input_tokens=1000,
                output_tokens=100,
                total_tokens=1100,
            ),
            SessionRecord(
                session_id="2025/09/01/rollout-a",
                timestamp=datetime(2025, 9, 1, 11, tzinfo=timezone.utc),
                model="mystery-1",
                input_tokens=10,
                total_tokens=10,
            ),
        ]
        report = build_report(ProviderId.CODEX, records, ReportFilters(zone=ZoneInfo("UTC")), granularity)
        return ReportOutcome(provider=ProviderId.CODEX, report=report)

    def test_single_provider_is_flat(self) -> "None":
        payload = reports_payload([self._report_outcome()], ReportGranularity.DAILY)

        (row,) = payload["daily"]
        assert row["date"] == "2025-09-01"
        assert row["totalTokens"] == 1110
        assert row["warnings"] == ["mystery-1"]
        assert row["models"]["mystery-1"]["pricingMissing"] is True
        assert "pricingMissing" not in row["models"]["gpt-5"]
        assert payload["totals"]["totalTokens"] == 1110

    def test_several_providers_are_wrapped(self) -> "None":
        error = FetchError(FetchErrorKind.UNSUPPORTED_OPERATION, "claude: no session logs")
        outcomes = [self._report_outcome(), ReportOutcome(provider=ProviderId.CLAUDE, error=error)]

        payload = reports_payload(outcomes, ReportGranularity.DAILY)

        assert payload["report"] == "daily"
        assert "daily" in payload["providers"]["codex"]
        assert payload["providers"]["claude"]["error"]["kind"] == "unsupported_operation"
        assert exit_status(outcomes) == EXIT_PROVIDER_FAILED

    def test_session_rows(self) -> "None":
        payload = reports_payload([self._report_outcome(ReportGranularity.SESSION)], ReportGranularity.SESSION)

        (row,) = payload["sessions"]
        assert row["sessionId"] == "2025/09/01/rollout-a"
        assert row["sessionFile"] == "rollout-a.jsonl"
        assert row["directory"] == "2025/09/01"
        assert row["lastActivity"] == "2025-09-01T11:00:00+00:00"

    def test_text_report(self) -> "None":
        outcome = self._report_outcome()
        text = render_reports([outcome], ReportGranularity.DAILY)

        lines = text.splitlines()
        assert lines[0] == "== Codex daily cost (UTC) =="
        assert lines[1].startswith("2025-09-01")
        assert lines[-1] == "No pricing for: mystery-1 (costed at $0.00)"
        assert exit_status([outcome]) == EXIT_OK

    def test_jsonl_report_carries_provider(self) -> "None":
        (line,) = render_reports([self._report_outcome()], ReportGranularity.DAILY, OutputFormat.JSONL).splitlines()
        assert json.loads(line)["provider"] == "codex"
