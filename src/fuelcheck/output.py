import json
import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Sequence

from fuelcheck.catalog import entry_for
from fuelcheck.models import (
    CostReport,
    FetchOutcome,
    ModelUsage,
    ProviderCost,
    ProviderId,
    ReportGranularity,
    ReportTotals,
    StatusBadge,
    StatusIndicator,
    TimeBucket,
    UsageMetric,
    UsageSnapshot,
)
from fuelcheck.report import ReportOutcome

EXIT_OK = 0
EXIT_PROVIDER_FAILED = 1
EXIT_USAGE_ERROR = 2
EXIT_CONFIG_ERROR = 3

_BAR_WIDTH = 12

_STATUS_LABELS = {
    StatusIndicator.NONE: "Operational",
    StatusIndicator.MINOR: "Partial outage",
    StatusIndicator.MAJOR: "Major outage",
    StatusIndicator.CRITICAL: "Critical issue",
    StatusIndicator.MAINTENANCE: "Maintenance",
    StatusIndicator.UNKNOWN: "Status unknown",
}


class OutputFormat(str, Enum):
    TEXT = "text"
    JSON = "json"
    JSONL = "jsonl"

    def __str__(self) -> "str":
        return self.value


def exit_status(outcomes: "Sequence[FetchOutcome] | Sequence[ReportOutcome]") -> "int":
    """
    any failed provider fails the whole invocation, even when the
    others succeeded.
    """
    if any(not outcome.ok for outcome in outcomes):
        return EXIT_PROVIDER_FAILED
    return EXIT_OK


def dumps(value: "Any", pretty: "bool" = False) -> "str":
    if pretty:
        return json.dumps(value, indent=2, ensure_ascii=False)
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def display_name(provider: "ProviderId") -> "str":
    return entry_for(provider).display_name


def _iso(value: "datetime | None") -> "str | None":
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


# usage


def metric_payload(metric: "UsageMetric") -> "dict[str, Any]":
    return {
        "label": metric.label,
        "used": metric.used,
        "limit": metric.limit,
        "unit": metric.unit,
        "usedPercent": metric.used_percent,
        "resetsAt": _iso(metric.resets_at),
        "windowMinutes": metric.window_minutes,
    }


def cost_payload(cost: "ProviderCost") -> "dict[str, Any]":
    return {
        "used": cost.used,
        "limit": cost.limit,
        "currencyCode": cost.currency,
        "period": cost.period,
        "resetsAt": _iso(cost.resets_at),
    }


def snapshot_payload(snapshot: "UsageSnapshot") -> "dict[str, Any]":
    return {
        "updatedAt": _iso(snapshot.fetched_at),
        "metrics": [metric_payload(metric) for metric in snapshot.metrics],
        "providerCost": cost_payload(snapshot.cost) if snapshot.cost else None,
        "plan": snapshot.plan,
        "accountEmail": snapshot.account_email,
        "credits": (
            {"remaining": snapshot.credits_remaining}
            if snapshot.credits_remaining is not None
            else None
        ),
        "status": status_payload(snapshot.status) if snapshot.status else None,
    }


def status_payload(status: "StatusBadge") -> "dict[str, Any]":
    return {
        "indicator": str(status.indicator),
        "description": status.description,
        "updatedAt": _iso(status.updated_at),
        "url": status.url,
    }


def outcome_payload(outcome: "FetchOutcome") -> "dict[str, Any]":
    payload: "dict[str, Any]" = {
        "provider": str(outcome.provider),
        "source": str(outcome.source),
    }
    if outcome.account is not None:
        payload["account"] = outcome.account
    if outcome.snapshot is not None:
        payload["usage"] = snapshot_payload(outcome.snapshot)
    elif outcome.error is not None:
        payload["error"] = outcome.error.to_payload()
    return payload


def usage_payload(outcomes: "Sequence[FetchOutcome]") -> "dict[str, Any]":
    """
    a single outcome renders flat, several are keyed by provider id in
    request order. A provider fetched for several token accounts maps
    to the list of its per-account payloads.
    """
    if len(outcomes) == 1:
        return outcome_payload(outcomes[0])

    grouped: "dict[str, list[dict[str, Any]]]" = {}
    for outcome in outcomes:
        grouped.setdefault(str(outcome.provider), []).append(outcome_payload(outcome))
    return {provider: items[0] if len(items) == 1 else items for provider, items in grouped.items()}


def render_usage(
    outcomes: "Sequence[FetchOutcome]",
    output_format: "OutputFormat" = OutputFormat.TEXT,
    pretty: "bool" = False,
    now: "datetime | None" = None,
) -> "str":
    if output_format is OutputFormat.JSON:
        return dumps(usage_payload(outcomes), pretty)
    if output_format is OutputFormat.JSONL:
        return "\n".join(dumps(outcome_payload(outcome)) for outcome in outcomes)
    return render_usage_text(outcomes, now)


def render_usage_text(outcomes: "Sequence[FetchOutcome]", now: "datetime | None" = None) -> "str":
    now = now or datetime.now(timezone.utc)
    return "\n\n".join(_outcome_text(outcome, now) for outcome in outcomes)


def _outcome_text(outcome: "FetchOutcome", now: "datetime") -> "str":
    if outcome.error is not None:
        name = str(outcome.provider) if outcome.account is None else f"{outcome.provider} ({outcome.account})"
        return f"{name}: error: {outcome.error.message}"

    snapshot = outcome.snapshot
    assert snapshot is not None
    lines = [f"== {display_name(outcome.provider)} ({outcome.source}) =="]
    for metric in snapshot.metrics:
        lines.append(metric_line(metric))
        if metric.resets_at is not None:
            lines.append(f"  Resets {reset_countdown(metric.resets_at, now)}")
    if snapshot.cost is not None:
        lines.append(cost_line(snapshot.cost))
    if snapshot.credits_remaining is not None:
        lines.append(f"Credits: {_amount(snapshot.credits_remaining)} left")
    if snapshot.account_email:
        lines.append(f"Account: {snapshot.account_email}")
    elif snapshot.account:
        lines.append(f"Account: {snapshot.account}")
    if snapshot.plan:
        lines.append(f"Plan: {snapshot.plan}")
    if snapshot.status is not None:
        lines.append(status_line(snapshot.status))
    return "\n".join(lines)


def status_line(status: "StatusBadge") -> "str":
    line = f"Status: {_STATUS_LABELS[status.indicator]}"
    if status.description:
        line += f" - {status.description}"
    return line


def metric_line(metric: "UsageMetric") -> "str":
    label = metric.label[:1].upper() + metric.label[1:]
    percent = metric.used_percent
    if percent is None:
        return f"{label}: {_amount(metric.used)} {metric.unit} used"

    remaining = min(max(100.0 - percent, 0.0), 100.0)
    line = f"{label}: {remaining:.0f}% left {usage_bar(remaining)}"
    if metric.unit != "percent":
        line += f" ({_amount(metric.used)}/{_amount(metric.limit)} {metric.unit})"
    return line


def usage_bar(remaining: "float") -> "str":
    filled = min(round(min(max(remaining, 0.0), 100.0) / 100.0 * _BAR_WIDTH), _BAR_WIDTH)
    return "[" + "=" * filled + "-" * (_BAR_WIDTH - filled) + "]"


def cost_line(cost: "ProviderCost") -> "str":
    used = _money(cost.used, cost.currency)
    line = f"Cost: {used}"
    if cost.limit > 0:
        line += f" / {_money(cost.limit, cost.currency)}"
    if cost.period:
        line += f" ({cost.period})"
    return line


def reset_countdown(resets_at: "datetime", now: "datetime") -> "str":
    seconds = (resets_at - now).total_seconds()
    if seconds < 1:
        return "now"
    total_minutes = max(math.ceil(seconds / 60), 1)
    days, rest = divmod(total_minutes, 24 * 60)
    hours, minutes = divmod(rest, 60)
    if days:
        return f"in {days}d {hours}h" if hours else f"in {days}d"
    if hours:
        return f"in {hours}h {minutes}m" if minutes else f"in {hours}h"
    return f"in {minutes}m"


def _amount(value: "float") -> "str":
    if float(value).is_integer():
        return f"{int(value):,}"
    return f"{value:,.2f}"


def _money(value: "float", currency: "str") -> "str":
    if currency.upper() == "USD":
        return f"${value:,.2f}"
    return f"{value:,.2f} {currency}"


# cost reports

_ROW_KEYS = {
    ReportGranularity.DAILY: ("daily", "date"),
    ReportGranularity.MONTHLY: ("monthly", "month"),
    ReportGranularity.SESSION: ("sessions", "sessionId"),
}


def _token_fields(item: "ModelUsage | TimeBucket | ReportTotals") -> "dict[str, Any]":
    return {
        "inputTokens": item.input_tokens,
        "cachedInputTokens": item.cached_input_tokens,
        "outputTokens": item.output_tokens,
        "reasoningOutputTokens": item.reasoning_output_tokens,
        "totalTokens": item.total_tokens,
        "costUSD": item.cost_usd,
    }


def model_usage_payload(usage: "ModelUsage") -> "dict[str, Any]":
    payload = _token_fields(usage)
    if usage.is_fallback:
        payload["isFallback"] = True
    if usage.pricing_missing:
        payload["pricingMissing"] = True
    return payload


def bucket_payload(bucket: "TimeBucket") -> "dict[str, Any]":
    _, key_name = _ROW_KEYS[bucket.granularity]
    payload: "dict[str, Any]" = {key_name: bucket.key}
    if bucket.granularity is ReportGranularity.SESSION:
        directory, _, name = bucket.key.rpartition("/")
        payload["lastActivity"] = bucket.end.isoformat()
        payload["sessionFile"] = f"{name}.jsonl"
        payload["directory"] = directory
    payload.update(_token_fields(bucket))
    payload["models"] = {name: model_usage_payload(usage) for name, usage in bucket.models}
    if bucket.warnings:
        payload["warnings"] = list(bucket.warnings)
    return payload


def report_payload(report: "CostReport") -> "dict[str, Any]":
    rows_key, _ = _ROW_KEYS[report.granularity]
    return {
        rows_key: [bucket_payload(bucket) for bucket in report.buckets],
        "totals": _token_fields(report.totals),
    }


def _report_outcome_payload(outcome: "ReportOutcome") -> "dict[str, Any]":
    if outcome.report is not None:
        return report_payload(outcome.report)
    assert outcome.error is not None
    return {"error": outcome.error.to_payload()}


def reports_payload(
    outcomes: "Sequence[ReportOutcome]",
    granularity: "ReportGranularity",
) -> "dict[str, Any]":
    """
    a single provider keeps the flat report schema; several providers
    are wrapped under `providers` with the report kind alongside.
    """
    if len(outcomes) == 1:
        return _report_outcome_payload(outcomes[0])
    return {
        "report": str(granularity),
        "providers": {str(outcome.provider): _report_outcome_payload(outcome) for outcome in outcomes},
    }


def render_reports(
    outcomes: "Sequence[ReportOutcome]",
    granularity: "ReportGranularity",
    output_format: "OutputFormat" = OutputFormat.TEXT,
    pretty: "bool" = False,
) -> "str":
    if output_format is OutputFormat.JSON:
        return dumps(reports_payload(outcomes, granularity), pretty)
    if output_format is OutputFormat.JSONL:
        return "\n".join(
            dumps({"provider": str(outcome.provider), **_report_outcome_payload(outcome)})
            for outcome in outcomes
        )
    return "\n\n".join(_report_text(outcome, granularity) for outcome in outcomes)


def _report_text(outcome: "ReportOutcome", granularity: "ReportGranularity") -> "str":
    if outcome.error is not None:
        return f"{outcome.provider}: error: {outcome.error.message}"

    report = outcome.report
    assert report is not None
    lines = [f"== {display_name(report.provider)} {granularity} cost ({report.timezone}) =="]
    if not report.buckets:
        lines.append("No usage recorded in range.")
    for bucket in report.buckets:
        lines.append(
            f"{bucket.key}  {bucket.total_tokens:>12,} tokens  ${bucket.cost_usd:,.2f}"
            f"  {', '.join(name for name, _ in bucket.models)}"
        )
    lines.append(f"Total  {report.totals.total_tokens:>12,} tokens  ${report.totals.cost_usd:,.2f}")
    if report.warnings:
        lines.append(f"No pricing for: {', '.join(report.warnings)} (costed at $0.00)")
    return "\n".join(lines)
