import html
import json
import math
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping

import structlog

from fuelcheck.errors import (
    FetchError,
    FetchErrorKind,
    NormalizationError,
    NormalizationErrorKind,
)
from fuelcheck.models import (
    ProviderCost,
    ProviderId,
    RawResponse,
    SourceKind,
    UsageMetric,
    UsageSnapshot,
)
from fuelcheck.provider.base import envelope_message
from fuelcheck.provider.opencode import parse_usage as parse_opencode_usage

logger = structlog.get_logger()

Normalizer = Callable[[RawResponse], UsageSnapshot]

SESSION_WINDOW_MINUTES = 5 * 60
WEEK_WINDOW_MINUTES = 7 * 24 * 60
MONTH_WINDOW_MINUTES = 30 * 24 * 60
DAY_WINDOW_MINUTES = 24 * 60

_AUTH_HINTS = ("unauthorized", "unauthenticated", "invalid token", "invalid api key", "expired", "login")


def normalize(raw: "RawResponse") -> "UsageSnapshot":
    """
    maps a provider's decoded response onto the canonical snapshot.

    Raises NormalizationError when the payload does not have the shape
    the provider is known to answer with, and FetchError when the
    payload is a provider-side error envelope.
    """
    normalizer = NORMALIZERS.get(raw.provider)
    if normalizer is None:
        raise NormalizationError(
            NormalizationErrorKind.UNRECOGNIZED_RESPONSE_SHAPE,
            f"{raw.provider}: no normalizer registered",
        )
    snapshot = normalizer(raw)
    logger.debug(
        "snapshot_normalized",
        provider=str(raw.provider),
        source=str(raw.source),
        metrics=len(snapshot.metrics),
    )
    return snapshot


def percent_metric(
    label: "str",
    used_percent: "float",
    resets_at: "datetime | None" = None,
    window_minutes: "int | None" = None,
) -> "UsageMetric":
    return UsageMetric(
        label=label,
        used=used_percent,
        limit=100.0,
        unit="percent",
        resets_at=resets_at,
        window_minutes=window_minutes,
    )


def parse_time(value: "Any") -> "datetime | None":
    """
    accepts epoch seconds, epoch milliseconds or an ISO 8601 string;
    anything else is treated as absent.
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.isdigit():
            return parse_time(int(text))
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.astimezone(timezone.utc)
    if isinstance(value, (int, float)):
        if value <= 0:
            return None
        seconds = value / 1000 if value > 1e12 else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    return None


def number(value: "Any") -> "float | None":
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def first_number(data: "Mapping[str, Any]", keys: "tuple[str, ...]") -> "float | None":
    for key in keys:
        value = number(data.get(key))
        if value is not None:
            return value
    return None


def first_string(data: "Mapping[str, Any]", keys: "tuple[str, ...]") -> "str | None":
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _shape_error(provider: "ProviderId", message: "str") -> "NormalizationError":
    return NormalizationError(
        NormalizationErrorKind.UNRECOGNIZED_RESPONSE_SHAPE, f"{provider}: {message}"
    )


def _remote_error(provider: "ProviderId", message: "str") -> "FetchError":
    kind = FetchErrorKind.REMOTE_UNAVAILABLE
    if any(hint in message.lower() for hint in _AUTH_HINTS):
        kind = FetchErrorKind.AUTHENTICATION_REJECTED
    return FetchError(kind, f"{provider}: {message}")


def _expect_object(provider: "ProviderId", payload: "Any") -> "Mapping[str, Any]":
    if not isinstance(payload, Mapping):
        raise _shape_error(provider, "expected a JSON object")
    if payload.get("error"):
        raise _remote_error(provider, envelope_message(payload) or "provider reported an error")
    return payload


def _snapshot(raw: "RawResponse", metrics: "list[UsageMetric]", **kwargs: "Any") -> "UsageSnapshot":
    return UsageSnapshot(
        provider=raw.provider,
        source=raw.source,
        fetched_at=raw.fetched_at,
        metrics=tuple(metrics),
        account=raw.account,
        **kwargs,
    )


def normalize_codex(raw: "RawResponse") -> "UsageSnapshot":
    payload = _expect_object(ProviderId.CODEX, raw.payload)
    rate_limit = payload.get("rate_limit")
    if not isinstance(rate_limit, Mapping) and "plan_type" not in payload:
        raise _shape_error(ProviderId.CODEX, "response has no rate_limit section")

    metrics = []
    windows = rate_limit if isinstance(rate_limit, Mapping) else {}
    for key, label in (("primary_window", "session"), ("secondary_window", "weekly")):
        window = windows.get(key)
        if not isinstance(window, Mapping):
            continue
        used = number(window.get("used_percent"))
        if used is None:
            continue
        seconds = number(window.get("limit_window_seconds"))
        metrics.append(
            percent_metric(
                label,
                used,
                resets_at=parse_time(window.get("reset_at")),
                window_minutes=int(seconds // 60) if seconds else None,
            )
        )

    credits = payload.get("credits")
    balance = number(credits.get("balance")) if isinstance(credits, Mapping) else None
    return _snapshot(
        raw,
        metrics,
        plan=first_string(payload, ("plan_type",)),
        credits_remaining=balance,
    )


def _claude_windows(provider: "ProviderId", usage: "Mapping[str, Any]") -> "list[UsageMetric]":
    windows = (
        ("five_hour", "session", SESSION_WINDOW_MINUTES),
        ("seven_day", "weekly", WEEK_WINDOW_MINUTES),
        ("seven_day_sonnet", "sonnet", WEEK_WINDOW_MINUTES),
        ("seven_day_opus", "opus", WEEK_WINDOW_MINUTES),
    )
    metrics = []
    for key, label, minutes in windows:
        window = usage.get(key)
        if not isinstance(window, Mapping):
            continue
        utilization = number(window.get("utilization"))
        if utilization is None:
            continue
        metrics.append(
            percent_metric(
                label,
                utilization,
                resets_at=parse_time(window.get("resets_at")),
                window_minutes=minutes,
            )
        )

    if not metrics or metrics[0].label != "session":
        raise _shape_error(provider, "response has no session (five_hour) window")
    return metrics


def _cents_cost(
    section: "Any", used_key: "str", limit_key: "str", resets_at: "datetime | None" = None
) -> "ProviderCost | None":
    if not isinstance(section, Mapping) or section.get("is_enabled") is not True:
        return None
    used = number(section.get(used_key))
    limit = number(section.get(limit_key))
    if used is None or limit is None or limit <= 0:
        return None
    return ProviderCost(
        used=used / 100.0,
        limit=limit / 100.0,
        currency=first_string(section, ("currency",)) or "USD",
        period="Monthly",
        resets_at=resets_at,
    )


def normalize_claude(raw: "RawResponse") -> "UsageSnapshot":
    if raw.source is SourceKind.WEB:
        payload = raw.payload if isinstance(raw.payload, Mapping) else {}
        usage = _expect_object(ProviderId.CLAUDE, payload.get("usage"))
        organization = payload.get("organization")
        org = organization if isinstance(organization, Mapping) else {}
        return _snapshot(
            raw,
            _claude_windows(ProviderId.CLAUDE, usage),
            cost=_cents_cost(payload.get("overage"), "used_credits", "monthly_credit_limit"),
            plan=first_string(org, ("rate_limit_tier", "name")),
        )

    usage = _expect_object(ProviderId.CLAUDE, raw.payload)
    return _snapshot(
        raw,
        _claude_windows(ProviderId.CLAUDE, usage),
        cost=_cents_cost(usage.get("extra_usage"), "used_credits", "monthly_limit"),
    )


def normalize_cursor(raw: "RawResponse") -> "UsageSnapshot":
    payload = raw.payload if isinstance(raw.payload, Mapping) else {}
    summary = _expect_object(ProviderId.CURSOR, payload.get("summary"))
    individual = summary.get("individualUsage")
    if not isinstance(individual, Mapping):
        raise _shape_error(ProviderId.CURSOR, "response has no individualUsage section")

    resets_at = parse_time(summary.get("billingCycleEnd"))
    metrics = []
    plan_usage = individual.get("plan")
    if isinstance(plan_usage, Mapping):
        used = number(plan_usage.get("used"))
        limit = number(plan_usage.get("limit"))
        if used is not None and limit:
            percent = (used / limit) * 100.0
        else:
            percent = number(plan_usage.get("totalPercentUsed"))
            if percent is not None and percent <= 1.0:
                percent *= 100.0
        if percent is not None:
            metrics.append(
                percent_metric("plan", percent, resets_at=resets_at, window_minutes=MONTH_WINDOW_MINUTES)
            )

    cost = None
    on_demand = individual.get("onDemand")
    if isinstance(on_demand, Mapping):
        # cents
        used = number(on_demand.get("used")) or 0.0
        limit = number(on_demand.get("limit"))
        if used > 0 or limit is not None:
            cost = ProviderCost(
                used=used / 100.0,
                limit=(limit or 0.0) / 100.0,
                period="Monthly",
                resets_at=resets_at,
            )

    user = payload.get("user")
    email = first_string(user, ("email",)) if isinstance(user, Mapping) else None
    return _snapshot(
        raw,
        metrics,
        cost=cost,
        plan=first_string(summary, ("membershipType",)),
        account_email=email,
    )


def normalize_copilot(raw: "RawResponse") -> "UsageSnapshot":
    payload = _expect_object(ProviderId.COPILOT, raw.payload)
    snapshots = payload.get("quota_snapshots")
    if not isinstance(snapshots, Mapping):
        raise _shape_error(ProviderId.COPILOT, "response has no quota_snapshots section")

    resets_at = parse_time(payload.get("quota_reset_date"))
    metrics = []
    for key, label in (("premium_interactions", "premium"), ("chat", "chat")):
        snap = snapshots.get(key)
        if not isinstance(snap, Mapping) or snap.get("unlimited") is True:
            continue
        remaining = number(snap.get("percent_remaining"))
        if remaining is None:
            continue
        used = min(max(100.0 - remaining, 0.0), 100.0)
        metrics.append(percent_metric(label, used, resets_at=resets_at))

    plan = first_string(payload, ("copilot_plan",))
    return _snapshot(raw, metrics, plan=plan.lower() if plan else None)


def _window_minutes(limit: "Mapping[str, Any]") -> "int | None":
    for key in ("window", "timeWindow", "windowInfo", "period"):
        window = limit.get(key)
        if isinstance(window, Mapping):
            break
    else:
        return None

    count = first_number(window, ("number", "duration", "window", "size", "count"))
    if count is None:
        return None
    unit = (first_string(window, ("unit", "timeUnit", "windowUnit", "type")) or "").lower()
    factor = 1.0
    for name, minutes in (("minute", 1), ("hour", 60), ("day", 1440), ("week", 10080), ("month", 43200)):
        if name in unit:
            factor = minutes
            break
    return round(count * factor)


def normalize_zai(raw: "RawResponse") -> "UsageSnapshot":
    payload = _expect_object(ProviderId.ZAI, raw.payload)
    if payload.get("success") is False:
        message = first_string(payload, ("msg", "message")) or "quota request failed"
        raise _remote_error(ProviderId.ZAI, message)

    data = payload.get("data") if isinstance(payload.get("data"), Mapping) else payload
    limits = data.get("limits")
    if not isinstance(limits, list):
        raise _shape_error(ProviderId.ZAI, "response has no limits list")

    metrics = []
    for limit in limits:
        if not isinstance(limit, Mapping):
            continue
        percent = first_number(
            limit,
            ("usedPercent", "used_percent", "usagePercent", "usage_percent", "percentUsed", "percent_used"),
        )
        if percent is None:
            used = first_number(limit, ("used", "usage", "current", "consumed"))
            total = first_number(limit, ("limit", "quota", "total", "max"))
            remaining = first_number(limit, ("remaining", "left"))
            if used is not None and total:
                percent = (used / total) * 100.0
            elif remaining is not None and total:
                percent = ((total - remaining) / total) * 100.0
        if percent is None:
            continue

        kind = (first_string(limit, ("limitType", "limit_type", "type")) or "").lower()
        if "token" in kind:
            label = "tokens"
        elif "time" in kind or "mcp" in kind:
            label = "mcp"
        else:
            label = kind or "limit"

        resets_at = None
        for key in ("nextResetTime", "resetTime", "resetAt", "next_reset_time", "resetsAt", "reset_at"):
            resets_at = parse_time(limit.get(key))
            if resets_at is not None:
                break

        metrics.append(
            percent_metric(label, percent, resets_at=resets_at, window_minutes=_window_minutes(limit))
        )

    plan = first_string(data, ("planName", "plan", "plan_type", "packageName"))
    return _snapshot(raw, metrics, plan=plan)


def normalize_minimax(raw: "RawResponse") -> "UsageSnapshot":
    payload = _expect_object(ProviderId.MINIMAX, raw.payload)
    data = payload.get("data") if isinstance(payload.get("data"), Mapping) else {}

    base_resp = data.get("base_resp") or payload.get("base_resp")
    if isinstance(base_resp, Mapping):
        status = number(base_resp.get("status_code"))
        if status:
            message = first_string(base_resp, ("status_msg",)) or f"status_code {int(status)}"
            error = _remote_error(ProviderId.MINIMAX, message)
            if int(status) == 1004:
                error = FetchError(FetchErrorKind.AUTHENTICATION_REJECTED, error.message)
            raise error

    remains = data.get("model_remains") or payload.get("model_remains")
    if not isinstance(remains, list) or not remains or not isinstance(remains[0], Mapping):
        raise _shape_error(ProviderId.MINIMAX, "response has no model_remains entries")
    first = remains[0]

    total = number(first.get("current_interval_total_count")) or 0.0
    # despite the name this field counts what is left in the interval
    remaining = number(first.get("current_interval_usage_count")) or 0.0
    start = parse_time(first.get("start_time"))
    end = parse_time(first.get("end_time"))
    window = None
    if start is not None and end is not None and end > start:
        window = int((end - start).total_seconds() // 60)

    resets_at = end
    remains_time = number(first.get("remains_time"))
    if remains_time and remains_time > 0:
        seconds = remains_time / 1000 if remains_time > 1_000_000 else remains_time
        resets_at = raw.fetched_at + timedelta(seconds=seconds)

    metric = UsageMetric(
        label="prompts",
        used=max(total - remaining, 0.0),
        limit=total,
        unit="requests",
        resets_at=resets_at,
        window_minutes=window,
    )

    plan = first_string(
        data, ("plan_name", "current_plan_title", "current_subscribe_title", "combo_title")
    )
    card = data.get("current_combo_card")
    if plan is None and isinstance(card, Mapping):
        plan = first_string(card, ("title",))
    return _snapshot(raw, [metric], plan=plan)


def normalize_kimi_k2(raw: "RawResponse") -> "UsageSnapshot":
    payload = _expect_object(ProviderId.KIMI_K2, raw.payload)
    data = payload.get("data") if isinstance(payload.get("data"), Mapping) else payload

    remaining = first_number(
        data, ("creditsRemaining", "remainingCredits", "remaining", "credits_remaining", "available")
    )
    consumed = first_number(data, ("creditsConsumed", "consumed", "used", "credits_used"))
    total = first_number(data, ("totalCredits", "total", "creditsTotal"))
    if total is None and remaining is not None and consumed is not None:
        total = remaining + consumed
    if consumed is None and remaining is not None and total is not None:
        consumed = total - remaining
    if consumed is None or total is None:
        raise _shape_error(ProviderId.KIMI_K2, "response has no credit balance")

    metric = UsageMetric(label="credits", used=consumed, limit=total, unit="credits")
    return _snapshot(raw, [metric])


def normalize_warp(raw: "RawResponse") -> "UsageSnapshot":
    payload = raw.payload
    if not isinstance(payload, Mapping):
        raise _shape_error(ProviderId.WARP, "expected a JSON object")
    errors = payload.get("errors")
    if isinstance(errors, list) and errors:
        first = errors[0] if isinstance(errors[0], Mapping) else {}
        raise _remote_error(ProviderId.WARP, first_string(first, ("message",)) or "GraphQL error")

    info: "Any" = payload
    for key in ("data", "user", "user", "requestLimitInfo"):
        info = info.get(key) if isinstance(info, Mapping) else None
    if not isinstance(info, Mapping):
        raise _shape_error(ProviderId.WARP, "response has no requestLimitInfo")

    unlimited = info.get("isUnlimited") is True
    used = number(info.get("requestsUsedSinceLastRefresh")) or 0.0
    limit = number(info.get("requestLimit")) or 0.0
    metric = UsageMetric(
        label="requests",
        used=used,
        limit=0.0 if unlimited else limit,
        unit="requests",
        resets_at=parse_time(info.get("nextRefreshTime")),
    )
    return _snapshot(raw, [metric], plan="Unlimited" if unlimited else None)


_GEMINI_TIERS = {
    "standard-tier": "Paid",
    "free-tier": "Free",
    "legacy-tier": "Legacy",
}


def normalize_gemini(raw: "RawResponse") -> "UsageSnapshot":
    payload = raw.payload if isinstance(raw.payload, Mapping) else {}
    quota = _expect_object(ProviderId.GEMINI, payload.get("quota"))
    buckets = quota.get("buckets")
    if not isinstance(buckets, list):
        raise _shape_error(ProviderId.GEMINI, "response has no quota buckets")

    # lowest remaining fraction per model family
    lowest: "dict[str, tuple[float, Any]]" = {}
    for bucket in buckets:
        if not isinstance(bucket, Mapping):
            continue
        model = bucket.get("modelId")
        fraction = number(bucket.get("remainingFraction"))
        if not isinstance(model, str) or fraction is None:
            continue
        family = "flash" if "flash" in model.lower() else "pro" if "pro" in model.lower() else None
        if family is None:
            continue
        if family not in lowest or fraction < lowest[family][0]:
            lowest[family] = (fraction, bucket.get("resetTime"))

    metrics = [
        percent_metric(
            family,
            100.0 - fraction * 100.0,
            resets_at=parse_time(reset),
            window_minutes=DAY_WINDOW_MINUTES,
        )
        for family, (fraction, reset) in sorted(lowest.items(), key=lambda item: item[0] != "pro")
    ]
    tier = payload.get("tier")
    return _snapshot(raw, metrics, plan=_GEMINI_TIERS.get(tier) if isinstance(tier, str) else None)


_KIRO_MONTHLY = re.compile(r"(\d{1,3})%.*?resets on\s+(\d{1,2})/(\d{1,2})", re.IGNORECASE | re.DOTALL)
_KIRO_BONUS = re.compile(
    r"bonus credits:\s*([0-9.]+)\s*/\s*([0-9.]+)\s*credits used.*?expires in\s+(\d+)\s+days",
    re.IGNORECASE | re.DOTALL,
)
_KIRO_PLAN = re.compile(r"\|\s*([A-Z0-9 ]+?)\s*\|")


def _next_month_day(now: "datetime", month: "int", day: "int") -> "datetime | None":
    for year in (now.year, now.year + 1):
        try:
            candidate = datetime(year, month, day, tzinfo=timezone.utc)
        except ValueError:
            return None
        if candidate >= now:
            return candidate
    return None


def normalize_kiro(raw: "RawResponse") -> "UsageSnapshot":
    text = raw.payload.get("text") if isinstance(raw.payload, Mapping) else None
    if not isinstance(text, str):
        raise _shape_error(ProviderId.KIRO, "no CLI output")

    metrics = []
    monthly = _KIRO_MONTHLY.search(text)
    if monthly:
        percent = min(max(float(monthly.group(1)), 0.0), 100.0)
        resets_at = _next_month_day(raw.fetched_at, int(monthly.group(2)), int(monthly.group(3)))
        metrics.append(percent_metric("monthly", percent, resets_at=resets_at))

    bonus = _KIRO_BONUS.search(text)
    if bonus and float(bonus.group(2)) > 0:
        metrics.append(
            UsageMetric(
                label="bonus",
                used=float(bonus.group(1)),
                limit=float(bonus.group(2)),
                unit="credits",
                resets_at=raw.fetched_at + timedelta(days=int(bonus.group(3))),
            )
        )

    if not metrics:
        raise _shape_error(ProviderId.KIRO, "usage data missing from CLI output")

    plan = _KIRO_PLAN.search(text)
    return _snapshot(raw, metrics, plan=plan.group(1).strip() if plan else None)


def _xml_json_attribute(xml: "str", name: "str") -> "Any":
    match = re.search(rf'name="{re.escape(name)}"\s+value="([^"]+)"', xml)
    if match is None:
        return None
    try:
        return json.loads(html.unescape(match.group(1)))
    except ValueError:
        return None


def normalize_jetbrains(raw: "RawResponse") -> "UsageSnapshot":
    payload = raw.payload if isinstance(raw.payload, Mapping) else {}
    xml = payload.get("xml")
    quota = _xml_json_attribute(xml, "quotaInfo") if isinstance(xml, str) else None
    if not isinstance(quota, Mapping):
        raise _shape_error(ProviderId.JETBRAINS, "quotaInfo missing from quota file")

    maximum = first_number(quota, ("maximum", "max")) or 0.0
    if maximum <= 0:
        raise _shape_error(ProviderId.JETBRAINS, "quota maximum missing")
    tariff = quota.get("tariffQuota")
    available = first_number(tariff, ("available",)) if isinstance(tariff, Mapping) else None
    if available is None:
        available = first_number(quota, ("available",)) or 0.0

    refill = _xml_json_attribute(xml, "nextRefill")
    resets_at = parse_time(refill.get("next")) if isinstance(refill, Mapping) else None

    # the IDE directory (e.g. IntelliJIdea2025.1) sits above options/
    plan = None
    path = payload.get("path")
    if isinstance(path, str):
        parts = path.replace("\\", "/").split("/")
        if len(parts) >= 3 and parts[-2] == "options":
            plan = parts[-3]

    metric = UsageMetric(
        label="quota",
        used=min(max(maximum - available, 0.0), maximum),
        limit=maximum,
        unit="credits",
        resets_at=resets_at,
    )
    return _snapshot(raw, [metric], plan=plan)


def _object_after(text: "str", token: "str") -> "str | None":
    """
    returns the balanced {...} literal that follows token in text,
    skipping braces inside string literals.
    """
    index = text.find(token)
    if index < 0:
        return None
    start = text.find("{", index + len(token))
    if start < 0:
        return None

    depth = 0
    in_string = False
    escape = False
    for position in range(start, len(text)):
        char = text[position]
        if in_string:
            if escape:
                escape = False
            elif char == "\\":
                escape = True
            elif char == '"':
                in_string = False
        elif char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : position + 1]
    return None


def _literal_number(text: "str", key: "str") -> "float | None":
    match = re.search(rf'"?{re.escape(key)}"?\s*:\s*([0-9]+(?:\.[0-9]+)?)', text)
    return float(match.group(1)) if match else None


def normalize_amp(raw: "RawResponse") -> "UsageSnapshot":
    html_text = raw.payload.get("html") if isinstance(raw.payload, Mapping) else None
    if not isinstance(html_text, str):
        raise _shape_error(ProviderId.AMP, "no settings page")

    usage = None
    for token in ("freeTierUsage", "getFreeTierUsage"):
        literal = _object_after(html_text, token)
        if literal is None:
            continue
        quota = _literal_number(literal, "quota")
        used = _literal_number(literal, "used")
        hourly = _literal_number(literal, "hourlyReplenishment")
        if quota is not None and used is not None and hourly is not None:
            usage = (quota, used, hourly, _literal_number(literal, "windowHours"))
            break
    if usage is None:
        raise _shape_error(ProviderId.AMP, "free tier usage missing from settings page")

    quota, used, hourly, window_hours = usage
    resets_at = None
    if quota > 0 and hourly > 0:
        # time until the balance has replenished back to full
        resets_at = raw.fetched_at + timedelta(hours=used / hourly)
    metric = percent_metric(
        "free",
        (used / quota) * 100.0 if quota > 0 else 0.0,
        resets_at=resets_at,
        window_minutes=round(window_hours * 60) if window_hours else None,
    )
    return _snapshot(raw, [metric], plan="Amp Free")


# allowances above this are treated as unlimited
_FACTORY_UNLIMITED = 1_000_000_000_000
_FACTORY_REFERENCE_TOKENS = 100_000_000


def factory_percent(used: "float", allowance: "float", ratio: "float | None") -> "float":
    """
    prefers the API's own used ratio, either as a fraction or, when the
    allowance is not trustworthy, as a percentage; otherwise divides
    tokens by allowance. Unlimited plans are measured against a fixed
    reference budget.
    """
    if ratio is not None and math.isfinite(ratio):
        if -0.001 <= ratio <= 1.001:
            return min(max(ratio * 100.0, 0.0), 100.0)
        reliable = 0 < allowance <= _FACTORY_UNLIMITED
        if not reliable and -0.1 <= ratio <= 100.1:
            return min(max(ratio, 0.0), 100.0)

    if allowance > _FACTORY_UNLIMITED:
        return min(used / _FACTORY_REFERENCE_TOKENS * 100.0, 100.0)
    if allowance <= 0:
        return 0.0
    return min(used / allowance * 100.0, 100.0)


def _factory_plan(auth: "Mapping[str, Any]") -> "str | None":
    organization = auth.get("organization")
    subscription = organization.get("subscription") if isinstance(organization, Mapping) else None
    if not isinstance(subscription, Mapping):
        return None

    parts = []
    tier = first_string(subscription, ("factoryTier",))
    if tier:
        parts.append(f"Factory {tier[:1].upper()}{tier[1:]}")
    orb = subscription.get("orbSubscription")
    plan = orb.get("plan") if isinstance(orb, Mapping) else None
    name = first_string(plan, ("name",)) if isinstance(plan, Mapping) else None
    if name and "factory" not in name.lower():
        parts.append(name)
    return " - ".join(parts) or None


def normalize_factory(raw: "RawResponse") -> "UsageSnapshot":
    payload = raw.payload if isinstance(raw.payload, Mapping) else {}
    auth = _expect_object(ProviderId.FACTORY, payload.get("auth"))
    response = _expect_object(ProviderId.FACTORY, payload.get("usage"))
    usage = response.get("usage")
    if not isinstance(usage, Mapping):
        raise _shape_error(ProviderId.FACTORY, "response has no usage section")

    resets_at = parse_time(usage.get("endDate"))
    metrics = []
    for key in ("standard", "premium"):
        section = usage.get(key)
        section = section if isinstance(section, Mapping) else {}
        percent = factory_percent(
            number(section.get("userTokens")) or 0.0,
            number(section.get("totalAllowance")) or 0.0,
            number(section.get("usedRatio")),
        )
        metrics.append(percent_metric(key, percent, resets_at=resets_at))

    return _snapshot(raw, metrics, plan=_factory_plan(auth))


def _kimi_metric(
    label: "str",
    detail: "Any",
    window_minutes: "int | None" = None,
) -> "UsageMetric | None":
    if not isinstance(detail, Mapping):
        return None
    used = number(detail.get("used"))
    limit = number(detail.get("limit"))
    if used is None or limit is None or limit <= 0:
        return None
    return percent_metric(
        label,
        (used / limit) * 100.0,
        resets_at=parse_time(detail.get("resetTime")),
        window_minutes=window_minutes,
    )


def normalize_kimi(raw: "RawResponse") -> "UsageSnapshot":
    payload = _expect_object(ProviderId.KIMI, raw.payload)
    usages = [u for u in payload.get("usages") or [] if isinstance(u, Mapping)]
    if not usages:
        raise _shape_error(ProviderId.KIMI, "response has no usages")
    scope = next((u for u in usages if u.get("scope") == "FEATURE_CODING"), usages[0])

    metrics = []
    limits = scope.get("limits")
    if isinstance(limits, list) and limits and isinstance(limits[0], Mapping):
        window = limits[0].get("window")
        minutes = None
        if isinstance(window, Mapping):
            duration = number(window.get("duration"))
            unit = (first_string(window, ("timeUnit",)) or "TIME_UNIT_MINUTE").lower()
            if duration is not None:
                factor = 60 if "hour" in unit else 1440 if "day" in unit else 1
                minutes = int(duration * factor)
        metric = _kimi_metric("session", limits[0].get("detail"), minutes)
        if metric is not None:
            metrics.append(metric)

    metric = _kimi_metric("weekly", scope.get("detail"))
    if metric is not None:
        metrics.append(metric)
    return _snapshot(raw, metrics)


def normalize_opencode(raw: "RawResponse") -> "UsageSnapshot":
    text = raw.payload.get("text") if isinstance(raw.payload, Mapping) else None
    usage = parse_opencode_usage(text) if isinstance(text, str) else None
    if usage is None:
        raise _shape_error(ProviderId.OPENCODE, "usage data missing from subscription response")

    rolling, rolling_reset, weekly, weekly_reset = usage
    metrics = [
        percent_metric(
            "session",
            rolling,
            resets_at=raw.fetched_at + timedelta(seconds=rolling_reset),
            window_minutes=SESSION_WINDOW_MINUTES,
        ),
        percent_metric(
            "weekly",
            weekly,
            resets_at=raw.fetched_at + timedelta(seconds=weekly_reset),
            window_minutes=WEEK_WINDOW_MINUTES,
        ),
    ]
    return _snapshot(raw, metrics)


def _labels(node: "Any") -> "Mapping[str, Any]":
    labels = node.get("labels") if isinstance(node, Mapping) else None
    return labels if isinstance(labels, Mapping) else {}


def quota_series_max(series: "Any") -> "dict[tuple[str, str, str], float]":
    """
    reduces Cloud Monitoring quota series to the highest point per
    (quota metric, limit name, location).
    """
    peaks: "dict[tuple[str, str, str], float]" = {}
    for entry in series if isinstance(series, list) else []:
        if not isinstance(entry, Mapping) or not isinstance(entry.get("metric"), Mapping):
            continue
        metric_labels = _labels(entry.get("metric"))
        resource_labels = _labels(entry.get("resource"))
        quota_metric = metric_labels.get("quota_metric") or resource_labels.get("quota_id")
        if not isinstance(quota_metric, str):
            continue
        key = (
            quota_metric,
            str(metric_labels.get("limit_name") or ""),
            str(resource_labels.get("location") or "global"),
        )

        values = []
        for point in entry.get("points") or []:
            value = point.get("value") if isinstance(point, Mapping) else None
            if isinstance(value, Mapping):
                reading = number(value.get("doubleValue"))
                if reading is None:
                    reading = number(value.get("int64Value"))
                if reading is not None:
                    values.append(reading)
        if values and max(values) > peaks.get(key, 0.0):
            peaks[key] = max(values)
    return peaks


def normalize_vertexai(raw: "RawResponse") -> "UsageSnapshot":
    payload = raw.payload if isinstance(raw.payload, Mapping) else {}
    if "usage" not in payload or "limits" not in payload:
        raise _shape_error(ProviderId.VERTEXAI, "no quota series")

    usage = quota_series_max(payload.get("usage"))
    limits = quota_series_max(payload.get("limits"))
    percents = [usage[key] / limit * 100.0 for key, limit in limits.items() if limit > 0 and key in usage]

    # no quota traffic in the last day is a valid, empty answer
    metrics = [percent_metric("quota", max(percents))] if percents else []
    email = payload.get("email")
    return _snapshot(raw, metrics, account_email=email if isinstance(email, str) else None)


NORMALIZERS: "dict[ProviderId, Normalizer]" = {
    ProviderId.CODEX: normalize_codex,
    ProviderId.CLAUDE: normalize_claude,
    ProviderId.CURSOR: normalize_cursor,
    ProviderId.COPILOT: normalize_copilot,
    ProviderId.ZAI: normalize_zai,
    ProviderId.MINIMAX: normalize_minimax,
    ProviderId.KIMI_K2: normalize_kimi_k2,
    ProviderId.WARP: normalize_warp,
    ProviderId.GEMINI: normalize_gemini,
    ProviderId.KIRO: normalize_kiro,
    ProviderId.JETBRAINS: normalize_jetbrains,
    ProviderId.AMP: normalize_amp,
    ProviderId.FACTORY: normalize_factory,
    ProviderId.KIMI: normalize_kimi,
    ProviderId.OPENCODE: normalize_opencode,
    ProviderId.VERTEXAI: normalize_vertexai,
}
