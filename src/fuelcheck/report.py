import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from pathlib import Path
from typing import Iterable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import structlog

from fuelcheck.config import Environment
from fuelcheck.errors import (
    FetchError,
    FetchErrorKind,
    FuelcheckError,
    ReportError,
    ReportErrorKind,
)
from fuelcheck.models import (
    CostReport,
    ModelUsage,
    ProviderId,
    ReportGranularity,
    ReportTotals,
    SessionRecord,
    TimeBucket,
)
from fuelcheck.pricing import rate_for, token_cost
from fuelcheck.sessions import session_log_for

logger = structlog.get_logger()

_DATE_PATTERN = re.compile(r"^(\d{4})-?(\d{2})-?(\d{2})$")


@dataclass(frozen=True, slots=True)
class ReportFilters:
    """
    ReportFilters is a validated date range (inclusive, local dates)
    and the timezone records are converted to before bucketing.
    """

    zone: "ZoneInfo"
    since: "date | None" = None
    until: "date | None" = None

    @property
    def timezone(self) -> "str":
        return self.zone.key

    def contains(self, day: "date") -> "bool":
        if self.since is not None and day < self.since:
            return False
        if self.until is not None and day > self.until:
            return False
        return True


@dataclass(frozen=True, slots=True)
class ReportOutcome:
    provider: "ProviderId"
    report: "CostReport | None" = None
    error: "FuelcheckError | None" = None

    @property
    def ok(self) -> "bool":
        return self.error is None


def parse_filter_date(raw: "str | None") -> "date | None":
    """
    parses YYYYMMDD or YYYY-MM-DD.
    """
    if raw is None:
        return None
    text = raw.strip()
    match = _DATE_PATTERN.match(text)
    if match is None:
        raise ReportError(ReportErrorKind.INVALID_DATE, f"invalid date {raw!r}, expected YYYYMMDD or YYYY-MM-DD")
    try:
        return date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
    except ValueError as exc:
        raise ReportError(ReportErrorKind.INVALID_DATE, f"invalid date {raw!r}: {exc}") from exc


def resolve_timezone(raw: "str | None", environment: "Environment | None" = None) -> "ZoneInfo":
    """
    resolves the report timezone: the explicit value, then $TZ, then UTC.
    An explicit value must be a valid IANA name; an unusable $TZ is
    ignored.
    """
    if raw is not None:
        name = raw.strip()
        if not name:
            raise ReportError(ReportErrorKind.INVALID_TIMEZONE, "timezone cannot be empty")
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError, OSError) as exc:
            raise ReportError(ReportErrorKind.INVALID_TIMEZONE, f"invalid timezone: {name}") from exc

    configured = environment.get(["TZ"]) if environment is not None else None
    if configured:
        try:
            return ZoneInfo(configured.lstrip(":"))
        except (ZoneInfoNotFoundError, ValueError, OSError):
            logger.debug("tz_env_ignored", value=configured)
    return ZoneInfo("UTC")


def validate_filters(
    since: "str | None" = None,
    until: "str | None" = None,
    timezone: "str | None" = None,
    environment: "Environment | None" = None,
) -> "ReportFilters":
    since_date = parse_filter_date(since)
    until_date = parse_filter_date(until)
    if since_date is not None and until_date is not None and since_date > until_date:
        raise ReportError(
            ReportErrorKind.INVALID_RANGE,
            f"--since ({since_date.isoformat()}) must not be after --until ({until_date.isoformat()})",
        )
    return ReportFilters(zone=resolve_timezone(timezone, environment), since=since_date, until=until_date)


@dataclass
class _ModelTally:
    input_tokens: "int" = 0
    cached_input_tokens: "int" = 0
    output_tokens: "int" = 0
    reasoning_output_tokens: "int" = 0
    total_tokens: "int" = 0
    is_fallback: "bool" = False

    def add(self, record: "SessionRecord") -> "None":
        self.input_tokens += record.input_tokens
        self.cached_input_tokens += record.cached_input_tokens
        self.output_tokens += record.output_tokens
        self.reasoning_output_tokens += record.reasoning_output_tokens
        self.total_tokens += record.total_tokens
        self.is_fallback = self.is_fallback or record.is_fallback_model


@dataclass
class _Bucket:
    key: "str"
    start: "datetime"
    end: "datetime"
    models: "dict[str, _ModelTally]" = field(default_factory=dict)

    def add(self, record: "SessionRecord") -> "None":
        self.models.setdefault(record.model, _ModelTally()).add(record)


def _day_bounds(day: "date", zone: "ZoneInfo") -> "tuple[datetime, datetime]":
    start = datetime.combine(day, time.min, tzinfo=zone)
    return start, datetime.combine(day + timedelta(days=1), time.min, tzinfo=zone)


def _month_bounds(day: "date", zone: "ZoneInfo") -> "tuple[datetime, datetime]":
    first = day.replace(day=1)
    following = (first + timedelta(days=32)).replace(day=1)
    return (
        datetime.combine(first, time.min, tzinfo=zone),
        datetime.combine(following, time.min, tzinfo=zone),
    )


def _freeze(bucket: "_Bucket", granularity: "ReportGranularity") -> "TimeBucket":
    models: "list[tuple[str, ModelUsage]]" = []
    warnings: "list[str]" = []
    cost = 0.0

    for name in sorted(bucket.models):
        tally = bucket.models[name]
        rate = rate_for(name)
        model_cost = 0.0
        if rate is None:
            warnings.append(name)
        else:
            model_cost = token_cost(
                tally.input_tokens, tally.cached_input_tokens, tally.output_tokens, rate
            )
        cost += model_cost
        models.append(
            (
                name,
                ModelUsage(
                    input_tokens=tally.input_tokens,
                    cached_input_tokens=tally.cached_input_tokens,
                    output_tokens=tally.output_tokens,
                    reasoning_output_tokens=tally.reasoning_output_tokens,
                    total_tokens=tally.total_tokens,
                    cost_usd=model_cost,
                    is_fallback=tally.is_fallback,
                    pricing_missing=rate is None,
                ),
            )
        )

    return TimeBucket(
        key=bucket.key,
        granularity=granularity,
        start=bucket.start,
        end=bucket.end,
        input_tokens=sum(usage.input_tokens for _, usage in models),
        cached_input_tokens=sum(usage.cached_input_tokens for _, usage in models),
        output_tokens=sum(usage.output_tokens for _, usage in models),
        reasoning_output_tokens=sum(usage.reasoning_output_tokens for _, usage in models),
        total_tokens=sum(usage.total_tokens for _, usage in models),
        cost_usd=cost,
        models=tuple(models),
        warnings=tuple(warnings),
    )


def build_report(
    provider: "ProviderId",
    records: "Iterable[SessionRecord]",
    filters: "ReportFilters",
    granularity: "ReportGranularity" = ReportGranularity.DAILY,
) -> "CostReport":
    """
    buckets session records into a cost report.

    Each record's UTC timestamp is converted to the report timezone
    first, so both the range filter and the day/month key use the local
    date. Day and month buckets come out in ascending order, session
    buckets in order of first activity. A model without a published
    rate is costed at zero and listed in the bucket's warnings.
    Totals are raw sums; nothing is rounded here.
    """
    zone = filters.zone
    # stable: ties keep reader order
    ordered = sorted(records, key=lambda record: record.timestamp)

    buckets: "dict[str, _Bucket]" = {}
    for record in ordered:
        local = record.timestamp.astimezone(zone)
        if not filters.contains(local.date()):
            continue

        if granularity is ReportGranularity.SESSION:
            key = record.session_id
            bucket = buckets.get(key)
            if bucket is None:
                bucket = buckets[key] = _Bucket(key, local, local)
            bucket.end = max(bucket.end, local)
        elif granularity is ReportGranularity.MONTHLY:
            key = local.strftime("%Y-%m")
            if key not in buckets:
                buckets[key] = _Bucket(key, *_month_bounds(local.date(), zone))
            bucket = buckets[key]
        else:
            key = local.date().isoformat()
            if key not in buckets:
                buckets[key] = _Bucket(key, *_day_bounds(local.date(), zone))
            bucket = buckets[key]

        bucket.add(record)

    keys = list(buckets)
    if granularity is not ReportGranularity.SESSION:
        keys.sort()
    rows = tuple(_freeze(buckets[key], granularity) for key in keys)

    totals = ReportTotals(
        input_tokens=sum(row.input_tokens for row in rows),
        cached_input_tokens=sum(row.cached_input_tokens for row in rows),
        output_tokens=sum(row.output_tokens for row in rows),
        reasoning_output_tokens=sum(row.reasoning_output_tokens for row in rows),
        total_tokens=sum(row.total_tokens for row in rows),
        cost_usd=sum(row.cost_usd for row in rows),
    )

    report = CostReport(
        provider=provider,
        granularity=granularity,
        timezone=filters.timezone,
        since=filters.since.isoformat() if filters.since else None,
        until=filters.until.isoformat() if filters.until else None,
        buckets=rows,
        totals=totals,
    )
    if report.warnings:
        logger.warning("pricing_missing", provider=str(provider), models=list(report.warnings))
    return report


def collect_reports(
    providers: "Iterable[ProviderId]",
    filters: "ReportFilters",
    granularity: "ReportGranularity",
    environment: "Environment",
    home: "Path | None" = None,
) -> "list[ReportOutcome]":
    """
    builds one report per provider in request order. A provider
    without a session-log reader gets an unsupported_operation error
    and the remaining providers are still reported.
    """
    outcomes: "list[ReportOutcome]" = []
    for provider in providers:
        log = session_log_for(provider, environment, home)
        if log is None:
            error = FetchError(
                FetchErrorKind.UNSUPPORTED_OPERATION,
                f"{provider}: cost reports need local session logs, which {provider} does not keep",
            )
            logger.info("report_unsupported", provider=str(provider))
            outcomes.append(ReportOutcome(provider=provider, error=error))
            continue

        try:
            report = build_report(provider, log, filters, granularity)
        except FuelcheckError as exc:
            logger.warning("report_failed", provider=str(provider), kind=str(exc.kind), error=exc.message)
            outcomes.append(ReportOutcome(provider=provider, error=exc))
            continue

        logger.info(
            "report_built",
            provider=str(provider),
            granularity=str(granularity),
            buckets=len(report.buckets),
        )
        outcomes.append(ReportOutcome(provider=provider, report=report))
    return outcomes
