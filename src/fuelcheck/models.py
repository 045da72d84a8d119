from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Mapping, Union

from fuelcheck.errors import FuelcheckError


class ProviderId(str, Enum):
    """
    ProviderId is the closed set of providers fuelcheck knows
    how to query.
    """

    CODEX = "codex"
    CLAUDE = "claude"
    GEMINI = "gemini"
    CURSOR = "cursor"
    FACTORY = "factory"
    ZAI = "zai"
    MINIMAX = "minimax"
    KIMI = "kimi"
    KIMI_K2 = "kimi-k2"
    COPILOT = "copilot"
    KIRO = "kiro"
    VERTEXAI = "vertexai"
    JETBRAINS = "jetbrains"
    AMP = "amp"
    WARP = "warp"
    OPENCODE = "opencode"

    def __str__(self) -> "str":
        return self.value


class SourceKind(str, Enum):
    """
    SourceKind is the authentication/retrieval strategy used
    for a provider. AUTO is only ever requested, never resolved.
    """

    AUTO = "auto"
    OAUTH = "oauth"
    WEB = "web"
    API = "api"
    CLI = "cli"
    LOCAL = "local"

    def __str__(self) -> "str":
        return self.value


class ReportGranularity(str, Enum):
    DAILY = "daily"
    MONTHLY = "monthly"
    SESSION = "session"

    def __str__(self) -> "str":
        return self.value


def _redact(secret: "str") -> "str":
    # first four characters only, enough to tell two tokens apart
    if len(secret) <= 8:
        return "…"
    return f"{secret[:4]}…"


@dataclass(frozen=True, slots=True)
class OAuthToken:
    source: "SourceKind"
    token: "str" = field(repr=False)
    # account identifier sent alongside the token, not a secret
    account_id: "str | None" = None
    label: "str | None" = None
    origin: "str" = ""

    @property
    def hint(self) -> "str":
        return f"token:{_redact(self.token)}"


@dataclass(frozen=True, slots=True)
class CookieHeader:
    source: "SourceKind"
    header: "str" = field(repr=False)
    label: "str | None" = None
    origin: "str" = ""

    @property
    def hint(self) -> "str":
        names = [part.split("=", 1)[0].strip() for part in self.header.split(";")]
        return "cookie:" + ",".join(name for name in names if name)


@dataclass(frozen=True, slots=True)
class ApiKey:
    source: "SourceKind"
    key: "str" = field(repr=False)
    label: "str | None" = None
    origin: "str" = ""

    @property
    def hint(self) -> "str":
        return f"key:{_redact(self.key)}"


@dataclass(frozen=True, slots=True)
class CliInvocation:
    source: "SourceKind"
    argv: "tuple[str, ...]"
    label: "str | None" = None
    origin: "str" = ""

    @property
    def hint(self) -> "str":
        return f"cli:{self.argv[0]}"


@dataclass(frozen=True, slots=True)
class LocalFilePath:
    source: "SourceKind"
    path: "Path"
    label: "str | None" = None
    origin: "str" = ""

    @property
    def hint(self) -> "str":
        return f"file:{self.path.name}"


ResolvedCredential = Union[OAuthToken, CookieHeader, ApiKey, CliInvocation, LocalFilePath]


@dataclass(frozen=True, slots=True)
class RawResponse:
    """
    RawResponse is what a fetcher hands to the normalization layer:
    the decoded provider payload, untouched.
    """

    provider: "ProviderId"
    source: "SourceKind"
    payload: "Mapping[str, Any]"
    fetched_at: "datetime"
    account: "str | None" = None


@dataclass(frozen=True, slots=True)
class UsageMetric:
    label: "str"
    used: "float"
    limit: "float"
    # one of: percent, requests, credits, usd
    unit: "str"
    resets_at: "datetime | None" = None
    window_minutes: "int | None" = None

    @property
    def used_percent(self) -> "float | None":
        if self.limit <= 0:
            return None
        return (self.used / self.limit) * 100.0


@dataclass(frozen=True, slots=True)
class ProviderCost:
    used: "float"
    limit: "float"
    currency: "str" = "USD"
    period: "str | None" = None
    resets_at: "datetime | None" = None


class StatusIndicator(str, Enum):
    """
    StatusIndicator mirrors the indicator of a Statuspage summary.
    """

    NONE = "none"
    MINOR = "minor"
    MAJOR = "major"
    CRITICAL = "critical"
    MAINTENANCE = "maintenance"
    UNKNOWN = "unknown"

    def __str__(self) -> "str":
        return self.value


@dataclass(frozen=True, slots=True)
class StatusBadge:
    indicator: "StatusIndicator"
    url: "str"
    description: "str | None" = None
    updated_at: "datetime | None" = None


@dataclass(frozen=True, slots=True)
class UsageSnapshot:
    """
    UsageSnapshot is the canonical per-provider usage result.
    """

    provider: "ProviderId"
    source: "SourceKind"
    fetched_at: "datetime"
    metrics: "tuple[UsageMetric, ...]" = ()
    cost: "ProviderCost | None" = None
    # plan/tier badge as reported by the provider
    plan: "str | None" = None
    account_email: "str | None" = None
    account: "str | None" = None
    # prepaid credit balance left, Codex only
    credits_remaining: "float | None" = None
    status: "StatusBadge | None" = None


@dataclass(frozen=True, slots=True)
class FetchOutcome:
    """
    FetchOutcome holds exactly one of snapshot or error for
    a single requested provider.
    """

    provider: "ProviderId"
    source: "SourceKind"
    snapshot: "UsageSnapshot | None" = None
    error: "FuelcheckError | None" = None
    # token account label, when one was used
    account: "str | None" = None

    def __post_init__(self) -> "None":
        if (self.snapshot is None) == (self.error is None):
            raise ValueError("FetchOutcome needs exactly one of snapshot or error")

    @property
    def ok(self) -> "bool":
        return self.error is None

    @classmethod
    def success(cls, snapshot: "UsageSnapshot") -> "FetchOutcome":
        return cls(
            provider=snapshot.provider,
            source=snapshot.source,
            snapshot=snapshot,
            account=snapshot.account,
        )

    @classmethod
    def failure(
        cls,
        provider: "ProviderId",
        source: "SourceKind",
        error: "FuelcheckError",
        account: "str | None" = None,
    ) -> "FetchOutcome":
        return cls(provider=provider, source=source, error=error, account=account)


@dataclass(frozen=True, slots=True)
class SessionRecord:
    """
    SessionRecord is one logged interaction with its token counts.
    Timestamps are timezone-aware UTC.
    """

    session_id: "str"
    timestamp: "datetime"
    model: "str"
    input_tokens: "int" = 0
    # subset of input_tokens served from cache
    cached_input_tokens: "int" = 0
    output_tokens: "int" = 0
    # subset of output_tokens spent on reasoning
    reasoning_output_tokens: "int" = 0
    total_tokens: "int" = 0
    is_fallback_model: "bool" = False


@dataclass(frozen=True, slots=True)
class ModelUsage:
    input_tokens: "int" = 0
    cached_input_tokens: "int" = 0
    output_tokens: "int" = 0
    reasoning_output_tokens: "int" = 0
    total_tokens: "int" = 0
    cost_usd: "float" = 0.0
    is_fallback: "bool" = False
    pricing_missing: "bool" = False


@dataclass(frozen=True, slots=True)
class TimeBucket:
    """
    TimeBucket is one row of a cost report. For day and month
    buckets start/end are local midnights in the report timezone;
    for session buckets they span first to last activity.
    """

    key: "str"
    granularity: "ReportGranularity"
    start: "datetime"
    end: "datetime"
    input_tokens: "int"
    cached_input_tokens: "int"
    output_tokens: "int"
    reasoning_output_tokens: "int"
    total_tokens: "int"
    cost_usd: "float"
    models: "tuple[tuple[str, ModelUsage], ...]"
    # models with no published rate, costed at zero
    warnings: "tuple[str, ...]" = ()


@dataclass(frozen=True, slots=True)
class ReportTotals:
    input_tokens: "int" = 0
    cached_input_tokens: "int" = 0
    output_tokens: "int" = 0
    reasoning_output_tokens: "int" = 0
    total_tokens: "int" = 0
    cost_usd: "float" = 0.0


@dataclass(frozen=True, slots=True)
class CostReport:
    provider: "ProviderId"
    granularity: "ReportGranularity"
    timezone: "str"
    since: "str | None"
    until: "str | None"
    buckets: "tuple[TimeBucket, ...]"
    totals: "ReportTotals"

    @property
    def warnings(self) -> "tuple[str, ...]":
        seen: "dict[str, None]" = {}
        for bucket in self.buckets:
            for model in bucket.warnings:
                seen.setdefault(model, None)
        return tuple(seen)
