import asyncio
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import httpx
import pytest
import respx
from prometheus_client import CollectorRegistry

from fuelcheck.config import Config, Environment, ProviderConfig, TokenAccount, TokenAccountSet
from fuelcheck.errors import ConfigError, FetchError, FetchErrorKind
from fuelcheck.metrics import FetchMetrics
from fuelcheck.models import (
    FetchOutcome,
    OAuthToken,
    ProviderId,
    RawResponse,
    ResolvedCredential,
    SourceKind,
    StatusIndicator,
)
from fuelcheck.orchestrator import FetchOrchestrator
from fuelcheck.provider.base import FetchContext
from fuelcheck.resolver import AccountSelection, CredentialResolver

ZAI_PAYLOAD = {
    "success": True,
    "data": {"limits": [{"type": "TOKENS_LIMIT", "usage": 400, "limit": 1000}]},
}
KIMI_PAYLOAD = {"data": {"remaining": 75, "consumed": 25}}
WARP_PAYLOAD = {
    "data": {
        "user": {
            "user": {
                "requestLimitInfo": {"requestLimit": 150, "requestsUsedSinceLastRefresh": 30},
            }
        }
    }
}


def _fake(provider: "ProviderId", payload: "dict[str, Any]", delay: "float" = 0.0) -> "Any":
    async def fetch(credential: "ResolvedCredential", context: "FetchContext") -> "RawResponse":
        await asyncio.sleep(delay)
        return RawResponse(
            provider=provider,
            source=credential.source,
            payload=payload,
            fetched_at=datetime.now(timezone.utc),
            account=credential.label,
        )

    return fetch


def _failing(exc: "Exception") -> "Any":
    async def fetch(credential: "ResolvedCredential", context: "FetchContext") -> "RawResponse":
        raise exc

    return fetch


@pytest.fixture()
def api_environment(environment: "Environment") -> "Environment":
    return Environment(
        variables={
            "Z_AI_API_KEY": "zai-key-0123456789",
            "KIMI_K2_API_KEY": "kimi-key-0123456789",
            "WARP_API_KEY": "warp-key-0123456789",
        },
        home=environment.home,
    )


def _orchestrator(
    environment: "Environment",
    fetchers: "dict",
    config: "Config | None" = None,
    **kwargs: "Any",
) -> "FetchOrchestrator":
    return FetchOrchestrator(
        load_config=lambda: config or Config(),
        resolver=CredentialResolver(environment),
        fetchers=fetchers,
        **kwargs,
    )


class TestFetchAll:
    @pytest.mark.asyncio
    async def test_keeps_request_order(self, api_environment: "Environment") -> "None":
        fetchers = {
            (ProviderId.ZAI, SourceKind.API): _fake(ProviderId.ZAI, ZAI_PAYLOAD, delay=0.05),
            (ProviderId.KIMI_K2, SourceKind.API): _fake(ProviderId.KIMI_K2, KIMI_PAYLOAD),
            (ProviderId.WARP, SourceKind.API): _fake(ProviderId.WARP, WARP_PAYLOAD, delay=0.02),
        }
        orchestrator = _orchestrator(api_environment, fetchers)

        outcomes = await orchestrator.fetch_all([ProviderId.ZAI, ProviderId.KIMI_K2, ProviderId.WARP])

        assert [o.provider for o in outcomes] == [ProviderId.ZAI, ProviderId.KIMI_K2, ProviderId.WARP]
        assert all(o.ok for o in outcomes)
        assert outcomes[0].snapshot is not None
        assert outcomes[0].snapshot.metrics[0].used == 40.0

    @pytest.mark.asyncio
    async def test_failures_are_isolated(self, api_environment: "Environment") -> "None":
        fetchers = {
            (ProviderId.ZAI, SourceKind.API): _failing(
                FetchError(FetchErrorKind.AUTHENTICATION_REJECTED, "zai: HTTP 401")
            ),
            (ProviderId.KIMI_K2, SourceKind.API): _fake(ProviderId.KIMI_K2, KIMI_PAYLOAD),
        }
        orchestrator = _orchestrator(api_environment, fetchers)

        zai, kimi = await orchestrator.fetch_all([ProviderId.ZAI, ProviderId.KIMI_K2])

        assert not zai.ok
        assert zai.error is not None
        assert zai.error.kind == "authentication_rejected"
        assert zai.source is SourceKind.API
        assert kimi.ok

    @pytest.mark.asyncio
    async def test_missing_credential_is_an_outcome(self, environment: "Environment") -> "None":
        orchestrator = _orchestrator(environment, {})

        (outcome,) = await orchestrator.fetch_all([ProviderId.ZAI])

        assert outcome.error is not None
        assert outcome.error.kind == "missing_credential"
        assert outcome.source is SourceKind.AUTO

    @pytest.mark.asyncio
    async def test_unregistered_fetcher(self, api_environment: "Environment") -> "None":
        orchestrator = _orchestrator(api_environment, {})

        (outcome,) = await orchestrator.fetch_all([ProviderId.ZAI])

        assert outcome.error is not None
        assert outcome.error.kind == "unsupported_operation"

    @pytest.mark.asyncio
    async def test_unexpected_exception_becomes_transport_failure(
        self, api_environment: "Environment"
    ) -> "None":
        fetchers = {(ProviderId.ZAI, SourceKind.API): _failing(RuntimeError("boom"))}
        orchestrator = _orchestrator(api_environment, fetchers)

        (outcome,) = await orchestrator.fetch_all([ProviderId.ZAI])

        assert outcome.error is not None
        assert outcome.error.kind == "transport_failure"
        assert "boom" in outcome.error.message

    @pytest.mark.asyncio
    async def test_timeout_keeps_finished_outcomes(self, api_environment: "Environment") -> "None":
        fetchers = {
            (ProviderId.ZAI, SourceKind.API): _fake(ProviderId.ZAI, ZAI_PAYLOAD),
            (ProviderId.KIMI_K2, SourceKind.API): _fake(ProviderId.KIMI_K2, KIMI_PAYLOAD, delay=5.0),
        }
        orchestrator = _orchestrator(api_environment, fetchers, timeout_seconds=0.1)

        zai, kimi = await orchestrator.fetch_all([ProviderId.ZAI, ProviderId.KIMI_K2])

        assert zai.ok
        assert kimi.error is not None
        assert kimi.error.kind == "timeout"
        assert kimi.provider is ProviderId.KIMI_K2

    @pytest.mark.asyncio
    async def test_empty_request(self, environment: "Environment") -> "None":
        assert await _orchestrator(environment, {}).fetch_all([]) == []

    @pytest.mark.asyncio
    async def test_updates_metrics(
        self,
        api_environment: "Environment",
        registry: "CollectorRegistry",
    ) -> "None":
        fetchers = {
            (ProviderId.ZAI, SourceKind.API): _fake(ProviderId.ZAI, ZAI_PAYLOAD),
            (ProviderId.KIMI_K2, SourceKind.API): _failing(
                FetchError(FetchErrorKind.REMOTE_UNAVAILABLE, "kimi-k2: HTTP 503")
            ),
        }
        orchestrator = _orchestrator(api_environment, fetchers, metrics=FetchMetrics(registry=registry))

        await orchestrator.fetch_all([ProviderId.ZAI, ProviderId.KIMI_K2])

        assert registry.get_sample_value(
            "fuelcheck_usage_percent", {"provider": "zai", "metric": "tokens"}
        ) == 40.0
        assert registry.get_sample_value(
            "fuelcheck_fetch_errors_total", {"provider": "kimi-k2", "kind": "remote_unavailable"}
        ) == 1.0
        assert registry.get_sample_value("fuelcheck_fetch_duration_seconds_count", {"provider": "zai"}) == 1.0
        assert registry.get_sample_value(
            "fuelcheck_last_fetch_success_timestamp_seconds", {"provider": "kimi-k2"}
        ) is None


class TestWatch:
    @pytest.mark.asyncio
    async def test_reloads_config_each_cycle(self, api_environment: "Environment") -> "None":
        configs = [
            Config(providers=(ProviderConfig(id=ProviderId.ZAI),)),
            Config(
                providers=(
                    ProviderConfig(id=ProviderId.ZAI, enabled=False),
                    ProviderConfig(id=ProviderId.KIMI_K2),
                )
            ),
        ]
        fetchers = {
            (ProviderId.ZAI, SourceKind.API): _fake(ProviderId.ZAI, ZAI_PAYLOAD),
            (ProviderId.KIMI_K2, SourceKind.API): _fake(ProviderId.KIMI_K2, KIMI_PAYLOAD),
        }
        cycles: "list[list[FetchOutcome]]" = []
        orchestrator = FetchOrchestrator(
            load_config=lambda: configs[min(len(cycles), 1)],
            resolver=CredentialResolver(api_environment),
            fetchers=fetchers,
        )

        def on_cycle(outcomes: "list[FetchOutcome]") -> "None":
            cycles.append(outcomes)
            if len(cycles) == 2:
                orchestrator.stop()

        await orchestrator.watch(["all"], on_cycle, interval_seconds=0.01)

        assert [[o.provider for o in cycle] for cycle in cycles] == [[ProviderId.ZAI], [ProviderId.KIMI_K2]]

    @pytest.mark.asyncio
    async def test_config_error_on_first_cycle_is_raised(self, environment: "Environment") -> "None":
        def broken() -> "Config":
            raise ConfigError("config root must be a JSON object")

        orchestrator = FetchOrchestrator(load_config=broken, resolver=CredentialResolver(environment))

        with pytest.raises(ConfigError):
            await orchestrator.watch(["all"], lambda outcomes: None, interval_seconds=0.01)

    @pytest.mark.asyncio
    async def test_later_config_errors_skip_the_cycle(self, api_environment: "Environment") -> "None":
        calls = {"load": 0}
        cycles: "list[list[FetchOutcome]]" = []

        def load() -> "Config":
            calls["load"] += 1
            if calls["load"] == 2:
                raise ConfigError("bad edit")
            return Config(providers=(ProviderConfig(id=ProviderId.ZAI),))

        orchestrator = FetchOrchestrator(
            load_config=load,
            resolver=CredentialResolver(api_environment),
            fetchers={(ProviderId.ZAI, SourceKind.API): _fake(ProviderId.ZAI, ZAI_PAYLOAD)},
        )

        def on_cycle(outcomes: "list[FetchOutcome]") -> "None":
            cycles.append(outcomes)
            if len(cycles) == 2:
                orchestrator.stop()

        await orchestrator.watch(["zai"], on_cycle, interval_seconds=0.01)

        assert calls["load"] == 3
        assert len(cycles) == 2


CODEX_PAYLOAD = {
    "plan_type": "plus",
    "rate_limit": {"primary_window": {"used_percent": 20, "limit_window_seconds": 18000}},
    "credits": {"has_credits": True, "balance": "1234.5"},
}


def _codex_config(*labels: "str") -> "Config":
    accounts = TokenAccountSet(
        accounts=tuple(TokenAccount(token=f"tok-{label}", label=label) for label in labels)
    )
    return Config(providers=(ProviderConfig(id=ProviderId.CODEX, token_accounts=accounts),))


class TestAllAccounts:
    @pytest.mark.asyncio
    async def test_one_outcome_per_account(self, environment: "Environment") -> "None":
        async def fetch(credential: "ResolvedCredential", context: "FetchContext") -> "RawResponse":
            if isinstance(credential, OAuthToken) and credential.token == "tok-home":
                raise FetchError(FetchErrorKind.AUTHENTICATION_REJECTED, "codex: HTTP 401")
            return await _fake(ProviderId.CODEX, CODEX_PAYLOAD)(credential, context)

        orchestrator = FetchOrchestrator(
            load_config=lambda: _codex_config("work", "home"),
            resolver=CredentialResolver(environment, account=AccountSelection(all_accounts=True)),
            fetchers={(ProviderId.CODEX, SourceKind.OAUTH): fetch},
        )

        work, home = await orchestrator.fetch_all([ProviderId.CODEX])

        assert (work.account, home.account) == ("work", "home")
        assert work.ok
        assert home.error is not None
        assert home.error.kind == "authentication_rejected"

    @pytest.mark.asyncio
    async def test_default_uses_active_account_only(self, environment: "Environment") -> "None":
        orchestrator = _orchestrator(
            environment,
            {(ProviderId.CODEX, SourceKind.OAUTH): _fake(ProviderId.CODEX, CODEX_PAYLOAD)},
            config=_codex_config("work", "home"),
        )

        (outcome,) = await orchestrator.fetch_all([ProviderId.CODEX])

        assert outcome.account == "work"

    @pytest.mark.asyncio
    async def test_provider_without_accounts_runs_once(self, api_environment: "Environment") -> "None":
        orchestrator = FetchOrchestrator(
            load_config=Config,
            resolver=CredentialResolver(api_environment, account=AccountSelection(all_accounts=True)),
            fetchers={(ProviderId.ZAI, SourceKind.API): _fake(ProviderId.ZAI, ZAI_PAYLOAD)},
        )

        (outcome,) = await orchestrator.fetch_all([ProviderId.ZAI])

        assert outcome.ok
        assert outcome.account is None


class TestExtras:
    @pytest.mark.asyncio
    async def test_credits_kept_by_default(self, environment: "Environment") -> "None":
        orchestrator = _orchestrator(
            environment,
            {(ProviderId.CODEX, SourceKind.OAUTH): _fake(ProviderId.CODEX, CODEX_PAYLOAD)},
            config=_codex_config("work"),
        )

        (outcome,) = await orchestrator.fetch_all([ProviderId.CODEX])

        assert outcome.snapshot is not None
        assert outcome.snapshot.credits_remaining == 1234.5

    @pytest.mark.asyncio
    async def test_no_credits(self, environment: "Environment") -> "None":
        orchestrator = _orchestrator(
            environment,
            {(ProviderId.CODEX, SourceKind.OAUTH): _fake(ProviderId.CODEX, CODEX_PAYLOAD)},
            config=_codex_config("work"),
            credits=False,
        )

        (outcome,) = await orchestrator.fetch_all([ProviderId.CODEX])

        assert outcome.snapshot is not None
        assert outcome.snapshot.credits_remaining is None

    @pytest.mark.asyncio
    @respx.mock
    async def test_status_badge(self, environment: "Environment") -> "None":
        respx.get("https://status.openai.com/api/v2/status.json").mock(
            return_value=httpx.Response(
                200,
                json={
                    "page": {"updated_at": "2025-09-15T11:00:00Z"},
                    "status": {"indicator": "minor", "description": "Partially Degraded Service"},
                },
            )
        )
        orchestrator = _orchestrator(
            environment,
            {(ProviderId.CODEX, SourceKind.OAUTH): _fake(ProviderId.CODEX, CODEX_PAYLOAD)},
            config=_codex_config("work"),
            status=True,
        )

        (outcome,) = await orchestrator.fetch_all([ProviderId.CODEX])

        assert outcome.snapshot is not None
        badge = outcome.snapshot.status
        assert badge is not None
        assert badge.indicator is StatusIndicator.MINOR
        assert badge.description == "Partially Degraded Service"
        assert badge.url == "https://status.openai.com"

    @pytest.mark.asyncio
    @respx.mock
    async def test_status_skipped_without_status_page(self, api_environment: "Environment") -> "None":
        orchestrator = _orchestrator(
            api_environment,
            {(ProviderId.ZAI, SourceKind.API): _fake(ProviderId.ZAI, ZAI_PAYLOAD)},
            status=True,
        )

        (outcome,) = await orchestrator.fetch_all([ProviderId.ZAI])

        assert outcome.snapshot is not None
        assert outcome.snapshot.status is None
        assert not respx.calls

    @pytest.mark.asyncio
    async def test_status_off_by_default(self, environment: "Environment") -> "None":
        orchestrator = _orchestrator(
            environment,
            {(ProviderId.CODEX, SourceKind.OAUTH): _fake(ProviderId.CODEX, CODEX_PAYLOAD)},
            config=_codex_config("work"),
        )

        (outcome,) = await orchestrator.fetch_all([ProviderId.CODEX])

        assert outcome.snapshot is not None
        assert outcome.snapshot.status is None


@pytest.mark.skipif(sys.platform == "win32", reason="needs a POSIX shell")
class TestCancelledSubprocess:
    @pytest.mark.asyncio
    async def test_timeout_kills_kiro_cli(self, tmp_path: "Path") -> "None":
        bin_dir = tmp_path / "bin"
        bin_dir.mkdir()
        pid_file = tmp_path / "kiro.pid"
        script = bin_dir / "kiro-cli"
        script.write_text(f"#!/bin/sh\necho $$ > {pid_file}\nexec sleep 30\n")
        script.chmod(0o755)
        environment = Environment(variables={"PATH": f"{bin_dir}:/usr/bin:/bin"}, home=tmp_path)
        orchestrator = FetchOrchestrator(
            load_config=Config,
            resolver=CredentialResolver(environment),
            timeout_seconds=1.0,
        )

        (outcome,) = await orchestrator.fetch_all([ProviderId.KIRO])

        assert outcome.error is not None
        assert outcome.error.kind == "timeout"
        pid = int(pid_file.read_text().strip())
        with pytest.raises(ProcessLookupError):
            os.kill(pid, 0)
