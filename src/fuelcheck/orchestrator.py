import asyncio
import dataclasses
import time
from typing import Callable, Iterable

import httpx
import structlog

from fuelcheck.catalog import entry_for, select_providers
from fuelcheck.config import Config
from fuelcheck.errors import ConfigError, FetchError, FetchErrorKind, FuelcheckError
from fuelcheck.metrics import FetchMetrics
from fuelcheck.models import FetchOutcome, ProviderId, SourceKind, UsageSnapshot
from fuelcheck.normalize import normalize
from fuelcheck.provider.base import USER_AGENT, FetchContext, UsageFetcher
from fuelcheck.provider.registry import fetcher_for
from fuelcheck.provider.status import fetch_status
from fuelcheck.resolver import AccountSelection, CredentialResolver

logger = structlog.get_logger()

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_WATCH_INTERVAL_SECONDS = 10.0


class FetchOrchestrator:
    """
    FetchOrchestrator fans a usage fetch out across providers. Each
    provider resolves, fetches and normalizes in its own task and
    owns its outcome; a failure in one provider never aborts or
    delays the others. There are no retries: one attempt per
    provider per run. With --all-accounts a provider with token
    accounts runs one such task per account.

    The configuration is loaded through load_config at the start of
    every run so that edits to enabled flags are picked up without
    restarting a watch loop.
    """

    def __init__(
        self,
        load_config: "Callable[[], Config]",
        resolver: "CredentialResolver",
        fetchers: "dict[tuple[ProviderId, SourceKind], UsageFetcher] | None" = None,
        metrics: "FetchMetrics | None" = None,
        timeout_seconds: "float" = DEFAULT_TIMEOUT_SECONDS,
        client: "httpx.AsyncClient | None" = None,
        status: "bool" = False,
        credits: "bool" = True,
    ) -> "None":
        self._load_config = load_config
        self._resolver = resolver
        self._fetchers = fetchers
        self._metrics = metrics
        self._timeout = timeout_seconds
        self._client = client
        self._status = status
        self._credits = credits
        self._stop_event: "asyncio.Event" = asyncio.Event()

    def stop(self) -> "None":
        """
        signals the watch loop to stop after the current cycle.
        """
        self._stop_event.set()

    async def fetch_all(
        self,
        providers: "Iterable[ProviderId]",
        config: "Config | None" = None,
    ) -> "list[FetchOutcome]":
        """
        fetches every provider concurrently and returns one outcome per
        provider (per account under --all-accounts) in request order, whatever order the tasks finish in.
        Providers still running when the overall timeout elapses are
        cancelled and reported as timeouts; finished outcomes are kept.
        """
        requested = list(providers)
        if not requested:
            return []
        if config is None:
            config = self._load_config()

        if self._client is not None:
            return await self._run(requested, config, self._client)

        async with httpx.AsyncClient(
            timeout=self._timeout,
            headers={"User-Agent": USER_AGENT},
            follow_redirects=True,
        ) as client:
            return await self._run(requested, config, client)

    async def _run(
        self,
        requested: "list[ProviderId]",
        config: "Config",
        client: "httpx.AsyncClient",
    ) -> "list[FetchOutcome]":
        logger.info("fetch_cycle_start", providers=[str(p) for p in requested])
        jobs = [
            (provider, selection, label)
            for provider in requested
            for selection, label in self._resolver.accounts(provider, config.provider_config(provider))
        ]
        tasks = [
            asyncio.create_task(
                self._fetch_one(provider, config, client, selection, label),
                name=f"fetch-{provider}" if label is None else f"fetch-{provider}-{label}",
            )
            for provider, selection, label in jobs
        ]
        _, pending = await asyncio.wait(tasks, timeout=self._timeout)

        for task in pending:
            task.cancel()
        if pending:
            # let cancelled tasks unwind before the client closes
            await asyncio.gather(*pending, return_exceptions=True)

        outcomes: "list[FetchOutcome]" = []
        for (provider, _, label), task in zip(jobs, tasks):
            if task in pending:
                error = FetchError(
                    FetchErrorKind.TIMEOUT,
                    f"{provider}: no result within {self._timeout:g}s",
                )
                logger.warning(
                    "provider_timeout", provider=str(provider), account=label, timeout=self._timeout
                )
                self._record_error(provider, error)
                outcomes.append(
                    FetchOutcome.failure(
                        provider, self._requested_source(provider, config), error, account=label
                    )
                )
            else:
                outcomes.append(task.result())

        failed = sum(1 for outcome in outcomes if not outcome.ok)
        logger.info("fetch_cycle_end", providers=len(outcomes), failed=failed)
        return outcomes

    async def _fetch_one(
        self,
        provider: "ProviderId",
        config: "Config",
        client: "httpx.AsyncClient",
        selection: "AccountSelection | None" = None,
        label: "str | None" = None,
    ) -> "FetchOutcome":
        start = time.monotonic()
        provider_config = config.provider_config(provider)
        source = self._requested_source(provider, config)

        try:
            # credential files are read off the event loop
            credential = await asyncio.to_thread(
                self._resolver.resolve, provider, provider_config, selection
            )
            source = credential.source
            fetcher = fetcher_for(provider, source, self._fetchers)
            context = FetchContext(
                provider_config=provider_config,
                environment=self._resolver.environment,
                client=client,
            )
            raw = await fetcher(credential, context)
            snapshot = await self._decorate(normalize(raw), client)
        except FuelcheckError as exc:
            logger.warning(
                "provider_fetch_failed",
                provider=str(provider),
                source=str(source),
                account=label,
                kind=str(exc.kind),
                error=exc.message,
            )
            self._record_error(provider, exc)
            return FetchOutcome.failure(provider, source, exc, account=label)
        except Exception as exc:
            logger.exception("provider_fetch_error", provider=str(provider), source=str(source))
            error = FetchError(
                FetchErrorKind.TRANSPORT_FAILURE,
                f"{provider}: unexpected {exc.__class__.__name__}: {exc}",
            )
            self._record_error(provider, error)
            return FetchOutcome.failure(provider, source, error, account=label)
        finally:
            if self._metrics is not None:
                self._metrics.observe_fetch_duration(str(provider), time.monotonic() - start)

        logger.info(
            "provider_fetched",
            provider=str(provider),
            source=str(source),
            account=credential.label,
            metrics=len(snapshot.metrics),
        )
        if self._metrics is not None:
            self._metrics.update_snapshot(snapshot)
            self._metrics.set_last_fetch_success(str(provider), time.time())
        return FetchOutcome.success(snapshot)

    async def _decorate(self, snapshot: "UsageSnapshot", client: "httpx.AsyncClient") -> "UsageSnapshot":
        """
        applies the optional extras: drops the credit balance under
        --no-credits and attaches the provider's status badge under
        --status.
        """
        if not self._credits and snapshot.credits_remaining is not None:
            snapshot = dataclasses.replace(snapshot, credits_remaining=None)
        status_url = entry_for(snapshot.provider).status_url
        if self._status and status_url:
            badge = await fetch_status(client, status_url)
            if badge is not None:
                snapshot = dataclasses.replace(snapshot, status=badge)
        return snapshot

    def _requested_source(self, provider: "ProviderId", config: "Config") -> "SourceKind":
        return (
            self._resolver.source
            or config.provider_config(provider).source
            or SourceKind.AUTO
        )

    def _record_error(self, provider: "ProviderId", error: "FuelcheckError") -> "None":
        if self._metrics is not None:
            self._metrics.inc_fetch_error(str(provider), str(error.kind))

    async def watch(
        self,
        selectors: "list[str]",
        on_cycle: "Callable[[list[FetchOutcome]], None]",
        interval_seconds: "float" = DEFAULT_WATCH_INTERVAL_SECONDS,
    ) -> "None":
        """
        runs fetch cycles every interval_seconds until stop() is called.
        Every cycle reloads the configuration and expands selectors
        again; nothing else carries over between cycles. A config error
        on the first cycle is raised, later ones are logged and the
        cycle is skipped.
        """
        first = True
        while not self._stop_event.is_set():
            try:
                config = self._load_config()
            except ConfigError as exc:
                if first:
                    raise
                logger.error("watch_config_error", error=exc.message)
            else:
                providers = select_providers(selectors, config)
                outcomes = await self.fetch_all(providers, config)
                on_cycle(outcomes)
            first = False

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=interval_seconds)
            except TimeoutError:
                pass
