import asyncio
import signal
import sys
from pathlib import Path

import httpx
import structlog
from prometheus_client import start_http_server

from fuelcheck.catalog import CATALOG, select_providers
from fuelcheck.cli import Options, parse_args
from fuelcheck.config import Config, Environment, default_config_path
from fuelcheck.errors import ConfigError, ReportError
from fuelcheck.logging import setup_logging
from fuelcheck.metrics import FetchMetrics
from fuelcheck.models import FetchOutcome, ProviderId, SourceKind
from fuelcheck.orchestrator import FetchOrchestrator
from fuelcheck.output import (
    EXIT_CONFIG_ERROR,
    EXIT_OK,
    EXIT_USAGE_ERROR,
    OutputFormat,
    dumps,
    exit_status,
    render_reports,
    render_usage,
    render_usage_text,
)
from fuelcheck.provider.base import UsageFetcher
from fuelcheck.report import collect_reports, validate_filters
from fuelcheck.resolver import CredentialResolver

logger = structlog.get_logger()

# clear screen and home the cursor between watch refreshes
_CLEAR = "\x1b[2J\x1b[H"


def _parse_listen_address(addr: "str") -> "tuple[str, int]":
    """
    parses listen address in format ':9186' or '0.0.0.0:9186'.
    """
    if addr.startswith(":"):
        return ("0.0.0.0", int(addr[1:]))

    host, port = addr.rsplit(":", 1)
    return (host, int(port))


def run(
    options: "Options",
    environment: "Environment | None" = None,
    fetchers: "dict[tuple[ProviderId, SourceKind], UsageFetcher] | None" = None,
    client: "httpx.AsyncClient | None" = None,
) -> "int":
    """
    executes one parsed command and returns the process exit status.
    """
    environment = environment or Environment.current(home=options.home)
    config_path = options.config_path or default_config_path(environment)

    try:
        if options.command == "config":
            return _config_command(options, config_path)
        if options.command == "cost":
            return _cost_command(options, environment, config_path)
        return _usage_command(options, environment, config_path, fetchers, client)
    except ConfigError as exc:
        logger.error("config_invalid", path=str(config_path), error=exc.message)
        _fail(options, exc.to_payload())
        return EXIT_CONFIG_ERROR
    except ReportError as exc:
        _fail(options, exc.to_payload())
        return EXIT_USAGE_ERROR
    except ValueError as exc:
        # unknown provider selector
        _fail(options, {"kind": "invalid_argument", "message": str(exc)})
        return EXIT_USAGE_ERROR


def _fail(options: "Options", payload: "dict[str, str]") -> "None":
    if options.output_format is OutputFormat.TEXT:
        print(f"error: {payload['message']}", file=sys.stderr)
    else:
        print(dumps({"error": payload}, options.pretty))


def _usage_command(
    options: "Options",
    environment: "Environment",
    config_path: "Path",
    fetchers: "dict[tuple[ProviderId, SourceKind], UsageFetcher] | None",
    client: "httpx.AsyncClient | None",
) -> "int":
    config = Config.load(config_path)
    providers = select_providers(options.providers, config)

    metrics = None
    if options.metrics_listen_address:
        host, port = _parse_listen_address(options.metrics_listen_address)
        start_http_server(port, addr=host)
        logger.info("metrics_server_started", host=host, port=port)
        metrics = FetchMetrics()

    orchestrator = FetchOrchestrator(
        lambda: Config.load(config_path),
        CredentialResolver(environment, options.source, options.account),
        fetchers=fetchers,
        metrics=metrics,
        timeout_seconds=options.timeout,
        client=client,
        status=options.status,
        credits=options.credits,
    )

    if options.watch:
        return asyncio.run(_watch(orchestrator, options))

    outcomes = asyncio.run(orchestrator.fetch_all(providers, config))
    print(render_usage(outcomes, options.output_format, options.pretty))
    return exit_status(outcomes)


async def _watch(orchestrator: "FetchOrchestrator", options: "Options") -> "int":
    loop = asyncio.get_running_loop()
    # for SIGINT and SIGTERM, signal the orchestrator
    # to stop after the current cycle
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, orchestrator.stop)

    last: "list[FetchOutcome]" = []

    def _render(outcomes: "list[FetchOutcome]") -> "None":
        nonlocal last
        last = outcomes
        print(_CLEAR + render_usage_text(outcomes), flush=True)

    try:
        await orchestrator.watch(options.providers, _render, options.interval)
    finally:
        logger.info("shutting_down")
    return exit_status(last)


def _cost_command(options: "Options", environment: "Environment", config_path: "Path") -> "int":
    filters = validate_filters(options.since, options.until, options.timezone, environment)
    config = Config.load(config_path)
    selectors = options.providers or [str(entry.id) for entry in CATALOG.values() if entry.cost_reports]
    providers = select_providers(selectors, config)

    outcomes = collect_reports(providers, filters, options.granularity, environment, options.home)
    print(render_reports(outcomes, options.granularity, options.output_format, options.pretty))
    return exit_status(outcomes)


def _config_command(options: "Options", config_path: "Path") -> "int":
    missing = not config_path.exists()
    config = Config.load(config_path)

    if options.config_action == "dump":
        if options.output_format is OutputFormat.TEXT:
            print(dumps(config.to_dict(), pretty=True))
        else:
            print(dumps(config.to_dict(), options.pretty))
        return EXIT_OK

    if options.output_format is OutputFormat.TEXT:
        suffix = " (missing, using defaults)" if missing else ""
        print(f"config ok: {config_path}{suffix}")
    else:
        payload: "dict[str, object]" = {"status": "ok"}
        if missing:
            payload.update(missing=True, path=str(config_path))
        print(dumps(payload, options.pretty))
    return EXIT_OK


def main(argv: "list[str] | None" = None) -> "None":
    options = parse_args(argv)
    setup_logging(options.log_level, options.log_json)
    raise SystemExit(run(options))


if __name__ == "__main__":
    main()
