import argparse
from dataclasses import dataclass, field
from pathlib import Path

from fuelcheck.models import ReportGranularity, SourceKind
from fuelcheck.orchestrator import DEFAULT_TIMEOUT_SECONDS, DEFAULT_WATCH_INTERVAL_SECONDS
from fuelcheck.output import OutputFormat
from fuelcheck.resolver import AccountSelection


@dataclass
class Options:
    command: "str"
    # validate or dump, for the config command only
    config_action: "str | None" = None
    providers: "list[str]" = field(default_factory=list)
    source: "SourceKind | None" = None
    account: "AccountSelection | None" = None
    # attach the provider status badge
    status: "bool" = False
    credits: "bool" = True
    output_format: "OutputFormat" = OutputFormat.TEXT
    pretty: "bool" = False
    timeout: "float" = DEFAULT_TIMEOUT_SECONDS
    watch: "bool" = False
    interval: "float" = DEFAULT_WATCH_INTERVAL_SECONDS
    # listen_address: format ":9186" or
    # "0.0.0.0:9186"; metrics are only served in watch mode
    metrics_listen_address: "str | None" = None
    granularity: "ReportGranularity" = ReportGranularity.DAILY
    since: "str | None" = None
    until: "str | None" = None
    timezone: "str | None" = None
    config_path: "Path | None" = None
    home: "Path | None" = None
    log_level: "str" = "warning"
    log_json: "bool" = False


def _positive_float(raw: "str") -> "float":
    try:
        value = float(raw)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number: {raw!r}") from None
    if value <= 0:
        raise argparse.ArgumentTypeError(f"must be greater than zero: {raw!r}")
    return value


def _account_index(raw: "str") -> "int":
    try:
        value = int(raw)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid account index: {raw!r}") from None
    if value < 1:
        raise argparse.ArgumentTypeError("account index is 1-based")
    return value


def _add_common(parser: "argparse.ArgumentParser") -> "None":
    parser.add_argument(
        "--config",
        dest="config_path",
        type=Path,
        default=None,
        help="Config file (default: $FUELCHECK_CONFIG or ~/.codexbar/config.json)",
    )
    parser.add_argument(
        "--home",
        type=Path,
        default=None,
        help="Home directory to read credentials and session logs from",
    )
    parser.add_argument(
        "--log.level",
        dest="log_level",
        default="warning",
        choices=["debug", "info", "warning", "error"],
        help="Log level (default: warning)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Shorthand for --log.level debug",
    )
    parser.add_argument(
        "--log.json",
        dest="log_json",
        action="store_true",
        help="Emit logs as JSON lines on stderr",
    )


def _add_output(parser: "argparse.ArgumentParser", default: "OutputFormat") -> "None":
    parser.add_argument(
        "--format",
        dest="output_format",
        type=OutputFormat,
        default=default,
        choices=list(OutputFormat),
        help=f"Output format (default: {default})",
    )
    parser.add_argument(
        "--json",
        dest="output_format",
        action="store_const",
        const=OutputFormat.JSON,
        default=default,
        help="Shorthand for --format json",
    )
    parser.add_argument("--pretty", action="store_true", help="Pretty-print JSON output")


def _add_providers(parser: "argparse.ArgumentParser") -> "None":
    parser.add_argument(
        "-p",
        "--provider",
        dest="providers",
        action="append",
        default=[],
        help="Provider id, alias, 'all' or 'both'; repeatable or comma separated",
    )


def build_parser() -> "argparse.ArgumentParser":
    parser = argparse.ArgumentParser(
        prog="fuelcheck",
        description="Usage, quota and cost across AI coding assistants",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    usage = subparsers.add_parser("usage", help="Fetch current usage and quota")
    _add_common(usage)
    _add_providers(usage)
    _add_output(usage, OutputFormat.TEXT)
    usage.add_argument(
        "--source",
        type=SourceKind,
        default=None,
        choices=list(SourceKind),
        help="Credential source (default: configured source, else auto)",
    )
    accounts = usage.add_mutually_exclusive_group()
    accounts.add_argument("--account", default=None, help="Token account label or id")
    accounts.add_argument(
        "--account-index",
        dest="account_index",
        type=_account_index,
        default=None,
        help="Token account position, 1-based",
    )
    accounts.add_argument(
        "--all-accounts",
        dest="all_accounts",
        action="store_true",
        help="Fetch every configured token account separately",
    )
    usage.add_argument(
        "--status",
        action="store_true",
        help="Show the provider status page indicator where one exists",
    )
    usage.add_argument(
        "--no-credits",
        dest="credits",
        action="store_false",
        help="Leave out the Codex credit balance",
    )
    usage.add_argument(
        "--timeout",
        type=_positive_float,
        default=DEFAULT_TIMEOUT_SECONDS,
        help=f"Overall fetch timeout in seconds (default: {DEFAULT_TIMEOUT_SECONDS:g})",
    )
    usage.add_argument("--watch", action="store_true", help="Refresh until interrupted")
    usage.add_argument(
        "--interval",
        type=_positive_float,
        default=DEFAULT_WATCH_INTERVAL_SECONDS,
        help=f"Watch refresh interval in seconds (default: {DEFAULT_WATCH_INTERVAL_SECONDS:g})",
    )
    usage.add_argument(
        "--metrics.listen-address",
        dest="metrics_listen_address",
        default=None,
        help="Serve Prometheus metrics while watching, e.g. :9186",
    )

    cost = subparsers.add_parser("cost", help="Build a cost report from local session logs")
    _add_common(cost)
    _add_providers(cost)
    _add_output(cost, OutputFormat.TEXT)
    cost.add_argument(
        "--report",
        dest="granularity",
        type=ReportGranularity,
        default=ReportGranularity.DAILY,
        choices=list(ReportGranularity),
        help="Bucket size (default: daily)",
    )
    cost.add_argument("--since", default=None, help="First day, YYYYMMDD or YYYY-MM-DD")
    cost.add_argument("--until", default=None, help="Last day, YYYYMMDD or YYYY-MM-DD")
    cost.add_argument("--timezone", default=None, help="IANA timezone (default: $TZ, else UTC)")

    config = subparsers.add_parser("config", help="Inspect the configuration file")
    config_actions = config.add_subparsers(dest="config_action", required=True)
    validate = config_actions.add_parser("validate", help="Check that the config file loads")
    _add_common(validate)
    _add_output(validate, OutputFormat.TEXT)
    dump = config_actions.add_parser("dump", help="Print the normalized config, secrets redacted")
    _add_common(dump)
    _add_output(dump, OutputFormat.JSON)

    return parser


def parse_args(argv: "list[str] | None" = None) -> "Options":
    parser = build_parser()
    args = parser.parse_args(argv)

    options = Options(
        command=args.command,
        config_action=getattr(args, "config_action", None),
        providers=list(getattr(args, "providers", [])),
        output_format=args.output_format,
        pretty=args.pretty,
        config_path=args.config_path,
        home=args.home,
        log_level="debug" if args.verbose else args.log_level,
        log_json=args.log_json,
    )

    if args.command == "usage":
        options.source = args.source
        if args.all_accounts:
            options.account = AccountSelection(all_accounts=True)
        elif args.account is not None or args.account_index is not None:
            options.account = AccountSelection(
                label=args.account,
                index=args.account_index - 1 if args.account_index is not None else None,
            )
        options.status = args.status
        options.credits = args.credits
        options.timeout = args.timeout
        options.watch = args.watch
        options.interval = args.interval
        options.metrics_listen_address = args.metrics_listen_address
        if args.watch and args.output_format is not OutputFormat.TEXT:
            parser.error("--watch only supports text output")
        if args.metrics_listen_address and not args.watch:
            parser.error("--metrics.listen-address requires --watch")
    elif args.command == "cost":
        options.granularity = args.granularity
        options.since = args.since
        options.until = args.until
        options.timezone = args.timezone

    return options
