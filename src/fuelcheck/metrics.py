from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram

from fuelcheck.models import UsageSnapshot


class FetchMetrics:
    """
    applies fetch outcomes to Prometheus metrics.
     - fetch_duration_seconds: histogram of per-provider
     resolve+fetch+normalize time.
     - fetch_errors_total: counts failed fetches, labeled by
     provider and error kind.
     - last_fetch_success_timestamp_seconds: unix time of the last
     successful fetch per provider.
     - usage_percent: used share of each quota metric that has a
     limit, labeled by provider and metric label.
     - cost_used: provider-reported spend, labeled by provider and
     currency.
    """

    def __init__(self, registry: "CollectorRegistry" = REGISTRY) -> "None":
        self._fetch_duration: "Histogram" = Histogram(
            "fuelcheck_fetch_duration_seconds",
            "Duration of provider usage fetches",
            ["provider"],
            registry=registry,
        )
        self._fetch_errors: "Counter" = Counter(
            "fuelcheck_fetch_errors_total",
            "Total number of failed provider fetches by error kind",
            ["provider", "kind"],
            registry=registry,
        )
        self._last_success: "Gauge" = Gauge(
            "fuelcheck_last_fetch_success_timestamp_seconds",
            "Unix timestamp of last successful fetch per provider",
            ["provider"],
            registry=registry,
        )
        self._usage_percent: "Gauge" = Gauge(
            "fuelcheck_usage_percent",
            "Used share of a provider quota in percent",
            ["provider", "metric"],
            registry=registry,
        )
        self._cost_used: "Gauge" = Gauge(
            "fuelcheck_cost_used",
            "Provider-reported spend in the current billing period",
            ["provider", "currency"],
            registry=registry,
        )

    def observe_fetch_duration(self, provider: "str", duration_seconds: "float") -> "None":
        self._fetch_duration.labels(provider=provider).observe(duration_seconds)

    def inc_fetch_error(self, provider: "str", kind: "str") -> "None":
        self._fetch_errors.labels(provider=provider, kind=kind).inc()

    def set_last_fetch_success(self, provider: "str", timestamp: "float") -> "None":
        self._last_success.labels(provider=provider).set(timestamp)

    def update_snapshot(self, snapshot: "UsageSnapshot") -> "None":
        """
        sets the usage gauges from a snapshot. Metrics without a limit
        have no percentage and are skipped.
        """
        provider = str(snapshot.provider)
        for metric in snapshot.metrics:
            percent = metric.used_percent
            if percent is None:
                continue
            self._usage_percent.labels(provider=provider, metric=metric.label).set(percent)

        if snapshot.cost is not None:
            self._cost_used.labels(provider=provider, currency=snapshot.cost.currency).set(
                snapshot.cost.used
            )
