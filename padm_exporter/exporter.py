"""Prometheus metrics exporter module.

This module handles:
- Rendering the metric store snapshot on every scrape
- Operational metrics about the poll loop
- Exposing the metrics HTTP server on the configured address

Scrapes only read the metric store; they never touch the PADM API.
"""

import logging
import time
from typing import Dict, Iterator, Optional

from prometheus_client import REGISTRY, CollectorRegistry, Gauge, start_http_server
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily, Metric
from prometheus_client.registry import Collector

from padm_exporter.store import MetricStore
from padm_exporter.variables import BUILTIN_LABELS

# Configure module logger
logger = logging.getLogger(__name__)

VARIABLE_LABELS = list(BUILTIN_LABELS)

LAST_SUCCESS_METRIC = "padm_variable_last_success_timestamp_seconds"
DEVICE_UP_METRIC = "padm_device_up"
POLL_SUCCESS_METRIC = "padm_poll_success"
POLL_TIMESTAMP_METRIC = "padm_poll_timestamp"
POLL_DURATION_METRIC = "padm_poll_duration_seconds"
POLL_FAILURES_METRIC = "padm_poll_consecutive_failures"

# Families rendered by the exporter itself; variables may not use these names
RESERVED_METRIC_NAMES = frozenset({
    LAST_SUCCESS_METRIC,
    DEVICE_UP_METRIC,
    POLL_SUCCESS_METRIC,
    POLL_TIMESTAMP_METRIC,
    POLL_DURATION_METRIC,
    POLL_FAILURES_METRIC,
})


class StoreCollector(Collector):
    """Custom collector turning MetricStore samples into metric families.

    Every sample with a known value yields one line labelled with the
    variable name, the device and whether the value is stale, plus the
    definition's value label when it has one. Samples that were never
    fetched are left out.
    """

    def __init__(self, store: MetricStore):
        self._store = store

    def collect(self) -> Iterator[Metric]:
        samples = self._store.snapshot()

        families: Dict[str, Metric] = {}
        last_success = GaugeMetricFamily(
            LAST_SUCCESS_METRIC,
            "Unix timestamp of the last successful fetch of each variable",
            labels=["variable", "device"],
        )
        devices: Dict[str, bool] = {}

        for sample in samples.values():
            if sample.value is None:
                continue

            definition = sample.definition
            labels = list(VARIABLE_LABELS)
            label_values = [definition.name, sample.device, "true" if sample.stale else "false"]
            if definition.value_label:
                labels.append(definition.value_label)
                label_values.append(sample.text)

            family = families.get(definition.family)
            if family is None:
                family_class = CounterMetricFamily if definition.type == "counter" else GaugeMetricFamily
                family = family_class(definition.family, definition.description, labels=labels)
                families[definition.family] = family

            family.add_metric(label_values, sample.value)
            last_success.add_metric([definition.name, sample.device], sample.updated_at)

            if sample.device:
                devices[sample.device] = devices.get(sample.device, False) or not sample.stale

        yield from families.values()
        if last_success.samples:
            yield last_success

        if devices:
            device_up = GaugeMetricFamily(
                DEVICE_UP_METRIC,
                "Whether the device reported a value within the staleness threshold (1=up, 0=down)",
                labels=["device"],
            )
            for device, up in devices.items():
                device_up.add_metric([device], 1 if up else 0)
            yield device_up


class PADMExporter:
    """Prometheus exporter for PADM variables.

    Exposes the following metrics:
    - One metric per configured variable, labelled variable/device/stale
    - padm_variable_last_success_timestamp_seconds: Last successful fetch per variable
    - padm_device_up: Whether each device has at least one fresh variable
    - padm_poll_success: Whether the last poll cycle succeeded (1=success, 0=failure)
    - padm_poll_timestamp: Unix timestamp of the last poll cycle
    - padm_poll_duration_seconds: Duration of the last poll cycle
    - padm_poll_consecutive_failures: Failed poll cycles since the last success

    Attributes:
        host: HTTP server bind address
        port: HTTP server port (default 8080)
    """

    def __init__(
        self,
        store: MetricStore,
        host: str = "0.0.0.0",
        port: int = 8080,
        registry: Optional[CollectorRegistry] = None
    ):
        """Initialize the exporter.

        Args:
            store: Metric store to render on each scrape
            host: Address to bind the HTTP server to
            port: Port to run the HTTP server on
            registry: Optional custom registry for testing. If None, uses default REGISTRY.
        """
        self.host = host
        self.port = port
        self._registry = registry if registry is not None else REGISTRY
        self._server = None

        self._registry.register(StoreCollector(store))

        self._poll_success = Gauge(
            POLL_SUCCESS_METRIC,
            'Whether the last poll cycle succeeded (1=success, 0=failure)',
            registry=self._registry
        )

        self._poll_timestamp = Gauge(
            POLL_TIMESTAMP_METRIC,
            'Unix timestamp of the last poll cycle',
            registry=self._registry
        )

        self._poll_duration = Gauge(
            POLL_DURATION_METRIC,
            'Duration of the last poll cycle in seconds',
            registry=self._registry
        )

        self._consecutive_failures = Gauge(
            POLL_FAILURES_METRIC,
            'Number of failed poll cycles since the last success',
            registry=self._registry
        )

    def set_poll_result(self, success: bool, duration: float, consecutive_failures: int) -> None:
        """Update operational metrics after a poll cycle.

        Args:
            success: Whether the cycle succeeded
            duration: How long the cycle took in seconds
            consecutive_failures: Failed cycles since the last success
        """
        self._poll_success.set(1 if success else 0)
        self._poll_timestamp.set(time.time())
        self._poll_duration.set(duration)
        self._consecutive_failures.set(consecutive_failures)

    def start(self) -> None:
        """Start the HTTP server to expose metrics.

        The server runs in a daemon thread and exposes metrics at:
        http://{host}:{port}/metrics

        Raises:
            OSError: If the address cannot be bound
        """
        if self._server is not None:
            logger.warning("Prometheus server already started")
            return

        logger.info(f"Starting Prometheus HTTP server on {self.host}:{self.port}")
        self._server, _ = start_http_server(self.port, addr=self.host, registry=self._registry)

    def stop(self) -> None:
        """Stop the HTTP server."""
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
            self._server = None
            logger.info("Prometheus HTTP server stopped")
