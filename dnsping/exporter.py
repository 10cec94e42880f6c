"""Export dnsping results as Prometheus metrics."""

from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram
from prometheus_client.exposition import generate_latest

from .models import Probe, ProbeOutcome, StatisticsSummary
from .utils import RTT_BUCKETS


class PrometheusMetricsExporter:
    """Export probe outcomes and run statistics as Prometheus metrics."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up Prometheus metric definitions."""
        # Run description
        self.info = Gauge(
            'dnsping_info',
            'Parameters of the dnsping run',
            ['server', 'port', 'host', 'proxy', 'mode'],
            registry=self.registry
        )

        # Probe counts
        self.probes_sent = Gauge(
            'dnsping_probes_sent_total',
            'Total number of DNS queries sent',
            [],
            registry=self.registry
        )
        self.probes_received = Gauge(
            'dnsping_probes_received_total',
            'Total number of matching DNS replies received',
            [],
            registry=self.registry
        )
        self.probes_lost = Gauge(
            'dnsping_probes_lost_total',
            'Total number of DNS queries without a valid reply',
            [],
            registry=self.registry
        )
        self.probes_malformed = Gauge(
            'dnsping_probes_malformed_total',
            'Total number of malformed DNS replies',
            [],
            registry=self.registry
        )
        self.loss_percent = Gauge(
            'dnsping_loss_percent',
            'Percentage of queries without a valid reply',
            [],
            registry=self.registry
        )

        # Outcomes as they happen
        self.outcomes = Counter(
            'dnsping_probe_outcomes',
            'Number of probes by outcome',
            ['outcome'],
            registry=self.registry
        )

        # Round-trip time summary
        self.rtt_min = Gauge(
            'dnsping_rtt_seconds_min',
            'Minimum round-trip time in seconds',
            [],
            registry=self.registry
        )
        self.rtt_avg = Gauge(
            'dnsping_rtt_seconds_avg',
            'Average round-trip time in seconds',
            [],
            registry=self.registry
        )
        self.rtt_max = Gauge(
            'dnsping_rtt_seconds_max',
            'Maximum round-trip time in seconds',
            [],
            registry=self.registry
        )
        self.rtt_stddev = Gauge(
            'dnsping_rtt_seconds_stddev',
            'Round-trip time population standard deviation in seconds',
            [],
            registry=self.registry
        )

        # Round-trip time histogram
        self.rtt = Histogram(
            'dnsping_rtt_seconds',
            'Round-trip time of successful probes',
            [],
            buckets=RTT_BUCKETS,
            registry=self.registry
        )

    def export_info(self, labels: Dict[str, str]):
        self.info.labels(**labels).set(1)

    def export_probe(self, probe: Probe):
        """Export the outcome of a single probe."""
        self.outcomes.labels(outcome=probe.outcome.value).inc()
        if probe.outcome is ProbeOutcome.SUCCESS:
            self.rtt.observe(probe.rtt / 1000.0)

    def export_summary(self, summary: StatisticsSummary):
        """Export the statistics of a finished run."""
        self.probes_sent.set(summary.sent)
        self.probes_received.set(summary.received)
        self.probes_lost.set(summary.lost)
        self.probes_malformed.set(summary.malformed)
        self.loss_percent.set(summary.loss_percent)

        # Milliseconds to seconds
        self.rtt_min.set(summary.rtt_min / 1000.0)
        self.rtt_avg.set(summary.rtt_avg / 1000.0)
        self.rtt_max.set(summary.rtt_max / 1000.0)
        self.rtt_stddev.set(summary.rtt_stddev / 1000.0)

    def render(self) -> bytes:
        """Render the registry in the Prometheus text exposition format."""
        return generate_latest(self.registry)

    def write(self, path: str):
        """Write the text exposition to a file, e.g. for the node_exporter textfile collector."""
        with open(path, 'wb') as f:
            f.write(self.render())
