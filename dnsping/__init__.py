"""Ping DNS servers with DNS queries, directly or through a SOCKS5 proxy."""

from .models import Probe, ProbeOutcome, ProxyConfig, RunConfig, StatisticsSummary, Target
from .pinger import Pinger, Reporter
from .stats import StatisticsAggregator
from .transport import open_connection
from .exporter import PrometheusMetricsExporter

__all__ = [
    'Probe',
    'ProbeOutcome',
    'ProxyConfig',
    'RunConfig',
    'StatisticsSummary',
    'Target',
    'Pinger',
    'Reporter',
    'StatisticsAggregator',
    'open_connection',
    'PrometheusMetricsExporter',
]
