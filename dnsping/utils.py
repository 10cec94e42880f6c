"""Utility functions and constants shared by the dnsping modules."""

from typing import Dict, List, Optional, Tuple
import sys

from .models import Probe, ProxyConfig, Target

# Upper bounds of the round-trip time histogram, in seconds
RTT_BUCKETS = (0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)


def format_bound_for_label(value: float) -> str:
    """Format a float value as a string for Prometheus label.

    Always uses decimal notation (not scientific).
    Uses enough decimal places to preserve precision for very small values.
    """
    # Up to 9 decimal places, without trailing zeros or a bare decimal point
    return f"{value:.9f}".rstrip('0').rstrip('.')


def prepare_headers(remote_write_headers: Optional[List[str]]) -> Dict[str, str]:
    """Prepare headers dictionary from command-line arguments."""
    headers = {}
    if remote_write_headers:
        for header in remote_write_headers:
            if '=' in header:
                key, value = header.split('=', 1)
                headers[key] = value
    return headers


def parse_host_port(value: str, default_port: int) -> Tuple[str, int]:
    """Split ``host``, ``host:port``, ``[v6]`` or ``[v6]:port``.

    A bare IPv6 address (more than one colon, no brackets) is taken as a host.
    """
    if value.startswith('['):
        host, bracket, rest = value[1:].partition(']')
        if not bracket or not host:
            raise ValueError(f"Invalid address '{value}'")
        if not rest:
            return host, default_port
        if not rest.startswith(':'):
            raise ValueError(f"Invalid address '{value}'")
        port_str = rest[1:]
    elif value.count(':') == 1:
        host, port_str = value.split(':')
    else:
        return value, default_port

    if not host or not port_str.isdigit():
        raise ValueError(f"Invalid address '{value}'")
    port = int(port_str)
    if not 0 < port < 65536:
        raise ValueError(f"Invalid port in '{value}'")
    return host, port


def target_labels(target: Target, proxy: Optional[ProxyConfig], iterative: bool) -> Dict[str, str]:
    """Labels describing a run, used for the dnsping_info metric."""
    return {
        'server': target.server,
        'port': str(target.port),
        'host': target.host,
        'proxy': f"{proxy.address}:{proxy.port}" if proxy else '',
        'mode': 'iterative' if iterative else 'recursive',
    }


def send_metrics_remote_write(remote_write_url: str, headers: Dict[str, str],
                               probes: List[Probe], instance_label: str,
                               verbose: bool = False, dry_run: bool = False, debug_file: Optional[str] = None,
                               info_labels: Optional[Dict[str, str]] = None) -> bool:
    """Send the probes of a run via remote write endpoint.

    Args:
        remote_write_url: URL of the Prometheus remote write endpoint
        headers: HTTP headers to include in the request
        probes: Resolved probes in sequence order
        instance_label: Value for the instance label added to all metrics
        verbose: Print verbose output for each metric
        dry_run: If True, process metrics but skip sending to endpoint
        debug_file: Optional path to save uncompressed payload data before compression
        info_labels: Optional labels describing the run, sent as the dnsping_info metric

    Returns:
        True if the metrics were sent (or processed, in dry-run mode)
    """
    # Import here to keep requests/protobuf off the probing path
    from .remote_write import RemoteWriteClient

    if dry_run:
        print(f"\nDry-run mode: Processing metrics (not sending to {remote_write_url})...")
    else:
        print(f"\nSending metrics to {remote_write_url}...")

    client = RemoteWriteClient(remote_write_url, headers, instance_label, verbose)

    if client.send_metrics_from_probes(probes, dry_run=dry_run, debug_file=debug_file, info_labels=info_labels):
        if dry_run:
            print(f"Dry-run completed: Processed metrics for {len(probes)} probe(s)")
        else:
            print(f"Successfully sent metrics for {len(probes)} probe(s)")
        return True
    print("Failed to process/send metrics", file=sys.stderr)
    return False
