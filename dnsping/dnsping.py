#!/usr/bin/env python3
"""
Ping a DNS server: send DNS queries, directly or through a SOCKS5 proxy,
and report round-trip times and loss like ping does.
"""

import sys
import os
import signal
import argparse

# Handle both relative imports (when used as module) and absolute imports (when run as script)
try:
    from .errors import DnsPingError, TransportError
    from .exporter import PrometheusMetricsExporter
    from .models import ProbeOutcome, ProxyConfig, RunConfig, Target
    from .pinger import Pinger, Reporter
    from .utils import parse_host_port, prepare_headers, send_metrics_remote_write, target_labels
except ImportError:
    # If relative imports fail, we're running as a script - add parent directory to path
    sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    from dnsping.errors import DnsPingError, TransportError
    from dnsping.exporter import PrometheusMetricsExporter
    from dnsping.models import ProbeOutcome, ProxyConfig, RunConfig, Target
    from dnsping.pinger import Pinger, Reporter
    from dnsping.utils import parse_host_port, prepare_headers, send_metrics_remote_write, target_labels


class ConsoleReporter(Reporter):
    """Print probes and statistics the way ping does."""

    def __init__(self, exporter=None, out=None):
        self.exporter = exporter
        self.out = out if out is not None else sys.stdout
        self.peer = ''

    def on_start(self, target, connection, query_size):
        self.peer = connection.peer
        print(f"PING {target.display} for {target.host} {query_size} bytes of data.", file=self.out)

    def on_probe(self, probe):
        if probe.outcome is ProbeOutcome.SUCCESS:
            print(f"{probe.reply_size} bytes from {self.peer}: seq={probe.sequence} "
                  f"id={probe.transaction_id} time={probe.rtt:.2f} ms", file=self.out)
        elif probe.outcome is ProbeOutcome.MALFORMED:
            print(f"Malformed reply for seq={probe.sequence} id={probe.transaction_id}", file=self.out)
        else:
            print(f"Request timeout for seq={probe.sequence} id={probe.transaction_id}", file=self.out)
        self.out.flush()
        if self.exporter is not None:
            self.exporter.export_probe(probe)

    def print_summary(self, target, summary):
        print(f"--- {target.display} ping statistics ---", file=self.out)
        print(f"{summary.sent} packets transmitted, {summary.received} received, "
              f"{summary.loss_percent:.2f}% packet loss", file=self.out)
        if summary.received:
            print(f"rtt min/avg/max/mdev = {summary.rtt_min:.3f}/{summary.rtt_avg:.3f}/"
                  f"{summary.rtt_max:.3f}/{summary.rtt_stddev:.3f} ms", file=self.out)


def build_parser():
    parser = argparse.ArgumentParser(
        description='Ping a DNS server with DNS queries, optionally through a SOCKS5 proxy'
    )
    parser.add_argument(
        'server',
        metavar='ADDRESS',
        help='DNS server address'
    )
    parser.add_argument(
        '-i', '--iterate',
        action='store_true',
        help='Do query iteratively (clear the Recursion Desired bit)'
    )
    parser.add_argument(
        '-p', '--port',
        type=int,
        default=53,
        help='Server port (default: 53)'
    )
    parser.add_argument(
        '-H', '--host',
        default='www.google.com',
        help='Host name to query (default: www.google.com)'
    )
    parser.add_argument(
        '-s', '--socks-proxy',
        metavar='ADDRESS[:PORT]',
        help='SOCKS5 proxy to tunnel the queries through over TCP (default port: 1080)'
    )
    parser.add_argument(
        '-u', '--username',
        help='SOCKS5 username'
    )
    parser.add_argument(
        '-P', '--password',
        help='SOCKS5 password'
    )
    parser.add_argument(
        '-c', '--count',
        type=int,
        default=0,
        help='Number of queries to send, 0 for unlimited (default: 0)'
    )
    parser.add_argument(
        '-I', '--interval',
        type=int,
        default=1000,
        help='Wait between sending each query, in milliseconds (default: 1000)'
    )
    parser.add_argument(
        '-w', '--timeout',
        type=int,
        default=1000,
        help='Timeout to wait for each response in milliseconds, 0 to wait forever (default: 1000)'
    )
    parser.add_argument(
        '--metrics-file',
        help='Write the run statistics in Prometheus text format to this file when the run ends'
    )
    parser.add_argument(
        '--remote-write-url',
        help='Prometheus remote write endpoint URL to send the run to'
    )
    parser.add_argument(
        '--remote-write-header',
        action='append',
        help='Additional header for remote write (format: Key=Value)'
    )
    parser.add_argument(
        '--instance-label',
        default='dnsping',
        help='Value for the instance label added to all metrics (default: dnsping)'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Build the remote write payload without sending it'
    )
    parser.add_argument(
        '--verbose',
        action='store_true',
        help='Report discarded replies and print every metric sample sent to Prometheus'
    )
    parser.add_argument(
        '--debug-file',
        help='Save the uncompressed remote write payload as JSON to the specified file for debugging'
    )
    return parser


def build_config(args):
    """Turn parsed arguments into the run configuration. Raises ValueError on invalid values."""
    target = Target(host=args.host, server=args.server, port=args.port)
    proxy = None
    if args.socks_proxy:
        address, port = parse_host_port(args.socks_proxy, 1080)
        proxy = ProxyConfig(address, port, args.username, args.password)
    elif args.username or args.password:
        raise ValueError("--username and --password require --socks-proxy")
    config = RunConfig(count=args.count, interval=args.interval, timeout=args.timeout, iterative=args.iterate)
    return target, proxy, config


def install_interrupt_handler(pinger):
    """First Ctrl+C stops after the probe in flight, a second one interrupts the wait."""
    def handler(signum, frame):
        pinger.cancel()
        signal.signal(signal.SIGINT, signal.default_int_handler)

    signal.signal(signal.SIGINT, handler)


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        target, proxy, config = build_config(args)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    exporter = PrometheusMetricsExporter() if args.metrics_file else None
    reporter = ConsoleReporter(exporter)
    pinger = Pinger(target, config, proxy, reporter=reporter, verbose=args.verbose)
    install_interrupt_handler(pinger)

    status = 0
    try:
        summary = pinger.run()
    except TransportError as e:
        # The run broke after it started: report what was measured, then fail
        summary = pinger.summary
        reporter.print_summary(target, summary)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except DnsPingError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        signal.signal(signal.SIGINT, signal.default_int_handler)

    reporter.print_summary(target, summary)

    labels = target_labels(target, proxy, config.iterative)
    if exporter is not None:
        exporter.export_info(labels)
        exporter.export_summary(summary)
        try:
            exporter.write(args.metrics_file)
        except OSError as e:
            print(f"Error: Could not write metrics file {args.metrics_file}: {e}", file=sys.stderr)
            status = 1

    if args.remote_write_url:
        headers = prepare_headers(args.remote_write_header)
        if not send_metrics_remote_write(
            args.remote_write_url, headers, pinger.statistics.probes, args.instance_label,
            args.verbose, args.dry_run, args.debug_file, info_labels=labels
        ):
            status = 1

    return status


if __name__ == '__main__':
    sys.exit(main())
