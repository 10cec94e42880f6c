"""Client for sending dnsping results via Prometheus remote write."""

import sys
from typing import Dict, List, Optional, Any
from datetime import datetime
import requests
import snappy
from google.protobuf.json_format import MessageToJson

from prometheus_remote_writer.proto import remote_pb2 as prompb_pb2
from prometheus_remote_writer.proto import types_pb2

from .models import Probe, ProbeOutcome
from .utils import RTT_BUCKETS, format_bound_for_label


class RemoteWriteClient:
    """Client for sending Prometheus metrics via remote write."""

    def __init__(self, remote_write_url: str, headers: Optional[Dict[str, str]] = None, instance_label: str = 'dnsping', verbose: bool = False):
        self.remote_write_url = remote_write_url
        self.headers = headers or {}
        self.headers.setdefault('Content-Type', 'application/x-protobuf')
        self.headers.setdefault('Content-Encoding', 'snappy')
        self.headers.setdefault('X-Prometheus-Remote-Write-Version', '0.1.0')
        self.instance_label = instance_label  # Value for the instance label
        self.verbose = verbose

    def send_metrics_from_probes(self, probes: List[Probe], dry_run: bool = False, debug_file: Optional[str] = None, info_labels: Optional[Dict[str, str]] = None) -> bool:
        """Send metrics built from the probes of a run to the remote write endpoint.

        Args:
            probes: Resolved probes in sequence order
            dry_run: If True, process metrics but skip sending to endpoint
            debug_file: Optional path to save uncompressed payload data before compression
            info_labels: Optional labels describing the run, sent as the dnsping_info metric

        Returns:
            True if successful, False otherwise
        """
        try:
            if probes:
                print(f"Processing {len(probes)} probes", file=sys.stderr)
                print(f"  First probe: timestamp={probes[0].timestamp}, seq={probes[0].sequence}", file=sys.stderr)
                print(f"  Last probe: timestamp={probes[-1].timestamp}, seq={probes[-1].sequence}", file=sys.stderr)

            write_request = self._convert_probes_to_remote_write(probes, info_labels=info_labels)

            num_timeseries = len(write_request.timeseries)
            total_samples = sum(len(ts.samples) for ts in write_request.timeseries)
            print(f"Prepared {num_timeseries} time series with {total_samples} total samples", file=sys.stderr)

            data = write_request.SerializeToString()

            if debug_file:
                self._write_debug_file(write_request, debug_file)

            if dry_run:
                print("Dry-run mode: Skipping actual send to endpoint", file=sys.stderr)
                return True

            compressed_data = snappy.compress(data)
            print(f"Sending {len(compressed_data)} bytes (uncompressed: {len(data)} bytes)", file=sys.stderr)

            current_time = datetime.now()
            response = requests.post(
                self.remote_write_url,
                data=compressed_data,
                headers=self.headers,
                timeout=30
            )

            if response.status_code in (200, 204):
                print(f"Sent {len(probes)} probes to {self.remote_write_url} (status {response.status_code}) "
                      f"at {current_time.isoformat()}", file=sys.stderr)
                return True
            print(f"Error: Remote write rejected with status {response.status_code}: {response.text}", file=sys.stderr)
            return False
        except requests.exceptions.ConnectionError:
            print(f"Error: Could not connect to {self.remote_write_url} "
                  "(is Prometheus running with --web.enable-remote-write-receiver?)", file=sys.stderr)
            return False
        except requests.exceptions.RequestException as e:
            print(f"Error: Remote write to {self.remote_write_url} failed: {e}", file=sys.stderr)
            return False

    def _write_debug_file(self, write_request, debug_file: str) -> None:
        """Save the uncompressed payload as JSON."""
        # including_default_value_fields was renamed in protobuf 26
        try:
            json_data = MessageToJson(write_request, always_print_fields_with_no_presence=True)  # type: ignore[call-arg]
        except TypeError:
            json_data = MessageToJson(write_request, including_default_value_fields=True)  # type: ignore[call-arg]
        try:
            with open(debug_file, 'w', encoding='utf-8') as f:
                f.write(json_data)
            print(f"Saved uncompressed payload as JSON ({len(json_data)} bytes) to {debug_file}", file=sys.stderr)
        except OSError as e:
            print(f"Warning: Failed to write debug file {debug_file}: {e}", file=sys.stderr)

    def _process_probe_counters(self, time_series_map: Dict[tuple, Any], cumulative_sent: int,
                                cumulative_received: int, cumulative_malformed: int, timestamp_ms: int):
        """Add cumulative probe counters at a probe's timestamp."""
        self._add_sample_to_map(time_series_map, 'dnsping_probes_sent_total', {}, cumulative_sent, timestamp_ms)
        self._add_sample_to_map(time_series_map, 'dnsping_probes_received_total', {}, cumulative_received, timestamp_ms)
        self._add_sample_to_map(time_series_map, 'dnsping_probes_lost_total', {}, cumulative_sent - cumulative_received, timestamp_ms)
        self._add_sample_to_map(time_series_map, 'dnsping_probes_malformed_total', {}, cumulative_malformed, timestamp_ms)

    def _process_probe_latency_buckets(self, probe: Probe, time_series_map: Dict[tuple, Any],
                                       cumulative_bucket_counts: Dict[str, int],
                                       cumulative_latency_count: int, timestamp_ms: int) -> Dict[str, int]:
        """Count a successful probe into the cumulative histogram buckets and emit them all.

        Returns:
            Updated cumulative_bucket_counts dictionary
        """
        rtt_seconds = probe.rtt / 1000.0 if probe.rtt is not None else None
        for bound in RTT_BUCKETS:
            bound_str = format_bound_for_label(bound)
            if bound_str not in cumulative_bucket_counts:
                cumulative_bucket_counts[bound_str] = 0
            if rtt_seconds is not None and rtt_seconds <= bound:
                cumulative_bucket_counts[bound_str] += 1
            self._add_sample_to_map(time_series_map, 'dnsping_rtt_seconds_bucket', {'le': bound_str}, cumulative_bucket_counts[bound_str], timestamp_ms)

        # le="+Inf" counts every reply
        self._add_sample_to_map(time_series_map, 'dnsping_rtt_seconds_bucket', {'le': '+Inf'}, cumulative_latency_count, timestamp_ms)

        return cumulative_bucket_counts

    def _finalize_time_series(self, time_series_map: Dict[tuple, Any], write_request) -> None:
        write_request.timeseries.extend(ts for ts in time_series_map.values() if ts.samples)

    def _print_metric_sample(self, time_series, timestamp_ms: int, value: float) -> None:
        """Print one sample in exposition-like form: time, series, value."""
        name, *labels = time_series.labels
        series = name.value
        if labels:
            series += '{' + ','.join(f'{label.name}="{label.value}"' for label in labels) + '}'
        print(f"{datetime.fromtimestamp(timestamp_ms / 1000.0).isoformat()} {series} {value}")

    def _convert_probes_to_remote_write(self, probes: List[Probe], info_labels: Optional[Dict[str, str]] = None):
        """Convert the probes of a run to remote write format, one sample per probe timestamp."""
        write_request = prompb_pb2.WriteRequest()  # type: ignore
        time_series_map: Dict[tuple, Any] = {}

        if not probes:
            return write_request

        # dnsping_info is only sent once, at the first timestamp
        if info_labels:
            first_timestamp_ms = int(probes[0].timestamp.timestamp() * 1000)
            self._add_sample_to_map(time_series_map, 'dnsping_info', info_labels.copy(), 1.0, first_timestamp_ms)

        cumulative_sent = 0
        cumulative_received = 0
        cumulative_malformed = 0
        cumulative_latency_sum = 0.0
        cumulative_bucket_counts: Dict[str, int] = {}

        for probe in probes:
            timestamp_ms = int(probe.timestamp.timestamp() * 1000)

            cumulative_sent += 1
            if probe.outcome is ProbeOutcome.SUCCESS:
                cumulative_received += 1
                cumulative_latency_sum += probe.rtt / 1000.0
                self._add_sample_to_map(time_series_map, 'dnsping_rtt_seconds', {}, probe.rtt / 1000.0, timestamp_ms)
            elif probe.outcome is ProbeOutcome.MALFORMED:
                cumulative_malformed += 1

            self._process_probe_counters(time_series_map, cumulative_sent, cumulative_received,
                                         cumulative_malformed, timestamp_ms)

            self._add_sample_to_map(time_series_map, 'dnsping_rtt_seconds_sum', {}, cumulative_latency_sum, timestamp_ms)
            self._add_sample_to_map(time_series_map, 'dnsping_rtt_seconds_count', {}, cumulative_received, timestamp_ms)

            cumulative_bucket_counts = self._process_probe_latency_buckets(
                probe, time_series_map, cumulative_bucket_counts, cumulative_received, timestamp_ms
            )

        self._finalize_time_series(time_series_map, write_request)
        return write_request

    def _add_sample_to_map(self, time_series_map: Dict[tuple, Any], metric_name: str, labels: Dict[str, str],
                           value: float, timestamp_ms: int) -> None:
        """Append a sample to the series for metric_name and labels, creating the series on first use."""
        series_labels = sorted({**labels, 'instance': self.instance_label}.items())
        key = (metric_name, tuple(series_labels))

        time_series = time_series_map.get(key)
        if time_series is None:
            time_series = types_pb2.TimeSeries()  # type: ignore
            # __name__ first, then the labels in name order
            for name, val in [('__name__', metric_name)] + series_labels:
                label = time_series.labels.add()
                label.name = name
                label.value = str(val)
            time_series_map[key] = time_series

        sample = time_series.samples.add()
        sample.value = value
        sample.timestamp = timestamp_ms

        if self.verbose:
            self._print_metric_sample(time_series, timestamp_ms, value)
