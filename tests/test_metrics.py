"""
Tests for Prometheus export: text exposition and remote write payloads
"""

import io
import json
import os
import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

from dnsping.exporter import PrometheusMetricsExporter
from dnsping.models import Probe, ProbeOutcome, StatisticsSummary
from dnsping.remote_write import RemoteWriteClient
from dnsping.utils import format_bound_for_label

START = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_probes():
    return [
        Probe(sequence=0, transaction_id=0, sent_at=1.0, timestamp=START,
              outcome=ProbeOutcome.SUCCESS, received_at=1.004, reply_size=48),
        Probe(sequence=1, transaction_id=1, sent_at=2.0, timestamp=START + timedelta(seconds=1),
              outcome=ProbeOutcome.TIMEOUT),
        Probe(sequence=2, transaction_id=2, sent_at=3.0, timestamp=START + timedelta(seconds=2),
              outcome=ProbeOutcome.SUCCESS, received_at=3.2, reply_size=48),
    ]


def series_by_name(write_request):
    result = {}
    for ts in write_request.timeseries:
        labels = {label.name: label.value for label in ts.labels}
        name = labels.pop('__name__')
        result[(name, tuple(sorted(labels.items())))] = [(s.timestamp, s.value) for s in ts.samples]
    return result


class TestPrometheusMetricsExporter(unittest.TestCase):
    """Tests for PrometheusMetricsExporter"""

    def setUp(self):
        self.exporter = PrometheusMetricsExporter()
        for probe in make_probes():
            self.exporter.export_probe(probe)
        self.exporter.export_summary(StatisticsSummary(
            sent=3, received=2, loss_percent=100.0 / 3, rtt_min=4.0, rtt_avg=102.0,
            rtt_max=200.0, rtt_stddev=98.0,
        ))
        self.exporter.export_info({'server': '8.8.8.8', 'port': '53', 'host': 'example.com',
                                   'proxy': '', 'mode': 'recursive'})

    def sample(self, name, labels=None):
        return self.exporter.registry.get_sample_value(name, labels or {})

    def test_summary_gauges(self):
        self.assertEqual(self.sample('dnsping_probes_sent_total'), 3)
        self.assertEqual(self.sample('dnsping_probes_received_total'), 2)
        self.assertEqual(self.sample('dnsping_probes_lost_total'), 1)
        self.assertAlmostEqual(self.sample('dnsping_rtt_seconds_max'), 0.2)
        self.assertAlmostEqual(self.sample('dnsping_rtt_seconds_min'), 0.004)

    def test_outcomes_and_histogram(self):
        self.assertEqual(self.sample('dnsping_probe_outcomes_total', {'outcome': 'success'}), 2)
        self.assertEqual(self.sample('dnsping_probe_outcomes_total', {'outcome': 'timeout'}), 1)
        self.assertEqual(self.sample('dnsping_rtt_seconds_count'), 2)
        self.assertEqual(self.sample('dnsping_rtt_seconds_bucket', {'le': '0.005'}), 1)
        self.assertEqual(self.sample('dnsping_rtt_seconds_bucket', {'le': '+Inf'}), 2)

    def test_render_and_write(self):
        text = self.exporter.render().decode('utf-8')
        self.assertIn('dnsping_info{', text)
        self.assertIn('server="8.8.8.8"', text)
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, 'dnsping.prom')
            self.exporter.write(path)
            with open(path, 'rb') as f:
                self.assertEqual(f.read(), self.exporter.render())


class TestRemoteWriteClient(unittest.TestCase):
    """Tests for RemoteWriteClient"""

    def setUp(self):
        self.client = RemoteWriteClient('http://localhost:9090/api/v1/write', instance_label='test')
        self.info = {'server': '8.8.8.8', 'port': '53', 'host': 'example.com', 'proxy': '', 'mode': 'recursive'}

    def test_cumulative_counters(self):
        series = series_by_name(self.client._convert_probes_to_remote_write(make_probes()))
        instance = (('instance', 'test'),)
        sent = series[('dnsping_probes_sent_total', instance)]
        received = series[('dnsping_probes_received_total', instance)]
        lost = series[('dnsping_probes_lost_total', instance)]
        self.assertEqual([v for _, v in sent], [1, 2, 3])
        self.assertEqual([v for _, v in received], [1, 1, 2])
        self.assertEqual([v for _, v in lost], [0, 1, 1])
        first_ms = int(START.timestamp() * 1000)
        self.assertEqual([t for t, _ in sent], [first_ms, first_ms + 1000, first_ms + 2000])

    def test_rtt_samples_only_for_successes(self):
        series = series_by_name(self.client._convert_probes_to_remote_write(make_probes()))
        rtt = series[('dnsping_rtt_seconds', (('instance', 'test'),))]
        self.assertEqual(len(rtt), 2)
        self.assertAlmostEqual(rtt[0][1], 0.004)
        self.assertAlmostEqual(rtt[1][1], 0.2)

    def test_histogram_buckets_are_cumulative(self):
        series = series_by_name(self.client._convert_probes_to_remote_write(make_probes()))
        small = series[('dnsping_rtt_seconds_bucket', (('instance', 'test'), ('le', format_bound_for_label(0.005))))]
        large = series[('dnsping_rtt_seconds_bucket', (('instance', 'test'), ('le', '0.25')))]
        inf = series[('dnsping_rtt_seconds_bucket', (('instance', 'test'), ('le', '+Inf')))]
        self.assertEqual([v for _, v in small], [1, 1, 1])
        self.assertEqual([v for _, v in large], [1, 1, 2])
        self.assertEqual([v for _, v in inf], [1, 1, 2])

    def test_info_metric_sent_once(self):
        series = series_by_name(self.client._convert_probes_to_remote_write(make_probes(), info_labels=self.info))
        info = [samples for (name, _), samples in series.items() if name == 'dnsping_info']
        self.assertEqual(len(info), 1)
        self.assertEqual(len(info[0]), 1)

    def test_no_probes(self):
        self.assertEqual(len(self.client._convert_probes_to_remote_write([]).timeseries), 0)

    def test_verbose_prints_each_sample(self):
        client = RemoteWriteClient('http://localhost:9090/api/v1/write', instance_label='test', verbose=True)
        with patch('sys.stdout', new_callable=io.StringIO) as out:
            client._convert_probes_to_remote_write(make_probes())
        lines = [line for line in out.getvalue().splitlines() if 'dnsping_probes_sent_total' in line]
        self.assertEqual(len(lines), 3)
        self.assertTrue(lines[-1].endswith('dnsping_probes_sent_total{instance="test"} 3'))

    @patch('dnsping.remote_write.requests.post')
    def test_dry_run_does_not_post(self, post):
        with tempfile.TemporaryDirectory() as tmp:
            debug_file = os.path.join(tmp, 'payload.json')
            self.assertTrue(self.client.send_metrics_from_probes(make_probes(), dry_run=True, debug_file=debug_file))
            with open(debug_file, encoding='utf-8') as f:
                self.assertIn('timeseries', json.load(f))
        post.assert_not_called()

    @patch('dnsping.remote_write.requests.post')
    def test_send_compresses_and_posts(self, post):
        post.return_value = Mock(status_code=204)
        self.assertTrue(self.client.send_metrics_from_probes(make_probes()))
        _, kwargs = post.call_args
        self.assertEqual(kwargs['headers']['Content-Encoding'], 'snappy')
        self.assertIsInstance(kwargs['data'], bytes)

    @patch('dnsping.remote_write.requests.post')
    def test_error_status_fails(self, post):
        post.return_value = Mock(status_code=400, text='bad request')
        self.assertFalse(self.client.send_metrics_from_probes(make_probes()))


if __name__ == '__main__':
    unittest.main()
