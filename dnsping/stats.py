"""Aggregate probe outcomes into run statistics."""

import statistics
from typing import List, Optional

from .models import Probe, ProbeOutcome, StatisticsSummary


class StatisticsAggregator:
    """Collects resolved probes in sequence order and summarises them once at the end of a run."""

    def __init__(self):
        self.probes: List[Probe] = []
        self._summary: Optional[StatisticsSummary] = None

    def add(self, probe: Probe) -> None:
        if self._summary is not None:
            raise RuntimeError("Cannot add probes after statistics were finalized")
        if probe.sequence != len(self.probes):
            raise ValueError(f"Expected probe {len(self.probes)}, got probe {probe.sequence}")
        self.probes.append(probe)

    @property
    def rtts(self) -> List[float]:
        return [probe.rtt for probe in self.probes if probe.outcome is ProbeOutcome.SUCCESS]

    def finalize(self) -> StatisticsSummary:
        """Compute the summary. Later calls return the same summary."""
        if self._summary is not None:
            return self._summary

        sent = len(self.probes)
        rtts = self.rtts
        received = len(rtts)
        loss_percent = 0.0 if sent == 0 else (sent - received) / sent * 100.0
        malformed = sum(1 for probe in self.probes if probe.outcome is ProbeOutcome.MALFORMED)

        if rtts:
            rtt_min, rtt_max = min(rtts), max(rtts)
            rtt_avg = statistics.fmean(rtts)
            rtt_stddev = statistics.pstdev(rtts, rtt_avg)
        else:
            rtt_min = rtt_avg = rtt_max = rtt_stddev = 0.0

        self._summary = StatisticsSummary(
            sent=sent,
            received=received,
            loss_percent=loss_percent,
            rtt_min=rtt_min,
            rtt_avg=rtt_avg,
            rtt_max=rtt_max,
            rtt_stddev=rtt_stddev,
            malformed=malformed,
        )
        return self._summary
