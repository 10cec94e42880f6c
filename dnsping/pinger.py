"""The probe loop: send queries one at a time, time the replies and collect statistics."""

import select
import socket
import sys
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from .errors import MalformedReply, TransportError
from .models import Probe, ProbeOutcome, ProxyConfig, RunConfig, StatisticsSummary, Target
from .query import build_query, parse_reply, query_type_for, reply_id
from .stats import StatisticsAggregator
from .transport import Connection, open_connection


class Reporter:
    """Receives the progress of a run. The default implementation ignores everything."""

    def on_start(self, target: Target, connection: Connection, query_size: int) -> None:
        pass

    def on_probe(self, probe: Probe) -> None:
        pass

    def on_finish(self, summary: StatisticsSummary) -> None:
        pass


class Pinger:
    """Runs probes against a DNS server strictly one after another.

    A probe is resolved (reply, timeout or malformed reply) before the next one
    is sent, and consecutive sends are at least ``config.interval`` apart.
    """

    def __init__(self, target: Target, config: RunConfig, proxy: Optional[ProxyConfig] = None,
                 reporter: Optional[Reporter] = None,
                 connect: Callable[..., Connection] = open_connection,
                 first_id: int = 0, clock: Callable[[], float] = time.monotonic,
                 verbose: bool = False):
        self.target = target
        self.config = config
        self.proxy = proxy
        self.reporter = reporter or Reporter()
        self.connect = connect
        self.first_id = first_id
        self.clock = clock
        self.verbose = verbose
        self.statistics = StatisticsAggregator()
        self.summary: Optional[StatisticsSummary] = None
        self._cancelled = False
        # Socket pair that wakes the inter-probe sleep, open while running
        self._wakeup = None

    def cancel(self) -> None:
        """Stop the run once the current probe is resolved.

        Safe to call from a signal handler: no lock is taken, the sleep between
        probes is woken by writing one byte to a socket.
        """
        self._cancelled = True
        wakeup = self._wakeup
        if wakeup is not None:
            try:
                wakeup[1].send(b'\0')
            except OSError:
                # Closed by the end of the run, or a wakeup is already pending
                pass

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def transaction_id(self, sequence: int) -> int:
        return (self.first_id + sequence) & 0xFFFF

    def run(self) -> StatisticsSummary:
        """Probe until count is reached or the run is cancelled.

        Raises:
            InvalidName: If the host name cannot be queried
            ConnectError: If the transport or the SOCKS5 tunnel cannot be set up
            TransportError: If the transport breaks during the run; ``self.summary``
                then holds the statistics of the probes completed so far
        """
        # Fail on a bad name before touching the network
        build_query(0, self.target.host, self.config.iterative)

        self._wakeup = socket.socketpair()
        for sock in self._wakeup:
            sock.setblocking(False)
        try:
            with self.connect(self.target, self.proxy, self.config.timeout_seconds) as connection:
                qtype = query_type_for(connection.ipv6)
                self.reporter.on_start(
                    self.target, connection,
                    len(build_query(0, self.target.host, self.config.iterative, qtype)),
                )
                try:
                    self._loop(connection, qtype)
                except TransportError:
                    self.summary = self.statistics.finalize()
                    raise
                except KeyboardInterrupt:
                    # The probe in flight is dropped, not recorded
                    self._cancelled = True
        finally:
            wakeup, self._wakeup = self._wakeup, None
            for sock in wakeup:
                sock.close()

        self.summary = self.statistics.finalize()
        self.reporter.on_finish(self.summary)
        return self.summary

    def _loop(self, connection: Connection, qtype: int) -> None:
        sequence = 0
        while not self.cancelled:
            if self.config.count and sequence >= self.config.count:
                break
            started = self.clock()
            probe = self.probe(connection, sequence, qtype)
            self.statistics.add(probe)
            self.reporter.on_probe(probe)
            sequence += 1

            if self.cancelled or (self.config.count and sequence >= self.config.count):
                break
            remaining = self.config.interval_seconds - (self.clock() - started)
            if remaining > 0:
                self._sleep(remaining)

    def _sleep(self, seconds: float) -> None:
        """Sleep for seconds, or until cancel() is called."""
        select.select([self._wakeup[0]], [], [], seconds)

    def probe(self, connection: Connection, sequence: int, qtype: int) -> Probe:
        """Send one query and wait for its reply, discarding replies to other queries."""
        transaction_id = self.transaction_id(sequence)
        query = build_query(transaction_id, self.target.host, self.config.iterative, qtype)

        timestamp = datetime.now(timezone.utc)
        sent_at = self.clock()
        connection.send(query)

        timeout = self.config.timeout_seconds
        deadline = None if timeout is None else sent_at + timeout

        def resolved(outcome: ProbeOutcome, **kwargs) -> Probe:
            return Probe(sequence=sequence, transaction_id=transaction_id, sent_at=sent_at,
                         timestamp=timestamp, outcome=outcome, **kwargs)

        while True:
            remaining = None if deadline is None else deadline - self.clock()
            if remaining is not None and remaining <= 0:
                return resolved(ProbeOutcome.TIMEOUT)
            data = connection.recv(remaining)
            if data is None:
                return resolved(ProbeOutcome.TIMEOUT)
            received_at = self.clock()

            if reply_id(data) != transaction_id:
                if self.verbose:
                    print(f"Warning: Discarding {len(data)} byte reply with id {reply_id(data)} "
                          f"while waiting for id {transaction_id}", file=sys.stderr)
                continue
            try:
                header = parse_reply(data, query)
            except MalformedReply as e:
                if self.verbose:
                    print(f"Warning: {e}", file=sys.stderr)
                return resolved(ProbeOutcome.MALFORMED, received_at=received_at, reply_size=len(data))
            return resolved(ProbeOutcome.SUCCESS, received_at=received_at,
                            reply_size=len(data), rcode=header.rcode)
