"""Data models for DNS ping runs."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


@dataclass(frozen=True)
class Target:
    """The DNS server being probed and the name asked for."""
    host: str
    server: str
    port: int = 53

    def __post_init__(self):
        if not 0 < self.port < 65536:
            raise ValueError(f"Invalid port {self.port}")

    @property
    def display(self) -> str:
        if ':' in self.server:
            return f"[{self.server}]:{self.port}"
        return f"{self.server}:{self.port}"


@dataclass(frozen=True)
class ProxyConfig:
    """A SOCKS5 proxy, optionally with username/password credentials."""
    address: str
    port: int = 1080
    username: Optional[str] = None
    password: Optional[str] = None

    def __post_init__(self):
        if not 0 < self.port < 65536:
            raise ValueError(f"Invalid proxy port {self.port}")
        if (self.username is None) != (self.password is None):
            raise ValueError("SOCKS5 username and password must be given together")
        if self.username is not None:
            # RFC 1929 length fields are a single byte
            for field, value in (('username', self.username), ('password', self.password)):
                if not 0 < len(value.encode('utf-8')) <= 255:
                    raise ValueError(f"SOCKS5 {field} must be 1 to 255 bytes long")


@dataclass(frozen=True)
class RunConfig:
    """How many probes to send and how to pace them. Times are in milliseconds."""
    count: int = 0  # 0 = unlimited
    interval: int = 1000
    timeout: int = 1000  # 0 = wait indefinitely
    iterative: bool = False

    def __post_init__(self):
        for field in ('count', 'interval', 'timeout'):
            if getattr(self, field) < 0:
                raise ValueError(f"{field} must not be negative")

    @property
    def interval_seconds(self) -> float:
        return self.interval / 1000.0

    @property
    def timeout_seconds(self) -> Optional[float]:
        if self.timeout == 0:
            return None
        return self.timeout / 1000.0


class ProbeOutcome(Enum):
    SUCCESS = 'success'
    TIMEOUT = 'timeout'
    MALFORMED = 'malformed'


@dataclass(frozen=True)
class Probe:
    """A single resolved query/reply exchange."""
    sequence: int
    transaction_id: int
    sent_at: float  # monotonic clock, seconds
    timestamp: datetime  # wall clock at send time
    outcome: ProbeOutcome
    received_at: Optional[float] = None
    reply_size: Optional[int] = None
    rcode: Optional[int] = None

    @property
    def rtt(self) -> Optional[float]:
        """Round-trip time in milliseconds, for successful probes only."""
        if self.outcome is not ProbeOutcome.SUCCESS or self.received_at is None:
            return None
        return (self.received_at - self.sent_at) * 1000.0


@dataclass(frozen=True)
class StatisticsSummary:
    """Summary of a finished run. Round-trip times are in milliseconds."""
    sent: int
    received: int
    loss_percent: float
    rtt_min: float
    rtt_avg: float
    rtt_max: float
    rtt_stddev: float
    malformed: int = 0

    @property
    def lost(self) -> int:
        return self.sent - self.received
