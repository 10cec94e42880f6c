"""Transports carrying DNS messages to the server: plain UDP, or TCP through a SOCKS5 proxy."""

import ipaddress
import socket
import struct
import time
from typing import Optional, Tuple

from .errors import ConnectError, TransportError
from .models import ProxyConfig, Target
from .socks5 import Socks5Handshake, negotiate

LENGTH_PREFIX = struct.Struct('!H')
MAX_DATAGRAM_SIZE = 65535


class Connection:
    """A channel that sends DNS messages and receives replies with a timeout."""

    peer = ''
    ipv6 = False

    def send(self, data: bytes) -> None:
        raise NotImplementedError

    def recv(self, timeout: Optional[float]) -> Optional[bytes]:
        """Wait at most timeout seconds for a message. Returns None on timeout.

        A timeout of None waits indefinitely.
        """
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


def _remaining(deadline: Optional[float]) -> Optional[float]:
    if deadline is None:
        return None
    return deadline - time.monotonic()


class UdpConnection(Connection):
    """Direct UDP datagrams to the server. Datagrams from other sources are ignored."""

    def __init__(self, sock: socket.socket, address: Tuple):
        self.sock = sock
        self.address = address
        self.ipv6 = sock.family == socket.AF_INET6
        host, port = address[0], address[1]
        self.peer = f"[{host}]:{port}" if self.ipv6 else f"{host}:{port}"

    @classmethod
    def open(cls, target: Target) -> 'UdpConnection':
        # Resolved once for the whole run
        try:
            infos = socket.getaddrinfo(target.server, target.port, type=socket.SOCK_DGRAM)
        except socket.gaierror as e:
            raise ConnectError(f"Could not resolve server '{target.server}': {e}") from e
        family, socktype, proto, _, address = infos[0]
        try:
            sock = socket.socket(family, socktype, proto)
        except OSError as e:
            raise ConnectError(f"Could not create UDP socket: {e}") from e
        return cls(sock, address)

    def send(self, data: bytes) -> None:
        try:
            self.sock.sendto(data, self.address)
        except OSError as e:
            raise TransportError(f"Failed to send to {self.peer}: {e}") from e

    def recv(self, timeout: Optional[float]) -> Optional[bytes]:
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            remaining = _remaining(deadline)
            if remaining is not None and remaining <= 0:
                return None
            try:
                self.sock.settimeout(remaining)
                data, source = self.sock.recvfrom(MAX_DATAGRAM_SIZE)
            except socket.timeout:
                return None
            except OSError as e:
                raise TransportError(f"Failed to receive from {self.peer}: {e}") from e
            if source[:2] == self.address[:2]:
                return data

    def close(self) -> None:
        self.sock.close()


class TunnelConnection(Connection):
    """DNS over a TCP stream relayed by a SOCKS5 proxy, framed with a 2-byte length prefix."""

    def __init__(self, sock: socket.socket, peer: str = '', ipv6: bool = False,
                 send_timeout: Optional[float] = None):
        self.sock = sock
        self.peer = peer
        self.ipv6 = ipv6
        # Limit for writing one frame, None to block until the proxy reads it
        self.send_timeout = send_timeout
        # Bytes of a frame whose read was cut short by a timeout
        self._buffer = b''

    @classmethod
    def open(cls, target: Target, proxy: ProxyConfig, connect_timeout: Optional[float] = None) -> 'TunnelConnection':
        try:
            sock = socket.create_connection((proxy.address, proxy.port), timeout=connect_timeout)
        except OSError as e:
            raise ConnectError(f"Could not connect to SOCKS5 proxy {proxy.address}:{proxy.port}: {e}") from e
        try:
            negotiate(sock, Socks5Handshake(target.server, target.port, proxy.username, proxy.password))
        except BaseException:
            sock.close()
            raise
        try:
            ipv6 = ipaddress.ip_address(target.server).version == 6
        except ValueError:
            ipv6 = False
        return cls(sock, f"{target.display} via {proxy.address}:{proxy.port}", ipv6, connect_timeout)

    def send(self, data: bytes) -> None:
        if len(data) > 0xFFFF:
            raise ValueError(f"Message of {len(data)} bytes does not fit a TCP length prefix")
        try:
            self.sock.settimeout(self.send_timeout)
            self.sock.sendall(LENGTH_PREFIX.pack(len(data)) + data)
        except socket.timeout as e:
            raise TransportError(f"Timed out sending to {self.peer}: the proxy stopped reading") from e
        except OSError as e:
            raise TransportError(f"Failed to send to {self.peer}: {e}") from e

    def _fill(self, size: int, deadline: Optional[float]) -> bool:
        """Read until the buffer holds size bytes. Returns False if the deadline passes first."""
        while len(self._buffer) < size:
            remaining = _remaining(deadline)
            if remaining is not None and remaining <= 0:
                return False
            try:
                self.sock.settimeout(remaining)
                chunk = self.sock.recv(max(size - len(self._buffer), 4096))
            except socket.timeout:
                return False
            except OSError as e:
                raise TransportError(f"Failed to receive from {self.peer}: {e}") from e
            if not chunk:
                raise TransportError(f"Connection to {self.peer} closed by the proxy")
            self._buffer += chunk
        return True

    def recv(self, timeout: Optional[float]) -> Optional[bytes]:
        deadline = None if timeout is None else time.monotonic() + timeout
        if not self._fill(LENGTH_PREFIX.size, deadline):
            return None
        (length,) = LENGTH_PREFIX.unpack(self._buffer[:LENGTH_PREFIX.size])
        total = LENGTH_PREFIX.size + length
        if not self._fill(total, deadline):
            return None
        message = self._buffer[LENGTH_PREFIX.size:total]
        self._buffer = self._buffer[total:]
        return message

    def close(self) -> None:
        self.sock.close()


def open_connection(target: Target, proxy: Optional[ProxyConfig] = None,
                    connect_timeout: Optional[float] = None) -> Connection:
    """Open the transport for a run.

    Raises:
        ConnectError: If the socket cannot be set up, including SOCKS5 handshake failures
    """
    if proxy is None:
        return UdpConnection.open(target)
    return TunnelConnection.open(target, proxy, connect_timeout)
