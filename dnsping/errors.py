"""Exceptions raised while pinging a DNS server."""

from typing import Optional


class DnsPingError(Exception):
    """Base class for all dnsping errors."""


class InvalidName(DnsPingError):
    """The host name cannot be encoded as a DNS question name."""


class MalformedReply(DnsPingError):
    """A reply carries the expected transaction id but is not a valid DNS response."""


class ConnectError(DnsPingError):
    """The transport to the DNS server (or to the proxy) cannot be established."""


class Socks5Error(ConnectError):
    """The SOCKS5 handshake with the proxy failed."""


class ProxyProtocolError(Socks5Error):
    """The proxy sent something that is not valid SOCKS5, or the exchange went out of order."""


class UnsupportedMethod(Socks5Error):
    """The proxy accepted none of the offered authentication methods."""

    def __init__(self, method: int):
        super().__init__(f"SOCKS5 proxy rejected the offered authentication methods (selected 0x{method:02x})")
        self.method = method


class AuthFailed(Socks5Error):
    """The proxy rejected the username/password."""

    def __init__(self, status: int):
        super().__init__(f"SOCKS5 username/password authentication failed (status 0x{status:02x})")
        self.status = status


class ProxyRefused(Socks5Error):
    """The proxy answered the CONNECT request with a failure reply."""

    def __init__(self, reply_code, raw_code: Optional[int] = None):
        self.reply_code = reply_code
        self.raw_code = int(reply_code) if raw_code is None else raw_code
        super().__init__(f"SOCKS5 proxy refused the connection: {reply_code.description} (code 0x{self.raw_code:02x})")


class TransportError(DnsPingError):
    """Reading from or writing to an established transport failed."""
