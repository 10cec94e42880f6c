"""SOCKS5 CONNECT handshake (RFC 1928) with username/password authentication (RFC 1929).

The exchange is modelled as an explicit state machine. ``Socks5Handshake`` only
produces and consumes bytes, ``negotiate`` drives it over a connected socket.
"""

import ipaddress
import socket
import struct
from enum import Enum, IntEnum
from typing import Optional

from .errors import (AuthFailed, ConnectError, ProxyProtocolError, ProxyRefused,
                     UnsupportedMethod)

SOCKS_VERSION = 0x05
AUTH_VERSION = 0x01

METHOD_NO_AUTH = 0x00
METHOD_USERPASS = 0x02
METHOD_NO_ACCEPTABLE = 0xFF

CMD_CONNECT = 0x01

ATYP_IPV4 = 0x01
ATYP_DOMAIN = 0x03
ATYP_IPV6 = 0x04


class HandshakeState(Enum):
    INIT = 'init'
    GREETING_SENT = 'greeting-sent'
    METHOD_CHOSEN = 'method-chosen'
    AUTH_SENT = 'auth-sent'
    CONNECT_SENT = 'connect-sent'
    CONNECTED = 'connected'
    FAILED = 'failed'


class ReplyCode(IntEnum):
    SUCCEEDED = 0x00
    GENERAL_FAILURE = 0x01
    RULE_DENIED = 0x02
    NETWORK_UNREACHABLE = 0x03
    HOST_UNREACHABLE = 0x04
    CONNECTION_REFUSED = 0x05
    TTL_EXPIRED = 0x06
    COMMAND_NOT_SUPPORTED = 0x07
    ADDRESS_TYPE_NOT_SUPPORTED = 0x08

    @property
    def description(self) -> str:
        return _REPLY_DESCRIPTIONS[self]


_REPLY_DESCRIPTIONS = {
    ReplyCode.SUCCEEDED: 'succeeded',
    ReplyCode.GENERAL_FAILURE: 'general SOCKS server failure',
    ReplyCode.RULE_DENIED: 'connection not allowed by ruleset',
    ReplyCode.NETWORK_UNREACHABLE: 'network unreachable',
    ReplyCode.HOST_UNREACHABLE: 'host unreachable',
    ReplyCode.CONNECTION_REFUSED: 'connection refused',
    ReplyCode.TTL_EXPIRED: 'TTL expired',
    ReplyCode.COMMAND_NOT_SUPPORTED: 'command not supported',
    ReplyCode.ADDRESS_TYPE_NOT_SUPPORTED: 'address type not supported',
}


def encode_address(host: str) -> bytes:
    """Encode a destination as ATYP followed by the address field."""
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        name = host.encode('idna')
        if not 0 < len(name) <= 255:
            raise ValueError(f"Destination name '{host}' cannot be sent to a SOCKS5 proxy")
        return bytes([ATYP_DOMAIN, len(name)]) + name
    if address.version == 4:
        return bytes([ATYP_IPV4]) + address.packed
    return bytes([ATYP_IPV6]) + address.packed


class Socks5Handshake:
    """State machine for one CONNECT handshake.

    INIT -> GREETING_SENT -> METHOD_CHOSEN -> [AUTH_SENT ->] CONNECT_SENT -> CONNECTED.
    Any error moves the machine to FAILED.
    """

    def __init__(self, host: str, port: int, username: Optional[str] = None, password: Optional[str] = None):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.state = HandshakeState.INIT
        self.method: Optional[int] = None
        self.authenticated = False

    @property
    def offered_methods(self) -> bytes:
        if self.username is not None:
            return bytes([METHOD_NO_AUTH, METHOD_USERPASS])
        return bytes([METHOD_NO_AUTH])

    @property
    def needs_auth(self) -> bool:
        return self.method == METHOD_USERPASS and not self.authenticated

    def _expect(self, *states: HandshakeState):
        if self.state not in states:
            self._fail(ProxyProtocolError(f"SOCKS5 handshake step out of order (state {self.state.value})"))

    def _fail(self, error: Exception):
        self.state = HandshakeState.FAILED
        raise error

    def greeting(self) -> bytes:
        self._expect(HandshakeState.INIT)
        methods = self.offered_methods
        self.state = HandshakeState.GREETING_SENT
        return bytes([SOCKS_VERSION, len(methods)]) + methods

    def select_method(self, reply: bytes) -> int:
        """Consume the method selection message and return the chosen method."""
        self._expect(HandshakeState.GREETING_SENT)
        if len(reply) != 2:
            self._fail(ProxyProtocolError(f"Method selection must be 2 bytes, got {len(reply)}"))
        version, method = reply[0], reply[1]
        if version != SOCKS_VERSION:
            self._fail(ProxyProtocolError(f"Proxy answered with SOCKS version {version}"))
        if method == METHOD_NO_ACCEPTABLE or method not in self.offered_methods:
            self._fail(UnsupportedMethod(method))
        self.method = method
        self.state = HandshakeState.METHOD_CHOSEN
        return method

    def auth_request(self) -> bytes:
        self._expect(HandshakeState.METHOD_CHOSEN)
        if not self.needs_auth:
            self._fail(ProxyProtocolError("Proxy did not ask for username/password authentication"))
        username = self.username.encode('utf-8')
        password = self.password.encode('utf-8')
        self.state = HandshakeState.AUTH_SENT
        return bytes([AUTH_VERSION, len(username)]) + username + bytes([len(password)]) + password

    def auth_result(self, reply: bytes):
        self._expect(HandshakeState.AUTH_SENT)
        if len(reply) != 2:
            self._fail(ProxyProtocolError(f"Authentication reply must be 2 bytes, got {len(reply)}"))
        # Some proxies echo the SOCKS version instead of the sub-negotiation version
        if reply[1] != 0x00:
            self._fail(AuthFailed(reply[1]))
        self.authenticated = True
        self.state = HandshakeState.METHOD_CHOSEN

    def connect_request(self) -> bytes:
        self._expect(HandshakeState.METHOD_CHOSEN)
        if self.needs_auth:
            self._fail(ProxyProtocolError("Authentication must complete before CONNECT"))
        try:
            address = encode_address(self.host)
        except (ValueError, UnicodeError) as e:
            self._fail(ProxyProtocolError(str(e)))
        self.state = HandshakeState.CONNECT_SENT
        return bytes([SOCKS_VERSION, CMD_CONNECT, 0x00]) + address + struct.pack('!H', self.port)

    def connect_reply_length(self, head: bytes) -> int:
        """Total length of the CONNECT reply given its first 5 bytes."""
        self._expect(HandshakeState.CONNECT_SENT)
        if len(head) < 5:
            self._fail(ProxyProtocolError(f"CONNECT reply too short ({len(head)} bytes)"))
        atyp = head[3]
        if atyp == ATYP_IPV4:
            return 4 + 4 + 2
        if atyp == ATYP_IPV6:
            return 4 + 16 + 2
        if atyp == ATYP_DOMAIN:
            return 4 + 1 + head[4] + 2
        self._fail(ProxyProtocolError(f"Unknown address type 0x{atyp:02x} in CONNECT reply"))

    def connect_reply(self, reply: bytes):
        self._expect(HandshakeState.CONNECT_SENT)
        if len(reply) < 2:
            self._fail(ProxyProtocolError("CONNECT reply too short"))
        version, code = reply[0], reply[1]
        if version != SOCKS_VERSION:
            self._fail(ProxyProtocolError(f"Proxy answered with SOCKS version {version}"))
        if code != ReplyCode.SUCCEEDED:
            try:
                reply_code = ReplyCode(code)
            except ValueError:
                reply_code = ReplyCode.GENERAL_FAILURE
            self._fail(ProxyRefused(reply_code, code))
        self.state = HandshakeState.CONNECTED


def recv_exact(sock: socket.socket, size: int) -> bytes:
    data = b''
    while len(data) < size:
        chunk = sock.recv(size - len(data))
        if not chunk:
            raise ProxyProtocolError("Proxy closed the connection during the SOCKS5 handshake")
        data += chunk
    return data


def negotiate(sock: socket.socket, handshake: Socks5Handshake) -> None:
    """Run the handshake over a socket connected to the proxy.

    On return the socket relays bytes to and from the destination.

    Raises:
        UnsupportedMethod, AuthFailed, ProxyRefused, ProxyProtocolError: On handshake failures
        ConnectError: If the socket fails or times out during the handshake
    """
    try:
        sock.sendall(handshake.greeting())
        handshake.select_method(recv_exact(sock, 2))
        if handshake.needs_auth:
            sock.sendall(handshake.auth_request())
            handshake.auth_result(recv_exact(sock, 2))
        sock.sendall(handshake.connect_request())
        head = recv_exact(sock, 5)
        # The reply code is checked before reading the bound address, which
        # failing proxies do not always send in full
        if head[1] != ReplyCode.SUCCEEDED:
            handshake.connect_reply(head)
        rest = recv_exact(sock, handshake.connect_reply_length(head) - len(head))
        handshake.connect_reply(head + rest)
    except socket.timeout as e:
        handshake.state = HandshakeState.FAILED
        raise ConnectError("Timed out during the SOCKS5 handshake") from e
    except OSError as e:
        handshake.state = HandshakeState.FAILED
        raise ConnectError(f"SOCKS5 handshake failed: {e}") from e
