"""Build DNS queries and validate DNS replies (RFC 1035 section 4.1)."""

import struct
from dataclasses import dataclass
from typing import List, Optional

import dns.exception
import dns.message

from .errors import InvalidName, MalformedReply

HEADER_FORMAT = '!HHHHHH'
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)

QTYPE_A = 1
QTYPE_AAAA = 28
QCLASS_IN = 1

FLAG_QR = 0x8000
FLAG_RD = 0x0100

MAX_LABEL_LENGTH = 63
MAX_NAME_LENGTH = 255


@dataclass(frozen=True)
class ReplyHeader:
    """The fixed header of a DNS reply."""
    transaction_id: int
    flags: int
    qdcount: int
    ancount: int
    nscount: int
    arcount: int

    @property
    def is_response(self) -> bool:
        return bool(self.flags & FLAG_QR)

    @property
    def rcode(self) -> int:
        return self.flags & 0x0F


def _encode_label(label: str) -> bytes:
    try:
        return label.encode('ascii')
    except UnicodeEncodeError:
        pass
    try:
        return label.encode('idna')
    except UnicodeError as e:
        raise InvalidName(f"Cannot encode label '{label}': {e}") from e


def encode_name(host: str) -> bytes:
    """Encode a host name as a sequence of length-prefixed labels ending with the root label."""
    name = host[:-1] if host.endswith('.') else host
    labels: List[bytes] = []
    if name:
        for label in name.split('.'):
            encoded = _encode_label(label)
            if not encoded:
                raise InvalidName(f"Empty label in host name '{host}'")
            if len(encoded) > MAX_LABEL_LENGTH:
                raise InvalidName(f"Label '{label}' is {len(encoded)} bytes long (maximum {MAX_LABEL_LENGTH})")
            labels.append(bytes([len(encoded)]) + encoded)
    wire = b''.join(labels) + b'\x00'
    if len(wire) > MAX_NAME_LENGTH:
        raise InvalidName(f"Host name '{host}' encodes to {len(wire)} bytes (maximum {MAX_NAME_LENGTH})")
    return wire


def build_query(transaction_id: int, host: str, iterative: bool, qtype: int = QTYPE_A) -> bytes:
    """Build a query for one question about host.

    Args:
        transaction_id: 16-bit id placed in the header
        host: Name to ask for
        iterative: If True the Recursion Desired bit is cleared
        qtype: Query type, A unless the server is reached over IPv6

    Raises:
        InvalidName: If host cannot be encoded as a question name
    """
    if not 0 <= transaction_id <= 0xFFFF:
        raise ValueError(f"Transaction id {transaction_id} does not fit in 16 bits")
    flags = 0 if iterative else FLAG_RD
    header = struct.pack(HEADER_FORMAT, transaction_id, flags, 1, 0, 0, 0)
    return header + encode_name(host) + struct.pack('!HH', qtype, QCLASS_IN)


def query_type_for(ipv6: bool) -> int:
    return QTYPE_AAAA if ipv6 else QTYPE_A


def reply_id(data: bytes) -> Optional[int]:
    """Return the transaction id of a received message, or None if it is too short to carry one."""
    if len(data) < 2:
        return None
    return struct.unpack('!H', data[:2])[0]


def parse_reply_header(data: bytes) -> ReplyHeader:
    """Parse and minimally validate the header of a reply.

    Raises:
        MalformedReply: If the message is truncated or is not a response
    """
    if len(data) < HEADER_SIZE:
        raise MalformedReply(f"Reply is {len(data)} bytes long, shorter than a DNS header")
    header = ReplyHeader(*struct.unpack(HEADER_FORMAT, data[:HEADER_SIZE]))
    if not header.is_response:
        raise MalformedReply(f"Message with id {header.transaction_id} is not a response")
    return header


def parse_reply(data: bytes, query: bytes) -> ReplyHeader:
    """Validate a reply to query and return its header.

    The whole message must parse and its question section must be the one that
    was asked. Error replies (RCODE other than NOERROR) may omit the question.

    Raises:
        MalformedReply: If the reply is truncated, carries trailing bytes,
            does not parse or answers another question
    """
    header = parse_reply_header(data)
    try:
        reply = dns.message.from_wire(data)
    except dns.exception.DNSException as e:
        raise MalformedReply(f"Reply with id {header.transaction_id} does not parse: {e}") from e
    if not reply.question and header.rcode != 0:
        return header
    asked = dns.message.from_wire(query).question
    if reply.question != asked:
        got = ', '.join(str(rrset) for rrset in reply.question) or 'no question'
        raise MalformedReply(f"Reply with id {header.transaction_id} answers {got}")
    return header
