"""
IP packet classification for the tunnel.
Extracts IPv4 and TCP header fields from raw, untrusted packet bytes.
"""
import socket
import struct
from typing import Iterable, Optional


IPV4_MIN_HEADER_LEN = 20
TCP_MIN_HEADER_LEN = 20
IPPROTO_TCP = 6


class PacketInfo:
    """
    Header fields of a classified packet.

    Addresses and ports hold the values exactly as they appear on the wire
    (network byte order). Header lengths are in bytes.
    """
    def __init__(self, is_ipv4: bool = False, is_tcp: bool = False,
                 ip_header_len: int = 0, tcp_header_len: int = 0,
                 src_addr: int = 0, dst_addr: int = 0,
                 src_port: int = 0, dst_port: int = 0):
        self.is_ipv4 = is_ipv4
        self.is_tcp = is_tcp
        self.ip_header_len = ip_header_len
        self.tcp_header_len = tcp_header_len
        self.src_addr = src_addr
        self.dst_addr = dst_addr
        self.src_port = src_port
        self.dst_port = dst_port

    @property
    def src_ip(self) -> str:
        return socket.inet_ntoa(struct.pack('!I', self.src_addr))

    @property
    def dst_ip(self) -> str:
        return socket.inet_ntoa(struct.pack('!I', self.dst_addr))

    def __eq__(self, other) -> bool:
        if not isinstance(other, PacketInfo):
            return NotImplemented
        return vars(self) == vars(other)

    def __repr__(self) -> str:
        fields = ", ".join(f"{k}={v!r}" for k, v in vars(self).items())
        return f"PacketInfo({fields})"

    def __str__(self) -> str:
        if self.is_tcp:
            return (f"TCP {self.src_ip}:{self.src_port} -> "
                    f"{self.dst_ip}:{self.dst_port}")
        return f"IPv4 {self.src_ip} -> {self.dst_ip}"


def classify(buffer: bytes, length: Optional[int] = None) -> Optional[PacketInfo]:
    """
    Classify a raw packet

    Every header length is checked against ``length`` before a field that
    depends on it is read.

    Args:
        buffer: Raw packet bytes
        length: Number of valid bytes in ``buffer`` (defaults to all of it)

    Returns:
        PacketInfo if the packet is IPv4, None otherwise
    """
    if length is None or length > len(buffer):
        length = len(buffer)

    if length < IPV4_MIN_HEADER_LEN:
        return None

    version_ihl = buffer[0]
    if version_ihl >> 4 != 4:
        return None

    ip_header_len = (version_ihl & 0x0F) * 4
    # An IHL below 5 cannot describe a real header; reject it like a short one
    if ip_header_len < IPV4_MIN_HEADER_LEN or length < ip_header_len:
        return None

    protocol = buffer[9]
    src_addr, dst_addr = struct.unpack_from('!II', buffer, 12)

    info = PacketInfo(
        is_ipv4=True,
        ip_header_len=ip_header_len,
        src_addr=src_addr,
        dst_addr=dst_addr
    )

    if protocol != IPPROTO_TCP:
        return info

    # TCP header incomplete: still a valid IP classification
    if length - ip_header_len < TCP_MIN_HEADER_LEN:
        return info

    src_port, dst_port = struct.unpack_from('!HH', buffer, ip_header_len)
    # The data offset is reported as found; callers needing the payload must check it
    data_offset = buffer[ip_header_len + 12] >> 4

    info.is_tcp = True
    info.tcp_header_len = data_offset * 4
    info.src_port = src_port
    info.dst_port = dst_port
    return info


def is_tunneled(info: Optional[PacketInfo], ports: Iterable[int] = (25,)) -> bool:
    """
    Decide whether a captured packet belongs in the tunnel

    Only TCP packets addressed to one of ``ports`` are tunneled; everything
    else goes back to the host stack.
    """
    if info is None or not info.is_tcp:
        return False
    return info.dst_port in set(ports)
