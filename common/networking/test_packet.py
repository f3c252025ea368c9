"""
Tests for IP/TCP packet classification.
Covers well-formed packets as well as truncated and malformed headers.
"""
import logging

from common.networking.packet import PacketInfo, classify, is_tunneled

logging.basicConfig(level=logging.DEBUG)
logger = logging.getLogger('packet_test')

# IPv4/TCP SYN from 192.168.1.1:1234 to 192.168.1.2:25
TCP_PACKET = bytes([
    # IP header
    0x45, 0x00, 0x00, 0x3c, 0x00, 0x01, 0x00, 0x00, 0x40, 0x06, 0x00, 0x00,
    0xc0, 0xa8, 0x01, 0x01,
    0xc0, 0xa8, 0x01, 0x02,
    # TCP header
    0x04, 0xd2, 0x00, 0x19,
    0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00, 0x00,
    0x50, 0x02, 0x20, 0x00, 0x00, 0x00, 0x00, 0x00
])


def with_protocol(packet: bytes, protocol: int) -> bytes:
    data = bytearray(packet)
    data[9] = protocol
    return bytes(data)


def test_valid_tcp_packet():
    info = classify(TCP_PACKET)

    assert info is not None
    assert info.is_ipv4
    assert info.is_tcp
    assert info.ip_header_len == 20
    assert info.tcp_header_len == 20
    assert info.src_port == 1234
    assert info.dst_port == 25
    assert info.src_addr == 0xc0a80101
    assert info.dst_addr == 0xc0a80102
    assert info.src_ip == "192.168.1.1"
    assert info.dst_ip == "192.168.1.2"
    logger.info(f"Classified: {info}")


def test_short_packet():
    assert classify(TCP_PACKET[:10]) is None
    assert classify(TCP_PACKET, 10) is None


def test_every_length_below_minimum_fails():
    for length in range(20):
        assert classify(TCP_PACKET[:length]) is None, length
        assert classify(TCP_PACKET, length) is None, length


def test_non_tcp_packet():
    udp_packet = with_protocol(TCP_PACKET[:28], 17)
    info = classify(udp_packet)

    assert info is not None
    assert info.is_ipv4
    assert not info.is_tcp
    assert info.ip_header_len == 20
    assert info.src_port == 0 and info.dst_port == 0


def test_wrong_version():
    data = bytearray(TCP_PACKET)
    data[0] = 0x65
    assert classify(bytes(data)) is None


def test_declared_header_longer_than_buffer():
    data = bytearray(TCP_PACKET[:22])
    data[0] = 0x46  # 24-byte header, only 22 bytes present
    assert classify(bytes(data)) is None


def test_header_length_below_minimum():
    data = bytearray(TCP_PACKET)
    data[0] = 0x44
    assert classify(bytes(data)) is None


def test_incomplete_tcp_header():
    info = classify(TCP_PACKET[:39])

    assert info is not None
    assert info.is_ipv4
    assert not info.is_tcp
    assert info.tcp_header_len == 0


def test_length_argument_limits_parsing():
    # Full buffer present but only 39 bytes declared valid
    info = classify(TCP_PACKET, 39)
    assert info is not None and not info.is_tcp


def test_length_argument_larger_than_buffer_is_clamped():
    assert classify(TCP_PACKET[:15], 60) is None
    info = classify(TCP_PACKET, 1000)
    assert info is not None and info.is_tcp


def test_ip_options_shift_tcp_header():
    ip_header = bytearray(TCP_PACKET[:20])
    ip_header[0] = 0x46
    packet = bytes(ip_header) + b"\x01\x01\x01\x00" + TCP_PACKET[20:]

    info = classify(packet)
    assert info.is_tcp
    assert info.ip_header_len == 24
    assert info.src_port == 1234
    assert info.dst_port == 25


def test_tcp_data_offset_with_options():
    data = bytearray(TCP_PACKET)
    data[32] = 0x80
    info = classify(bytes(data))
    assert info.tcp_header_len == 32


def test_tcp_data_offset_reported_unchecked():
    data = bytearray(TCP_PACKET)
    data[32] = 0x40
    info = classify(bytes(data))
    assert info.is_tcp
    assert info.tcp_header_len == 16
    assert info.dst_port == 25


def test_accepts_bytearray_and_memoryview():
    assert classify(bytearray(TCP_PACKET)) == classify(TCP_PACKET)
    assert classify(memoryview(TCP_PACKET)) == classify(TCP_PACKET)


def test_is_tunneled():
    assert is_tunneled(classify(TCP_PACKET))
    assert not is_tunneled(classify(TCP_PACKET), ports=(587,))
    assert not is_tunneled(classify(with_protocol(TCP_PACKET, 17)))
    assert not is_tunneled(None)
    assert not is_tunneled(PacketInfo(is_ipv4=True))


if __name__ == "__main__":
    for name, func in list(globals().items()):
        if name.startswith("test_") and callable(func):
            func()
    print("All packet tests completed!")
