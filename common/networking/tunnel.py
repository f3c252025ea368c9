"""
Framing protocol for the tunnel.
Carries raw IP packets over a byte stream as length-prefixed frames.
"""
import socket
import struct
import logging
from typing import Optional, Tuple


class TunnelConfig:
    """Constants of the tunnel wire protocol"""
    # Frame format: [LENGTH:4, network byte order][PAYLOAD:LENGTH]
    LENGTH_PREFIX_SIZE = 4
    MIN_FRAME_LENGTH = 1
    MAX_FRAME_LENGTH = 65535

    DEFAULT_PORT = 12345


class TunnelError(Exception):
    """Base class for framing protocol errors"""


class FramingError(TunnelError):
    """A frame declared a length outside the allowed bounds"""

    def __init__(self, length: int):
        super().__init__(f"Invalid frame length: {length}")
        self.length = length


class PeerDisconnect(TunnelError):
    """The peer closed the stream"""


_LENGTH = struct.Struct('!I')

logger = logging.getLogger("tunnel")


def _valid_length(length: int) -> bool:
    return TunnelConfig.MIN_FRAME_LENGTH <= length <= TunnelConfig.MAX_FRAME_LENGTH


def encode_frame(payload: bytes) -> bytes:
    """
    Pack a payload into one frame

    Args:
        payload: Raw packet bytes

    Returns:
        Length prefix followed by the payload
    """
    if not _valid_length(len(payload)):
        raise ValueError(f"Payload size out of range: {len(payload)} bytes")
    return _LENGTH.pack(len(payload)) + payload


def send_frame(sock: socket.socket, payload: bytes) -> None:
    """Send one frame on a blocking socket"""
    sock.sendall(encode_frame(payload))


def recv_exact(sock: socket.socket, size: int) -> bytes:
    """
    Read exactly ``size`` bytes from a blocking socket

    A single recv may return fewer bytes than asked for, so keep reading
    until the count is reached. Returns a shorter result only if the stream
    ends first.
    """
    chunks = []
    remaining = size
    while remaining > 0:
        chunk = sock.recv(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b''.join(chunks)


def read_frame(sock: socket.socket) -> bytes:
    """
    Read one frame from a blocking socket

    Raises:
        PeerDisconnect: The stream ended before a complete frame arrived
        FramingError: The length prefix was out of bounds. The prefix has
            been consumed, so the next call reads the following frame.
    """
    prefix = recv_exact(sock, TunnelConfig.LENGTH_PREFIX_SIZE)
    if len(prefix) < TunnelConfig.LENGTH_PREFIX_SIZE:
        raise PeerDisconnect("Stream closed while reading frame length")

    (length,) = _LENGTH.unpack(prefix)
    if not _valid_length(length):
        raise FramingError(length)

    payload = recv_exact(sock, length)
    if len(payload) < length:
        raise PeerDisconnect(
            f"Stream closed inside a frame ({len(payload)}/{length} bytes)"
        )
    return payload


class FrameDecoder:
    """
    Incremental frame decoder for non-blocking sockets

    Bytes are fed in as they arrive; partial prefixes and payloads stay
    buffered until the rest of the frame shows up.
    """
    def __init__(self):
        self.buffer = bytearray()

    def feed(self, data: bytes) -> None:
        self.buffer.extend(data)

    def next_frame(self) -> Optional[bytes]:
        """
        Take the next complete frame out of the buffer

        Returns:
            Frame payload, or None if no complete frame is buffered

        Raises:
            FramingError: The buffered prefix was invalid and has been dropped
        """
        if len(self.buffer) < TunnelConfig.LENGTH_PREFIX_SIZE:
            return None

        (length,) = _LENGTH.unpack_from(self.buffer)
        if not _valid_length(length):
            del self.buffer[:TunnelConfig.LENGTH_PREFIX_SIZE]
            raise FramingError(length)

        end = TunnelConfig.LENGTH_PREFIX_SIZE + length
        if len(self.buffer) < end:
            return None

        payload = bytes(self.buffer[TunnelConfig.LENGTH_PREFIX_SIZE:end])
        del self.buffer[:end]
        return payload

    def pending(self) -> int:
        """Number of buffered bytes not yet returned as a frame"""
        return len(self.buffer)


class TunnelClient:
    """
    Blocking client side of the tunnel protocol
    """
    def __init__(self, server_address: Tuple[str, int], timeout: Optional[float] = 10.0):
        """
        Initialize the tunnel client

        Args:
            server_address: Tuple of (host, port) of the tunnel server
            timeout: Socket timeout in seconds (None to block forever)
        """
        self.server_address = server_address
        self.timeout = timeout
        self.connection: Optional[socket.socket] = None
        self.logger = logging.getLogger("tunnel.client")

    @property
    def connected(self) -> bool:
        return self.connection is not None

    def connect(self) -> None:
        self.logger.info(f"Connecting to tunnel server {self.server_address}")
        self.connection = socket.create_connection(self.server_address, timeout=self.timeout)
        self.logger.info("Connected to tunnel server")

    def send_packet(self, packet: bytes) -> None:
        if not self.connection:
            raise PeerDisconnect("Tunnel not connected")
        send_frame(self.connection, packet)

    def recv_packet(self) -> bytes:
        if not self.connection:
            raise PeerDisconnect("Tunnel not connected")
        return read_frame(self.connection)

    def close(self) -> None:
        if self.connection:
            try:
                self.connection.close()
            finally:
                self.connection = None
                self.logger.info("Tunnel disconnected")

    def __enter__(self) -> 'TunnelClient':
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
