"""
Client session handling for the tunnel server.
Each session bridges one client connection with its own TUN interface.
"""
import time
import enum
import select
import socket
import logging
import itertools
import threading
from contextlib import ExitStack
from typing import Any, Dict, List, Optional, Tuple

from common.networking.tunnel import (
    TunnelConfig, FrameDecoder, FramingError, PeerDisconnect, encode_frame
)
from server.platform.linux import DeviceError, MAX_PACKET_SIZE

logger = logging.getLogger("session")

RECV_SIZE = TunnelConfig.LENGTH_PREFIX_SIZE + TunnelConfig.MAX_FRAME_LENGTH
TRANSIENT_ERRORS = (BlockingIOError, InterruptedError)
# Frames from the interface are dropped once this many bytes await the client
MAX_OUTBOX = 1 << 20

_session_ids = itertools.count(1)


class SessionState(enum.Enum):
    CONNECTED = "connected"
    FORWARDING = "forwarding"
    CLOSING = "closing"
    CLOSED = "closed"


class SessionRegistry:
    """
    Snapshots of the sessions that are currently alive

    Sessions add and remove themselves; the registry is read-only for
    everyone else and never closes or controls a session.
    """
    def __init__(self):
        self._sessions: Dict[int, 'ClientSession'] = {}
        self._lock = threading.Lock()
        self.total_sessions = 0

    def add(self, session: 'ClientSession') -> None:
        with self._lock:
            self._sessions[session.session_id] = session
            self.total_sessions += 1

    def remove(self, session: 'ClientSession') -> None:
        with self._lock:
            self._sessions.pop(session.session_id, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    def snapshots(self) -> List[Dict[str, Any]]:
        with self._lock:
            sessions = list(self._sessions.values())
        return [s.snapshot() for s in sessions]


class ClientSession:
    """
    Forwarding state machine for one client

    Owns the client socket and the TUN interface it creates; both are closed
    when run() returns, whatever ended the session.
    """

    def __init__(self, connection: socket.socket, peer_address: Tuple[str, int],
                 device_manager, shutdown_event: threading.Event,
                 local_address: str, netmask: str, poll_interval: float = 1.0,
                 registry: Optional[SessionRegistry] = None, log_traffic: bool = False):
        """
        Initialize the session

        Args:
            connection: Accepted client socket
            peer_address: The client's address
            device_manager: Source of TUN interfaces (create_interface/configure)
            shutdown_event: Set to ask the session to close
            local_address: Tunnel address assigned to the interface
            netmask: Netmask of the tunnel network
            poll_interval: Seconds between shutdown checks while idle
            registry: Optional registry to publish status snapshots to
            log_traffic: Log every forwarded packet at DEBUG level
        """
        self.session_id = next(_session_ids)
        self.connection = connection
        self.peer_address = peer_address
        self.device_manager = device_manager
        self.shutdown_event = shutdown_event
        self.local_address = local_address
        self.netmask = netmask
        self.poll_interval = poll_interval
        self.registry = registry
        self.log_traffic = log_traffic

        self.state = SessionState.CONNECTED
        self.interface = None
        self.connected_time = time.time()
        self.stats = {
            "packets_in": 0,
            "bytes_in": 0,
            "packets_out": 0,
            "bytes_out": 0,
            "frames_dropped": 0
        }

        self._decoder = FrameDecoder()
        self._outbox = bytearray()

    @property
    def peer(self) -> str:
        return f"{self.peer_address[0]}:{self.peer_address[1]}"

    def run(self) -> None:
        """Run the session until the client leaves, an error occurs, or shutdown"""
        with ExitStack() as stack:
            if self.registry is not None:
                self.registry.add(self)
                stack.callback(self.registry.remove, self)
            stack.callback(self._set_state, SessionState.CLOSED)
            stack.callback(self._close_connection)

            try:
                self.interface = self._open_interface()
            except DeviceError as e:
                logger.error(f"Session {self.session_id} ({self.peer}): {e}")
                self._set_state(SessionState.CLOSING)
                return
            stack.callback(self._close_interface)

            self._set_state(SessionState.FORWARDING)
            try:
                self._forward()
            except PeerDisconnect as e:
                logger.info(f"Client {self.peer} disconnected: {e}")
            except OSError as e:
                logger.error(f"I/O error in session {self.session_id} ({self.peer}): {e}")
            except Exception:
                logger.exception(f"Unexpected error in session {self.session_id} ({self.peer})")

            self._set_state(SessionState.CLOSING)
            if self.shutdown_event.is_set():
                logger.info(f"Session {self.session_id} ({self.peer}) closing for shutdown")

        logger.info(
            f"Session {self.session_id} ({self.peer}) closed: "
            f"in={self.stats['packets_in']}/{self.stats['bytes_in']}B "
            f"out={self.stats['packets_out']}/{self.stats['bytes_out']}B "
            f"dropped={self.stats['frames_dropped']}"
        )

    def _open_interface(self):
        interface = self.device_manager.create_interface()
        try:
            self.device_manager.configure(interface, self.local_address, self.netmask)
        except BaseException:
            interface.close()
            raise
        logger.info(f"Session {self.session_id} ({self.peer}) using interface {interface.name}")
        return interface

    def _forward(self) -> None:
        sock = self.connection
        sock.setblocking(False)

        while not self.shutdown_event.is_set():
            writers = [sock] if self._outbox else []
            try:
                readable, writable, _ = select.select(
                    [sock, self.interface], writers, [], self.poll_interval
                )
            except InterruptedError:
                continue

            if sock in readable:
                self._read_socket()
            if self.interface in readable:
                self._read_interface()
            if self._outbox:
                self._flush()

    def _read_socket(self) -> None:
        try:
            data = self.connection.recv(RECV_SIZE)
        except TRANSIENT_ERRORS:
            return

        if not data:
            pending = self._decoder.pending()
            if pending:
                raise PeerDisconnect(f"connection closed with {pending} bytes of an incomplete frame")
            raise PeerDisconnect("connection closed by client")

        self._decoder.feed(data)
        while True:
            try:
                payload = self._decoder.next_frame()
            except FramingError as e:
                self.stats["frames_dropped"] += 1
                logger.warning(f"Dropping frame from {self.peer}: {e}")
                continue
            if payload is None:
                break
            self._write_interface(payload)

    def _write_interface(self, packet: bytes) -> None:
        try:
            self.interface.write(packet)
        except TRANSIENT_ERRORS:
            self.stats["frames_dropped"] += 1
            logger.debug(f"TUN interface busy, dropped {len(packet)} bytes from {self.peer}")
            return

        self.stats["packets_in"] += 1
        self.stats["bytes_in"] += len(packet)
        if self.log_traffic:
            logger.debug(f"Forwarded packet from {self.peer} to {self.interface.name}, length: {len(packet)}")

    def _read_interface(self) -> None:
        try:
            packet = self.interface.read(MAX_PACKET_SIZE)
        except TRANSIENT_ERRORS:
            return
        if not packet:
            return

        frame = encode_frame(packet)
        if len(self._outbox) + len(frame) > MAX_OUTBOX:
            self.stats["frames_dropped"] += 1
            logger.debug(f"Client {self.peer} is not reading, dropped {len(packet)} bytes")
            return

        self._outbox.extend(frame)
        self.stats["packets_out"] += 1
        self.stats["bytes_out"] += len(packet)
        if self.log_traffic:
            logger.debug(f"Forwarded packet from {self.interface.name} to {self.peer}, length: {len(packet)}")

    def _flush(self) -> None:
        try:
            sent = self.connection.send(self._outbox)
        except TRANSIENT_ERRORS:
            return
        del self._outbox[:sent]

    def _close_interface(self) -> None:
        try:
            self.interface.close()
        except OSError as e:
            logger.error(f"Error closing interface for session {self.session_id}: {e}")

    def _close_connection(self) -> None:
        try:
            self.connection.close()
        except OSError as e:
            logger.error(f"Error closing connection to {self.peer}: {e}")

    def _set_state(self, state: SessionState) -> None:
        self.state = state

    def snapshot(self) -> Dict[str, Any]:
        """Status information for this session"""
        return {
            "id": self.session_id,
            "peer": self.peer,
            "interface": self.interface.name if self.interface else None,
            "state": self.state.value,
            "connected_time": self.connected_time,
            **self.stats
        }
