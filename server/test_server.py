"""
Tests for the tunnel server accept loop, shutdown and status API.
"""
import errno
import socket
import logging
import threading

from common.networking.tunnel import TunnelClient
from server.server import TunnelServer, load_config, parse_args
from server.session import SessionState
from server.test_session import PACKET, FakeDeviceManager, wait_for
from server.web.app import create_app

logging.basicConfig(level=logging.DEBUG)
logger = logging.getLogger('server_test')

POLL_INTERVAL = 0.1


def start_server(manager=None):
    server = TunnelServer(
        manager or FakeDeviceManager(),
        bind_address=("127.0.0.1", 0),
        poll_interval=POLL_INTERVAL
    )
    assert server.start()
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server, thread


def test_client_traffic_through_server():
    manager = FakeDeviceManager()
    server, thread = start_server(manager)
    try:
        with TunnelClient(server.address, timeout=5) as client:
            assert wait_for(lambda: len(manager.configured) == 1)
            interface = manager.interfaces[0]

            client.send_packet(PACKET)
            assert interface.peer.recv(65535) == PACKET

            interface.peer.send(PACKET[::-1])
            assert client.recv_packet() == PACKET[::-1]
    finally:
        server.shutdown()
        thread.join(5)


def test_shutdown_stops_accept_loop_and_sessions():
    manager = FakeDeviceManager()
    server, thread = start_server(manager)
    client = TunnelClient(server.address, timeout=5)
    client.connect()
    try:
        assert wait_for(lambda: len(manager.configured) == 1)
        interface = manager.interfaces[0]

        server.shutdown()
        thread.join(POLL_INTERVAL * 10)
        assert not thread.is_alive()
        assert server.server_socket.fileno() == -1
        assert not server.running

        assert wait_for(lambda: interface.closed, timeout=POLL_INTERVAL * 10)
        assert client.connection.recv(1) == b""
        assert wait_for(lambda: len(server.registry) == 0)
    finally:
        client.close()


def test_session_failure_does_not_affect_accepting():
    manager = FakeDeviceManager(fail_create=True)
    server, thread = start_server(manager)
    try:
        for _ in range(3):
            with TunnelClient(server.address, timeout=5) as client:
                assert client.connection.recv(1) == b""
        assert thread.is_alive()

        manager.fail_create = False
        with TunnelClient(server.address, timeout=5) as client:
            assert wait_for(lambda: len(manager.interfaces) == 1)
            client.send_packet(PACKET)
            assert manager.interfaces[0].peer.recv(65535) == PACKET
    finally:
        server.shutdown()
        thread.join(5)


class FlakyListener:
    """Listening socket stand-in whose accept() fails in different ways"""

    def __init__(self, shutdown_event):
        self.shutdown_event = shutdown_event
        self.calls = 0
        self.closed = False

    def accept(self):
        self.calls += 1
        if self.calls == 1:
            raise OSError(errno.ECONNABORTED, "Software caused connection abort")
        if self.calls == 2:
            raise InterruptedError()
        if self.calls == 3:
            raise socket.timeout()
        self.shutdown_event.set()
        raise socket.timeout()

    def close(self):
        self.closed = True


def test_accept_errors_are_survived():
    server = TunnelServer(FakeDeviceManager(), poll_interval=POLL_INTERVAL)
    server.server_socket = FlakyListener(server.shutdown_event)

    server.serve_forever()

    assert server.server_socket.calls == 4
    assert server.server_socket.closed


def test_start_fails_on_used_port():
    first, thread = start_server()
    try:
        second = TunnelServer(FakeDeviceManager(), bind_address=first.address)
        # SO_REUSEADDR does not allow two listeners on one port
        assert not second.start()
    finally:
        first.shutdown()
        thread.join(5)


def test_status_api():
    manager = FakeDeviceManager()
    server, thread = start_server(manager)
    app = create_app(server)
    try:
        with TunnelClient(server.address, timeout=5) as client:
            assert wait_for(lambda: len(manager.configured) == 1)
            client.send_packet(PACKET)
            manager.interfaces[0].peer.recv(65535)
            assert wait_for(lambda: server.get_sessions()[0]["packets_in"] == 1)

            web = app.test_client()
            status = web.get('/api/server/status').get_json()
            assert status["running"] is True
            assert status["active_sessions"] == 1
            assert status["total_sessions"] == 1
            assert status["packets_in"] == 1
            assert status["bytes_in"] == len(PACKET)
            assert status["bind_port"] == server.address[1]

            sessions = web.get('/api/sessions').get_json()["sessions"]
            assert len(sessions) == 1
            assert sessions[0]["interface"] == "tun0"
            assert sessions[0]["state"] == SessionState.FORWARDING.value
    finally:
        server.shutdown()
        thread.join(5)


def test_command_line_overrides_config():
    args = parse_args([
        "--config", "/nonexistent/netrewire.json", "--port", "2000",
        "--interface-prefix", "rw", "--address", "10.9.0.1", "--netmask", "16",
        "--status"
    ])
    config = load_config(args)

    assert config.get("server.bind_port") == 2000
    assert config.get("tunnel.interface_prefix") == "rw"
    assert config.get("tunnel.local_address") == "10.9.0.1"
    assert config.get("tunnel.netmask") == "16"
    assert config.get("status.enabled") is True
    assert config.validate() == []

    server = TunnelServer.from_config(config, FakeDeviceManager())
    assert server.bind_address == ("0.0.0.0", 2000)
    assert server.local_address == "10.9.0.1"
    assert server.poll_interval == 1.0
