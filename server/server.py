"""
Tunnel server implementation.
Accepts client connections and hands each one to its own forwarding session.
"""
import sys
import time
import errno
import signal
import socket
import logging
import argparse
import threading
from typing import Any, Dict, List, Optional, Tuple

from common.networking.tunnel import TunnelConfig
from common.utils.config import ConfigManager
from common.utils.logging_setup import setup_logging
from common.utils.permissions import check_admin_privileges
from server.platform.linux import NetworkDeviceManager, setup_forwarding, teardown_forwarding
from server.session import ClientSession, SessionRegistry

logger = logging.getLogger("server")


class TunnelServer:
    """
    Listens for tunnel clients and spawns a detached session per connection
    """
    def __init__(self, device_manager, shutdown_event: Optional[threading.Event] = None,
                 bind_address: Tuple[str, int] = ("0.0.0.0", TunnelConfig.DEFAULT_PORT),
                 local_address: str = "10.8.0.1", netmask: str = "255.255.255.0",
                 poll_interval: float = 1.0, backlog: int = 5, log_traffic: bool = False):
        """
        Initialize the tunnel server

        Args:
            device_manager: Creates and configures the sessions' TUN interfaces
            shutdown_event: Event that stops the accept loop and every session
            bind_address: Tuple of (host, port) to listen on
            local_address: Tunnel address given to each session's interface
            netmask: Netmask of the tunnel network
            poll_interval: Seconds between shutdown checks
            backlog: Listen backlog
            log_traffic: Log every forwarded packet at DEBUG level
        """
        self.device_manager = device_manager
        self.shutdown_event = shutdown_event or threading.Event()
        self.bind_address = bind_address
        self.local_address = local_address
        self.netmask = netmask
        self.poll_interval = poll_interval
        self.backlog = backlog
        self.log_traffic = log_traffic

        self.server_socket: Optional[socket.socket] = None
        self.registry = SessionRegistry()
        self.start_time = 0.0
        self.running = False

    @classmethod
    def from_config(cls, config: ConfigManager, device_manager,
                    shutdown_event: Optional[threading.Event] = None) -> 'TunnelServer':
        """Build a server from a loaded configuration"""
        return cls(
            device_manager,
            shutdown_event=shutdown_event,
            bind_address=(config.get("server.bind_address", "0.0.0.0"),
                          config.get("server.bind_port", TunnelConfig.DEFAULT_PORT)),
            local_address=config.get("tunnel.local_address", "10.8.0.1"),
            netmask=config.get("tunnel.netmask", "255.255.255.0"),
            poll_interval=config.get("server.poll_interval", 1.0),
            backlog=config.get("server.backlog", 5),
            log_traffic=config.get("server.log_traffic", False)
        )

    @property
    def address(self) -> Tuple[str, int]:
        """Address actually bound (useful when binding port 0)"""
        if self.server_socket:
            return self.server_socket.getsockname()[:2]
        return self.bind_address

    def start(self) -> bool:
        """
        Bind the listening socket

        Returns:
            True if the server is ready to accept, False otherwise
        """
        try:
            logger.info(f"Starting tunnel server on {self.bind_address}")
            sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                sock.bind(self.bind_address)
                sock.listen(self.backlog)
            except OSError:
                sock.close()
                raise

            # accept() wakes up at least once per interval to check for shutdown
            sock.settimeout(self.poll_interval)
            self.server_socket = sock
            self.start_time = time.time()
            self.running = True
            logger.info(f"Server listening on {self.address[0]}:{self.address[1]}")
            return True

        except OSError as e:
            logger.error(f"Failed to start server: {e}")
            return False

    def serve_forever(self) -> None:
        """Accept clients until the shutdown event is set"""
        if not self.server_socket and not self.start():
            return

        try:
            while not self.shutdown_event.is_set():
                try:
                    connection, client_addr = self.server_socket.accept()
                except socket.timeout:
                    continue
                except InterruptedError:
                    continue
                except OSError as e:
                    logger.error(f"Error accepting client connection: {e}")
                    if e.errno in (errno.EBADF, errno.EINVAL):
                        # Listening socket is gone
                        break
                    continue

                self._spawn_session(connection, client_addr)
        finally:
            logger.info("Shutting down server...")
            self.running = False
            self.server_socket.close()

    def _spawn_session(self, connection: socket.socket, client_addr: Tuple[str, int]) -> None:
        logger.info(f"Client connected: {client_addr[0]}:{client_addr[1]}")
        # Accepted sockets must not inherit the listener's timeout
        connection.settimeout(None)

        session = ClientSession(
            connection,
            client_addr,
            self.device_manager,
            self.shutdown_event,
            local_address=self.local_address,
            netmask=self.netmask,
            poll_interval=self.poll_interval,
            registry=self.registry,
            log_traffic=self.log_traffic
        )

        thread = threading.Thread(
            target=session.run,
            name=f"session-{session.session_id}",
            daemon=True
        )
        try:
            thread.start()
        except RuntimeError as e:
            logger.error(f"Error creating session thread for {client_addr}: {e}")
            connection.close()

    def shutdown(self) -> None:
        """Ask the accept loop and all sessions to stop"""
        self.shutdown_event.set()

    def get_status(self) -> Dict[str, Any]:
        """
        Get the current server status

        Returns:
            Dictionary with status information
        """
        sessions = self.registry.snapshots()
        totals = {key: sum(s[key] for s in sessions)
                  for key in ("packets_in", "bytes_in", "packets_out", "bytes_out")}

        return {
            "running": self.running,
            "bind_address": self.address[0],
            "bind_port": self.address[1],
            "uptime": time.time() - self.start_time if self.start_time else 0,
            "active_sessions": len(sessions),
            "total_sessions": self.registry.total_sessions,
            **totals,
            "timestamp": time.time()
        }

    def get_sessions(self) -> List[Dict[str, Any]]:
        return self.registry.snapshots()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Net-Rewire tunnel server")
    parser.add_argument("--config", help="Path to configuration file")
    parser.add_argument("--port", type=int, help="TCP port to listen on")
    parser.add_argument("--interface-prefix", help="TUN interface name prefix")
    parser.add_argument("--address", help="Local tunnel address")
    parser.add_argument("--netmask", help="Tunnel netmask")
    parser.add_argument("--log-level", help="Logging level")
    parser.add_argument("--status", action="store_true", help="Enable the status API")
    parser.add_argument("--status-port", type=int, help="Port of the status API")
    return parser.parse_args(argv)


def load_config(args: argparse.Namespace) -> ConfigManager:
    """Load the configuration file and apply command-line overrides"""
    config = ConfigManager(args.config)
    overrides = {
        "server.bind_port": args.port,
        "tunnel.interface_prefix": args.interface_prefix,
        "tunnel.local_address": args.address,
        "tunnel.netmask": args.netmask,
        "server.log_level": args.log_level,
        "status.port": args.status_port
    }
    for key, value in overrides.items():
        if value is not None:
            config.set(key, value)
    if args.status:
        config.set("status.enabled", True)
    return config


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for the tunnel server

    Returns:
        Exit code
    """
    args = parse_args(argv)
    config = load_config(args)

    setup_logging(
        app_name="netrewire",
        log_level=config.get("server.log_level", "INFO"),
        log_file=config.get("server.log_file")
    )

    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(f"Configuration error: {error}")
        return 1

    if not check_admin_privileges():
        logger.warning("Not running as root, TUN interfaces cannot be created")

    shutdown_event = threading.Event()

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        shutdown_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    prefix = config.get("tunnel.interface_prefix", "tun")
    device_manager = NetworkDeviceManager(prefix, mtu=config.get("tunnel.mtu"))
    server = TunnelServer.from_config(config, device_manager, shutdown_event)

    if not server.start():
        return 1

    forwarding = config.get("forwarding", {})
    if forwarding.get("enabled"):
        success, message = setup_forwarding(
            prefix, forwarding["public_interface"],
            forwarding["tunnel_network"], forwarding["tcp_ports"]
        )
        if not success:
            logger.error(f"Failed to set up forwarding: {message}")

    if config.get("status.enabled"):
        from server.web.app import start_status_server
        start_status_server(server, config.get("status.host"), config.get("status.port"))

    accept_thread = threading.Thread(target=server.serve_forever, name="accept")
    accept_thread.start()

    # Join in short slices so the main thread keeps handling signals
    while accept_thread.is_alive():
        accept_thread.join(timeout=0.5)

    if forwarding.get("enabled"):
        teardown_forwarding(
            prefix, forwarding["public_interface"],
            forwarding["tunnel_network"], forwarding["tcp_ports"]
        )

    logger.info("Tunnel server stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
