"""
Linux-specific implementations for TUN interfaces and forwarding.
Provides Linux platform support for the tunnel server.
"""
import os
import fcntl
import struct
import logging
import subprocess
import ipaddress
import threading
from typing import Iterable, List, Optional, Tuple

logger = logging.getLogger("linux")

# Constants for TUN setup
TUNSETIFF = 0x400454ca
IFF_TUN = 0x0001
IFF_NO_PI = 0x1000
IFNAMSIZ = 16

TUN_CLONE_DEVICE = "/dev/net/tun"
MAX_PACKET_SIZE = 65535


class DeviceError(Exception):
    """Base class for virtual interface failures"""


class DeviceUnavailable(DeviceError):
    """A TUN interface could not be allocated"""


class ConfigurationFailed(DeviceError):
    """Address assignment or link-up failed"""


def _run(args: List[str]) -> subprocess.CompletedProcess:
    logger.debug(f"Running: {' '.join(args)}")
    return subprocess.run(args, check=True, capture_output=True, text=True)


class TunInterface:
    """
    An open TUN interface

    Packets are exchanged without the extra packet-information header
    (IFF_NO_PI), so each read returns exactly one raw IP packet.
    """

    def __init__(self, fd: int, name: str, on_close=None):
        """
        Args:
            fd: Open descriptor of the cloned TUN device
            name: Interface name assigned by the kernel
            on_close: Called once after the descriptor is closed
        """
        self.fd = fd
        self.name = name
        self._on_close = on_close

    @property
    def closed(self) -> bool:
        return self.fd is None

    def fileno(self) -> int:
        if self.fd is None:
            raise ValueError("TUN interface is closed")
        return self.fd

    def read(self, size: int = MAX_PACKET_SIZE) -> bytes:
        return os.read(self.fileno(), size)

    def write(self, packet: bytes) -> int:
        return os.write(self.fileno(), packet)

    def close(self) -> None:
        """Close the TUN interface"""
        if self.fd is None:
            return

        fd, self.fd = self.fd, None
        logger.info(f"Closing TUN interface: {self.name}")
        try:
            os.close(fd)
        finally:
            if self._on_close:
                self._on_close(self)

    def __enter__(self) -> 'TunInterface':
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"TunInterface(name={self.name!r}, fd={self.fd})"


class NetworkDeviceManager:
    """
    Creates and configures TUN interfaces for client sessions

    Only one interface is handed out at a time. A client connecting while
    another session holds the interface is refused with DeviceUnavailable.
    """

    def __init__(self, name_prefix: str = "tun", mtu: Optional[int] = None,
                 device_path: str = TUN_CLONE_DEVICE):
        """
        Args:
            name_prefix: Interface prefix (the kernel appends the index), a
                template containing ``%d``, or an exact name ending in a digit
            mtu: MTU to set while configuring (None keeps the kernel default)
            device_path: Path of the TUN clone device
        """
        if "%d" in name_prefix or name_prefix[-1:].isdigit():
            self.name_template = name_prefix
        else:
            self.name_template = f"{name_prefix}%d"
        self.mtu = mtu
        self.device_path = device_path
        self._lease = threading.Lock()

        if len(self.name_template.encode()) >= IFNAMSIZ:
            raise ValueError(f"Interface name too long: {self.name_template}")

    @property
    def in_use(self) -> bool:
        return self._lease.locked()

    def create_interface(self) -> TunInterface:
        """
        Allocate a TUN interface

        Returns:
            Non-blocking TunInterface carrying the kernel-assigned name

        Raises:
            DeviceUnavailable: The lease is taken or the kernel refused
        """
        if not self._lease.acquire(blocking=False):
            raise DeviceUnavailable("Tunnel interface already in use by another session")

        fd = None
        try:
            fd = os.open(self.device_path, os.O_RDWR)
            ifr = struct.pack("16sH", self.name_template.encode(), IFF_TUN | IFF_NO_PI)
            result = fcntl.ioctl(fd, TUNSETIFF, ifr)
            name = result[:IFNAMSIZ].rstrip(b"\x00").decode()

            flags = fcntl.fcntl(fd, fcntl.F_GETFL)
            fcntl.fcntl(fd, fcntl.F_SETFL, flags | os.O_NONBLOCK)
        except OSError as e:
            if fd is not None:
                os.close(fd)
            self._lease.release()
            raise DeviceUnavailable(f"Failed to create TUN interface: {e}") from e

        logger.info(f"Created TUN interface: {name}")
        return TunInterface(fd, name, on_close=self._release)

    def _release(self, interface: TunInterface) -> None:
        self._lease.release()

    def configure(self, interface: TunInterface, local_address: str, netmask: str) -> None:
        """
        Assign a static address and bring the interface up

        Args:
            interface: Interface returned by create_interface()
            local_address: Tunnel-side address of this server
            netmask: Dotted netmask or prefix length

        Raises:
            ConfigurationFailed: The address was invalid or a command failed
        """
        try:
            network = ipaddress.IPv4Interface(f"{local_address}/{netmask}")
        except ValueError as e:
            raise ConfigurationFailed(f"Invalid tunnel address {local_address}/{netmask}: {e}") from e

        try:
            if self.mtu:
                _run(["ip", "link", "set", "dev", interface.name, "mtu", str(self.mtu)])
            _run(["ip", "addr", "add", network.with_prefixlen, "dev", interface.name])
            _run(["ip", "link", "set", "dev", interface.name, "up"])
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").strip()
            raise ConfigurationFailed(f"Failed to configure {interface.name}: {stderr or e}") from e
        except OSError as e:
            raise ConfigurationFailed(f"Failed to configure {interface.name}: {e}") from e

        logger.info(f"Configured TUN interface {interface.name} with {network.with_prefixlen}")


def _forwarding_rules(tun_match: str, public_interface: str, tunnel_network: str,
                      tcp_ports: Iterable[int]) -> List[List[str]]:
    """iptables rule specs, each as [table, chain, *match]"""
    rules = []
    for port in tcp_ports:
        rules.append([
            "filter", "FORWARD", "-i", tun_match, "-o", public_interface,
            "-s", tunnel_network, "-p", "tcp", "--dport", str(port), "-j", "ACCEPT"
        ])
    rules.append([
        "filter", "FORWARD", "-i", public_interface, "-o", tun_match,
        "-m", "state", "--state", "RELATED,ESTABLISHED", "-j", "ACCEPT"
    ])
    for port in tcp_ports:
        rules.append([
            "nat", "POSTROUTING", "-o", public_interface, "-s", tunnel_network,
            "-p", "tcp", "--dport", str(port), "-j", "MASQUERADE"
        ])
    return rules


def _tun_match(name_prefix: str) -> str:
    # iptables matches every interface sharing the prefix with "+"
    if "%d" not in name_prefix and name_prefix[-1:].isdigit():
        return name_prefix
    return name_prefix.split("%d")[0] + "+"


def setup_forwarding(name_prefix: str, public_interface: str, tunnel_network: str,
                     tcp_ports: Iterable[int] = (25,)) -> Tuple[bool, str]:
    """
    Enable IP forwarding and NAT for tunneled traffic

    Args:
        name_prefix: TUN interface name prefix
        public_interface: Interface facing the internet
        tunnel_network: Tunnel subnet in CIDR notation
        tcp_ports: Destination TCP ports clients may reach

    Returns:
        Tuple of (success, message)
    """
    tun_match = _tun_match(name_prefix)
    logger.info(f"Setting up forwarding from {tun_match} to {public_interface}")

    try:
        network = str(ipaddress.IPv4Network(tunnel_network, strict=False))
        _run(["sysctl", "-w", "net.ipv4.ip_forward=1"])

        for table, chain, *match in _forwarding_rules(tun_match, public_interface, network, tcp_ports):
            _run(["iptables", "-t", table, "-A", chain] + match)

        logger.info(f"Forwarding set up for {network} through {public_interface}")
        return True, "Forwarding configured successfully"

    except subprocess.CalledProcessError as e:
        logger.error(f"Failed to set up forwarding: {e}")
        return False, f"Command failed: {e}"

    except (OSError, ValueError) as e:
        logger.error(f"Error setting up forwarding: {e}")
        return False, f"Error: {str(e)}"


def teardown_forwarding(name_prefix: str, public_interface: str, tunnel_network: str,
                        tcp_ports: Iterable[int] = (25,)) -> Tuple[bool, str]:
    """
    Remove the rules installed by setup_forwarding()

    IP forwarding itself is left enabled since other services may rely on it.
    """
    tun_match = _tun_match(name_prefix)
    failures = 0

    try:
        network = str(ipaddress.IPv4Network(tunnel_network, strict=False))
    except ValueError as e:
        return False, f"Error: {str(e)}"

    for table, chain, *match in _forwarding_rules(tun_match, public_interface, network, tcp_ports):
        try:
            _run(["iptables", "-t", table, "-D", chain] + match)
        except (subprocess.CalledProcessError, OSError) as e:
            logger.warning(f"Failed to remove iptables rule from {table}/{chain}: {e}")
            failures += 1

    if failures:
        return False, f"{failures} rule(s) could not be removed"
    logger.info("Forwarding rules removed")
    return True, "Forwarding rules removed"
